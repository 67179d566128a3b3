from .gateway import StorageGateway
from .helpers import hash_payload, now_iso, now_ts
from .kv import KeyValuePipeline, KeyValueStore
from .redis_kv import RedisKeyValueStore
from .settings import ConfigUpdateHandler, StorageSettings

__all__ = [
    "ConfigUpdateHandler",
    "KeyValuePipeline",
    "KeyValueStore",
    "RedisKeyValueStore",
    "StorageGateway",
    "StorageSettings",
    "hash_payload",
    "now_iso",
    "now_ts",
]
