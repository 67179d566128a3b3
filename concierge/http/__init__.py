from .admin import AdminHandlers
from .app import WEBHOOK_PATH, create_app
from .webhook import WebhookHandler, client_address

__all__ = [
    "AdminHandlers",
    "WEBHOOK_PATH",
    "WebhookHandler",
    "client_address",
    "create_app",
]
