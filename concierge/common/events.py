from __future__ import annotations

from typing import Any, Protocol


class EventPublisher(Protocol):
    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...
