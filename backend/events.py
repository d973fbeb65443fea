"""
Real-time notifications behind an injected publisher.

Routes receive a Publisher through a FastAPI dependency and call it after a
mutation has been persisted. The transport (socket server, queue, ...) lives
elsewhere; LogPublisher only records what would be sent.
"""

from __future__ import annotations
from typing import Any, Optional, Protocol
import structlog

logger = structlog.get_logger(__name__)

ADMIN = "admin"
ALL = "all"


def user_room(email: str) -> str:
    return f"user-{email.lower()}"


class Publisher(Protocol):
    async def publish(self, room: str, event: str, payload: dict[str, Any]) -> None: ...


class LogPublisher:
    async def publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        logger.info("event_published", room=room, event=event, keys=sorted(payload))


class MemoryPublisher:
    """Keeps published events in order. Handy for tests and local debugging."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append((room, event, payload))

    def named(self, event: str, room: Optional[str] = None) -> list[dict[str, Any]]:
        return [p for r, e, p in self.events if e == event and (room is None or r == room)]


async def safe_publish(publisher: Publisher, room: str, event: str, payload: dict[str, Any]) -> None:
    try:
        await publisher.publish(room, event, payload)
    except Exception:
        logger.exception("event_publish_failed", room=room, event=event)
