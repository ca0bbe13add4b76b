"""Notification dispatchers.

Message wording lives with the downstream notification service; this side only
emits an event kind plus a JSON payload of identifiers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol

import httpx
from loguru import logger

from settlement_api.core.settings import Settings


class NotificationDispatcher(Protocol):
    """Fire-and-forget notification sink."""

    async def notify(self, event_kind: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass
class InMemoryNotificationDispatcher:
    """Keeps notifications in memory; used in development and tests."""

    sent: List[tuple[str, Dict[str, Any]]]

    def __init__(self) -> None:
        self.sent = []

    async def notify(self, event_kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((event_kind, dict(payload)))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.sent]


class HttpNotificationDispatcher:
    """POSTs ``{"event": kind, "payload": ...}`` to the notification service."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_seconds: float = 5.0,
        event_kinds: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._event_kinds = set(event_kinds or [])
        self._http_client = http_client

    async def notify(self, event_kind: str, payload: Dict[str, Any]) -> None:
        if self._event_kinds and event_kind not in self._event_kinds:
            return

        body = {
            "event": event_kind,
            "payload": payload,
            "emitted_at": datetime.now(timezone.utc).isoformat(),
        }

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout_seconds)
            close_client = True

        try:
            response = await client.post(self._webhook_url, json=body)
            response.raise_for_status()
        finally:
            if close_client:
                await client.aclose()
        logger.debug("Notification dispatched", event_kind=event_kind, status_code=response.status_code)


def build_notification_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return HttpNotificationDispatcher(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
            event_kinds=settings.notification_event_kinds,
        )
    logger.info("Notification webhook not configured; using in-memory dispatcher")
    return InMemoryNotificationDispatcher()
