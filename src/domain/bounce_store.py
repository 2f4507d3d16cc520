from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from src.models.webhooks import BounceEvent
from src.observability import incr_metric, log_event, mask_email


class BounceRecorder(Protocol):
    def record_bounce(self, event: BounceEvent) -> None: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_duplicate_error(exc: Exception) -> bool:
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text


class SupabaseBounceStore:
    """Writes one ``email_bounces`` row per canonical bounce event.

    Providers deliver at least once, so the table carries a unique constraint on
    ``(email, notification_id)``; a violation means the event was already
    recorded and is acknowledged rather than reported as a failure.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        client_factory: Callable[[], Any] | None = None,
        table: str = "email_bounces",
        redact_emails: bool = False,
    ) -> None:
        if client is None and client_factory is None:
            raise ValueError("SupabaseBounceStore needs a client or a client_factory")
        self._client = client
        self._client_factory = client_factory
        self._table = table
        self._redact_emails = redact_emails

    def _get_client(self) -> Any:
        # Built on first write so requests that persist nothing never need Supabase.
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _loggable_email(self, email: str) -> str | None:
        return mask_email(email) if self._redact_emails else email

    def record_bounce(self, event: BounceEvent) -> None:
        row = {
            "email": event.email,
            "bounce_type": event.bounce_type,
            "bounce_sub_type": event.bounce_sub_type,
            "diagnostic_code": event.diagnostic_code,
            "notification_id": event.notification_id,
            "provider": event.provider,
            "recorded_at": _now_iso(),
        }
        client = self._get_client()
        try:
            client.table(self._table).insert(row).execute()
        except Exception as exc:
            if not _is_duplicate_error(exc):
                raise
            incr_metric("webhook.bounces.duplicate", provider_slug=event.provider)
            log_event(
                "bounce_duplicate_ignored",
                level=logging.INFO,
                provider_slug=event.provider,
                email=self._loggable_email(event.email),
                notification_id=event.notification_id,
            )
            return

        incr_metric("webhook.bounces.recorded", provider_slug=event.provider, bounce_type=event.bounce_type)
        log_event(
            "bounce_recorded",
            provider_slug=event.provider,
            email=self._loggable_email(event.email),
            bounce_type=event.bounce_type,
            bounce_sub_type=event.bounce_sub_type,
            notification_id=event.notification_id,
        )
