# mailla/services/notifier.py
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from mailla.config import get_settings
from mailla.core.exceptions import NotificationError
from mailla.core.logging import get_logger
from mailla.services.repo import Repo

logger = get_logger(__name__)


class Notifier:
    """
    Student/admin notifications.

    Every notification is recorded in the audit log; when a webhook URL is
    configured it is also POSTed there as JSON. Delivery errors raise
    NotificationError, callers decide whether that matters.
    """

    def __init__(
        self,
        repo: Repo,
        *,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = get_settings()
        self.repo = repo
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.timeout = timeout or settings.notification_timeout_seconds
        self._http_client = http_client

    async def notify_student(self, email: str, subject: str, body: str, org_id: str) -> None:
        payload = {"channel": "email", "to": email, "subject": subject, "body": body, "org_id": org_id}
        await self._deliver(payload)
        await self.repo.audit(
            org_id, "notification.student", "notification", email, {"subject": subject}
        )
        logger.info("Student notified", extra={"org_id": org_id, "subject": subject})

    async def notify_admins(self, event: Dict[str, Any], org_id: str) -> None:
        payload = {"channel": "admins", "org_id": org_id, **event}
        await self._deliver(payload)
        await self.repo.audit(
            org_id,
            "notification.admins",
            "notification",
            str(event.get("case_id") or event.get("conversation_id") or org_id),
            {"type": event.get("type"), "subject": event.get("subject")},
        )
        logger.info("Admins notified", extra={"org_id": org_id, "event_type": event.get("type")})

    async def _deliver(self, payload: Dict[str, Any]) -> None:
        if not self.webhook_url:
            return
        try:
            if self._http_client is not None:
                res = await self._http_client.post(self.webhook_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    res = await client.post(self.webhook_url, json=payload)
            res.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e
