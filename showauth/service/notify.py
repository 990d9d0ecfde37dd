from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import httpx

from showauth.config import Settings
from showauth.logging import get_logger, mask_email
from showauth.storage.models import Account

logger = get_logger(__name__)

COLOR_GREEN = 0x00FF00


def _display_name(account: Account) -> str:
    parts = [p for p in (account.first_name, account.last_name) if p]
    return " ".join(parts) if parts else "Not provided"


class DiscordNotifier:
    """Posts team-chat notifications to a Discord webhook.

    Delivery is fire-and-forget: routes schedule ``notify_new_user`` as a
    background task after the response is built, and every delivery error is
    logged and dropped.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.webhook_url = settings.discord_webhook_url
        self.enabled = settings.discord_notifications_enabled
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.enabled and self.webhook_url)

    def notify_new_user(self, account: Account) -> None:
        if not self.is_configured():
            return
        embed = {
            "title": "New User Registration",
            "color": COLOR_GREEN,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "fields": [
                {"name": "User ID", "value": str(account.id), "inline": True},
                {"name": "Email", "value": mask_email(account.email) if account.email else "N/A", "inline": True},
                {"name": "Name", "value": _display_name(account), "inline": True},
            ],
        }
        self._send({"embeds": [embed]})

    def _send(self, payload: dict) -> None:
        try:
            with httpx.Client(timeout=10.0, transport=self._transport) as client:
                response = client.post(self.webhook_url, json=payload)
            if response.status_code < 200 or response.status_code >= 300:
                logger.warning("discord_webhook_status", status_code=response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("discord_webhook_failed", error=str(exc))
