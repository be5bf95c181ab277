"""Subscriber broadcast over the Telegram Bot HTTP API."""

from __future__ import annotations

import http.client
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

AUDIENCE_ALL = "all"
AUDIENCE_EXECUTION = "execution"


@dataclass
class NotificationConfig:
    enabled: bool
    bot_token: Optional[str]
    dry_run: bool
    api_base: str = "https://api.telegram.org"
    timeout: float = 10.0
    batch_size: int = 30  # Telegram allows ~30 messages/second
    batch_pause_seconds: float = 1.0
    parse_mode: str = "Markdown"


@dataclass
class DeliveryResult:
    """Outcome for one recipient of a broadcast."""
    chat_id: Any
    success: bool
    username: Optional[str] = None
    error: Optional[str] = None


class NotificationService:
    """
    Best-effort broadcast to active subscribers.

    - Subscribers come from the store, filtered by audience
    - Sends in batches with a pause between batches (downstream rate limit)
    - Per-recipient failures are recorded in the results, never raised
    - Dry-run logs messages instead of sending them
    """

    def __init__(
        self,
        config: NotificationConfig,
        subscriber_store,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._store = subscriber_store
        self._sleep = sleep
        self._enabled = bool(config.enabled and (config.bot_token or config.dry_run))
        if config.enabled and not config.bot_token and not config.dry_run:
            logger.warning("Notifications enabled but no bot token set; disabling notifications")
            self._enabled = False

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]], subscriber_store) -> "NotificationService":
        raw_config = raw_config or {}

        bot_token = raw_config.get("bot_token")
        if bot_token and "${" in bot_token:
            bot_token = os.path.expandvars(bot_token)

        if not bot_token:
            env_key = raw_config.get("bot_token_env", "TELEGRAM_BOT_TOKEN")
            bot_token = os.getenv(env_key, "")

        config = NotificationConfig(
            enabled=bool(raw_config.get("enabled", True)),
            bot_token=bot_token or None,
            dry_run=bool(raw_config.get("dry_run", False)),
            api_base=str(raw_config.get("api_base", "https://api.telegram.org")).rstrip("/"),
            timeout=float(raw_config.get("timeout_seconds", 10.0)),
            batch_size=max(1, int(raw_config.get("batch_size", 30))),
            batch_pause_seconds=float(raw_config.get("batch_pause_seconds", 1.0)),
            parse_mode=raw_config.get("parse_mode", "Markdown"),
        )
        return cls(config, subscriber_store)

    def is_enabled(self) -> bool:
        return self._enabled

    def broadcast_to_subscribers(self, message: str, audience: Optional[str] = None) -> List[DeliveryResult]:
        if not self._enabled:
            logger.info("Notifications disabled - skipping broadcast")
            return []

        try:
            subscribers = self._store.get_active_subscribers(audience)
        except Exception as e:
            logger.error(f"Failed to load subscribers for broadcast: {e}")
            return []

        logger.info(
            f"Broadcasting to {len(subscribers)} subscribers"
            + (f" (audience: {audience})" if audience else "")
        )
        if not subscribers:
            return []

        results: List[DeliveryResult] = []
        batch_size = self._config.batch_size
        for start in range(0, len(subscribers), batch_size):
            batch = subscribers[start:start + batch_size]
            for subscriber in batch:
                results.append(self._deliver(subscriber, message))

            if start + batch_size < len(subscribers):
                self._sleep(self._config.batch_pause_seconds)

        sent = sum(1 for r in results if r.success)
        logger.info(f"Broadcast complete: {sent} sent, {len(results) - sent} failed")
        return results

    def _deliver(self, subscriber: Dict[str, Any], message: str) -> DeliveryResult:
        chat_id = subscriber.get("chat_id")
        username = subscriber.get("username")
        try:
            self._send_message(chat_id, message)
        except (urllib.error.URLError, http.client.HTTPException, socket.timeout, OSError, ValueError) as exc:
            logger.error(f"Failed to send to {chat_id}: {exc}")
            return DeliveryResult(chat_id=chat_id, success=False, username=username, error=str(exc))

        try:
            self._store.update_subscriber_activity(chat_id)
        except Exception as exc:
            logger.warning(f"Failed to update activity for {chat_id}: {exc}")
        return DeliveryResult(chat_id=chat_id, success=True, username=username)

    def _send_message(self, chat_id: Any, message: str) -> None:
        if self._config.dry_run:
            logger.info("[NOTIFY:%s] %s", chat_id, message)
            return

        url = f"{self._config.api_base}/bot{self._config.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": message, "parse_mode": self._config.parse_mode}
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

        with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
            body = response.read().decode("utf-8", errors="ignore")
            if response.status >= 400:
                raise urllib.error.HTTPError(url, response.status, body, response.headers, None)

        data = json.loads(body) if body else {}
        if not data.get("ok", False):
            raise ValueError(data.get("description", "Telegram rejected the message"))


__all__ = ["NotificationService", "NotificationConfig", "DeliveryResult", "AUDIENCE_ALL", "AUDIENCE_EXECUTION"]
