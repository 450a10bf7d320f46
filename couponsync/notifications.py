"""Brand and offer creation notifications and failure alerts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

import httpx

from .config import NotificationConfig
from .state import SyncStateStore

LOGGER = logging.getLogger(__name__)

_TELEGRAM_TOKEN_RE = re.compile(r"/bot(?P<token>[^/\s]+)/")


def _mask_telegram_token(text: str) -> str:
    return _TELEGRAM_TOKEN_RE.sub("/bot<redacted>/", text)


class _HttpxTelegramFilter(logging.Filter):
    """Redact Telegram bot tokens from httpx request logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - exercised indirectly
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = _mask_telegram_token(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


def _ensure_httpx_filter() -> None:
    logger = logging.getLogger("httpx")
    if any(isinstance(f, _HttpxTelegramFilter) for f in logger.filters):
        return
    logger.addFilter(_HttpxTelegramFilter())


_ensure_httpx_filter()


class SyncNotifier(Protocol):
    """Observer told about entities the pipeline creates and runs that fail."""

    def brand_created(self, *, name: str, brand_id: str) -> None:
        ...

    def offer_created(self, *, title: str, brand_name: str, external_id: str) -> None:
        ...

    def run_failed(self, *, message: str) -> None:
        ...


class StoredNotificationLog:
    """Keep the most recent notifications in the sync option table."""

    def __init__(self, store: SyncStateStore, *, keep: int = 50) -> None:
        self._store = store
        self._keep = keep

    def _append(self, entry: dict) -> None:
        entry["time"] = datetime.now(timezone.utc).isoformat()
        self._store.append_notification(entry, keep=self._keep)

    def brand_created(self, *, name: str, brand_id: str) -> None:
        self._append({"type": "brand", "name": name, "id": brand_id})

    def offer_created(self, *, title: str, brand_name: str, external_id: str) -> None:
        self._append({"type": "coupon", "title": title, "brand": brand_name, "id": external_id})

    def run_failed(self, *, message: str) -> None:
        self._append({"type": "system_alert", "level": "error", "message": message})


@dataclass(slots=True)
class TelegramNotifier:
    """Send brand creation and run failure alerts to Telegram."""

    bot_token: str
    chat_id: str
    thread_id: Optional[int] = None
    timeout: float = 10.0

    def _send(self, text: str) -> None:
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_notification": False,
            "disable_web_page_preview": True,
        }
        if self.thread_id is not None:
            payload["message_thread_id"] = self.thread_id

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            LOGGER.debug("Sending Telegram notification: chat=%s thread=%s", self.chat_id, self.thread_id)
            response = httpx.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Failed to send Telegram notification: %s", _mask_telegram_token(str(exc)))

    def brand_created(self, *, name: str, brand_id: str) -> None:
        self._send(f"New brand created: {name}\nID: {brand_id}")

    def offer_created(self, *, title: str, brand_name: str, external_id: str) -> None:
        # Offers are too frequent for chat delivery; they stay in the stored log.
        return None

    def run_failed(self, *, message: str) -> None:
        self._send(f"Coupon sync failed: {message}")


class FanOutNotifier:
    def __init__(self, notifiers: Sequence[SyncNotifier]) -> None:
        self._notifiers = list(notifiers)

    def brand_created(self, *, name: str, brand_id: str) -> None:
        for notifier in self._notifiers:
            notifier.brand_created(name=name, brand_id=brand_id)

    def offer_created(self, *, title: str, brand_name: str, external_id: str) -> None:
        for notifier in self._notifiers:
            notifier.offer_created(title=title, brand_name=brand_name, external_id=external_id)

    def run_failed(self, *, message: str) -> None:
        for notifier in self._notifiers:
            notifier.run_failed(message=message)


def build_notifier(settings: NotificationConfig, store: SyncStateStore) -> SyncNotifier:
    notifiers: list[SyncNotifier] = [StoredNotificationLog(store, keep=settings.max_stored)]
    if settings.has_telegram():
        notifiers.append(
            TelegramNotifier(
                bot_token=settings.telegram_bot_token,
                chat_id=settings.telegram_chat_id,
                thread_id=settings.telegram_thread_id,
            )
        )
    return FanOutNotifier(notifiers)


__all__ = [
    "FanOutNotifier",
    "StoredNotificationLog",
    "SyncNotifier",
    "TelegramNotifier",
    "build_notifier",
]
