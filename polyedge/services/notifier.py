"""Fire-and-forget notification sinks.

Delivery failures are logged and swallowed: an alert that cannot be sent
must never fail a sweep.
"""

import asyncio
from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class Notifier(Protocol):
    async def send(self, text: str) -> bool: ...


class LogNotifier:
    """Default sink when no transport is configured: writes to the log."""

    async def send(self, text: str) -> bool:
        logger.info("notification", text=text)
        return True


class TelegramNotifier:
    """Sends plain-text messages through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self._client = client

    async def send(self, text: str) -> bool:
        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.warning("telegram_timeout")
            return False
        except httpx.HTTPError as e:
            logger.warning("telegram_send_failed", error=str(e))
            return False

        if resp.status_code != 200:
            logger.warning(
                "telegram_api_error", status=resp.status_code, body=resp.text[:300]
            )
            return False
        return True


async def notify_safely(notifier: Notifier, text: str, timeout: float = 5.0) -> None:
    """Deliver ``text`` with a hard timeout; never raises."""
    try:
        await asyncio.wait_for(notifier.send(text), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("notification_timeout", timeout=timeout)
    except Exception as e:
        logger.warning("notification_failed", error=str(e))
