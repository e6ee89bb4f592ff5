"""Telegram Bot API sender (sendMessage)."""

from __future__ import annotations

import logging

import httpx

from admissions.notifications.delivery import PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)

_PERMANENT_STATUSES = {400, 401, 403, 404}


class TelegramSender:

    def __init__(
        self,
        *,
        bot_token:  str,
        api_base:   str = "https://api.telegram.org",
        parse_mode: str | None = "HTML",
        timeout:    float = 15.0,
        transport:  httpx.BaseTransport | None = None,
    ) -> None:
        self._bot_token  = bot_token
        self._api_base   = api_base.rstrip("/")
        self._parse_mode = parse_mode
        self._timeout    = timeout
        self._transport  = transport

    @classmethod
    def from_settings(cls, settings, transport: httpx.BaseTransport | None = None) -> "TelegramSender":
        return cls(
            bot_token=settings.telegram_bot_token,
            api_base=settings.telegram_api_base,
            parse_mode=settings.telegram_parse_mode or None,
            timeout=settings.telegram_timeout,
            transport=transport,
        )

    def send(self, *, chat_id: str, text: str) -> int | None:
        """Send one message; returns Telegram's message_id when reported."""
        if not self._bot_token:
            raise PermanentDeliveryError("telegram bot token is not configured")
        if not chat_id:
            raise PermanentDeliveryError("missing chat id")

        payload: dict = {"chat_id": chat_id, "text": text}
        if self._parse_mode:
            payload["parse_mode"] = self._parse_mode

        url = f"{self._api_base}/bot{self._bot_token}/sendMessage"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"transport: {exc}") from exc

        description = _description(response)
        if response.status_code in _PERMANENT_STATUSES:
            raise PermanentDeliveryError(f"{response.status_code} {description}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(f"{response.status_code} {description}")
        if response.status_code >= 300:
            raise PermanentDeliveryError(f"{response.status_code} {description}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("ok") is False:
            raise PermanentDeliveryError(f"rejected: {description}")

        message_id = body.get("result", {}).get("message_id") if isinstance(body, dict) else None
        logger.info("Telegram message sent | chat=%s message_id=%s", chat_id, message_id)
        return message_id


def _description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("description", ""))
    return ""
