"""Telegram Bot API client."""

import asyncio
import logging
from typing import Any, Dict, List

import httpx

from ..exceptions import TransportError
from ..settings import Settings

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = 429
POLL_TIMEOUT_MARGIN = 10.0


class TelegramTransport:
    """Sends and edits chat messages through the Bot API.

    Rate limit responses (HTTP 429) are retried after the advertised
    ``retry_after`` up to ``max_retries`` times. Every other failure raises
    TransportError.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        max_retries: int = 3,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._max_retries = max_retries
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = f"{api_url.rstrip('/')}/bot{token}"
        self.username: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "TelegramTransport":
        return cls(
            token=settings.telegram_token,
            api_url=settings.telegram_api_url,
            max_retries=settings.telegram_max_retries,
            timeout=settings.telegram_request_timeout_seconds,
        )

    async def _call(
        self,
        method: str,
        params: Dict[str, Any] | None = None,
        http_timeout: float | None = None,
    ) -> Any:
        payload = {k: v for k, v in (params or {}).items() if v is not None}
        request_kwargs: Dict[str, Any] = {"json": payload}
        if http_timeout is not None:
            request_kwargs["timeout"] = http_timeout

        attempt = 0
        while True:
            try:
                response = await self._client.post(f"{self._base_url}/{method}", **request_kwargs)
            except httpx.HTTPError as e:
                logger.warning("Telegram %s request failed: %s", method, e)
                raise TransportError(f"{method} failed: {e}") from e

            try:
                body = response.json()
            except ValueError as e:
                raise TransportError(
                    f"{method} returned a non-JSON response", error_code=response.status_code
                ) from e

            if body.get("ok"):
                return body.get("result")

            error_code = body.get("error_code", response.status_code)
            description = body.get("description") or f"HTTP {response.status_code}"
            retry_after = (body.get("parameters") or {}).get("retry_after")
            if error_code == TOO_MANY_REQUESTS and retry_after is not None and attempt < self._max_retries:
                attempt += 1
                logger.info("Telegram %s rate limited, retrying in %ss", method, retry_after)
                await asyncio.sleep(float(retry_after))
                continue
            raise TransportError(
                f"{method}: {description}", error_code=error_code, retry_after=retry_after
            )

    async def get_me(self) -> Dict[str, Any]:
        """Fetch the bot's own user and remember its username."""
        me = await self._call("getMe")
        self.username = me.get("username", "")
        return me

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> List[Dict[str, Any]]:
        """Long-poll for new updates."""
        return await self._call(
            "getUpdates",
            {"offset": offset, "timeout": timeout, "allowed_updates": ["message"]},
            http_timeout=timeout + POLL_TIMEOUT_MARGIN,
        )

    async def send_message(self, chat_id: int, reply_to_message_id: int | None, text: str) -> int:
        """Send text as a reply and return the new message id."""
        reply = None
        if reply_to_message_id is not None:
            reply = {"message_id": reply_to_message_id, "allow_sending_without_reply": True}
        result = await self._call(
            "sendMessage",
            {"chat_id": chat_id, "text": text, "reply_parameters": reply},
        )
        return int(result["message_id"])

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> None:
        await self._call(
            "editMessageText",
            {"chat_id": chat_id, "message_id": message_id, "text": text},
        )

    async def send_typing(self, chat_id: int) -> None:
        await self._call("sendChatAction", {"chat_id": chat_id, "action": "typing"})

    async def set_webhook(self, url: str, secret_token: str | None = None) -> None:
        await self._call(
            "setWebhook",
            {"url": url, "secret_token": secret_token, "allowed_updates": ["message"]},
        )
        logger.info("Telegram webhook registered at %s", url)

    async def delete_webhook(self) -> None:
        await self._call("deleteWebhook")

    async def close(self) -> None:
        await self._client.aclose()
