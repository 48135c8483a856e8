import asyncio
import logging

from .dispatcher import TurnDispatcher
from .exceptions import TransportError
from .services.telegram import TelegramTransport

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 1.0


class UpdatePoller:
    """Long-polls Telegram and feeds updates to the dispatcher one at a time."""

    def __init__(
        self,
        transport: TelegramTransport,
        dispatcher: TurnDispatcher,
        timeout: int = 30,
        backoff: float = ERROR_BACKOFF_SECONDS,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._timeout = timeout
        self._backoff = backoff
        self.offset: int | None = None

    async def poll_once(self) -> int:
        """Fetch and dispatch one batch of updates. Returns the batch size.

        A failure while handling one update is logged and does not stop the
        rest of the batch.
        """
        updates = await self._transport.get_updates(offset=self.offset, timeout=self._timeout)
        for update in updates:
            self.offset = int(update["update_id"]) + 1
            try:
                await self._dispatcher.handle_update(update)
            except Exception:
                logger.exception("Failed to handle update %s", update.get("update_id"))
        return len(updates)

    async def run(self) -> None:
        """Poll until cancelled."""
        logger.info("Polling for Telegram updates")
        while True:
            try:
                await self.poll_once()
            except TransportError as e:
                logger.warning("Polling failed: %s", e)
                await asyncio.sleep(self._backoff)
            except Exception:
                logger.exception("Unexpected polling failure")
                await asyncio.sleep(self._backoff)
