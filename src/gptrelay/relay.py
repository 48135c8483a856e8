"""Live output relay: turns a stream of answer fragments into one edited message."""

import logging
import time
from typing import AsyncIterable, Callable, Protocol

from .exceptions import EmptyAnswerError
from .models import RelayResult, RelayState

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    async def send_message(self, chat_id: int, reply_to_message_id: int | None, text: str) -> int: ...

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> None: ...

    async def send_typing(self, chat_id: int) -> None: ...


class LiveOutputRelay:
    """Streams one answer into a single reply message.

    The first fragment is sent as a new reply; later fragments are folded into
    edits of that same message, at most one per ``min_edit_interval`` seconds.
    When the feed ends the full answer is flushed unless it is already shown.
    A ``min_edit_interval`` of zero or less edits on every fragment.

    Transport errors propagate to the caller untouched; the relay never
    retries. Whatever was last edited successfully stays visible.
    """

    def __init__(self, transport: ChatTransport, clock: Callable[[], float] = time.monotonic) -> None:
        self._transport = transport
        self._clock = clock

    async def relay(
        self,
        conversation_id: int,
        reply_to_message_id: int | None,
        feed: AsyncIterable[str],
        min_edit_interval: float,
    ) -> RelayResult:
        """Consume feed and mirror it into a chat message.

        Returns:
            RelayResult: id of the created message, final text and edit count.

        Raises:
            EmptyAnswerError: the feed produced no text; nothing was sent.
        """
        state = RelayState()

        async for fragment in feed:
            if not fragment:
                continue
            state.accumulated_text += fragment

            if state.target_message_id is None:
                state.target_message_id = await self._transport.send_message(
                    conversation_id, reply_to_message_id, state.accumulated_text
                )
                state.last_edited_text = state.accumulated_text
                state.last_edit_at = self._clock()
                logger.debug(
                    "Relay started conversation=%s message=%s",
                    conversation_id,
                    state.target_message_id,
                )
                continue

            if self._clock() - state.last_edit_at >= min_edit_interval:
                await self._edit(conversation_id, state)

        if state.target_message_id is None:
            raise EmptyAnswerError()

        # Final flush, outside the throttle window.
        await self._edit(conversation_id, state)

        logger.info(
            "Relay finished conversation=%s message=%s chars=%d edits=%d",
            conversation_id,
            state.target_message_id,
            len(state.accumulated_text),
            state.edit_count,
        )
        return RelayResult(
            message_id=state.target_message_id,
            text=state.accumulated_text,
            edit_count=state.edit_count,
        )

    async def _edit(self, conversation_id: int, state: RelayState) -> None:
        if state.accumulated_text == state.last_edited_text:
            return
        text = state.accumulated_text
        await self._transport.edit_message(conversation_id, state.target_message_id, text)
        state.last_edited_text = text
        state.last_edit_at = self._clock()
        state.edit_count += 1
