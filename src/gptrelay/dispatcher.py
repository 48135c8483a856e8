import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, Dict, Protocol, Set

from .exceptions import BackendError, RenewalError, TransportError, TurnInProgressError
from .models import ChatEvent
from .relay import ChatTransport, LiveOutputRelay
from .services.session_store import SessionStore
from .settings import OPENAI_SESSION_CHAT_KEY, OPENAI_SESSION_KEY, EnvConfigWriter, Settings

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "Send a message to start talking with the assistant. You can use /reload at any point "
    "to clear the conversation history and start from scratch (don't worry, it won't delete "
    "the Telegram messages). Use /renew <token> to continue an existing conversation."
)
DENIED_TEXT = "You are not authorized to use this bot."
RELOAD_TEXT = "Started a new conversation. Enjoy!"
RENEWED_TEXT = "Session renewed. Enjoy!"
RENEW_USAGE_TEXT = "Usage: /renew <token>"
UNKNOWN_COMMAND_TEXT = "Unknown command. Send /help to see a list of commands."
BUSY_TEXT = "A reply is still being written, please wait for it to finish."


class CompletionSource(Protocol):
    async def send(self, text: str, conversation_id: int) -> AsyncIterable[str]: ...


@dataclass
class Command:
    name: str
    args: str
    target: str


def parse_command(text: str) -> Command:
    """Split "/name@bot args" into its parts."""
    head, _, args = text.partition(" ")
    name, _, target = head[1:].partition("@")
    return Command(name=name.lower(), args=args.strip(), target=target)


class TurnDispatcher:
    """Routes inbound chat events to commands, the session store or the relay.

    Free-text turns run as background tasks so the update loop never waits on
    throttled edits. Only one turn per conversation may be in flight; a second
    message arriving meanwhile is answered with BUSY_TEXT and dropped. The
    same holds for /reload and /renew, which never overlap a turn in their
    conversation, so a finishing turn cannot overwrite a fresh session.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        source: CompletionSource,
        transport: ChatTransport,
        config_writer: EnvConfigWriter,
        bot_username: str = "",
        relay: LiveOutputRelay | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._source = source
        self._transport = transport
        self._config_writer = config_writer
        self._relay = relay or LiveOutputRelay(transport)
        self.bot_username = bot_username
        self._turns: Dict[int, asyncio.Task[None]] = {}
        self._session_commands: Set[int] = set()

    @property
    def active_turns(self) -> int:
        return len(self._turns)

    async def handle_update(self, update: Dict[str, Any]) -> None:
        event = ChatEvent.from_update(update)
        if event is None:
            return
        await self.handle_event(event)

    async def handle_event(self, event: ChatEvent) -> None:
        if event.is_command:
            command = parse_command(event.text)
            if command.target and command.target.lower() != self.bot_username.lower():
                return
            if not self._authorize(event):
                await self._reply(event, DENIED_TEXT)
                return
            await self._handle_command(event, command)
            return

        prompt = self._free_text(event)
        if prompt is None:
            return
        if not self._authorize(event):
            await self._reply(event, DENIED_TEXT)
            return
        if not prompt:
            await self._reply(event, HELP_TEXT)
            return
        try:
            self.start_turn(event, prompt)
        except TurnInProgressError:
            await self._reply(event, BUSY_TEXT)

    def _authorize(self, event: ChatEvent) -> bool:
        if self._settings.has_telegram_id(event.sender_id):
            return True
        logger.info("Unauthorized sender %s in chat %s", event.sender_id, event.chat_id)
        return False

    def _free_text(self, event: ChatEvent) -> str | None:
        """Return the prompt for a message addressed to the bot, else None."""
        if event.is_private:
            return event.text.strip()
        if not event.is_group or not self.bot_username:
            return None
        mention = f"@{self.bot_username}"
        text = event.text.strip()
        if text.lower().startswith(mention.lower()):
            return text[len(mention):].strip()
        if text.lower().endswith(mention.lower()):
            return text[: -len(mention)].strip()
        return None

    async def _handle_command(self, event: ChatEvent, command: Command) -> None:
        if command.name in ("help", "start"):
            text = HELP_TEXT
        elif command.name in ("reload", "renew"):
            text = await self._session_command(event, command)
        else:
            text = UNKNOWN_COMMAND_TEXT
        await self._reply(event, text)

    async def _session_command(self, event: ChatEvent, command: Command) -> str:
        if event.chat_id in self._turns or event.chat_id in self._session_commands:
            return BUSY_TEXT
        self._session_commands.add(event.chat_id)
        try:
            if command.name == "reload":
                await self._store.reset(event.chat_id)
                return RELOAD_TEXT
            return await self._renew(event, command.args)
        finally:
            self._session_commands.discard(event.chat_id)

    async def _renew(self, event: ChatEvent, token: str) -> str:
        if not token:
            return RENEW_USAGE_TEXT
        try:
            await self._store.renew(event.chat_id, token)
        except RenewalError as e:
            logger.info("Renewal rejected for chat %s: %s", event.chat_id, e)
            return f"Error: {e}"
        token = token.strip()
        self._settings.openai_session = token
        self._settings.openai_session_chat = event.chat_id
        try:
            await self._config_writer.persist_values(
                {OPENAI_SESSION_KEY: token, OPENAI_SESSION_CHAT_KEY: str(event.chat_id)}
            )
        except OSError as e:
            logger.error("Could not write %s: %s", self._config_writer.path, e)
            return f"Session renewed, but it could not be saved: {e}"
        return RENEWED_TEXT

    def start_turn(self, event: ChatEvent, prompt: str) -> asyncio.Task[None]:
        """Spawn the turn task for event's conversation.

        Raises:
            TurnInProgressError: a turn or a session command is already running
                for this conversation.
        """
        if event.chat_id in self._turns:
            raise TurnInProgressError(f"turn already in progress for chat {event.chat_id}")
        if event.chat_id in self._session_commands:
            raise TurnInProgressError(f"session update in progress for chat {event.chat_id}")
        task = asyncio.create_task(self._run_turn(event, prompt), name=f"turn-{event.chat_id}")
        self._turns[event.chat_id] = task
        task.add_done_callback(lambda t: self._turn_done(event.chat_id, t))
        return task

    def _turn_done(self, chat_id: int, task: asyncio.Task[None]) -> None:
        self._turns.pop(chat_id, None)
        if task.cancelled():
            logger.info("Turn in chat %s cancelled", chat_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("Turn in chat %s failed: %s", chat_id, error, exc_info=error)

    async def _run_turn(self, event: ChatEvent, prompt: str) -> None:
        try:
            await self._transport.send_typing(event.chat_id)
        except TransportError as e:
            logger.warning("Typing indicator failed for chat %s: %s", event.chat_id, e)

        try:
            feed = await self._source.send(prompt, event.chat_id)
            await self._relay.relay(
                event.chat_id,
                event.message_id,
                feed,
                self._settings.edit_wait_seconds,
            )
        except BackendError as e:
            logger.warning("Backend error in chat %s: %s", event.chat_id, e)
            await self._reply(event, f"Error: {e}")
        except TransportError as e:
            logger.exception("Transport error in chat %s: %s", event.chat_id, e)
            await self._reply(event, f"Error: {e}")
        except Exception as e:
            logger.exception("Unexpected error in chat %s", event.chat_id)
            await self._reply(event, f"Error: {e}")

    async def _reply(self, event: ChatEvent, text: str) -> None:
        try:
            await self._transport.send_message(event.chat_id, event.message_id, text)
        except TransportError as e:
            logger.error("Error sending message to chat %s: %s", event.chat_id, e)

    async def drain(self) -> None:
        """Wait for every in-flight turn to finish."""
        tasks = list(self._turns.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight turns; the last edit each made stays visible."""
        tasks = list(self._turns.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d in-flight turn(s)", len(tasks))
