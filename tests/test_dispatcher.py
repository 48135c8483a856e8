import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncIterator, Dict, List, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from dotenv import dotenv_values

from conftest import FakeTransport
from gptrelay.dispatcher import (
    BUSY_TEXT,
    DENIED_TEXT,
    HELP_TEXT,
    RELOAD_TEXT,
    RENEW_USAGE_TEXT,
    RENEWED_TEXT,
    UNKNOWN_COMMAND_TEXT,
    TurnDispatcher,
    parse_command,
)
from gptrelay.exceptions import BackendError, RenewalError
from gptrelay.services.completion import OpenAICompletionSource
from gptrelay.services.session_store import SessionStore
from gptrelay.settings import EnvConfigWriter, Settings

BOT = "relay_bot"


class FakeSource:
    """Completion source answering with canned fragments."""

    def __init__(self, store: SessionStore, fragments: List[str]) -> None:
        self._store = store
        self.fragments = fragments
        self.calls: List[Tuple[str, int, str]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def send(self, text: str, conversation_id: int) -> AsyncIterator[str]:
        token = await self._store.get(conversation_id)
        self.calls.append((text, conversation_id, token))
        if self.error is not None:
            raise self.error
        return self._feed(conversation_id)

    async def _feed(self, conversation_id: int) -> AsyncIterator[str]:
        for fragment in self.fragments:
            if self.gate is not None:
                await self.gate.wait()
            yield fragment
        await self._store.set(conversation_id, f"resp_{len(self.calls)}")


def _update(
    text: str,
    chat_id: int = 10,
    chat_type: str = "private",
    sender_id: int = 10,
    message_id: int = 1,
) -> Dict[str, Any]:
    return {
        "update_id": message_id,
        "message": {
            "message_id": message_id,
            "from": {"id": sender_id, "is_bot": False},
            "chat": {"id": chat_id, "type": chat_type},
            "text": text,
        },
    }


async def _accept(token: str) -> None:
    return None


async def _reject(token: str) -> None:
    raise RenewalError(f"unknown continuation token {token!r}")


@pytest.fixture
def store() -> SessionStore:
    return SessionStore(validator=_accept)


@pytest.fixture
def source(store: SessionStore) -> FakeSource:
    return FakeSource(store, ["Hi", " there", "!"])


@pytest.fixture
def dispatcher(
    settings: Settings, store: SessionStore, source: FakeSource, transport: FakeTransport
) -> TurnDispatcher:
    return TurnDispatcher(
        settings=settings,
        store=store,
        source=source,
        transport=transport,
        config_writer=EnvConfigWriter(settings.env_file_path),
        bot_username=BOT,
    )


def test_parse_command() -> None:
    cmd = parse_command("/Renew@relay_bot  resp_123 ")
    assert cmd.name == "renew"
    assert cmd.target == "relay_bot"
    assert cmd.args == "resp_123"
    assert parse_command("/help").args == ""


@pytest.mark.asyncio
async def test_private_text_streams_live_reply(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    await dispatcher.handle_update(_update("Hello", message_id=5))
    await dispatcher.drain()

    assert source.calls == [("Hello", 10, "")]
    assert transport.typing == [10]
    assert transport.sent == [(10, 5, "Hi")]
    assert [text for _, _, text in transport.edits] == ["Hi there", "Hi there!"]
    assert dispatcher.active_turns == 0


@pytest.mark.asyncio
async def test_group_text_without_mention_is_ignored(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    await dispatcher.handle_update(_update("just chatting", chat_id=-100, chat_type="group"))
    await dispatcher.drain()
    assert source.calls == []
    assert transport.sent == []
    assert transport.typing == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "text",
    ["@relay_bot what is up?", "what is up? @relay_bot", "@Relay_Bot what is up?"],
)
async def test_group_mention_prefix_or_suffix(
    dispatcher: TurnDispatcher, source: FakeSource, text: str
) -> None:
    await dispatcher.handle_update(_update(text, chat_id=-100, chat_type="supergroup"))
    await dispatcher.drain()
    assert source.calls == [("what is up?", -100, "")]


@pytest.mark.asyncio
async def test_unauthorized_sender_is_denied(
    settings: Settings, dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    settings.telegram_id = [1, 2]
    await dispatcher.handle_update(_update("Hello", sender_id=3, chat_id=3))
    await dispatcher.handle_update(_update("/reload", sender_id=3, chat_id=3))
    await dispatcher.drain()
    assert transport.texts_to(3) == [DENIED_TEXT, DENIED_TEXT]
    assert source.calls == []


@pytest.mark.asyncio
async def test_authorized_sender_passes(
    settings: Settings, dispatcher: TurnDispatcher, source: FakeSource
) -> None:
    settings.telegram_id = [10]
    await dispatcher.handle_update(_update("Hello"))
    await dispatcher.drain()
    assert len(source.calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("command", ["/help", "/start"])
async def test_help_and_start(dispatcher: TurnDispatcher, transport: FakeTransport, command: str) -> None:
    await dispatcher.handle_update(_update(command))
    assert transport.texts_to(10) == [HELP_TEXT]


@pytest.mark.asyncio
async def test_unknown_command(dispatcher: TurnDispatcher, transport: FakeTransport) -> None:
    await dispatcher.handle_update(_update("/frobnicate"))
    assert transport.texts_to(10) == [UNKNOWN_COMMAND_TEXT]


@pytest.mark.asyncio
async def test_command_for_other_bot_is_ignored(
    dispatcher: TurnDispatcher, transport: FakeTransport
) -> None:
    await dispatcher.handle_update(_update("/help@other_bot", chat_id=-5, chat_type="group"))
    assert transport.sent == []
    await dispatcher.handle_update(_update("/help@relay_bot", chat_id=-5, chat_type="group"))
    assert transport.texts_to(-5) == [HELP_TEXT]


@pytest.mark.asyncio
async def test_reload_starts_fresh_conversation(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource, store: SessionStore
) -> None:
    await dispatcher.handle_update(_update("first", message_id=1))
    await dispatcher.drain()
    assert await store.get(10) == "resp_1"

    await dispatcher.handle_update(_update("second", message_id=2))
    await dispatcher.drain()
    assert source.calls[-1] == ("second", 10, "resp_1")

    await dispatcher.handle_update(_update("/reload", message_id=3))
    assert RELOAD_TEXT in transport.texts_to(10)

    await dispatcher.handle_update(_update("third", message_id=4))
    await dispatcher.drain()
    assert source.calls[-1] == ("third", 10, "")


@pytest.mark.asyncio
async def test_renew_success_persists_token(
    settings: Settings, dispatcher: TurnDispatcher, transport: FakeTransport, store: SessionStore
) -> None:
    await dispatcher.handle_update(_update("/renew resp_good"))
    assert transport.texts_to(10) == [RENEWED_TEXT]
    assert await store.get(10) == "resp_good"
    assert settings.openai_session == "resp_good"
    assert settings.openai_session_chat == 10
    values = dotenv_values(settings.env_file_path)
    assert values["OPENAI_SESSION"] == "resp_good"
    assert values["OPENAI_SESSION_CHAT"] == "10"


@pytest.mark.asyncio
async def test_renew_rejected_leaves_store_and_config(
    settings: Settings, dispatcher: TurnDispatcher, transport: FakeTransport, store: SessionStore
) -> None:
    store.set_validator(_reject)
    await store.set(10, "resp_prior")
    await dispatcher.handle_update(_update("/renew bad-token"))

    replies = transport.texts_to(10)
    assert len(replies) == 1 and replies[0].startswith("Error:")
    assert await store.get(10) == "resp_prior"
    assert not Path(settings.env_file_path).exists()


@pytest.mark.asyncio
async def test_renew_without_token_shows_usage(
    dispatcher: TurnDispatcher, transport: FakeTransport
) -> None:
    await dispatcher.handle_update(_update("/renew"))
    assert transport.texts_to(10) == [RENEW_USAGE_TEXT]


@pytest.mark.asyncio
async def test_backend_error_is_reported(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    source.error = BackendError("rate limited")
    await dispatcher.handle_update(_update("Hello", message_id=8))
    await dispatcher.drain()
    assert transport.sent == [(10, 8, "Error: rate limited")]


@pytest.mark.asyncio
async def test_empty_answer_is_reported(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    source.fragments = []
    await dispatcher.handle_update(_update("Hello"))
    await dispatcher.drain()
    replies = transport.texts_to(10)
    assert len(replies) == 1 and replies[0].startswith("Error:")


@pytest.mark.asyncio
async def test_second_turn_in_same_chat_is_rejected(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    source.gate = asyncio.Event()
    await dispatcher.handle_update(_update("one", message_id=1))
    await dispatcher.handle_update(_update("two", message_id=2))
    assert transport.sent == [(10, 2, BUSY_TEXT)]
    assert dispatcher.active_turns == 1

    source.gate.set()
    await dispatcher.drain()
    assert [call[0] for call in source.calls] == ["one"]
    assert transport.sent[-1] == (10, 1, "Hi")


@pytest.mark.asyncio
async def test_turns_in_different_chats_run_concurrently(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    source.gate = asyncio.Event()
    await dispatcher.handle_update(_update("one", chat_id=1, sender_id=1))
    await dispatcher.handle_update(_update("two", chat_id=2, sender_id=2))
    assert dispatcher.active_turns == 2
    source.gate.set()
    await dispatcher.drain()
    assert transport.texts_to(1) == ["Hi"]
    assert transport.texts_to(2) == ["Hi"]


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_turns(
    dispatcher: TurnDispatcher, source: FakeSource
) -> None:
    source.gate = asyncio.Event()
    await dispatcher.handle_update(_update("Hello"))
    await asyncio.sleep(0)
    assert dispatcher.active_turns == 1
    await dispatcher.shutdown()
    assert dispatcher.active_turns == 0


@pytest.mark.asyncio
async def test_non_text_update_is_ignored(dispatcher: TurnDispatcher, transport: FakeTransport) -> None:
    await dispatcher.handle_update({"update_id": 1, "edited_message": {"text": "x"}})
    await dispatcher.handle_update({"update_id": 2, "message": {"message_id": 3, "chat": {"id": 1}}})
    assert transport.sent == []


@pytest.mark.asyncio
async def test_bare_mention_gets_help(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    await dispatcher.handle_update(_update("@relay_bot", chat_id=-100, chat_type="group"))
    await dispatcher.handle_update(_update("   ", chat_id=10))
    await dispatcher.drain()
    assert source.calls == []
    assert transport.texts_to(-100) == [HELP_TEXT]
    assert transport.texts_to(10) == [HELP_TEXT]


@pytest.mark.asyncio
async def test_unexpected_turn_error_is_reported(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource
) -> None:
    source.error = RuntimeError("socket closed")
    await dispatcher.handle_update(_update("Hello", message_id=4))
    await dispatcher.drain()
    assert transport.sent == [(10, 4, "Error: socket closed")]
    assert dispatcher.active_turns == 0


def _gated_openai_source(
    settings: Settings, store: SessionStore, gate: asyncio.Event, response_id: str
) -> OpenAICompletionSource:
    async def stream() -> AsyncIterator[Any]:
        yield SimpleNamespace(type="response.output_text.delta", delta="Hi")
        await gate.wait()
        yield SimpleNamespace(type="response.completed", response=SimpleNamespace(id=response_id))

    client = MagicMock()
    client.responses.create = AsyncMock(return_value=stream())
    return OpenAICompletionSource(client, store, settings)


@pytest.mark.asyncio
async def test_reload_is_refused_while_turn_streams(
    settings: Settings, transport: FakeTransport, store: SessionStore
) -> None:
    gate = asyncio.Event()
    dispatcher = TurnDispatcher(
        settings=settings,
        store=store,
        source=_gated_openai_source(settings, store, gate, "resp_old"),
        transport=transport,
        config_writer=EnvConfigWriter(settings.env_file_path),
        bot_username=BOT,
    )

    await dispatcher.handle_update(_update("Hello", message_id=1))
    await dispatcher.handle_update(_update("/reload", message_id=2))
    assert (10, 2, BUSY_TEXT) in transport.sent

    gate.set()
    await dispatcher.drain()
    assert await store.get(10) == "resp_old"

    await dispatcher.handle_update(_update("/reload", message_id=3))
    assert transport.sent[-1] == (10, 3, RELOAD_TEXT)
    assert await store.get(10) == ""


@pytest.mark.asyncio
async def test_renew_is_refused_while_turn_streams(
    settings: Settings,
    dispatcher: TurnDispatcher,
    transport: FakeTransport,
    source: FakeSource,
    store: SessionStore,
) -> None:
    source.gate = asyncio.Event()
    await dispatcher.handle_update(_update("Hello", message_id=1))
    await dispatcher.handle_update(_update("/renew resp_other", message_id=2))
    assert transport.sent == [(10, 2, BUSY_TEXT)]
    assert not Path(settings.env_file_path).exists()

    source.gate.set()
    await dispatcher.drain()
    assert await store.get(10) == "resp_1"


@pytest.mark.asyncio
async def test_turn_is_refused_while_renew_validates(
    dispatcher: TurnDispatcher, transport: FakeTransport, source: FakeSource, store: SessionStore
) -> None:
    release = asyncio.Event()

    async def slow_validator(token: str) -> None:
        await release.wait()

    store.set_validator(slow_validator)
    renew = asyncio.create_task(dispatcher.handle_update(_update("/renew resp_new", message_id=1)))
    for _ in range(3):
        await asyncio.sleep(0)
    await dispatcher.handle_update(_update("Hello", message_id=2))
    assert transport.sent == [(10, 2, BUSY_TEXT)]

    release.set()
    await renew
    assert transport.sent[-1] == (10, 1, RENEWED_TEXT)
    assert source.calls == []
    assert await store.get(10) == "resp_new"
