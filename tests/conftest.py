import sys
from pathlib import Path
from typing import AsyncIterator, List, Tuple

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from gptrelay.exceptions import TransportError  # noqa: E402
from gptrelay.settings import Settings  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every chat call; optionally fails edits or sends."""

    def __init__(self) -> None:
        self.sent: List[Tuple[int, int | None, str]] = []
        self.edits: List[Tuple[int, int, str]] = []
        self.typing: List[int] = []
        self.fail_edit: TransportError | None = None
        self.fail_send: TransportError | None = None
        self._next_id = 1000

    async def send_message(self, chat_id: int, reply_to_message_id: int | None, text: str) -> int:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append((chat_id, reply_to_message_id, text))
        self._next_id += 1
        return self._next_id

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> None:
        if self.fail_edit is not None:
            raise self.fail_edit
        self.edits.append((chat_id, message_id, text))

    async def send_typing(self, chat_id: int) -> None:
        self.typing.append(chat_id)

    def texts_to(self, chat_id: int) -> List[str]:
        return [text for cid, _, text in self.sent if cid == chat_id]


async def feed_of(*fragments: str) -> AsyncIterator[str]:
    for fragment in fragments:
        yield fragment


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        telegram_token="123:abc",
        openai_api_key="sk-test",
        telegram_id=[],
        edit_wait_seconds=0,
        env_file_path=tmp_path / ".env",
    )
