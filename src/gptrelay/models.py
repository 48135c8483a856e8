from dataclasses import dataclass
from typing import Any, Dict


PRIVATE_CHAT = "private"
GROUP_CHAT_TYPES = ("group", "supergroup")


@dataclass
class SessionEntry:
    """Continuation state of one conversation."""

    conversation_id: int
    continuation_token: str = ""


@dataclass
class RelayState:
    """Per-turn state of the live output relay."""

    target_message_id: int | None = None
    accumulated_text: str = ""
    last_edit_at: float = 0.0
    last_edited_text: str = ""
    edit_count: int = 0


@dataclass
class ChatEvent:
    """Inbound text message, flattened from a Telegram update."""

    update_id: int
    chat_id: int
    chat_type: str
    message_id: int
    sender_id: int | None
    text: str

    @property
    def is_private(self) -> bool:
        return self.chat_type == PRIVATE_CHAT

    @property
    def is_group(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/")

    @classmethod
    def from_update(cls, update: Dict[str, Any]) -> "ChatEvent | None":
        """Build a ChatEvent from a raw update. Returns None for non-text updates."""
        message = update.get("message")
        if not message or "text" not in message:
            return None
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        return cls(
            update_id=int(update.get("update_id", 0)),
            chat_id=int(chat["id"]),
            chat_type=str(chat.get("type", "")),
            message_id=int(message["message_id"]),
            sender_id=sender.get("id"),
            text=str(message["text"]),
        )


@dataclass
class RelayResult:
    """Outcome of one relayed turn."""

    message_id: int
    text: str
    edit_count: int
