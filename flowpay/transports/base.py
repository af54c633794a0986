from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class OutgoingButton:
    text: str
    token: Optional[str] = None  # action token routed back on press
    url: Optional[str] = None


@dataclass
class OutgoingMessage:
    """Transport-neutral rendered message. `text` is already formatted for the target transport."""

    text: str
    buttons: list[list[OutgoingButton]] = field(default_factory=list)
    title: Optional[str] = None
    photo_base64: Optional[str] = None


class MessageFormatter(ABC):
    """Text markup for one transport."""

    @abstractmethod
    def escape(self, text: str) -> str:
        pass

    @abstractmethod
    def bold(self, text: str) -> str:
        """Bold an already escaped fragment."""
        pass

    @abstractmethod
    def code_block(self, text: str) -> str:
        pass


class Transport(ABC):
    """Outbound messaging API of one tenant bot.

    Methods return the provider response as a dict with an "ok" flag and never raise
    on API errors.
    """

    name: str = "transport"
    supports_edit: bool = False
    formatter: MessageFormatter

    @abstractmethod
    def send_message(self, chat_id: str, message: OutgoingMessage) -> dict:
        pass

    @abstractmethod
    def edit_message(self, chat_id: str, message_id: int, message: OutgoingMessage) -> dict:
        pass

    @abstractmethod
    def delete_message(self, chat_id: str, message_id: int) -> dict:
        pass

    def answer_callback(self, callback_id: str, text: Optional[str] = None, show_alert: bool = False) -> dict:
        return {"ok": True}

    def create_invite_link(self, group_id: str, ttl_seconds: int) -> Optional[str]:
        return None

    def kick_member(self, group_id: str, user_id: str) -> bool:
        return False

    @staticmethod
    def sent_message_id(result: dict) -> Optional[int]:
        payload = result.get("result")
        if isinstance(payload, dict):
            return payload.get("message_id")
        return None
