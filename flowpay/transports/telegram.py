import base64
import json
import re
import time
from typing import Optional

import httpx

from flowpay.config import settings
from flowpay.logging_config import get_logger
from flowpay.transports.base import MessageFormatter, OutgoingMessage, Transport

logger = get_logger("telegram_transport")

_MARKDOWN_V2_RESERVED = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown_v2(text: Optional[str]) -> str:
    """Escape Telegram MarkdownV2 reserved characters."""
    if not text:
        return ""
    return _MARKDOWN_V2_RESERVED.sub(r"\\\1", text)


class TelegramFormatter(MessageFormatter):
    def escape(self, text: str) -> str:
        return escape_markdown_v2(text)

    def bold(self, text: str) -> str:
        return f"*{text}*"

    def code_block(self, text: str) -> str:
        # Inside pre blocks only ` and \ need escaping
        inner = (text or "").replace("\\", "\\\\").replace("`", "\\`")
        return f"```\n{inner}\n```"


def build_inline_keyboard(message: OutgoingMessage) -> Optional[dict]:
    """Build inline keyboard for a rendered message."""
    rows = []
    for row in message.buttons:
        keyboard_row = []
        for button in row:
            if button.url:
                keyboard_row.append({"text": button.text, "url": button.url})
            else:
                keyboard_row.append({"text": button.text, "callback_data": button.token})
        if keyboard_row:
            rows.append(keyboard_row)
    if not rows:
        return None
    return {"inline_keyboard": rows}


class TelegramTransport(Transport):
    """Telegram Bot API client for one tenant bot."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    name = "telegram"
    supports_edit = True

    def __init__(self, bot_token: str, timeout: Optional[float] = None):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout = timeout or settings.http_timeout_seconds
        self.formatter = TelegramFormatter()

    def _make_request(self, method: str, data: Optional[dict] = None, files: Optional[dict] = None) -> dict:
        """Make request to Telegram API."""
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                if files:
                    response = client.post(url, data=data or {}, files=files)
                else:
                    response = client.post(url, json=data or {})
                result = response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}", extra={"context": {"method": method}})
            return {"ok": False, "error": str(e)}

        if not result.get("ok"):
            logger.warning(
                "Telegram API call rejected",
                extra={"context": {"method": method, "description": result.get("description")}},
            )
        return result

    def send_message(self, chat_id: str, message: OutgoingMessage) -> dict:
        if message.photo_base64:
            return self.send_photo(chat_id, message)

        data = {
            "chat_id": chat_id,
            "text": message.text,
            "parse_mode": "MarkdownV2",
        }
        keyboard = build_inline_keyboard(message)
        if keyboard:
            data["reply_markup"] = keyboard
        return self._make_request("sendMessage", data)

    def send_photo(self, chat_id: str, message: OutgoingMessage) -> dict:
        """Send base64 image (PIX QR code) with the message text as caption."""
        data = {
            "chat_id": chat_id,
            "caption": message.text,
            "parse_mode": "MarkdownV2",
        }
        keyboard = build_inline_keyboard(message)
        if keyboard:
            data["reply_markup"] = json.dumps(keyboard)
        try:
            image = base64.b64decode(message.photo_base64)
        except ValueError as e:
            logger.error(f"Invalid base64 photo: {e}")
            return {"ok": False, "error": str(e)}
        return self._make_request("sendPhoto", data=data, files={"photo": ("qrcode.png", image, "image/png")})

    def edit_message(self, chat_id: str, message_id: int, message: OutgoingMessage) -> dict:
        """Edit existing message."""
        data = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": message.text,
            "parse_mode": "MarkdownV2",
        }
        keyboard = build_inline_keyboard(message)
        if keyboard:
            data["reply_markup"] = keyboard
        return self._make_request("editMessageText", data)

    def delete_message(self, chat_id: str, message_id: int) -> dict:
        return self._make_request("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    def answer_callback(self, callback_id: str, text: Optional[str] = None, show_alert: bool = False) -> dict:
        data = {"callback_query_id": callback_id}
        if text:
            data["text"] = text
        if show_alert:
            data["show_alert"] = True
        return self._make_request("answerCallbackQuery", data)

    def create_invite_link(self, group_id: str, ttl_seconds: int) -> Optional[str]:
        """Single-use invite link. Returns the URL or None."""
        data = {
            "chat_id": group_id,
            "member_limit": 1,
            "expire_date": int(time.time()) + ttl_seconds,
        }
        result = self._make_request("createChatInviteLink", data)
        if result.get("ok"):
            return result["result"]["invite_link"]
        logger.warning(f"Failed to create invite link: {result}")
        return None

    def kick_member(self, group_id: str, user_id: str) -> bool:
        """Remove a member from a group. Ban followed by unban so they can rejoin later."""
        banned = self._make_request("banChatMember", {"chat_id": group_id, "user_id": user_id})
        if not banned.get("ok"):
            return False
        self._make_request(
            "unbanChatMember",
            {"chat_id": group_id, "user_id": user_id, "only_if_banned": True},
        )
        return True
