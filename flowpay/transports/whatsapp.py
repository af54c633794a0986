from typing import Optional

import httpx

from flowpay.config import settings
from flowpay.logging_config import get_logger
from flowpay.transports.base import MessageFormatter, OutgoingMessage, Transport

logger = get_logger("whatsapp_transport")


class WhatsAppFormatter(MessageFormatter):
    def escape(self, text: str) -> str:
        return text or ""

    def bold(self, text: str) -> str:
        return f"*{text}*"

    def code_block(self, text: str) -> str:
        return f"```{text}```"


class EvolutionTransport(Transport):
    """WhatsApp through an Evolution API instance. Messages cannot be edited."""

    name = "whatsapp"
    supports_edit = False

    LIST_BUTTON_TEXT = "Escolha uma opção"
    LIST_SECTION_TITLE = "Opções disponíveis"

    def __init__(self, api_url: str, api_key: str, instance: str, timeout: Optional[float] = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.instance = instance
        self.timeout = timeout or settings.http_timeout_seconds
        self.formatter = WhatsAppFormatter()

    def _make_request(self, path: str, payload: dict) -> dict:
        url = f"{self.api_url}/{path}/{self.instance}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers={"apikey": self.api_key})
        except Exception as e:
            logger.error(f"Evolution API error: {e}", extra={"context": {"path": path}})
            return {"ok": False, "error": str(e)}

        if response.status_code >= 400:
            logger.warning(
                "Evolution API call rejected",
                extra={"context": {"path": path, "status": response.status_code, "body": response.text[:500]}},
            )
            return {"ok": False, "error": f"HTTP {response.status_code}", "description": response.text}

        try:
            body = response.json()
        except ValueError:
            body = None
        return {"ok": True, "result": body}

    def send_message(self, chat_id: str, message: OutgoingMessage) -> dict:
        token_rows = [
            {"rowId": button.token, "title": button.text, "description": ""}
            for row in message.buttons
            for button in row
            if button.token
        ]
        link_lines = [
            f"{button.text}: {button.url}" for row in message.buttons for button in row if button.url
        ]
        text = message.text
        if link_lines:
            text = "\n\n".join([text, *link_lines])

        if not token_rows:
            return self._make_request("message/sendText", {"number": chat_id, "text": text})

        payload = {
            "number": chat_id,
            "listMessage": {
                "title": message.title or "",
                "description": text,
                "buttonText": self.LIST_BUTTON_TEXT,
                "sections": [{"title": self.LIST_SECTION_TITLE, "rows": token_rows}],
            },
        }
        return self._make_request("message/sendList", payload)

    def edit_message(self, chat_id: str, message_id: int, message: OutgoingMessage) -> dict:
        return {"ok": False, "description": "edit not supported"}

    def delete_message(self, chat_id: str, message_id: int) -> dict:
        return {"ok": False, "description": "delete not supported"}
