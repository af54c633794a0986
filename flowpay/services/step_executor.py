import re
from dataclasses import dataclass
from typing import Optional

from flowpay.logging_config import get_logger
from flowpay.schemas.flow import BotStep
from flowpay.services.result import Result
from flowpay.transports.base import MessageFormatter, OutgoingButton, OutgoingMessage, Transport

logger = get_logger("step_executor")

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")
DEFAULT_USER_NAME = "usuário"


@dataclass
class RenderContext:
    user_name: Optional[str] = None
    tenant_name: Optional[str] = None

    def variables(self) -> dict[str, str]:
        return {
            "userName": self.user_name or DEFAULT_USER_NAME,
            "tenant": self.tenant_name or "",
        }


def replace_placeholders(text: str, context: RenderContext) -> str:
    """Substitute known {placeholders}; unknown ones are left as written."""
    if not text:
        return ""
    variables = context.variables()
    return PLACEHOLDER_PATTERN.sub(lambda m: variables.get(m.group(1), m.group(0)), text)


def render_step(step: BotStep, context: RenderContext, formatter: MessageFormatter) -> OutgoingMessage:
    """Render a step to a transport-neutral message, one button per row."""
    body = formatter.escape(replace_placeholders(step.message, context))
    buttons = [[OutgoingButton(text=button.text, token=button.action.to_token())] for button in step.buttons]
    return OutgoingMessage(text=body, buttons=buttons, title=step.name)


def _is_not_modified(result: dict) -> bool:
    description = str(result.get("description") or "")
    return "message is not modified" in description


def deliver(
    transport: Transport,
    chat_id: str,
    message: OutgoingMessage,
    message_id: Optional[int] = None,
) -> Result[Optional[int]]:
    """Show a message to the user, replacing `message_id` when given.

    Edits in place when the transport can; otherwise deletes the old message and
    sends a new one. Edit and delete failures are logged and swallowed. The result
    value is the id of the message now on screen, when the transport reports one.
    """
    can_edit = transport.supports_edit and message_id is not None and not message.photo_base64

    if can_edit:
        result = transport.edit_message(chat_id, message_id, message)
        if result.get("ok") or _is_not_modified(result):
            return Result.success(message_id)
        logger.info(
            "Edit failed, replacing message",
            extra={"context": {"chat_id": chat_id, "message_id": message_id, "error": result.get("description") or result.get("error")}},
        )

    if transport.supports_edit and message_id is not None:
        deleted = transport.delete_message(chat_id, message_id)
        if not deleted.get("ok"):
            logger.info(
                "Could not delete replaced message",
                extra={"context": {"chat_id": chat_id, "message_id": message_id}},
            )

    result = transport.send_message(chat_id, message)
    if not result.get("ok"):
        logger.error(
            "Failed to deliver message",
            extra={"context": {"chat_id": chat_id, "transport": transport.name, "error": result.get("description") or result.get("error")}},
        )
        return Result.failure("Delivery failed", code="delivery_failed")

    return Result.success(transport.sent_message_id(result))


def execute_step(
    transport: Transport,
    chat_id: str,
    step: BotStep,
    context: RenderContext,
    message_id: Optional[int] = None,
) -> Result[Optional[int]]:
    message = render_step(step, context, transport.formatter)
    return deliver(transport, chat_id, message, message_id)


def plain_message(transport: Transport, text: str, buttons: Optional[list[list[OutgoingButton]]] = None) -> OutgoingMessage:
    """Unformatted copy escaped for the transport."""
    return OutgoingMessage(text=transport.formatter.escape(text), buttons=buttons or [])
