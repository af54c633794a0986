import json
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from flowpay.database import get_db
from flowpay.logging_config import get_logger
from flowpay.schemas.telegram import TelegramUpdate, WebhookAck
from flowpay.services.command_router import TurnContext, handle_action, handle_command
from flowpay.services.step_executor import deliver, plain_message
from flowpay.services.tenant_gate import admit, build_transport, find_tenant_by_bot_token

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = raw.decode(enc, errors="replace")
            return json.loads(decoded)
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def _command_of(text: str) -> str:
    # "/start@my_bot payload" -> "/start"
    return text.strip().split()[0].split("@")[0]


def process_telegram_update(
    db: Session,
    bot_token: str,
    update: TelegramUpdate,
    transport_factory: Optional[Callable] = None,
    gateway_factory: Optional[Callable] = None,
) -> str:
    """Run one Telegram update through the gate and the command router."""
    tenant = find_tenant_by_bot_token(db, bot_token)
    if not tenant:
        logger.warning(f"Tenant not found for bot token {bot_token[:10]}...")
        return "Tenant not found"

    transport = (transport_factory or build_transport)(tenant, "telegram")
    admission = admit(tenant)

    if update.callback_query:
        callback = update.callback_query
        if not admission.admitted:
            transport.answer_callback(callback.id, admission.inactive_message, show_alert=True)
            return "Tenant inactive"

        chat_id = callback.message.chat.id if callback.message else callback.from_user.id
        ctx = TurnContext(
            db=db,
            tenant=tenant,
            flow_model=admission.flow_model,
            transport=transport,
            channel="telegram",
            chat_id=str(chat_id),
            user_id=str(callback.from_user.id),
            user_name=callback.from_user.first_name,
            username=callback.from_user.username,
            message_id=callback.message.message_id if callback.message else None,
            callback_id=callback.id,
            is_callback=True,
            gateway_factory=gateway_factory,
        )
        handle_action(ctx, callback.data or "")
        return "Callback processed"

    message = update.message
    if not message or not message.text or not message.text.startswith("/"):
        return "No actionable content"
    if message.from_user and message.from_user.is_bot:
        return "Ignoring bot message"

    if not admission.admitted:
        deliver(transport, str(message.chat.id), plain_message(transport, admission.inactive_message))
        return "Tenant inactive"

    sender = message.from_user
    ctx = TurnContext(
        db=db,
        tenant=tenant,
        flow_model=admission.flow_model,
        transport=transport,
        channel="telegram",
        chat_id=str(message.chat.id),
        user_id=str(sender.id if sender else message.chat.id),
        user_name=sender.first_name if sender else None,
        username=sender.username if sender else None,
        gateway_factory=gateway_factory,
    )
    handle_command(ctx, _command_of(message.text))
    return "Command processed"


@router.post("/telegram-hook", response_model=WebhookAck)
async def handle_telegram_hook(request: Request, token: Optional[str] = None, db: Session = Depends(get_db)):
    """Telegram updates for every tenant bot; the bot token identifies the tenant."""
    try:
        if not token:
            return WebhookAck(success=False, message="Missing bot token")

        body = await parse_telegram_update(request)
        if body is None:
            return WebhookAck(success=False, message="Invalid telegram payload")

        update = TelegramUpdate(**body)
        result = await run_in_threadpool(process_telegram_update, db, token, update)
        return WebhookAck(success=True, message=result)

    except Exception as e:
        db.rollback()
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return WebhookAck(success=False, message="Internal error")


@router.post("/telegram-hook/{token}", response_model=WebhookAck)
async def handle_telegram_hook_path(token: str, request: Request, db: Session = Depends(get_db)):
    return await handle_telegram_hook(request, token, db)
