from typing import Callable, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from flowpay.database import get_db
from flowpay.logging_config import get_logger
from flowpay.schemas.telegram import WebhookAck
from flowpay.schemas.whatsapp import EvolutionEvent
from flowpay.services.command_router import TurnContext, handle_action, handle_command, is_action_token
from flowpay.services.step_executor import deliver, plain_message
from flowpay.services.tenant_gate import admit, build_transport, find_tenant_by_instance

logger = get_logger("whatsapp_webhook")

router = APIRouter()

DEFAULT_WHATSAPP_NAME = "Usuário do WhatsApp"


def _normalize_event(name: Optional[str]) -> str:
    # Evolution sends both "messages.upsert" and "MESSAGES_UPSERT"
    return (name or "").lower().replace("_", ".")


def process_evolution_event(
    db: Session,
    event: EvolutionEvent,
    transport_factory: Optional[Callable] = None,
    gateway_factory: Optional[Callable] = None,
) -> str:
    tenant = find_tenant_by_instance(db, event.instance)
    if not tenant:
        logger.warning(f"Tenant not found for instance: {event.instance}")
        return "Tenant not found"

    event_name = _normalize_event(event.event)
    if event_name == "connection.update":
        logger.info(
            "WhatsApp connection update",
            extra={"context": {"tenant": tenant.subdomain, "state": event.data.state}},
        )
        return "Connection update logged"
    if event_name != "messages.upsert":
        logger.info(f"Unhandled Evolution event: {event.event}")
        return "Event ignored"

    data = event.data
    if data.key.from_me:
        return "Ignoring own message"

    sender = data.key.remote_jid
    command = data.command
    if not sender or not command:
        logger.warning("Evolution message without sender or text")
        return "No actionable content"

    transport = (transport_factory or build_transport)(tenant, "whatsapp")
    if transport is None:
        logger.error(f"WhatsApp not configured for tenant {tenant.subdomain}")
        return "WhatsApp not configured"

    admission = admit(tenant)
    if not admission.admitted:
        deliver(transport, sender, plain_message(transport, admission.inactive_message))
        return "Tenant inactive"

    ctx = TurnContext(
        db=db,
        tenant=tenant,
        flow_model=admission.flow_model,
        transport=transport,
        channel="whatsapp",
        chat_id=sender,
        user_id=sender,
        user_name=data.push_name or DEFAULT_WHATSAPP_NAME,
        gateway_factory=gateway_factory,
    )
    if is_action_token(command):
        handle_action(ctx, command)
        return "Action processed"

    handle_command(ctx, command.strip().lower() if command.strip().startswith("/") else command)
    return "Command processed"


@router.post("/whatsapp-hook", response_model=WebhookAck)
async def handle_whatsapp_hook(request: Request, db: Session = Depends(get_db)):
    """Evolution API events; always acknowledged so the provider does not retry."""
    try:
        body = await request.json()
        event = EvolutionEvent(**body)
        if not event.instance:
            logger.warning("Evolution event without instance")
            return WebhookAck(success=False, message="Instance not found")

        result = await run_in_threadpool(process_evolution_event, db, event)
        return WebhookAck(success=True, message=result)

    except Exception as e:
        db.rollback()
        logger.error(f"WhatsApp webhook error: {e}", exc_info=True)
        return WebhookAck(success=False, message="Internal error")
