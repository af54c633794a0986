import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from flowpay.database import get_db
from flowpay.logging_config import get_logger
from flowpay.schemas.payment import PaymentWebhookResponse
from flowpay.services.payment_service import WebhookOutcome, process_payment_notification
from flowpay.services.platform_billing_service import process_platform_notification

logger = get_logger("payment_webhook")

router = APIRouter()


def _respond(outcome: WebhookOutcome) -> JSONResponse:
    body = PaymentWebhookResponse(success=outcome.success, message=outcome.message)
    return JSONResponse(status_code=outcome.status_code, content=body.model_dump())


async def _read_json(request: Request):
    raw = await request.body()
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


@router.post("/platform/api/webhook/{gateway}", response_model=PaymentWebhookResponse)
async def handle_platform_webhook(gateway: str, request: Request, db: Session = Depends(get_db)):
    """Tenant plan payments made to the platform account."""
    body = await _read_json(request)
    if body is None:
        return _respond(WebhookOutcome(400, "Invalid JSON body."))

    try:
        outcome = await run_in_threadpool(
            process_platform_notification,
            db,
            gateway,
            body,
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            request.query_params.get("data.id"),
        )
    except Exception as e:
        db.rollback()
        logger.error(f"Platform webhook error: {e}", exc_info=True)
        return _respond(WebhookOutcome(500, "Internal Server Error."))
    return _respond(outcome)


@router.post("/{subdomain}/api/webhook/{gateway}", response_model=PaymentWebhookResponse)
async def handle_payment_webhook(subdomain: str, gateway: str, request: Request, db: Session = Depends(get_db)):
    """Payment notifications for one tenant's gateway account."""
    body = await _read_json(request)
    if body is None:
        return _respond(WebhookOutcome(400, "Invalid JSON body."))

    logger.info(
        "Payment webhook received",
        extra={"context": {"tenant": subdomain, "gateway": gateway, "type": body.get("type")}},
    )
    try:
        outcome = await run_in_threadpool(
            process_payment_notification,
            db,
            subdomain,
            gateway,
            body,
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            request.query_params.get("data.id"),
        )
    except Exception as e:
        db.rollback()
        logger.error(f"Payment webhook error for {subdomain}/{gateway}: {e}", exc_info=True)
        return _respond(WebhookOutcome(500, "Internal Server Error."))
    return _respond(outcome)
