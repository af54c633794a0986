import uuid
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from flowpay.logging_config import get_logger
from flowpay.models import Plan, Tenant, TenantSubscription
from flowpay.services.alert_service import alert_error, send_alert
from flowpay.services.clock import utcnow
from flowpay.services.mercadopago_client import (
    SUPPORTED_GATEWAYS,
    GatewayNotConfiguredError,
    MercadoPagoClient,
    PaymentGatewayError,
    platform_credentials,
)
from flowpay.services.payment_service import WebhookOutcome, check_webhook_authenticity

logger = get_logger("platform_billing_service")

PLATFORM_SCOPE = "platform"


def _parse_subscription_id(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def activate_subscription(db: Session, subscription: TenantSubscription, gateway_ref_id: Optional[str] = None) -> bool:
    """Activate the tenant for the paid plan. False when the record was already processed."""
    plan = db.get(Plan, subscription.plan_id)
    tenant = db.get(Tenant, subscription.tenant_id)
    if not plan or not tenant:
        logger.error(
            "Plan or tenant not found for subscription",
            extra={"context": {"subscription_id": str(subscription.id)}},
        )
        alert_error("Paid plan subscription references missing plan or tenant", {"subscription_id": str(subscription.id)})
        return False

    now = utcnow()
    ends_at = now + timedelta(days=plan.duration_days)
    updated = (
        db.query(TenantSubscription)
        .filter(TenantSubscription.id == subscription.id, TenantSubscription.status == "pending")
        .update(
            {"status": "active", "paid_at": now, "expires_at": ends_at, "gateway_ref_id": gateway_ref_id},
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        logger.info("Subscription already processed", extra={"context": {"subscription_id": str(subscription.id)}})
        return False

    tenant.subscription_status = "active"
    tenant.plan_id = plan.id
    tenant.subscription_ends_at = ends_at
    tenant.updated_at = now
    db.commit()

    logger.info(
        "Tenant subscribed",
        extra={"context": {"tenant": tenant.subdomain, "plan": plan.name, "ends_at": ends_at}},
    )
    send_alert(
        "INFO",
        "Nova assinatura ativada",
        {"tenant": tenant.subdomain, "plan": plan.name, "price": plan.price, "ends_at": ends_at.date().isoformat()},
    )
    return True


def process_platform_notification(
    db: Session,
    gateway: str,
    body: dict,
    signature_header: Optional[str] = None,
    request_id: Optional[str] = None,
    query_data_id: Optional[str] = None,
    gateway_factory: Optional[Callable] = None,
) -> WebhookOutcome:
    """Handle a gateway notification for a tenant's plan payment."""
    if gateway not in SUPPORTED_GATEWAYS:
        return WebhookOutcome(400, "Unknown gateway.")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    payment_id = str(data["id"]) if data.get("id") is not None else query_data_id
    if body.get("type") != "payment" or not payment_id:
        return WebhookOutcome(200, "Ignored.")

    try:
        credentials = platform_credentials(gateway)
    except GatewayNotConfiguredError as e:
        logger.error(f"Cannot process platform webhook: {e}")
        return WebhookOutcome(200, "Gateway not configured.")

    rejection = check_webhook_authenticity(
        gateway, credentials.webhook_secret, signature_header, request_id, query_data_id or payment_id, scope=PLATFORM_SCOPE
    )
    if rejection:
        return rejection

    client = (gateway_factory or MercadoPagoClient)(credentials.access_token)
    try:
        payment = client.get_payment(payment_id)
    except PaymentGatewayError as e:
        if e.retryable:
            return WebhookOutcome(503, "Gateway unavailable.")
        logger.error(f"Platform payment not retrievable: {e}", extra={"context": {"payment_id": payment_id}})
        return WebhookOutcome(200, "Payment not found.")

    subscription_id = _parse_subscription_id(payment.get("external_reference"))
    subscription = db.get(TenantSubscription, subscription_id) if subscription_id else None
    if not subscription:
        logger.error(
            "Subscription for platform payment not found",
            extra={"context": {"payment_id": payment_id, "external_reference": payment.get("external_reference")}},
        )
        return WebhookOutcome(200, "Subscription not found.")

    status = payment.get("status")
    if status == "approved":
        activated = activate_subscription(db, subscription, gateway_ref_id=str(payment_id))
        return WebhookOutcome(200, "activated" if activated else "already_processed")

    if status in ("cancelled", "expired"):
        (
            db.query(TenantSubscription)
            .filter(TenantSubscription.id == subscription.id, TenantSubscription.status == "pending")
            .update({"status": "cancelled"}, synchronize_session=False)
        )
        db.commit()
        return WebhookOutcome(200, "cancelled")

    logger.info("Platform payment not final", extra={"context": {"payment_id": payment_id, "status": status}})
    return WebhookOutcome(200, "updated")
