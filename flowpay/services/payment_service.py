"""Payment webhook reconciliation.

A notification is only a hint: the payment is always re-fetched from the gateway
and the sale moves through conditional updates keyed on its current status, so
duplicated or reordered notifications cannot approve or deliver twice.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from flowpay.logging_config import get_logger
from flowpay.models import Product, Sale, Tenant
from flowpay.schemas.flow import FlowModel
from flowpay.services.alert_service import alert_error, alert_warning
from flowpay.services.clock import utcnow
from flowpay.services.flow_service import parse_flow_model
from flowpay.services.fulfillment_service import InventoryConflictError, deliver_fulfillment, reserve
from flowpay.services.mercadopago_client import (
    PRODUCTION_GATEWAY,
    SUPPORTED_GATEWAYS,
    GatewayCredentials,
    GatewayNotConfiguredError,
    MercadoPagoClient,
    PaymentGatewayError,
    tenant_credentials,
)
from flowpay.services.result import Result
from flowpay.services.sale_state import SaleStatus, map_gateway_status, sources_for
from flowpay.services.step_executor import deliver
from flowpay.services.tenant_gate import build_transport, find_tenant_by_subdomain
from flowpay.transports.base import OutgoingButton, OutgoingMessage, Transport

logger = get_logger("payment_service")


class ReconcileOutcome(str, Enum):
    APPROVED = "approved"
    ALREADY_PROCESSED = "already_processed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    UPDATED = "updated"
    SALE_NOT_FOUND = "sale_not_found"
    PRODUCT_NOT_FOUND = "product_not_found"
    MANUAL_REVIEW = "manual_review"


@dataclass
class WebhookOutcome:
    status_code: int
    message: str

    @property
    def success(self) -> bool:
        return self.status_code < 300


# --- Signature ---


def parse_signature_header(header: Optional[str]) -> Optional[tuple[str, str]]:
    """Split `ts=...,v1=...` into (ts, v1). None when malformed."""
    if not header:
        return None
    parts = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        return None
    return ts, v1


def compute_signature(secret: str, data_id: str, request_id: str, ts: str) -> str:
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
) -> Result[None]:
    if not signature_header or not request_id or not data_id:
        return Result.failure("Missing signature headers", code="missing_signature")

    parsed = parse_signature_header(signature_header)
    if not parsed:
        return Result.failure("Malformed signature header", code="invalid_signature")

    ts, received = parsed
    expected = compute_signature(secret, data_id, request_id, ts)
    if not hmac.compare_digest(expected, received):
        return Result.failure("Signature mismatch", code="invalid_signature")
    return Result.success(None)


def check_webhook_authenticity(
    gateway: str,
    secret: Optional[str],
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
    scope: str,
) -> Optional[WebhookOutcome]:
    """Rejection outcome when the webhook must not be processed, None when it may proceed."""
    if gateway != PRODUCTION_GATEWAY:
        return None

    if not secret:
        logger.warning(
            "Webhook secret not configured, processing without signature validation",
            extra={"context": {"scope": scope, "gateway": gateway}},
        )
        alert_warning(
            "Payment webhook accepted without signature validation",
            {"scope": scope, "gateway": gateway},
            dedupe_key=f"unsigned-webhook:{scope}:{gateway}",
        )
        return None

    verification = verify_signature(secret, signature_header, request_id, data_id)
    if verification.ok:
        return None

    logger.warning(
        "Payment webhook rejected",
        extra={"context": {"scope": scope, "reason": verification.error_code, "request_id": request_id}},
    )
    if verification.error_code == "missing_signature":
        return WebhookOutcome(401, "Missing signature headers.")
    return WebhookOutcome(403, "Invalid signature.")


# --- Sale transitions ---


def _transition_sale(db: Session, sale_id: str, target: SaleStatus, values: Optional[dict] = None) -> bool:
    """Conditional update from any state allowed to reach `target`. False when the sale moved on."""
    sources = [state.value for state in sources_for(target)]
    update = {"status": target.value, "updated_at": utcnow(), **(values or {})}
    updated = (
        db.query(Sale)
        .filter(Sale.id == sale_id, Sale.status.in_(sources))
        .update(update, synchronize_session=False)
    )
    return updated > 0


def approve_and_fulfill(
    db: Session,
    tenant: Tenant,
    sale: Sale,
    total_value: Optional[float] = None,
    gateway_status: str = "approved",
    gateway_ref_id: Optional[str] = None,
    transport: Optional[Transport] = None,
    flow_model: Optional[FlowModel] = None,
) -> ReconcileOutcome:
    """Approve the sale once and deliver its product.

    The approval, the activation code claim and the purchase record commit together.
    Delivery happens after commit; a lost approval race skips fulfillment entirely.
    """
    product = db.query(Product).filter(Product.id == sale.product_id, Product.tenant_id == tenant.id).first()
    if not product:
        logger.error(
            "Product for sale not found, leaving sale unapproved",
            extra={"context": {"sale_id": sale.id, "product_id": sale.product_id}},
        )
        alert_error("Paid sale references a missing product", {"sale_id": sale.id, "tenant": tenant.subdomain})
        return ReconcileOutcome.PRODUCT_NOT_FOUND

    values = {"gateway_status": gateway_status}
    if total_value is not None:
        values["total_value"] = total_value
    if gateway_ref_id:
        values["gateway_ref_id"] = gateway_ref_id

    if not _transition_sale(db, sale.id, SaleStatus.APPROVED, values):
        db.rollback()
        db.refresh(sale)
        if sale.status == SaleStatus.APPROVED.value:
            logger.info("Sale already approved, skipping", extra={"context": {"sale_id": sale.id}})
            return ReconcileOutcome.ALREADY_PROCESSED

        logger.error(
            "Payment approved for a sale that can no longer be approved",
            extra={"context": {"sale_id": sale.id, "status": sale.status}},
        )
        alert_error(
            "Payment approved for a closed sale, manual review needed",
            {"sale_id": sale.id, "status": sale.status, "tenant": tenant.subdomain},
        )
        return ReconcileOutcome.MANUAL_REVIEW

    try:
        plan = reserve(db, sale, product)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(sale)
    logger.info(
        "Sale approved",
        extra={"context": {"sale_id": sale.id, "tenant": tenant.subdomain, "total_value": sale.total_value}},
    )

    if plan.out_of_stock:
        logger.error("Activation codes exhausted after payment", extra={"context": {"sale_id": sale.id}})
        alert_error(
            "Paid sale found no activation code left",
            {"sale_id": sale.id, "product": product.name, "tenant": tenant.subdomain},
        )

    if transport is None:
        transport = build_transport(tenant, sale.channel)
    if flow_model is None:
        flow_model = parse_flow_model(tenant.bot_config)
    deliver_fulfillment(sale, plan, transport, flow_model)
    return ReconcileOutcome.APPROVED


def notify_expired_sale(sale: Sale, transport: Optional[Transport]) -> None:
    if transport is None or not sale.chat_id:
        return
    formatter = transport.formatter
    text = "\n\n".join(
        [
            formatter.bold(formatter.escape("⏳ PIX Expirado!")),
            formatter.escape("O tempo para pagamento deste QR Code acabou. Por favor, inicie a compra novamente."),
        ]
    )
    message = OutgoingMessage(text=text, buttons=[[OutgoingButton(text="⬅️ Voltar ao Início", token="START_OVER")]])
    deliver(transport, sale.chat_id, message, sale.message_id)


def reconcile_payment(
    db: Session,
    tenant: Tenant,
    payment: dict,
    transport: Optional[Transport] = None,
) -> ReconcileOutcome:
    """Apply a gateway payment (as fetched from the gateway) to its sale."""
    sale_id = payment.get("external_reference")
    sale = None
    if sale_id:
        sale = db.query(Sale).filter(Sale.id == str(sale_id), Sale.tenant_id == tenant.id).first()
    if not sale:
        logger.error(
            "Sale for payment not found",
            extra={"context": {"payment_id": payment.get("id"), "external_reference": sale_id}},
        )
        return ReconcileOutcome.SALE_NOT_FOUND

    gateway_status = payment.get("status")
    target = map_gateway_status(gateway_status)
    payment_id = str(payment["id"]) if payment.get("id") is not None else None

    if target == SaleStatus.APPROVED:
        return approve_and_fulfill(
            db,
            tenant,
            sale,
            total_value=payment.get("transaction_amount"),
            gateway_status=gateway_status,
            gateway_ref_id=payment_id,
            transport=transport,
        )

    current_charge = (sale.payment_details or {}).get("payment_id")
    if target == SaleStatus.CANCELLED and current_charge and payment_id and current_charge != payment_id:
        logger.info(
            "Closed charge was already replaced, keeping sale open",
            extra={"context": {"sale_id": sale.id, "payment_id": payment_id, "current_payment_id": current_charge}},
        )
        return ReconcileOutcome.SUPERSEDED

    if target == SaleStatus.CANCELLED:
        moved = _transition_sale(db, sale.id, target, {"gateway_status": gateway_status, "gateway_ref_id": payment_id})
        db.commit()
        if not moved:
            logger.info(
                "Sale not pending, ignoring status",
                extra={"context": {"sale_id": sale.id, "gateway_status": gateway_status}},
            )
            return ReconcileOutcome.ALREADY_PROCESSED

        logger.info("Sale closed by gateway", extra={"context": {"sale_id": sale.id, "status": target.value}})
        notify_expired_sale(sale, transport or build_transport(tenant, sale.channel))
        return ReconcileOutcome.CANCELLED

    # in_process, pending, authorized, rejected...: informational only
    (
        db.query(Sale)
        .filter(Sale.id == sale.id, Sale.status != SaleStatus.APPROVED.value)
        .update({"gateway_status": gateway_status, "gateway_ref_id": payment_id, "updated_at": utcnow()}, synchronize_session=False)
    )
    db.commit()
    logger.info("Sale gateway status updated", extra={"context": {"sale_id": sale.id, "gateway_status": gateway_status}})
    return ReconcileOutcome.UPDATED


def fetch_payment(credentials: GatewayCredentials, payment_id: str, gateway_factory: Optional[Callable] = None) -> dict:
    client = (gateway_factory or MercadoPagoClient)(credentials.access_token)
    return client.get_payment(payment_id)


def process_payment_notification(
    db: Session,
    subdomain: str,
    gateway: str,
    body: dict,
    signature_header: Optional[str] = None,
    request_id: Optional[str] = None,
    query_data_id: Optional[str] = None,
    gateway_factory: Optional[Callable] = None,
    transport: Optional[Transport] = None,
) -> WebhookOutcome:
    """Handle one tenant payment webhook and decide its HTTP status."""
    if gateway not in SUPPORTED_GATEWAYS:
        logger.warning(f"Unknown payment gateway: {gateway}")
        return WebhookOutcome(400, "Unknown gateway.")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    body_payment_id = str(data["id"]) if data.get("id") is not None else None
    if body.get("type") != "payment" or not (body_payment_id or query_data_id):
        logger.info("Not a payment notification, skipping", extra={"context": {"type": body.get("type")}})
        return WebhookOutcome(200, "Ignored.")

    tenant = find_tenant_by_subdomain(db, subdomain)
    if not tenant:
        logger.error(f"Tenant not found for payment webhook: {subdomain}")
        return WebhookOutcome(200, "Tenant not found.")

    try:
        credentials = tenant_credentials(tenant, gateway)
    except GatewayNotConfiguredError as e:
        logger.error(f"Cannot process payment webhook: {e}", extra={"context": {"tenant": subdomain}})
        return WebhookOutcome(200, "Gateway not configured.")

    rejection = check_webhook_authenticity(
        gateway,
        credentials.webhook_secret,
        signature_header,
        request_id,
        query_data_id or body_payment_id,
        scope=subdomain,
    )
    if rejection:
        return rejection

    payment_id = body_payment_id or query_data_id
    try:
        payment = fetch_payment(credentials, payment_id, gateway_factory)
    except PaymentGatewayError as e:
        if e.retryable:
            logger.warning(f"Payment fetch failed, asking for retry: {e}", extra={"context": {"payment_id": payment_id}})
            return WebhookOutcome(503, "Gateway unavailable.")
        logger.error(f"Payment not retrievable: {e}", extra={"context": {"payment_id": payment_id}})
        return WebhookOutcome(200, "Payment not found.")

    try:
        outcome = reconcile_payment(db, tenant, payment, transport=transport)
    except InventoryConflictError as e:
        logger.warning(f"Inventory contention, asking for retry: {e}", extra={"context": {"payment_id": payment_id}})
        return WebhookOutcome(503, "Busy, retry later.")
    logger.info(
        "Payment webhook processed",
        extra={"context": {"tenant": subdomain, "payment_id": payment_id, "outcome": outcome.value}},
    )
    return WebhookOutcome(200, outcome.value)
