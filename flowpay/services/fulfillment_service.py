"""Product delivery for approved sales.

Inventory and entitlement changes (`claim_activation_code`, `record_subscription`)
run inside the approving transaction. Message building and delivery run after commit.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from flowpay.config import settings
from flowpay.logging_config import get_logger
from flowpay.models import Product, Purchase, Sale
from flowpay.schemas.flow import FlowModel
from flowpay.services.clock import utcnow
from flowpay.services.step_executor import deliver
from flowpay.services.user_service import get_or_create_user
from flowpay.transports.base import OutgoingButton, OutgoingMessage, Transport

logger = get_logger("fulfillment_service")

DEFAULT_DELIVERY_MESSAGE = "🎉 Pagamento aprovado! Aqui está o seu produto:"
MAX_CLAIM_ATTEMPTS = 5


class InventoryConflictError(Exception):
    """Activation code claim kept losing the version race."""


@dataclass
class FulfillmentPlan:
    """What the approving transaction reserved for delivery."""

    product: Product
    activation_code: Optional[str] = None
    out_of_stock: bool = False
    purchase: Optional[Purchase] = None


def uses_activation_codes(product: Product) -> bool:
    return product.type == "product" and product.product_subtype == "activation_codes"


def claim_activation_code(db: Session, product_id: str) -> Optional[str]:
    """Move the first available code to the used list. None when the pool is empty.

    Compare-and-swap on Product.version, so concurrent approvals never receive the
    same code.
    """
    for _ in range(MAX_CLAIM_ATTEMPTS):
        product = db.query(Product).populate_existing().filter(Product.id == product_id).first()
        if not product:
            return None

        available = list(product.activation_codes or [])
        if not available:
            return None

        code = available[0]
        used = list(product.activation_codes_used or [])
        updated = (
            db.query(Product)
            .filter(Product.id == product_id, Product.version == product.version)
            .update(
                {
                    "activation_codes": available[1:],
                    "activation_codes_used": used + [code],
                    "stock": len(available) - 1,
                    "version": product.version + 1,
                },
                synchronize_session=False,
            )
        )
        if updated:
            return code

        logger.info("Activation code claim lost a race, retrying", extra={"context": {"product_id": product_id}})

    raise InventoryConflictError(f"Could not claim activation code for product {product_id}")


def record_subscription(db: Session, sale: Sale, product: Product, now: Optional[datetime] = None) -> Purchase:
    """Append the entitlement for a subscription sale. No duration means lifetime access."""
    now = now or utcnow()
    user = get_or_create_user(db, sale.tenant_id, sale.channel, sale.user_id)

    expires_at = now + timedelta(days=product.duration_days) if product.duration_days else None
    purchase = Purchase(
        user_id=user.id,
        sale_id=sale.id,
        product_id=product.id,
        product_name=product.name,
        type="subscription",
        status="approved",
        purchased_at=now,
        expires_at=expires_at,
    )
    db.add(purchase)

    user.state = "active"
    user.plan = product.name
    db.flush()

    logger.info(
        "Subscription recorded",
        extra={"context": {"sale_id": sale.id, "user_id": str(user.id), "expires_at": expires_at}},
    )
    return purchase


def reserve(db: Session, sale: Sale, product: Product, now: Optional[datetime] = None) -> FulfillmentPlan:
    """Inventory and entitlement side of fulfillment. Caller owns the transaction."""
    plan = FulfillmentPlan(product=product)

    if uses_activation_codes(product):
        plan.activation_code = claim_activation_code(db, product.id)
        plan.out_of_stock = plan.activation_code is None
    elif product.type == "subscription":
        plan.purchase = record_subscription(db, sale, product, now)

    return plan


def build_delivery_message(
    plan: FulfillmentPlan,
    transport: Transport,
    flow_model: Optional[FlowModel] = None,
) -> OutgoingMessage:
    product = plan.product
    formatter = transport.formatter
    esc = formatter.escape
    buttons: list[list[OutgoingButton]] = []

    if uses_activation_codes(product):
        if plan.activation_code:
            content = f"{esc('Aqui está seu código de ativação:')}\n{formatter.code_block(plan.activation_code)}"
        else:
            content = esc(
                "⚠️ Seu pagamento foi aprovado, mas os códigos deste produto esgotaram. "
                "Entre em contato com o suporte."
            )
    elif product.type == "subscription":
        if product.is_telegram_group_access and product.telegram_group_id:
            invite_link = transport.create_invite_link(product.telegram_group_id, settings.invite_link_ttl_seconds)
            if invite_link:
                content = esc("Sua assinatura foi ativada! Use o botão abaixo para acessar o grupo.")
                buttons.append([OutgoingButton(text="Acessar Grupo", url=invite_link)])
            else:
                logger.error(
                    "Failed to create group invite link",
                    extra={"context": {"product_id": product.id, "group_id": product.telegram_group_id}},
                )
                content = esc("❌ Não foi possível gerar seu link de convite. Por favor, contate o suporte.")
        else:
            content = esc("Sua assinatura foi ativada com sucesso!")
    elif product.product_subtype == "digital_file" and product.hosted_file_url:
        content = esc(product.description or "Seu arquivo está pronto.")
        buttons.append([OutgoingButton(text="📥 Baixar Arquivo", url=product.hosted_file_url)])
    else:
        content = esc(product.description or "Conteúdo não disponível.")

    prefix = (flow_model.delivery_message if flow_model else None) or DEFAULT_DELIVERY_MESSAGE
    text = f"{esc(prefix)}\n\n{formatter.bold(esc(product.name))}\n{content}"
    return OutgoingMessage(text=text, buttons=buttons, title=product.name)


def deliver_fulfillment(
    sale: Sale,
    plan: FulfillmentPlan,
    transport: Optional[Transport],
    flow_model: Optional[FlowModel] = None,
) -> bool:
    """Send the product to the buyer, replacing the payment message when possible."""
    if transport is None:
        logger.error(
            "No transport to deliver product",
            extra={"context": {"sale_id": sale.id, "channel": sale.channel}},
        )
        return False
    if not sale.chat_id:
        logger.error("Sale has no chat to deliver to", extra={"context": {"sale_id": sale.id}})
        return False

    message = build_delivery_message(plan, transport, flow_model)
    result = deliver(transport, sale.chat_id, message, sale.message_id)
    if result.ok:
        logger.info("Product delivered", extra={"context": {"sale_id": sale.id, "product_id": plan.product.id}})
    return result.ok
