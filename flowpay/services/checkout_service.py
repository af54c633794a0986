from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from flowpay.config import settings
from flowpay.logging_config import get_logger
from flowpay.models import Product, Sale, Tenant
from flowpay.services.clock import ensure_timezone, utcnow
from flowpay.services.mercadopago_client import (
    GatewayCredentials,
    GatewayNotConfiguredError,
    MercadoPagoClient,
    PaymentGatewayError,
    tenant_credentials,
)
from flowpay.services.result import Result
from flowpay.services.sale_state import SaleStatus, sources_for
from flowpay.transports.base import MessageFormatter, OutgoingButton, OutgoingMessage

logger = get_logger("checkout_service")

CURRENCY = "BRL"
DISABLED_GATEWAY = "none"
FREE_GATEWAY = "free"
PAYMENT_METHOD_LABELS = {"pix": "PIX", "credit_card": "Cartão de Crédito"}
BACK_BUTTON = OutgoingButton(text="⬅️ Voltar ao Início", token="START_OVER")


def is_offer_active(product: Product, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    offer_expires_at = ensure_timezone(product.offer_expires_at)
    return product.discount_price is not None and offer_expires_at is not None and offer_expires_at > now


def effective_price(product: Product, now: Optional[datetime] = None) -> float:
    if is_offer_active(product, now):
        return float(product.discount_price)
    return float(product.price or 0)


def is_free(product: Product) -> bool:
    return float(product.price or 0) == 0


def available_payment_methods(product: Product) -> list[tuple[str, str]]:
    """(method, gateway) pairs enabled on the product, in display order."""
    methods = product.payment_methods if isinstance(product.payment_methods, dict) else {}
    available = []
    for method in PAYMENT_METHOD_LABELS:
        gateway = methods.get(method)
        if gateway and gateway != DISABLED_GATEWAY:
            available.append((method, gateway))
    return available


def format_price(value: float) -> str:
    return f"R$ {value:.2f}".replace(".", ",")


def render_product_card(product: Product, formatter: MessageFormatter, now: Optional[datetime] = None) -> OutgoingMessage:
    """Product card with an acquire button, a payment method chooser or an unavailable notice."""
    esc = formatter.escape
    parts = [formatter.bold(esc(product.name))]
    if product.description:
        parts.append(esc(product.description))

    buttons: list[list[OutgoingButton]] = []
    methods = available_payment_methods(product)

    if is_free(product):
        parts.append(f"{formatter.bold(esc('Preço: Grátis!'))}\n\n{esc('Clique abaixo para obter.')}")
        buttons.append([OutgoingButton(text="✅ Obter Agora", token=f"ACQUIRE_PRODUCT:{product.id}")])
    elif methods:
        price_line = formatter.bold(esc(f"Preço: {format_price(effective_price(product, now))}"))
        if is_offer_active(product, now):
            price_line += esc(f" (de {format_price(float(product.price))})")
        parts.append(f"{price_line}\n\n{esc('Escolha como deseja pagar:')}")
        buttons.append(
            [
                OutgoingButton(
                    text=f"Pagar com {PAYMENT_METHOD_LABELS[method]}",
                    token=f"BUY_WITH_METHOD:{method}:{gateway}:{product.id}",
                )
                for method, gateway in methods
            ]
        )
    else:
        parts.append(formatter.bold(esc("Produto indisponível para compra no momento.")))

    buttons.append([BACK_BUTTON])
    return OutgoingMessage(text="\n\n".join(parts), buttons=buttons, title=product.name)


def find_product(db: Session, tenant_id, product_id: str) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id, Product.tenant_id == tenant_id).first()


def get_or_create_pending_sale(
    db: Session,
    tenant: Tenant,
    product: Product,
    buyer_id: str,
    channel: str,
    chat_id: str,
    message_id: Optional[int],
    method: str,
    gateway: str,
) -> Sale:
    """Reuse the buyer's pending sale for this product so payment links are not duplicated."""
    now = utcnow()
    sale = (
        db.query(Sale)
        .filter(
            Sale.tenant_id == tenant.id,
            Sale.product_id == product.id,
            Sale.user_id == str(buyer_id),
            Sale.status == SaleStatus.PENDING.value,
        )
        .order_by(Sale.created_at.desc())
        .first()
    )

    if sale:
        logger.info("Reusing pending sale", extra={"context": {"sale_id": sale.id}})
        sale.message_id = message_id
        sale.chat_id = str(chat_id)
        sale.payment_method = method
        sale.updated_at = now
    else:
        sale = Sale(
            tenant_id=tenant.id,
            product_id=product.id,
            user_id=str(buyer_id),
            channel=channel,
            chat_id=str(chat_id),
            message_id=message_id,
            status=SaleStatus.PENDING.value,
            payment_gateway=gateway,
            payment_method=method,
            payment_details={},
            created_at=now,
            updated_at=now,
        )
        db.add(sale)
        logger.info(
            "Sale created",
            extra={"context": {"tenant": tenant.subdomain, "product_id": product.id, "method": method}},
        )

    db.flush()
    return sale


def notification_url(subdomain: str, credentials: GatewayCredentials) -> str:
    return f"{settings.public_base_url.rstrip('/')}/{subdomain}/api/webhook/{credentials.gateway_name}"


def build_preference_body(tenant: Tenant, product: Product, sale: Sale, credentials: GatewayCredentials, price: float) -> dict:
    return {
        "items": [
            {
                "id": str(product.id),
                "title": product.name,
                "quantity": 1,
                "unit_price": price,
                "currency_id": CURRENCY,
            }
        ],
        "payer": {"email": f"{sale.user_id}@telegram.com"},
        "back_urls": {
            "success": credentials.success_url or settings.public_base_url,
            "failure": credentials.failure_url or settings.public_base_url,
            "pending": credentials.pending_url or settings.public_base_url,
        },
        "auto_return": "approved",
        "notification_url": notification_url(tenant.subdomain, credentials),
        "external_reference": str(sale.id),
    }


def build_pix_body(
    tenant: Tenant, product: Product, sale: Sale, credentials: GatewayCredentials, price: float, expires_at: datetime
) -> dict:
    return {
        "transaction_amount": price,
        "description": product.name,
        "payment_method_id": "pix",
        "payer": {
            "email": f"{sale.user_id}@telegram.com",
            "first_name": "Comprador",
            "last_name": "Anônimo",
            "identification": {"type": "CPF", "number": "00000000000"},
        },
        "notification_url": notification_url(tenant.subdomain, credentials),
        "external_reference": str(sale.id),
        "date_of_expiration": expires_at.isoformat(timespec="milliseconds"),
    }


def _charge_is_reusable(details: dict, method: str, price: float, now: datetime) -> bool:
    """A stored charge is shown again only while it is payable at the current price."""
    amount = details.get(f"{method}_amount")
    if amount is not None and float(amount) != price:
        return False
    if method == "credit_card":
        return bool(details.get("init_point"))
    if not details.get("qr_code") or not details.get("expires_at"):
        return False
    return ensure_timezone(datetime.fromisoformat(details["expires_at"])) > now


def _cancel_button(sale: Sale) -> list[OutgoingButton]:
    return [OutgoingButton(text="❌ Cancelar Compra", token=f"CANCEL_SALE:{sale.id}")]


def _checkout_link_message(sale: Sale, formatter: MessageFormatter) -> OutgoingMessage:
    return OutgoingMessage(
        text=formatter.escape("✅ Link de pagamento gerado! Clique no botão abaixo para pagar."),
        buttons=[[OutgoingButton(text="Pagar Agora", url=sale.payment_details["init_point"])], _cancel_button(sale)],
    )


def _pix_message(sale: Sale, product: Product, formatter: MessageFormatter) -> OutgoingMessage:
    details = sale.payment_details
    text = "\n\n".join(
        [
            formatter.bold(formatter.escape(f"✅ PIX para {product.name}!")),
            formatter.escape(
                f"Pague com o QR Code ou use o código abaixo. Expira em {settings.pix_expiration_minutes} minutos."
            ),
            formatter.code_block(details["qr_code"]),
        ]
    )
    return OutgoingMessage(text=text, buttons=[_cancel_button(sale)], photo_base64=details.get("qr_code_base64"))


def start_payment(
    db: Session,
    tenant: Tenant,
    product: Product,
    sale: Sale,
    method: str,
    formatter: MessageFormatter,
    gateway_factory: Optional[Callable[[str], MercadoPagoClient]] = None,
) -> Result[OutgoingMessage]:
    """Create (or reuse) the gateway charge for a pending sale and render the payment message."""
    details = dict(sale.payment_details or {})
    if method not in PAYMENT_METHOD_LABELS:
        return Result.failure("Método de pagamento inválido.", code="invalid_method")

    now = utcnow()
    price = effective_price(product, now)
    if _charge_is_reusable(details, method, price, now):
        logger.info("Reusing charge", extra={"context": {"sale_id": sale.id, "method": method}})
        if method == "credit_card":
            return Result.success(_checkout_link_message(sale, formatter))
        return Result.success(_pix_message(sale, product, formatter))

    if price <= 0:
        logger.error("Refusing to charge non-positive price", extra={"context": {"product_id": product.id, "price": price}})
        return Result.failure("O valor do produto deve ser maior que zero para pagamento.", code="invalid_price")

    try:
        credentials = tenant_credentials(tenant)
    except GatewayNotConfiguredError as e:
        logger.warning(f"Gateway not configured: {e}", extra={"context": {"tenant": tenant.subdomain}})
        return Result.failure(str(e), code="not_configured")

    client = (gateway_factory or MercadoPagoClient)(credentials.access_token)

    try:
        if method == "credit_card":
            preference = client.create_preference(build_preference_body(tenant, product, sale, credentials, price))
            details.update(
                {
                    "init_point": preference.get("init_point"),
                    "preference_id": preference.get("id"),
                    "credit_card_amount": price,
                }
            )
            if not details["init_point"]:
                return Result.failure("Não foi possível gerar o link de pagamento.", code="gateway_error")
        else:
            attempt = int(details.get("pix_attempt") or 0) + 1
            expires_at = now + timedelta(minutes=settings.pix_expiration_minutes)
            payment = client.create_payment(
                build_pix_body(tenant, product, sale, credentials, price, expires_at),
                idempotency_key=f"{sale.id}:{attempt}",
            )
            transaction_data = (payment.get("point_of_interaction") or {}).get("transaction_data") or {}
            if not transaction_data.get("qr_code"):
                logger.error("PIX response without transaction data", extra={"context": {"sale_id": sale.id}})
                return Result.failure("Não foi possível obter os dados do PIX.", code="gateway_error")
            details.update(
                {
                    "qr_code": transaction_data["qr_code"],
                    "qr_code_base64": transaction_data.get("qr_code_base64"),
                    "payment_id": str(payment.get("id")),
                    "expires_at": expires_at.isoformat(),
                    "pix_attempt": attempt,
                    "pix_amount": price,
                }
            )
    except PaymentGatewayError as e:
        logger.error(f"Failed to create charge: {e}", extra={"context": {"sale_id": sale.id, "method": method}})
        label = "link" if method == "credit_card" else "PIX"
        return Result.failure(f"Erro ao gerar {label}. Tente novamente em instantes.", code="gateway_error")

    sale.payment_details = details
    sale.payment_gateway = credentials.gateway_name
    sale.total_value = price
    sale.updated_at = now
    db.flush()

    if method == "credit_card":
        return Result.success(_checkout_link_message(sale, formatter))
    return Result.success(_pix_message(sale, product, formatter))


def find_free_sale(db: Session, tenant_id, product_id: str, buyer_id: str) -> Optional[Sale]:
    """The buyer's open or delivered free sale for this product, if any."""
    return (
        db.query(Sale)
        .filter(
            Sale.tenant_id == tenant_id,
            Sale.product_id == product_id,
            Sale.user_id == str(buyer_id),
            Sale.payment_gateway == FREE_GATEWAY,
            Sale.status.in_([SaleStatus.PENDING.value, SaleStatus.APPROVED.value]),
        )
        .order_by(Sale.created_at.desc())
        .first()
    )


def create_free_sale(db: Session, tenant: Tenant, product: Product, buyer_id: str, channel: str, chat_id: str, message_id: Optional[int]) -> Sale:
    now = utcnow()
    sale = Sale(
        tenant_id=tenant.id,
        product_id=product.id,
        user_id=str(buyer_id),
        channel=channel,
        chat_id=str(chat_id),
        message_id=message_id,
        status=SaleStatus.PENDING.value,
        payment_gateway=FREE_GATEWAY,
        payment_method=FREE_GATEWAY,
        payment_details={},
        total_value=0,
        created_at=now,
        updated_at=now,
    )
    db.add(sale)
    db.flush()
    return sale


def cancel_sale(db: Session, tenant_id, sale_id: str) -> bool:
    """Buyer cancel. Only a sale that can still move to cancelled is touched."""
    sources = [state.value for state in sources_for(SaleStatus.CANCELLED)]
    updated = (
        db.query(Sale)
        .filter(Sale.id == sale_id, Sale.tenant_id == tenant_id, Sale.status.in_(sources))
        .update({"status": SaleStatus.CANCELLED.value, "updated_at": utcnow()}, synchronize_session=False)
    )
    return updated > 0
