"""Periodic reconciliation jobs, triggered externally through the cron routes.

Every state change here is a conditional update keyed on the state the row was
read in, so overlapping runs process each record once.
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from flowpay.config import settings
from flowpay.logging_config import get_logger
from flowpay.models import Product, Purchase, Sale, Tenant, User
from flowpay.services.alert_service import alert_warning
from flowpay.services.clock import ensure_timezone, utcnow
from flowpay.services.sale_state import SaleStatus
from flowpay.services.step_executor import deliver
from flowpay.services.tenant_gate import ADMITTED_STATUSES, build_transport
from flowpay.services.user_service import NO_PLAN, has_active_subscription
from flowpay.transports.base import OutgoingMessage, Transport

logger = get_logger("subscription_sweeper")

TransportFactory = Callable[[Tenant, str], Optional[Transport]]


def _user_channel(user: User) -> tuple[str, Optional[str]]:
    if user.telegram_id is not None:
        return "telegram", str(user.telegram_id)
    return "whatsapp", user.whatsapp_id


class _TransportCache:
    def __init__(self, db: Session, factory: TransportFactory):
        self.db = db
        self.factory = factory
        self._cache: dict = {}

    def get(self, tenant_id, channel: str) -> Optional[Transport]:
        key = (tenant_id, channel)
        if key not in self._cache:
            tenant = self.db.get(Tenant, tenant_id)
            self._cache[key] = self.factory(tenant, channel) if tenant else None
        return self._cache[key]


def expire_purchases(
    db: Session,
    now: Optional[datetime] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> dict:
    """Expire subscriptions past expires_at, revoke group access and notify the user."""
    now = now or utcnow()
    transports = _TransportCache(db, transport_factory or build_transport)
    expired = []
    kicked = 0

    candidates = (
        db.query(Purchase)
        .filter(
            Purchase.status == "approved",
            Purchase.expires_at.isnot(None),
            Purchase.expires_at < now,
        )
        .all()
    )

    for purchase in candidates:
        purchase_id = purchase.id
        claimed = (
            db.query(Purchase)
            .filter(Purchase.id == purchase_id, Purchase.status == "approved", Purchase.expires_at < now)
            .update({"status": "expired"}, synchronize_session=False)
        )
        if not claimed:
            continue

        user = db.get(User, purchase.user_id)
        if user and not has_active_subscription(db, user.id):
            user.state = "expired"
            user.plan = NO_PLAN
            user.updated_at = now
        db.commit()

        item = {"purchase_id": str(purchase_id), "product": purchase.product_name}
        expired.append(item)
        if not user:
            continue

        channel, chat_id = _user_channel(user)
        transport = transports.get(user.tenant_id, channel)
        product = db.query(Product).filter(Product.id == purchase.product_id).first()

        if transport and product and product.is_telegram_group_access and product.telegram_group_id and chat_id:
            if transport.kick_member(product.telegram_group_id, chat_id):
                kicked += 1
                item["kicked"] = True
            else:
                logger.error(
                    "Failed to remove expired member from group",
                    extra={"context": {"purchase_id": str(purchase_id), "group_id": product.telegram_group_id}},
                )
                alert_warning(
                    "Expired subscriber could not be removed from group",
                    {"purchase_id": str(purchase_id), "group_id": product.telegram_group_id},
                )

        if transport and chat_id:
            formatter = transport.formatter
            text = formatter.escape("❌ Sua assinatura do produto ") + formatter.bold(
                formatter.escape(purchase.product_name)
            ) + formatter.escape(" expirou e seu acesso foi removido. Renove para voltar a ter acesso.")
            deliver(transport, chat_id, OutgoingMessage(text=text))

    if expired:
        logger.info(f"Expired purchases: {len(expired)}", extra={"context": {"kicked": kicked}})
    return {"expired": len(expired), "kicked": kicked, "items": expired}


def expire_tenants(db: Session, now: Optional[datetime] = None) -> dict:
    """Deactivate tenants whose plan or trial ended."""
    now = now or utcnow()
    deactivated = []

    for tenant in db.query(Tenant).filter(Tenant.subscription_status.in_(ADMITTED_STATUSES)).all():
        if tenant.subscription_status == "trialing":
            ends_at = ensure_timezone(tenant.trial_ends_at)
        else:
            ends_at = ensure_timezone(tenant.subscription_ends_at)
        if ends_at is None or ends_at >= now:
            continue

        updated = (
            db.query(Tenant)
            .filter(Tenant.id == tenant.id, Tenant.subscription_status == tenant.subscription_status)
            .update({"subscription_status": "inactive", "updated_at": now}, synchronize_session=False)
        )
        if updated:
            deactivated.append(tenant.subdomain)

    db.commit()
    if deactivated:
        logger.warning(f"Deactivated tenants: {len(deactivated)}", extra={"context": {"tenants": deactivated}})
    return {"deactivated": len(deactivated), "items": deactivated}


def send_expiry_notifications(
    db: Session,
    now: Optional[datetime] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> dict:
    """Warn users whose subscription ends soon, at most once per cooldown window."""
    now = now or utcnow()
    transports = _TransportCache(db, transport_factory or build_transport)
    window_end = now + timedelta(days=settings.expiry_warning_days)
    cooldown_start = now - timedelta(hours=settings.notification_cooldown_hours)
    not_recently_notified = or_(Purchase.last_notified.is_(None), Purchase.last_notified < cooldown_start)
    sent = 0

    candidates = (
        db.query(Purchase)
        .filter(
            Purchase.type == "subscription",
            Purchase.status == "approved",
            Purchase.expires_at >= now,
            Purchase.expires_at < window_end,
            not_recently_notified,
        )
        .all()
    )

    for purchase in candidates:
        purchase_id = purchase.id
        previous = purchase.last_notified
        claimed = (
            db.query(Purchase)
            .filter(Purchase.id == purchase_id, not_recently_notified)
            .update({"last_notified": now}, synchronize_session=False)
        )
        db.commit()
        if not claimed:
            continue

        user = db.get(User, purchase.user_id)
        channel, chat_id = _user_channel(user) if user else (None, None)
        transport = transports.get(user.tenant_id, channel) if user else None

        delivered = False
        if transport and chat_id:
            days = max(1, math.ceil((ensure_timezone(purchase.expires_at) - now).total_seconds() / 86400))
            formatter = transport.formatter
            text = "\n\n".join(
                [
                    f"⚠️ {formatter.bold(formatter.escape('Aviso de Expiração'))} ⚠️",
                    formatter.escape("Sua assinatura do produto ")
                    + formatter.bold(formatter.escape(purchase.product_name))
                    + formatter.escape(" expira em ")
                    + formatter.bold(formatter.escape(f"{days} {'dias' if days > 1 else 'dia'}"))
                    + formatter.escape("."),
                    formatter.escape("Para evitar a interrupção do seu acesso, considere renovar seu plano."),
                ]
            )
            delivered = deliver(transport, chat_id, OutgoingMessage(text=text)).ok

        if delivered:
            sent += 1
            continue

        # Give the next run another chance
        db.query(Purchase).filter(Purchase.id == purchase_id, Purchase.last_notified == now).update(
            {"last_notified": previous}, synchronize_session=False
        )
        db.commit()
        logger.warning("Expiry notification not delivered", extra={"context": {"purchase_id": str(purchase_id)}})

    if sent:
        logger.info(f"Expiry notifications sent: {sent}")
    return {"sent": sent}


def cleanup_stale_sales(db: Session, now: Optional[datetime] = None) -> dict:
    """Delete abandoned pending and cancelled sales."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.stale_sale_hours)
    deleted = (
        db.query(Sale)
        .filter(
            Sale.status.in_([SaleStatus.PENDING.value, SaleStatus.CANCELLED.value]),
            Sale.created_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Stale sales deleted: {deleted}")
    return {"deleted": deleted}
