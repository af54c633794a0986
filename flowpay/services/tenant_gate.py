from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from flowpay.logging_config import get_logger
from flowpay.models import Tenant
from flowpay.schemas.flow import FlowModel
from flowpay.services.clock import ensure_timezone, utcnow
from flowpay.services.flow_service import parse_flow_model
from flowpay.transports import EvolutionTransport, TelegramTransport, Transport

logger = get_logger("tenant_gate")

DEFAULT_INACTIVE_MESSAGE = "Este serviço foi temporariamente suspenso. Por favor, contate o administrador."

ADMITTED_STATUSES = ("active", "trialing")


@dataclass
class Admission:
    tenant: Tenant
    admitted: bool
    flow_model: Optional[FlowModel]
    inactive_message: str


def find_tenant_by_bot_token(db: Session, bot_token: str) -> Optional[Tenant]:
    if not bot_token:
        return None
    return db.query(Tenant).filter(Tenant.telegram_bot_token == bot_token).first()


def find_tenant_by_instance(db: Session, instance: str) -> Optional[Tenant]:
    if not instance:
        return None
    return db.query(Tenant).filter(Tenant.evolution_instance == instance).first()


def find_tenant_by_subdomain(db: Session, subdomain: str) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.subdomain == subdomain).first()


def is_subscription_active(tenant: Tenant, now: Optional[datetime] = None) -> bool:
    """Status says active/trialing and the matching end date, when set, is still ahead."""
    now = now or utcnow()
    if tenant.subscription_status not in ADMITTED_STATUSES:
        return False

    if tenant.subscription_status == "trialing":
        ends_at = ensure_timezone(tenant.trial_ends_at)
    else:
        ends_at = ensure_timezone(tenant.subscription_ends_at)
    return ends_at is None or ends_at > now


def _inactive_message(tenant: Tenant, flow_model: Optional[FlowModel]) -> str:
    if flow_model and flow_model.inactive_subscription_message:
        return flow_model.inactive_subscription_message
    raw = tenant.bot_config if isinstance(tenant.bot_config, dict) else {}
    return raw.get("inactiveSubscriptionMessage") or DEFAULT_INACTIVE_MESSAGE


def admit(tenant: Tenant, now: Optional[datetime] = None) -> Admission:
    flow_model = parse_flow_model(tenant.bot_config)
    admitted = is_subscription_active(tenant, now)
    if not admitted:
        logger.info(
            "Tenant bot blocked",
            extra={"context": {"tenant": tenant.subdomain, "status": tenant.subscription_status}},
        )
    return Admission(
        tenant=tenant,
        admitted=admitted,
        flow_model=flow_model,
        inactive_message=_inactive_message(tenant, flow_model),
    )


def build_transport(tenant: Tenant, channel: str) -> Optional[Transport]:
    """Transport for the tenant's credentials on `channel`, or None when not configured."""
    if channel == "telegram":
        if not tenant.telegram_bot_token:
            return None
        return TelegramTransport(tenant.telegram_bot_token)

    if channel == "whatsapp":
        if not (tenant.evolution_api_url and tenant.evolution_api_key and tenant.evolution_instance):
            return None
        return EvolutionTransport(tenant.evolution_api_url, tenant.evolution_api_key, tenant.evolution_instance)

    logger.warning(f"Unknown channel: {channel}")
    return None
