import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid

from flowpay.database import Base


class TenantSubscription(Base):
    """A tenant's attempt to pay for a platform plan."""

    __tablename__ = "tenant_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, active, cancelled, failed
    payment_gateway = Column(Text, nullable=False, default="mercadopago")
    gateway_ref_id = Column(Text)
    created_at = Column(DateTime(timezone=True))
    paid_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True))
