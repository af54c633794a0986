import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from flowpay.database import Base, JSONDocument


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subdomain = Column(Text, nullable=False, unique=True)
    owner_name = Column(Text)
    owner_email = Column(Text)

    # Transport credentials
    telegram_bot_token = Column(Text, index=True)
    evolution_api_url = Column(Text)
    evolution_api_key = Column(Text)
    evolution_instance = Column(Text, index=True)

    subscription_status = Column(Text, nullable=False, default="trialing")  # trialing, active, inactive, canceled
    plan_id = Column(Uuid)
    trial_ends_at = Column(DateTime(timezone=True))
    subscription_ends_at = Column(DateTime(timezone=True))

    # Flow graph + bot copy, replaced wholesale on admin save
    bot_config = Column(JSONDocument)
    # {"mercadopago": {"mode": ..., "production_access_token": ..., ...}}
    payment_integrations = Column(JSONDocument, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    @property
    def mercadopago_settings(self) -> dict:
        integrations = self.payment_integrations if isinstance(self.payment_integrations, dict) else {}
        settings = integrations.get("mercadopago")
        return settings if isinstance(settings, dict) else {}
