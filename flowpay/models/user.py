import uuid

from sqlalchemy import BigInteger, Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from flowpay.database import Base


class User(Base):
    """End user of a tenant's bot."""

    __tablename__ = "bot_users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    telegram_id = Column(BigInteger, index=True)
    whatsapp_id = Column(Text, index=True)
    name = Column(Text)
    username = Column(Text)
    state = Column(Text, default="active")  # active, expired
    plan = Column(Text, default="Nenhum")
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))

    purchases = relationship(
        "Purchase",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="Purchase.purchased_at",
    )
