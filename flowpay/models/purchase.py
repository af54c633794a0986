import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from flowpay.database import Base


class Purchase(Base):
    """Entitlement granted by a fulfilled sale. expires_at is the only validity authority."""

    __tablename__ = "purchases"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("bot_users.id", ondelete="CASCADE"), nullable=False, index=True)
    sale_id = Column(Text)
    product_id = Column(Text, nullable=False)
    product_name = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="subscription")
    status = Column(Text, nullable=False, default="approved")  # approved, expired
    purchased_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True))
    last_notified = Column(DateTime(timezone=True))

    user = relationship("User", back_populates="purchases")
