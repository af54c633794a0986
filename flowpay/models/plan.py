import uuid

from sqlalchemy import Boolean, Column, Integer, Numeric, Text, Uuid

from flowpay.database import Base


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    price = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    duration_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
