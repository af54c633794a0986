from sqlalchemy import BigInteger, Column, DateTime, Numeric, Text, Uuid

from flowpay.database import Base, JSONDocument, generate_id


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Text, primary_key=True, default=generate_id)
    tenant_id = Column(Uuid, nullable=False, index=True)
    product_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)  # buyer's transport id
    channel = Column(Text, nullable=False, default="telegram")  # telegram, whatsapp
    chat_id = Column(Text)
    message_id = Column(BigInteger)
    status = Column(Text, nullable=False, default="pending")
    payment_gateway = Column(Text, nullable=False)
    payment_method = Column(Text)
    gateway_ref_id = Column(Text)
    gateway_status = Column(Text)
    # init_point, preference_id, qr_code, qr_code_base64
    payment_details = Column(JSONDocument, nullable=False, default=dict)
    total_value = Column(Numeric(12, 2, asdecimal=False))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
