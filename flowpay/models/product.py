from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, Text, Uuid

from flowpay.database import Base, JSONDocument, generate_id


class Product(Base):
    __tablename__ = "products"

    id = Column(Text, primary_key=True, default=generate_id)
    tenant_id = Column(Uuid, nullable=False, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text)
    price = Column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    # {"pix": "mercadopago", "credit_card": "none"}
    payment_methods = Column(JSONDocument, nullable=False, default=dict)

    type = Column(Text, nullable=False, default="product")  # product, subscription
    product_subtype = Column(Text, default="standard")  # standard, digital_file, activation_codes
    stock = Column(Integer)
    activation_codes = Column(JSONDocument, nullable=False, default=list)
    activation_codes_used = Column(JSONDocument, nullable=False, default=list)
    hosted_file_url = Column(Text)

    is_telegram_group_access = Column(Boolean, nullable=False, default=False)
    telegram_group_id = Column(Text)
    duration_days = Column(Integer)

    discount_price = Column(Numeric(12, 2, asdecimal=False))
    offer_expires_at = Column(DateTime(timezone=True))

    # Compare-and-swap guard for activation code moves
    version = Column(Integer, nullable=False, default=0)
