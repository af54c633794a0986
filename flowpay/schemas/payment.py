from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class PaymentNotificationData(BaseModel):
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Mercado Pago sends numeric ids in some notification versions
        return str(value) if value is not None else None


class PaymentNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    action: Optional[str] = None
    data: PaymentNotificationData = PaymentNotificationData()


class PaymentWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
