from flowpay.schemas.flow import BotAction, BotButton, BotFlow, BotStep, FlowModel
from flowpay.schemas.payment import PaymentNotification, PaymentWebhookResponse
from flowpay.schemas.telegram import TelegramUpdate, WebhookAck

__all__ = [
    "BotAction",
    "BotButton",
    "BotFlow",
    "BotStep",
    "FlowModel",
    "PaymentNotification",
    "PaymentWebhookResponse",
    "TelegramUpdate",
    "WebhookAck",
]
