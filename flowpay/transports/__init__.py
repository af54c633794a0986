from flowpay.transports.base import MessageFormatter, OutgoingButton, OutgoingMessage, Transport
from flowpay.transports.telegram import TelegramTransport
from flowpay.transports.whatsapp import EvolutionTransport

__all__ = [
    "MessageFormatter",
    "OutgoingButton",
    "OutgoingMessage",
    "Transport",
    "TelegramTransport",
    "EvolutionTransport",
]
