import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flowpay.config import settings
from flowpay.database import Base, get_db
from flowpay.main import app
from flowpay.models import Product, Tenant
from flowpay.services.mercadopago_client import PaymentGatewayError
from flowpay.transports.base import MessageFormatter, OutgoingMessage, Transport


class PlainFormatter(MessageFormatter):
    def escape(self, text: str) -> str:
        return text or ""

    def bold(self, text: str) -> str:
        return f"*{text}*"

    def code_block(self, text: str) -> str:
        return f"```\n{text}\n```"


class FakeTransport(Transport):
    """Records every outbound call instead of talking to a provider."""

    name = "fake"

    def __init__(
        self,
        supports_edit: bool = True,
        fail_edit: bool = False,
        fail_send: bool = False,
        invite_link: Optional[str] = "https://t.me/+invite",
        kick_ok: bool = True,
    ):
        self.supports_edit = supports_edit
        self.formatter = PlainFormatter()
        self.fail_edit = fail_edit
        self.fail_send = fail_send
        self.invite_link = invite_link
        self.kick_ok = kick_ok
        self.sent: list[tuple[str, OutgoingMessage]] = []
        self.edited: list[tuple[str, int, OutgoingMessage]] = []
        self.deleted: list[tuple[str, int]] = []
        self.callbacks: list[tuple[str, Optional[str]]] = []
        self.kicked: list[tuple[str, str]] = []
        self.shown: list[OutgoingMessage] = []
        self._next_id = 500

    def send_message(self, chat_id, message):
        if self.fail_send:
            return {"ok": False, "description": "Forbidden: bot was blocked by the user"}
        self.sent.append((chat_id, message))
        self.shown.append(message)
        self._next_id += 1
        return {"ok": True, "result": {"message_id": self._next_id}}

    def edit_message(self, chat_id, message_id, message):
        if self.fail_edit:
            return {"ok": False, "description": "Bad Request: there is no text in the message to edit"}
        self.edited.append((chat_id, message_id, message))
        self.shown.append(message)
        return {"ok": True, "result": {"message_id": message_id}}

    def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return {"ok": True}

    def answer_callback(self, callback_id, text=None, show_alert=False):
        self.callbacks.append((callback_id, text))
        return {"ok": True}

    def create_invite_link(self, group_id, ttl_seconds):
        return self.invite_link

    def kick_member(self, group_id, user_id):
        self.kicked.append((group_id, user_id))
        return self.kick_ok

    @property
    def last_text(self) -> str:
        return self.shown[-1].text if self.shown else ""


class FakeGateway:
    """Stands in for MercadoPagoClient. Used as the factory and as the client."""

    def __init__(self, payments: Optional[dict] = None, error: Optional[PaymentGatewayError] = None):
        self.payments = payments or {}
        self.error = error
        self.access_token = None
        self.fetched: list[str] = []
        self.preferences: list[dict] = []
        self.created_payments: list[tuple[dict, str]] = []

    def __call__(self, access_token: str):
        self.access_token = access_token
        return self

    def get_payment(self, payment_id: str) -> dict:
        self.fetched.append(payment_id)
        if self.error:
            raise self.error
        if payment_id not in self.payments:
            raise PaymentGatewayError("Mercado Pago returned HTTP 404", status_code=404)
        return self.payments[payment_id]

    def create_preference(self, body: dict) -> dict:
        if self.error:
            raise self.error
        self.preferences.append(body)
        return {"id": "pref-1", "init_point": "https://mp.example/checkout/pref-1"}

    def create_payment(self, body: dict, idempotency_key: str) -> dict:
        if self.error:
            raise self.error
        self.created_payments.append((body, idempotency_key))
        return {
            "id": 9001,
            "status": "pending",
            "point_of_interaction": {
                "transaction_data": {"qr_code": "00020126PIXCODE", "qr_code_base64": "aGVsbG8="}
            },
        }


def build_flow_config(product_id: str = "P1") -> dict:
    return {
        "flows": [
            {
                "id": "flow-main",
                "name": "Principal",
                "trigger": "/start",
                "startStepId": "step-welcome",
                "steps": [
                    {
                        "id": "step-welcome",
                        "name": "Boas-vindas",
                        "message": "Olá {userName}! Bem-vindo à {tenant}.",
                        "buttons": [
                            {
                                "id": "b-product",
                                "text": "Comprar",
                                "action": {"type": "LINK_TO_PRODUCT", "payload": product_id},
                            },
                            {
                                "id": "b-info",
                                "text": "Saiba mais",
                                "action": {"type": "GO_TO_STEP", "payload": "step-info"},
                            },
                            {"id": "b-profile", "text": "Meu perfil", "action": {"type": "SHOW_PROFILE"}},
                        ],
                    },
                    {
                        "id": "step-info",
                        "name": "Info",
                        "message": "Somos a loja {tenant}. {unknown} fica como está.",
                        "buttons": [{"id": "b-back", "text": "Voltar", "action": {"type": "MAIN_MENU"}}],
                    },
                ],
            },
            {
                "id": "flow-help",
                "name": "Ajuda",
                "trigger": "/ajuda",
                "startStepId": "step-help",
                "steps": [{"id": "step-help", "name": "Ajuda", "message": "Como podemos ajudar?", "buttons": []}],
            },
        ],
        "deliveryMessage": "Pagamento aprovado! Aqui está o seu produto:",
    }


def make_tenant(db, **overrides) -> Tenant:
    values = {
        "subdomain": "acme",
        "telegram_bot_token": "123:acme-token",
        "subscription_status": "active",
        "subscription_ends_at": datetime.now(timezone.utc) + timedelta(days=30),
        "bot_config": build_flow_config(),
        "payment_integrations": {
            "mercadopago": {
                "mode": "production",
                "production_access_token": "APP_USR-prod",
                "production_webhook_secret": "whsec-prod",
                "sandbox_access_token": "TEST-sandbox",
            }
        },
        "created_at": datetime.now(timezone.utc),
    }
    values.update(overrides)
    tenant = Tenant(**values)
    db.add(tenant)
    db.commit()
    return tenant


def make_product(db, tenant, **overrides) -> Product:
    values = {
        "id": "P1",
        "tenant_id": tenant.id,
        "name": "Licença Pro",
        "description": "Licença anual do software",
        "price": 10.0,
        "payment_methods": {"pix": "mercadopago", "credit_card": "mercadopago"},
        "type": "product",
        "product_subtype": "activation_codes",
        "activation_codes": ["A", "B"],
        "activation_codes_used": [],
        "stock": 2,
        "version": 0,
    }
    values.update(overrides)
    product = Product(**values)
    db.add(product)
    db.commit()
    return product


@pytest.fixture(autouse=True)
def no_operator_alerts(monkeypatch):
    monkeypatch.setattr(settings, "alert_bot_token", None)
    monkeypatch.setattr(settings, "alert_chat_id", None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def tenant(db):
    return make_tenant(db)


@pytest.fixture
def product(db, tenant):
    return make_product(db, tenant)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
