from datetime import timedelta

import pytest
from conftest import FakeGateway, FakeTransport, make_product, make_tenant

from flowpay.models import Product, Purchase, Sale
from flowpay.services.clock import utcnow
from flowpay.services.mercadopago_client import PaymentGatewayError
from flowpay.services.payment_service import (
    ReconcileOutcome,
    approve_and_fulfill,
    compute_signature,
    process_payment_notification,
    reconcile_payment,
)


def make_sale(db, tenant, product_id="P1", status="pending", **overrides) -> Sale:
    now = utcnow()
    values = {
        "tenant_id": tenant.id,
        "product_id": product_id,
        "user_id": "42",
        "channel": "telegram",
        "chat_id": "42",
        "message_id": 77,
        "status": status,
        "payment_gateway": "mercadopago",
        "payment_method": "pix",
        "payment_details": {},
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    sale = Sale(**values)
    db.add(sale)
    db.commit()
    return sale


def _payment(sale, status="approved", payment_id=9001, amount=10.0) -> dict:
    return {"id": payment_id, "status": status, "external_reference": sale.id, "transaction_amount": amount}


def _notify(db, gateway_client, transport, payment_id="9001", secret="whsec-prod", **overrides):
    values = {
        "subdomain": "acme",
        "gateway": "mercadopago",
        "body": {"type": "payment", "action": "payment.updated", "data": {"id": payment_id}},
        "signature_header": f"ts=1700000000,v1={compute_signature(secret, payment_id, 'req-1', '1700000000')}",
        "request_id": "req-1",
        "query_data_id": payment_id,
        "gateway_factory": gateway_client,
        "transport": transport,
    }
    values.update(overrides)
    return process_payment_notification(db, **values)


def _product(db, product_id="P1") -> Product:
    db.expire_all()
    return db.get(Product, product_id)


class TestPixPurchaseEndToEnd:
    def test_approved_pix_delivers_first_code_once(self, db, tenant, product, transport):
        sale = make_sale(db, tenant)
        gateway = FakeGateway(payments={"9001": _payment(sale)})

        outcome = _notify(db, gateway, transport)

        assert outcome.status_code == 200
        assert outcome.message == "approved"
        db.expire_all()
        sale = db.get(Sale, sale.id)
        assert sale.status == "approved"
        assert sale.gateway_ref_id == "9001"
        assert sale.total_value == 10.0
        assert _product(db).activation_codes == ["B"]
        assert _product(db).activation_codes_used == ["A"]

        chat_id, message_id, message = transport.edited[0]
        assert (chat_id, message_id) == ("42", 77)
        assert "```\nA\n```" in message.text
        assert message.text.startswith("Pagamento aprovado! Aqui está o seu produto:")

        duplicate = _notify(db, gateway, transport)

        assert duplicate.status_code == 200
        assert duplicate.message == "already_processed"
        assert _product(db).activation_codes == ["B"]
        assert _product(db).activation_codes_used == ["A"]
        assert len(transport.shown) == 1

    def test_gateway_is_always_asked(self, db, tenant, product, transport):
        sale = make_sale(db, tenant)
        gateway = FakeGateway(payments={"9001": _payment(sale, status="pending")})

        outcome = _notify(db, gateway, transport)

        assert outcome.message == "updated"
        assert gateway.fetched == ["9001"]
        assert gateway.access_token == "APP_USR-prod"
        db.expire_all()
        assert db.get(Sale, sale.id).status == "pending"
        assert db.get(Sale, sale.id).gateway_status == "pending"


class TestWebhookRejections:
    def test_tampered_signature_changes_nothing(self, db, tenant, product, transport):
        sale = make_sale(db, tenant)
        gateway = FakeGateway(payments={"9001": _payment(sale)})

        outcome = _notify(db, gateway, transport, secret="attacker")

        assert outcome.status_code == 403
        assert gateway.fetched == []
        db.expire_all()
        assert db.get(Sale, sale.id).status == "pending"
        assert _product(db).activation_codes == ["A", "B"]

    def test_missing_signature_headers(self, db, tenant, product, transport):
        outcome = _notify(db, FakeGateway(), transport, signature_header=None, request_id=None)
        assert outcome.status_code == 401

    def test_sandbox_gateway_skips_signature(self, db, tenant, product, transport):
        sale = make_sale(db, tenant, payment_gateway="sandmercadopago")
        gateway = FakeGateway(payments={"9001": _payment(sale)})

        outcome = _notify(db, gateway, transport, gateway="sandmercadopago", signature_header=None, request_id=None)

        assert outcome.message == "approved"
        assert gateway.access_token == "TEST-sandbox"

    def test_no_secret_configured_still_processes(self, db, transport):
        tenant = make_tenant(
            db, payment_integrations={"mercadopago": {"mode": "production", "production_access_token": "APP_USR-prod"}}
        )
        make_product(db, tenant)
        sale = make_sale(db, tenant)
        gateway = FakeGateway(payments={"9001": _payment(sale)})

        outcome = _notify(db, gateway, transport, signature_header=None, request_id=None)

        assert outcome.message == "approved"

    def test_unknown_gateway(self, db, tenant, transport):
        assert _notify(db, FakeGateway(), transport, gateway="paypal").status_code == 400

    def test_not_a_payment_event(self, db, tenant, transport):
        outcome = _notify(db, FakeGateway(), transport, body={"type": "merchant_order", "data": {"id": "1"}})
        assert outcome.status_code == 200
        assert outcome.message == "Ignored."

    def test_unknown_tenant(self, db, tenant, transport):
        outcome = _notify(db, FakeGateway(), transport, subdomain="ghost")
        assert outcome.status_code == 200
        assert outcome.message == "Tenant not found."

    def test_gateway_not_configured(self, db, transport):
        make_tenant(db, payment_integrations={})
        outcome = _notify(db, FakeGateway(), transport)
        assert outcome.status_code == 200
        assert outcome.message == "Gateway not configured."

    def test_retryable_fetch_error_asks_for_retry(self, db, tenant, product, transport):
        gateway = FakeGateway(error=PaymentGatewayError("timeout", retryable=True))
        assert _notify(db, gateway, transport).status_code == 503

    def test_unknown_payment_is_acknowledged(self, db, tenant, product, transport):
        outcome = _notify(db, FakeGateway(), transport)
        assert outcome.status_code == 200
        assert outcome.message == "Payment not found."

    def test_payment_for_unknown_sale(self, db, tenant, product, transport):
        gateway = FakeGateway(payments={"9001": {"id": 9001, "status": "approved", "external_reference": "nope"}})
        outcome = _notify(db, gateway, transport)
        assert outcome.message == "sale_not_found"


class TestReconcile:
    def test_expired_pix_cancels_and_notifies(self, db, tenant, product, transport):
        sale = make_sale(db, tenant)

        outcome = reconcile_payment(db, tenant, _payment(sale, status="expired"), transport=transport)

        assert outcome == ReconcileOutcome.CANCELLED
        db.expire_all()
        assert db.get(Sale, sale.id).status == "cancelled"
        assert "PIX Expirado!" in transport.last_text
        assert transport.shown[-1].buttons[0][0].token == "START_OVER"

    def test_rejected_card_then_approved_retry_delivers(self, db, tenant, product, transport):
        sale = make_sale(db, tenant, payment_method="credit_card")
        gateway = FakeGateway(
            payments={
                "9001": _payment(sale, status="rejected", payment_id=9001),
                "9002": _payment(sale, status="approved", payment_id=9002),
            }
        )

        rejected = _notify(db, gateway, transport, payment_id="9001")

        assert rejected.message == "updated"
        db.expire_all()
        assert db.get(Sale, sale.id).status == "pending"
        assert db.get(Sale, sale.id).gateway_status == "rejected"
        assert transport.shown == []

        retry = _notify(db, gateway, transport, payment_id="9002")

        assert retry.message == "approved"
        db.expire_all()
        assert db.get(Sale, sale.id).status == "approved"
        assert db.get(Sale, sale.id).gateway_ref_id == "9002"
        assert _product(db).activation_codes_used == ["A"]

    def test_expiry_of_replaced_pix_keeps_sale_open(self, db, tenant, product, transport):
        sale = make_sale(db, tenant, payment_details={"qr_code": "NEW", "payment_id": "9002"})

        outcome = reconcile_payment(db, tenant, _payment(sale, status="expired", payment_id=9001), transport=transport)

        assert outcome == ReconcileOutcome.SUPERSEDED
        db.expire_all()
        assert db.get(Sale, sale.id).status == "pending"
        assert transport.shown == []

    def test_approved_sale_never_reverts(self, db, tenant, product, transport):
        sale = make_sale(db, tenant, status="approved")

        outcome = reconcile_payment(db, tenant, _payment(sale, status="cancelled"), transport=transport)

        assert outcome == ReconcileOutcome.ALREADY_PROCESSED
        db.expire_all()
        assert db.get(Sale, sale.id).status == "approved"

    def test_informational_status_does_not_touch_approved_sale(self, db, tenant, product, transport):
        sale = make_sale(db, tenant, status="approved", gateway_status="approved")
        reconcile_payment(db, tenant, _payment(sale, status="in_process"), transport=transport)
        db.expire_all()
        assert db.get(Sale, sale.id).gateway_status == "approved"

    def test_approval_of_cancelled_sale_needs_review(self, db, tenant, product, transport):
        sale = make_sale(db, tenant, status="cancelled")

        outcome = reconcile_payment(db, tenant, _payment(sale), transport=transport)

        assert outcome == ReconcileOutcome.MANUAL_REVIEW
        db.expire_all()
        assert db.get(Sale, sale.id).status == "cancelled"
        assert _product(db).activation_codes_used == []
        assert transport.shown == []


class TestApproveAndFulfill:
    def test_codes_run_out(self, db, tenant, transport):
        make_product(db, tenant, activation_codes=["ONLY"], stock=1)
        first = make_sale(db, tenant, user_id="1", chat_id="1")
        second = make_sale(db, tenant, user_id="2", chat_id="2")

        assert approve_and_fulfill(db, tenant, first, transport=transport) == ReconcileOutcome.APPROVED
        assert approve_and_fulfill(db, tenant, second, transport=transport) == ReconcileOutcome.APPROVED

        product = _product(db)
        assert product.activation_codes == []
        assert product.activation_codes_used == ["ONLY"]
        assert product.stock == 0
        assert db.get(Sale, second.id).status == "approved"
        assert "esgotaram" in transport.last_text

    def test_missing_product_leaves_sale_pending(self, db, tenant, transport):
        sale = make_sale(db, tenant, product_id="ghost")

        assert approve_and_fulfill(db, tenant, sale, transport=transport) == ReconcileOutcome.PRODUCT_NOT_FOUND
        db.expire_all()
        assert db.get(Sale, sale.id).status == "pending"
        assert transport.shown == []

    def test_subscription_records_purchase_and_invites(self, db, tenant, transport):
        make_product(
            db,
            tenant,
            id="SUB1",
            name="Clube VIP",
            type="subscription",
            product_subtype="standard",
            activation_codes=[],
            duration_days=30,
            is_telegram_group_access=True,
            telegram_group_id="-100123",
        )
        sale = make_sale(db, tenant, product_id="SUB1")

        approve_and_fulfill(db, tenant, sale, transport=transport)

        purchase = db.query(Purchase).one()
        assert purchase.product_name == "Clube VIP"
        assert purchase.sale_id == sale.id
        assert purchase.status == "approved"
        assert purchase.user.plan == "Clube VIP"
        assert purchase.user.telegram_id == 42
        expires_in = purchase.expires_at.replace(tzinfo=None) - purchase.purchased_at.replace(tzinfo=None)
        assert expires_in == timedelta(days=30)
        assert transport.shown[-1].buttons[0][0].url == "https://t.me/+invite"

    def test_without_transport_sale_still_approved(self, db, tenant, product, monkeypatch):
        monkeypatch.setattr("flowpay.services.payment_service.build_transport", lambda tenant, channel: None)
        sale = make_sale(db, tenant)

        assert approve_and_fulfill(db, tenant, sale) == ReconcileOutcome.APPROVED
        db.expire_all()
        assert db.get(Sale, sale.id).status == "approved"

    @pytest.mark.parametrize("channel,expected", [("telegram", True), ("whatsapp", False)])
    def test_delivery_replaces_payment_message_when_editable(self, db, tenant, product, channel, expected):
        transport = FakeTransport(supports_edit=expected)
        sale = make_sale(db, tenant, channel=channel)
        approve_and_fulfill(db, tenant, sale, transport=transport)
        assert bool(transport.edited) is expected
