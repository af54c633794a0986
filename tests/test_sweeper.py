from datetime import timedelta

from conftest import FakeTransport, make_product, make_tenant

from flowpay.models import Purchase, Sale, Tenant, User
from flowpay.services.clock import utcnow
from flowpay.services.subscription_sweeper import (
    cleanup_stale_sales,
    expire_purchases,
    expire_tenants,
    send_expiry_notifications,
)


def make_subscriber(db, tenant, expires_at, product_id="SUB1", **purchase_values) -> Purchase:
    now = utcnow()
    user = User(tenant_id=tenant.id, telegram_id=42, name="Ana", state="active", plan="Clube VIP", created_at=now)
    db.add(user)
    db.flush()
    purchase = Purchase(
        user_id=user.id,
        product_id=product_id,
        product_name="Clube VIP",
        type="subscription",
        status="approved",
        purchased_at=now - timedelta(days=30),
        expires_at=expires_at,
        **purchase_values,
    )
    db.add(purchase)
    db.commit()
    return purchase


def _group_product(db, tenant):
    return make_product(
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


class TestExpirePurchases:
    def test_expired_purchase_is_processed_once(self, db, tenant, transport):
        _group_product(db, tenant)
        now = utcnow()
        purchase = make_subscriber(db, tenant, expires_at=now - timedelta(seconds=1))
        factory = lambda tenant, channel: transport

        first = expire_purchases(db, now=now, transport_factory=factory)
        second = expire_purchases(db, now=now, transport_factory=factory)

        assert first["expired"] == 1
        assert first["kicked"] == 1
        assert second["expired"] == 0
        assert transport.kicked == [("-100123", "42")]
        assert len(transport.sent) == 1
        assert "expirou" in transport.last_text

        db.expire_all()
        assert db.get(Purchase, purchase.id).status == "expired"
        user = db.query(User).one()
        assert user.state == "expired"
        assert user.plan == "Nenhum"

    def test_future_and_lifetime_purchases_untouched(self, db, tenant, transport):
        now = utcnow()
        make_subscriber(db, tenant, expires_at=now + timedelta(days=3))
        make_subscriber(db, tenant, expires_at=None)

        result = expire_purchases(db, now=now, transport_factory=lambda tenant, channel: transport)

        assert result["expired"] == 0
        assert transport.shown == []

    def test_user_with_other_active_subscription_stays_active(self, db, tenant, transport):
        now = utcnow()
        expired = make_subscriber(db, tenant, expires_at=now - timedelta(days=1))
        db.add(
            Purchase(
                user_id=expired.user_id,
                product_id="SUB2",
                product_name="Clube Gold",
                purchased_at=now,
                expires_at=now + timedelta(days=20),
            )
        )
        db.commit()

        expire_purchases(db, now=now, transport_factory=lambda tenant, channel: transport)

        db.expire_all()
        assert db.query(User).one().state == "active"

    def test_failed_kick_is_reported_but_purchase_expires(self, db, tenant):
        _group_product(db, tenant)
        now = utcnow()
        make_subscriber(db, tenant, expires_at=now - timedelta(hours=1))
        transport = FakeTransport(kick_ok=False)

        result = expire_purchases(db, now=now, transport_factory=lambda tenant, channel: transport)

        assert result["expired"] == 1
        assert result["kicked"] == 0
        assert result["items"][0]["product"] == "Clube VIP"


class TestExpiryNotifications:
    def test_notifies_once_per_cooldown(self, db, tenant, transport):
        now = utcnow()
        make_subscriber(db, tenant, expires_at=now + timedelta(days=3))
        factory = lambda tenant, channel: transport

        first = send_expiry_notifications(db, now=now, transport_factory=factory)
        second = send_expiry_notifications(db, now=now + timedelta(hours=1), transport_factory=factory)

        assert first["sent"] == 1
        assert second["sent"] == 0
        assert "3 dias" in transport.last_text
        assert "Aviso de Expiração" in transport.last_text

    def test_outside_window_not_notified(self, db, tenant, transport):
        now = utcnow()
        make_subscriber(db, tenant, expires_at=now + timedelta(days=10))
        assert send_expiry_notifications(db, now=now, transport_factory=lambda t, c: transport)["sent"] == 0

    def test_failed_delivery_allows_retry(self, db, tenant):
        now = utcnow()
        purchase = make_subscriber(db, tenant, expires_at=now + timedelta(days=1))

        result = send_expiry_notifications(db, now=now, transport_factory=lambda t, c: FakeTransport(fail_send=True))

        assert result["sent"] == 0
        db.expire_all()
        assert db.get(Purchase, purchase.id).last_notified is None

        retry = send_expiry_notifications(db, now=now, transport_factory=lambda t, c: FakeTransport())
        assert retry["sent"] == 1


class TestExpireTenants:
    def test_deactivates_ended_plans(self, db):
        now = utcnow()
        make_tenant(db, subdomain="late", telegram_bot_token="1:late", subscription_ends_at=now - timedelta(days=1))
        make_tenant(db, subdomain="ok", telegram_bot_token="1:ok", subscription_ends_at=now + timedelta(days=1))
        make_tenant(
            db,
            subdomain="trial",
            telegram_bot_token="1:trial",
            subscription_status="trialing",
            subscription_ends_at=None,
            trial_ends_at=now - timedelta(minutes=5),
        )
        make_tenant(db, subdomain="open", telegram_bot_token="1:open", subscription_ends_at=None)

        result = expire_tenants(db, now=now)

        assert sorted(result["items"]) == ["late", "trial"]
        db.expire_all()
        statuses = {t.subdomain: t.subscription_status for t in db.query(Tenant).all()}
        assert statuses == {"late": "inactive", "ok": "active", "trial": "inactive", "open": "active"}


class TestCleanupStaleSales:
    def test_deletes_old_pending_and_cancelled(self, db, tenant):
        now = utcnow()
        old = now - timedelta(hours=25)
        for sale_id, status, created_at in [
            ("old-pending", "pending", old),
            ("old-cancelled", "cancelled", old),
            ("old-approved", "approved", old),
            ("new-pending", "pending", now),
        ]:
            db.add(
                Sale(
                    id=sale_id,
                    tenant_id=tenant.id,
                    product_id="P1",
                    user_id="42",
                    status=status,
                    payment_gateway="mercadopago",
                    created_at=created_at,
                )
            )
        db.commit()

        result = cleanup_stale_sales(db, now=now)

        assert result["deleted"] == 2
        remaining = sorted(sale.id for sale in db.query(Sale).all())
        assert remaining == ["new-pending", "old-approved"]
