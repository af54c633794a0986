import hashlib
import hmac
from unittest.mock import patch

from flowpay.services.payment_service import (
    check_webhook_authenticity,
    compute_signature,
    parse_signature_header,
    verify_signature,
)

SECRET = "whsec-prod"


def _header(data_id="9001", request_id="req-1", ts="1700000000", secret=SECRET) -> str:
    return f"ts={ts},v1={compute_signature(secret, data_id, request_id, ts)}"


class TestParseSignatureHeader:
    def test_parses_ts_and_v1(self):
        assert parse_signature_header("ts=170,v1=abc") == ("170", "abc")

    def test_tolerates_spaces_and_order(self):
        assert parse_signature_header(" v1=abc , ts=170 ") == ("170", "abc")

    def test_malformed(self):
        assert parse_signature_header("v1=abc") is None
        assert parse_signature_header("garbage") is None
        assert parse_signature_header(None) is None


class TestComputeSignature:
    def test_known_manifest(self):
        expected = hmac.new(SECRET.encode(), b"id:9001;request-id:req-1;ts:1700000000;", hashlib.sha256).hexdigest()
        assert compute_signature(SECRET, "9001", "req-1", "1700000000") == expected

    def test_depends_on_data_id(self):
        assert compute_signature(SECRET, "9001", "req-1", "1") != compute_signature(SECRET, "9002", "req-1", "1")


class TestVerifySignature:
    def test_valid(self):
        assert verify_signature(SECRET, _header(), "req-1", "9001").ok is True

    def test_missing_headers(self):
        result = verify_signature(SECRET, None, "req-1", "9001")
        assert result.error_code == "missing_signature"
        assert verify_signature(SECRET, _header(), None, "9001").error_code == "missing_signature"

    def test_flipped_byte(self):
        header = _header()
        flipped = header[:-1] + ("0" if header[-1] != "0" else "1")
        assert verify_signature(SECRET, flipped, "req-1", "9001").error_code == "invalid_signature"

    def test_wrong_secret(self):
        result = verify_signature(SECRET, _header(secret="other"), "req-1", "9001")
        assert result.error_code == "invalid_signature"

    def test_different_data_id(self):
        assert verify_signature(SECRET, _header(data_id="1"), "req-1", "9001").ok is False


class TestWebhookAuthenticity:
    def test_valid_signature_passes(self):
        assert check_webhook_authenticity("mercadopago", SECRET, _header(), "req-1", "9001", scope="acme") is None

    def test_missing_headers_is_401(self):
        outcome = check_webhook_authenticity("mercadopago", SECRET, None, None, "9001", scope="acme")
        assert outcome.status_code == 401

    def test_mismatch_is_403(self):
        outcome = check_webhook_authenticity("mercadopago", SECRET, _header(secret="x"), "req-1", "9001", scope="acme")
        assert outcome.status_code == 403
        assert outcome.success is False

    def test_sandbox_is_not_checked(self):
        assert check_webhook_authenticity("sandmercadopago", SECRET, None, None, "9001", scope="acme") is None

    def test_no_secret_proceeds(self):
        assert check_webhook_authenticity("mercadopago", None, None, None, "9001", scope="acme") is None

    @patch("flowpay.services.payment_service.alert_warning")
    def test_no_secret_alert_is_keyed_per_tenant_gateway(self, mock_alert):
        check_webhook_authenticity("mercadopago", None, None, None, "9001", scope="acme")
        check_webhook_authenticity("mercadopago", None, None, None, "9002", scope="acme")

        keys = [call.kwargs["dedupe_key"] for call in mock_alert.call_args_list]
        assert keys == ["unsigned-webhook:acme:mercadopago", "unsigned-webhook:acme:mercadopago"]
