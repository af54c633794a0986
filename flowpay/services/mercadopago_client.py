from dataclasses import dataclass
from typing import Optional

import httpx

from flowpay.config import settings
from flowpay.logging_config import get_logger

logger = get_logger("mercadopago_client")

PRODUCTION_GATEWAY = "mercadopago"
SANDBOX_GATEWAY = "sandmercadopago"
SUPPORTED_GATEWAYS = (PRODUCTION_GATEWAY, SANDBOX_GATEWAY)


class PaymentGatewayError(Exception):
    """Gateway call failed. `retryable` marks timeouts, network and 5xx/429 errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class GatewayNotConfiguredError(Exception):
    pass


@dataclass
class GatewayCredentials:
    access_token: str
    webhook_secret: Optional[str]
    sandbox: bool
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    pending_url: Optional[str] = None

    @property
    def gateway_name(self) -> str:
        """Path segment of the webhook that receives this account's notifications."""
        return SANDBOX_GATEWAY if self.sandbox else PRODUCTION_GATEWAY


def _resolve_sandbox(mode: Optional[str], gateway: Optional[str]) -> bool:
    if gateway == SANDBOX_GATEWAY:
        return True
    if gateway == PRODUCTION_GATEWAY:
        return False
    return (mode or "sandbox") == "sandbox"


def tenant_credentials(tenant, gateway: Optional[str] = None) -> GatewayCredentials:
    """Tenant account credentials for `gateway`, or for the configured mode when not given."""
    mp_settings = tenant.mercadopago_settings
    if not mp_settings:
        raise GatewayNotConfiguredError("O vendedor não configurou o Mercado Pago.")

    sandbox = _resolve_sandbox(mp_settings.get("mode"), gateway)
    prefix = "sandbox" if sandbox else "production"
    access_token = mp_settings.get(f"{prefix}_access_token")
    if not access_token:
        raise GatewayNotConfiguredError(
            f"As credenciais para o modo {prefix} do Mercado Pago não foram configuradas."
        )

    return GatewayCredentials(
        access_token=access_token,
        webhook_secret=mp_settings.get(f"{prefix}_webhook_secret") or None,
        sandbox=sandbox,
        success_url=mp_settings.get("success_url") or None,
        failure_url=mp_settings.get("failure_url") or None,
        pending_url=mp_settings.get("pending_url") or None,
    )


def platform_credentials(gateway: Optional[str] = None) -> GatewayCredentials:
    """Platform account credentials, used for tenant plan payments."""
    sandbox = _resolve_sandbox(settings.platform_mp_mode, gateway)
    if sandbox:
        access_token = settings.platform_mp_sandbox_access_token
        secret = settings.platform_mp_sandbox_webhook_secret
    else:
        access_token = settings.platform_mp_production_access_token
        secret = settings.platform_mp_production_webhook_secret

    if not access_token:
        raise GatewayNotConfiguredError("Platform Mercado Pago credentials are not configured.")
    return GatewayCredentials(access_token=access_token, webhook_secret=secret or None, sandbox=sandbox)


class MercadoPagoClient:
    """Minimal Mercado Pago REST client."""

    BASE_URL = "https://api.mercadopago.com"

    def __init__(self, access_token: str, timeout: Optional[float] = None):
        self.access_token = access_token
        self.timeout = timeout or settings.http_timeout_seconds

    def _request(self, method: str, path: str, json: Optional[dict] = None, headers: Optional[dict] = None) -> dict:
        request_headers = {"Authorization": f"Bearer {self.access_token}"}
        if headers:
            request_headers.update(headers)

        try:
            with httpx.Client(base_url=self.BASE_URL, timeout=self.timeout) as client:
                response = client.request(method, path, json=json, headers=request_headers)
        except httpx.TimeoutException as e:
            raise PaymentGatewayError(f"Mercado Pago timeout: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Mercado Pago request failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            logger.warning(
                "Mercado Pago API error",
                extra={"context": {"path": path, "status": response.status_code, "body": response.text[:500]}},
            )
            raise PaymentGatewayError(
                f"Mercado Pago returned HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=retryable,
            )

        try:
            return response.json()
        except ValueError as e:
            raise PaymentGatewayError("Mercado Pago returned invalid JSON", retryable=True) from e

    def get_payment(self, payment_id: str) -> dict:
        return self._request("GET", f"/v1/payments/{payment_id}")

    def create_preference(self, body: dict) -> dict:
        return self._request("POST", "/checkout/preferences", json=body)

    def create_payment(self, body: dict, idempotency_key: str) -> dict:
        return self._request("POST", "/v1/payments", json=body, headers={"X-Idempotency-Key": idempotency_key})
