"""
Payment gateway adapters.

Each provider knows how to create a remote order and how a completion claim
is authenticated: by recomputing an HMAC signature (Razorpay) or by asking
the provider for the authoritative transaction list (Cashfree).
"""
import base64
import hashlib
import hmac
import logging
from decimal import Decimal

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

SIGNATURE = "signature"
STATUS_FETCH = "status_fetch"


class GatewayNotConfigured(Exception):
    """Provider credentials are missing for this deployment."""


class GatewayError(Exception):
    """The provider could not be reached or rejected the request."""


def _build_session(methods):
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=methods,
        raise_on_status=False
    )
    session.mount('https://', HTTPAdapter(max_retries=retries))
    return session


def hmac_sha256_hex(secret, message):
    return hmac.new(secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).hexdigest()


class GatewayProvider:
    """Base adapter. Subclasses set ``name`` and ``verification``."""
    name = None
    verification = None

    @property
    def is_configured(self) -> bool:
        raise NotImplementedError

    def ensure_configured(self):
        if not self.is_configured:
            raise GatewayNotConfigured(f"{self.name} credentials are not configured")

    def create_order(self, amount: Decimal, currency: str, receipt_id: str, metadata: dict) -> dict:
        """Create the remote order; returns at least ``{"order_id": ...}``."""
        raise NotImplementedError

    def verify_webhook(self, raw_body: bytes, headers) -> bool:
        raise NotImplementedError

    def _timeout(self):
        return getattr(settings, 'GATEWAY_TIMEOUT', 15)

    def _json(self, response):
        try:
            return response.json()
        except ValueError:
            raise GatewayError(f"Invalid JSON response from {self.name}")


class RazorpayProvider(GatewayProvider):
    """HMAC-signature provider: the client proves payment with a signature we can recompute."""
    name = "razorpay"
    verification = SIGNATURE

    @property
    def key_id(self):
        return settings.RAZORPAY_KEY_ID

    @property
    def key_secret(self):
        return settings.RAZORPAY_KEY_SECRET

    @property
    def is_configured(self):
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount, currency, receipt_id, metadata):
        self.ensure_configured()
        payload = {
            "amount": int((amount.quantize(Decimal('0.01')) * 100)),  # paise
            "currency": currency,
            "receipt": receipt_id[:40],
            "notes": {k: str(v) for k, v in (metadata or {}).items()},
        }
        try:
            response = _build_session(["POST"]).post(
                f"{settings.RAZORPAY_API_BASE}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self._timeout()
            )
        except requests.RequestException as e:
            raise GatewayError(f"Razorpay order creation failed: {e}") from e

        data = self._json(response)
        if response.status_code >= 400 or not data.get('id'):
            message = (data.get('error') or {}).get('description', 'Unknown error')
            raise GatewayError(f"Razorpay order creation failed: {message}")
        return {"order_id": data['id'], "key": self.key_id}

    def expected_signature(self, order_id, payment_id):
        return hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}")

    def verify_signature(self, order_id, payment_id, signature) -> bool:
        """Timing-safe comparison of the claimed signature against ``order_id|payment_id``."""
        self.ensure_configured()
        if not (order_id and payment_id and signature):
            return False
        return hmac.compare_digest(self.expected_signature(order_id, payment_id), signature)

    def verify_webhook(self, raw_body, headers):
        secret = settings.RAZORPAY_WEBHOOK_SECRET
        signature = headers.get('X-Razorpay-Signature', '')
        if not (secret and signature):
            return False
        expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


class CashfreeProvider(GatewayProvider):
    """Status-fetch provider: completion is only trusted after asking Cashfree."""
    name = "cashfree"
    verification = STATUS_FETCH

    BASE_URLS = {
        "SANDBOX": "https://sandbox.cashfree.com/pg",
        "PRODUCTION": "https://api.cashfree.com/pg",
    }

    @property
    def is_configured(self):
        return bool(settings.CASHFREE_APP_ID and settings.CASHFREE_SECRET_KEY)

    @property
    def base_url(self):
        return self.BASE_URLS.get(settings.CASHFREE_ENVIRONMENT.upper(), self.BASE_URLS["SANDBOX"])

    def _headers(self):
        return {
            "x-client-id": settings.CASHFREE_APP_ID,
            "x-client-secret": settings.CASHFREE_SECRET_KEY,
            "x-api-version": settings.CASHFREE_API_VERSION,
            "Content-Type": "application/json",
        }

    def create_order(self, amount, currency, receipt_id, metadata):
        self.ensure_configured()
        metadata = metadata or {}
        payload = {
            "order_id": receipt_id,
            "order_amount": float(amount.quantize(Decimal('0.01'))),
            "order_currency": currency,
            "customer_details": {
                "customer_id": str(metadata.get("student_id", "")),
                "customer_email": metadata.get("email", ""),
                "customer_phone": metadata.get("phone") or "9999999999",
            },
            "order_note": metadata.get("description", ""),
        }
        if metadata.get("return_url"):
            payload["order_meta"] = {"return_url": metadata["return_url"]}
        try:
            response = _build_session(["POST"]).post(
                f"{self.base_url}/orders",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout()
            )
        except requests.RequestException as e:
            raise GatewayError(f"Cashfree order creation failed: {e}") from e

        data = self._json(response)
        if response.status_code >= 400 or not data.get('order_id'):
            raise GatewayError(f"Cashfree order creation failed: {data.get('message', 'Unknown error')}")
        return {
            "order_id": data['order_id'],
            "payment_session_id": data.get('payment_session_id'),
        }

    def fetch_payments_for_order(self, order_id):
        """Authoritative transaction list for ``order_id`` as ``[{status, provider_payment_id}]``."""
        self.ensure_configured()
        try:
            response = _build_session(["GET"]).get(
                f"{self.base_url}/orders/{order_id}/payments",
                headers=self._headers(),
                timeout=self._timeout()
            )
        except requests.RequestException as e:
            raise GatewayError(f"Cashfree status fetch failed: {e}") from e

        data = self._json(response)
        if response.status_code >= 400:
            message = data.get('message', 'Unknown error') if isinstance(data, dict) else 'Unknown error'
            raise GatewayError(f"Cashfree status fetch failed: {message}")
        if not isinstance(data, list):
            raise GatewayError("Cashfree status fetch returned an unexpected payload")
        return [
            {
                "status": str(entry.get('payment_status', '')).upper(),
                "provider_payment_id": str(entry.get('cf_payment_id', '')),
            }
            for entry in data
        ]

    def verify_webhook(self, raw_body, headers):
        secret = settings.CASHFREE_WEBHOOK_SECRET
        signature = headers.get('x-webhook-signature', '')
        timestamp = headers.get('x-webhook-timestamp', '')
        if not (secret and signature and timestamp):
            return False
        digest = hmac.new(secret.encode('utf-8'), timestamp.encode('utf-8') + raw_body, hashlib.sha256).digest()
        return hmac.compare_digest(base64.b64encode(digest).decode('ascii'), signature)


PROVIDERS = {
    RazorpayProvider.name: RazorpayProvider,
    CashfreeProvider.name: CashfreeProvider,
}


def get_provider(name) -> GatewayProvider:
    try:
        return PROVIDERS[name]()
    except KeyError:
        raise GatewayNotConfigured(f"Unknown payment gateway: {name}")
