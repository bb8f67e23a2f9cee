"""Payment collaborator clients.

The storefront never handles card data. It asks the provider for a payment
session (a token the browser widget is rendered with), later asks whether the
session was paid, and can refund a paid session as a compensating action.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

import httpx

from storefront.errors import PaymentError

logger = logging.getLogger(__name__)

APPROVED = 'approved'
REJECTED = 'rejected'
PENDING = 'pending'


@dataclass
class ManifestLine:
    """One line of the itemized manifest sent to the provider."""

    title: str
    unit_price: Decimal
    quantity: int
    currency_id: str = 'USD'
    description: str | None = None
    picture_url: str | None = None

    def to_dict(self) -> dict:
        return {
            'title': self.title,
            'unit_price': float(self.unit_price),
            'quantity': self.quantity,
            'currency_id': self.currency_id,
            'description': self.description,
            'picture_url': self.picture_url,
        }


@dataclass
class ReturnUrls:
    success: str
    failure: str
    pending: str

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'failure': self.failure,
            'pending': self.pending,
        }


@dataclass
class PaymentSession:
    token: str
    redirect_url: str | None = None


@dataclass
class PaymentOutcome:
    status: str
    reference: str | None = None

    @property
    def approved(self) -> bool:
        return self.status == APPROVED


class MockPaymentGateway:
    """In-process gateway that approves every session it issued."""

    def __init__(self):
        self.sessions = {}
        self.refunded = set()

    def create_session(self, manifest, return_urls, external_reference):
        token = f"MOCK_{uuid.uuid4().hex}"
        self.sessions[token] = {
            'manifest': [line.to_dict() for line in manifest],
            'back_urls': return_urls.to_dict(),
            'external_reference': str(external_reference),
        }
        logger.info(
            "Payment session (Mock) %s for order %s",
            token,
            external_reference)
        return PaymentSession(token=token)

    def fetch_outcome(self, token):
        if token not in self.sessions:
            return PaymentOutcome(status=REJECTED)
        return PaymentOutcome(status=APPROVED, reference=f"{token}_PAID")

    def refund(self, token):
        logger.info("Refund (Mock) for session %s", token)
        self.refunded.add(token)


@dataclass
class HttpPaymentGateway:
    """Checkout-preference style REST provider (MercadoPago API shape)."""

    base_url: str
    access_token: str
    timeout: float = 10.0
    transport: httpx.BaseTransport | None = field(default=None, repr=False)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={'Authorization': f"Bearer {self.access_token}"},
            transport=self.transport,
        )

    def _request(self, method, url, **kwargs) -> dict:
        try:
            with self._client() as client:
                response = client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Payment provider unreachable: %s", e)
            raise PaymentError('Payment provider unavailable') from e

        if response.status_code >= 400:
            logger.error(
                "Payment provider returned %s for %s %s",
                response.status_code,
                method,
                url)
            raise PaymentError(
                f"Payment provider error ({response.status_code})")
        try:
            return response.json()
        except ValueError as e:
            raise PaymentError('Malformed payment provider response') from e

    def create_session(self, manifest, return_urls, external_reference):
        data = self._request('POST', '/checkout/preferences', json={
            'items': [line.to_dict() for line in manifest],
            'back_urls': return_urls.to_dict(),
            'auto_return': 'approved',
            'external_reference': str(external_reference),
        })
        token = data.get('id')
        if not token:
            raise PaymentError('Payment provider returned no session id')
        return PaymentSession(token=token, redirect_url=data.get('init_point'))

    def _find_payment(self, token):
        data = self._request(
            'GET', '/v1/payments/search', params={'preference_id': token})
        results = data.get('results') or []
        approved = [r for r in results if r.get('status') == APPROVED]
        if approved:
            return approved[0]
        return results[0] if results else None

    def fetch_outcome(self, token):
        payment = self._find_payment(token)
        if payment is None:
            return PaymentOutcome(status=PENDING)
        status = payment.get('status') or PENDING
        if status not in (APPROVED, PENDING):
            status = REJECTED
        return PaymentOutcome(status=status, reference=str(payment.get('id')))

    def refund(self, token):
        payment = self._find_payment(token)
        if payment is None or payment.get('status') != APPROVED:
            logger.warning("No approved payment to refund for %s", token)
            return
        self._request('POST', f"/v1/payments/{payment['id']}/refunds", json={})


def build_gateway(config):
    kind = config.get('PAYMENT_GATEWAY', 'mock')
    if kind == 'http':
        return HttpPaymentGateway(
            base_url=config['PAYMENT_API_URL'],
            access_token=config['PAYMENT_ACCESS_TOKEN'],
            timeout=config.get('PAYMENT_TIMEOUT_SECONDS', 10.0),
        )
    if kind != 'mock':
        raise ValueError(f"Unknown payment gateway: {kind}")
    return MockPaymentGateway()


def get_gateway():
    from flask import current_app

    return current_app.extensions['payment_gateway']
