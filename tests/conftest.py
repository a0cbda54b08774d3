"""Wspólne fixture'y i atrapy zewnętrznych systemów (bez sieci)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pytest

from database import session as db_session
from email_utils import NotificationError, Notifier
from fulfillment import FulfillmentPipeline
from giftcard_client import GiftCardIssuer, GiftCardResult, IssuanceError
from shopify_client import CommerceClient, CommerceError, ProductEligibility

WEBHOOK_SECRET = "test-webhook-secret"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Poprawny nagłówek X-Shopify-Hmac-Sha256 dla body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def order_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": 1001,
        "admin_graphql_api_id": "gid://shopify/Order/1001",
        "name": "#1001",
        "email": "buyer@example.com",
        "line_items": [
            {"product_id": 11, "quantity": 1, "price": "10.00"},
        ],
    }
    payload.update(overrides)
    return payload


def order_body(**overrides: Any) -> bytes:
    return json.dumps(order_payload(**overrides)).encode()


class FakeCommerce(CommerceClient):
    def __init__(
        self,
        products: Optional[Dict[str, ProductEligibility]] = None,
        sent: Optional[set] = None,
        fail_record: bool = False,
        fail_read: bool = False,
    ) -> None:
        self.products = products or {}
        self.sent = sent if sent is not None else set()
        self.fail_record = fail_record
        self.fail_read = fail_read
        self.recorded: Dict[str, List[str]] = {}
        self.eligibility_calls: List[str] = []

    def is_order_already_fulfilled(self, order_id: str) -> bool:
        if self.fail_read:
            raise CommerceError("read failed", detail="boom")
        return order_id in self.sent

    def get_product_eligibility(self, product_id: str) -> ProductEligibility:
        self.eligibility_calls.append(product_id)
        return self.products.get(product_id, ProductEligibility())

    def record_fulfillment(self, order_id: str, masked_references: Sequence[str]) -> None:
        if self.fail_record:
            raise CommerceError("metafieldsSet rejected", detail=[{"message": "denied"}])
        self.recorded[order_id] = list(masked_references)
        self.sent.add(order_id)


class FakeIssuer(GiftCardIssuer):
    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.calls: List[tuple] = []
        self.fail_after = fail_after

    def issue(self, currency_token: str, amount: Decimal) -> GiftCardResult:
        if self.fail_after is not None and len(self.calls) >= self.fail_after:
            raise IssuanceError("insufficient balance")
        self.calls.append((currency_token, amount))
        n = len(self.calls)
        return GiftCardResult(
            code=f"CODE-{n:04d}",
            reference_no=f"REF{n:010d}",
            expired_time=None,
        )


class FakeNotifier(Notifier):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    def send(self, recipient, subject, body_text, body_html=None) -> None:
        if self.fail:
            raise NotificationError("smtp down")
        self.sent.append(
            {"recipient": recipient, "subject": subject, "text": body_text, "html": body_html}
        )


@pytest.fixture()
def commerce() -> FakeCommerce:
    return FakeCommerce(
        products={
            "11": ProductEligibility(enabled=True),
            "22": ProductEligibility(enabled=True, cost_amount=Decimal("25")),
            "33": ProductEligibility(enabled=False),
        }
    )


@pytest.fixture()
def issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def pipeline(commerce, issuer, notifier) -> FulfillmentPipeline:
    return FulfillmentPipeline(
        webhook_secret=WEBHOOK_SECRET,
        commerce=commerce,
        issuer=issuer,
        notifier=notifier,
        currency_token="USDT",
    )


@pytest.fixture()
def audit_db(tmp_path):
    """Log audytu w pliku SQLite – sprzątany po teście."""
    db_session.init_db(f"sqlite:///{tmp_path / 'audit.db'}")
    yield
    db_session.dispose_db()
