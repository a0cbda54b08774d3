"""Klient Shopify Admin GraphQL – metafieldy bngc (httpx.MockTransport, bez sieci)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from shopify_client import (
    AccessTokenProvider,
    CommerceError,
    ProductEligibility,
    ShopifyClient,
    StaticAccessTokenProvider,
    parse_cost_amount,
    to_gid,
)


class RecordingTokenProvider(AccessTokenProvider):
    def __init__(self) -> None:
        self.invalidated = 0

    def get_token(self) -> str:
        return "shpat_test"

    def invalidate(self) -> None:
        self.invalidated += 1


def _client(handler, provider=None) -> ShopifyClient:
    return ShopifyClient(
        shop="bngc-test.myshopify.com",
        token_provider=provider or StaticAccessTokenProvider("shpat_test"),
        api_version="2025-01",
        transport=httpx.MockTransport(handler),
        clock=lambda: datetime(2026, 1, 2, 3, 4, 5, 678, tzinfo=timezone.utc),
    )


def _json(data, status_code=200):
    return httpx.Response(status_code, json=data)


class TestHelpers:
    def test_to_gid(self):
        assert to_gid("Order", 1001) == "gid://shopify/Order/1001"
        assert to_gid("Order", "gid://shopify/Order/7") == "gid://shopify/Order/7"

    @pytest.mark.parametrize(
        "raw, expected",
        [("12.50", Decimal("12.50")), (" 3 ", Decimal("3")), ("abc", None), (None, None), ("NaN", None)],
    )
    def test_parse_cost_amount(self, raw, expected):
        assert parse_cost_amount(raw) == expected

    def test_static_provider_rejects_empty_token(self):
        with pytest.raises(ValueError):
            StaticAccessTokenProvider("")


class TestIsOrderAlreadyFulfilled:
    def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["token"] = request.headers["X-Shopify-Access-Token"]
            seen["body"] = json.loads(request.content)
            return _json({"data": {"order": {"id": "x", "sent": {"value": "true"}}}})

        assert _client(handler).is_order_already_fulfilled("1001") is True
        assert seen["url"] == "https://bngc-test.myshopify.com/admin/api/2025-01/graphql.json"
        assert seen["token"] == "shpat_test"
        assert seen["body"]["variables"] == {"id": "gid://shopify/Order/1001", "namespace": "bngc"}

    def test_missing_metafield_means_not_sent(self):
        handler = lambda request: _json({"data": {"order": {"id": "x", "sent": None}}})
        assert _client(handler).is_order_already_fulfilled("1001") is False

    def test_false_value(self):
        handler = lambda request: _json({"data": {"order": {"id": "x", "sent": {"value": "false"}}}})
        assert _client(handler).is_order_already_fulfilled("1001") is False

    def test_unknown_order_raises(self):
        handler = lambda request: _json({"data": {"order": None}})
        with pytest.raises(CommerceError):
            _client(handler).is_order_already_fulfilled("1001")

    def test_graphql_errors_raise_with_detail(self):
        errors = [{"message": "Throttled"}]
        handler = lambda request: _json({"errors": errors})
        with pytest.raises(CommerceError) as exc_info:
            _client(handler).is_order_already_fulfilled("1001")
        assert exc_info.value.detail == errors

    def test_http_error_status(self):
        handler = lambda request: httpx.Response(502, text="bad gateway")
        with pytest.raises(CommerceError) as exc_info:
            _client(handler).is_order_already_fulfilled("1001")
        assert exc_info.value.detail == "bad gateway"

    def test_unauthorized_invalidates_token(self):
        provider = RecordingTokenProvider()
        handler = lambda request: httpx.Response(401, text="unauthorized")
        with pytest.raises(CommerceError):
            _client(handler, provider).is_order_already_fulfilled("1001")
        assert provider.invalidated == 1

    def test_timeout_is_commerce_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(CommerceError):
            _client(handler).is_order_already_fulfilled("1001")


class TestGetProductEligibility:
    def test_enabled_with_cost(self):
        handler = lambda request: _json(
            {
                "data": {
                    "product": {
                        "id": "gid://shopify/Product/11",
                        "enabled": {"value": "true"},
                        "costAmount": {"value": "25.00"},
                    }
                }
            }
        )
        assert _client(handler).get_product_eligibility("11") == ProductEligibility(
            enabled=True, cost_amount=Decimal("25.00")
        )

    def test_missing_fields_default(self):
        handler = lambda request: _json(
            {"data": {"product": {"id": "x", "enabled": None, "costAmount": None}}}
        )
        assert _client(handler).get_product_eligibility("11") == ProductEligibility()

    def test_unparseable_values_default(self):
        handler = lambda request: _json(
            {"data": {"product": {"id": "x", "enabled": {"value": "yes?"}, "costAmount": {"value": "n/a"}}}}
        )
        assert _client(handler).get_product_eligibility("11") == ProductEligibility()

    def test_missing_product_is_not_eligible(self):
        handler = lambda request: _json({"data": {"product": None}})
        assert _client(handler).get_product_eligibility("11") == ProductEligibility()


class TestRecordFulfillment:
    def test_writes_three_metafields_in_one_call(self):
        calls = []

        def handler(request):
            calls.append(json.loads(request.content))
            return _json({"data": {"metafieldsSet": {"metafields": [], "userErrors": []}}})

        _client(handler).record_fulfillment("1001", ["ABCD****WXYZ", "1234****7890"])

        assert len(calls) == 1
        metafields = {m["key"]: m for m in calls[0]["variables"]["metafields"]}
        assert set(metafields) == {"sent", "reference_nos", "sent_at"}
        assert metafields["sent"]["value"] == "true"
        assert metafields["sent"]["type"] == "boolean"
        assert metafields["reference_nos"]["value"] == "ABCD****WXYZ\n1234****7890"
        assert metafields["reference_nos"]["type"] == "multi_line_text_field"
        assert metafields["sent_at"]["value"] == "2026-01-02T03:04:05+00:00"
        assert metafields["sent_at"]["type"] == "date_time"
        for m in metafields.values():
            assert m["ownerId"] == "gid://shopify/Order/1001"
            assert m["namespace"] == "bngc"

    def test_user_errors_raise(self):
        user_errors = [{"field": ["metafields", "0"], "message": "Access denied", "code": "INVALID"}]
        handler = lambda request: _json(
            {"data": {"metafieldsSet": {"metafields": None, "userErrors": user_errors}}}
        )
        with pytest.raises(CommerceError) as exc_info:
            _client(handler).record_fulfillment("1001", ["ABCD****WXYZ"])
        assert exc_info.value.detail == user_errors

    def test_missing_result_raises(self):
        handler = lambda request: _json({"data": {"metafieldsSet": None}})
        with pytest.raises(CommerceError):
            _client(handler).record_fulfillment("1001", [])
