"""Tests for RazorpayRefundClient against a mocked transport."""
import json

import httpx
import pytest

from billing.models import RefundSpeed
from billing.services.refunds.provider import ProviderError, RazorpayRefundClient, parse_speed_processed


def _client(handler):
    client = RazorpayRefundClient(key_id="rzp_test", key_secret="secret", base_url="https://api.test/v1")
    client._client = httpx.Client(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
    return client


class TestCreateRefund:
    def test_success_maps_refund_entity(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "id": "rfnd_1", "amount": 500, "status": "processed",
                "speed_processed": "instant", "created_at": 1718000000,
            })

        refund = _client(handler).create_refund("pay_1", 500, RefundSpeed.OPTIMUM, notes="dup", receipt="r-1")

        assert seen["path"] == "/v1/payments/pay_1/refund"
        assert seen["body"] == {"amount": 500, "speed": "optimum", "notes": {"comment": "dup"}, "receipt": "r-1"}
        assert refund.provider_refund_id == "rfnd_1"
        assert refund.status == "processed"
        assert refund.speed_processed is RefundSpeed.OPTIMUM
        assert refund.created_at is not None

    def test_rejection_carries_code_and_field(self):
        def handler(request):
            return httpx.Response(400, json={"error": {
                "code": "BAD_REQUEST_ERROR",
                "description": "The refund amount exceeds the payment amount",
                "field": "amount",
            }})

        with pytest.raises(ProviderError) as exc:
            _client(handler).create_refund("pay_1", 999999, RefundSpeed.NORMAL)

        assert exc.value.code == "BAD_REQUEST_ERROR"
        assert exc.value.status_code == 400
        assert exc.value.description == "The refund amount exceeds the payment amount (Field: amount)"

    def test_network_error_is_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderError) as exc:
            _client(handler).create_refund("pay_1", 100, RefundSpeed.NORMAL)
        assert exc.value.code == "NETWORK_ERROR"

    def test_non_json_error_body(self):
        with pytest.raises(ProviderError) as exc:
            _client(lambda request: httpx.Response(400, text="bad gateway page")).create_refund(
                "pay_1", 100, RefundSpeed.NORMAL
            )
        assert exc.value.code == "PROVIDER_ERROR"

    def test_reference_travels_in_notes(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "rfnd_2", "amount": 100, "status": "pending",
                                             "notes": {"refund_id": "local-1"}})

        refund = _client(handler).create_refund("pay_1", 100, RefundSpeed.NORMAL, reference="local-1")

        assert seen["body"]["notes"] == {"refund_id": "local-1"}
        assert refund.reference == "local-1"


class TestFetchRefunds:
    def test_lists_refund_entities(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"entity": "collection", "count": 2, "items": [
                {"id": "rfnd_1", "amount": 300, "status": "processed", "notes": {"refund_id": "local-1"}},
                {"id": "rfnd_2", "amount": 200, "status": "failed", "notes": []},
            ]})

        refunds = _client(handler).fetch_refunds("pay_1")

        assert (seen["method"], seen["path"]) == ("GET", "/v1/payments/pay_1/refunds")
        assert [(r.provider_refund_id, r.status, r.reference) for r in refunds] == [
            ("rfnd_1", "processed", "local-1"),
            ("rfnd_2", "failed", None),
        ]

    def test_empty_collection(self):
        refunds = _client(lambda request: httpx.Response(200, json={"count": 0, "items": []})).fetch_refunds("pay_1")
        assert refunds == []

    def test_server_error_is_provider_error(self):
        with pytest.raises(ProviderError) as exc:
            _client(lambda request: httpx.Response(503, json={"error": {"code": "SERVER_ERROR"}})).fetch_refunds("pay_1")
        assert exc.value.status_code == 503


@pytest.mark.parametrize("raw, expected", [
    ("instant", RefundSpeed.OPTIMUM),
    ("normal", RefundSpeed.NORMAL),
    (None, None),
    ("weird", None),
])
def test_parse_speed_processed(raw, expected):
    assert parse_speed_processed(raw) is expected
