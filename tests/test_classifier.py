"""Tests for event classification, tenant extraction and mobile money detection."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from webhook_inspector.webhooks.classifier import (
    UNKNOWN_EVENT,
    classify_event,
    detect_mobile_money_provider,
    extract_tenant_id,
)

json_trees = st.recursive(
    st.none() | st.booleans() | st.integers() | st.floats(allow_nan=False) | st.text(max_size=20),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=10), children, max_size=4),
    max_leaves=20,
)


class TestClassifyEventPrecedence:
    """Explicit fields beat headers, headers beat structural inference."""

    def test_event_field_wins(self):
        payload = {"event": "order.created", "type": "ignored", "data": {"type": "ignored"}}
        assert classify_event(payload, {"x-event-type": "ignored"}) == "order.created"

    def test_type_field_next(self):
        assert classify_event({"type": "payment.completed", "data": {"type": "x"}}) == "payment.completed"

    def test_data_type_next(self):
        assert classify_event({"data": {"type": "customer.created"}}) == "customer.created"

    def test_x_event_type_header(self):
        assert classify_event({"order": {"id": 1}}, {"X-Event-Type": "order.shipped"}) == "order.shipped"

    def test_x_genuka_event_header(self):
        assert classify_event({}, [("x-genuka-event", "product.deleted")]) == "product.deleted"

    def test_x_event_type_beats_x_genuka_event(self):
        headers = {"x-genuka-event": "second", "x-event-type": "first"}
        assert classify_event({}, headers) == "first"

    def test_blank_explicit_value_falls_through(self):
        assert classify_event({"event": "  ", "type": "order.created"}) == "order.created"

    def test_numeric_event_is_stringified(self):
        assert classify_event({"event": 42}) == "42"

    def test_boolean_event_ignored(self):
        assert classify_event({"event": True}) == UNKNOWN_EVENT


class TestStructuralInference:
    def test_order_with_status(self):
        assert classify_event({"order": {"id": 1, "status": "Completed"}}) == "order.completed"

    def test_order_without_status(self):
        assert classify_event({"order": {"id": 1}}) == "order.updated"

    def test_customer_with_id(self):
        assert classify_event({"customer": {"id": "c1"}}) == "customer.updated"

    def test_customer_without_id(self):
        assert classify_event({"customer": {"email": "a@b.cm"}}) == "customer.created"

    def test_payment(self):
        assert classify_event({"payment": {"amount": 5000}}) == "payment.created"

    def test_product(self):
        assert classify_event({"product": {"name": "Ndolé"}}) == "product.updated"

    def test_nothing_matches(self):
        assert classify_event({"hello": "world"}) == UNKNOWN_EVENT

    @pytest.mark.parametrize("payload", [None, [], "text", 12, True, [{"event": "x"}]])
    def test_non_object_payload(self, payload):
        assert classify_event(payload) == UNKNOWN_EVENT

    @given(json_trees)
    @settings(max_examples=200)
    def test_total_over_arbitrary_trees(self, payload):
        result = classify_event(payload, {"x-other": "1"})
        assert isinstance(result, str) and result


class TestExtractTenantId:
    def test_top_level_company_id(self):
        assert extract_tenant_id({"company_id": "acme", "data": {"company_id": "other"}}) == "acme"

    def test_nested_under_data(self):
        assert extract_tenant_id({"event": "order.created", "data": {"company_id": "acme"}}) == "acme"

    def test_shop_id_alias(self):
        assert extract_tenant_id({"shop_id": 77}) == "77"

    def test_header_fallback(self):
        assert extract_tenant_id({}, {"X-Company-Id": "hdr"}) == "hdr"

    def test_payload_beats_header(self):
        assert extract_tenant_id({"tenant_id": "body"}, {"x-company-id": "hdr"}) == "body"

    def test_absent(self):
        assert extract_tenant_id({"event": "x"}) is None

    @given(json_trees)
    @settings(max_examples=200)
    def test_total_over_arbitrary_trees(self, payload):
        result = extract_tenant_id(payload)
        assert result is None or isinstance(result, str)


class TestMobileMoneyDetection:
    @pytest.mark.parametrize(
        "payload,provider",
        [
            ({"payment": {"method": "Orange Money"}}, "Orange Money"),
            ({"ussd": "#150*1#"}, "Orange Money"),
            ({"payment": {"method": "MTN MoMo"}}, "MTN Mobile Money"),
            ({"note": "#126#"}, "MTN Mobile Money"),
            ({"payment": {"provider": "Express Union"}}, "Express Union Mobile"),
            ({"bank": "UBA", "channel": "mobile"}, "UBA Mobile Banking"),
            ({"payment": {"method": "card"}}, None),
            (None, None),
        ],
    )
    def test_detection(self, payload, provider):
        assert detect_mobile_money_provider(payload) == provider
