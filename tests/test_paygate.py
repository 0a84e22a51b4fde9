import json

import pytest

from vaultshop.errors import InvalidSignature, MalformedEvent
from vaultshop.paygate import SignedJsonAdapter, parse_event, sign_payload


def test_parse_gateway_keys():
    event = parse_event({
        "order_id": "ORD-1",
        "amount": 20000,
        "status": "completed",
        "payment_method": "qris",
        "completed_at": 1735787045,
    })
    assert event.order_id == "ORD-1"
    assert event.amount == 20000
    assert event.status == "completed"
    assert event.payment_method == "qris"
    assert event.completed_at == 1735787045.0


def test_parse_camel_case_aliases():
    event = parse_event({
        "orderId": "ORD-1",
        "amount": "20000",
        "status": " Completed ",
        "paymentMethod": "bank_transfer",
        "completedAt": "2025-01-02T03:04:05Z",
    })
    assert event.order_id == "ORD-1"
    assert event.amount == 20000
    assert event.status == "completed"
    assert event.payment_method == "bank_transfer"
    assert event.completed_at == 1735787045.0


def test_missing_fields_are_named():
    with pytest.raises(MalformedEvent) as info:
        parse_event({"amount": 1})
    assert str(info.value) == "missing required fields: order_id, status"


@pytest.mark.parametrize("amount", [True, 12.5, "12a", "-5", [1]])
def test_bad_amount(amount):
    with pytest.raises(MalformedEvent):
        parse_event({"order_id": "ORD-1", "amount": amount,
                     "status": "completed"})


def test_bad_completed_at():
    with pytest.raises(MalformedEvent):
        parse_event({"order_id": "ORD-1", "amount": 1,
                     "status": "completed", "completed_at": "yesterday"})


def test_signed_adapter_accepts_valid_signature():
    adapter = SignedJsonAdapter("whsec_test")
    body = json.dumps({"order_id": "ORD-1", "amount": 1,
                       "status": "completed"}).encode()
    headers = {"x-webhook-signature": sign_payload(body, "whsec_test")}
    event = adapter.parse(adapter.verify_webhook(body, headers))
    assert event.order_id == "ORD-1"
    assert adapter.verifies


def test_signed_adapter_rejects_bad_signature():
    adapter = SignedJsonAdapter("whsec_test")
    body = b'{"order_id": "ORD-1", "amount": 1, "status": "completed"}'
    with pytest.raises(InvalidSignature):
        adapter.verify_webhook(
            body, {"x-webhook-signature": sign_payload(body, "other")}
        )
    with pytest.raises(InvalidSignature):
        adapter.verify_webhook(body, {})


def test_unsigned_mode_skips_verification():
    adapter = SignedJsonAdapter(None)
    assert not adapter.verifies
    event = adapter.verify_webhook(
        b'{"order_id": "ORD-1", "amount": 1, "status": "completed"}', {}
    )
    assert event["order_id"] == "ORD-1"


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b"\xff\xfe"])
def test_body_must_be_json_object(body):
    with pytest.raises(MalformedEvent):
        SignedJsonAdapter(None).verify_webhook(body, {})
