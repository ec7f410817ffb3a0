import asyncio
import json
from decimal import Decimal

import pytest

from storefront import crud, models
from storefront.database import SessionLocal
from storefront.errors import ProviderUnreachable
from storefront.webhooks import (
    WebhookReconciler,
    decode_webhook,
    normalize_status,
    parse_payload,
)

from conftest import sign


class RecordingDispatcher:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    async def send_payment_success_sms(self, phone, order_number):
        self.calls.append((phone, order_number))
        if self.fail:
            raise ProviderUnreachable("provider down")
        return {"ErrorCode": 0}


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def reconciler(gateway_settings, dispatcher):
    return WebhookReconciler(gateway_settings, dispatcher)


@pytest.fixture
def payment(db, pending_order):
    created = crud.insert_payment(db, pending_order.id, "moneyspace_qr", pending_order.total_amount)
    db.commit()
    return created


def deliver(reconciler, db, payload, signature=None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    if signature is None:
        signature = sign(body)

    async def run():
        result = await reconciler.handle_webhook(db, body, signature)
        await reconciler.wait_for_notifications()
        return result

    result = asyncio.run(run())
    db.expire_all()
    return result


# Decoding

def test_decode_moneyspace_shape():
    event = decode_webhook({
        "transectionID": "MSTRF1",
        "orderid": "ORD2024010112345",
        "status": "paysuccess",
        "amount": "1,200.00",
    })

    assert event.shape == "moneyspace"
    assert event.order_reference == "ORD2024010112345"
    assert event.transaction_id == "MSTRF1"
    assert event.status == "success"
    assert event.amount == Decimal("1200.00")


def test_decode_moneyspec_shape():
    event = decode_webhook({"id": "TX9", "invoiceNo": "ORD-20240101-12345", "status": "FAILED"})

    assert event.shape == "moneyspec"
    assert event.transaction_id == "TX9"
    assert event.status == "failed"


def test_decode_generic_shape_prefers_first_key():
    event = decode_webhook({
        "order_id": "ORD-20240101-12345",
        "order_number": "ORD-OTHER",
        "payment_status": "ok",
        "transaction_id": "TXN1",
    })

    assert event.shape == "generic"
    assert event.order_reference == "ORD-20240101-12345"
    assert event.status == "success"
    assert event.amount is None


def test_decode_without_order_reference():
    event = decode_webhook({"status": "success"})

    assert event.order_reference is None


@pytest.mark.parametrize("raw,expected", [
    ("success", "success"),
    ("SUCCESS", "success"),
    ("PaySuccess", "success"),
    (" ok ", "success"),
    ("fail", "failed"),
    ("pending", "failed"),
    (None, "failed"),
])
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_parse_form_encoded_body():
    assert parse_payload(b"orderid=ORD1&status=paysuccess") == {"orderid": "ORD1", "status": "paysuccess"}


def test_parse_unwraps_single_element_array():
    assert parse_payload(b'[{"order_id": "ORD1"}]') == {"order_id": "ORD1"}


# Reconciliation

def test_success_marks_order_paid_and_notifies(db, reconciler, dispatcher, pending_order, payment):
    result = deliver(reconciler, db, {
        "order_id": pending_order.order_number,
        "status": "success",
        "transaction_id": "TXN1",
    })

    assert result.success is True
    assert result.duplicate is False
    assert result.order_id == pending_order.id
    assert crud.get_order(db, pending_order.id).payment_status == "paid"
    stored = crud.get_latest_payment_for_order(db, pending_order.id)
    assert stored.gateway_transaction_id == "TXN1"
    assert stored.status == "success"
    assert dispatcher.calls == [("081-234-5678", pending_order.order_number)]


def test_failure_marks_order_failed_without_notifying(db, reconciler, dispatcher, pending_order, payment):
    result = deliver(reconciler, db, {"order_id": pending_order.order_number, "status": "declined"})

    assert result.success is True
    assert crud.get_order(db, pending_order.id).payment_status == "failed"
    assert crud.get_latest_payment_for_order(db, pending_order.id).status == "failed"
    assert dispatcher.calls == []


@pytest.mark.parametrize("build", [
    lambda number: {"orderid": number.replace("-", ""), "transectionID": "TXN1", "status": "paysuccess"},
    lambda number: {"invoiceNo": number, "transaction_id": "TXN1", "status": "success"},
    lambda number: {"order_number": number, "id": "TXN1", "payment_status": "OK"},
])
def test_payload_variants_reconcile_identically(db, reconciler, pending_order, payment, build):
    result = deliver(reconciler, db, build(pending_order.order_number))

    assert result.success is True
    assert crud.get_order(db, pending_order.id).payment_status == "paid"
    assert crud.get_latest_payment_for_order(db, pending_order.id).gateway_transaction_id == "TXN1"


def test_redelivery_never_downgrades_paid_order(db, reconciler, dispatcher, pending_order, payment):
    number = pending_order.order_number
    first = deliver(reconciler, db, {"order_id": number, "status": "success", "transaction_id": "TXN1"})
    again = deliver(reconciler, db, {"order_id": number, "status": "success", "transaction_id": "TXN1"})
    reshaped = deliver(reconciler, db, {"orderid": number.replace("-", ""), "status": "fail"})

    assert first.duplicate is False
    assert again.success is True and again.duplicate is True
    assert reshaped.success is True and reshaped.duplicate is True
    assert crud.get_order(db, pending_order.id).payment_status == "paid"
    assert crud.get_latest_payment_for_order(db, pending_order.id).status == "success"
    assert len(dispatcher.calls) == 1
    events = [e.event_type for e in crud.get_order_events(db, pending_order.id)]
    assert events.count("webhook_redelivered") == 2


def test_status_changed_concurrently_is_treated_as_redelivery(db, reconciler, dispatcher, pending_order, payment, monkeypatch):
    original = crud.get_latest_payment_for_order

    def paid_elsewhere_first(session, order_id):
        # Another worker reconciles the order after this one has read it as pending
        other = SessionLocal()
        try:
            other.query(models.Order).filter(models.Order.id == order_id).update(
                {"payment_status": "paid"}, synchronize_session=False
            )
            other.commit()
        finally:
            other.close()
        return original(session, order_id)

    monkeypatch.setattr(crud, "get_latest_payment_for_order", paid_elsewhere_first)

    result = deliver(reconciler, db, {
        "order_id": pending_order.order_number,
        "status": "fail",
        "transaction_id": "TXN-LATE",
    })

    assert result.success is True
    assert result.duplicate is True
    assert crud.get_order(db, pending_order.id).payment_status == "paid"
    stored = original(db, pending_order.id)
    assert stored.status == "pending"
    assert stored.gateway_transaction_id is None
    assert dispatcher.calls == []
    events = [e.event_type for e in crud.get_order_events(db, pending_order.id)]
    assert "webhook_redelivered" in events
    assert "payment_reconciled" not in events


def test_notification_failure_does_not_change_result(db, gateway_settings, pending_order, payment):
    failing = RecordingDispatcher(fail=True)
    reconciler = WebhookReconciler(gateway_settings, failing)

    result = deliver(reconciler, db, {"order_id": pending_order.order_number, "status": "success"})

    assert result.success is True
    assert result.error is None
    assert len(failing.calls) == 1
    assert crud.get_order(db, pending_order.id).payment_status == "paid"


def test_order_without_payment_row_is_still_reconciled(db, reconciler, pending_order):
    result = deliver(reconciler, db, {"order_id": pending_order.order_number, "status": "success"})

    assert result.success is True
    assert crud.get_order(db, pending_order.id).payment_status == "paid"


def test_amount_mismatch_is_recorded(db, reconciler, pending_order, payment):
    deliver(reconciler, db, {"order_id": pending_order.order_number, "status": "success", "amount": "1.00"})

    events = crud.get_order_events(db, pending_order.id)
    mismatch = [e for e in events if e.event_type == "amount_mismatch"]
    assert len(mismatch) == 1
    assert mismatch[0].new_value == "1.00"
    assert crud.get_order(db, pending_order.id).payment_status == "paid"


@pytest.mark.parametrize("signature", ["", "deadbeef", "sha256=deadbeef"])
def test_bad_signature_is_rejected_before_any_change(db, reconciler, dispatcher, pending_order, payment, signature):
    result = deliver(reconciler, db, {"order_id": pending_order.order_number, "status": "success"}, signature=signature)

    assert result.success is False
    assert result.error == "invalid_signature"
    assert crud.get_order(db, pending_order.id).payment_status == "pending"
    assert dispatcher.calls == []


def test_prefixed_signature_is_accepted(db, reconciler, pending_order):
    body = json.dumps({"order_id": pending_order.order_number, "status": "success"}).encode()

    result = deliver(reconciler, db, body, signature="sha256=" + sign(body))

    assert result.success is True


def test_signature_check_skipped_without_credentials(db, settings, dispatcher, pending_order):
    reconciler = WebhookReconciler(settings, dispatcher)

    result = deliver(reconciler, db, {"order_id": pending_order.order_number, "status": "success"}, signature="")

    assert result.success is True


def test_unknown_order(db, reconciler):
    result = deliver(reconciler, db, {"order_id": "ORD-19990101-00000", "status": "success"})

    assert result.success is False
    assert result.error == "order_not_found"


def test_payload_without_order_reference(db, reconciler):
    result = deliver(reconciler, db, {"status": "success"})

    assert result.success is False
    assert result.error == "validation_error"


def test_malformed_body(db, reconciler):
    result = deliver(reconciler, db, b"   ")

    assert result.success is False
    assert result.error == "validation_error"
    assert db.query(models.OrderEvent).count() == 0
