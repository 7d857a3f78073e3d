"""
Invoice creation, webhook signature checks and payment confirmation
"""

import json
from datetime import timedelta
from decimal import Decimal

import pytest

from models import InvoiceStatus, Transaction
from services.errors import (
    InvoiceError, InvalidSignatureError, UnknownTierError, DuplicateTransactionError, UserNotFoundError
)
from services.payment_invoice_service import PaymentInvoiceService, generate_signature, verify_signature


@pytest.fixture
def invoices(settlement_config):
    return PaymentInvoiceService(settlement_config)


def _webhook(invoice_id, tx_hash):
    payload = {"event": "payment.confirmed", "data": {"invoiceId": invoice_id, "txHash": tx_hash}}
    raw = json.dumps(payload)
    return raw, generate_signature(raw), payload


class TestSignature:

    def test_round_trip(self):
        body = '{"data": {}}'
        assert verify_signature(generate_signature(body, "s3cret"), body.encode(), "s3cret")

    def test_wrong_secret_or_body_rejected(self):
        body = '{"data": {}}'
        signature = generate_signature(body, "s3cret")
        assert not verify_signature(signature, body, "other")
        assert not verify_signature(signature, body + " ", "s3cret")

    def test_missing_signature_rejected(self):
        assert not verify_signature("", "{}")


class TestCreateInvoice:

    def test_pending_invoice_for_tier_price(self, db_session, make_user, invoices, now):
        user = make_user()

        invoice = invoices.create_invoice(db_session, user.id, "silver", now=now)

        assert invoice.status == InvoiceStatus.PENDING.value
        assert invoice.tier_name == "SILVER"
        assert invoice.amount == Decimal("15.00")
        assert invoice.invoice_id.startswith("inv_test_"), "Default config runs in sandbox mode"
        assert invoice.payment_link.endswith(invoice.invoice_id)
        assert invoice.expires_at == now + timedelta(minutes=30)
        assert [s["percentage"] for s in invoice.splits] == [40, 60]

    def test_unknown_tier(self, db_session, make_user, invoices):
        user = make_user()
        with pytest.raises(UnknownTierError):
            invoices.create_invoice(db_session, user.id, "DIAMOND")

    def test_unknown_user(self, db_session, invoices):
        with pytest.raises(UserNotFoundError):
            invoices.create_invoice(db_session, "missing-user", "BRONZE")


class TestConfirmInvoice:

    def test_confirmation_activates_subscription(self, db_session, make_user, invoices, now):
        user = make_user()
        invoice = invoices.create_invoice(db_session, user.id, "BRONZE", now=now)

        result = invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xabc", now=now + timedelta(minutes=5))

        assert result.success
        assert result.split.admin_amount == Decimal("2.00")
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.tx_hash == "0xabc"
        assert user.tier == "BRONZE"

    def test_second_confirmation_is_idempotent(self, db_session, make_user, invoices, now):
        user = make_user()
        invoice = invoices.create_invoice(db_session, user.id, "BRONZE", now=now)
        invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xabc", now=now)

        again = invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xabc", now=now)

        assert again.success
        assert again.split is None
        assert db_session.query(Transaction).count() == 1

    def test_paid_invoice_with_other_hash_rejected(self, db_session, make_user, invoices, now):
        user = make_user()
        invoice = invoices.create_invoice(db_session, user.id, "BRONZE", now=now)
        invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xabc", now=now)

        with pytest.raises(DuplicateTransactionError):
            invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xdef", now=now)

    def test_expired_invoice(self, db_session, make_user, invoices, now):
        user = make_user()
        invoice = invoices.create_invoice(db_session, user.id, "BRONZE", now=now)

        result = invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xlate", now=now + timedelta(hours=1))

        assert not result.success
        assert invoice.status == InvoiceStatus.EXPIRED.value
        assert user.tier == "FREE"

        with pytest.raises(InvoiceError):
            invoices.confirm_invoice_payment(db_session, invoice.invoice_id, "0xlate", now=now)

    def test_tx_hash_reused_across_invoices(self, db_session, make_user, invoices, now):
        user = make_user()
        first = invoices.create_invoice(db_session, user.id, "BRONZE", now=now)
        second = invoices.create_invoice(db_session, user.id, "BRONZE", now=now)
        invoices.confirm_invoice_payment(db_session, first.invoice_id, "0xsame", now=now)

        with pytest.raises(DuplicateTransactionError):
            invoices.confirm_invoice_payment(db_session, second.invoice_id, "0xsame", now=now)
        assert second.status == InvoiceStatus.PENDING.value

    def test_unknown_invoice(self, db_session, invoices):
        with pytest.raises(InvoiceError):
            invoices.confirm_invoice_payment(db_session, "inv_missing", "0x1")


class TestWebhook:

    def test_signed_webhook_confirms(self, db_session, make_user, invoices, now):
        user = make_user()
        invoice = invoices.create_invoice(db_session, user.id, "GOLD", now=now)
        raw, signature, payload = _webhook(invoice.invoice_id, "0xgold")

        result = invoices.handle_webhook(db_session, raw, signature, payload, now=now)

        assert result.success
        assert user.tier == "GOLD"

    def test_bad_signature_rejected_before_any_write(self, db_session, make_user, invoices, now):
        user = make_user()
        invoice = invoices.create_invoice(db_session, user.id, "GOLD", now=now)
        raw, _, payload = _webhook(invoice.invoice_id, "0xgold")

        with pytest.raises(InvalidSignatureError):
            invoices.handle_webhook(db_session, raw, "deadbeef", payload, now=now)
        assert invoice.status == InvoiceStatus.PENDING.value

    def test_payload_without_invoice_id(self, db_session, invoices):
        raw, signature, _ = _webhook(None, "0x1")
        with pytest.raises(InvoiceError):
            invoices.handle_webhook(db_session, raw, signature, {"data": {"txHash": "0x1"}})
