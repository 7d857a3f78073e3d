"""
Payment invoices

Creates provider invoices for tier subscriptions and confirms them from the
provider webhook. A paid invoice is an idempotent success; a transaction hash
already used by another payment is rejected. Confirmation hands over to
TreasurySplitService in the same transaction.
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

from config import Config, SettlementConfig
from models import PaymentInvoice, InvoiceStatus, Transaction, User
from services.errors import (
    InvoiceError, InvalidSignatureError, UnknownTierError, DuplicateTransactionError, UserNotFoundError
)
from services.tier_catalog import TierCatalog
from services.treasury_service import TreasurySplitService, SplitResult
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


def generate_signature(payload: str, secret: Optional[str] = None) -> str:
    secret = secret or Config.PAYMENT_WEBHOOK_SECRET
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(signature: str, raw_body, secret: Optional[str] = None) -> bool:
    """Constant-time HMAC-SHA256 check of a webhook body"""
    if not signature:
        return False
    payload = raw_body.decode("utf-8") if isinstance(raw_body, (bytes, bytearray)) else raw_body
    return hmac.compare_digest(signature, generate_signature(payload, secret))


@dataclass
class InvoiceConfirmation:
    success: bool
    message: str
    invoice_id: str
    split: Optional[SplitResult] = None


class PaymentInvoiceService:
    """Invoice lifecycle: pending -> paid | expired"""

    def __init__(self, config: SettlementConfig, treasury: Optional[TreasurySplitService] = None,
                 catalog: Optional[TierCatalog] = None):
        self.config = config
        self.catalog = catalog or TierCatalog(config)
        self.treasury = treasury or TreasurySplitService(config, self.catalog)

    def _splits(self) -> List[Dict[str, Any]]:
        return [
            {"address": Config.ADMIN_PROFITS_WALLET, "percentage": int(self.config.admin_split * 100)},
            {"address": Config.GAME_TREASURY_WALLET, "percentage": int(self.config.treasury_split * 100)},
        ]

    def create_invoice(self, session: Session, user_id: str, tier_name: str,
                       now: Optional[datetime] = None) -> PaymentInvoice:
        now = now or get_naive_utc_now()
        tier_name = tier_name.upper()
        amount = self.catalog.get_price(session, tier_name)
        if amount is None:
            raise UnknownTierError(f"Invalid tier: {tier_name}")
        if session.get(User, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")

        sandbox = Config.is_sandbox()
        invoice_id = ("inv_test_" if sandbox else "inv_live_") + uuid.uuid4().hex[:24]
        pay_host = "https://sandbox.tonpay.dev/pay/" if sandbox else "https://pay.tonpay.io/pay/"

        invoice = PaymentInvoice(
            invoice_id=invoice_id,
            user_id=user_id,
            tier_name=tier_name,
            amount=Decimal(amount),
            currency="USDT",
            network="TON",
            sandbox=sandbox,
            payment_link=pay_host + invoice_id,
            splits=self._splits(),
            status=InvoiceStatus.PENDING.value,
            expires_at=now + timedelta(minutes=Config.INVOICE_EXPIRY_MINUTES),
            created_at=now,
        )
        session.add(invoice)
        session.flush()
        logger.info(
            f"🧾 INVOICE: {invoice_id} created for {user_id}: {tier_name} ${amount} "
            f"({'SANDBOX' if sandbox else 'LIVE'})"
        )
        return invoice

    def confirm_invoice_payment(self, session: Session, invoice_id: str, tx_hash: str,
                                now: Optional[datetime] = None) -> InvoiceConfirmation:
        """
        Apply a provider payment confirmation.

        An expired invoice is marked expired and reported with success=False
        rather than raised, so the status change commits with the session.
        """
        now = now or get_naive_utc_now()
        invoice = (
            session.query(PaymentInvoice)
            .filter(PaymentInvoice.invoice_id == invoice_id)
            .with_for_update()
            .one_or_none()
        )
        if invoice is None:
            raise InvoiceError(f"Invoice not found: {invoice_id}")

        if invoice.status == InvoiceStatus.PAID.value:
            if invoice.tx_hash and invoice.tx_hash != tx_hash:
                raise DuplicateTransactionError(
                    f"Invoice {invoice_id} was already paid by transaction {invoice.tx_hash}"
                )
            return InvoiceConfirmation(True, "Invoice already processed (idempotent)", invoice_id)

        if invoice.status != InvoiceStatus.PENDING.value:
            raise InvoiceError(f"Invoice {invoice_id} has invalid status for payment: {invoice.status}")

        if now > invoice.expires_at:
            invoice.status = InvoiceStatus.EXPIRED.value
            session.flush()
            logger.warning(f"⚠️ INVOICE: {invoice_id} expired at {invoice.expires_at}")
            return InvoiceConfirmation(False, f"Invoice {invoice_id} has expired", invoice_id)

        if session.query(Transaction.id).filter(Transaction.tx_hash == tx_hash).first() is not None:
            raise DuplicateTransactionError(f"Transaction hash {tx_hash} has already been used")

        split = self.treasury.process_subscription_payment(
            session, invoice.user_id, tx_hash, invoice.tier_name, invoice.amount, now=now
        )
        invoice.status = InvoiceStatus.PAID.value
        invoice.tx_hash = tx_hash
        invoice.paid_at = now
        session.flush()

        logger.info(f"✅ INVOICE: {invoice_id} PAID, {invoice.tier_name} activated for {invoice.user_id} (tx {tx_hash})")
        return InvoiceConfirmation(True, split.message, invoice_id, split)

    def handle_webhook(self, session: Session, raw_body, signature: str, payload: Dict[str, Any],
                       now: Optional[datetime] = None) -> InvoiceConfirmation:
        """Verify the provider signature, then confirm the invoice it names"""
        if not verify_signature(signature, raw_body):
            logger.error("❌ INVOICE: webhook signature verification failed")
            raise InvalidSignatureError("Invalid webhook signature")

        data = payload.get("data") or {}
        invoice_id = data.get("invoiceId")
        tx_hash = data.get("txHash")
        if not invoice_id or not tx_hash:
            raise InvoiceError("Webhook payload missing invoiceId or txHash")
        return self.confirm_invoice_payment(session, invoice_id, tx_hash, now=now)
