"""Invoice ledger: invoice records and their state machine.

Every status change is a conditional UPDATE guarded on the current status, so
the gateway callback, a reviewer and the scheduler can race on the same row
and exactly one of them wins. The unique ``open_key`` column is what keeps a
second open invoice for the same owner, category and billing period out of
the table.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing import config
from billing.errors import (
    AlreadyPaidError,
    DuplicateInvoiceError,
    InvalidStateError,
    MissingProofError,
    NotFoundError,
    ValidationError,
)
from billing.events import Notifier
from billing.models import (
    INVOICE_CANCELLED,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_PENDING,
    INVOICE_VERIFICATION,
    OPEN_INVOICE_STATUSES,
    PROOF_PENDING,
    PROOF_REJECTED,
    PROOF_VERIFIED,
    Invoice,
    utcnow,
)

logger = logging.getLogger(__name__)

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"


@dataclass
class ProofSubmission:
    file_reference: str
    transaction_reference: str
    notes: Optional[str] = None


def generate_invoice_number(now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


def open_key_for(owner_id: str, category: str, period: str) -> str:
    return f"{owner_id}:{category}:{period}"


def effective_status(invoice: Invoice, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    if invoice.status == INVOICE_PENDING and invoice.due_date is not None and invoice.due_date < now:
        return INVOICE_OVERDUE
    return invoice.status


class InvoiceLedger:

    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    def get_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def create_invoice(self, owner_id: str, category: str, amount: int, due_date: datetime,
                       description: Optional[str] = None, period: Optional[str] = None,
                       institution_id: Optional[str] = None, currency: Optional[str] = None,
                       now: Optional[datetime] = None) -> Invoice:
        if not owner_id or not category:
            raise ValidationError("Invoice owner and category are required")
        if amount is None or int(amount) <= 0:
            raise ValidationError("Invoice amount must be positive")

        now = now or utcnow()
        period = period or f"{now:%Y-%m}"
        open_key = open_key_for(owner_id, category, period)

        existing = self.db.query(Invoice).filter(Invoice.open_key == open_key).first()
        if existing is not None:
            raise DuplicateInvoiceError(
                f"Open invoice {existing.invoice_number} already exists for {category} {period}")

        invoice = Invoice(
            owner_id=owner_id,
            institution_id=institution_id,
            invoice_number=generate_invoice_number(now),
            category=category,
            description=description,
            amount=int(amount),
            currency=currency or config.DEFAULT_CURRENCY,
            status=INVOICE_PENDING,
            due_date=due_date,
            academic_year=str(now.year),
            billing_period=period,
            open_key=open_key,
        )
        self.db.add(invoice)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self.db.query(Invoice.id).filter(Invoice.open_key == open_key).first() is not None:
                raise DuplicateInvoiceError(f"Open invoice already exists for {category} {period}") from None
            raise
        self.db.refresh(invoice)
        logger.info("Created invoice %s owner=%s category=%s amount=%s period=%s",
                    invoice.invoice_number, owner_id, category, invoice.amount, period)
        return invoice

    def _transition(self, invoice_id: int, from_statuses, **values) -> bool:
        values["updated_at"] = utcnow()
        result = self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status.in_(from_statuses))
            .values(**values)
        )
        return result.rowcount == 1

    def _state_error(self, invoice: Invoice, action: str):
        if invoice.status == INVOICE_PAID:
            return AlreadyPaidError(f"Invoice {invoice.invoice_number} is already paid")
        return InvalidStateError(f"Cannot {action} invoice {invoice.invoice_number} in status {invoice.status}")

    def _reload(self, invoice_id: int) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        self.db.refresh(invoice)
        return invoice

    def attach_proof(self, invoice_id: int, proof: ProofSubmission) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.status != INVOICE_PENDING:
            raise self._state_error(invoice, "attach a payment proof to")

        now = utcnow()
        moved = self._transition(
            invoice_id, (INVOICE_PENDING,),
            status=INVOICE_VERIFICATION,
            proof_file_reference=proof.file_reference,
            proof_uploaded_at=now,
            proof_transaction_reference=proof.transaction_reference,
            proof_notes=proof.notes,
            proof_status=PROOF_PENDING,
            proof_reviewer_id=None,
            proof_reviewed_at=None,
            proof_rejection_reason=None,
        )
        if not moved:
            self.db.rollback()
            raise self._state_error(self._reload(invoice_id), "attach a payment proof to")
        self.db.commit()
        invoice = self._reload(invoice_id)

        logger.info("Proof attached to invoice %s ref=%s", invoice.invoice_number, proof.transaction_reference)
        self.notifier.notify(
            invoice.owner_id,
            "Payment proof received",
            f"Your payment proof for invoice {invoice.invoice_number} is awaiting verification.",
            "payment_proof",
        )
        return invoice

    def review_proof(self, invoice_id: int, decision: str, reviewer_id: str,
                     reason: Optional[str] = None) -> Invoice:
        if decision not in (DECISION_APPROVE, DECISION_REJECT):
            raise ValidationError(f"Unknown review decision: {decision!r}")
        reason = (reason or "").strip()
        if decision == DECISION_REJECT and not reason:
            raise ValidationError("A rejection reason is required")

        invoice = self.get_invoice(invoice_id)
        if not invoice.has_proof:
            raise MissingProofError(f"Invoice {invoice.invoice_number} has no payment proof")
        if invoice.status != INVOICE_VERIFICATION:
            raise self._state_error(invoice, "review the proof of")

        now = utcnow()
        if decision == DECISION_APPROVE:
            moved = self._transition(
                invoice_id, (INVOICE_VERIFICATION,),
                status=INVOICE_PAID,
                paid_date=now,
                open_key=None,
                proof_status=PROOF_VERIFIED,
                proof_reviewer_id=reviewer_id,
                proof_reviewed_at=now,
            )
        else:
            moved = self._transition(
                invoice_id, (INVOICE_VERIFICATION,),
                status=INVOICE_PENDING,
                proof_status=PROOF_REJECTED,
                proof_reviewer_id=reviewer_id,
                proof_reviewed_at=now,
                proof_rejection_reason=reason,
            )
        if not moved:
            self.db.rollback()
            raise self._state_error(self._reload(invoice_id), "review the proof of")
        self.db.commit()
        invoice = self._reload(invoice_id)

        logger.info("Invoice %s proof %s by reviewer=%s", invoice.invoice_number, invoice.proof_status, reviewer_id)
        if decision == DECISION_APPROVE:
            self.notifier.notify(
                invoice.owner_id,
                "Payment verified",
                f"Your payment of {invoice.currency} {invoice.amount:,} for invoice {invoice.invoice_number} has been verified.",
                "payment_verified",
            )
        else:
            self.notifier.notify(
                invoice.owner_id,
                "Payment proof rejected",
                f"Your payment proof for invoice {invoice.invoice_number} was rejected: {reason}",
                "payment_rejected",
            )
        return invoice

    def mark_paid_from_gateway(self, invoice_id: int, commit: bool = True) -> bool:
        """Settle an invoice from a confirmed gateway payment.

        Returns False when the invoice was already paid (for instance the
        proof review got there first); nothing is changed in that case.
        """
        invoice = self.get_invoice(invoice_id)
        if invoice.status == INVOICE_PAID:
            logger.info("Invoice %s already paid, gateway settlement ignored", invoice.invoice_number)
            return False
        if invoice.status not in OPEN_INVOICE_STATUSES:
            raise self._state_error(invoice, "settle")

        now = utcnow()
        values = dict(status=INVOICE_PAID, paid_date=now, open_key=None)
        if invoice.has_proof and invoice.proof_status == PROOF_PENDING:
            values.update(proof_status=PROOF_VERIFIED, proof_reviewer_id="gateway", proof_reviewed_at=now)
        moved = self._transition(invoice_id, OPEN_INVOICE_STATUSES, **values)
        if not moved:
            current = self._reload(invoice_id)
            if current.status == INVOICE_PAID:
                return False
            raise self._state_error(current, "settle")
        if commit:
            self.db.commit()
        logger.info("Invoice %s paid via gateway", invoice.invoice_number)
        return True

    def cancel_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.status != INVOICE_PENDING:
            raise self._state_error(invoice, "cancel")
        if not self._transition(invoice_id, (INVOICE_PENDING,), status=INVOICE_CANCELLED, open_key=None):
            self.db.rollback()
            raise self._state_error(self._reload(invoice_id), "cancel")
        self.db.commit()
        invoice = self._reload(invoice_id)
        logger.info("Invoice %s cancelled", invoice.invoice_number)
        self.notifier.notify(
            invoice.owner_id,
            "Invoice cancelled",
            f"Invoice {invoice.invoice_number} has been cancelled.",
            "invoice_cancelled",
        )
        return invoice


def cycle_period(cycle_start: datetime) -> str:
    """Billing period key of a 30-day cycle, named after the day it starts."""
    return f"{cycle_start:%Y-%m-%d}"
