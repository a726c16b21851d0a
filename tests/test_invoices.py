from datetime import timedelta

import pytest

from billing.errors import (
    AlreadyPaidError,
    DuplicateInvoiceError,
    InvalidStateError,
    MissingProofError,
    NotFoundError,
    ValidationError,
)
from billing.invoices import ProofSubmission, effective_status
from billing.models import Invoice, utcnow


def proof(ref="MPESA123"):
    return ProofSubmission(file_reference="proof.jpg", transaction_reference=ref, notes="paid at agent")


def test_create_invoice_starts_pending(make_invoice):
    invoice = make_invoice()
    assert invoice.status == "pending"
    assert invoice.amount == 70000
    assert invoice.invoice_number.startswith("INV-")
    assert invoice.open_key is not None


def test_invoice_numbers_are_unique(db, make_invoice):
    for _ in range(25):
        make_invoice()
    numbers = [n for (n,) in db.query(Invoice.invoice_number).all()]
    assert len(numbers) == len(set(numbers)) == 25


def test_second_open_invoice_for_same_period_is_refused(ledger, make_invoice):
    make_invoice(period="2026-02-01")
    with pytest.raises(DuplicateInvoiceError):
        make_invoice(period="2026-02-01")


def test_paid_invoice_frees_the_period(ledger, make_invoice):
    invoice = make_invoice(period="2026-02-01")
    ledger.attach_proof(invoice.id, proof())
    ledger.review_proof(invoice.id, "approve", "admin-1")
    again = make_invoice(period="2026-02-01")
    assert again.id != invoice.id


def test_amount_must_be_positive(ledger):
    with pytest.raises(ValidationError):
        ledger.create_invoice("student-1", "ctm_membership", 0, utcnow())


def test_attach_proof_moves_to_verification(ledger, make_invoice, dispatcher):
    invoice = ledger.attach_proof(make_invoice().id, proof())
    assert invoice.status == "verification"
    assert invoice.proof_status == "pending"
    assert invoice.proof_transaction_reference == "MPESA123"
    assert dispatcher.notifications("student-1")[-1]["kind"] == "payment_proof"


def test_attach_proof_on_paid_invoice_fails(ledger, make_invoice):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    ledger.review_proof(invoice.id, "approve", "admin-1")
    with pytest.raises(AlreadyPaidError):
        ledger.attach_proof(invoice.id, proof("OTHER"))
    assert ledger.get_invoice(invoice.id).status == "paid"


def test_attach_proof_twice_fails(ledger, make_invoice):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    with pytest.raises(InvalidStateError):
        ledger.attach_proof(invoice.id, proof("SECOND"))


def test_approve_marks_paid(ledger, make_invoice):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    invoice = ledger.review_proof(invoice.id, "approve", "admin-1")
    assert invoice.status == "paid"
    assert invoice.paid_date is not None
    assert invoice.proof_status == "verified"
    assert invoice.proof_reviewer_id == "admin-1"
    assert invoice.open_key is None


def test_reject_returns_to_pending_with_reason(ledger, make_invoice):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    invoice = ledger.review_proof(invoice.id, "reject", "admin-1", "Reference does not match")
    assert invoice.status == "pending"
    assert invoice.proof_status == "rejected"
    assert invoice.proof_rejection_reason == "Reference does not match"


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_reject_without_reason_keeps_verification(ledger, make_invoice, reason):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    with pytest.raises(ValidationError):
        ledger.review_proof(invoice.id, "reject", "admin-1", reason)
    assert ledger.get_invoice(invoice.id).status == "verification"


def test_review_without_proof(ledger, make_invoice):
    with pytest.raises(MissingProofError):
        ledger.review_proof(make_invoice().id, "approve", "admin-1")


def test_rejected_proof_can_be_resubmitted(ledger, make_invoice):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    ledger.review_proof(invoice.id, "reject", "admin-1", "Blurry image")
    invoice = ledger.attach_proof(invoice.id, proof("MPESA999"))
    assert invoice.status == "verification"
    assert invoice.proof_rejection_reason is None


def test_unknown_invoice(ledger):
    with pytest.raises(NotFoundError):
        ledger.attach_proof(404, proof())


def test_gateway_settlement_is_idempotent(ledger, make_invoice):
    invoice = make_invoice()
    assert ledger.mark_paid_from_gateway(invoice.id) is True
    assert ledger.mark_paid_from_gateway(invoice.id) is False
    assert ledger.get_invoice(invoice.id).status == "paid"


def test_gateway_settlement_verifies_pending_proof(ledger, make_invoice):
    invoice = make_invoice()
    ledger.attach_proof(invoice.id, proof())
    ledger.mark_paid_from_gateway(invoice.id)
    invoice = ledger.get_invoice(invoice.id)
    assert invoice.proof_status == "verified"
    with pytest.raises(AlreadyPaidError):
        ledger.review_proof(invoice.id, "approve", "admin-1")


def test_cancel_only_from_pending(ledger, make_invoice):
    invoice = ledger.cancel_invoice(make_invoice().id)
    assert invoice.status == "cancelled"
    with pytest.raises(InvalidStateError):
        ledger.cancel_invoice(invoice.id)
    with pytest.raises(InvalidStateError):
        ledger.mark_paid_from_gateway(invoice.id)


def test_overdue_is_derived_on_read(make_invoice, db):
    invoice = make_invoice(due_in_days=1)
    later = utcnow() + timedelta(days=2)
    assert effective_status(invoice, later) == "overdue"
    assert effective_status(invoice) == "pending"
    db.refresh(invoice)
    assert invoice.status == "pending"
