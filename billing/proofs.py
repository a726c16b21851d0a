"""Manual payment proofs: student submission and administrator review.

Submission never touches the blob store itself; whoever stored the upload
discards it when the submission is refused (see the proof route in main).
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from billing.access import AccessPolicy, Caller
from billing.errors import ValidationError
from billing.events import Notifier
from billing.invoices import InvoiceLedger, ProofSubmission
from billing.models import Invoice

logger = logging.getLogger(__name__)


class PaymentProofWorkflow:

    def __init__(self, db: Session, notifier: Notifier, policy: Optional[AccessPolicy] = None):
        self.ledger = InvoiceLedger(db, notifier)
        self.policy = policy or AccessPolicy()

    def submit_proof(self, caller: Caller, invoice_id: int, file_reference: str,
                     transaction_reference: str, notes: Optional[str] = None) -> Invoice:
        invoice = self.ledger.get_invoice(invoice_id)
        self.policy.require(self.policy.can_submit_proof(caller, invoice),
                            "Invoice does not belong to you")
        transaction_reference = (transaction_reference or "").strip()
        if not transaction_reference:
            raise ValidationError("Transaction reference is required")
        if not file_reference:
            raise ValidationError("Payment proof file is required")

        return self.ledger.attach_proof(
            invoice_id,
            ProofSubmission(file_reference=file_reference,
                            transaction_reference=transaction_reference,
                            notes=(notes or "").strip() or None),
        )

    def review_proof(self, caller: Caller, invoice_id: int, decision: str,
                     reason: Optional[str] = None) -> Invoice:
        invoice = self.ledger.get_invoice(invoice_id)
        self.policy.require(self.policy.can_review_proof(caller, invoice),
                            "You cannot review payments for this student")
        logger.info("Reviewer=%s role=%s deciding %s on invoice %s",
                    caller.user_id, caller.role, decision, invoice.invoice_number)
        return self.ledger.review_proof(invoice_id, decision, caller.user_id, reason)
