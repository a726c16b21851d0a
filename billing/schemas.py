from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from billing.invoices import effective_status


class ApiModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class TierOut(ApiModel):
    id: str
    amount: int
    currency: str
    is_recurring: bool
    category: str
    description: str

    @classmethod
    def from_price(cls, price):
        return cls(id=price.tier.value, amount=price.amount, currency=price.currency,
                   is_recurring=price.is_recurring, category=price.category, description=price.description)


class SubscriberCreate(ApiModel):
    student_id: str
    registration_tier: str
    institution_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


class SubscriberOut(ApiModel):
    id: str
    institution_id: Optional[str] = None
    registration_tier: str
    is_recurring: bool
    active: bool
    next_billing_date: Optional[datetime] = None


class ProofOut(ApiModel):
    file_reference: str
    uploaded_at: Optional[datetime] = None
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class InvoiceOut(ApiModel):
    id: int
    invoice_number: str
    owner_id: str
    category: str
    description: Optional[str] = None
    amount: int
    currency: str
    status: str
    due_date: datetime
    paid_date: Optional[datetime] = None
    academic_year: Optional[str] = None
    billing_period: str
    proof: Optional[ProofOut] = None

    @classmethod
    def from_invoice(cls, invoice, now=None):
        proof = None
        if invoice.has_proof:
            proof = ProofOut(
                file_reference=invoice.proof_file_reference,
                uploaded_at=invoice.proof_uploaded_at,
                transaction_reference=invoice.proof_transaction_reference,
                notes=invoice.proof_notes,
                status=invoice.proof_status,
                reviewer_id=invoice.proof_reviewer_id,
                reviewed_at=invoice.proof_reviewed_at,
                rejection_reason=invoice.proof_rejection_reason,
            )
        return cls(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            owner_id=invoice.owner_id,
            category=invoice.category,
            description=invoice.description,
            amount=invoice.amount,
            currency=invoice.currency,
            status=effective_status(invoice, now),
            due_date=invoice.due_date,
            paid_date=invoice.paid_date,
            academic_year=invoice.academic_year,
            billing_period=invoice.billing_period,
            proof=proof,
        )


class RegistrationOut(ApiModel):
    subscriber: SubscriberOut
    invoice: InvoiceOut


class ReviewRequest(ApiModel):
    decision: Literal["approve", "reject"]
    reason: Optional[str] = None


class PaymentCreate(ApiModel):
    amount: int
    payer_contact: str
    kind: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentInitiateOut(ApiModel):
    transaction_id: int
    reference_id: str
    status: str
    redirect_target: Optional[str] = None


class TransactionOut(ApiModel):
    id: int
    owner_id: str
    kind: str
    amount: int
    currency: str
    gateway_reference_id: str
    provider_reference_id: Optional[str] = None
    status: str
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    settlement_error: Optional[str] = None
    created_at: Optional[datetime] = None


class CallbackPayload(ApiModel):
    gateway_reference_id: str
    status: str
    provider_transaction_id: Optional[str] = None
    message: Optional[str] = None


class BillingRunOut(ApiModel):
    run_id: Optional[int] = None
    dry_run: bool
    eligible: int
    billed: int
    skipped: int
    failed: int
    total_amount: int
    by_tier: Dict[str, Dict[str, int]]
    skips: List[Dict[str, str]]
    failures: List[Dict[str, str]]
