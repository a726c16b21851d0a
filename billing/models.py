from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text, func
from billing.database import Base


def utcnow():
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# invoice statuses; "overdue" is only ever reported on read
INVOICE_PENDING = "pending"
INVOICE_VERIFICATION = "verification"
INVOICE_PAID = "paid"
INVOICE_OVERDUE = "overdue"
INVOICE_CANCELLED = "cancelled"
OPEN_INVOICE_STATUSES = (INVOICE_PENDING, INVOICE_VERIFICATION)

PROOF_PENDING = "pending"
PROOF_VERIFIED = "verified"
PROOF_REJECTED = "rejected"

TX_PENDING = "pending"
TX_PROCESSING = "processing"
TX_COMPLETED = "completed"
TX_FAILED = "failed"
TX_CANCELLED = "cancelled"
TX_REFUNDED = "refunded"

KIND_BOOK_PURCHASE = "book_purchase"
KIND_EVENT_REGISTRATION = "event_registration"
KIND_MEMBERSHIP_FEE = "membership_fee"
KIND_INVOICE_PAYMENT = "invoice_payment"
TRANSACTION_KINDS = (KIND_BOOK_PURCHASE, KIND_EVENT_REGISTRATION, KIND_MEMBERSHIP_FEE, KIND_INVOICE_PAYMENT)


class Subscriber(Base):
    __tablename__ = "subscribers"
    id = Column(String(64), primary_key=True)
    institution_id = Column(String(64), nullable=True, index=True)
    name = Column(String(128), nullable=True)
    phone = Column(String(32), nullable=True)
    registration_tier = Column(String(20), nullable=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    next_billing_date = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class Invoice(Base):
    __tablename__ = "invoices"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    institution_id = Column(String(64), nullable=True, index=True)
    invoice_number = Column(String(32), nullable=False, unique=True)
    category = Column(String(40), nullable=False)
    description = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="TZS")
    status = Column(String(20), nullable=False, default=INVOICE_PENDING, index=True)
    due_date = Column(DateTime, nullable=False)
    paid_date = Column(DateTime, nullable=True)
    academic_year = Column(String(9), nullable=True)
    billing_period = Column(String(10), nullable=False)
    # owner:category:period while pending/verification, NULL otherwise
    open_key = Column(String(160), nullable=True, unique=True)

    proof_file_reference = Column(String(255), nullable=True)
    proof_uploaded_at = Column(DateTime, nullable=True)
    proof_transaction_reference = Column(String(128), nullable=True)
    proof_notes = Column(Text, nullable=True)
    proof_status = Column(String(20), nullable=True)
    proof_reviewer_id = Column(String(64), nullable=True)
    proof_reviewed_at = Column(DateTime, nullable=True)
    proof_rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    @property
    def has_proof(self):
        return self.proof_file_reference is not None


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(40), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="TZS")
    payer_contact = Column(String(64), nullable=True)
    gateway_reference_id = Column(String(64), nullable=False, unique=True)
    provider_reference_id = Column(String(128), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=TX_PENDING, index=True)
    redirect_url = Column(String(512), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    # set when the payment completed but its purchase, registration or invoice could not be settled
    settlement_error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class Revenue(Base):
    __tablename__ = "revenue"
    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, unique=True)
    amount = Column(Integer, nullable=False)
    commission = Column(Integer, nullable=False)
    net_amount = Column(Integer, nullable=False)
    rate = Column(Float, nullable=False)
    category = Column(String(40), nullable=False)
    period = Column(String(7), nullable=False, index=True)
    month = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    quarter = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class BookPurchase(Base):
    __tablename__ = "book_purchases"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    book_id = Column(String(64), nullable=True)
    amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)


class EventRegistration(Base):
    __tablename__ = "event_registrations"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    event_id = Column(String(64), nullable=True)
    amount = Column(Integer, nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending")
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    paid_at = Column(DateTime, nullable=True)


class BillingRun(Base):
    __tablename__ = "billing_runs"
    id = Column(Integer, primary_key=True, index=True)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    dry_run = Column(Boolean, nullable=False, default=False)
    eligible = Column(Integer, nullable=False, default=0)
    billed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    summary = Column(JSON, nullable=False, default=dict)
