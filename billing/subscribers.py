import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from billing import config
from billing.errors import DuplicateError, ValidationError
from billing.events import Notifier
from billing.invoices import InvoiceLedger, cycle_period
from billing.models import Subscriber, utcnow
from billing.pricing import price_of

logger = logging.getLogger(__name__)


def register_subscriber(db: Session, notifier: Notifier, owner_id: str, tier,
                        institution_id: Optional[str] = None, name: Optional[str] = None,
                        phone: Optional[str] = None, now=None):
    """Create the billing state of a newly registered student and bill the registration."""
    if not owner_id:
        raise ValidationError("Subscriber id is required")
    price = price_of(tier)
    if db.get(Subscriber, owner_id) is not None:
        raise DuplicateError(f"Subscriber {owner_id} is already registered")

    now = now or utcnow()
    subscriber = Subscriber(
        id=owner_id,
        institution_id=institution_id,
        name=name,
        phone=phone,
        registration_tier=price.tier.value,
        is_recurring=price.is_recurring,
        active=True,
        next_billing_date=now + timedelta(days=config.BILLING_CYCLE_DAYS) if price.is_recurring else None,
    )
    db.add(subscriber)

    # create_invoice commits the subscriber together with its first invoice
    invoice = InvoiceLedger(db, notifier).create_invoice(
        owner_id=owner_id,
        category=price.category,
        amount=price.amount,
        due_date=now + timedelta(days=config.REGISTRATION_DUE_DAYS),
        description=price.description,
        period=cycle_period(now),
        institution_id=institution_id,
        currency=price.currency,
        now=now,
    )
    db.refresh(subscriber)

    notifier.notify(
        owner_id,
        "Welcome! Registration fee due",
        f"Your {price.tier.value.upper()} registration fee of {price.currency} {price.amount:,} "
        f"is due by {invoice.due_date:%Y-%m-%d}. Invoice: {invoice.invoice_number}.",
        "invoice_created",
    )
    return subscriber, invoice
