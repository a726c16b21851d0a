"""Recurring billing: walks due monthly subscribers once a day and bills them.

Each subscriber is handled in its own session. Invoice creation commits
before ``next_billing_date`` moves, and the open-invoice key makes creation
idempotent per cycle, so a run that dies half way is finished by the next one.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from billing import config
from billing.errors import BillingError, DuplicateInvoiceError
from billing.events import Notifier
from billing.invoices import InvoiceLedger, cycle_period, open_key_for
from billing.models import BillingRun, Invoice, Subscriber, utcnow
from billing.pricing import price_of

logger = logging.getLogger(__name__)


@dataclass
class BillingRunResult:
    started_at: datetime
    dry_run: bool = False
    eligible: int = 0
    billed: int = 0
    skipped: int = 0
    failed: int = 0
    total_amount: int = 0
    by_tier: Dict[str, Dict[str, int]] = field(default_factory=dict)
    skips: List[dict] = field(default_factory=list)
    failures: List[dict] = field(default_factory=list)
    run_id: Optional[int] = None

    def add_billed(self, tier: str, amount: int):
        self.billed += 1
        self.total_amount += amount
        bucket = self.by_tier.setdefault(tier, {"count": 0, "amount": 0})
        bucket["count"] += 1
        bucket["amount"] += amount

    def add_skip(self, subscriber_id: str, reason: str):
        self.skipped += 1
        self.skips.append({"subscriber_id": subscriber_id, "reason": reason})

    def add_failure(self, subscriber_id: str, error: str):
        self.failed += 1
        self.failures.append({"subscriber_id": subscriber_id, "error": error})


class RecurringBillingScheduler:

    def __init__(self, session_factory: Callable[[], Session], notifier: Notifier,
                 cycle_days: Optional[int] = None, due_days: Optional[int] = None):
        self.session_factory = session_factory
        self.notifier = notifier
        self.cycle_days = config.BILLING_CYCLE_DAYS if cycle_days is None else cycle_days
        self.due_days = config.INVOICE_DUE_DAYS if due_days is None else due_days

    def due_subscriber_ids(self, db: Session, now: datetime) -> List[str]:
        rows = (
            db.query(Subscriber.id)
            .filter(
                Subscriber.is_recurring.is_(True),
                Subscriber.active.is_(True),
                Subscriber.next_billing_date.isnot(None),
                Subscriber.next_billing_date <= now,
            )
            .order_by(Subscriber.next_billing_date)
            .all()
        )
        return [row[0] for row in rows]

    def run_once(self, now: Optional[datetime] = None, dry_run: bool = False) -> BillingRunResult:
        now = now or utcnow()
        result = BillingRunResult(started_at=now, dry_run=dry_run)

        db = self.session_factory()
        try:
            subscriber_ids = self.due_subscriber_ids(db, now)
        finally:
            db.close()
        result.eligible = len(subscriber_ids)
        logger.info("Recurring billing run at %s: %d subscriber(s) due%s",
                    now.isoformat(), result.eligible, " (dry run)" if dry_run else "")

        for subscriber_id in subscriber_ids:
            db = self.session_factory()
            try:
                self._bill_subscriber(db, subscriber_id, now, dry_run, result)
            except BillingError as exc:
                db.rollback()
                logger.error("Billing subscriber=%s failed: %s", subscriber_id, exc.message)
                result.add_failure(subscriber_id, exc.message)
            except Exception as exc:
                db.rollback()
                logger.exception("Billing subscriber=%s failed", subscriber_id)
                result.add_failure(subscriber_id, str(exc))
            finally:
                db.close()

        if not dry_run:
            self._record_run(result)
        logger.info("Recurring billing done: billed=%d skipped=%d failed=%d total=%s",
                    result.billed, result.skipped, result.failed, result.total_amount)
        return result

    def _bill_subscriber(self, db: Session, subscriber_id: str, now: datetime,
                         dry_run: bool, result: BillingRunResult):
        subscriber = db.get(Subscriber, subscriber_id)
        cycle_start = subscriber.next_billing_date if subscriber is not None else None
        if cycle_start is None or cycle_start > now:
            result.add_skip(subscriber_id, "billing date already advanced")
            return

        price = price_of(subscriber.registration_tier)
        if not price.is_recurring:
            # tier changed to a one-off since the last cycle; stop billing it
            if not dry_run:
                db.execute(
                    update(Subscriber)
                    .where(Subscriber.id == subscriber.id, Subscriber.next_billing_date == cycle_start)
                    .values(is_recurring=False, next_billing_date=None, updated_at=now)
                )
                db.commit()
                logger.info("Subscriber=%s moved to one-off tier %s, recurring billing stopped",
                            subscriber_id, price.tier.value)
            result.add_skip(subscriber_id, f"tier {price.tier.value} is not recurring")
            return

        period = cycle_period(cycle_start)
        if dry_run:
            key = open_key_for(subscriber.id, price.category, period)
            if db.query(Invoice.id).filter(Invoice.open_key == key).first() is not None:
                result.add_skip(subscriber_id, f"already billed for {period}")
            else:
                result.add_billed(price.tier.value, price.amount)
            return

        ledger = InvoiceLedger(db, self.notifier)
        try:
            invoice = ledger.create_invoice(
                owner_id=subscriber.id,
                category=price.category,
                amount=price.amount,
                due_date=now + timedelta(days=self.due_days),
                description=f"{price.description} - {cycle_start:%B %Y}",
                period=period,
                institution_id=subscriber.institution_id,
                currency=price.currency,
                now=now,
            )
        except DuplicateInvoiceError:
            invoice = None

        # only ever forward, and only from the cycle we just billed
        db.execute(
            update(Subscriber)
            .where(Subscriber.id == subscriber.id, Subscriber.next_billing_date == cycle_start)
            .values(next_billing_date=cycle_start + timedelta(days=self.cycle_days), updated_at=now)
        )
        db.commit()

        if invoice is None:
            logger.info("Subscriber=%s already billed for %s, skipping", subscriber_id, period)
            result.add_skip(subscriber_id, f"already billed for {period}")
            return

        result.add_billed(price.tier.value, price.amount)
        logger.info("Billed subscriber=%s tier=%s amount=%s invoice=%s",
                    subscriber_id, price.tier.value, price.amount, invoice.invoice_number)
        self.notifier.notify(
            subscriber.id,
            f"Monthly Payment Due - {cycle_start:%B}",
            f"Your monthly {price.tier.value.upper()} subscription fee of {price.currency} {price.amount:,} "
            f"is now due. Please pay by {invoice.due_date:%Y-%m-%d} to avoid service interruption. "
            f"Invoice: {invoice.invoice_number}.",
            "invoice_created",
        )

    def _record_run(self, result: BillingRunResult):
        db = self.session_factory()
        try:
            run = BillingRun(
                started_at=result.started_at,
                finished_at=utcnow(),
                dry_run=result.dry_run,
                eligible=result.eligible,
                billed=result.billed,
                skipped=result.skipped,
                failed=result.failed,
                total_amount=result.total_amount,
                summary={"byTier": result.by_tier, "failures": result.failures},
            )
            db.add(run)
            db.commit()
            result.run_id = run.id
        except Exception:
            db.rollback()
            logger.exception("Could not record billing run summary")
        finally:
            db.close()
