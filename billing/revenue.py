"""Revenue ledger: the commission/net split booked for completed transactions."""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing import config
from billing.errors import DuplicateRevenueError, InvalidStateError
from billing.models import TX_COMPLETED, Revenue, Transaction, utcnow

logger = logging.getLogger(__name__)


def commission_for(amount: int, rate: float) -> int:
    value = Decimal(int(amount)) * Decimal(str(rate))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RevenueLedger:

    def __init__(self, db: Session, rates: Optional[Dict[str, float]] = None,
                 default_rate: Optional[float] = None):
        self.db = db
        self.rates = config.COMMISSION_RATES if rates is None else rates
        self.default_rate = config.DEFAULT_COMMISSION_RATE if default_rate is None else default_rate

    def rate(self, kind: str) -> float:
        return float(self.rates.get(kind, self.default_rate))

    def record(self, transaction: Transaction) -> Revenue:
        """Book the split for ``transaction``.

        The caller owns the database transaction: the row is flushed, not
        committed, so it lands together with the transaction status change.
        The unique ``transaction_id`` constraint rejects a second booking even
        when two callbacks get past the lookup at the same time; the caller
        must roll back on DuplicateRevenueError.
        """
        if transaction.status != TX_COMPLETED:
            raise InvalidStateError(f"Transaction {transaction.id} is not completed")
        if self.db.query(Revenue.id).filter(Revenue.transaction_id == transaction.id).first() is not None:
            raise DuplicateRevenueError(f"Revenue already booked for transaction {transaction.id}")

        rate = self.rate(transaction.kind)
        commission = commission_for(transaction.amount, rate)
        booked_at = transaction.completed_at or utcnow()
        revenue = Revenue(
            transaction_id=transaction.id,
            amount=transaction.amount,
            commission=commission,
            net_amount=transaction.amount - commission,
            rate=rate,
            category=transaction.kind,
            period=f"{booked_at:%Y-%m}",
            month=booked_at.month,
            year=booked_at.year,
            quarter=(booked_at.month - 1) // 3 + 1,
        )
        self.db.add(revenue)
        try:
            self.db.flush()
        except IntegrityError:
            raise DuplicateRevenueError(f"Revenue already booked for transaction {transaction.id}") from None
        logger.info("Booked revenue tx=%s amount=%s commission=%s net=%s",
                    transaction.id, revenue.amount, revenue.commission, revenue.net_amount)
        return revenue

    def summary(self, period: str) -> dict:
        row = (
            self.db.query(
                func.count(Revenue.id),
                func.coalesce(func.sum(Revenue.amount), 0),
                func.coalesce(func.sum(Revenue.commission), 0),
                func.coalesce(func.sum(Revenue.net_amount), 0),
            )
            .filter(Revenue.period == period)
            .one()
        )
        by_category = {
            category: {"count": count, "amount": int(amount), "commission": int(commission)}
            for category, count, amount, commission in (
                self.db.query(Revenue.category, func.count(Revenue.id),
                              func.sum(Revenue.amount), func.sum(Revenue.commission))
                .filter(Revenue.period == period)
                .group_by(Revenue.category)
                .all()
            )
        }
        return {
            "period": period,
            "transactions": row[0],
            "amount": int(row[1]),
            "commission": int(row[2]),
            "netAmount": int(row[3]),
            "byCategory": by_category,
        }
