"""Payment gateway adapter.

Outbound: ``initiate`` records a Transaction and asks the provider for a
checkout, correlated by our own ``gateway_reference_id``.
Inbound: ``handle_callback`` reconciles the provider's webhook against that
reference. The webhook is the only thing that moves a transaction to a final
state, and it can do so once.
"""
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import update
from sqlalchemy.orm import Session

from billing import config
from billing.errors import (
    AuthorizationError,
    BillingError,
    DuplicateRevenueError,
    DuplicateWebhookError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing.events import Notifier
from billing.invoices import InvoiceLedger
from billing.models import (
    KIND_BOOK_PURCHASE,
    KIND_EVENT_REGISTRATION,
    TRANSACTION_KINDS,
    TX_COMPLETED,
    TX_FAILED,
    TX_PENDING,
    TX_PROCESSING,
    TX_REFUNDED,
    BookPurchase,
    EventRegistration,
    Invoice,
    Transaction,
    utcnow,
)
from billing.revenue import RevenueLedger

logger = logging.getLogger(__name__)

CALLBACK_SUCCESS = "success"
CALLBACK_FAILED = "failed"

# a success callback may still land after a failed initiation or a timeout
COMPLETABLE_STATUSES = (TX_PENDING, TX_PROCESSING, TX_FAILED)
FAILABLE_STATUSES = (TX_PENDING, TX_PROCESSING)

# metadata key -> (settled record, transaction kind it applies to; None for any kind)
SETTLEMENT_TARGETS = (
    ("purchaseId", BookPurchase, KIND_BOOK_PURCHASE),
    ("registrationId", EventRegistration, KIND_EVENT_REGISTRATION),
    ("invoiceId", Invoice, None),
)


class GatewayTimeout(GatewayError):
    """The provider did not answer in time; the outcome is unknown."""


@dataclass(frozen=True)
class CheckoutResult:
    redirect_url: Optional[str]
    provider_reference: Optional[str]
    message: Optional[str] = None


@dataclass
class InitiationResult:
    transaction: Transaction
    redirect_target: Optional[str] = None


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature.strip().lower())


class GatewayClient:
    """Thin HTTP wrapper around the provider's checkout API."""

    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None,
                 callback_url: str = None, transport: httpx.BaseTransport = None):
        self.base_url = (base_url or config.GATEWAY_BASE_URL).rstrip("/")
        self.api_key = config.GATEWAY_API_KEY if api_key is None else api_key
        self.callback_url = callback_url or config.GATEWAY_CALLBACK_URL
        self.client = httpx.Client(
            timeout=config.GATEWAY_TIMEOUT if timeout is None else timeout,
            transport=transport,
        )

    def close(self):
        self.client.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def checkout(self, reference: str, amount: int, currency: str, payer_contact: str,
                 metadata: Dict[str, Any]) -> CheckoutResult:
        payload = {
            "reference": reference,
            "amount": amount,
            "currency": currency,
            "msisdn": payer_contact,
            "callbackUrl": self.callback_url,
            "metadata": metadata,
        }
        try:
            response = self.client.post(f"{self.base_url}/checkout", json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"Gateway timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway request failed: {exc}") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"raw": data}

        if response.status_code >= 400:
            raise GatewayError(
                data.get("message") or f"Gateway responded with status {response.status_code}",
                status=response.status_code,
                payload=data,
            )
        status = str(data.get("status", "")).lower()
        if status not in ("accepted", "success", "pending"):
            raise GatewayError(data.get("message") or f"Gateway rejected checkout ({status or 'no status'})",
                               status=response.status_code, payload=data)
        return CheckoutResult(
            redirect_url=data.get("redirectUrl"),
            provider_reference=data.get("providerReference"),
            message=data.get("message"),
        )


class PaymentGatewayAdapter:

    def __init__(self, db: Session, notifier: Notifier, client: GatewayClient,
                 revenue: Optional[RevenueLedger] = None):
        self.db = db
        self.notifier = notifier
        self.client = client
        self.revenue = revenue or RevenueLedger(db)
        self.invoices = InvoiceLedger(db, notifier)

    def get_transaction(self, transaction_id: int) -> Transaction:
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _cas(self, transaction_id: int, from_statuses, **values) -> bool:
        values["updated_at"] = utcnow()
        result = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(from_statuses))
            .values(**values)
        )
        return result.rowcount == 1

    def _targets(self, kind: str, meta: Dict[str, Any]) -> List[Tuple[str, Any]]:
        """Load the records a payment of ``kind`` settles, as named by its metadata."""
        targets = []
        for key, model, target_kind in SETTLEMENT_TARGETS:
            if meta.get(key) is None or (target_kind is not None and target_kind != kind):
                continue
            try:
                target_id = int(meta[key])
            except (TypeError, ValueError):
                raise ValidationError(f"{key} must be a numeric id, got {meta[key]!r}") from None
            target = self.db.get(model, target_id)
            if target is None:
                raise NotFoundError(f"{key} {target_id} not found")
            targets.append((key, target))
        return targets

    def _check_target(self, key: str, target, owner_id: str, amount: int):
        if target.owner_id != owner_id:
            raise AuthorizationError(f"{key} {target.id} belongs to another owner")
        if target.amount != amount:
            raise ValidationError(f"Amount {amount} does not match {key} {target.id} amount {target.amount}")

    # --- outbound ---

    def initiate(self, amount: int, payer_contact: str, owner_id: str, kind: str,
                 metadata: Optional[Dict[str, Any]] = None, currency: Optional[str] = None) -> InitiationResult:
        if amount is None or int(amount) <= 0:
            raise ValidationError("Payment amount must be positive")
        if kind not in TRANSACTION_KINDS:
            raise ValidationError(f"Unknown payment kind: {kind!r}")
        if not payer_contact:
            raise ValidationError("Payer contact is required")

        meta = dict(metadata or {})
        for key, target in self._targets(kind, meta):
            self._check_target(key, target, owner_id, int(amount))
            meta[key] = target.id

        transaction = Transaction(
            owner_id=owner_id,
            kind=kind,
            amount=int(amount),
            currency=currency or config.DEFAULT_CURRENCY,
            payer_contact=payer_contact,
            gateway_reference_id=f"PAY-{uuid.uuid4().hex[:16].upper()}",
            meta=meta,
            status=TX_PENDING,
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)
        logger.info("Created transaction id=%s ref=%s kind=%s amount=%s",
                    transaction.id, transaction.gateway_reference_id, kind, transaction.amount)

        try:
            result = self.client.checkout(
                transaction.gateway_reference_id, transaction.amount, transaction.currency,
                payer_contact, transaction.meta,
            )
        except GatewayTimeout as exc:
            # left pending; the webhook settles it
            logger.warning("Checkout for ref=%s timed out: %s", transaction.gateway_reference_id, exc.reason)
            return InitiationResult(transaction)
        except GatewayError as exc:
            self._cas(transaction.id, (TX_PENDING,), status=TX_FAILED, failure_reason=exc.reason)
            self.db.commit()
            self.db.refresh(transaction)
            logger.warning("Checkout for ref=%s rejected: %s", transaction.gateway_reference_id, exc.reason)
            exc.transaction_id = transaction.id
            raise

        self._cas(
            transaction.id, (TX_PENDING,),
            status=TX_PROCESSING,
            redirect_url=result.redirect_url,
            provider_reference_id=result.provider_reference,
        )
        self.db.commit()
        self.db.refresh(transaction)
        logger.info("Checkout accepted for ref=%s status=%s", transaction.gateway_reference_id, transaction.status)
        return InitiationResult(transaction, result.redirect_url)

    # --- inbound ---

    def handle_callback(self, payload: Dict[str, Any]) -> Transaction:
        reference = payload.get("gatewayReferenceId")
        if not reference:
            raise ValidationError("gatewayReferenceId is required")
        transaction = (
            self.db.query(Transaction)
            .filter(Transaction.gateway_reference_id == reference)
            .first()
        )
        if transaction is None:
            raise NotFoundError(f"No transaction for reference {reference}")

        status = str(payload.get("status") or "").lower()
        if status == CALLBACK_SUCCESS:
            return self._complete(transaction, payload)
        if status == CALLBACK_FAILED:
            return self._fail(transaction, payload)
        logger.info("Ignoring callback for ref=%s with status=%r", reference, status)
        return transaction

    def _complete(self, transaction: Transaction, payload: Dict[str, Any]) -> Transaction:
        now = utcnow()
        moved = self._cas(
            transaction.id, COMPLETABLE_STATUSES,
            status=TX_COMPLETED,
            completed_at=now,
            provider_reference_id=payload.get("providerTransactionId") or transaction.provider_reference_id,
            failure_reason=None,
        )
        if not moved:
            self.db.rollback()
            self.db.refresh(transaction)
            if transaction.status == TX_COMPLETED:
                raise DuplicateWebhookError(f"Transaction {transaction.gateway_reference_id} already completed")
            raise InvalidStateError(
                f"Transaction {transaction.gateway_reference_id} cannot complete from {transaction.status}")
        self.db.refresh(transaction)

        try:
            self.revenue.record(transaction)
            self.db.commit()
        except DuplicateRevenueError:
            self.db.rollback()
            raise DuplicateWebhookError(
                f"Revenue for {transaction.gateway_reference_id} already booked") from None
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(transaction)
        logger.info("Transaction ref=%s completed (provider ref=%s)",
                    transaction.gateway_reference_id, transaction.provider_reference_id)

        # a settlement problem is recorded on the transaction and never undoes the completion
        try:
            self._settle(transaction)
            self.db.commit()
        except BillingError as exc:
            self.db.rollback()
            self._record_settlement_error(transaction, exc.message)
        except Exception as exc:
            self.db.rollback()
            logger.exception("Settlement for ref=%s crashed", transaction.gateway_reference_id)
            self._record_settlement_error(transaction, str(exc))

        self.notifier.publish("payment.events.confirmed", {
            "type": "PaymentConfirmed",
            "payload": {"transaction_id": transaction.id, "owner_id": transaction.owner_id,
                        "kind": transaction.kind, "metadata": transaction.meta},
        })
        self.notifier.notify(
            transaction.owner_id,
            "Payment successful",
            f"We received your payment of {transaction.currency} {transaction.amount:,}. "
            f"Reference: {transaction.gateway_reference_id}.",
            "payment_success",
        )
        return transaction

    def _settle(self, transaction: Transaction):
        """Apply the kind-specific effect of a completed payment.

        Every target is checked again against the transaction's owner and
        amount, since the record may have changed since initiation.
        """
        now = transaction.completed_at or utcnow()
        for key, target in self._targets(transaction.kind, transaction.meta or {}):
            self._check_target(key, target, transaction.owner_id, transaction.amount)

            if isinstance(target, BookPurchase):
                settled = self.db.execute(
                    update(BookPurchase)
                    .where(BookPurchase.id == target.id, BookPurchase.status != "completed")
                    .values(status="completed", transaction_id=transaction.id, completed_at=now)
                ).rowcount
                if not settled:
                    logger.warning("Book purchase %s already completed", target.id)
            elif isinstance(target, EventRegistration):
                settled = self.db.execute(
                    update(EventRegistration)
                    .where(EventRegistration.id == target.id, EventRegistration.payment_status != "paid")
                    .values(payment_status="paid", transaction_id=transaction.id, paid_at=now)
                ).rowcount
                if not settled:
                    logger.warning("Event registration %s already paid", target.id)
            else:
                self.invoices.mark_paid_from_gateway(target.id, commit=False)

    def _record_settlement_error(self, transaction: Transaction, error: str):
        logger.error("Transaction ref=%s completed but not settled: %s", transaction.gateway_reference_id, error)
        self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction.id)
            .values(settlement_error=error, updated_at=utcnow())
        )
        self.db.commit()
        self.db.refresh(transaction)

    def _fail(self, transaction: Transaction, payload: Dict[str, Any]) -> Transaction:
        reason = payload.get("message") or "Payment failed at provider"
        moved = self._cas(
            transaction.id, FAILABLE_STATUSES,
            status=TX_FAILED,
            failure_reason=reason,
            provider_reference_id=payload.get("providerTransactionId") or transaction.provider_reference_id,
        )
        if not moved:
            self.db.rollback()
            self.db.refresh(transaction)
            if transaction.status == TX_FAILED:
                raise DuplicateWebhookError(f"Transaction {transaction.gateway_reference_id} already failed")
            raise InvalidStateError(
                f"Failure callback for {transaction.gateway_reference_id} ignored in status {transaction.status}")
        self.db.commit()
        self.db.refresh(transaction)

        logger.info("Transaction ref=%s failed: %s", transaction.gateway_reference_id, reason)
        self.notifier.publish("payment.events.failed", {
            "type": "PaymentFailed",
            "payload": {"transaction_id": transaction.id, "owner_id": transaction.owner_id, "kind": transaction.kind},
        })
        self.notifier.notify(
            transaction.owner_id,
            "Payment failed",
            f"Your payment {transaction.gateway_reference_id} could not be completed. Please try again.",
            "payment_failed",
        )
        return transaction

    # --- admin ---

    def refund(self, transaction_id: int) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not self._cas(transaction_id, (TX_COMPLETED,), status=TX_REFUNDED):
            self.db.rollback()
            raise InvalidStateError(f"Only completed transactions can be refunded (status {transaction.status})")
        self.db.commit()
        self.db.refresh(transaction)
        logger.info("Refunded transaction id=%s", transaction_id)
        self.notifier.publish("payment.events.refund", {
            "type": "PaymentRefunded",
            "payload": {"transaction_id": transaction.id, "owner_id": transaction.owner_id},
        })
        return transaction
