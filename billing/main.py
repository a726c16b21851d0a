# billing/main.py
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadError
from sqlalchemy import text
from sqlalchemy.orm import Session

from billing import config, database, events, schemas
from billing.access import AccessPolicy, Caller
from billing.errors import AuthorizationError, BillingError
from billing.gateway import GatewayClient, PaymentGatewayAdapter, verify_signature
from billing.invoices import InvoiceLedger
from billing.pricing import list_tiers
from billing.proofs import PaymentProofWorkflow
from billing.revenue import RevenueLedger
from billing.scheduler import RecurringBillingScheduler
from billing.storage import LocalBlobStore
from billing.subscribers import register_subscriber

# logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("billing-service")

app = FastAPI(title="Billing Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

dispatcher = events.RabbitJobDispatcher(config.RABBITMQ_URL)
notifier = events.Notifier(dispatcher)
gateway_client = GatewayClient()
blob_store = LocalBlobStore(config.PROOF_STORAGE_DIR)
policy = AccessPolicy()


# Startup: initialize DB, the event publisher and the registration consumer.
# The daily billing run is scheduled by Celery beat (billing.tasks).
@app.on_event("startup")
def startup():
    logger.info("Initializing DB and starting background workers...")
    database.init_db(config.DATABASE_URL)
    dispatcher.start()
    events.start_consumer(config.RABBITMQ_URL, config.PAYMENT_QUEUE, notifier)
    logger.info("Startup complete.")


@app.on_event("shutdown")
def shutdown():
    gateway_client.close()


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_session_factory():
    return database.SessionLocal

def get_notifier():
    return notifier

def get_gateway_client():
    return gateway_client

def get_blob_store():
    return blob_store

def get_policy():
    return policy

def get_caller(x_user_id: Optional[str] = Header(None), x_user_role: Optional[str] = Header(None),
               x_institution_id: Optional[str] = Header(None)) -> Caller:
    if not x_user_id or not x_user_role:
        raise AuthorizationError("Caller identity is missing")
    return Caller(user_id=x_user_id, role=x_user_role.lower(), institution_id=x_institution_id)

def require_admin(caller: Caller = Depends(get_caller), policy: AccessPolicy = Depends(get_policy)) -> Caller:
    policy.require(policy.can_administer(caller), "Administrator role required")
    return caller


# Root and health endpoints
@app.get("/")
def root():
    return {"service": "Billing Service", "status": "running", "endpoints": ["/invoices", "/payments", "/docs"]}

@app.get("/health")
def health():
    try:
        db = database.SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}

@app.get("/tiers", response_model=List[schemas.TierOut])
def tiers():
    return [schemas.TierOut.from_price(price) for price in list_tiers()]


# Registration: subscriber billing state plus the registration invoice
@app.post("/subscribers", response_model=schemas.RegistrationOut, status_code=201)
def create_subscriber(body: schemas.SubscriberCreate, caller: Caller = Depends(require_admin),
                      db: Session = Depends(get_db), notifier: events.Notifier = Depends(get_notifier)):
    subscriber, invoice = register_subscriber(
        db, notifier,
        owner_id=body.student_id,
        tier=body.registration_tier,
        institution_id=body.institution_id,
        name=body.name,
        phone=body.phone,
    )
    return schemas.RegistrationOut(
        subscriber=schemas.SubscriberOut.model_validate(subscriber),
        invoice=schemas.InvoiceOut.from_invoice(invoice),
    )


# Invoices
@app.get("/invoices/{invoice_id}", response_model=schemas.InvoiceOut)
def get_invoice(invoice_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db),
                notifier: events.Notifier = Depends(get_notifier), policy: AccessPolicy = Depends(get_policy)):
    invoice = InvoiceLedger(db, notifier).get_invoice(invoice_id)
    policy.require(policy.can_submit_proof(caller, invoice) or policy.can_review_proof(caller, invoice))
    return schemas.InvoiceOut.from_invoice(invoice)

@app.post("/invoices/{invoice_id}/proof", response_model=schemas.InvoiceOut)
def submit_proof(invoice_id: int, file: UploadFile = File(...), transaction_reference: str = Form(..., alias="transactionReference"),
                 notes: Optional[str] = Form(None), caller: Caller = Depends(get_caller), db: Session = Depends(get_db),
                 notifier: events.Notifier = Depends(get_notifier), store=Depends(get_blob_store),
                 policy: AccessPolicy = Depends(get_policy)):
    reference = store.save(file.filename, file.file.read())
    try:
        invoice = PaymentProofWorkflow(db, notifier, policy).submit_proof(
            caller, invoice_id, reference, transaction_reference, notes)
    except Exception:
        # a failed submission must not leave the upload behind
        store.delete(reference)
        raise
    return schemas.InvoiceOut.from_invoice(invoice)

@app.post("/invoices/{invoice_id}/review", response_model=schemas.InvoiceOut)
def review_proof(invoice_id: int, body: schemas.ReviewRequest, caller: Caller = Depends(get_caller),
                 db: Session = Depends(get_db), notifier: events.Notifier = Depends(get_notifier),
                 policy: AccessPolicy = Depends(get_policy)):
    invoice = PaymentProofWorkflow(db, notifier, policy).review_proof(caller, invoice_id, body.decision, body.reason)
    return schemas.InvoiceOut.from_invoice(invoice)

@app.post("/invoices/{invoice_id}/cancel", response_model=schemas.InvoiceOut)
def cancel_invoice(invoice_id: int, caller: Caller = Depends(require_admin), db: Session = Depends(get_db),
                   notifier: events.Notifier = Depends(get_notifier)):
    invoice = InvoiceLedger(db, notifier).cancel_invoice(invoice_id)
    return schemas.InvoiceOut.from_invoice(invoice)


# Payments through the gateway
@app.post("/payments", response_model=schemas.PaymentInitiateOut, status_code=201)
def initiate_payment(body: schemas.PaymentCreate, caller: Caller = Depends(get_caller), db: Session = Depends(get_db),
                     notifier: events.Notifier = Depends(get_notifier), client: GatewayClient = Depends(get_gateway_client)):
    result = PaymentGatewayAdapter(db, notifier, client).initiate(
        amount=body.amount,
        payer_contact=body.payer_contact,
        owner_id=caller.user_id,
        kind=body.kind,
        metadata=body.metadata,
    )
    return schemas.PaymentInitiateOut(
        transaction_id=result.transaction.id,
        reference_id=result.transaction.gateway_reference_id,
        status=result.transaction.status,
        redirect_target=result.redirect_target,
    )

# Gateway webhook: always acknowledged so the provider does not retry
async def raw_body(request: Request) -> bytes:
    return await request.body()

@app.post("/payments/callback")
def payment_callback(request: Request, body: bytes = Depends(raw_body), db: Session = Depends(get_db),
                     notifier: events.Notifier = Depends(get_notifier),
                     client: GatewayClient = Depends(get_gateway_client)):
    if config.GATEWAY_WEBHOOK_SECRET:
        if not verify_signature(config.GATEWAY_WEBHOOK_SECRET, body, request.headers.get("X-Gateway-Signature")):
            logger.warning("Invalid webhook signature")
            return JSONResponse(status_code=403, content={"detail": "Invalid signature"})

    try:
        payload = schemas.CallbackPayload.model_validate_json(body)
    except PayloadError as e:
        logger.error("Malformed gateway callback: %s", e)
        return {"received": True}

    try:
        PaymentGatewayAdapter(db, notifier, client).handle_callback(payload.model_dump(by_alias=True))
    except BillingError as e:
        logger.warning("Callback for ref=%s not applied: %s", payload.gateway_reference_id, e.message)
    except Exception:
        db.rollback()
        logger.exception("Callback for ref=%s failed", payload.gateway_reference_id)
    return {"received": True}

@app.get("/payments/{payment_id}", response_model=schemas.TransactionOut)
def get_payment(payment_id: int, caller: Caller = Depends(get_caller), db: Session = Depends(get_db),
                notifier: events.Notifier = Depends(get_notifier), client: GatewayClient = Depends(get_gateway_client),
                policy: AccessPolicy = Depends(get_policy)):
    transaction = PaymentGatewayAdapter(db, notifier, client).get_transaction(payment_id)
    policy.require(caller.user_id == transaction.owner_id or policy.can_administer(caller))
    return schemas.TransactionOut.model_validate(transaction)

# Refund a payment (mark REFUNDED and publish event)
@app.post("/payments/{payment_id}/refund", response_model=schemas.TransactionOut)
def refund_payment(payment_id: int, caller: Caller = Depends(require_admin), db: Session = Depends(get_db),
                   notifier: events.Notifier = Depends(get_notifier), client: GatewayClient = Depends(get_gateway_client)):
    transaction = PaymentGatewayAdapter(db, notifier, client).refund(payment_id)
    return schemas.TransactionOut.model_validate(transaction)


# Billing administration
@app.post("/billing/run", response_model=schemas.BillingRunOut)
def run_billing(dry_run: bool = Query(False, alias="dryRun"), caller: Caller = Depends(require_admin),
                session_factory=Depends(get_session_factory), notifier: events.Notifier = Depends(get_notifier)):
    logger.info("Manual billing run requested by %s (dry_run=%s)", caller.user_id, dry_run)
    result = RecurringBillingScheduler(session_factory, notifier).run_once(dry_run=dry_run)
    return schemas.BillingRunOut.model_validate(result)

@app.get("/revenue/{period}")
def revenue_summary(period: str, caller: Caller = Depends(require_admin), db: Session = Depends(get_db)):
    return RevenueLedger(db).summary(period)
