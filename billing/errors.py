"""Error taxonomy shared by every billing component.

Each error carries the HTTP status and machine-readable code the API layer
answers with, so the routes never have to translate errors themselves.
"""


class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    status_code = 422
    code = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class InvalidStateError(BillingError):
    status_code = 409
    code = "invalid_state"


class MissingProofError(InvalidStateError):
    code = "missing_proof"


class AlreadyPaidError(InvalidStateError):
    code = "already_paid"


class DuplicateError(BillingError):
    status_code = 409
    code = "duplicate"


class DuplicateInvoiceError(DuplicateError):
    code = "duplicate_invoice"


class DuplicateRevenueError(DuplicateError):
    code = "duplicate_revenue"


class DuplicateWebhookError(DuplicateError):
    code = "duplicate_webhook"


class GatewayError(BillingError):
    """The payment provider refused or failed the request.

    ``reason`` holds the provider detail for logs and the transaction record;
    the message exposed to end users stays generic.
    """
    status_code = 502
    code = "payment_failed"

    def __init__(self, reason: str, *, status: int = None, payload=None):
        super().__init__("Payment could not be completed")
        self.reason = reason
        self.provider_status = status
        self.payload = payload


class AuthorizationError(BillingError):
    status_code = 403
    code = "forbidden"
