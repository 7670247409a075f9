"""
Reconciliation error taxonomy.

Every error carries the HTTP status and machine-readable code it is rendered
with by the exception handler registered in ``storefront.main``.
"""


class ReconciliationError(Exception):
    status_code = 500
    code = "SERVER_ERROR"
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class SignatureInvalid(ReconciliationError):
    """Authenticity check failed. Never mutate state after this."""
    status_code = 400
    code = "PAYMENT_VERIFICATION_FAILED"
    message = "Payment verification failed. Invalid signature."


class RecordNotFound(ReconciliationError):
    status_code = 404
    code = "RECORD_NOT_FOUND"
    message = "Record not found"


class ConflictingTransition(ReconciliationError):
    """The event contradicts an already committed state; the payment was flagged."""
    status_code = 409
    code = "CONFLICTING_TRANSITION"
    message = "Payment requires manual reconciliation"


class GatewayUnavailable(ReconciliationError):
    """Remote gateway call failed or timed out. State is unchanged; retry later."""
    status_code = 503
    code = "GATEWAY_UNAVAILABLE"
    message = "Payment gateway is unavailable, please retry"


class GatewayRejected(ReconciliationError):
    """The gateway answered but refused the request (bad id, bad amount...)."""
    status_code = 400
    code = "GATEWAY_REJECTED"
    message = "Payment gateway rejected the request"


class MalformedEvent(ReconciliationError):
    status_code = 400
    code = "MALFORMED_EVENT"
    message = "Malformed webhook event"


class ConcurrentModification(ReconciliationError):
    status_code = 409
    code = "CONCURRENT_MODIFICATION"
    message = "Record was modified concurrently, please retry"


class InvalidRequest(ReconciliationError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"
