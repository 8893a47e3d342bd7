from typing import Optional


class PaymentError(Exception):
    """Base for every failure create_order can surface to a caller.

    `message` is safe to show to the storefront; anything provider-specific
    stays on the exception instance for logging.
    """

    code = "payment_error"
    status_code = 500
    message = "Payment could not be created"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidAmount(PaymentError):
    code = "invalid_amount"
    status_code = 400
    message = "Amount must be a positive number with at most two decimal places"


class InvalidIdempotencyKey(PaymentError):
    code = "invalid_idempotency_key"
    status_code = 400
    message = "idempotencyKey must be a non-empty string"


class RequestInFlight(PaymentError):
    code = "request_in_flight"
    status_code = 409
    message = "A payment for this checkout is already being created; try again shortly"


class IdempotencyKeyMismatch(PaymentError):
    code = "idempotency_key_mismatch"
    status_code = 409
    message = "idempotencyKey was already used with a different amount or currency"


class AttemptsExhausted(PaymentError):
    code = "attempts_exhausted"
    status_code = 422
    message = "Too many failed attempts for this checkout; start a new one"


class ProviderRejected(PaymentError):
    code = "provider_rejected"
    status_code = 502
    message = "The payment provider declined the order"

    def __init__(self, provider_code: Optional[str] = None, provider_message: Optional[str] = None):
        super().__init__()
        self.provider_code = provider_code
        self.provider_message = provider_message


class TransportFailure(PaymentError):
    code = "transport_failure"
    status_code = 502
    message = "The payment provider could not be reached; try again"

    def __init__(self, reason: str = "transport_error"):
        super().__init__()
        self.reason = reason
