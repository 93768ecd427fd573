"""
Billing error taxonomy.

Processor failures are translated into ``ProcessorError`` variants that carry a
fixed, user-facing message, so callers never depend on the stripe library's
exception hierarchy.
"""
import stripe


class BillingError(Exception):
    code = "billing_error"
    http_status = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def user_message(self) -> str:
        return self.message


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 400


class NotFoundError(BillingError):
    code = "not_found"
    http_status = 404


class StateError(BillingError):
    code = "invalid_state"
    http_status = 409


class PersistenceError(BillingError):
    code = "persistence_error"
    http_status = 500


class SignatureError(BillingError):
    code = "invalid_signature"
    http_status = 400


class ProcessorError(BillingError):
    """Base for failures reported by the payment processor."""
    code = "processor_error"
    http_status = 502
    default_message = "The payment could not be processed. Please try again."

    def __init__(self, message: str | None = None, *, detail: str | None = None):
        super().__init__(message or self.default_message)
        # Raw processor text, for logs only
        self.detail = detail


class CardError(ProcessorError):
    code = "card_declined"
    http_status = 402
    default_message = "Your card was declined. Please use a different payment method."


class RateLimited(ProcessorError):
    code = "rate_limited"
    http_status = 429
    default_message = "Too many requests to the payment processor. Please wait a moment and try again."


class InvalidRequest(ProcessorError):
    code = "invalid_request"
    http_status = 400
    default_message = "The payment request was invalid. Please check the details and try again."


class ApiUnavailable(ProcessorError):
    code = "processor_unavailable"
    default_message = "The payment service is temporarily unavailable. Please try again later."


class ProcessorConnectionError(ProcessorError):
    code = "processor_connection_error"
    default_message = "Could not connect to the payment service. Check your connection and try again."


class AuthError(ProcessorError):
    code = "processor_auth_error"
    default_message = "Payment service authentication failed. Please contact support."


class UnknownProcessorError(ProcessorError):
    code = "processor_unknown_error"


# Order matters: subclasses before their parents
_STRIPE_ERROR_MAP = (
    (stripe.CardError, CardError),
    (stripe.RateLimitError, RateLimited),
    (stripe.InvalidRequestError, InvalidRequest),
    (stripe.AuthenticationError, AuthError),
    (stripe.PermissionError, AuthError),
    (stripe.APIConnectionError, ProcessorConnectionError),
    (stripe.APIError, ApiUnavailable),
)


def translate_stripe_error(exc: Exception) -> ProcessorError:
    """Map a stripe library exception onto the processor error variants."""
    detail = getattr(exc, "user_message", None) or str(exc)
    for stripe_cls, variant in _STRIPE_ERROR_MAP:
        if isinstance(exc, stripe_cls):
            return variant(detail=detail)
    return UnknownProcessorError(detail=detail)
