"""Error taxonomy shared by the cart, checkout, order and webhook services.

Services raise these; ``main`` turns every one of them into a JSON body of
the form ``{"detail": ..., "code": ..., "correlationId": ...}`` so API
callers can branch on ``code`` instead of parsing messages.
"""


class OrderingError(Exception):
    status_code = 400
    code = "ORDERING_ERROR"
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(OrderingError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class Unauthorized(OrderingError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Please sign in to continue"


class Forbidden(OrderingError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Not allowed"


class NotFound(OrderingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class ConflictOrRace(OrderingError):
    status_code = 409
    code = "CONFLICT"
    default_message = "The record was modified concurrently, please retry"


class CancellationNotAllowed(OrderingError):
    status_code = 409
    code = "CANCELLATION_NOT_ALLOWED"
    default_message = "This order can no longer be cancelled"


class InvalidTransition(OrderingError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_message = "Status change not allowed"


class PaymentNotCompleted(OrderingError):
    status_code = 400
    code = "PAYMENT_NOT_COMPLETED"
    default_message = "Payment not completed"


class InvalidSignature(OrderingError):
    status_code = 400
    code = "INVALID_SIGNATURE"
    default_message = "Invalid signature"


class GatewayError(OrderingError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"
    default_message = "Payment provider error, please try again"


class GatewayUnavailable(GatewayError):
    status_code = 504
    code = "PAYMENT_GATEWAY_UNAVAILABLE"
    default_message = "Payment provider did not respond, please try again"


class PartialInsertFailure(OrderingError):
    status_code = 500
    code = "ORDER_CREATE_FAILED"
    default_message = "Failed to create order"
