"""Domain exceptions for the escrow ledger.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware,
which maps each family to a status code and exposes `code` and `message`.
"""


class EscrowLedgerError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_LEDGER_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Input ---


class InputValidationError(EscrowLedgerError):
    """Malformed or out-of-range input, raised before any state change."""

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.errors = errors or []


# --- Not Found ---


class NotFoundError(EscrowLedgerError):
    """Raised when a referenced entity does not exist (or is soft-deleted)."""

    entity = "Entity"

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            message=f"{self.entity} not found: {entity_id}",
            code=f"{self.entity.upper()}_NOT_FOUND",
        )
        self.entity_id = entity_id


class OrderNotFoundError(NotFoundError):
    entity = "Order"


class EscrowNotFoundError(NotFoundError):
    entity = "Escrow"


class TransactionNotFoundError(NotFoundError):
    entity = "Transaction"


class UserNotFoundError(NotFoundError):
    """Raised for a missing payer, payee, recipient, merchant or driver."""

    entity = "User"

    def __init__(self, entity_id: str, role: str = "User") -> None:
        super().__init__(entity_id)
        self.message = f"{role} not found: {entity_id}"


# --- Authorization ---


class UnauthorizedError(EscrowLedgerError):
    """Raised when the caller cannot be authenticated."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message=message, code="UNAUTHORIZED")


class WebhookSignatureError(UnauthorizedError):
    """Raised when a webhook body does not match its HMAC signature."""

    def __init__(self) -> None:
        super().__init__(message="Invalid webhook signature")
        self.code = "INVALID_SIGNATURE"


class ForbiddenError(EscrowLedgerError):
    """Raised when the caller lacks the role or ownership for an operation."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message=message, code="FORBIDDEN")


# --- Conflicts ---


class ConflictError(EscrowLedgerError):
    """Base for uniqueness violations."""


class DuplicateEscrowError(ConflictError):
    """Raised when an order already has an active escrow."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Escrow already exists for order: {order_id}",
            code="DUPLICATE_ESCROW",
        )
        self.order_id = order_id


class DuplicateReferenceError(ConflictError):
    """Raised when a unique reference could not be allocated."""

    def __init__(self, reference: str) -> None:
        super().__init__(
            message=f"Reference already in use: {reference}",
            code="DUPLICATE_REFERENCE",
        )
        self.reference = reference


class PayoutAlreadyInitiatedError(ConflictError):
    """Raised when a released escrow already has a live payout."""

    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            message=f"Payout already initiated for escrow: {escrow_id}",
            code="DUPLICATE_PAYOUT",
        )
        self.escrow_id = escrow_id


# --- State Machine Errors ---


class InvalidStateTransitionError(EscrowLedgerError):
    """Raised when an operation is not valid for the entity's current status.

    Example: releasing an escrow that is already REFUNDED.
    """

    def __init__(self, entity: str, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid {entity} transition: {attempted} not allowed from {current_state}",
            code="INVALID_STATE",
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted = attempted


class PreconditionFailedError(EscrowLedgerError):
    """Raised when a gating condition on a related entity is not met."""


class OrderNotDeliveredError(PreconditionFailedError):
    """Raised when a non-admin releases an escrow before delivery."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Escrow can only be released after order delivery: {order_id}",
            code="ORDER_NOT_DELIVERED",
        )
        self.order_id = order_id


# --- Payment Gateway Errors ---


class PaymentGatewayError(EscrowLedgerError):
    """Raised when the payment gateway rejects or garbles a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message=message, code="PAYMENT_GATEWAY_ERROR")
        self.status_code = status_code


class GatewayOutcomeUnknownError(PaymentGatewayError):
    """Raised when a request may have reached the gateway but no verdict came back.

    Covers connections dropped after the request was written and 5xx
    answers. Callers must treat it as unsettled and retryable under the same
    reference, never as success or as a rejection.
    """

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message=message, status_code=status_code)
        self.code = "GATEWAY_OUTCOME_UNKNOWN"
        self.operation = operation


class GatewayTimeoutError(GatewayOutcomeUnknownError):
    """Raised when the gateway does not answer within the configured timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(operation, f"Payment gateway timed out after {timeout}s: {operation}")
        self.code = "GATEWAY_TIMEOUT"


class WebhookNotConfiguredError(EscrowLedgerError):
    """Raised when no webhook signing secret is configured."""

    def __init__(self) -> None:
        super().__init__(
            message="Webhook secret not configured",
            code="WEBHOOK_NOT_CONFIGURED",
        )
