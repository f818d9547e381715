"""
Orderflow - Domain errors

Services raise these; the API layer maps each class to an HTTP status.
"""


class OrderFlowError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderFlowError):
    """Malformed or incomplete input, or an invalid enum value."""
    status_code = 400


class DuplicateTransactionError(ValidationError):
    status_code = 409


class NotFoundError(OrderFlowError):
    status_code = 404


class PreconditionError(OrderFlowError):
    """A transition was attempted against the order's current state."""
    status_code = 409


class ConflictError(OrderFlowError):
    """Concurrent writers kept winning the optimistic lock race."""
    status_code = 409


class InfrastructureError(OrderFlowError):
    status_code = 503
