"""
Oracle Error Taxonomy

Gate and judge failures are not exceptions: they are recorded as terminal
evaluations. Release gates are returned as structured results. Everything
below is fatal to the operation that raised it.
"""


class OracleError(Exception):
    """Base class for all deal oracle errors."""
    pass


class ValidationError(OracleError):
    """Raised when operation input is missing or malformed."""
    pass


class NotFoundError(OracleError):
    """Raised for an unknown deal or submission id."""
    pass


class InvalidTransitionError(OracleError):
    """Raised when a deal status change is not allowed."""
    pass


class NoEvaluationsError(OracleError):
    """Raised when release is requested before any submission is scored."""
    pass


class PayoutError(OracleError):
    """Raised when a payout could not be submitted. Funds were not moved."""
    pass


class PaymentCollaboratorError(OracleError):
    """Raised by payment collaborators for transport or API failures."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
