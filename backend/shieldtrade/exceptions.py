"""
Domain exceptions for the engine.

Stores and executors raise these instead of fastapi.HTTPException so the
engine stays usable without the web layer. A global exception handler in
main.py translates them into HTTP responses.
"""


class AppError(Exception):
    """Base application error with an HTTP-equivalent status code."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(AppError):
    """Input validation failure (400)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class InvariantViolationError(AppError):
    """Mutation would break a store invariant (409)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class InsufficientFundsError(AppError):
    """Shielded or wallet balance cannot cover the requested action (402)."""

    def __init__(self, message: str, required: float = None, available: float = None):
        self.required = required
        self.available = available
        super().__init__(message, status_code=402)


class ExternalServiceError(AppError):
    """Pricing, swap, ledger or relayer call failed or timed out (503).

    Transient: callers abort the current item and retry on the next tick.
    """

    def __init__(self, message: str = "External service unavailable"):
        super().__init__(message, status_code=503)


class TransactionUnconfirmedError(ExternalServiceError):
    """The node accepted a transaction but its confirmation is still unknown.

    Not transient: resubmitting could execute the trade twice. Callers record
    the action under the carried signature instead of retrying it.
    """

    def __init__(self, signature: str):
        self.signature = signature
        super().__init__(f"Transaction {signature} submitted but not confirmed")


class StalePayloadError(AppError):
    """Prepared transaction payload has outlived its validity window (410)."""

    def __init__(self, message: str = "Transaction payload expired, rebuild required"):
        super().__init__(message, status_code=410)
