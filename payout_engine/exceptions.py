"""
Error taxonomy of the earnings engine.

Validation and idempotency errors are recoverable and reported back to the
vendor or admin. LedgerInvariantViolation is fatal for the vendor's ledger:
it freezes the ledger and is sent to the admin alert channel.
"""


class EarningsError(Exception):
    """Base class for every error raised by the engine."""
    code = "earnings_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = {key: str(value) for key, value in self.details.items()}
        return payload


class ConfigurationError(EarningsError):
    """Vendor billing configuration is missing or invalid. Retry after fixing it."""
    code = "configuration_error"


class DuplicateRecognitionError(EarningsError):
    """The line item was already recognized; carries the existing transaction."""
    code = "duplicate_recognition"

    def __init__(self, existing, message: str = ""):
        super().__init__(message or "Line item already recognized")
        self.existing = existing


class InvalidRefundError(EarningsError):
    code = "invalid_refund"


class InsufficientBalanceError(EarningsError):
    code = "insufficient_balance"


class BelowMinimumPayoutError(InsufficientBalanceError):
    code = "below_minimum_payout"


class InvalidPayoutAmountError(EarningsError):
    code = "invalid_payout_amount"


class InvalidStateTransitionError(EarningsError):
    code = "invalid_state_transition"


class LedgerInvariantViolation(EarningsError):
    """Money is unaccounted for. Never recovered automatically."""
    code = "ledger_invariant_violation"


class LedgerFrozenError(EarningsError):
    code = "ledger_frozen"


class ConcurrentLedgerUpdateError(EarningsError):
    """Optimistic version check lost against a concurrent writer."""
    code = "concurrent_ledger_update"


class NotFoundError(EarningsError):
    code = "not_found"


class OrderNotSettledError(EarningsError):
    code = "order_not_settled"


class GatewayError(EarningsError):
    code = "gateway_error"
