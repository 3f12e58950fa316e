from typing import Any, Optional


class LedgerServiceError(Exception):
    code = "ledger_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidStateTransitionError(LedgerServiceError):
    code = "state_invariant_violation"


class InvalidPayoutAmountError(LedgerServiceError):
    code = "invalid_payout_amount"


class MissingProgramError(LedgerServiceError):
    code = "missing_program"


class NotFoundError(LedgerServiceError):
    code = "not_found"


class ConflictError(LedgerServiceError):
    code = "conflict"


class LedgerValidationError(LedgerServiceError):
    code = "validation_error"


class InternalLedgerError(LedgerServiceError):
    code = "internal_error"
