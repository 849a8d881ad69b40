# deal/errors.py
from typing import Optional


class DealError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, round_id: Optional[str] = None, owner_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.round_id = round_id
        self.owner_id = owner_id

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(DealError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ActiveGameExistsError(ValidationError):
    code = "ACTIVE_GAME_EXISTS"


class AuthError(DealError):
    status_code = 401
    code = "UNAUTHORIZED"


class OwnershipError(DealError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(DealError):
    status_code = 404
    code = "NOT_FOUND"


class PhaseConflictError(DealError):
    status_code = 409
    code = "PHASE_CONFLICT"


class InsufficientFundsError(DealError):
    status_code = 400
    code = "INSUFFICIENT_FUNDS"


class LedgerError(DealError):
    status_code = 502
    code = "LEDGER_ERROR"


class LedgerUnavailable(LedgerError):
    """Transient ledger failure (connection, timeout); safe to retry with the same key."""


class InternalError(DealError):
    status_code = 500
    code = "INTERNAL_ERROR"


class StaleRoundError(PhaseConflictError):
    """The stored round moved on since it was read."""
