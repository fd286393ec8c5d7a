from __future__ import annotations

from typing import Any, Dict, Optional

Json = Dict[str, Any]


class BatchError(Exception):
    """Canonical error type for batch ledger, pricing and claim failures.

    retryable: the caller may retry later (with backoff for price failures).
    recoverable: an expected condition, not a failure; never log it as one.
    """

    code: str = "batch_error"
    retryable: bool = False
    recoverable: bool = False

    def __init__(self, reason: str = "", details: Optional[Json] = None) -> None:
        super().__init__(reason or self.code)
        self.reason = str(reason or self.code)
        self.details: Json = dict(details or {})

    def __str__(self) -> str:
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Json:
        return {"code": self.code, "reason": self.reason, "details": dict(self.details)}


# --- caller errors ---------------------------------------------------------


class InvalidAmount(BatchError):
    code = "invalid_amount"


class InvalidAccount(BatchError):
    code = "invalid_account"


class InvalidSlippage(BatchError):
    code = "invalid_slippage"


class UnknownBatch(BatchError):
    code = "unknown_batch"


class InvalidState(BatchError):
    code = "invalid_state"


class AlreadySettled(InvalidState):
    code = "already_settled"


class AlreadyClaimed(InvalidState):
    code = "already_claimed"


# --- timing preconditions --------------------------------------------------


class CooldownActive(BatchError):
    code = "cooldown_active"
    retryable = True
    recoverable = True


class EmptyBatch(BatchError):
    code = "empty_batch"
    retryable = True
    recoverable = True


# --- price sources ---------------------------------------------------------


class SourceUnavailable(BatchError):
    code = "source_unavailable"
    retryable = True


class RateUnavailable(BatchError):
    code = "rate_unavailable"
    retryable = True


# --- execution -------------------------------------------------------------


class Rejected(BatchError):
    code = "settlement_rejected"
    retryable = True


class SlippageExceeded(BatchError):
    code = "slippage_exceeded"
