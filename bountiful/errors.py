"""
Bountiful Error Taxonomy

Every failure the core can report is one of the typed errors below. The
validator and builder raise them; the lifecycle orchestrator catches them and
hands them back to the caller inside an ActionOutcome, so nothing escapes
into unrelated code paths.

    BountyError
    ├── InvalidPrecondition   caller/deadline/stat checks, bad arithmetic
    ├── DustOutput            an output would fall below the dust threshold
    ├── RecordNotFound        no live record for the requested bounty
    ├── StaleRecord           the record was consumed by a concurrent tx
    ├── EncodingError         malformed register content
    ├── LedgerRejected        the independent validator said no
    └── ConfigError           invalid configuration
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar


class BountyError(Exception):
    """Base exception for bounty life-cycle failures."""

    code = "bounty_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class InvalidPrecondition(BountyError):
    """Caller, deadline or statistics check failed. Nothing was submitted."""

    code = "invalid_precondition"


class DustOutput(BountyError):
    """Fee or reward arithmetic would produce a sub-minimum output."""

    code = "dust_output"

    def __init__(self, message: str, *, output: str, amount: int, minimum: int):
        super().__init__(message, output=output, amount=amount, minimum=minimum)
        self.output = output
        self.amount = amount
        self.minimum = minimum


class RecordNotFound(BountyError):
    """No unspent record exists for the requested bounty."""

    code = "record_not_found"


class StaleRecord(BountyError):
    """The record read before building was consumed by another transaction.

    Callers should re-fetch and retry; the core never retries by itself.
    """

    code = "stale_record"


class EncodingError(BountyError):
    """Register content could not be decoded into a bounty record."""

    code = "encoding_error"


class LedgerRejected(BountyError):
    """The ledger's own validator rejected an optimistically valid transaction."""

    code = "ledger_rejected"

    def __init__(self, message: str, *, reasons: Optional[List[str]] = None, **details: Any):
        super().__init__(message, **details)
        self.reasons = list(reasons or [])

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["reasons"] = list(self.reasons)
        return d


class ConfigError(BountyError):
    """Configuration error."""

    code = "config_error"


T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Typed success/failure wrapper for operations that must not raise."""
    ok: bool
    value: Optional[T] = None
    error: Optional[BountyError] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BountyError) -> "Result[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if not self.ok:
            raise self.error or BountyError("operation failed without a recorded error")
        return self.value  # type: ignore[return-value]
