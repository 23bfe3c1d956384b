"""Commission error taxonomy.

Every business failure carries a ``category`` the caller can act on:

* ``validation`` - bad input, never retried
* ``state``      - wrong state, stale version or duplicate; never retried
* ``transient``  - DB timeout or rail network error; retried with backoff
* ``external``   - bank rejection, missing rate; routed to suspense
"""

from __future__ import annotations

from typing import Any


class CommissionError(Exception):
    """Base for all commission lifecycle failures."""

    category = "validation"

    def __init__(self, reason: str, **context: Any):
        super().__init__(reason)
        self.reason = reason
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "category": self.category,
            "reason": self.reason,
            "error_type": type(self).__name__,
        }
        if self.context:
            data["context"] = {k: str(v) for k, v in self.context.items()}
        return data


class ValidationError(CommissionError):
    category = "validation"


class NotFoundError(CommissionError):
    category = "validation"


class InvalidStateError(CommissionError):
    category = "state"


class OptimisticLockError(InvalidStateError):
    """The caller's ``version`` no longer matches the persisted row."""


class DuplicateBatchError(InvalidStateError):
    pass


class TransientError(CommissionError):
    category = "transient"


class ExternalSystemError(CommissionError):
    category = "external"


class RateNotFoundError(ExternalSystemError):
    pass


class BalanceError(ValidationError):
    """Voucher debits and credits differ."""
