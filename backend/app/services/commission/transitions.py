"""Transition tables for the commission lifecycle entities.

Each table maps a state to the set of states it may move to.  Terminal
states map to an empty set.  Re-applying the state an entity is already
in is accepted as a replay and reported as "nothing to do".
"""

from __future__ import annotations

import enum
import logging

from app.models.clawback import ClawbackStatus
from app.models.commission import BatchStatus
from app.models.disbursement import DisbursementStatus
from app.models.statement import FinalStatementStatus, TrialStatementStatus
from app.services.commission.errors import InvalidStateError

logger = logging.getLogger(__name__)


BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.INITIATED: {BatchStatus.CALCULATING, BatchStatus.FAILED, BatchStatus.CANCELLED},
    BatchStatus.CALCULATING: {
        BatchStatus.TRIAL_GENERATED,
        BatchStatus.FAILED,
        BatchStatus.CANCELLED,
    },
    BatchStatus.TRIAL_GENERATED: {
        BatchStatus.COMPLETED,
        BatchStatus.FAILED,
        BatchStatus.CANCELLED,
    },
    BatchStatus.COMPLETED: set(),
    BatchStatus.FAILED: set(),
    BatchStatus.CANCELLED: set(),
}

TRIAL_STATEMENT_TRANSITIONS: dict[TrialStatementStatus, set[TrialStatementStatus]] = {
    TrialStatementStatus.PENDING_APPROVAL: {
        TrialStatementStatus.APPROVED,
        TrialStatementStatus.REJECTED,
        TrialStatementStatus.CORRECTION_NEEDED,
    },
    TrialStatementStatus.CORRECTION_NEEDED: {TrialStatementStatus.PENDING_APPROVAL},
    TrialStatementStatus.APPROVED: set(),
    TrialStatementStatus.REJECTED: set(),
}

FINAL_STATEMENT_TRANSITIONS: dict[FinalStatementStatus, set[FinalStatementStatus]] = {
    FinalStatementStatus.FINALIZED: {FinalStatementStatus.READY_FOR_DISBURSEMENT},
    FinalStatementStatus.READY_FOR_DISBURSEMENT: {FinalStatementStatus.DISBURSED},
    FinalStatementStatus.DISBURSED: set(),
}

# CHEQUE goes PROCESSING -> COMPLETED directly; FAILED -> PROCESSING is a retry
DISBURSEMENT_TRANSITIONS: dict[DisbursementStatus, set[DisbursementStatus]] = {
    DisbursementStatus.PENDING: {DisbursementStatus.PROCESSING, DisbursementStatus.CANCELLED},
    DisbursementStatus.PROCESSING: {
        DisbursementStatus.SENT_TO_BANK,
        DisbursementStatus.COMPLETED,
        DisbursementStatus.FAILED,
        DisbursementStatus.CANCELLED,
    },
    DisbursementStatus.SENT_TO_BANK: {DisbursementStatus.COMPLETED, DisbursementStatus.FAILED},
    DisbursementStatus.FAILED: {DisbursementStatus.PROCESSING, DisbursementStatus.CANCELLED},
    DisbursementStatus.COMPLETED: set(),
    DisbursementStatus.CANCELLED: set(),
}

CLAWBACK_TRANSITIONS: dict[ClawbackStatus, set[ClawbackStatus]] = {
    ClawbackStatus.PENDING: {
        ClawbackStatus.IN_PROGRESS,
        ClawbackStatus.COMPLETED,
        ClawbackStatus.PARTIAL,
        ClawbackStatus.WAIVED,
        ClawbackStatus.WRITE_OFF,
    },
    ClawbackStatus.IN_PROGRESS: {
        ClawbackStatus.COMPLETED,
        ClawbackStatus.PARTIAL,
        ClawbackStatus.WAIVED,
        ClawbackStatus.WRITE_OFF,
    },
    ClawbackStatus.COMPLETED: set(),
    ClawbackStatus.PARTIAL: set(),
    ClawbackStatus.WAIVED: set(),
    ClawbackStatus.WRITE_OFF: set(),
}


def is_terminal(table: dict, state: enum.Enum) -> bool:
    return not table.get(state)


def check_transition(table: dict, entity: str, current: enum.Enum, target: enum.Enum) -> bool:
    """Return True when ``current -> target`` must be applied.

    False means the entity is already in ``target``.  Anything not in the
    table raises InvalidStateError.
    """
    if current == target:
        return False
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed))
        logger.warning("Rejected %s transition %s -> %s", entity, current.value, target.value)
        raise InvalidStateError(
            f"invalid {entity} transition: {current.value} -> {target.value} "
            f"(allowed: [{allowed_str}])",
            current=current.value,
            target=target.value,
        )
    return True
