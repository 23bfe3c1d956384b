"""Tests for the lifecycle transition tables."""

import pytest

from app.models.clawback import ClawbackStatus
from app.models.commission import BatchStatus
from app.models.disbursement import DisbursementStatus
from app.models.statement import FinalStatementStatus, TrialStatementStatus
from app.services.commission.errors import InvalidStateError
from app.services.commission.transitions import (
    BATCH_TRANSITIONS,
    CLAWBACK_TRANSITIONS,
    DISBURSEMENT_TRANSITIONS,
    FINAL_STATEMENT_TRANSITIONS,
    TRIAL_STATEMENT_TRANSITIONS,
    check_transition,
    is_terminal,
)


class TestTablesComplete:
    @pytest.mark.parametrize("table, states", [
        (BATCH_TRANSITIONS, BatchStatus),
        (TRIAL_STATEMENT_TRANSITIONS, TrialStatementStatus),
        (FINAL_STATEMENT_TRANSITIONS, FinalStatementStatus),
        (DISBURSEMENT_TRANSITIONS, DisbursementStatus),
        (CLAWBACK_TRANSITIONS, ClawbackStatus),
    ])
    def test_every_state_listed(self, table, states):
        assert set(table) == set(states)

    def test_terminal_states(self):
        assert is_terminal(BATCH_TRANSITIONS, BatchStatus.COMPLETED)
        assert is_terminal(DISBURSEMENT_TRANSITIONS, DisbursementStatus.CANCELLED)
        assert not is_terminal(DISBURSEMENT_TRANSITIONS, DisbursementStatus.FAILED)
        assert is_terminal(CLAWBACK_TRANSITIONS, ClawbackStatus.PARTIAL)


class TestCheckTransition:
    def test_allowed(self):
        assert check_transition(
            BATCH_TRANSITIONS, "batch", BatchStatus.INITIATED, BatchStatus.CALCULATING
        ) is True

    def test_replay_is_noop(self):
        assert check_transition(
            BATCH_TRANSITIONS, "batch", BatchStatus.CALCULATING, BatchStatus.CALCULATING
        ) is False

    def test_skip_rejected(self):
        with pytest.raises(InvalidStateError) as exc_info:
            check_transition(BATCH_TRANSITIONS, "batch", BatchStatus.INITIATED, BatchStatus.COMPLETED)
        assert exc_info.value.category == "state"
        assert "INITIATED -> COMPLETED" in exc_info.value.reason

    def test_terminal_is_final(self):
        with pytest.raises(InvalidStateError):
            check_transition(
                DISBURSEMENT_TRANSITIONS, "disbursement",
                DisbursementStatus.COMPLETED, DisbursementStatus.PROCESSING,
            )

    def test_cheque_completes_from_processing(self):
        assert check_transition(
            DISBURSEMENT_TRANSITIONS, "disbursement",
            DisbursementStatus.PROCESSING, DisbursementStatus.COMPLETED,
        )

    def test_correction_loop(self):
        assert check_transition(
            TRIAL_STATEMENT_TRANSITIONS, "trial statement",
            TrialStatementStatus.CORRECTION_NEEDED, TrialStatementStatus.PENDING_APPROVAL,
        )
        with pytest.raises(InvalidStateError):
            check_transition(
                TRIAL_STATEMENT_TRANSITIONS, "trial statement",
                TrialStatementStatus.CORRECTION_NEEDED, TrialStatementStatus.APPROVED,
            )
