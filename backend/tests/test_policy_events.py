"""Tests for policy status changes that open clawbacks."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.models.clawback import Clawback, ClawbackReason
from app.services.commission.errors import ValidationError
from app.services.commission.policy_events import (
    PolicyStatusChange,
    clawback_reason_for,
    clawback_workflow_id,
    handle_policy_status_change,
)
from app.services.integrations.policy_client import PolicyData

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _policies(**overrides):
    data = dict(
        policy_number="RPLI-77", agent_id="AG-9", product_type="RPLI", plan_code="WLA",
        policy_status="LAPSED", premium_amount=Decimal("6000"), inception_date=date(2024, 8, 1),
    )
    data.update(overrides)
    source = MagicMock()
    source.get_policy = AsyncMock(return_value=PolicyData(**data))
    return source


# ── Trigger mapping ───────────────────────────────

class TestClawbackReasonFor:
    @pytest.mark.parametrize("status,reason", [
        ("SURRENDERED", ClawbackReason.POLICY_SURRENDERED),
        ("lapsed", ClawbackReason.POLICY_LAPSED),
        (" CANCELLED ", ClawbackReason.POLICY_CANCELLED),
    ])
    def test_terminal_statuses(self, status, reason):
        assert clawback_reason_for(status) is reason

    @pytest.mark.parametrize("status", ["ACTIVE", "PAID_UP", "MATURED", "", None])
    def test_other_statuses(self, status):
        assert clawback_reason_for(status) is None

    def test_workflow_id(self):
        assert clawback_workflow_id("PLI-1") == "clawback-PLI-1"


# ── Handling ──────────────────────────────────────

class TestHandlePolicyStatusChange:
    @pytest.mark.asyncio
    async def test_lapse_creates_clawback(self):
        db = MagicMock()
        source = _policies()
        create = AsyncMock(return_value=Clawback(id=3))
        event = PolicyStatusChange("RPLI-77", "ACTIVE", "LAPSED", change_date=date(2025, 2, 15))
        with patch("app.services.commission.policy_events.create_clawback", create):
            result = await handle_policy_status_change(db, event, source, now=NOW)

        assert result.id == 3
        source.get_policy.assert_awaited_once_with("RPLI-77")
        kwargs = create.call_args.kwargs
        assert kwargs["reason"] is ClawbackReason.POLICY_LAPSED
        assert kwargs["agent_id"] == "AG-9"
        assert kwargs["policy_end_date"] == date(2025, 2, 15)
        assert kwargs["workflow_id"] == "clawback-RPLI-77"
        assert kwargs["now"] == NOW

    @pytest.mark.asyncio
    async def test_no_clawback_needed(self):
        create = AsyncMock(return_value=None)
        event = PolicyStatusChange("RPLI-77", "ACTIVE", "SURRENDERED")
        with patch("app.services.commission.policy_events.create_clawback", create):
            result = await handle_policy_status_change(MagicMock(), event, _policies(), now=NOW)
        assert result is None
        create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_terminal_status_skips_lookup(self):
        source = _policies()
        create = AsyncMock()
        event = PolicyStatusChange("RPLI-77", "LAPSED", "ACTIVE")
        with patch("app.services.commission.policy_events.create_clawback", create):
            result = await handle_policy_status_change(MagicMock(), event, source)
        assert result is None
        source.get_policy.assert_not_called()
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_policy_number(self):
        with pytest.raises(ValidationError):
            await handle_policy_status_change(
                MagicMock(), PolicyStatusChange("", "ACTIVE", "LAPSED"), _policies()
            )
