"""Tests for commission amount calculation and rate selection."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.commission import CommissionRate, CommissionType, ProductType
from app.services.commission.calculator import (
    calculate_commission,
    tds_rate_for,
    to_money,
)
from app.services.commission.errors import RateNotFoundError, ValidationError
from app.services.commission.rate_resolver import resolve_rate, select_rate


def _rate(**overrides) -> CommissionRate:
    data = dict(
        rate_percentage=Decimal("5.00"),
        product_type=ProductType.PLI,
        agent_type="DIRECT",
        plan_code="EA",
        policy_term_years=20,
        effective_from=date(2024, 1, 1),
        effective_to=None,
        is_active=True,
    )
    data.update(overrides)
    return CommissionRate(**data)


# ── to_money ──────────────────────────────────────

class TestToMoney:
    def test_half_up(self):
        assert to_money(Decimal("10.005")) == Decimal("10.01")
        assert to_money(Decimal("10.004")) == Decimal("10.00")

    def test_from_float_and_str(self):
        assert to_money(0.1) == Decimal("0.10")
        assert to_money("12.345") == Decimal("12.35")


# ── calculate_commission ──────────────────────────

class TestCalculateCommission:
    def test_first_year_with_pan(self):
        result = calculate_commission(
            Decimal("100000"), Decimal("5.00"), has_verified_pan=True,
        )
        assert result.gross_commission == Decimal("5000.00")
        assert result.tds_rate == Decimal("5.00")
        assert result.tds_amount == Decimal("250.00")
        assert result.net_commission == Decimal("4750.00")

    def test_without_pan_doubles_tds(self):
        result = calculate_commission(Decimal("100000"), Decimal("5.00"))
        assert result.tds_amount == Decimal("500.00")
        assert result.net_commission == Decimal("4500.00")

    def test_renewal_uses_reduced_rate(self):
        result = calculate_commission(
            Decimal("100000"), Decimal("5.00"),
            commission_type=CommissionType.RENEWAL, has_verified_pan=True,
        )
        assert result.effective_rate == Decimal("1.5000")
        assert result.gross_commission == Decimal("1500.00")

    def test_net_is_gross_minus_tds(self):
        result = calculate_commission(Decimal("12345.67"), Decimal("7.25"))
        assert result.net_commission == result.gross_commission - result.tds_amount

    def test_rounding(self):
        # 333.33 x 3% = 9.9999 -> 10.00
        result = calculate_commission(Decimal("333.33"), Decimal("3"))
        assert result.gross_commission == Decimal("10.00")

    def test_zero_premium(self):
        result = calculate_commission(Decimal("0"), Decimal("5"))
        assert result.net_commission == Decimal("0.00")

    def test_deterministic(self):
        a = calculate_commission(Decimal("98765.43"), Decimal("4.5"), has_verified_pan=True)
        b = calculate_commission(Decimal("98765.43"), Decimal("4.5"), has_verified_pan=True)
        assert a == b

    def test_negative_premium_rejected(self):
        with pytest.raises(ValidationError):
            calculate_commission(Decimal("-1"), Decimal("5"))

    def test_rate_above_hundred_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            calculate_commission(Decimal("100"), Decimal("100.01"))
        assert exc_info.value.category == "validation"

    def test_tds_rate_for(self):
        assert tds_rate_for(True) == Decimal("5.00")
        assert tds_rate_for(False) == Decimal("10.00")


# ── select_rate ───────────────────────────────────

class TestSelectRate:
    KEY = dict(product_type=ProductType.PLI, agent_type="DIRECT", plan_code="EA", policy_term_years=20)

    def test_latest_effective_wins(self):
        old = _rate(effective_from=date(2023, 1, 1), rate_percentage=Decimal("4.00"))
        new = _rate(effective_from=date(2024, 6, 1), rate_percentage=Decimal("6.00"))
        assert select_rate([old, new], as_of=date(2024, 7, 1), **self.KEY) is new

    def test_effective_to_is_exclusive(self):
        rate = _rate(effective_to=date(2024, 6, 1))
        assert select_rate([rate], as_of=date(2024, 5, 31), **self.KEY) is rate
        assert select_rate([rate], as_of=date(2024, 6, 1), **self.KEY) is None

    def test_inactive_ignored(self):
        assert select_rate([_rate(is_active=False)], as_of=date(2024, 7, 1), **self.KEY) is None

    def test_other_plan_ignored(self):
        assert select_rate([_rate(plan_code="WLA")], as_of=date(2024, 7, 1), **self.KEY) is None

    def test_not_yet_effective(self):
        assert select_rate([_rate()], as_of=date(2023, 12, 31), **self.KEY) is None


class TestResolveRate:
    @pytest.mark.asyncio
    async def test_returns_row(self):
        rate = _rate()
        db = AsyncMock()
        result = MagicMock()
        result.scalars.return_value.all.return_value = [rate]
        db.execute.return_value = result

        found = await resolve_rate(db, as_of=date(2024, 7, 1), **TestSelectRate.KEY)
        assert found is rate

    @pytest.mark.asyncio
    async def test_expired_row_skipped(self):
        expired = _rate(effective_from=date(2024, 1, 1), effective_to=date(2024, 6, 1))
        current = _rate(effective_from=date(2023, 1, 1), rate_percentage=Decimal("4.50"))
        db = AsyncMock()
        result = MagicMock()
        result.scalars.return_value.all.return_value = [expired, current]
        db.execute.return_value = result

        found = await resolve_rate(db, as_of=date(2024, 7, 1), **TestSelectRate.KEY)
        assert found is current

    @pytest.mark.asyncio
    async def test_missing_rate_is_external(self):
        db = AsyncMock()
        result = MagicMock()
        result.scalars.return_value.all.return_value = []
        db.execute.return_value = result

        with pytest.raises(RateNotFoundError) as exc_info:
            await resolve_rate(db, as_of=date(2024, 7, 1), **TestSelectRate.KEY)
        assert exc_info.value.category == "external"
