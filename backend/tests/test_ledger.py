"""Tests for commission GL voucher construction."""

from datetime import date
from decimal import Decimal

import pytest

from app.services.commission.errors import BalanceError
from app.services.commission.ledger import (
    AGENT_PAYABLE,
    COMMISSION_EXPENSE,
    TDS_PAYABLE,
    GLEntry,
    Voucher,
    clawback_recovery_voucher,
    commission_payment_voucher,
    suspense_resolution_voucher,
    suspense_voucher,
    validate_balance,
)

ON = date(2025, 2, 10)


class TestCommissionPaymentVoucher:
    def test_balanced_three_legs(self):
        voucher = commission_payment_voucher(
            disbursement_id=42, agent_id="AG-1",
            gross=Decimal("5000.00"), tds=Decimal("250.00"), net=Decimal("4750.00"), on=ON,
        )
        assert voucher.voucher_type == "PV"
        assert voucher.total_debit == voucher.total_credit == Decimal("5000.00")
        codes = [(e.account_code, e.debit_amount, e.credit_amount) for e in voucher.entries]
        assert codes == [
            (COMMISSION_EXPENSE[0], Decimal("5000.00"), Decimal("0.00")),
            (TDS_PAYABLE[0], Decimal("0.00"), Decimal("250.00")),
            (AGENT_PAYABLE[0], Decimal("0.00"), Decimal("4750.00")),
        ]

    def test_no_tds_leg_when_zero(self):
        voucher = commission_payment_voucher(
            disbursement_id=42, agent_id="AG-1",
            gross=Decimal("100.00"), tds=Decimal("0"), net=Decimal("100.00"), on=ON,
        )
        assert len(voucher.entries) == 2

    def test_inconsistent_amounts_rejected(self):
        with pytest.raises(BalanceError):
            commission_payment_voucher(
                disbursement_id=42, agent_id="AG-1",
                gross=Decimal("5000.00"), tds=Decimal("250.00"), net=Decimal("4800.00"), on=ON,
            )


class TestOtherVouchers:
    def test_clawback(self):
        voucher = clawback_recovery_voucher(clawback_id=3, agent_id="AG-1", amount=Decimal("2500"), on=ON)
        assert voucher.reference_type == "CLAWBACK"
        assert voucher.reference_number == "3-1"
        assert voucher.total_debit == Decimal("2500.00")

    def test_suspense_round_trip_nets_to_zero(self):
        parked = suspense_voucher(suspense_id=9, agent_id=None, amount=Decimal("60000"), reason="OTHER", on=ON)
        released = suspense_resolution_voucher(suspense_id=9, agent_id=None, amount=Decimal("60000"), on=ON)
        assert "UNKNOWN" in parked.narration
        net = {}
        for entry in parked.entries + released.entries:
            net[entry.account_code] = net.get(entry.account_code, 0) + entry.debit_amount - entry.credit_amount
        assert all(v == 0 for v in net.values())

    def test_zero_voucher_rejected(self):
        voucher = Voucher("JV", ON, "TEST", "1", "empty", [GLEntry("1", "x")])
        with pytest.raises(BalanceError):
            validate_balance(voucher)
