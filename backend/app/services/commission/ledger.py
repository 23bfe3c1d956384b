"""GL voucher construction for commission postings.

Builders return balanced ``Voucher`` objects; posting them is the
accounting client's job.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from app.services.commission.calculator import to_money
from app.services.commission.errors import BalanceError

logger = logging.getLogger(__name__)

COMMISSION_EXPENSE = ("6100001", "Commission Expense")
AGENT_PAYABLE = ("2100001", "Agent Payable")
TDS_PAYABLE = ("2100002", "TDS Payable")
AGENT_RECEIVABLE = ("1200001", "Agent Receivable")
SUSPENSE_ACCOUNT = ("1300001", "Commission Suspense")

ZERO = Decimal("0.00")


@dataclass
class GLEntry:
    account_code: str
    account_name: str
    debit_amount: Decimal = ZERO
    credit_amount: Decimal = ZERO
    description: str = ""
    cost_center: str = ""


@dataclass
class Voucher:
    voucher_type: str               # PV payment voucher, JV journal voucher
    voucher_date: date
    reference_type: str
    reference_number: str
    narration: str
    entries: list[GLEntry] = field(default_factory=list)

    @property
    def total_debit(self) -> Decimal:
        return sum((e.debit_amount for e in self.entries), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((e.credit_amount for e in self.entries), ZERO)


def _debit(account: tuple[str, str], amount, description: str) -> GLEntry:
    return GLEntry(account[0], account[1], debit_amount=to_money(amount), description=description)


def _credit(account: tuple[str, str], amount, description: str) -> GLEntry:
    return GLEntry(account[0], account[1], credit_amount=to_money(amount), description=description)


def validate_balance(voucher: Voucher) -> tuple[Decimal, Decimal]:
    """Ensure total debits == total credits.  Returns (total_dr, total_cr)."""
    total_dr, total_cr = voucher.total_debit, voucher.total_credit
    if total_dr != total_cr:
        raise BalanceError(
            f"voucher is not balanced: debits={total_dr}, credits={total_cr}",
            reference=voucher.reference_number,
        )
    if total_dr == 0:
        raise BalanceError("voucher has zero total", reference=voucher.reference_number)
    return total_dr, total_cr


def commission_payment_voucher(
    *, disbursement_id: int, agent_id: str, gross, tds, net, on: date
) -> Voucher:
    """Dr commission expense (gross) / Cr TDS payable / Cr agent payable (net)."""
    entries = [_debit(COMMISSION_EXPENSE, gross, f"Commission for agent {agent_id}")]
    if to_money(tds) > 0:
        entries.append(_credit(TDS_PAYABLE, tds, "TDS deducted on commission"))
    entries.append(_credit(AGENT_PAYABLE, net, f"Net commission payable to {agent_id}"))
    voucher = Voucher(
        voucher_type="PV",
        voucher_date=on,
        reference_type="DISBURSEMENT",
        reference_number=str(disbursement_id),
        narration=f"Commission payment to Agent {agent_id} - Disbursement {disbursement_id}",
        entries=entries,
    )
    validate_balance(voucher)
    return voucher


def clawback_recovery_voucher(
    *, clawback_id: int, agent_id: str, amount, on: date, installment_number: int = 1
) -> Voucher:
    voucher = Voucher(
        voucher_type="JV",
        voucher_date=on,
        reference_type="CLAWBACK",
        reference_number=f"{clawback_id}-{installment_number}",
        narration=f"Commission clawback recovery from Agent {agent_id} - Installment {installment_number}",
        entries=[
            _debit(AGENT_RECEIVABLE, amount, f"Clawback receivable from {agent_id}"),
            _credit(COMMISSION_EXPENSE, amount, "Commission expense reversal"),
        ],
    )
    validate_balance(voucher)
    return voucher


def suspense_voucher(*, suspense_id: int, agent_id: str | None, amount, reason: str, on: date) -> Voucher:
    voucher = Voucher(
        voucher_type="JV",
        voucher_date=on,
        reference_type="SUSPENSE",
        reference_number=str(suspense_id),
        narration=f"Commission suspense for Agent {agent_id or 'UNKNOWN'} - Reason: {reason}",
        entries=[
            _debit(SUSPENSE_ACCOUNT, amount, "Commission held in suspense"),
            _credit(AGENT_PAYABLE, amount, "Agent payable moved to suspense"),
        ],
    )
    validate_balance(voucher)
    return voucher


def suspense_resolution_voucher(*, suspense_id: int, agent_id: str | None, amount, on: date) -> Voucher:
    voucher = Voucher(
        voucher_type="JV",
        voucher_date=on,
        reference_type="SUSPENSE_RESOLUTION",
        reference_number=str(suspense_id),
        narration=f"Suspense resolution for Agent {agent_id or 'UNKNOWN'}",
        entries=[
            _debit(AGENT_PAYABLE, amount, "Agent payable restored"),
            _credit(SUSPENSE_ACCOUNT, amount, "Released from suspense"),
        ],
    )
    validate_balance(voucher)
    return voucher
