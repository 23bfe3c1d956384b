"""Commission amount calculation.

Pure functions only: the same inputs always give the same breakdown, so a
retried calculation activity produces an identical transaction.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from app.models.commission import CommissionType
from app.services.commission.errors import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

TDS_RATE_WITH_PAN = Decimal("5.00")
TDS_RATE_WITHOUT_PAN = Decimal("10.00")

# Renewal commission is paid at 30% of the first-year rate
RENEWAL_RATE_FACTOR = Decimal("0.30")


def to_money(value) -> Decimal:
    """Coerce to Decimal and round half-up to the cent."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionBreakdown:
    annualised_premium: Decimal
    rate_percentage: Decimal
    effective_rate: Decimal
    gross_commission: Decimal
    tds_rate: Decimal
    tds_amount: Decimal
    net_commission: Decimal


def tds_rate_for(has_verified_pan: bool) -> Decimal:
    return TDS_RATE_WITH_PAN if has_verified_pan else TDS_RATE_WITHOUT_PAN


def effective_rate(rate_percentage: Decimal, commission_type: CommissionType) -> Decimal:
    rate = Decimal(str(rate_percentage))
    if commission_type == CommissionType.RENEWAL:
        return rate * RENEWAL_RATE_FACTOR
    return rate


def calculate_commission(
    annualised_premium,
    rate_percentage,
    *,
    commission_type: CommissionType = CommissionType.FIRST_YEAR,
    has_verified_pan: bool = False,
) -> CommissionBreakdown:
    """gross = premium x rate / 100, tds = gross x tds rate / 100, net = gross - tds."""
    premium = to_money(annualised_premium)
    rate = Decimal(str(rate_percentage))
    if premium < 0:
        raise ValidationError("annualised premium must not be negative", premium=premium)
    if rate < 0 or rate > HUNDRED:
        raise ValidationError("rate percentage must be between 0 and 100", rate=rate)

    applied_rate = effective_rate(rate, commission_type)
    gross = to_money(premium * applied_rate / HUNDRED)
    tds_rate = tds_rate_for(has_verified_pan)
    tds = to_money(gross * tds_rate / HUNDRED)
    net = gross - tds

    return CommissionBreakdown(
        annualised_premium=premium,
        rate_percentage=rate,
        effective_rate=applied_rate,
        gross_commission=gross,
        tds_rate=tds_rate,
        tds_amount=tds,
        net_commission=net,
    )
