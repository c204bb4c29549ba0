"""Estimates for repaying debt by swapping collateral through a flash loan.

Amounts are in token units (already divided by the mint decimals); percentages
are plain percent values, so ``Decimal("0.5")`` means half a percent.
"""
from __future__ import annotations

from decimal import Decimal

_HUNDRED = Decimal(100)
_ONE = Decimal(1)


def estimate_debt_repayment_with_coll(
    coll_amount: Decimal,
    price_debt_to_coll: Decimal,
    slippage_pct: Decimal,
    flash_loan_fee_pct: Decimal,
) -> Decimal:
    """Debt that ``coll_amount`` of collateral repays after slippage and the flash-loan fee."""
    slippage = Decimal(slippage_pct) / _HUNDRED
    flash_loan_fee = Decimal(flash_loan_fee_pct) / _HUNDRED

    debt_after_swap = Decimal(coll_amount) / (_ONE + slippage) / Decimal(price_debt_to_coll)
    return debt_after_swap / (_ONE + flash_loan_fee)


def estimate_coll_needed_for_debt_repayment(
    debt_amount: Decimal,
    price_debt_to_coll: Decimal,
    slippage_pct: Decimal,
    flash_loan_fee_pct: Decimal,
) -> Decimal:
    """Collateral to swap so that ``debt_amount`` plus the flash-loan fee is covered."""
    slippage = Decimal(slippage_pct) / _HUNDRED
    flash_loan_fee = Decimal(flash_loan_fee_pct) / _HUNDRED

    flash_loan_repay = Decimal(debt_amount) * (_ONE + flash_loan_fee)
    return flash_loan_repay * (_ONE + slippage) * Decimal(price_debt_to_coll)
