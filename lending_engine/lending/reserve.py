"""ReserveView — derived quantities for one single-asset pool.

All values are computed on demand from the decoded reserve record, the cached
oracle price and the slot a caller asks about. The record is never mutated;
``with_record`` returns a fresh view so a market refresh replaces entries
wholesale.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from ..errors import ConfigurationError, InvalidStateError
from ..fixed_point import ONE, FixedPoint, as_fixed
from ..models import ActionKind, ReserveRecord, ReserveStatus, TokenOraclePrice
from .interest_rate import InterestRateModel, apy_from_apr
from .parser import big_fraction_to_fixed, mint_factor, parse_token_symbol

logger = logging.getLogger(__name__)

# Collateral shares per unit of liquidity before the pool has any supply.
INITIAL_COLLATERAL_RATE = ONE


class ReserveView:
    """Read-only view over one decoded reserve plus its oracle price."""

    def __init__(
        self,
        address: str,
        record: ReserveRecord,
        price: TokenOraclePrice | None = None,
    ) -> None:
        self.address = address
        self.record = record
        self._price = price
        self.symbol = parse_token_symbol(record.config.token_info.name)
        self._interest_model: InterestRateModel | None = None

    def __repr__(self) -> str:
        return f"ReserveView({self.symbol or self.address})"

    def with_record(self, record: ReserveRecord, price: TokenOraclePrice | None = None) -> ReserveView:
        """New view over a fresher snapshot, keeping the cached price unless given."""
        return ReserveView(self.address, record, price if price is not None else self._price)

    # ------------------------------------------------------------------
    # Identity and configuration
    # ------------------------------------------------------------------

    @property
    def liquidity_mint(self) -> str:
        return self.record.liquidity.mint_pubkey

    @property
    def collateral_mint(self) -> str:
        return self.record.collateral.mint_pubkey

    @property
    def lending_market(self) -> str:
        return self.record.lending_market

    @property
    def decimals(self) -> int:
        return self.record.liquidity.mint_decimals

    @property
    def mint_factor(self) -> int:
        return mint_factor(self.decimals)

    @property
    def status(self) -> ReserveStatus:
        return ReserveStatus(self.record.config.status)

    @property
    def last_update_slot(self) -> int:
        return self.record.last_update_slot

    @property
    def elevation_groups(self) -> tuple[int, ...]:
        return tuple(self.record.config.elevation_groups)

    @property
    def farm_collateral(self) -> str:
        return self.record.farm_collateral

    @property
    def farm_debt(self) -> str:
        return self.record.farm_debt

    @property
    def loan_to_value(self) -> FixedPoint:
        return FixedPoint.from_percent(self.record.config.loan_to_value_pct)

    @property
    def liquidation_threshold(self) -> FixedPoint:
        return FixedPoint.from_percent(self.record.config.liquidation_threshold_pct)

    @property
    def borrow_factor(self) -> FixedPoint:
        return FixedPoint.from_percent(self.record.config.borrow_factor_pct)

    @property
    def protocol_take_rate(self) -> FixedPoint:
        return FixedPoint.from_percent(self.record.config.protocol_take_rate_pct)

    @property
    def min_liquidation_bonus(self) -> FixedPoint:
        return FixedPoint.from_bps(self.record.config.min_liquidation_bonus_bps)

    @property
    def max_liquidation_bonus(self) -> FixedPoint:
        return FixedPoint.from_bps(self.record.config.max_liquidation_bonus_bps)

    def flash_loan_fee(self) -> FixedPoint:
        return FixedPoint(self.record.config.flash_loan_fee_sf)

    def borrow_fee(self) -> FixedPoint:
        """Origination fee fraction charged on borrow."""
        return FixedPoint(self.record.config.borrow_fee_sf)

    @property
    def interest_model(self) -> InterestRateModel:
        if self._interest_model is None:
            self._interest_model = InterestRateModel.from_points(self.record.config.borrow_rate_curve)
        return self._interest_model

    # ------------------------------------------------------------------
    # Price
    # ------------------------------------------------------------------

    @property
    def token_price(self) -> TokenOraclePrice | None:
        return self._price

    def update_price(self, price: TokenOraclePrice) -> None:
        """Replace the cached oracle price; the only in-place mutation allowed."""
        if price.mint != self.liquidity_mint:
            raise ConfigurationError(
                f"Price for mint {price.mint} cannot be applied to reserve {self.address} "
                f"({self.liquidity_mint})"
            )
        self._price = price

    def oracle_price(self) -> FixedPoint:
        """Current oracle price in USD per whole token."""
        if self._price is None:
            raise ConfigurationError(
                f"No oracle price for reserve {self.symbol or self.address} "
                f"(mint {self.liquidity_mint})"
            )
        if self._price.stale:
            logger.warning("Using stale oracle price for %s", self.symbol or self.liquidity_mint)
        return FixedPoint.from_decimal(self._price.price)

    def reserve_market_price(self) -> FixedPoint:
        """Price cached on chain at the last refresh."""
        return FixedPoint(self.record.liquidity.market_price_sf)

    # ------------------------------------------------------------------
    # Supply and debt
    # ------------------------------------------------------------------

    def available_amount(self) -> FixedPoint:
        return FixedPoint.from_int(self.record.liquidity.available_amount)

    def borrowed_amount(self) -> FixedPoint:
        return FixedPoint(self.record.liquidity.borrowed_amount_sf)

    def accumulated_protocol_fees(self) -> FixedPoint:
        return FixedPoint(self.record.liquidity.accumulated_protocol_fees_sf)

    def accumulated_referrer_fees(self) -> FixedPoint:
        return FixedPoint(self.record.liquidity.accumulated_referrer_fees_sf)

    def pending_referrer_fees(self) -> FixedPoint:
        return FixedPoint(self.record.liquidity.pending_referrer_fees_sf)

    def total_supply(self) -> FixedPoint:
        """Liquidity owned by depositors: available + borrowed - all accrued fees."""
        return (
            self.available_amount()
            + self.borrowed_amount()
            - self.accumulated_protocol_fees()
            - self.accumulated_referrer_fees()
            - self.pending_referrer_fees()
        )

    def mint_total_supply(self) -> FixedPoint:
        return FixedPoint.from_int(self.record.collateral.mint_total_supply)

    def exchange_rate(self) -> FixedPoint:
        """Collateral shares per unit of liquidity."""
        total_supply = self.total_supply()
        mint_total_supply = self.mint_total_supply()
        if mint_total_supply.is_zero() or total_supply.is_zero():
            return INITIAL_COLLATERAL_RATE
        return mint_total_supply / total_supply

    def estimated_collateral_exchange_rate(self, slot: int, referral_fee_bps: int = 0) -> FixedPoint:
        """Exchange rate after accruing interest up to ``slot``.

        The interest accrued on outstanding debt is added to the supply net of
        the protocol take rate and the market referral fee.
        """
        mint_total_supply = self.mint_total_supply()
        total_supply = self.total_supply()
        if mint_total_supply.is_zero() or total_supply.is_zero():
            return INITIAL_COLLATERAL_RATE
        growth = InterestRateModel.compound_factor(self.borrow_apr(), self._elapsed_slots(slot)) - ONE
        depositor_share = (
            ONE - self.protocol_take_rate - FixedPoint.from_bps(referral_fee_bps)
        ).positive_or_zero()
        accrued = self.borrowed_amount() * growth * depositor_share
        return mint_total_supply / (total_supply + accrued)

    def cumulative_borrow_rate(self) -> FixedPoint:
        """Stale borrow index from the last on-chain refresh."""
        return big_fraction_to_fixed(self.record.liquidity.cumulative_borrow_rate_bsf)

    def estimated_cumulative_borrow_rate(self, slot: int) -> FixedPoint:
        """Borrow index extrapolated from the last refresh to ``slot``."""
        return InterestRateModel.compound(
            self.cumulative_borrow_rate(), self.borrow_apr(), self._elapsed_slots(slot)
        )

    def _elapsed_slots(self, slot: int) -> int:
        return max(slot - self.record.last_update_slot, 0)

    # ------------------------------------------------------------------
    # Utilization and rates
    # ------------------------------------------------------------------

    def utilization(self) -> float:
        return float(self.borrowed_amount().safe_div(self.total_supply()))

    def borrow_apr(self) -> float:
        return self.interest_model.borrow_rate(self.utilization())

    def supply_apr(self) -> float:
        utilization = self.utilization()
        return (
            utilization
            * self.interest_model.borrow_rate(utilization)
            * (1 - self.record.config.protocol_take_rate_pct / 100)
        )

    def borrow_apy(self) -> float:
        return apy_from_apr(self.borrow_apr())

    def supply_apy(self) -> float:
        return apy_from_apr(self.supply_apr())

    def simulated_utilization(
        self,
        amount: FixedPoint | int | Decimal,
        kind: ActionKind,
        outflow_amount: FixedPoint | int | Decimal | None = None,
    ) -> float:
        """Utilization after a hypothetical action on this reserve.

        Raises:
            InvalidStateError: composite kinds without ``outflow_amount`` or a
                kind that does not move this reserve's supply or debt.
        """
        amount = as_fixed(amount)
        borrowed = self.borrowed_amount()
        supply = self.total_supply()

        if kind in (ActionKind.DEPOSIT, ActionKind.MINT):
            return float(borrowed.safe_div(supply + amount))
        if kind in (ActionKind.WITHDRAW, ActionKind.REDEEM):
            return float(borrowed.safe_div(supply - amount))
        if kind == ActionKind.BORROW:
            return float((borrowed + amount).safe_div(supply))
        if kind == ActionKind.REPAY:
            return float((borrowed - amount).safe_div(supply))
        if kind in (ActionKind.DEPOSIT_AND_BORROW, ActionKind.REPAY_AND_WITHDRAW):
            if outflow_amount is None:
                raise InvalidStateError(f"{kind.value} simulation requires an outflow amount")
            outflow = as_fixed(outflow_amount)
            if kind == ActionKind.DEPOSIT_AND_BORROW:
                return float((borrowed + outflow).safe_div(supply + amount))
            return float((borrowed - amount).safe_div(supply - outflow))
        raise InvalidStateError(f"Invalid action kind {kind.value} for simulated utilization")

    def simulated_borrow_apr(
        self,
        amount: FixedPoint | int | Decimal,
        kind: ActionKind,
        outflow_amount: FixedPoint | int | Decimal | None = None,
    ) -> float:
        return self.interest_model.borrow_rate(self.simulated_utilization(amount, kind, outflow_amount))

    def simulated_supply_apr(
        self,
        amount: FixedPoint | int | Decimal,
        kind: ActionKind,
        outflow_amount: FixedPoint | int | Decimal | None = None,
    ) -> float:
        utilization = self.simulated_utilization(amount, kind, outflow_amount)
        return (
            utilization
            * self.interest_model.borrow_rate(utilization)
            * (1 - self.record.config.protocol_take_rate_pct / 100)
        )

    # ------------------------------------------------------------------
    # Caps and totals
    # ------------------------------------------------------------------

    def deposit_limit_crossed(self) -> bool:
        return self.total_supply() > self.record.config.deposit_limit

    def borrow_limit_crossed(self) -> bool:
        return self.borrowed_amount() > self.record.config.borrow_limit

    def deposit_tvl(self) -> FixedPoint:
        """USD value of all liquidity supplied to the pool."""
        return self.total_supply() * self.oracle_price() / self.mint_factor

    def borrow_tvl(self) -> FixedPoint:
        return self.borrowed_amount() * self.oracle_price() / self.mint_factor

    def stats(self) -> dict[str, object]:
        """Display summary of the reserve's configuration and rates."""
        return {
            "symbol": self.symbol,
            "status": self.status.name.lower(),
            "mint": self.liquidity_mint,
            "decimals": self.decimals,
            "loan_to_value_pct": self.record.config.loan_to_value_pct,
            "liquidation_threshold_pct": self.record.config.liquidation_threshold_pct,
            "borrow_factor_pct": self.record.config.borrow_factor_pct,
            "utilization": self.utilization(),
            "borrow_apy": self.borrow_apy(),
            "supply_apy": self.supply_apy(),
            "deposit_limit_crossed": self.deposit_limit_crossed(),
            "borrow_limit_crossed": self.borrow_limit_crossed(),
            "mint_total_supply": (self.mint_total_supply() / self.mint_factor).quantize(),
        }
