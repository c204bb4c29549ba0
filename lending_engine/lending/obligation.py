"""PositionLedger — a borrower's deposits and debts priced against the market.

Construction is eager: every deposit and borrow slot is resolved against the
market's reserves and the aggregate ``ObligationStats`` are computed in one
pass. ``simulate`` never touches the ledger; it works on copies of the
position maps and returns a ``SimulationResult``.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Sequence

from ..constants import is_null_pubkey
from ..errors import InvalidStateError, NotFoundError, TierMismatchError
from ..fixed_point import ONE, ZERO, FixedPoint, as_fixed
from ..models import (
    AccountKind,
    ActionKind,
    ObligationCollateral,
    ObligationLiquidity,
    ObligationRecord,
    ObligationStats,
    Position,
)
from .parser import big_fraction_to_fixed, token_value
from .reserve import ReserveView

if TYPE_CHECKING:
    from .market import MarketView

logger = logging.getLogger(__name__)

Amount = FixedPoint | int | Decimal
RateMap = dict[str, FixedPoint]


@dataclass(frozen=True)
class SimulationResult:
    stats: ObligationStats
    deposits: dict[str, Position] = field(default_factory=dict)
    borrows: dict[str, Position] = field(default_factory=dict)


class PositionLedger:
    """Loaded obligation with per-reserve positions and aggregate risk stats."""

    def __init__(
        self,
        market: MarketView,
        address: str,
        record: ObligationRecord,
        collateral_exchange_rates: RateMap | None = None,
        cumulative_borrow_rates: RateMap | None = None,
    ) -> None:
        self.market = market
        self.address = address
        self.record = record

        if collateral_exchange_rates is None or cumulative_borrow_rates is None:
            collateral_exchange_rates = {} if collateral_exchange_rates is None else collateral_exchange_rates
            cumulative_borrow_rates = {} if cumulative_borrow_rates is None else cumulative_borrow_rates
            self.add_rates_for_obligation(
                market, record, collateral_exchange_rates, cumulative_borrow_rates
            )

        self.deposits: dict[str, Position] = {}
        self.borrows: dict[str, Position] = {}
        self.stats = self._calculate_positions(collateral_exchange_rates, cumulative_borrow_rates)

    def __repr__(self) -> str:
        return (
            f"PositionLedger({self.address}, deposits={len(self.deposits)}, "
            f"borrows={len(self.borrows)})"
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        market: MarketView,
        address: str,
        collateral_exchange_rates: RateMap | None = None,
        cumulative_borrow_rates: RateMap | None = None,
    ) -> PositionLedger | None:
        """Fetch and price one obligation; ``None`` when the account does not exist."""
        data = await market.client.get_account_info(address)
        if data is None:
            return None
        record = market.decoder.decode(AccountKind.OBLIGATION, data)
        if record is None:
            raise NotFoundError("Obligation", address, "account data is not an obligation")
        return cls(market, address, record, collateral_exchange_rates, cumulative_borrow_rates)

    @classmethod
    async def load_many(
        cls, market: MarketView, addresses: Sequence[str]
    ) -> list[PositionLedger | None]:
        """Fetch several obligations sharing one set of rate maps at the current slot."""
        if not addresses:
            return []
        accounts = await market.client.get_multiple_accounts(list(addresses))
        slot = await market.client.get_slot()

        collateral_exchange_rates: RateMap = {}
        cumulative_borrow_rates: RateMap = {}
        ledgers: list[PositionLedger | None] = []
        for address, data in zip(addresses, accounts):
            if data is None:
                ledgers.append(None)
                continue
            record = market.decoder.decode(AccountKind.OBLIGATION, data)
            if record is None:
                raise NotFoundError("Obligation", address, "account data is not an obligation")
            cls.add_rates_for_obligation(
                market, record, collateral_exchange_rates, cumulative_borrow_rates, slot
            )
            ledgers.append(
                cls(market, address, record, collateral_exchange_rates, cumulative_borrow_rates)
            )
        return ledgers

    @staticmethod
    def add_rates_for_obligation(
        market: MarketView,
        record: ObligationRecord,
        collateral_exchange_rates: RateMap,
        cumulative_borrow_rates: RateMap,
        slot: int | None = None,
    ) -> None:
        """Fill missing per-reserve rates for every reserve ``record`` touches.

        Without a ``slot`` the rates are taken as of each reserve's last
        refresh; with one they are extrapolated to that slot.
        """
        for deposit in record.deposits:
            address = deposit.deposit_reserve
            if is_null_pubkey(address) or address in collateral_exchange_rates:
                continue
            reserve = market.require_reserve(address)
            if slot is None:
                collateral_exchange_rates[address] = reserve.exchange_rate()
            else:
                collateral_exchange_rates[address] = reserve.estimated_collateral_exchange_rate(
                    slot, market.referral_fee_bps
                )
        for borrow in record.borrows:
            address = borrow.borrow_reserve
            if is_null_pubkey(address) or address in cumulative_borrow_rates:
                continue
            reserve = market.require_reserve(address)
            if slot is None:
                cumulative_borrow_rates[address] = reserve.cumulative_borrow_rate()
            else:
                cumulative_borrow_rates[address] = reserve.estimated_cumulative_borrow_rate(slot)

    # ------------------------------------------------------------------
    # Position math
    # ------------------------------------------------------------------

    def _risk_parameters(self, reserve: ReserveView) -> tuple[FixedPoint, FixedPoint]:
        """(loan-to-value, liquidation threshold) for a deposit in ``reserve``."""
        group_id = self.record.elevation_group
        if group_id != 0:
            group = self.market.get_elevation_group(group_id)
            return (
                FixedPoint.from_percent(group.ltv_pct),
                FixedPoint.from_percent(group.liquidation_threshold_pct),
            )
        return reserve.loan_to_value, reserve.liquidation_threshold

    def _calculate_positions(
        self, collateral_exchange_rates: RateMap, cumulative_borrow_rates: RateMap
    ) -> ObligationStats:
        user_total_deposit = ZERO
        borrow_limit = ZERO
        borrow_liquidation_limit = ZERO

        for deposit in self.record.deposits:
            if is_null_pubkey(deposit.deposit_reserve):
                continue
            reserve = self.market.get_reserve_by_address(deposit.deposit_reserve)
            if reserve is None:
                raise NotFoundError(
                    "Reserve",
                    deposit.deposit_reserve,
                    f"obligation {self.address} holds a deposit of {deposit.deposited_amount} in it",
                )
            loan_to_value, liquidation_threshold = self._risk_parameters(reserve)
            exchange_rate = collateral_exchange_rates.get(reserve.address) or reserve.exchange_rate()
            amount = FixedPoint.from_int(
                (FixedPoint.from_int(deposit.deposited_amount) / exchange_rate).floor()
            )
            value = token_value(amount, reserve.oracle_price(), reserve.decimals)

            user_total_deposit += value
            borrow_limit += value * loan_to_value
            borrow_liquidation_limit += value * liquidation_threshold
            self.deposits[reserve.address] = Position(
                reserve_address=reserve.address,
                mint_address=reserve.liquidity_mint,
                amount=amount,
                market_value=value,
            )

        user_total_borrow = ZERO
        user_total_borrow_bf_adjusted = ZERO
        for borrow in self.record.borrows:
            if is_null_pubkey(borrow.borrow_reserve):
                continue
            reserve = self.market.get_reserve_by_address(borrow.borrow_reserve)
            if reserve is None:
                raise NotFoundError(
                    "Reserve",
                    borrow.borrow_reserve,
                    f"obligation {self.address} holds a borrow of {self.borrow_amount(borrow)} in it",
                )
            cumulative_rate = (
                cumulative_borrow_rates.get(reserve.address) or reserve.cumulative_borrow_rate()
            )
            amount = self.accrued_borrow_amount(borrow, cumulative_rate)
            value = token_value(amount, reserve.oracle_price(), reserve.decimals)
            borrow_factor = self.borrow_factor_for_reserve(reserve, self.record.elevation_group)

            user_total_borrow += value
            user_total_borrow_bf_adjusted += value * borrow_factor
            self.borrows[reserve.address] = Position(
                reserve_address=reserve.address,
                mint_address=reserve.liquidity_mint,
                amount=amount,
                market_value=value,
            )

        stats = ObligationStats(
            user_total_deposit=user_total_deposit,
            user_total_borrow=user_total_borrow,
            user_total_borrow_borrow_factor_adjusted=user_total_borrow_bf_adjusted,
            borrow_limit=borrow_limit,
            borrow_liquidation_limit=borrow_liquidation_limit,
            potential_elevation_group_update=tuple(self.elevation_groups()),
        )
        return _recompose(stats)

    @staticmethod
    def borrow_amount(borrow: ObligationLiquidity) -> FixedPoint:
        """Debt recorded at the obligation's last refresh, without new interest."""
        return FixedPoint(borrow.borrowed_amount_sf)

    @staticmethod
    def cumulative_borrow_rate(borrow: ObligationLiquidity) -> FixedPoint:
        return big_fraction_to_fixed(borrow.cumulative_borrow_rate_bsf)

    @classmethod
    def accrued_borrow_amount(
        cls, borrow: ObligationLiquidity, reserve_cumulative_rate: FixedPoint
    ) -> FixedPoint:
        """Debt grown by the ratio of the reserve index to the obligation's snapshot."""
        obligation_rate = cls.cumulative_borrow_rate(borrow)
        if obligation_rate.is_zero():
            return cls.borrow_amount(borrow)
        return cls.borrow_amount(borrow) * reserve_cumulative_rate / obligation_rate

    @staticmethod
    def borrow_factor_for_reserve(reserve: ReserveView, elevation_group: int) -> FixedPoint:
        if elevation_group != 0:
            return ONE
        return reserve.borrow_factor

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self.record.owner

    @property
    def tag(self) -> int:
        return self.record.tag

    @property
    def elevation_group(self) -> int:
        return self.record.elevation_group

    @property
    def referrer(self) -> str:
        return self.record.referrer

    @property
    def deposit_reserves(self) -> list[str]:
        """Deposit reserves in slot order."""
        return [d.deposit_reserve for d in self.record.deposits if not is_null_pubkey(d.deposit_reserve)]

    @property
    def borrow_reserves(self) -> list[str]:
        """Borrow reserves in slot order."""
        return [b.borrow_reserve for b in self.record.borrows if not is_null_pubkey(b.borrow_reserve)]

    def get_deposits(self) -> list[Position]:
        return list(self.deposits.values())

    def get_borrows(self) -> list[Position]:
        return list(self.borrows.values())

    def get_deposit_by_reserve(self, reserve: str) -> Position | None:
        return self.deposits.get(reserve)

    def get_borrow_by_reserve(self, reserve: str) -> Position | None:
        return self.borrows.get(reserve)

    def get_deposit_by_mint(self, mint: str) -> Position | None:
        return next((p for p in self.deposits.values() if p.mint_address == mint), None)

    def get_borrow_by_mint(self, mint: str) -> Position | None:
        return next((p for p in self.borrows.values() if p.mint_address == mint), None)

    def get_obligation_borrow(self, reserve: str) -> ObligationLiquidity | None:
        """Raw borrow slot for ``reserve`` as stored on chain."""
        return next((b for b in self.record.borrows if b.borrow_reserve == reserve), None)

    def get_obligation_deposit(self, reserve: str) -> ObligationCollateral | None:
        return next((d for d in self.record.deposits if d.deposit_reserve == reserve), None)

    def deposited_value(self) -> FixedPoint:
        return FixedPoint(self.record.deposited_value_sf)

    def borrowed_market_value(self) -> FixedPoint:
        return FixedPoint(self.record.borrowed_assets_market_value_sf)

    def borrowed_market_value_bf_adjusted(self) -> FixedPoint:
        return FixedPoint(self.record.borrow_factor_adjusted_debt_value_sf)

    def allowed_borrow_value(self) -> FixedPoint:
        return FixedPoint(self.record.allowed_borrow_value_sf)

    def unhealthy_borrow_value(self) -> FixedPoint:
        """Debt value at which the obligation becomes liquidatable."""
        return FixedPoint(self.record.unhealthy_borrow_value_sf)

    @staticmethod
    def deposit_market_value(deposit: ObligationCollateral) -> FixedPoint:
        return FixedPoint(deposit.market_value_sf)

    @staticmethod
    def borrow_market_value(borrow: ObligationLiquidity) -> FixedPoint:
        return FixedPoint(borrow.market_value_sf)

    @staticmethod
    def borrow_market_value_bf_adjusted(borrow: ObligationLiquidity) -> FixedPoint:
        return FixedPoint(borrow.borrow_factor_adjusted_market_value_sf)

    def loan_to_value(self) -> FixedPoint:
        return self.stats.loan_to_value

    def liquidation_ltv(self) -> FixedPoint:
        return self.stats.liquidation_ltv

    def net_account_value(self) -> FixedPoint:
        return self.stats.net_account_value

    def leverage(self) -> FixedPoint:
        return self.stats.leverage

    def number_of_positions(self) -> int:
        return len(self.deposits) + len(self.borrows)

    def estimate_obligation_interest_rate(
        self, reserve: ReserveView, borrow: ObligationLiquidity, slot: int
    ) -> FixedPoint:
        """Growth factor of ``borrow`` since its last refresh; zero if none accrued."""
        estimated = reserve.estimated_cumulative_borrow_rate(slot)
        current = self.cumulative_borrow_rate(borrow)
        if estimated > current:
            return estimated / current
        return ZERO

    # ------------------------------------------------------------------
    # Elevation groups
    # ------------------------------------------------------------------

    def elevation_groups(self) -> list[int]:
        """Groups shared by every reserve the obligation touches."""
        touched: dict[str, ReserveView] = {}
        for address in self.deposit_reserves + self.borrow_reserves:
            if address not in touched:
                touched[address] = self.market.require_reserve(address)
        return self.elevation_groups_for_reserves(list(touched.values()))

    @staticmethod
    def elevation_groups_for_reserves(reserves: Sequence[ReserveView]) -> list[int]:
        counts: dict[int, int] = {}
        for reserve in reserves:
            for group in set(reserve.elevation_groups):
                if group != 0:
                    counts[group] = counts.get(group, 0) + 1
        return sorted(group for group, count in counts.items() if count == len(reserves))

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(
        self,
        amount: Amount,
        kind: ActionKind,
        mint: str,
        *,
        outflow_amount: Amount | None = None,
        outflow_mint: str | None = None,
        start: SimulationResult | None = None,
    ) -> SimulationResult:
        """Stats and positions after a hypothetical action.

        Amounts are raw token units of the reserve for ``mint``. Composite
        kinds take the second leg from ``outflow_amount``/``outflow_mint``.
        Pass a previous result as ``start`` to chain simulations.

        Raises:
            NotFoundError: no reserve for a mint.
            TierMismatchError: the reserve is outside the obligation's group.
            InvalidStateError: composite kind without its second leg, or a kind
                that does not change the obligation.
        """
        if start is None:
            start = SimulationResult(
                stats=self.stats, deposits=dict(self.deposits), borrows=dict(self.borrows)
            )
        amount = as_fixed(amount)
        stats, deposits, borrows = start.stats, dict(start.deposits), dict(start.borrows)

        if kind == ActionKind.DEPOSIT:
            stats = self._simulate_deposit(stats, deposits, amount, mint)
        elif kind == ActionKind.WITHDRAW:
            stats = self._simulate_deposit(stats, deposits, -amount, mint)
        elif kind == ActionKind.BORROW:
            stats = self._simulate_borrow(stats, borrows, amount, mint)
        elif kind == ActionKind.REPAY:
            stats = self._simulate_borrow(stats, borrows, -amount, mint)
        elif kind in (ActionKind.DEPOSIT_AND_BORROW, ActionKind.REPAY_AND_WITHDRAW):
            if outflow_amount is None or outflow_mint is None:
                raise InvalidStateError(
                    f"{kind.value} simulation requires an outflow amount and mint"
                )
            outflow = as_fixed(outflow_amount)
            if kind == ActionKind.DEPOSIT_AND_BORROW:
                stats = self._simulate_deposit(stats, deposits, amount, mint)
                stats = self._simulate_borrow(stats, borrows, outflow, outflow_mint)
            else:
                stats = self._simulate_borrow(stats, borrows, -amount, mint)
                stats = self._simulate_deposit(stats, deposits, -outflow, outflow_mint)
        else:
            raise InvalidStateError(f"Invalid action kind {kind.value} for obligation simulation")

        return SimulationResult(stats=_recompose(stats), deposits=deposits, borrows=borrows)

    def _simulation_reserve(self, mint: str, operation: str) -> ReserveView:
        reserve = self.market.get_reserve_by_mint(mint)
        if reserve is None:
            raise NotFoundError("Reserve for mint", mint)
        group = self.record.elevation_group
        if group != 0 and group not in reserve.elevation_groups:
            raise TierMismatchError(reserve.address, group, operation)
        return reserve

    def _simulate_deposit(
        self,
        stats: ObligationStats,
        deposits: dict[str, Position],
        amount: FixedPoint,
        mint: str,
    ) -> ObligationStats:
        operation = "deposit into" if amount >= 0 else "withdraw from"
        reserve = self._simulation_reserve(mint, operation)
        loan_to_value, liquidation_threshold = self._risk_parameters(reserve)
        value = token_value(amount, reserve.oracle_price(), reserve.decimals)

        position = deposits.get(reserve.address) or Position(reserve.address, mint)
        deposits[reserve.address] = dataclasses.replace(
            position,
            amount=(position.amount + amount).positive_or_zero(),
            market_value=(position.market_value + value).positive_or_zero(),
        )
        return dataclasses.replace(
            stats,
            user_total_deposit=(stats.user_total_deposit + value).positive_or_zero(),
            borrow_limit=(stats.borrow_limit + value * loan_to_value).positive_or_zero(),
            borrow_liquidation_limit=(
                stats.borrow_liquidation_limit + value * liquidation_threshold
            ).positive_or_zero(),
        )

    def _simulate_borrow(
        self,
        stats: ObligationStats,
        borrows: dict[str, Position],
        amount: FixedPoint,
        mint: str,
    ) -> ObligationStats:
        operation = "borrow from" if amount >= 0 else "repay to"
        reserve = self._simulation_reserve(mint, operation)
        borrow_factor = self.borrow_factor_for_reserve(reserve, self.record.elevation_group)
        value = token_value(amount, reserve.oracle_price(), reserve.decimals)

        position = borrows.get(reserve.address) or Position(reserve.address, mint)
        borrows[reserve.address] = dataclasses.replace(
            position,
            amount=(position.amount + amount).positive_or_zero(),
            market_value=(position.market_value + value).positive_or_zero(),
        )
        return dataclasses.replace(
            stats,
            user_total_borrow=(stats.user_total_borrow + value).positive_or_zero(),
            user_total_borrow_borrow_factor_adjusted=(
                stats.user_total_borrow_borrow_factor_adjusted + value * borrow_factor
            ).positive_or_zero(),
        )


def _recompose(stats: ObligationStats) -> ObligationStats:
    """Derive the ratio statistics from the running totals."""
    net_account_value = stats.user_total_deposit - stats.user_total_borrow
    leverage = (
        stats.user_total_deposit / net_account_value if net_account_value > ZERO else ZERO
    )
    return dataclasses.replace(
        stats,
        net_account_value=net_account_value,
        loan_to_value=stats.user_total_borrow_borrow_factor_adjusted.safe_div(stats.user_total_deposit),
        liquidation_ltv=stats.borrow_liquidation_limit.safe_div(stats.user_total_deposit),
        borrow_utilization=stats.user_total_borrow_borrow_factor_adjusted.safe_div(stats.borrow_limit),
        leverage=leverage,
    )
