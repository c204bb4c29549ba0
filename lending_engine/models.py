"""Data models — all frozen (immutable).

Decoded account records mirror the fields the program stores; everything ending
in ``_sf`` is a raw 60-bit scaled fraction and ``_bsf`` is a little-endian list
of u64 words. Domain types carry ``FixedPoint`` values computed from them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any

from .constants import NULL_PUBKEY
from .fixed_point import ZERO, FixedPoint


class AccountKind(str, Enum):
    LENDING_MARKET = "LendingMarket"
    RESERVE = "Reserve"
    OBLIGATION = "Obligation"
    USER_METADATA = "UserMetadata"
    REFERRER_TOKEN_STATE = "ReferrerTokenState"


class ActionKind(str, Enum):
    """Every operation the sequencer can assemble."""

    DEPOSIT = "deposit"
    BORROW = "borrow"
    WITHDRAW = "withdraw"
    REPAY = "repay"
    MINT = "mint"
    REDEEM = "redeem"
    DEPOSIT_COLLATERAL = "depositCollateral"
    LIQUIDATE = "liquidate"
    DEPOSIT_AND_BORROW = "depositAndBorrow"
    REPAY_AND_WITHDRAW = "repayAndWithdraw"
    REFRESH_OBLIGATION = "refreshObligation"
    WITHDRAW_REFERRER_FEES = "withdrawReferrerFees"

    @property
    def is_two_leg(self) -> bool:
        return self in (ActionKind.DEPOSIT_AND_BORROW, ActionKind.REPAY_AND_WITHDRAW)


class PriceKind(str, Enum):
    SPOT = "spot"
    TWAP = "twap"


class ReserveStatus(IntEnum):
    ACTIVE = 0
    OBSOLETE = 1
    HIDDEN = 2


# ---------------------------------------------------------------------------
# Decoded account records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CurvePoint:
    utilization_rate_bps: int
    borrow_rate_bps: int


@dataclass(frozen=True)
class TokenInfo:
    """Oracle routing for a reserve; unset accounts hold the null key."""

    name: bytes = b""
    pyth_price: str = NULL_PUBKEY
    switchboard_price_aggregator: str = NULL_PUBKEY
    switchboard_twap_aggregator: str = NULL_PUBKEY
    scope_price_feed: str = NULL_PUBKEY


@dataclass(frozen=True)
class ReserveConfig:
    status: int = ReserveStatus.ACTIVE
    loan_to_value_pct: int = 0
    liquidation_threshold_pct: int = 0
    min_liquidation_bonus_bps: int = 0
    max_liquidation_bonus_bps: int = 0
    protocol_take_rate_pct: int = 0
    borrow_factor_pct: int = 100
    deposit_limit: int = 0
    borrow_limit: int = 0
    borrow_rate_curve: tuple[CurvePoint, ...] = ()
    elevation_groups: tuple[int, ...] = ()
    token_info: TokenInfo = field(default_factory=TokenInfo)
    flash_loan_fee_sf: int = 0
    borrow_fee_sf: int = 0


@dataclass(frozen=True)
class ReserveLiquidity:
    mint_pubkey: str
    mint_decimals: int
    supply_vault: str = NULL_PUBKEY
    fee_vault: str = NULL_PUBKEY
    available_amount: int = 0
    borrowed_amount_sf: int = 0
    cumulative_borrow_rate_bsf: tuple[int, ...] = ()
    accumulated_protocol_fees_sf: int = 0
    accumulated_referrer_fees_sf: int = 0
    pending_referrer_fees_sf: int = 0
    market_price_sf: int = 0
    deposit_limit_crossed_slot: int = 0
    borrow_limit_crossed_slot: int = 0


@dataclass(frozen=True)
class ReserveCollateral:
    mint_pubkey: str
    mint_total_supply: int = 0
    supply_vault: str = NULL_PUBKEY


@dataclass(frozen=True)
class ReserveRecord:
    lending_market: str
    last_update_slot: int
    liquidity: ReserveLiquidity
    collateral: ReserveCollateral
    config: ReserveConfig = field(default_factory=ReserveConfig)
    farm_collateral: str = NULL_PUBKEY
    farm_debt: str = NULL_PUBKEY


@dataclass(frozen=True)
class ElevationGroup:
    id: int
    ltv_pct: int
    liquidation_threshold_pct: int
    max_liquidation_bonus_bps: int = 0


@dataclass(frozen=True)
class LendingMarketRecord:
    lending_market_owner: str = NULL_PUBKEY
    referral_fee_bps: int = 0
    elevation_groups: tuple[ElevationGroup, ...] = ()


@dataclass(frozen=True)
class ObligationCollateral:
    deposit_reserve: str = NULL_PUBKEY
    deposited_amount: int = 0
    market_value_sf: int = 0


@dataclass(frozen=True)
class ObligationLiquidity:
    borrow_reserve: str = NULL_PUBKEY
    cumulative_borrow_rate_bsf: tuple[int, ...] = ()
    borrowed_amount_sf: int = 0
    market_value_sf: int = 0
    borrow_factor_adjusted_market_value_sf: int = 0


@dataclass(frozen=True)
class ObligationRecord:
    """Values with ``_sf`` are as of the last on-chain refresh."""

    tag: int
    lending_market: str
    owner: str
    deposits: tuple[ObligationCollateral, ...] = ()
    borrows: tuple[ObligationLiquidity, ...] = ()
    elevation_group: int = 0
    referrer: str = NULL_PUBKEY
    last_update_slot: int = 0
    deposited_value_sf: int = 0
    borrowed_assets_market_value_sf: int = 0
    borrow_factor_adjusted_debt_value_sf: int = 0
    allowed_borrow_value_sf: int = 0
    unhealthy_borrow_value_sf: int = 0


@dataclass(frozen=True)
class UserMetadataRecord:
    owner: str
    referrer: str = NULL_PUBKEY
    user_lookup_table: str = NULL_PUBKEY


@dataclass(frozen=True)
class ReferrerTokenStateRecord:
    referrer: str
    mint: str
    amount_unclaimed_sf: int = 0
    amount_cumulative_sf: int = 0


@dataclass(frozen=True)
class TokenOraclePrice:
    """Oracle answer for one mint."""

    mint: str
    price: Decimal
    timestamp: int = 0
    stale: bool = False


# ---------------------------------------------------------------------------
# Domain values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    """One (obligation, reserve) entry on either the deposit or the debt side."""

    reserve_address: str
    mint_address: str
    amount: FixedPoint = ZERO
    market_value: FixedPoint = ZERO


@dataclass(frozen=True)
class ObligationStats:
    user_total_deposit: FixedPoint = ZERO
    user_total_borrow: FixedPoint = ZERO
    user_total_borrow_borrow_factor_adjusted: FixedPoint = ZERO
    borrow_limit: FixedPoint = ZERO
    borrow_liquidation_limit: FixedPoint = ZERO
    borrow_utilization: FixedPoint = ZERO
    net_account_value: FixedPoint = ZERO
    loan_to_value: FixedPoint = ZERO
    liquidation_ltv: FixedPoint = ZERO
    leverage: FixedPoint = ZERO
    potential_elevation_group_update: tuple[int, ...] = ()


@dataclass(frozen=True)
class PairRiskParameters:
    max_ltv: FixedPoint
    liquidation_ltv: FixedPoint
    borrow_factor: FixedPoint


@dataclass(frozen=True)
class AccountMeta:
    address: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    """Program call before serialization: accounts in order plus named args."""

    program_id: str
    name: str
    accounts: tuple[AccountMeta, ...] = ()
    args: dict[str, Any] = field(default_factory=dict)
    label: str = ""
