"""MarketView — read-through cache of a lending market and its reserves.

The view owns the ``ReserveView`` instances; ledgers and actions hold it by
reference and only read from it. ``reload``/``load_reserves`` swap the reserve
map wholesale instead of mutating views in place.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from ..constants import (
    FARMS_PROGRAM_ID,
    KLEND_PROGRAM_ID,
    OBLIGATION_MARKET_OFFSET,
    OBLIGATION_OWNER_OFFSET,
    OBLIGATION_TAG_OFFSET,
    REFERRER_TOKEN_STATE_REFERRER_OFFSET,
    RESERVE_MARKET_OFFSET,
    SEED_FARM_USER_STATE,
    SEED_LENDING_MARKET_AUTH,
    SEED_REFERRER_TOKEN_STATE,
    SEED_USER_METADATA,
)
from ..errors import ConfigurationError, NotFoundError
from ..fixed_point import ONE, ZERO, FixedPoint
from ..interfaces import AccountDecoder, AddressDeriver, ChainClient, PriceOracle
from ..models import (
    AccountKind,
    ElevationGroup,
    LendingMarketRecord,
    PairRiskParameters,
    ReferrerTokenStateRecord,
    ReserveRecord,
    ReserveStatus,
    UserMetadataRecord,
)
from .obligation import PositionLedger, RateMap
from .obligation_type import ObligationDescriptor, ObligationTag
from .reserve import ReserveView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductTvl:
    tvl: FixedPoint
    deposits: FixedPoint
    borrows: FixedPoint
    avg_leverage: FixedPoint


# ---------------------------------------------------------------------------
# getProgramAccounts filters
# ---------------------------------------------------------------------------


def _memcmp(offset: int, address: str) -> dict[str, Any]:
    return {"memcmp": {"offset": offset, "bytes": address}}


def _memcmp_raw(offset: int, data: bytes) -> dict[str, Any]:
    return {
        "memcmp": {
            "offset": offset,
            "bytes": base64.b64encode(data).decode("ascii"),
            "encoding": "base64",
        }
    }


class MarketView:
    """One lending market: its record, reserves and the collaborators to reach them."""

    def __init__(
        self,
        address: str,
        record: LendingMarketRecord,
        reserves: dict[str, ReserveView],
        *,
        client: ChainClient,
        decoder: AccountDecoder,
        deriver: AddressDeriver,
        oracle: PriceOracle | None = None,
        program_id: str = KLEND_PROGRAM_ID,
        farms_program_id: str = FARMS_PROGRAM_ID,
    ) -> None:
        self.address = address
        self.record = record
        self.reserves = dict(reserves)
        self.client = client
        self.decoder = decoder
        self.deriver = deriver
        self.oracle = oracle
        self.program_id = program_id
        self.farms_program_id = farms_program_id

    def __repr__(self) -> str:
        return f"MarketView({self.address}, reserves={len(self.reserves)})"

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        address: str,
        *,
        client: ChainClient,
        decoder: AccountDecoder,
        deriver: AddressDeriver,
        oracle: PriceOracle,
        program_id: str = KLEND_PROGRAM_ID,
        farms_program_id: str = FARMS_PROGRAM_ID,
    ) -> MarketView | None:
        """Fetch the market record and all of its reserves; ``None`` if the market is absent."""
        record = await cls._fetch_market_record(client, decoder, address)
        if record is None:
            return None
        market = cls(
            address,
            record,
            {},
            client=client,
            decoder=decoder,
            deriver=deriver,
            oracle=oracle,
            program_id=program_id,
            farms_program_id=farms_program_id,
        )
        market.reserves = await market._fetch_reserves_for_market()
        logger.info("Loaded market %s with %d reserves", address, len(market.reserves))
        return market

    @staticmethod
    async def _fetch_market_record(
        client: ChainClient, decoder: AccountDecoder, address: str
    ) -> LendingMarketRecord | None:
        data = await client.get_account_info(address)
        if data is None:
            return None
        record = decoder.decode(AccountKind.LENDING_MARKET, data)
        if record is None:
            raise NotFoundError("Lending market", address, "account data is not a lending market")
        return record

    async def reload(self) -> None:
        """Re-read the market record and rediscover its reserves."""
        record = await self._fetch_market_record(self.client, self.decoder, self.address)
        if record is None:
            logger.warning("Market %s no longer exists; keeping cached state", self.address)
            return
        self.reserves = await self._fetch_reserves_for_market()
        self.record = record

    async def load_reserves(self) -> None:
        """Refresh the known reserves from chain and oracle."""
        addresses = list(self.reserves)
        accounts = await self.client.get_multiple_accounts(addresses)
        records: dict[str, ReserveRecord] = {}
        for address, data in zip(addresses, accounts):
            if data is None:
                raise NotFoundError("Reserve", address, "account was not found")
            records[address] = self._decode_reserve(address, data)
        self.reserves = await self._build_reserve_views(records)

    async def _fetch_reserves_for_market(self) -> dict[str, ReserveView]:
        accounts = await self.client.get_program_accounts(
            self.program_id,
            [
                _memcmp_raw(0, self.decoder.discriminator(AccountKind.RESERVE)),
                _memcmp(RESERVE_MARKET_OFFSET, self.address),
            ],
        )
        records = {address: self._decode_reserve(address, data) for address, data in accounts}
        return await self._build_reserve_views(records)

    def _decode_reserve(self, address: str, data: bytes) -> ReserveRecord:
        record = self.decoder.decode(AccountKind.RESERVE, data)
        if record is None:
            raise NotFoundError("Reserve", address, "account data is not a reserve")
        return record

    async def _build_reserve_views(self, records: dict[str, ReserveRecord]) -> dict[str, ReserveView]:
        if self.oracle is None:
            raise ConfigurationError("A price oracle is required to load reserves")
        mints = sorted({record.liquidity.mint_pubkey for record in records.values()})
        prices = await self.oracle.fetch_prices(mints) if mints else {}

        views: dict[str, ReserveView] = {}
        for address, record in records.items():
            view = ReserveView(address, record, prices.get(record.liquidity.mint_pubkey))
            if view.token_price is None:
                raise ConfigurationError(
                    f"Could not find oracle price for {view.symbol or address} reserve "
                    f"(mint {view.liquidity_mint})"
                )
            views[address] = view
        return views

    async def refresh_prices(self) -> None:
        """Update the cached oracle price of every reserve."""
        if self.oracle is None:
            raise ConfigurationError("No price oracle configured for this market")
        prices = await self.oracle.fetch_prices([r.liquidity_mint for r in self.reserves.values()])
        for reserve in self.reserves.values():
            price = prices.get(reserve.liquidity_mint)
            if price is None:
                logger.warning("No fresh price for %s; keeping cached price", reserve.symbol)
                continue
            reserve.update_price(price)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def referral_fee_bps(self) -> int:
        return self.record.referral_fee_bps

    def get_reserves(self) -> list[ReserveView]:
        return list(self.reserves.values())

    def active_reserves(self) -> list[ReserveView]:
        return [r for r in self.reserves.values() if r.status == ReserveStatus.ACTIVE]

    def get_reserve_by_address(self, address: str) -> ReserveView | None:
        return self.reserves.get(address)

    def require_reserve(self, address: str) -> ReserveView:
        reserve = self.reserves.get(address)
        if reserve is None:
            raise NotFoundError("Reserve", address, f"not part of market {self.address}")
        return reserve

    def get_reserve_by_mint(self, mint: str) -> ReserveView | None:
        return next((r for r in self.reserves.values() if r.liquidity_mint == mint), None)

    def require_reserve_by_mint(self, mint: str) -> ReserveView:
        reserve = self.get_reserve_by_mint(mint)
        if reserve is None:
            raise NotFoundError("Reserve for mint", mint, f"not part of market {self.address}")
        return reserve

    def get_reserve_by_symbol(self, symbol: str) -> ReserveView | None:
        return next((r for r in self.reserves.values() if r.symbol == symbol), None)

    def get_reserve_mint_by_symbol(self, symbol: str) -> str | None:
        reserve = self.get_reserve_by_symbol(symbol)
        return reserve.liquidity_mint if reserve else None

    def get_elevation_group(self, group_id: int) -> ElevationGroup:
        for group in self.record.elevation_groups:
            if group.id == group_id:
                return group
        raise ConfigurationError(f"Elevation group {group_id} is not configured on market {self.address}")

    # ------------------------------------------------------------------
    # Derived addresses
    # ------------------------------------------------------------------

    def lending_market_authority(self) -> str:
        return self.deriver.find_program_address([SEED_LENDING_MARKET_AUTH, self.address], self.program_id)

    def user_metadata_address(self, owner: str) -> str:
        return self.deriver.find_program_address([SEED_USER_METADATA, owner], self.program_id)

    def referrer_token_state_address(self, referrer: str, reserve: str) -> str:
        return self.deriver.find_program_address(
            [SEED_REFERRER_TOKEN_STATE, referrer, reserve], self.program_id
        )

    def obligation_farm_state_address(self, farm: str, obligation: str) -> str:
        return self.deriver.find_program_address(
            [SEED_FARM_USER_STATE, farm, obligation], self.farms_program_id
        )

    def obligation_address(self, owner: str, descriptor: ObligationDescriptor) -> str:
        return descriptor.to_address(self.address, owner, self.deriver, self.program_id)

    # ------------------------------------------------------------------
    # Market-wide figures
    # ------------------------------------------------------------------

    def total_deposit_tvl(self) -> FixedPoint:
        tvl = ZERO
        for reserve in self.reserves.values():
            tvl += reserve.deposit_tvl()
        return tvl

    def total_borrow_tvl(self) -> FixedPoint:
        tvl = ZERO
        for reserve in self.reserves.values():
            tvl += reserve.borrow_tvl()
        return tvl

    def pair_risk_parameters(self, coll_mint: str, debt_mint: str) -> PairRiskParameters:
        """Best loan-to-value, liquidation LTV and borrow factor for a collateral/debt pair."""
        coll_reserve = self.require_reserve_by_mint(coll_mint)
        debt_reserve = self.require_reserve_by_mint(debt_mint)
        common = set(coll_reserve.elevation_groups) & set(debt_reserve.elevation_groups)
        common.discard(0)
        groups = [g for g in self.record.elevation_groups if g.id in common]

        if not groups:
            return PairRiskParameters(
                max_ltv=coll_reserve.loan_to_value,
                liquidation_ltv=coll_reserve.liquidation_threshold,
                borrow_factor=debt_reserve.borrow_factor,
            )
        return PairRiskParameters(
            max_ltv=FixedPoint.from_percent(max(g.ltv_pct for g in groups)),
            liquidation_ltv=FixedPoint.from_percent(max(g.liquidation_threshold_pct for g in groups)),
            borrow_factor=ONE,
        )

    def max_leverage_for_pair(self, coll_mint: str, debt_mint: str) -> FixedPoint:
        params = self.pair_risk_parameters(coll_mint, debt_mint)
        headroom = ONE - params.max_ltv / params.borrow_factor
        if headroom <= ZERO:
            raise ConfigurationError(
                f"Pair {coll_mint}/{debt_mint} has no borrow headroom "
                f"(max ltv {params.max_ltv}, borrow factor {params.borrow_factor})"
            )
        return ONE / headroom

    def cumulative_borrow_rates_by_reserve(self, slot: int) -> RateMap:
        return {
            address: reserve.estimated_cumulative_borrow_rate(slot)
            for address, reserve in self.reserves.items()
        }

    def collateral_exchange_rates_by_reserve(self, slot: int) -> RateMap:
        return {
            address: reserve.estimated_collateral_exchange_rate(slot, self.referral_fee_bps)
            for address, reserve in self.reserves.items()
        }

    # ------------------------------------------------------------------
    # Obligations
    # ------------------------------------------------------------------

    async def get_obligation_by_address(self, address: str) -> PositionLedger | None:
        return await PositionLedger.load(self, address)

    async def get_multiple_obligations_by_address(
        self, addresses: Sequence[str]
    ) -> list[PositionLedger | None]:
        return await PositionLedger.load_many(self, addresses)

    async def get_obligation_by_wallet(
        self, owner: str, descriptor: ObligationDescriptor
    ) -> PositionLedger | None:
        return await PositionLedger.load(self, self.obligation_address(owner, descriptor))

    async def get_obligation_deposit_by_wallet(
        self, owner: str, mint: str, descriptor: ObligationDescriptor
    ) -> FixedPoint:
        ledger = await self.get_obligation_by_wallet(owner, descriptor)
        position = ledger.get_deposit_by_mint(mint) if ledger else None
        return position.amount if position else ZERO

    async def get_obligation_borrow_by_wallet(
        self, owner: str, mint: str, descriptor: ObligationDescriptor
    ) -> FixedPoint:
        ledger = await self.get_obligation_by_wallet(owner, descriptor)
        position = ledger.get_borrow_by_mint(mint) if ledger else None
        return position.amount if position else ZERO

    async def _load_obligations(self, filters: list[dict[str, Any]]) -> list[PositionLedger]:
        slot, accounts = await asyncio.gather(
            self.client.get_slot(),
            self.client.get_program_accounts(self.program_id, filters),
        )
        collateral_exchange_rates: RateMap = {}
        cumulative_borrow_rates: RateMap = {}
        ledgers: list[PositionLedger] = []
        for address, data in accounts:
            record = self.decoder.decode(AccountKind.OBLIGATION, data)
            if record is None:
                raise NotFoundError("Obligation", address, "account data is not an obligation")
            PositionLedger.add_rates_for_obligation(
                self, record, collateral_exchange_rates, cumulative_borrow_rates, slot
            )
            ledgers.append(
                PositionLedger(self, address, record, collateral_exchange_rates, cumulative_borrow_rates)
            )
        return ledgers

    def _obligation_filters(self, tag: int | None = None, owner: str | None = None) -> list[dict[str, Any]]:
        filters = [
            _memcmp_raw(0, self.decoder.discriminator(AccountKind.OBLIGATION)),
            _memcmp(OBLIGATION_MARKET_OFFSET, self.address),
        ]
        if tag is not None:
            filters.append(_memcmp_raw(OBLIGATION_TAG_OFFSET, int(tag).to_bytes(8, "little")))
        if owner is not None:
            filters.append(_memcmp(OBLIGATION_OWNER_OFFSET, owner))
        return filters

    async def get_all_obligations_for_market(self, tag: int | None = None) -> list[PositionLedger]:
        return await self._load_obligations(self._obligation_filters(tag=tag))

    async def get_all_user_obligations(self, owner: str, tag: int | None = None) -> list[PositionLedger]:
        return await self._load_obligations(self._obligation_filters(tag=tag, owner=owner))

    async def get_number_of_obligations(self) -> int:
        """Obligations in the market with any deposit or debt."""
        return sum(1 for ledger in await self.get_all_obligations_for_market() if _is_open(ledger))

    async def get_total_product_tvl(self, descriptor: ObligationDescriptor) -> ProductTvl:
        """Aggregate value of the open obligations of one product type."""
        ledgers = [
            ledger
            for ledger in await self.get_all_obligations_for_market(int(descriptor.tag))
            if _is_open(ledger)
        ]
        if descriptor.tag == ObligationTag.LENDING:
            ledgers = [ob for ob in ledgers if ob.get_deposit_by_mint(descriptor.seed1) is not None]
        elif descriptor.tag in (ObligationTag.MULTIPLY, ObligationTag.LEVERAGE):
            ledgers = [
                ob
                for ob in ledgers
                if ob.get_deposit_by_mint(descriptor.seed1) is not None
                and ob.get_borrow_by_mint(descriptor.seed2) is not None
            ]

        deposits = sum((ob.stats.user_total_deposit for ob in ledgers), ZERO)
        borrows = sum((ob.stats.user_total_borrow for ob in ledgers), ZERO)
        leverage = sum((ob.stats.leverage for ob in ledgers), ZERO)
        avg_leverage = leverage / len(ledgers) if ledgers else ZERO
        return ProductTvl(tvl=deposits - borrows, deposits=deposits, borrows=borrows, avg_leverage=avg_leverage)

    # ------------------------------------------------------------------
    # User metadata and referrals
    # ------------------------------------------------------------------

    async def get_user_metadata(self, owner: str) -> tuple[str, UserMetadataRecord | None]:
        address = self.user_metadata_address(owner)
        data = await self.client.get_account_info(address)
        if data is None:
            return address, None
        return address, self.decoder.decode(AccountKind.USER_METADATA, data)

    async def get_referrer_token_state_for_reserve(
        self, referrer: str, reserve: str
    ) -> tuple[str, ReferrerTokenStateRecord | None]:
        address = self.referrer_token_state_address(referrer, reserve)
        data = await self.client.get_account_info(address)
        if data is None:
            return address, None
        return address, self.decoder.decode(AccountKind.REFERRER_TOKEN_STATE, data)

    async def get_all_referrer_token_states(self, referrer: str) -> dict[str, ReferrerTokenStateRecord]:
        """Referrer fee ledgers of ``referrer`` keyed by mint."""
        accounts = await self.client.get_program_accounts(
            self.program_id,
            [
                _memcmp_raw(0, self.decoder.discriminator(AccountKind.REFERRER_TOKEN_STATE)),
                _memcmp(REFERRER_TOKEN_STATE_REFERRER_OFFSET, referrer),
            ],
        )
        states: dict[str, ReferrerTokenStateRecord] = {}
        for address, data in accounts:
            state = self.decoder.decode(AccountKind.REFERRER_TOKEN_STATE, data)
            if state is None:
                raise NotFoundError("Referrer token state", address, "account data is not decodable")
            states[state.mint] = state
        return states

    async def get_all_referrer_fees_unclaimed(self, referrer: str) -> dict[str, FixedPoint]:
        states = await self.get_all_referrer_token_states(referrer)
        return {mint: FixedPoint(s.amount_unclaimed_sf) for mint, s in states.items()}

    async def get_all_referrer_fees_cumulative(self, referrer: str) -> dict[str, FixedPoint]:
        states = await self.get_all_referrer_token_states(referrer)
        return {mint: FixedPoint(s.amount_cumulative_sf) for mint, s in states.items()}

    async def get_referrer_fees_unclaimed_for_reserve(self, referrer: str, reserve: str) -> FixedPoint:
        _, state = await self.get_referrer_token_state_for_reserve(referrer, reserve)
        return FixedPoint(state.amount_unclaimed_sf) if state else ZERO

    async def get_referrer_fees_cumulative_for_reserve(self, referrer: str, reserve: str) -> FixedPoint:
        _, state = await self.get_referrer_token_state_for_reserve(referrer, reserve)
        return FixedPoint(state.amount_cumulative_sf) if state else ZERO


def _is_open(ledger: PositionLedger) -> bool:
    return ledger.stats.user_total_borrow > ZERO or ledger.stats.user_total_deposit > ZERO
