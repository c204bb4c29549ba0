"""Shared test fixtures and sample data."""
from __future__ import annotations

import base64
import hashlib
import textwrap
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from lending_engine.config import (
    AppConfig,
    ChainConfig,
    MarketConfig,
    PriceOracleConfig,
    PythConfig,
    SequencerConfig,
)
from lending_engine.constants import (
    KLEND_PROGRAM_ID,
    NULL_PUBKEY,
    OBLIGATION_MARKET_OFFSET,
    OBLIGATION_OWNER_OFFSET,
    OBLIGATION_TAG_OFFSET,
    REFERRER_TOKEN_STATE_REFERRER_OFFSET,
    RESERVE_MARKET_OFFSET,
    WRAPPED_SOL_MINT,
)
from lending_engine.fixed_point import ONE, FixedPoint
from lending_engine.lending.market import MarketView
from lending_engine.lending.obligation import PositionLedger
from lending_engine.lending.obligation_type import ObligationDescriptor
from lending_engine.lending.parser import fixed_to_big_fraction
from lending_engine.lending.reserve import ReserveView
from lending_engine.models import (
    AccountKind,
    CurvePoint,
    ElevationGroup,
    Instruction,
    LendingMarketRecord,
    ObligationCollateral,
    ObligationLiquidity,
    ObligationRecord,
    PriceKind,
    ReserveCollateral,
    ReserveConfig,
    ReserveLiquidity,
    ReserveRecord,
    TokenInfo,
    TokenOraclePrice,
    UserMetadataRecord,
)

MARKET_ADDRESS = "LendingMarket1111111111111111111111111111111"
OWNER = "Owner111111111111111111111111111111111111111"
USDC_MINT = "MintUSDC11111111111111111111111111111111111"
JITO_MINT = "MintJito11111111111111111111111111111111111"

DEFAULT_CURVE = (
    CurvePoint(0, 0),
    CurvePoint(8_000, 1_000),
    CurvePoint(10_000, 5_000),
)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeDecoder:
    """Hands out opaque byte blobs for registered records and maps them back."""

    def __init__(self) -> None:
        self._records: dict[bytes, tuple[AccountKind, Any]] = {}

    def register(self, kind: AccountKind, record: Any) -> bytes:
        data = f"{kind.value}:{len(self._records)}".encode()
        self._records[data] = (kind, record)
        return data

    def decode(self, kind: AccountKind, data: bytes) -> Any | None:
        entry = self._records.get(data)
        if entry is None or entry[0] != kind:
            return None
        return entry[1]

    def discriminator(self, kind: AccountKind) -> bytes:
        return hashlib.sha256(f"account:{kind.value}".encode()).digest()[:8]


class FakeAddressDeriver:
    """Deterministic stand-in for PDA derivation."""

    def find_program_address(self, seeds: Sequence[bytes | str], program_id: str) -> str:
        digest = hashlib.sha256(program_id.encode())
        for seed in seeds:
            digest.update(seed if isinstance(seed, bytes) else seed.encode())
            digest.update(b"|")
        return "Pda" + digest.hexdigest()[:41]


# memcmp offset -> record attribute holding that address
_ADDRESS_FIELDS = {
    (AccountKind.RESERVE, RESERVE_MARKET_OFFSET): "lending_market",
    (AccountKind.OBLIGATION, OBLIGATION_MARKET_OFFSET): "lending_market",
    (AccountKind.OBLIGATION, OBLIGATION_OWNER_OFFSET): "owner",
    (AccountKind.REFERRER_TOKEN_STATE, REFERRER_TOKEN_STATE_REFERRER_OFFSET): "referrer",
}


class InMemoryChainClient:
    """ChainClient over a dict of accounts; addresses in ``failing`` raise on read."""

    def __init__(self, decoder: FakeDecoder, slot: int = 1_000, rent: int = 2_039_280) -> None:
        self.decoder = decoder
        self.slot = slot
        self.rent = rent
        self.failing: set[str] = set()
        self._accounts: dict[str, bytes] = {}
        self._typed: dict[str, tuple[str, AccountKind, Any]] = {}

    def add_account(
        self, address: str, kind: AccountKind, record: Any, program_id: str = KLEND_PROGRAM_ID
    ) -> None:
        self._accounts[address] = self.decoder.register(kind, record)
        self._typed[address] = (program_id, kind, record)

    def add_token_account(self, address: str) -> None:
        self._accounts[address] = b"token-account"

    async def get_account_info(self, address: str) -> bytes | None:
        if address in self.failing:
            raise RuntimeError(f"All RPC endpoints failed. Last error: {address}")
        return self._accounts.get(address)

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> list[bytes | None]:
        return [self._accounts.get(address) for address in addresses]

    async def get_slot(self) -> int:
        return self.slot

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        return self.rent

    async def get_program_accounts(
        self, program_id: str, filters: list[dict[str, Any]]
    ) -> list[tuple[str, bytes]]:
        return [
            (address, self._accounts[address])
            for address, (owner, kind, record) in self._typed.items()
            if owner == program_id and self._matches(kind, record, filters)
        ]

    def _matches(self, kind: AccountKind, record: Any, filters: list[dict[str, Any]]) -> bool:
        for entry in filters:
            memcmp = entry["memcmp"]
            offset = memcmp["offset"]
            if memcmp.get("encoding") == "base64":
                raw = base64.b64decode(memcmp["bytes"])
                if offset == 0 and raw != self.decoder.discriminator(kind):
                    return False
                if offset == OBLIGATION_TAG_OFFSET and kind == AccountKind.OBLIGATION:
                    if int.from_bytes(raw, "little") != record.tag:
                        return False
                continue
            field = _ADDRESS_FIELDS.get((kind, offset))
            if field is None or getattr(record, field) != memcmp["bytes"]:
                return False
        return True


class FakeOracle:
    def __init__(self, prices: dict[str, Decimal]) -> None:
        self.prices = dict(prices)
        self.requests: list[list[str] | None] = []

    async def fetch_prices(
        self, mints: list[str] | None = None, kind: PriceKind = PriceKind.SPOT
    ) -> dict[str, TokenOraclePrice]:
        self.requests.append(mints)
        wanted = self.prices if mints is None else {m: p for m, p in self.prices.items() if m in mints}
        return {mint: TokenOraclePrice(mint, price) for mint, price in wanted.items()}

    async def get_price(self, mint: str, kind: PriceKind = PriceKind.SPOT) -> TokenOraclePrice:
        return TokenOraclePrice(mint, self.prices[mint])


class RecordingSubmitter:
    def __init__(self) -> None:
        self.submissions: list[tuple[list[Instruction], str]] = []

    async def submit(self, instructions: Sequence[Instruction], payer: str) -> str:
        self.submissions.append((list(instructions), payer))
        return f"sig{len(self.submissions)}"


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------


def make_reserve_record(
    symbol: str,
    mint: str,
    decimals: int,
    *,
    available: int,
    borrowed: int,
    collateral_supply: int | None = None,
    ltv: int = 70,
    liquidation_threshold: int = 75,
    borrow_factor: int = 100,
    elevation_groups: tuple[int, ...] = (),
    deposit_limit: int = 10**20,
    borrow_limit: int = 10**20,
    farm_collateral: str = NULL_PUBKEY,
    farm_debt: str = NULL_PUBKEY,
    last_update_slot: int = 1_000,
    cumulative_rate: FixedPoint = ONE,
    protocol_take_rate: int = 0,
    curve: tuple[CurvePoint, ...] = DEFAULT_CURVE,
) -> ReserveRecord:
    """Reserve whose collateral supply defaults to a 1:1 exchange rate."""
    if collateral_supply is None:
        collateral_supply = available + borrowed
    return ReserveRecord(
        lending_market=MARKET_ADDRESS,
        last_update_slot=last_update_slot,
        liquidity=ReserveLiquidity(
            mint_pubkey=mint,
            mint_decimals=decimals,
            supply_vault=f"{symbol}LiquiditySupply",
            fee_vault=f"{symbol}FeeVault",
            available_amount=available,
            borrowed_amount_sf=FixedPoint.from_int(borrowed).raw,
            cumulative_borrow_rate_bsf=fixed_to_big_fraction(cumulative_rate),
        ),
        collateral=ReserveCollateral(
            mint_pubkey=f"CollateralMint{symbol}",
            mint_total_supply=collateral_supply,
            supply_vault=f"{symbol}CollateralSupply",
        ),
        config=ReserveConfig(
            loan_to_value_pct=ltv,
            liquidation_threshold_pct=liquidation_threshold,
            borrow_factor_pct=borrow_factor,
            protocol_take_rate_pct=protocol_take_rate,
            deposit_limit=deposit_limit,
            borrow_limit=borrow_limit,
            borrow_rate_curve=curve,
            elevation_groups=elevation_groups,
            token_info=TokenInfo(name=symbol.encode().ljust(32, b"\x00"), pyth_price=f"{symbol}PythFeed"),
        ),
        farm_collateral=farm_collateral,
        farm_debt=farm_debt,
    )


def borrow_entry(reserve: str, amount: int, cumulative_rate: FixedPoint = ONE) -> ObligationLiquidity:
    return ObligationLiquidity(
        borrow_reserve=reserve,
        cumulative_borrow_rate_bsf=fixed_to_big_fraction(cumulative_rate),
        borrowed_amount_sf=FixedPoint.from_int(amount).raw,
    )


# ---------------------------------------------------------------------------
# Collaborator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def decoder() -> FakeDecoder:
    return FakeDecoder()


@pytest.fixture()
def deriver() -> FakeAddressDeriver:
    return FakeAddressDeriver()


@pytest.fixture()
def chain(decoder: FakeDecoder) -> InMemoryChainClient:
    return InMemoryChainClient(decoder)


@pytest.fixture()
def oracle() -> FakeOracle:
    return FakeOracle(
        {
            USDC_MINT: Decimal("1"),
            WRAPPED_SOL_MINT: Decimal("100"),
            JITO_MINT: Decimal("110"),
        }
    )


@pytest.fixture()
def submitter() -> RecordingSubmitter:
    return RecordingSubmitter()


@pytest.fixture()
def reserve_factory() -> Callable[..., ReserveRecord]:
    return make_reserve_record


# ---------------------------------------------------------------------------
# Market fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def usdc_record() -> ReserveRecord:
    return make_reserve_record(
        "USDC",
        USDC_MINT,
        6,
        available=1_000_000 * 10**6,
        borrowed=500_000 * 10**6,
        ltv=80,
        liquidation_threshold=85,
        elevation_groups=(1,),
    )


@pytest.fixture()
def sol_record() -> ReserveRecord:
    return make_reserve_record(
        "SOL",
        WRAPPED_SOL_MINT,
        9,
        available=100_000 * 10**9,
        borrowed=50_000 * 10**9,
        ltv=70,
        liquidation_threshold=75,
        borrow_factor=120,
        elevation_groups=(1, 2),
        farm_collateral="FarmSolCollateral",
    )


@pytest.fixture()
def jito_record() -> ReserveRecord:
    return make_reserve_record(
        "JITO",
        JITO_MINT,
        9,
        available=20_000 * 10**9,
        borrowed=0,
        ltv=60,
        liquidation_threshold=65,
        elevation_groups=(2,),
    )


@pytest.fixture()
def market_record() -> LendingMarketRecord:
    return LendingMarketRecord(
        lending_market_owner="MarketOwner",
        referral_fee_bps=0,
        elevation_groups=(
            ElevationGroup(id=1, ltv_pct=85, liquidation_threshold_pct=90),
            ElevationGroup(id=2, ltv_pct=90, liquidation_threshold_pct=92),
        ),
    )


@pytest.fixture()
def market(
    chain: InMemoryChainClient,
    decoder: FakeDecoder,
    deriver: FakeAddressDeriver,
    oracle: FakeOracle,
    market_record: LendingMarketRecord,
    usdc_record: ReserveRecord,
    sol_record: ReserveRecord,
    jito_record: ReserveRecord,
) -> MarketView:
    """Market with USDC, SOL and JITO reserves, also registered on the fake chain."""
    chain.add_account(MARKET_ADDRESS, AccountKind.LENDING_MARKET, market_record)
    reserves: dict[str, ReserveView] = {}
    for symbol, record in (("USDC", usdc_record), ("SOL", sol_record), ("JITO", jito_record)):
        address = f"Reserve{symbol}"
        chain.add_account(address, AccountKind.RESERVE, record)
        mint = record.liquidity.mint_pubkey
        reserves[address] = ReserveView(address, record, TokenOraclePrice(mint, oracle.prices[mint]))
    return MarketView(
        MARKET_ADDRESS,
        market_record,
        reserves,
        client=chain,
        decoder=decoder,
        deriver=deriver,
        oracle=oracle,
    )


@pytest.fixture()
def obligation_record() -> ObligationRecord:
    """10 SOL of collateral ($1000) against 400 USDC of debt."""
    return ObligationRecord(
        tag=0,
        lending_market=MARKET_ADDRESS,
        owner=OWNER,
        deposits=(ObligationCollateral(deposit_reserve="ReserveSOL", deposited_amount=10 * 10**9),),
        borrows=(borrow_entry("ReserveUSDC", 400 * 10**6),),
    )


@pytest.fixture()
def ledger(
    market: MarketView, chain: InMemoryChainClient, obligation_record: ObligationRecord
) -> PositionLedger:
    """OWNER's vanilla obligation, registered on chain together with their user metadata."""
    address = market.obligation_address(OWNER, ObligationDescriptor.vanilla())
    chain.add_account(address, AccountKind.OBLIGATION, obligation_record)
    chain.add_account(
        market.user_metadata_address(OWNER), AccountKind.USER_METADATA, UserMetadataRecord(owner=OWNER)
    )
    return PositionLedger(market, address, obligation_record)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
    )


@pytest.fixture()
def sample_pyth_config() -> PythConfig:
    return PythConfig(
        hermes_url="https://hermes.pyth.network/v2/updates/price/latest",
        feeds={USDC_MINT: "0xAAA111", WRAPPED_SOL_MINT: "bbb222", JITO_MINT: "ccc333"},
        max_age_seconds=60,
    )


@pytest.fixture()
def sample_app_config(
    sample_chain_config: ChainConfig, sample_pyth_config: PythConfig
) -> AppConfig:
    return AppConfig(
        chain=sample_chain_config,
        market=MarketConfig(address=MARKET_ADDRESS),
        sequencer=SequencerConfig(extra_compute_budget=400_000),
        price_oracle=PriceOracleConfig(provider="pyth", pyth=sample_pyth_config),
    )


SAMPLE_YAML = textwrap.dedent("""\
    log_level: DEBUG
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
      commitment: finalized
    market:
      address: "MarketAddr"
    sequencer:
      extra_compute_budget: 250000
      request_elevation_group: true
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        max_age_seconds: 30
        feeds: {MintA: "aaa", MintB: "bbb"}
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
