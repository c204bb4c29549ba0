"""LendingClient — wires config, chain client, oracle and sequencer together."""
from __future__ import annotations

import logging
from typing import Any

from ..chains.solana import SolanaClient, SoldersAddressDeriver
from ..config import AppConfig, PriceOracleConfig
from ..errors import ConfigurationError, InvalidStateError, NotFoundError
from ..interfaces import AccountDecoder, AddressDeriver, ChainClient, PriceOracle, Submitter
from ..lending.action import Action
from ..lending.market import MarketView
from ..lending.obligation import PositionLedger
from ..lending.obligation_type import ObligationDescriptor
from ..models import ActionKind
from ..oracles import PythOracle

logger = logging.getLogger(__name__)

# Registry of price oracle factories keyed by provider name.
_ORACLE_FACTORIES: dict[str, Any] = {
    "pyth": lambda cfg: PythOracle(cfg.pyth),
}

# Registry of action builders keyed by action kind.
_ACTION_BUILDERS: dict[ActionKind, Any] = {
    ActionKind.DEPOSIT: lambda market, kw: Action.build_deposit_txns(market=market, **kw),
    ActionKind.BORROW: lambda market, kw: Action.build_borrow_txns(market=market, **kw),
    ActionKind.WITHDRAW: lambda market, kw: Action.build_withdraw_txns(market=market, **kw),
    ActionKind.REPAY: lambda market, kw: Action.build_repay_txns(market=market, **kw),
    ActionKind.MINT: lambda market, kw: Action.build_deposit_reserve_liquidity_txns(market=market, **kw),
    ActionKind.REDEEM: lambda market, kw: Action.build_redeem_reserve_collateral_txns(market=market, **kw),
    ActionKind.DEPOSIT_COLLATERAL: lambda market, kw: Action.build_deposit_obligation_collateral_txns(
        market=market, **kw
    ),
    ActionKind.LIQUIDATE: lambda market, kw: Action.build_liquidate_txns(market=market, **kw),
    ActionKind.DEPOSIT_AND_BORROW: lambda market, kw: Action.build_deposit_and_borrow_txns(
        market=market, **kw
    ),
    ActionKind.REPAY_AND_WITHDRAW: lambda market, kw: Action.build_repay_and_withdraw_txns(
        market=market, **kw
    ),
    ActionKind.REFRESH_OBLIGATION: lambda market, kw: Action.build_refresh_obligation_txns(
        market=market, **kw
    ),
    ActionKind.WITHDRAW_REFERRER_FEES: lambda market, kw: Action.build_withdraw_referrer_fee_txns(
        market=market, **kw
    ),
}

# Kinds whose builders accept only the compute budget, or no sequencer option at all.
_BUDGET_ONLY_KINDS = (ActionKind.REFRESH_OBLIGATION,)
_NO_OPTION_KINDS = (ActionKind.WITHDRAW_REFERRER_FEES,)


def _build_oracle(config: PriceOracleConfig) -> PriceOracle:
    factory = _ORACLE_FACTORIES.get(config.provider)
    if factory is None:
        raise ConfigurationError(f"No price oracle factory for provider '{config.provider}'")
    return factory(config)


class LendingClient:
    """Entry point for reading one market and building actions against it."""

    def __init__(
        self,
        config: AppConfig,
        decoder: AccountDecoder,
        *,
        client: ChainClient | None = None,
        oracle: PriceOracle | None = None,
        deriver: AddressDeriver | None = None,
    ) -> None:
        self._config = config
        self._decoder = decoder
        self._client: ChainClient = client if client is not None else SolanaClient(config.chain)
        self._oracle: PriceOracle = oracle if oracle is not None else _build_oracle(config.price_oracle)
        self._deriver: AddressDeriver = deriver if deriver is not None else SoldersAddressDeriver()
        self._market: MarketView | None = None

    @property
    def config(self) -> AppConfig:
        return self._config

    # ------------------------------------------------------------------
    # Market and obligations
    # ------------------------------------------------------------------

    async def load_market(self) -> MarketView:
        """(Re)load the configured market with all of its reserves and prices."""
        market_cfg = self._config.market
        market = await MarketView.load(
            market_cfg.address,
            client=self._client,
            decoder=self._decoder,
            deriver=self._deriver,
            oracle=self._oracle,
            program_id=market_cfg.program_id,
            farms_program_id=market_cfg.farms_program_id,
        )
        if market is None:
            raise NotFoundError("Lending market", market_cfg.address, "account does not exist")
        self._market = market
        return market

    async def market(self) -> MarketView:
        """Cached market, loading it on first use."""
        if self._market is None:
            return await self.load_market()
        return self._market

    async def get_obligation(
        self, owner: str, descriptor: ObligationDescriptor | None = None
    ) -> PositionLedger | None:
        market = await self.market()
        return await market.get_obligation_by_wallet(owner, descriptor or ObligationDescriptor.vanilla())

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def build_action(self, kind: ActionKind, **kwargs: Any) -> Action:
        """Build and sequence ``kind`` with the configured sequencer defaults.

        Keyword arguments are passed to the matching ``Action.build_*``
        classmethod; explicit values win over the configured defaults. The
        current slot is fetched from chain when not given.
        """
        builder = _ACTION_BUILDERS.get(kind)
        if builder is None:
            raise InvalidStateError(f"No builder registered for action {kind.value}")

        market = await self.market()
        options = self._sequencer_options(kind)
        for name, value in options.items():
            kwargs.setdefault(name, value)
        if "current_slot" not in kwargs:
            kwargs["current_slot"] = await self._client.get_slot()

        action = await builder(market, kwargs)
        logger.info(
            "Built %s action for obligation %s (%d lending instructions)",
            kind.value,
            action.obligation_address,
            len(action.lending),
        )
        return action

    def _sequencer_options(self, kind: ActionKind) -> dict[str, Any]:
        seq = self._config.sequencer
        if kind in _NO_OPTION_KINDS:
            return {}
        if kind in _BUDGET_ONLY_KINDS:
            return {"extra_compute_budget": seq.extra_compute_budget}
        return {
            "extra_compute_budget": seq.extra_compute_budget,
            "include_ata_ixns": seq.include_ata_ixns,
            "include_user_metadata": seq.include_user_metadata,
            "request_elevation_group": seq.request_elevation_group,
        }

    async def submit(self, action: Action, submitter: Submitter) -> str:
        """Send the action's transactions in order; returns the lending signature."""
        return await action.send_transactions(submitter)
