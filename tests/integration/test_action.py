"""Integration tests for the action sequencer against an in-memory chain."""
from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from lending_engine.constants import NULL_PUBKEY, U64_MAX, WRAPPED_SOL_MINT
from lending_engine.errors import InvalidStateError, LimitExceededError, NotFoundError, TierMismatchError
from lending_engine.lending import instructions as ix
from lending_engine.lending.action import Action, ActionState
from lending_engine.lending.market import MarketView
from lending_engine.lending.obligation import PositionLedger
from lending_engine.lending.obligation_type import ObligationDescriptor, PendingObligation
from lending_engine.lending.reserve import ReserveView
from lending_engine.models import (
    ActionKind,
    ObligationCollateral,
    ObligationRecord,
    ReserveRecord,
    TokenOraclePrice,
)

RENT = 2_039_280
BUDGET = "AddComputeBudget[1000000]"


def _ata(market: MarketView, owner: str, mint: str) -> str:
    return ix.associated_token_address(market.deriver, owner, mint)


def _usdc_mint(market: MarketView) -> str:
    return market.require_reserve("ReserveUSDC").liquidity_mint


def _set_reserve_config(market: MarketView, address: str, **changes) -> None:
    view = market.require_reserve(address)
    record = view.record
    market.reserves[address] = view.with_record(replace(record, config=replace(record.config, **changes)))


class TestDeposit:
    @pytest.mark.asyncio
    async def test_existing_obligation(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))

        action = await Action.build_deposit_txns(market, 100 * 10**6, usdc, ledger.owner, ledger)

        assert action.state == ActionState.SEQUENCED
        assert action.setup_labels == [
            BUDGET,
            "RefreshReserve[ReserveSOL]",
            "RefreshReserve[ReserveUSDC]",
            f"RefreshObligation[{ledger.address}]",
        ]
        assert action.lending_labels == ["depositReserveLiquidityAndObligationCollateral"]
        assert action.cleanup_labels == []
        assert action.pre_txn_labels == []
        assert action.lending[0].args == {"liquidity_amount": 100 * 10**6}

    @pytest.mark.asyncio
    async def test_refresh_obligation_lists_positions(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))

        action = await Action.build_deposit_txns(market, 1, usdc, ledger.owner, ledger)

        refresh = action.setup[-1]
        assert [meta.address for meta in refresh.accounts[2:]] == ["ReserveSOL", "ReserveUSDC"]

    @pytest.mark.asyncio
    async def test_missing_user_ata_goes_to_pre_transaction(self, market: MarketView, ledger: PositionLedger) -> None:
        usdc = _usdc_mint(market)
        ata = _ata(market, ledger.owner, usdc)

        action = await Action.build_deposit_txns(market, 1, usdc, ledger.owner, ledger)

        assert action.pre_txn_labels == [f"CreateUserAta[{ata}]"]

    @pytest.mark.asyncio
    async def test_wrapped_sol_with_farm(self, market: MarketView, ledger: PositionLedger) -> None:
        account = _ata(market, ledger.owner, WRAPPED_SOL_MINT)
        obl = ledger.address

        action = await Action.build_deposit_txns(market, 2 * 10**9, WRAPPED_SOL_MINT, ledger.owner, ledger)

        assert action.setup_labels == [
            f"TransferLamportsToUserAtaSOL[{account}]",
            f"CreateUserAtaSOL[{account}]",
            f"SyncUserAtaSOL[{account}]",
            BUDGET,
            "RefreshReserve[ReserveUSDC]",
            f"InitObligationForFarm[ReserveSOL, {obl}]",
            "RefreshReserve[ReserveSOL]",
            f"RefreshObligation[{obl}]",
            f"RefreshFarmForObligation[Collateral, res=ReserveSOL, obl={obl}]",
        ]
        assert action.setup[0].args["lamports"] == RENT + 2 * 10**9
        assert action.cleanup_labels == [
            f"RefreshFarmForObligation[Collateral, res=ReserveSOL, obl={obl}]",
            f"CloseUserAtaSOL[{account}]",
        ]

    @pytest.mark.asyncio
    async def test_existing_wsol_account_is_only_synced(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        account = _ata(market, ledger.owner, WRAPPED_SOL_MINT)
        chain.add_token_account(account)
        farm_state = market.obligation_farm_state_address("FarmSolCollateral", ledger.address)
        chain.add_token_account(farm_state)

        action = await Action.build_deposit_txns(market, 10**9, WRAPPED_SOL_MINT, ledger.owner, ledger)

        assert action.setup_labels[:3] == [
            f"TransferLamportsToUserAtaSOL[{account}]",
            f"SyncUserAtaSOL[{account}]",
            BUDGET,
        ]
        assert action.setup[0].args["lamports"] == 10**9
        assert not any(label.startswith("InitObligationForFarm") for label in action.setup_labels)
        assert not any(label.startswith("CloseUserAtaSOL") for label in action.cleanup_labels)

    @pytest.mark.asyncio
    async def test_new_obligation_is_bootstrapped(self, market: MarketView, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, "Newbie", usdc))
        descriptor = ObligationDescriptor.vanilla()
        obl = market.obligation_address("Newbie", descriptor)
        metadata = market.user_metadata_address("Newbie")

        action = await Action.build_deposit_txns(market, 5 * 10**6, usdc, "Newbie", descriptor)

        assert isinstance(action.obligation, PendingObligation)
        assert action.obligation_address == obl
        assert action.setup_labels == [
            BUDGET,
            f"initUserMetadata[{metadata}]",
            f"InitObligation[{obl}]",
            "RefreshReserve[ReserveUSDC]",
            f"RefreshObligation[{obl}]",
        ]
        init_metadata = action.setup[1]
        assert init_metadata.args == {"user_lookup_table": NULL_PUBKEY}
        assert init_metadata.accounts[3].address == market.program_id

    @pytest.mark.asyncio
    async def test_skip_user_metadata(self, market: MarketView, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, "Newbie", usdc))

        action = await Action.build_deposit_txns(
            market, 1, usdc, "Newbie", ObligationDescriptor.vanilla(), include_user_metadata=False
        )

        assert not any(label.startswith("initUserMetadata") for label in action.setup_labels)

    @pytest.mark.asyncio
    async def test_referrer_state_is_initialized_first(self, market: MarketView, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, "Newbie", usdc))
        state = market.referrer_token_state_address("Referrer1", "ReserveUSDC")

        action = await Action.build_deposit_txns(
            market, 1, usdc, "Newbie", ObligationDescriptor.vanilla(), referrer="Referrer1"
        )

        assert action.setup_labels[0] == f"InitReferrerTokenState[{state} res=ReserveUSDC]"
        assert action.setup_labels[1] == BUDGET
        init_metadata = action.setup[2]
        assert init_metadata.accounts[3].address == market.user_metadata_address("Referrer1")

    @pytest.mark.asyncio
    async def test_no_compute_budget(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))

        action = await Action.build_deposit_txns(market, 1, usdc, ledger.owner, ledger, extra_compute_budget=0)

        assert action.setup_labels[0] == "RefreshReserve[ReserveSOL]"


class TestShareActions:
    @pytest.mark.asyncio
    async def test_mint_skips_obligation_refresh(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        reserve = market.require_reserve("ReserveUSDC")
        chain.add_token_account(_ata(market, ledger.owner, reserve.liquidity_mint))
        chain.add_token_account(_ata(market, ledger.owner, reserve.collateral_mint))

        action = await Action.build_deposit_reserve_liquidity_txns(
            market, 10**6, reserve.liquidity_mint, ledger.owner, ledger
        )

        assert action.setup_labels == [BUDGET]
        assert action.lending_labels == ["depositReserveLiquidity"]

    @pytest.mark.asyncio
    async def test_mint_creates_collateral_ata(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        reserve = market.require_reserve("ReserveUSDC")
        chain.add_token_account(_ata(market, ledger.owner, reserve.liquidity_mint))
        collateral_ata = _ata(market, ledger.owner, reserve.collateral_mint)

        action = await Action.build_deposit_reserve_liquidity_txns(
            market, 10**6, reserve.liquidity_mint, ledger.owner, ledger
        )

        assert action.setup_labels == [f"CreateCollateralUserAta[{collateral_ata}]", BUDGET]

    @pytest.mark.asyncio
    async def test_redeem(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))

        action = await Action.build_redeem_reserve_collateral_txns(market, 10**6, usdc, ledger.owner, ledger)

        assert action.setup_labels == [BUDGET]
        assert action.lending_labels == ["redeemReserveCollateral"]

    @pytest.mark.asyncio
    async def test_deposit_collateral_refreshes_obligation(self, market: MarketView, ledger: PositionLedger) -> None:
        action = await Action.build_deposit_obligation_collateral_txns(
            market, 10**6, _usdc_mint(market), ledger.owner, ledger
        )

        assert action.setup_labels == [
            BUDGET,
            "RefreshReserve[ReserveSOL]",
            "RefreshReserve[ReserveUSDC]",
            f"RefreshObligation[{ledger.address}]",
        ]
        assert action.lending_labels == ["depositObligationCollateral"]


class TestSequencingProperties:
    @pytest.mark.parametrize(
        "builder",
        [
            Action.build_deposit_txns,
            Action.build_borrow_txns,
            Action.build_withdraw_txns,
            Action.build_deposit_obligation_collateral_txns,
        ],
    )
    @pytest.mark.asyncio
    async def test_single_leg_refreshes_each_reserve_once(
        self, builder, market: MarketView, ledger: PositionLedger
    ) -> None:
        action = await builder(market, 10**6, _usdc_mint(market), ledger.owner, ledger)

        refreshes = [label for label in action.setup_labels if label.startswith("RefreshReserve")]
        assert len(refreshes) == len(set(refreshes))
        assert len(action.lending) == 1
        assert action.in_between == []


class TestLimits:
    @pytest.mark.asyncio
    async def test_deposit_cap(self, market: MarketView, ledger: PositionLedger) -> None:
        _set_reserve_config(market, "ReserveUSDC", deposit_limit=1)

        with pytest.raises(LimitExceededError, match="Deposit limit"):
            await Action.build_deposit_txns(market, 1, _usdc_mint(market), ledger.owner, ledger)

    @pytest.mark.asyncio
    async def test_borrow_cap(self, market: MarketView, ledger: PositionLedger) -> None:
        _set_reserve_config(market, "ReserveUSDC", borrow_limit=1)

        with pytest.raises(LimitExceededError, match="Borrow limit"):
            await Action.build_borrow_txns(market, 1, _usdc_mint(market), ledger.owner, ledger)

    @pytest.mark.asyncio
    async def test_caps_do_not_block_outflows(self, market: MarketView, ledger: PositionLedger) -> None:
        _set_reserve_config(market, "ReserveSOL", deposit_limit=1, borrow_limit=1)

        action = await Action.build_withdraw_txns(market, 10**9, WRAPPED_SOL_MINT, ledger.owner, ledger)

        assert action.lending_labels == ["withdrawObligationCollateralAndRedeemReserveCollateral"]

    @pytest.mark.asyncio
    async def test_too_many_deposits(self, market: MarketView, reserve_factory) -> None:
        for i in range(9):
            record: ReserveRecord = reserve_factory(f"X{i}", f"MintX{i}", 6, available=10**9, borrowed=0)
            market.reserves[f"ReserveX{i}"] = ReserveView(
                f"ReserveX{i}", record, TokenOraclePrice(f"MintX{i}", Decimal(1))
            )
        record = ObligationRecord(
            tag=0,
            lending_market=market.address,
            owner="Whale",
            deposits=tuple(ObligationCollateral(f"ReserveX{i}", 10**6) for i in range(8)),
        )
        whale = PositionLedger(market, "WhaleObligation", record)

        with pytest.raises(LimitExceededError, match="deposits"):
            await Action.build_deposit_txns(market, 10**6, "MintX8", "Whale", whale)

    @pytest.mark.asyncio
    async def test_borrow_outside_elevation_group(self, market: MarketView, ledger: PositionLedger) -> None:
        grouped = PositionLedger(market, ledger.address, replace(ledger.record, elevation_group=1))
        jito = market.require_reserve("ReserveJITO").liquidity_mint

        with pytest.raises(TierMismatchError) as exc_info:
            await Action.build_borrow_txns(market, 10**9, jito, ledger.owner, grouped)
        assert exc_info.value.reserve == "ReserveJITO"
        assert exc_info.value.elevation_group == 1

    @pytest.mark.asyncio
    async def test_deposit_and_borrow_outside_elevation_group(
        self, market: MarketView, ledger: PositionLedger
    ) -> None:
        grouped = PositionLedger(market, ledger.address, replace(ledger.record, elevation_group=1))
        jito = market.require_reserve("ReserveJITO").liquidity_mint

        with pytest.raises(TierMismatchError, match="ReserveJITO"):
            await Action.build_deposit_and_borrow_txns(
                market, 10**6, _usdc_mint(market), 10**9, jito, ledger.owner, grouped
            )

    @pytest.mark.asyncio
    async def test_borrow_inside_elevation_group(self, market: MarketView, ledger: PositionLedger) -> None:
        grouped = PositionLedger(market, ledger.address, replace(ledger.record, elevation_group=1))

        action = await Action.build_borrow_txns(market, 10**9, WRAPPED_SOL_MINT, ledger.owner, grouped)

        assert action.lending_labels == ["borrowObligationLiquidity"]


class TestAmounts:
    @pytest.mark.asyncio
    async def test_max_repay_needs_an_obligation(self, market: MarketView) -> None:
        with pytest.raises(NotFoundError):
            await Action.build_repay_txns(
                market, U64_MAX, _usdc_mint(market), "Stranger", ObligationDescriptor.vanilla(), 1_000
            )

    @pytest.mark.asyncio
    async def test_max_withdraw_needs_an_obligation(self, market: MarketView) -> None:
        with pytest.raises(NotFoundError):
            await Action.build_withdraw_txns(
                market, U64_MAX, _usdc_mint(market), "Stranger", ObligationDescriptor.vanilla()
            )

    @pytest.mark.asyncio
    async def test_negative_amount(self, market: MarketView, ledger: PositionLedger) -> None:
        with pytest.raises(InvalidStateError):
            await Action.build_deposit_txns(market, -5, _usdc_mint(market), ledger.owner, ledger)

    @pytest.mark.asyncio
    async def test_unknown_mint(self, market: MarketView, ledger: PositionLedger) -> None:
        with pytest.raises(NotFoundError):
            await Action.build_deposit_txns(market, 1, "UnknownMint", ledger.owner, ledger)


class TestBorrowAndRepay:
    @pytest.mark.asyncio
    async def test_borrow_creates_liquidity_ata_in_setup(self, market: MarketView, ledger: PositionLedger) -> None:
        action = await Action.build_borrow_txns(market, 50 * 10**6, _usdc_mint(market), ledger.owner, ledger)

        assert action.setup_labels == [
            f"CreateLiquidityUserAta[{ledger.owner}]",
            BUDGET,
            "RefreshReserve[ReserveSOL]",
            "RefreshReserve[ReserveUSDC]",
            f"RefreshObligation[{ledger.address}]",
        ]
        assert action.lending_labels == ["borrowObligationLiquidity"]
        assert action.pre_txn_labels == []

    @pytest.mark.asyncio
    async def test_repay_label_names_reserve_and_obligation(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))

        action = await Action.build_repay_txns(market, 100 * 10**6, usdc, ledger.owner, ledger, 1_000)

        assert action.lending_labels == [
            f"repayObligationLiquidity(reserve=ReserveUSDC)(obligation={ledger.address})"
        ]

    @pytest.mark.asyncio
    async def test_repay_by_third_party_payer(self, market: MarketView, ledger: PositionLedger) -> None:
        usdc = _usdc_mint(market)

        action = await Action.build_repay_txns(
            market, 100 * 10**6, usdc, ledger.owner, ledger, 1_000, payer="Helper"
        )

        repay = action.lending[0]
        assert repay.accounts[0].address == "Helper"
        assert action.user_token_account == _ata(market, "Helper", usdc)


class TestTwoReserveActions:
    @pytest.mark.asyncio
    async def test_deposit_and_borrow_requests_elevation(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        chain.add_token_account(_ata(market, ledger.owner, WRAPPED_SOL_MINT))
        obl = ledger.address

        action = await Action.build_deposit_and_borrow_txns(
            market, 1_000 * 10**6, usdc, 10**9, WRAPPED_SOL_MINT, ledger.owner, ledger,
            request_elevation_group=True,
        )

        assert action.lending_labels == [
            "depositReserveLiquidityAndObligationCollateral",
            "borrowObligationLiquidity",
        ]
        assert action.in_between_labels == [
            "RefreshReserve[ReserveUSDC]",
            "RefreshReserve[ReserveSOL]",
            f"RefreshObligation[{obl}]",
            f"RequestElevation[{obl}], elevation_group:1",
            "RefreshReserve[ReserveUSDC]",
            "RefreshReserve[ReserveSOL]",
            f"RefreshObligation[{obl}]",
        ]
        assert action.preloaded_deposit_reserves == ["ReserveUSDC"]
        refresh = action.in_between[2]
        assert [meta.address for meta in refresh.accounts[2:]] == ["ReserveSOL", "ReserveUSDC", "ReserveUSDC"]

    @pytest.mark.asyncio
    async def test_deposit_and_borrow_without_elevation(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        chain.add_token_account(_ata(market, ledger.owner, WRAPPED_SOL_MINT))

        action = await Action.build_deposit_and_borrow_txns(
            market, 1_000 * 10**6, usdc, 10**9, WRAPPED_SOL_MINT, ledger.owner, ledger
        )

        assert not any(label.startswith("RequestElevation") for label in action.in_between_labels)

    @pytest.mark.asyncio
    async def test_borrowed_wsol_account_only_gets_rent(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        account = _ata(market, ledger.owner, WRAPPED_SOL_MINT)

        action = await Action.build_deposit_and_borrow_txns(
            market, 1_000 * 10**6, usdc, 10**9, WRAPPED_SOL_MINT, ledger.owner, ledger
        )

        assert action.setup_labels[0] == f"TransferLamportsToUserAtaSOL[{account}]"
        assert action.setup[0].args["lamports"] == RENT
        assert f"CloseUserAtaSOL[{account}]" in action.cleanup_labels

    @pytest.mark.asyncio
    async def test_full_repay_and_withdraw(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        chain.add_token_account(_ata(market, ledger.owner, WRAPPED_SOL_MINT))
        obl = ledger.address
        farm_refresh = f"RefreshFarmForObligation[Collateral, res=ReserveSOL, obl={obl}]"

        action = await Action.build_repay_and_withdraw_txns(
            market, 400 * 10**6, usdc, 10 * 10**9, WRAPPED_SOL_MINT, ledger.owner, 1_000, ledger
        )

        assert action.lending_labels == [
            f"repayObligationLiquidity(reserve=ReserveUSDC)(obligation={obl})",
            "withdrawObligationCollateralAndRedeemReserveCollateral",
        ]
        assert f"InitObligationForFarm[ReserveSOL, {obl}]" in action.setup_labels
        assert action.preloaded_borrow_reserves == ["ReserveUSDC"]
        assert action.in_between_labels == [
            "RefreshReserve[ReserveUSDC]",
            "RefreshReserve[ReserveSOL]",
            f"RefreshObligation[{obl}]",
            farm_refresh,
        ]
        refresh = action.in_between[2]
        assert [meta.address for meta in refresh.accounts[2:]] == ["ReserveSOL"]
        assert action.cleanup_labels == [farm_refresh]

    @pytest.mark.asyncio
    async def test_partial_repay_keeps_borrow_in_refresh(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        chain.add_token_account(_ata(market, ledger.owner, WRAPPED_SOL_MINT))

        action = await Action.build_repay_and_withdraw_txns(
            market, 100 * 10**6, usdc, 10**9, WRAPPED_SOL_MINT, ledger.owner, 1_000, ledger
        )

        assert action.preloaded_borrow_reserves == []
        refresh = action.in_between[2]
        assert [meta.address for meta in refresh.accounts[2:]] == ["ReserveSOL", "ReserveUSDC"]

    @pytest.mark.asyncio
    async def test_repay_and_withdraw_without_borrow(
        self, market: MarketView, ledger: PositionLedger, chain
    ) -> None:
        chain.add_token_account(_ata(market, ledger.owner, WRAPPED_SOL_MINT))
        jito = market.require_reserve("ReserveJITO").liquidity_mint
        chain.add_token_account(_ata(market, ledger.owner, jito))

        with pytest.raises(NotFoundError):
            await Action.build_repay_and_withdraw_txns(
                market, 10**9, jito, 10**9, WRAPPED_SOL_MINT, ledger.owner, 1_000, ledger
            )

    @pytest.mark.asyncio
    async def test_liquidate(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        sol_reserve = market.require_reserve("ReserveSOL")
        token = _ata(market, "Liquidator", WRAPPED_SOL_MINT)
        chain.add_token_account(token)
        chain.add_token_account(_ata(market, "Liquidator", sol_reserve.collateral_mint))
        obl = ledger.address

        action = await Action.build_liquidate_txns(
            market, 100 * 10**6, 0, _usdc_mint(market), WRAPPED_SOL_MINT, "Liquidator", ledger.owner, ledger,
            include_user_metadata=False,
        )

        assert action.setup_labels == [
            f"TransferLamportsToUserAtaSOL[{token}]",
            BUDGET,
            f"InitObligationForFarm[ReserveSOL, {obl}]",
            "RefreshReserve[ReserveSOL]",
            "RefreshReserve[ReserveUSDC]",
            f"RefreshObligation[{obl}]",
            f"RefreshFarmForObligation[Collateral, res=ReserveSOL, obl={obl}]",
        ]
        assert action.setup[0].args["lamports"] == 0
        assert action.lending_labels == ["liquidateObligationAndRedeemReserveCollateral"]
        assert action.cleanup_labels == [
            f"RefreshFarmForObligation[Collateral, res=ReserveSOL, obl={obl}]",
            f"CloseUserAtaSOL[{token}]",
        ]
        liquidate = action.lending[0]
        assert liquidate.accounts[0].address == "Liquidator"
        assert liquidate.args["liquidity_amount"] == 100 * 10**6


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_refresh_obligation(self, market: MarketView, ledger: PositionLedger) -> None:
        obl = ledger.address

        action = await Action.build_refresh_obligation_txns(market, "Crank", ledger)

        assert action.setup_labels == [
            BUDGET,
            "RefreshReserve[ReserveSOL]",
            "RefreshReserve[ReserveUSDC]",
            f"RefreshFarmForObligation[Collateral, res=ReserveSOL, obl={obl}]",
            f"RefreshObligation[{obl}]",
        ]
        assert action.lending_labels == []
        txns = action.transactions()
        assert [i.label for i in txns.lending] == action.setup_labels

    @pytest.mark.asyncio
    async def test_refresh_empty_obligation(self, market: MarketView) -> None:
        empty = PositionLedger(
            market, "EmptyObligation", ObligationRecord(tag=0, lending_market=market.address, owner="Nobody")
        )

        with pytest.raises(InvalidStateError):
            await Action.build_refresh_obligation_txns(market, "Crank", empty)

    @pytest.mark.asyncio
    async def test_withdraw_referrer_fees(self, market: MarketView) -> None:
        usdc = _usdc_mint(market)
        ata = _ata(market, "Referrer1", usdc)

        action = await Action.build_withdraw_referrer_fee_txns("Referrer1", usdc, market)

        assert action.pre_txn_labels == [f"createAtasIxs[{ata}]"]
        assert action.setup_labels == ["RefreshReserve[ReserveUSDC]"]
        assert action.lending_labels == ["WithdrawReferrerFeesIx[Referrer1]"]

    @pytest.mark.asyncio
    async def test_withdraw_referrer_fees_with_existing_ata(self, market: MarketView, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, "Referrer1", usdc))

        action = await Action.build_withdraw_referrer_fee_txns("Referrer1", usdc, market)

        assert action.pre_txn_labels == []


class TestOutput:
    @pytest.mark.asyncio
    async def test_transactions_zip_groups(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        action = await Action.build_deposit_txns(market, 1, usdc, ledger.owner, ledger)

        txns = action.transactions()

        assert txns.pre_lending is None
        assert txns.post_lending is None
        assert [i.label for i in txns.lending] == action.setup_labels + action.lending_labels
        assert action.state == ActionState.FINALIZED

    @pytest.mark.asyncio
    async def test_two_leg_ordering(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        chain.add_token_account(_ata(market, ledger.owner, WRAPPED_SOL_MINT))
        action = await Action.build_repay_and_withdraw_txns(
            market, 400 * 10**6, usdc, 10**9, WRAPPED_SOL_MINT, ledger.owner, 1_000, ledger
        )

        labels = [i.label for i in action.transactions().lending]

        expected = (
            action.setup_labels
            + action.lending_labels[:1]
            + action.in_between_labels
            + action.lending_labels[1:]
            + action.cleanup_labels
        )
        assert labels == expected

    @pytest.mark.asyncio
    async def test_finalized_action_is_closed(self, market: MarketView, ledger: PositionLedger, chain) -> None:
        usdc = _usdc_mint(market)
        chain.add_token_account(_ata(market, ledger.owner, usdc))
        action = await Action.build_deposit_txns(market, 1, usdc, ledger.owner, ledger)
        action.transactions()

        with pytest.raises(InvalidStateError):
            action.add_compute_budget_ix(1)

    def test_unsequenced_action_has_no_transactions(self, market: MarketView, ledger: PositionLedger) -> None:
        reserve = market.require_reserve("ReserveUSDC")
        action = Action(
            market,
            ActionKind.DEPOSIT,
            owner=ledger.owner,
            obligation=PendingObligation(ObligationDescriptor.vanilla(), ledger.owner),
            reserve=reserve,
            mint=reserve.liquidity_mint,
            amount=1,
            user_token_account="Ata",
            user_collateral_account="CollAta",
        )

        with pytest.raises(InvalidStateError):
            action.transactions()
        with pytest.raises(InvalidStateError):
            action.add_compute_budget_ix(1)

    @pytest.mark.asyncio
    async def test_send_transactions(self, market: MarketView, ledger: PositionLedger, submitter) -> None:
        action = await Action.build_deposit_txns(market, 1, _usdc_mint(market), ledger.owner, ledger)

        signature = await action.send_transactions(submitter)

        assert signature == "sig2"
        assert len(submitter.submissions) == 2
        pre, payer = submitter.submissions[0]
        assert payer == ledger.owner
        assert [i.label for i in pre] == action.pre_txn_labels
        lending, _ = submitter.submissions[1]
        assert lending[-1].label == "depositReserveLiquidityAndObligationCollateral"
