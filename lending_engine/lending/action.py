"""Action sequencer: turns one lending request into ordered instruction groups.

An ``Action`` is built by one of the ``build_*_txns`` classmethods. Building
resolves the obligation and reserves (state ``RESOLVED``) and then appends
instructions to six named groups (state ``SEQUENCED``):

    pre_txn        own transaction before the lending one
    setup          ATAs, metadata, obligation bootstrap, refreshes
    lending        one instruction, or two for the composite kinds
    in_between     between the two legs of a composite
    cleanup        WSOL unwrap and farm refreshes after the lending ixs
    post_txn       own transaction after the lending one

``transactions()`` zips the groups into at most three instruction lists
(state ``FINALIZED``).
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Iterable, Sequence

from ..constants import (
    BORROWS_LIMIT,
    DEFAULT_COMPUTE_BUDGET,
    DEPOSITS_LIMIT,
    NULL_PUBKEY,
    POSITION_LIMIT,
    SOL_PADDING_FOR_INTEREST,
    TOKEN_ACCOUNT_SIZE,
    U64_MAX,
    WRAPPED_SOL_MINT,
    is_null_pubkey,
)
from ..errors import InvalidStateError, LimitExceededError, NotFoundError, TierMismatchError
from ..fixed_point import FixedPoint
from ..interfaces import ChainClient, Submitter
from ..models import ActionKind, Instruction
from . import instructions as ix
from .market import MarketView
from .obligation import PositionLedger
from .obligation_type import (
    ObligationDescriptor,
    ObligationRef,
    PendingObligation,
    ResolvedObligation,
)
from .reserve import ReserveView

logger = logging.getLogger(__name__)

AmountLike = int | str


class FarmKind(IntEnum):
    COLLATERAL = 0
    DEBT = 1

    @property
    def label(self) -> str:
        return self.name.title()


class ActionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVED = "resolved"
    SEQUENCED = "sequenced"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class ActionTransactions:
    """Instruction lists to submit in order; ``None`` when a group is empty."""

    pre_lending: tuple[Instruction, ...] | None
    lending: tuple[Instruction, ...]
    post_lending: tuple[Instruction, ...] | None


# Kinds that go through the obligation refresh machinery.
_OBLIGATION_KINDS = (
    ActionKind.DEPOSIT_COLLATERAL,
    ActionKind.DEPOSIT,
    ActionKind.WITHDRAW,
    ActionKind.BORROW,
    ActionKind.LIQUIDATE,
    ActionKind.REPAY,
    ActionKind.DEPOSIT_AND_BORROW,
    ActionKind.REPAY_AND_WITHDRAW,
    ActionKind.REFRESH_OBLIGATION,
)
_COLLATERAL_SIDE = (
    ActionKind.DEPOSIT_AND_BORROW,
    ActionKind.DEPOSIT_COLLATERAL,
    ActionKind.WITHDRAW,
    ActionKind.DEPOSIT,
)
_DEBT_SIDE = (ActionKind.REPAY_AND_WITHDRAW, ActionKind.BORROW, ActionKind.REPAY)
_DEPOSIT_CAP_KINDS = (
    ActionKind.DEPOSIT,
    ActionKind.MINT,
    ActionKind.DEPOSIT_COLLATERAL,
    ActionKind.DEPOSIT_AND_BORROW,
)

# Kinds that open or grow a position, so the reserve must belong to the obligation's elevation group.
_GROUP_CHECK_KINDS = (
    ActionKind.DEPOSIT,
    ActionKind.BORROW,
    ActionKind.DEPOSIT_COLLATERAL,
    ActionKind.DEPOSIT_AND_BORROW,
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _unique(addresses: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(addresses))


def obligation_refresh_pools(
    deposit_reserves: Sequence[str],
    borrow_reserves: Sequence[str],
    preloaded_deposits: Sequence[str] = (),
    preloaded_borrows: Sequence[str] = (),
    *,
    skip_borrows: bool = False,
) -> tuple[list[str], list[str]]:
    """Deposit and borrow reserves to pass to an obligation refresh.

    Preloaded deposits are reserves the obligation gains earlier in the same
    transaction. Preloaded borrows are debts a full repay clears before the
    refresh runs, so they drop out of the list.
    """
    deposits = list(deposit_reserves)
    for reserve in preloaded_deposits:
        if reserve not in deposits:
            deposits.append(reserve)
    if skip_borrows:
        return deposits, []
    borrows = [reserve for reserve in borrow_reserves if reserve not in preloaded_borrows]
    return deposits, borrows


def count_distinct_positions(
    kind: ActionKind,
    deposit_reserves: Sequence[str],
    borrow_reserves: Sequence[str],
    reserve: str,
    outflow_reserve: str | None = None,
) -> tuple[int, int]:
    """Deposit and borrow slot counts once the action has executed."""
    deposits = set(deposit_reserves)
    borrows = set(borrow_reserves)
    if kind in (ActionKind.DEPOSIT, ActionKind.DEPOSIT_COLLATERAL, ActionKind.DEPOSIT_AND_BORROW):
        deposits.add(reserve)
    if kind == ActionKind.BORROW:
        borrows.add(reserve)
    if kind == ActionKind.DEPOSIT_AND_BORROW and outflow_reserve is not None:
        borrows.add(outflow_reserve)
    return len(deposits), len(borrows)


async def account_exists(client: ChainClient, address: str) -> bool:
    """Existence probe for create-if-missing decisions; failures count as missing."""
    try:
        return await client.get_account_info(address) is not None
    except Exception as e:
        logger.warning("Could not check account %s, assuming it is missing: %s", address, e)
        return False


def _to_amount(value: AmountLike) -> int:
    amount = int(value)
    if amount < 0 or amount > U64_MAX:
        raise InvalidStateError(f"Amount {value} is outside the u64 range")
    return amount


# ---------------------------------------------------------------------------
# Action
# ---------------------------------------------------------------------------


class Action:
    """Instruction groups for one lending request against one obligation."""

    def __init__(
        self,
        market: MarketView,
        kind: ActionKind,
        *,
        owner: str,
        obligation: ObligationRef,
        reserve: ReserveView,
        mint: str,
        amount: int,
        user_token_account: str,
        user_collateral_account: str,
        positions: int = 0,
        deposit_reserves: Sequence[str] = (),
        borrow_reserves: Sequence[str] = (),
        current_slot: int = 0,
        payer: str | None = None,
        host_ata: str | None = None,
        secondary_mint: str | None = None,
        additional_token_account: str | None = None,
        outflow_reserve: ReserveView | None = None,
        outflow_amount: int | None = None,
        referrer: str = NULL_PUBKEY,
        user_metadata_exists: bool = True,
    ) -> None:
        self.market = market
        self.kind = kind
        self.owner = owner
        self.payer = payer or owner
        self.obligation = obligation
        self.reserve = reserve
        self.mint = mint
        self.amount = amount
        self.user_token_account = user_token_account
        self.user_collateral_account = user_collateral_account
        self.positions = positions
        self.deposit_reserves = list(deposit_reserves)
        self.borrow_reserves = list(borrow_reserves)
        self.current_slot = current_slot
        self.host_ata = host_ata
        self.secondary_mint = secondary_mint
        self.additional_token_account = additional_token_account
        self.outflow_reserve = outflow_reserve
        self.outflow_amount = outflow_amount
        self.referrer = referrer
        self.user_metadata_exists = user_metadata_exists

        self.pre_txn: list[Instruction] = []
        self.setup: list[Instruction] = []
        self.lending: list[Instruction] = []
        self.in_between: list[Instruction] = []
        self.cleanup: list[Instruction] = []
        self.post_txn: list[Instruction] = []
        self.refresh_farms_cleanup: list[Instruction] = []

        self.preloaded_deposit_reserves: list[str] = []
        self.preloaded_borrow_reserves: list[str] = []

        self.state = ActionState.UNINITIALIZED

    def __repr__(self) -> str:
        return f"Action({self.kind.value}, obligation={self.obligation_address}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def ledger(self) -> PositionLedger | None:
        if isinstance(self.obligation, ResolvedObligation):
            return self.obligation.ledger
        return None

    @property
    def obligation_address(self) -> str:
        return self.obligation.resolve_address(
            self.market.address, self.market.deriver, self.market.program_id
        )

    @staticmethod
    def _labels(group: Sequence[Instruction]) -> list[str]:
        return [instruction.label for instruction in group]

    @property
    def setup_labels(self) -> list[str]:
        return self._labels(self.setup)

    @property
    def lending_labels(self) -> list[str]:
        return self._labels(self.lending)

    @property
    def in_between_labels(self) -> list[str]:
        return self._labels(self.in_between)

    @property
    def cleanup_labels(self) -> list[str]:
        return self._labels(self.cleanup)

    @property
    def pre_txn_labels(self) -> list[str]:
        return self._labels(self.pre_txn)

    @property
    def post_txn_labels(self) -> list[str]:
        return self._labels(self.post_txn)

    def _advance(self, target: ActionState) -> None:
        order = list(ActionState)
        if order.index(target) < order.index(self.state):
            raise InvalidStateError(
                f"Action cannot move from {self.state.value} back to {target.value}"
            )
        self.state = target

    def _require_open(self) -> None:
        if self.state in (ActionState.UNINITIALIZED, ActionState.FINALIZED):
            raise InvalidStateError(f"Cannot add instructions to an action in state {self.state.value}")

    def _labelled(self, instruction: Instruction, label: str) -> Instruction:
        self._require_open()
        logger.debug("%s: %s", self.kind.value, label)
        return dataclasses.replace(instruction, label=label)

    def _require_outflow(self) -> ReserveView:
        if self.outflow_reserve is None:
            raise InvalidStateError(f"{self.kind.value} requires an outflow reserve")
        return self.outflow_reserve

    def _require_additional_account(self) -> str:
        if self.additional_token_account is None:
            raise InvalidStateError(f"{self.kind.value} requires a second user token account")
        return self.additional_token_account

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @classmethod
    async def initialize(
        cls,
        kind: ActionKind,
        amount: AmountLike,
        mint: str,
        owner: str,
        market: MarketView,
        obligation: PositionLedger | ObligationDescriptor,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
        host_ata: str | None = None,
        payer: str | None = None,
    ) -> Action:
        """Resolve a single-reserve action: reserve, obligation, ATAs and referrer."""
        reserve = market.require_reserve_by_mint(mint)
        user_token_account = ix.associated_token_address(market.deriver, payer or owner, reserve.liquidity_mint)
        user_collateral_account = ix.associated_token_address(
            market.deriver, payer or owner, reserve.collateral_mint
        )
        amount_value = _to_amount(amount)

        ref, deposit_reserves, borrow_reserves, positions = await cls._load_obligation(
            kind, market, owner, reserve, obligation
        )
        cls._check_max_amount(kind, amount_value, ref, owner)

        _, user_metadata = await market.get_user_metadata(owner)
        if user_metadata is not None:
            referrer = user_metadata.referrer
        if isinstance(ref, ResolvedObligation):
            referrer = ref.ledger.referrer

        action = cls(
            market,
            kind,
            owner=owner,
            obligation=ref,
            reserve=reserve,
            mint=mint,
            amount=amount_value,
            user_token_account=user_token_account,
            user_collateral_account=user_collateral_account,
            positions=positions,
            deposit_reserves=deposit_reserves,
            borrow_reserves=borrow_reserves,
            current_slot=current_slot,
            payer=payer,
            host_ata=host_ata,
            referrer=referrer,
            user_metadata_exists=user_metadata is not None,
        )
        action._advance(ActionState.RESOLVED)
        return action

    @classmethod
    async def initialize_multi_token_action(
        cls,
        market: MarketView,
        kind: ActionKind,
        inflow_amount: AmountLike,
        inflow_mint: str,
        outflow_mint: str,
        payer: str,
        obligation_owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        outflow_amount: AmountLike | None = None,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        """Resolve a two-reserve action: liquidation or one of the composites."""
        inflow_reserve = market.require_reserve_by_mint(inflow_mint)
        outflow_reserve = market.require_reserve_by_mint(outflow_mint)
        deriver = market.deriver

        outflow_token = ix.associated_token_address(deriver, payer, outflow_reserve.liquidity_mint)
        outflow_collateral = ix.associated_token_address(deriver, payer, outflow_reserve.collateral_mint)
        inflow_token = ix.associated_token_address(deriver, payer, inflow_reserve.liquidity_mint)
        inflow_collateral = ix.associated_token_address(deriver, payer, inflow_reserve.collateral_mint)

        ref, deposit_reserves, borrow_reserves, positions = await cls._load_obligation(
            kind, market, obligation_owner, inflow_reserve, obligation, outflow_reserve
        )
        inflow_value = _to_amount(inflow_amount)
        outflow_value = None if outflow_amount is None else _to_amount(outflow_amount)
        cls._check_max_amount(kind, inflow_value, ref, obligation_owner)
        if kind == ActionKind.REPAY_AND_WITHDRAW and outflow_value == U64_MAX and not ref.exists:
            raise NotFoundError("Obligation", obligation_owner, "cannot withdraw the maximum from a missing obligation")

        _, user_metadata = await market.get_user_metadata(payer)
        if user_metadata is not None:
            referrer = user_metadata.referrer
        if isinstance(ref, ResolvedObligation):
            referrer = ref.ledger.referrer

        if kind == ActionKind.LIQUIDATE:
            user_token_account, user_collateral_account = outflow_token, outflow_collateral
            additional_token_account = inflow_token
            primary_mint, secondary_mint = outflow_mint, inflow_mint
        elif kind == ActionKind.DEPOSIT_AND_BORROW:
            user_token_account, user_collateral_account = inflow_token, inflow_collateral
            additional_token_account = outflow_token
            primary_mint, secondary_mint = inflow_mint, outflow_mint
        elif kind == ActionKind.REPAY_AND_WITHDRAW:
            user_token_account, user_collateral_account = inflow_token, outflow_collateral
            additional_token_account = outflow_token
            primary_mint, secondary_mint = inflow_mint, outflow_mint
        else:
            raise InvalidStateError(f"{kind.value} is not a two-reserve action")

        action = cls(
            market,
            kind,
            owner=payer,
            obligation=ref,
            reserve=inflow_reserve,
            mint=primary_mint,
            amount=inflow_value,
            user_token_account=user_token_account,
            user_collateral_account=user_collateral_account,
            positions=positions,
            deposit_reserves=deposit_reserves,
            borrow_reserves=borrow_reserves,
            current_slot=current_slot,
            secondary_mint=secondary_mint,
            additional_token_account=additional_token_account,
            outflow_reserve=outflow_reserve,
            outflow_amount=outflow_value,
            referrer=referrer,
            user_metadata_exists=user_metadata is not None,
        )
        action._advance(ActionState.RESOLVED)
        return action

    @staticmethod
    async def _load_obligation(
        kind: ActionKind,
        market: MarketView,
        owner: str,
        reserve: ReserveView,
        obligation: PositionLedger | ObligationDescriptor,
        outflow_reserve: ReserveView | None = None,
    ) -> tuple[ObligationRef, list[str], list[str], int]:
        if kind.is_two_leg and outflow_reserve is None:
            raise InvalidStateError(f"Outflow reserve has not been set for {kind.value}")

        ref: ObligationRef
        if isinstance(obligation, PositionLedger):
            ref = ResolvedObligation(obligation)
        else:
            address = market.obligation_address(owner, obligation)
            ledger = await PositionLedger.load(market, address)
            ref = ResolvedObligation(ledger) if ledger is not None else PendingObligation(obligation, owner)

        deposit_reserves: list[str] = []
        borrow_reserves: list[str] = []
        if isinstance(ref, ResolvedObligation):
            deposit_reserves = ref.ledger.deposit_reserves
            borrow_reserves = ref.ledger.borrow_reserves
            group = ref.ledger.elevation_group
            if group != 0 and kind in _GROUP_CHECK_KINDS:
                operation = "borrow from" if kind == ActionKind.BORROW else "deposit into"
                if group not in reserve.elevation_groups:
                    raise TierMismatchError(reserve.address, group, operation)
                if outflow_reserve is not None and group not in outflow_reserve.elevation_groups:
                    raise TierMismatchError(outflow_reserve.address, group, "borrow from")

        outflow_address = outflow_reserve.address if outflow_reserve is not None else None
        deposits, borrows = count_distinct_positions(
            kind, deposit_reserves, borrow_reserves, reserve.address, outflow_address
        )
        positions = deposits + borrows
        if positions > POSITION_LIMIT:
            raise LimitExceededError(f"Obligation already has max number of positions: {POSITION_LIMIT}")
        if deposits > DEPOSITS_LIMIT:
            raise LimitExceededError(f"Obligation already has max number of deposits: {DEPOSITS_LIMIT}")
        if borrows > BORROWS_LIMIT:
            raise LimitExceededError(f"Obligation already has max number of borrows: {BORROWS_LIMIT}")

        if kind in _DEPOSIT_CAP_KINDS and reserve.deposit_limit_crossed():
            raise LimitExceededError(f"Deposit limit of reserve {reserve.address} is crossed")
        if kind == ActionKind.BORROW and reserve.borrow_limit_crossed():
            raise LimitExceededError(f"Borrow limit of reserve {reserve.address} is crossed")
        if (
            kind == ActionKind.DEPOSIT_AND_BORROW
            and outflow_reserve is not None
            and outflow_reserve.borrow_limit_crossed()
        ):
            raise LimitExceededError(f"Borrow limit of reserve {outflow_reserve.address} is crossed")

        return ref, deposit_reserves, borrow_reserves, positions

    @staticmethod
    def _check_max_amount(kind: ActionKind, amount: int, ref: ObligationRef, owner: str) -> None:
        if amount != U64_MAX or ref.exists:
            return
        if kind in (ActionKind.REPAY, ActionKind.WITHDRAW, ActionKind.REPAY_AND_WITHDRAW):
            raise NotFoundError(
                "Obligation",
                owner,
                f"cannot resolve the maximum {kind.value} amount without an obligation",
            )

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    @classmethod
    async def build_refresh_obligation_txns(
        cls,
        market: MarketView,
        payer: str,
        obligation: PositionLedger,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        current_slot: int = 0,
    ) -> Action:
        reserves = obligation.deposit_reserves + obligation.borrow_reserves
        if not reserves:
            raise InvalidStateError(f"Obligation {obligation.address} has no positions to refresh")
        first_reserve = market.require_reserve(reserves[0])
        action = await cls.initialize(
            ActionKind.REFRESH_OBLIGATION,
            0,
            first_reserve.liquidity_mint,
            obligation.owner,
            market,
            obligation,
            NULL_PUBKEY,
            current_slot,
        )
        if extra_compute_budget > 0:
            action.add_compute_budget_ix(extra_compute_budget)
        action.add_refresh_obligation(payer)
        action._advance(ActionState.SEQUENCED)
        return action

    @classmethod
    async def build_deposit_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize(
            ActionKind.DEPOSIT, amount, mint, owner, market, obligation, referrer, current_slot
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_deposit_ix,
        )

    @classmethod
    async def build_borrow_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
        host_ata: str | None = None,
    ) -> Action:
        action = await cls.initialize(
            ActionKind.BORROW, amount, mint, owner, market, obligation, referrer, current_slot, host_ata
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_borrow_ix,
        )

    @classmethod
    async def build_deposit_reserve_liquidity_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize(
            ActionKind.MINT, amount, mint, owner, market, obligation, referrer, current_slot
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_deposit_reserve_liquidity_ix,
        )

    @classmethod
    async def build_redeem_reserve_collateral_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize(
            ActionKind.REDEEM, amount, mint, owner, market, obligation, referrer, current_slot
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_redeem_reserve_collateral_ix,
        )

    @classmethod
    async def build_deposit_obligation_collateral_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize(
            ActionKind.DEPOSIT_COLLATERAL, amount, mint, owner, market, obligation, referrer, current_slot
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_deposit_obligation_collateral_ix,
        )

    @classmethod
    async def build_withdraw_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize(
            ActionKind.WITHDRAW, amount, mint, owner, market, obligation, referrer, current_slot
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_withdraw_ix,
        )

    @classmethod
    async def build_repay_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        mint: str,
        owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        current_slot: int,
        payer: str | None = None,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
    ) -> Action:
        """Repay ``amount`` of ``owner``'s debt; ``payer`` funds it when set."""
        action = await cls.initialize(
            ActionKind.REPAY, amount, mint, owner, market, obligation, referrer, current_slot, None, payer
        )
        return await action._sequence_single(
            extra_compute_budget, include_ata_ixns, request_elevation_group, include_user_metadata,
            action.add_repay_ix,
        )

    @classmethod
    async def build_liquidate_txns(
        cls,
        market: MarketView,
        amount: AmountLike,
        min_collateral_receive_amount: AmountLike,
        repay_mint: str,
        withdraw_mint: str,
        liquidator: str,
        obligation_owner: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        max_allowed_ltv_override_percent: int = 0,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize_multi_token_action(
            market,
            ActionKind.LIQUIDATE,
            amount,
            repay_mint,
            withdraw_mint,
            liquidator,
            obligation_owner,
            obligation,
            min_collateral_receive_amount,
            referrer,
            current_slot,
        )
        if extra_compute_budget > 0:
            action.add_compute_budget_ix(extra_compute_budget)
        await action.add_support_ixs(
            ActionKind.LIQUIDATE, include_ata_ixns, request_elevation_group, include_user_metadata, True
        )
        action.add_liquidate_ix(max_allowed_ltv_override_percent)
        action.add_refresh_farms_cleanup_to_cleanup()
        action._advance(ActionState.SEQUENCED)
        return action

    @classmethod
    async def build_deposit_and_borrow_txns(
        cls,
        market: MarketView,
        deposit_amount: AmountLike,
        deposit_mint: str,
        borrow_amount: AmountLike,
        borrow_mint: str,
        payer: str,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        referrer: str = NULL_PUBKEY,
        current_slot: int = 0,
    ) -> Action:
        action = await cls.initialize_multi_token_action(
            market,
            ActionKind.DEPOSIT_AND_BORROW,
            deposit_amount,
            deposit_mint,
            borrow_mint,
            payer,
            payer,
            obligation,
            borrow_amount,
            referrer,
            current_slot,
        )
        if extra_compute_budget > 0:
            action.add_compute_budget_ix(extra_compute_budget)
        await action.add_support_ixs(
            ActionKind.DEPOSIT,
            include_ata_ixns,
            request_elevation_group,
            include_user_metadata,
            True,
            two_token_action=True,
        )
        action.add_deposit_and_borrow_ix()
        await action.add_in_between_ixs(
            ActionKind.DEPOSIT_AND_BORROW, include_ata_ixns, request_elevation_group, False
        )
        action.add_refresh_farms_cleanup_to_cleanup()
        action._advance(ActionState.SEQUENCED)
        return action

    @classmethod
    async def build_repay_and_withdraw_txns(
        cls,
        market: MarketView,
        repay_amount: AmountLike,
        repay_mint: str,
        withdraw_amount: AmountLike,
        withdraw_mint: str,
        payer: str,
        current_slot: int,
        obligation: PositionLedger | ObligationDescriptor,
        extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET,
        include_ata_ixns: bool = True,
        request_elevation_group: bool = False,
        include_user_metadata: bool = True,
        is_closing_position: bool = False,
        referrer: str = NULL_PUBKEY,
    ) -> Action:
        action = await cls.initialize_multi_token_action(
            market,
            ActionKind.REPAY_AND_WITHDRAW,
            repay_amount,
            repay_mint,
            withdraw_mint,
            payer,
            payer,
            obligation,
            withdraw_amount,
            referrer,
            current_slot,
        )
        if extra_compute_budget > 0:
            action.add_compute_budget_ix(extra_compute_budget)
        await action.add_support_ixs(
            ActionKind.REPAY,
            include_ata_ixns,
            request_elevation_group,
            include_user_metadata,
            True,
            two_token_action=True,
        )
        action.add_repay_and_withdraw_ixs()
        await action.add_in_between_ixs(
            ActionKind.REPAY_AND_WITHDRAW,
            include_ata_ixns,
            request_elevation_group,
            False,
            is_closing_position,
        )
        action.add_refresh_farms_cleanup_to_cleanup()
        action._advance(ActionState.SEQUENCED)
        return action

    @classmethod
    async def build_withdraw_referrer_fee_txns(
        cls,
        owner: str,
        mint: str,
        market: MarketView,
        current_slot: int = 0,
    ) -> Action:
        """Claim ``owner``'s unclaimed referral fees for the reserve of ``mint``."""
        reserve = market.require_reserve_by_mint(mint)
        user_token_account = ix.associated_token_address(market.deriver, owner, reserve.liquidity_mint)
        action = cls(
            market,
            ActionKind.WITHDRAW_REFERRER_FEES,
            owner=owner,
            obligation=PendingObligation(ObligationDescriptor.vanilla(), owner),
            reserve=reserve,
            mint=mint,
            amount=0,
            user_token_account=user_token_account,
            user_collateral_account=NULL_PUBKEY,
            current_slot=current_slot,
        )
        action._advance(ActionState.RESOLVED)

        if not await account_exists(market.client, user_token_account):
            action.pre_txn.append(
                action._labelled(
                    ix.create_associated_token_account_idempotent(
                        payer=owner, associated_account=user_token_account, owner=owner, mint=reserve.liquidity_mint
                    ),
                    f"createAtasIxs[{user_token_account}]",
                )
            )
        action.add_refresh_reserve_ixs([reserve.address])
        action.add_withdraw_referrer_fees_ix()
        action._advance(ActionState.SEQUENCED)
        return action

    async def _sequence_single(
        self,
        extra_compute_budget: int,
        include_ata_ixns: bool,
        request_elevation_group: bool,
        include_user_metadata: bool,
        add_lending_ix: Callable[[], None],
    ) -> Action:
        if extra_compute_budget > 0:
            self.add_compute_budget_ix(extra_compute_budget)
        await self.add_support_ixs(
            self.kind, include_ata_ixns, request_elevation_group, include_user_metadata, True
        )
        add_lending_ix()
        self.add_refresh_farms_cleanup_to_cleanup()
        self._advance(ActionState.SEQUENCED)
        return self

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def transactions(self) -> ActionTransactions:
        """Zip the groups: setup, first leg, in-between, second leg, cleanup."""
        if self.state == ActionState.UNINITIALIZED or self.state == ActionState.RESOLVED:
            raise InvalidStateError(f"Action in state {self.state.value} has not been sequenced")
        if len(self.lending) == 2:
            lending = [*self.setup, self.lending[0], *self.in_between, self.lending[1], *self.cleanup]
        else:
            lending = [*self.setup, *self.lending, *self.cleanup]
        self._advance(ActionState.FINALIZED)
        return ActionTransactions(
            pre_lending=tuple(self.pre_txn) or None,
            lending=tuple(lending),
            post_lending=tuple(self.post_txn) or None,
        )

    async def send_transactions(self, submitter: Submitter) -> str:
        """Submit pre, lending and post transactions in order; return the lending signature."""
        txns = self.transactions()
        if txns.pre_lending:
            await submitter.submit(txns.pre_lending, self.owner)
        signature = await submitter.submit(txns.lending, self.owner)
        if txns.post_lending:
            await submitter.submit(txns.post_lending, self.owner)
        logger.info("Submitted %s for obligation %s: %s", self.kind.value, self.obligation_address, signature)
        return signature

    # ------------------------------------------------------------------
    # Lending instructions
    # ------------------------------------------------------------------

    def _collateral_amount(self, reserve: ReserveView, amount: int) -> int:
        if amount == U64_MAX:
            return amount
        return (FixedPoint.from_int(amount) * reserve.exchange_rate()).ceil()

    def _deposit_ix(self) -> Instruction:
        market = self.market
        return ix.deposit_reserve_liquidity_and_obligation_collateral(
            owner=self.owner,
            obligation=self.obligation_address,
            lending_market=market.address,
            lending_market_authority=market.lending_market_authority(),
            reserve=self.reserve.address,
            reserve_liquidity_supply=self.reserve.record.liquidity.supply_vault,
            reserve_collateral_mint=self.reserve.collateral_mint,
            reserve_destination_deposit_collateral=self.reserve.record.collateral.supply_vault,
            user_source_liquidity=self.user_token_account,
            liquidity_amount=self.amount,
            program_id=market.program_id,
        )

    def _borrow_ix(self, reserve: ReserveView, amount: int, destination: str) -> Instruction:
        market = self.market
        return ix.borrow_obligation_liquidity(
            owner=self.owner,
            obligation=self.obligation_address,
            lending_market=market.address,
            lending_market_authority=market.lending_market_authority(),
            borrow_reserve=reserve.address,
            reserve_source_liquidity=reserve.record.liquidity.supply_vault,
            user_destination_liquidity=destination,
            borrow_reserve_liquidity_fee_receiver=reserve.record.liquidity.fee_vault,
            referrer_token_state=market.referrer_token_state_address(self.referrer, reserve.address),
            liquidity_amount=amount,
            program_id=market.program_id,
        )

    def _repay_ix(self, owner: str) -> Instruction:
        market = self.market
        return ix.repay_obligation_liquidity(
            owner=owner,
            obligation=self.obligation_address,
            lending_market=market.address,
            repay_reserve=self.reserve.address,
            user_source_liquidity=self.user_token_account,
            reserve_destination_liquidity=self.reserve.record.liquidity.supply_vault,
            liquidity_amount=self.amount,
            program_id=market.program_id,
        )

    def _withdraw_ix(self, reserve: ReserveView, amount: int, destination: str) -> Instruction:
        market = self.market
        return ix.withdraw_obligation_collateral_and_redeem_reserve_collateral(
            owner=self.owner,
            obligation=self.obligation_address,
            lending_market=market.address,
            lending_market_authority=market.lending_market_authority(),
            withdraw_reserve=reserve.address,
            reserve_collateral_mint=reserve.collateral_mint,
            reserve_liquidity_supply=reserve.record.liquidity.supply_vault,
            reserve_source_collateral=reserve.record.collateral.supply_vault,
            user_destination_liquidity=destination,
            collateral_amount=self._collateral_amount(reserve, amount),
            program_id=market.program_id,
        )

    def add_deposit_ix(self) -> None:
        self.lending.append(
            self._labelled(self._deposit_ix(), "depositReserveLiquidityAndObligationCollateral")
        )

    def add_deposit_reserve_liquidity_ix(self) -> None:
        market = self.market
        instruction = ix.deposit_reserve_liquidity(
            owner=self.owner,
            lending_market=market.address,
            lending_market_authority=market.lending_market_authority(),
            reserve=self.reserve.address,
            reserve_liquidity_supply=self.reserve.record.liquidity.supply_vault,
            reserve_collateral_mint=self.reserve.collateral_mint,
            user_source_liquidity=self.user_token_account,
            user_destination_collateral=self.user_collateral_account,
            liquidity_amount=self.amount,
            program_id=market.program_id,
        )
        self.lending.append(self._labelled(instruction, "depositReserveLiquidity"))

    def add_redeem_reserve_collateral_ix(self) -> None:
        market = self.market
        instruction = ix.redeem_reserve_collateral(
            owner=self.owner,
            lending_market=market.address,
            lending_market_authority=market.lending_market_authority(),
            reserve=self.reserve.address,
            reserve_collateral_mint=self.reserve.collateral_mint,
            reserve_liquidity_supply=self.reserve.record.liquidity.supply_vault,
            user_source_collateral=self.user_collateral_account,
            user_destination_liquidity=self.user_token_account,
            collateral_amount=self.amount,
            program_id=market.program_id,
        )
        self.lending.append(self._labelled(instruction, "redeemReserveCollateral"))

    def add_deposit_obligation_collateral_ix(self) -> None:
        market = self.market
        instruction = ix.deposit_obligation_collateral(
            owner=self.owner,
            obligation=self.obligation_address,
            lending_market=market.address,
            deposit_reserve=self.reserve.address,
            reserve_destination_collateral=self.reserve.record.collateral.supply_vault,
            user_source_collateral=self.user_collateral_account,
            collateral_amount=self.amount,
            program_id=market.program_id,
        )
        self.lending.append(self._labelled(instruction, "depositObligationCollateral"))

    def add_borrow_ix(self) -> None:
        instruction = self._borrow_ix(self.reserve, self.amount, self.user_token_account)
        self.lending.append(self._labelled(instruction, "borrowObligationLiquidity"))

    def add_deposit_and_borrow_ix(self) -> None:
        outflow = self._require_outflow()
        destination = self._require_additional_account()
        if self.outflow_amount is None:
            raise InvalidStateError("depositAndBorrow requires a borrow amount")
        self.lending.append(
            self._labelled(self._deposit_ix(), "depositReserveLiquidityAndObligationCollateral")
        )
        self.lending.append(
            self._labelled(
                self._borrow_ix(outflow, self.outflow_amount, destination), "borrowObligationLiquidity"
            )
        )

    def add_repay_and_withdraw_ixs(self) -> None:
        outflow = self._require_outflow()
        destination = self._require_additional_account()
        if self.outflow_amount is None:
            raise InvalidStateError("repayAndWithdraw requires a withdraw amount")
        self.lending.append(
            self._labelled(
                self._repay_ix(self.owner),
                f"repayObligationLiquidity(reserve={self.reserve.address})(obligation={self.obligation_address})",
            )
        )
        self.lending.append(
            self._labelled(
                self._withdraw_ix(outflow, self.outflow_amount, destination),
                "withdrawObligationCollateralAndRedeemReserveCollateral",
            )
        )

    def add_withdraw_ix(self) -> None:
        instruction = self._withdraw_ix(self.reserve, self.amount, self.user_token_account)
        self.lending.append(
            self._labelled(instruction, "withdrawObligationCollateralAndRedeemReserveCollateral")
        )

    def add_repay_ix(self) -> None:
        self.lending.append(
            self._labelled(
                self._repay_ix(self.payer),
                f"repayObligationLiquidity(reserve={self.reserve.address})(obligation={self.obligation_address})",
            )
        )

    def add_liquidate_ix(self, max_allowed_ltv_override_percent: int = 0) -> None:
        market = self.market
        withdraw_reserve = self._require_outflow()
        source = self._require_additional_account()
        instruction = ix.liquidate_obligation_and_redeem_reserve_collateral(
            liquidator=self.owner,
            obligation=self.obligation_address,
            lending_market=market.address,
            lending_market_authority=market.lending_market_authority(),
            repay_reserve=self.reserve.address,
            repay_reserve_liquidity_supply=self.reserve.record.liquidity.supply_vault,
            withdraw_reserve=withdraw_reserve.address,
            withdraw_reserve_collateral_mint=withdraw_reserve.collateral_mint,
            withdraw_reserve_collateral_supply=withdraw_reserve.record.collateral.supply_vault,
            withdraw_reserve_liquidity_supply=withdraw_reserve.record.liquidity.supply_vault,
            withdraw_reserve_liquidity_fee_receiver=withdraw_reserve.record.liquidity.fee_vault,
            user_source_liquidity=source,
            user_destination_collateral=self.user_collateral_account,
            user_destination_liquidity=self.user_token_account,
            liquidity_amount=self.amount,
            min_acceptable_received_collateral_amount=self.outflow_amount or 0,
            max_allowed_ltv_override_percent=max_allowed_ltv_override_percent,
            program_id=market.program_id,
        )
        self.lending.append(self._labelled(instruction, "liquidateObligationAndRedeemReserveCollateral"))

    def add_withdraw_referrer_fees_ix(self) -> None:
        market = self.market
        instruction = ix.withdraw_referrer_fees(
            referrer=self.owner,
            lending_market=market.address,
            reserve=self.reserve.address,
            referrer_token_state=market.referrer_token_state_address(self.owner, self.reserve.address),
            reserve_supply_liquidity=self.reserve.record.liquidity.supply_vault,
            referrer_token_account=self.user_token_account,
            lending_market_authority=market.lending_market_authority(),
            program_id=market.program_id,
        )
        self.lending.append(self._labelled(instruction, f"WithdrawReferrerFeesIx[{self.owner}]"))

    # ------------------------------------------------------------------
    # Support instructions
    # ------------------------------------------------------------------

    def add_compute_budget_ix(self, units: int) -> None:
        self.setup.append(self._labelled(ix.compute_budget(units), f"AddComputeBudget[{units}]"))

    def add_refresh_obligation(self, crank: str) -> None:
        """Refresh every reserve, farm and the obligation itself, all in setup."""
        self.add_refresh_reserve_ixs(_unique(self.deposit_reserves + self.borrow_reserves), True)
        self.add_refresh_farms_for_reserve(
            [self.market.require_reserve(r) for r in self.deposit_reserves], True, FarmKind.COLLATERAL, crank
        )
        self.add_refresh_farms_for_reserve(
            [self.market.require_reserve(r) for r in self.borrow_reserves], True, FarmKind.DEBT, crank
        )
        self.add_refresh_obligation_ix(True, False)

    async def add_support_ixs(
        self,
        kind: ActionKind,
        include_ata_ixns: bool,
        request_elevation_group: bool,
        include_user_metadata: bool,
        add_init_obligation_for_farm: bool,
        two_token_action: bool = False,
    ) -> None:
        if kind not in (ActionKind.MINT, ActionKind.REDEEM):
            if not self.user_metadata_exists and include_user_metadata:
                self.add_init_user_metadata_ixs()
            await self.add_init_referrer_token_state_ixs()
            self.add_init_obligation_ixs()

        await self.add_support_ixs_without_init_obligation(
            kind,
            include_ata_ixns,
            True,
            request_elevation_group,
            add_init_obligation_for_farm,
            False,
            two_token_action,
        )

    async def add_in_between_ixs(
        self,
        kind: ActionKind,
        include_ata_ixns: bool,
        request_elevation_group: bool,
        add_init_obligation_for_farm: bool,
        is_closing_position: bool = False,
    ) -> None:
        await self.add_support_ixs_without_init_obligation(
            kind,
            include_ata_ixns,
            False,
            request_elevation_group,
            add_init_obligation_for_farm,
            is_closing_position,
        )

    def _current_reserves(self, kind: ActionKind) -> list[ReserveView]:
        """Reserves the action refreshes explicitly, recording any preloads."""
        if kind not in (ActionKind.LIQUIDATE, ActionKind.DEPOSIT_AND_BORROW, ActionKind.REPAY_AND_WITHDRAW):
            return [self.reserve]

        outflow = self._require_outflow()
        if kind == ActionKind.LIQUIDATE:
            if outflow.address != self.reserve.address:
                return [outflow, self.reserve]
            return [self.reserve]

        ledger = self.ledger
        if ledger is None:
            self.preloaded_deposit_reserves.append(self.reserve.address)
        elif kind == ActionKind.DEPOSIT_AND_BORROW:
            if ledger.get_obligation_deposit(self.reserve.address) is None:
                self.preloaded_deposit_reserves.append(self.reserve.address)
        else:
            borrow = ledger.get_obligation_borrow(self.reserve.address)
            if borrow is None:
                raise NotFoundError(
                    "Obligation borrow", self.reserve.address, f"nothing to repay for {ledger.owner}"
                )
            full_repay = PositionLedger.accrued_borrow_amount(
                borrow, self.reserve.estimated_cumulative_borrow_rate(self.current_slot)
            )
            if full_repay <= FixedPoint.from_int(self.amount):
                self.preloaded_borrow_reserves.append(self.reserve.address)
        return [self.reserve, outflow]

    async def add_support_ixs_without_init_obligation(
        self,
        kind: ActionKind,
        include_ata_ixns: bool,
        to_setup: bool = True,
        request_elevation_group: bool = False,
        add_init_obligation_for_farm: bool = False,
        is_closing_position: bool = False,
        two_token_action: bool = False,
    ) -> None:
        if include_ata_ixns:
            await self.add_ata_ixs(kind)

        if kind not in _OBLIGATION_KINDS:
            return

        current_reserves = self._current_reserves(kind)
        current_addresses = _unique(r.address for r in current_reserves)
        other_reserves = [
            address
            for address in _unique(self.deposit_reserves + self.borrow_reserves)
            if address not in current_addresses
        ]

        self.add_refresh_reserve_ixs(other_reserves, to_setup)
        if add_init_obligation_for_farm:
            await self._add_init_obligation_farms(kind, to_setup)
        self.add_refresh_reserve_ixs(current_addresses, to_setup)

        skip_borrows = kind == ActionKind.REPAY_AND_WITHDRAW and not to_setup and is_closing_position
        self.add_refresh_obligation_ix(to_setup, skip_borrows)

        if to_setup:
            if kind == ActionKind.LIQUIDATE:
                self.add_refresh_farms_for_reserve([self._require_outflow()], to_setup, FarmKind.COLLATERAL)
                self.add_refresh_farms_for_reserve([self.reserve], to_setup, FarmKind.DEBT)
            elif kind in _COLLATERAL_SIDE:
                self.add_refresh_farms_for_reserve(
                    current_reserves, to_setup, FarmKind.COLLATERAL, two_token_action=two_token_action
                )
            elif kind in _DEBT_SIDE:
                self.add_refresh_farms_for_reserve(
                    current_reserves, to_setup, FarmKind.DEBT, two_token_action=two_token_action
                )
            else:
                raise InvalidStateError(f"Could not decide on refresh farm for action {kind.value}")
        elif kind == ActionKind.DEPOSIT_AND_BORROW:
            self.add_refresh_farms_for_reserve([self._require_outflow()], to_setup, FarmKind.DEBT)
        elif kind == ActionKind.REPAY_AND_WITHDRAW:
            self.add_refresh_farms_for_reserve([self._require_outflow()], to_setup, FarmKind.COLLATERAL)
        else:
            raise InvalidStateError(f"Could not decide on refresh farm for action {kind.value}")

        if kind == ActionKind.DEPOSIT_AND_BORROW and request_elevation_group:
            group = self._best_common_elevation_group()
            current_group = self.ledger.elevation_group if self.ledger is not None else None
            if group != 0 and group != current_group:
                self.add_request_elevation_ix(group, False)
                self.add_refresh_reserve_ixs(other_reserves, to_setup)
                self.add_refresh_reserve_ixs(current_addresses, to_setup)
                self.add_refresh_obligation_ix(to_setup)

    def _best_common_elevation_group(self) -> int:
        """Highest-LTV elevation group both reserves support, or 0."""
        outflow = self._require_outflow()
        common = [g for g in self.reserve.elevation_groups if g in outflow.elevation_groups and g != 0]
        if not common:
            logger.info("No common elevation groups for %s and %s", self.reserve.symbol, outflow.symbol)
            return 0
        best = common[0]
        for group_id in common[1:]:
            if self.market.get_elevation_group(best).ltv_pct <= self.market.get_elevation_group(group_id).ltv_pct:
                best = group_id
        logger.info("Common elevation groups %s, selecting %d", common, best)
        return best

    async def _add_init_obligation_farms(self, kind: ActionKind, to_setup: bool) -> None:
        outflow = self.outflow_reserve
        if kind == ActionKind.LIQUIDATE:
            await self.add_init_obligation_for_farm(self.reserve, FarmKind.DEBT, to_setup)
            await self.add_init_obligation_for_farm(self._require_outflow(), FarmKind.COLLATERAL, to_setup)
        elif kind in _COLLATERAL_SIDE:
            await self.add_init_obligation_for_farm(self.reserve, FarmKind.COLLATERAL, to_setup)
            if outflow is not None:
                await self.add_init_obligation_for_farm(outflow, FarmKind.DEBT, to_setup)
        elif kind in _DEBT_SIDE:
            await self.add_init_obligation_for_farm(self.reserve, FarmKind.DEBT, to_setup)
            if outflow is not None:
                await self.add_init_obligation_for_farm(outflow, FarmKind.COLLATERAL, to_setup)
        else:
            for reserve in (self.reserve, outflow):
                if reserve is None:
                    continue
                await self.add_init_obligation_for_farm(reserve, FarmKind.COLLATERAL, to_setup)
                await self.add_init_obligation_for_farm(reserve, FarmKind.DEBT, to_setup)

    def _push(self, instruction: Instruction, label: str, to_setup: bool) -> None:
        group = self.setup if to_setup else self.in_between
        group.append(self._labelled(instruction, label))

    def add_refresh_reserve_ixs(self, reserves: Sequence[str], to_setup: bool = True) -> None:
        market = self.market
        for address in reserves:
            token_info = market.require_reserve(address).record.config.token_info
            instruction = ix.refresh_reserve(
                lending_market=market.address,
                reserve=address,
                pyth_oracle=token_info.pyth_price,
                switchboard_price_oracle=token_info.switchboard_price_aggregator,
                switchboard_twap_oracle=token_info.switchboard_twap_aggregator,
                scope_prices=token_info.scope_price_feed,
                program_id=market.program_id,
            )
            self._push(instruction, f"RefreshReserve[{address}]", to_setup)

    def _remaining_accounts(self, deposits: Sequence[str], borrows: Sequence[str]) -> list[str]:
        referrer_states: list[str] = []
        if not is_null_pubkey(self.referrer):
            referrer_states = [self.market.referrer_token_state_address(self.referrer, r) for r in borrows]
        return [*deposits, *borrows, *referrer_states]

    def add_refresh_obligation_ix(self, to_setup: bool = True, skip_borrows: bool = False) -> None:
        deposits, borrows = obligation_refresh_pools(
            self.deposit_reserves,
            self.borrow_reserves,
            self.preloaded_deposit_reserves,
            self.preloaded_borrow_reserves,
            skip_borrows=skip_borrows,
        )
        address = self.obligation_address
        instruction = ix.refresh_obligation(
            lending_market=self.market.address,
            obligation=address,
            remaining_accounts=self._remaining_accounts(deposits, borrows),
            program_id=self.market.program_id,
        )
        self._push(instruction, f"RefreshObligation[{address}]", to_setup)

    def add_request_elevation_ix(self, elevation_group: int, to_setup: bool) -> None:
        deposits, borrows = obligation_refresh_pools(
            self.deposit_reserves,
            self.borrow_reserves,
            self.preloaded_deposit_reserves,
            self.preloaded_borrow_reserves,
        )
        address = self.obligation_address
        instruction = ix.request_elevation_group(
            owner=self.owner,
            obligation=address,
            lending_market=self.market.address,
            elevation_group=elevation_group,
            remaining_accounts=self._remaining_accounts(deposits, borrows),
            program_id=self.market.program_id,
        )
        self._push(instruction, f"RequestElevation[{address}], elevation_group:{elevation_group}", to_setup)

    @staticmethod
    def _farm_for(reserve: ReserveView, mode: FarmKind) -> str:
        return reserve.farm_collateral if mode == FarmKind.COLLATERAL else reserve.farm_debt

    def add_refresh_farms_for_reserve(
        self,
        reserves: Sequence[ReserveView],
        to_setup: bool,
        mode: FarmKind,
        crank: str | None = None,
        two_token_action: bool = False,
    ) -> None:
        """Farm refreshes go to setup and again after the lending instruction.

        The trailing copy runs in in-between for a two-leg action and in the
        cleanup group otherwise.
        """
        market = self.market
        obligation = self.obligation_address
        for reserve in reserves:
            farm = self._farm_for(reserve, mode)
            if is_null_pubkey(farm):
                continue
            instruction = ix.refresh_obligation_farms_for_reserve(
                crank=crank or self.payer,
                obligation=obligation,
                lending_market_authority=market.lending_market_authority(),
                reserve=reserve.address,
                reserve_farm_state=farm,
                obligation_farm_user_state=market.obligation_farm_state_address(farm, obligation),
                lending_market=market.address,
                mode=int(mode),
                farms_program=market.farms_program_id,
                program_id=market.program_id,
            )
            label = f"RefreshFarmForObligation[{mode.label}, res={reserve.address}, obl={obligation}]"
            labelled = self._labelled(instruction, label)
            if to_setup:
                self.setup.append(labelled)
                if two_token_action:
                    self.in_between.append(labelled)
                else:
                    self.refresh_farms_cleanup.append(labelled)
            else:
                self.in_between.append(labelled)
                self.refresh_farms_cleanup.append(labelled)

    def add_refresh_farms_cleanup_to_cleanup(self) -> None:
        """Splice the trailing farm refreshes in before the last cleanup instruction."""
        index = max(len(self.cleanup) - 1, 0)
        self.cleanup[index:index] = self.refresh_farms_cleanup

    async def add_init_obligation_for_farm(
        self, reserve: ReserveView, mode: FarmKind, to_setup: bool = True
    ) -> None:
        farm = self._farm_for(reserve, mode)
        if is_null_pubkey(farm):
            return
        market = self.market
        obligation = self.obligation_address
        farm_state = market.obligation_farm_state_address(farm, obligation)
        if await account_exists(market.client, farm_state):
            return
        instruction = ix.init_obligation_farms_for_reserve(
            payer=self.owner,
            owner=self.ledger.owner if self.ledger is not None else self.owner,
            obligation=obligation,
            lending_market_authority=market.lending_market_authority(),
            reserve=reserve.address,
            reserve_farm_state=farm,
            obligation_farm=farm_state,
            lending_market=market.address,
            mode=int(mode),
            farms_program=market.farms_program_id,
            program_id=market.program_id,
        )
        self._push(instruction, f"InitObligationForFarm[{reserve.address}, {obligation}]", to_setup)

    def add_init_obligation_ixs(self) -> None:
        if not isinstance(self.obligation, PendingObligation):
            return
        descriptor = self.obligation.descriptor
        address = self.obligation_address
        instruction = ix.init_obligation(
            obligation_owner=self.owner,
            fee_payer=self.payer,
            obligation=address,
            lending_market=self.market.address,
            seed1=descriptor.seed1,
            seed2=descriptor.seed2,
            owner_user_metadata=self.market.user_metadata_address(self.owner),
            tag=int(descriptor.tag),
            id=descriptor.id,
            program_id=self.market.program_id,
        )
        self.setup.append(self._labelled(instruction, f"InitObligation[{address}]"))

    def add_init_user_metadata_ixs(self) -> None:
        market = self.market
        user_metadata = market.user_metadata_address(self.owner)
        referrer_metadata = (
            market.program_id if is_null_pubkey(self.referrer) else market.user_metadata_address(self.referrer)
        )
        instruction = ix.init_user_metadata(
            owner=self.owner,
            fee_payer=self.payer,
            user_metadata=user_metadata,
            referrer_user_metadata=referrer_metadata,
            user_lookup_table=NULL_PUBKEY,
            program_id=market.program_id,
        )
        self.setup.append(self._labelled(instruction, f"initUserMetadata[{user_metadata}]"))

    async def add_init_referrer_token_state_ixs(self, reserves: Sequence[ReserveView] = ()) -> None:
        if is_null_pubkey(self.referrer):
            return
        market = self.market
        if not reserves:
            candidates = [self.reserve] + ([self.outflow_reserve] if self.outflow_reserve is not None else [])
            reserves = list({r.address: r for r in candidates}.values())

        missing: list[tuple[str, str]] = []
        for reserve in reserves:
            state = market.referrer_token_state_address(self.referrer, reserve.address)
            if not await account_exists(market.client, state):
                missing.append((state, reserve.address))

        for state, reserve_address in missing:
            instruction = ix.init_referrer_token_state(
                lending_market=market.address,
                payer=self.owner,
                reserve=reserve_address,
                referrer_token_state=state,
                referrer=self.referrer,
                program_id=market.program_id,
            )
            self.setup.insert(
                0, self._labelled(instruction, f"InitReferrerTokenState[{state} res={reserve_address}]")
            )

    # ------------------------------------------------------------------
    # Token accounts
    # ------------------------------------------------------------------

    def _create_ata(self, account: str, mint: str, label: str, pre_txn: bool) -> None:
        instruction = self._labelled(
            ix.create_associated_token_account_idempotent(
                payer=self.owner, associated_account=account, owner=self.owner, mint=mint
            ),
            label,
        )
        if pre_txn:
            self.pre_txn.append(instruction)
        else:
            self.setup.insert(0, instruction)

    async def add_ata_ixs(self, kind: ActionKind) -> None:
        """Create missing user token accounts and wrap or unwrap SOL."""
        client = self.market.client
        at_limit = self.positions == POSITION_LIMIT
        mint_is_sol = self.mint == WRAPPED_SOL_MINT

        if mint_is_sol or self.secondary_mint == WRAPPED_SOL_MINT:
            await self.update_wsol_account(kind)

        if kind in (ActionKind.WITHDRAW, ActionKind.BORROW, ActionKind.REDEEM) and not mint_is_sol:
            if not await account_exists(client, self.user_token_account):
                self._create_ata(
                    self.user_token_account,
                    self.reserve.liquidity_mint,
                    f"CreateLiquidityUserAta[{self.owner}]",
                    at_limit and self.host_ata is not None,
                )

        if kind == ActionKind.LIQUIDATE:
            outflow = self._require_outflow()
            if not await account_exists(client, self.user_token_account):
                self._create_ata(
                    self.user_token_account,
                    outflow.liquidity_mint,
                    f"CreateUserAta[{self.user_token_account}]",
                    at_limit and mint_is_sol,
                )
            if not await account_exists(client, self.user_collateral_account):
                self._create_ata(
                    self.user_collateral_account,
                    outflow.collateral_mint,
                    f"CreateCollateralUserAta[{self.user_collateral_account}]",
                    at_limit and mint_is_sol,
                )
            self._require_additional_account()

        if kind == ActionKind.DEPOSIT_AND_BORROW or (
            kind == ActionKind.REPAY_AND_WITHDRAW and self.secondary_mint != WRAPPED_SOL_MINT
        ):
            additional = self._require_additional_account()
            outflow = self._require_outflow()
            if not await account_exists(client, additional):
                self._create_ata(
                    additional, outflow.liquidity_mint, f"CreateAdditionalUserTokenAta[{self.owner}]", False
                )

        if kind in (ActionKind.WITHDRAW, ActionKind.MINT, ActionKind.DEPOSIT, ActionKind.REPAY_AND_WITHDRAW):
            if not await account_exists(client, self.user_token_account):
                self._create_ata(
                    self.user_token_account,
                    self.reserve.liquidity_mint,
                    f"CreateUserAta[{self.user_token_account}]",
                    True,
                )

        if kind == ActionKind.MINT:
            if not await account_exists(client, self.user_collateral_account):
                self._create_ata(
                    self.user_collateral_account,
                    self.reserve.collateral_mint,
                    f"CreateCollateralUserAta[{self.user_collateral_account}]",
                    at_limit and mint_is_sol,
                )

    def _safe_repay_amount(self, kind: ActionKind) -> int:
        """Lamports to wrap; a maximum repay is replaced by the accrued debt plus padding."""
        ledger = self.ledger
        if ledger is None or kind != ActionKind.REPAY or self.amount != U64_MAX:
            return self.amount
        borrow = ledger.get_obligation_borrow(self.reserve.address)
        if borrow is None:
            raise NotFoundError("Obligation borrow", self.reserve.address, f"nothing to repay for {ledger.owner}")
        accrued = PositionLedger.accrued_borrow_amount(
            borrow, self.reserve.estimated_cumulative_borrow_rate(self.current_slot)
        )
        return (accrued + FixedPoint.from_int(SOL_PADDING_FOR_INTEREST)).floor()

    async def update_wsol_account(self, kind: ActionKind) -> None:
        """Fund and sync a WSOL account before the action and close it after."""
        if kind.is_two_leg:
            return

        safe_repay = self._safe_repay_amount(kind)
        account = self.user_token_account
        if self.secondary_mint == WRAPPED_SOL_MINT:
            account = self._require_additional_account()
            # Composites receive SOL on the secondary leg; only the rent is funded.
            if self.kind in (ActionKind.DEPOSIT_AND_BORROW, ActionKind.REPAY_AND_WITHDRAW):
                safe_repay = 0

        client = self.market.client
        exists = await account_exists(client, account)
        rent_exempt = await client.get_minimum_balance_for_rent_exemption(TOKEN_ACCOUNT_SIZE)

        send_action = kind in (ActionKind.DEPOSIT, ActionKind.REPAY, ActionKind.MINT) or (
            kind == ActionKind.LIQUIDATE and self.secondary_mint == WRAPPED_SOL_MINT
        )
        lamports = (0 if exists else rent_exempt) + (safe_repay if send_action else 0)

        pre: list[Instruction] = [
            self._labelled(
                ix.system_transfer(source=self.owner, destination=account, lamports=lamports),
                f"TransferLamportsToUserAtaSOL[{account}]",
            )
        ]
        post: list[Instruction] = []
        sync = self._labelled(ix.sync_native(account), f"SyncUserAtaSOL[{account}]")
        close = self._labelled(
            ix.close_account(account=account, destination=self.owner, owner=self.owner),
            f"CloseUserAtaSOL[{account}]",
        )
        if exists:
            if send_action:
                pre.append(sync)
            else:
                post.append(close)
        else:
            pre.append(
                self._labelled(
                    ix.create_associated_token_account_idempotent(
                        payer=self.owner, associated_account=account, owner=self.owner, mint=WRAPPED_SOL_MINT
                    ),
                    f"CreateUserAtaSOL[{account}]",
                )
            )
            pre.append(sync)
            post.append(close)

        self.setup[0:0] = pre
        self.cleanup.extend(post)
