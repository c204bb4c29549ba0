"""Semantic instruction builders.

Each builder returns an ``Instruction`` carrying the program id, the account
list in program order and the named arguments. Serialization into wire bytes
belongs to the submitter.
"""
from __future__ import annotations

from typing import Sequence

from ..constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
    FARMS_PROGRAM_ID,
    KLEND_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    SYSVAR_INSTRUCTIONS_ID,
    SYSVAR_RENT_ID,
    TOKEN_PROGRAM_ID,
    is_null_pubkey,
)
from ..interfaces import AddressDeriver
from ..models import AccountMeta, Instruction


def _ro(address: str) -> AccountMeta:
    return AccountMeta(address)


def _rw(address: str) -> AccountMeta:
    return AccountMeta(address, is_writable=True)


def _signer(address: str, writable: bool = False) -> AccountMeta:
    return AccountMeta(address, is_signer=True, is_writable=writable)


def optional_account(address: str | None, program_id: str = KLEND_PROGRAM_ID) -> str:
    """Unset optional accounts are passed as the program id itself."""
    if is_null_pubkey(address):
        return program_id
    return address  # type: ignore[return-value]


def associated_token_address(
    deriver: AddressDeriver, owner: str, mint: str, token_program: str = TOKEN_PROGRAM_ID
) -> str:
    return deriver.find_program_address([owner, token_program, mint], ASSOCIATED_TOKEN_PROGRAM_ID)


# ---------------------------------------------------------------------------
# Lending operations
# ---------------------------------------------------------------------------


def deposit_reserve_liquidity_and_obligation_collateral(
    *,
    owner: str,
    obligation: str,
    lending_market: str,
    lending_market_authority: str,
    reserve: str,
    reserve_liquidity_supply: str,
    reserve_collateral_mint: str,
    reserve_destination_deposit_collateral: str,
    user_source_liquidity: str,
    liquidity_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "depositReserveLiquidityAndObligationCollateral",
        (
            _signer(owner, writable=True),
            _rw(obligation),
            _ro(lending_market),
            _ro(lending_market_authority),
            _rw(reserve),
            _rw(reserve_liquidity_supply),
            _rw(reserve_collateral_mint),
            _rw(reserve_destination_deposit_collateral),
            _rw(user_source_liquidity),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"liquidity_amount": liquidity_amount},
    )


def deposit_reserve_liquidity(
    *,
    owner: str,
    lending_market: str,
    lending_market_authority: str,
    reserve: str,
    reserve_liquidity_supply: str,
    reserve_collateral_mint: str,
    user_source_liquidity: str,
    user_destination_collateral: str,
    liquidity_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "depositReserveLiquidity",
        (
            _signer(owner),
            _ro(lending_market),
            _ro(lending_market_authority),
            _rw(reserve),
            _rw(reserve_liquidity_supply),
            _rw(reserve_collateral_mint),
            _rw(user_source_liquidity),
            _rw(user_destination_collateral),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"liquidity_amount": liquidity_amount},
    )


def redeem_reserve_collateral(
    *,
    owner: str,
    lending_market: str,
    lending_market_authority: str,
    reserve: str,
    reserve_collateral_mint: str,
    reserve_liquidity_supply: str,
    user_source_collateral: str,
    user_destination_liquidity: str,
    collateral_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "redeemReserveCollateral",
        (
            _signer(owner),
            _ro(lending_market),
            _rw(reserve),
            _ro(lending_market_authority),
            _rw(reserve_collateral_mint),
            _rw(reserve_liquidity_supply),
            _rw(user_source_collateral),
            _rw(user_destination_liquidity),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"collateral_amount": collateral_amount},
    )


def deposit_obligation_collateral(
    *,
    owner: str,
    obligation: str,
    lending_market: str,
    deposit_reserve: str,
    reserve_destination_collateral: str,
    user_source_collateral: str,
    collateral_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "depositObligationCollateral",
        (
            _signer(owner),
            _rw(obligation),
            _ro(lending_market),
            _rw(deposit_reserve),
            _rw(reserve_destination_collateral),
            _rw(user_source_collateral),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"collateral_amount": collateral_amount},
    )


def borrow_obligation_liquidity(
    *,
    owner: str,
    obligation: str,
    lending_market: str,
    lending_market_authority: str,
    borrow_reserve: str,
    reserve_source_liquidity: str,
    user_destination_liquidity: str,
    borrow_reserve_liquidity_fee_receiver: str,
    referrer_token_state: str,
    liquidity_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "borrowObligationLiquidity",
        (
            _signer(owner),
            _rw(obligation),
            _ro(lending_market),
            _ro(lending_market_authority),
            _rw(borrow_reserve),
            _rw(reserve_source_liquidity),
            _rw(borrow_reserve_liquidity_fee_receiver),
            _rw(user_destination_liquidity),
            _rw(referrer_token_state),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"liquidity_amount": liquidity_amount},
    )


def repay_obligation_liquidity(
    *,
    owner: str,
    obligation: str,
    lending_market: str,
    repay_reserve: str,
    user_source_liquidity: str,
    reserve_destination_liquidity: str,
    liquidity_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "repayObligationLiquidity",
        (
            _signer(owner),
            _rw(obligation),
            _ro(lending_market),
            _rw(repay_reserve),
            _rw(reserve_destination_liquidity),
            _rw(user_source_liquidity),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"liquidity_amount": liquidity_amount},
    )


def withdraw_obligation_collateral_and_redeem_reserve_collateral(
    *,
    owner: str,
    obligation: str,
    lending_market: str,
    lending_market_authority: str,
    withdraw_reserve: str,
    reserve_collateral_mint: str,
    reserve_liquidity_supply: str,
    reserve_source_collateral: str,
    user_destination_liquidity: str,
    collateral_amount: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "withdrawObligationCollateralAndRedeemReserveCollateral",
        (
            _signer(owner, writable=True),
            _rw(obligation),
            _ro(lending_market),
            _ro(lending_market_authority),
            _rw(withdraw_reserve),
            _rw(reserve_source_collateral),
            _rw(reserve_collateral_mint),
            _rw(reserve_liquidity_supply),
            _rw(user_destination_liquidity),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {"collateral_amount": collateral_amount},
    )


def liquidate_obligation_and_redeem_reserve_collateral(
    *,
    liquidator: str,
    obligation: str,
    lending_market: str,
    lending_market_authority: str,
    repay_reserve: str,
    repay_reserve_liquidity_supply: str,
    withdraw_reserve: str,
    withdraw_reserve_collateral_mint: str,
    withdraw_reserve_collateral_supply: str,
    withdraw_reserve_liquidity_supply: str,
    withdraw_reserve_liquidity_fee_receiver: str,
    user_source_liquidity: str,
    user_destination_collateral: str,
    user_destination_liquidity: str,
    liquidity_amount: int,
    min_acceptable_received_collateral_amount: int,
    max_allowed_ltv_override_percent: int = 0,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "liquidateObligationAndRedeemReserveCollateral",
        (
            _signer(liquidator),
            _rw(obligation),
            _ro(lending_market),
            _ro(lending_market_authority),
            _rw(repay_reserve),
            _rw(repay_reserve_liquidity_supply),
            _rw(withdraw_reserve),
            _rw(withdraw_reserve_collateral_mint),
            _rw(withdraw_reserve_collateral_supply),
            _rw(withdraw_reserve_liquidity_supply),
            _rw(withdraw_reserve_liquidity_fee_receiver),
            _rw(user_source_liquidity),
            _rw(user_destination_collateral),
            _rw(user_destination_liquidity),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSVAR_INSTRUCTIONS_ID),
        ),
        {
            "liquidity_amount": liquidity_amount,
            "min_acceptable_received_collateral_amount": min_acceptable_received_collateral_amount,
            "max_allowed_ltv_override_percent": max_allowed_ltv_override_percent,
        },
    )


# ---------------------------------------------------------------------------
# Refresh and bookkeeping
# ---------------------------------------------------------------------------


def refresh_reserve(
    *,
    lending_market: str,
    reserve: str,
    pyth_oracle: str | None = None,
    switchboard_price_oracle: str | None = None,
    switchboard_twap_oracle: str | None = None,
    scope_prices: str | None = None,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "refreshReserve",
        (
            _ro(lending_market),
            _rw(reserve),
            _ro(optional_account(pyth_oracle, program_id)),
            _ro(optional_account(switchboard_price_oracle, program_id)),
            _ro(optional_account(switchboard_twap_oracle, program_id)),
            _ro(optional_account(scope_prices, program_id)),
        ),
    )


def refresh_obligation(
    *,
    lending_market: str,
    obligation: str,
    remaining_accounts: Sequence[str] = (),
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    """``remaining_accounts`` are deposit reserves, borrow reserves then referrer states."""
    return Instruction(
        program_id,
        "refreshObligation",
        (_ro(lending_market), _rw(obligation), *(_rw(address) for address in remaining_accounts)),
    )


def request_elevation_group(
    *,
    owner: str,
    obligation: str,
    lending_market: str,
    elevation_group: int,
    remaining_accounts: Sequence[str] = (),
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "requestElevationGroup",
        (
            _signer(owner),
            _rw(obligation),
            _ro(lending_market),
            *(_rw(address) for address in remaining_accounts),
        ),
        {"elevation_group": elevation_group},
    )


def refresh_obligation_farms_for_reserve(
    *,
    crank: str,
    obligation: str,
    lending_market_authority: str,
    reserve: str,
    reserve_farm_state: str,
    obligation_farm_user_state: str,
    lending_market: str,
    mode: int,
    farms_program: str = FARMS_PROGRAM_ID,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "refreshObligationFarmsForReserve",
        (
            _signer(crank),
            _ro(obligation),
            _ro(lending_market_authority),
            _ro(reserve),
            _rw(reserve_farm_state),
            _rw(obligation_farm_user_state),
            _ro(lending_market),
            _ro(farms_program),
            _ro(SYSVAR_RENT_ID),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSTEM_PROGRAM_ID),
        ),
        {"mode": mode},
    )


def init_obligation_farms_for_reserve(
    *,
    payer: str,
    owner: str,
    obligation: str,
    lending_market_authority: str,
    reserve: str,
    reserve_farm_state: str,
    obligation_farm: str,
    lending_market: str,
    mode: int,
    farms_program: str = FARMS_PROGRAM_ID,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "initObligationFarmsForReserve",
        (
            _signer(payer, writable=True),
            _ro(owner),
            _rw(obligation),
            _ro(lending_market_authority),
            _rw(reserve),
            _rw(reserve_farm_state),
            _rw(obligation_farm),
            _ro(lending_market),
            _ro(farms_program),
            _ro(SYSVAR_RENT_ID),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSTEM_PROGRAM_ID),
        ),
        {"mode": mode},
    )


def init_obligation(
    *,
    obligation_owner: str,
    fee_payer: str,
    obligation: str,
    lending_market: str,
    seed1: str,
    seed2: str,
    owner_user_metadata: str,
    tag: int,
    id: int,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "initObligation",
        (
            _signer(obligation_owner),
            _signer(fee_payer, writable=True),
            _rw(obligation),
            _ro(lending_market),
            _ro(seed1),
            _ro(seed2),
            _ro(owner_user_metadata),
            _ro(SYSVAR_RENT_ID),
            _ro(TOKEN_PROGRAM_ID),
            _ro(SYSTEM_PROGRAM_ID),
        ),
        {"tag": tag, "id": id},
    )


def init_user_metadata(
    *,
    owner: str,
    fee_payer: str,
    user_metadata: str,
    referrer_user_metadata: str,
    user_lookup_table: str,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "initUserMetadata",
        (
            _signer(owner),
            _signer(fee_payer, writable=True),
            _rw(user_metadata),
            _ro(referrer_user_metadata),
            _ro(SYSVAR_RENT_ID),
            _ro(SYSTEM_PROGRAM_ID),
        ),
        {"user_lookup_table": user_lookup_table},
    )


def update_user_metadata_owner(
    *, user_metadata: str, owner: str, program_id: str = KLEND_PROGRAM_ID
) -> Instruction:
    return Instruction(
        program_id, "updateUserMetadataOwner", (_rw(user_metadata),), {"owner": owner}
    )


def init_referrer_token_state(
    *,
    lending_market: str,
    payer: str,
    reserve: str,
    referrer_token_state: str,
    referrer: str,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "initReferrerTokenState",
        (
            _ro(lending_market),
            _signer(payer, writable=True),
            _ro(reserve),
            _rw(referrer_token_state),
            _ro(SYSVAR_RENT_ID),
            _ro(SYSTEM_PROGRAM_ID),
        ),
        {"referrer": referrer},
    )


def withdraw_referrer_fees(
    *,
    referrer: str,
    lending_market: str,
    reserve: str,
    referrer_token_state: str,
    reserve_supply_liquidity: str,
    referrer_token_account: str,
    lending_market_authority: str,
    program_id: str = KLEND_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id,
        "withdrawReferrerFees",
        (
            _signer(referrer, writable=True),
            _rw(referrer_token_state),
            _rw(reserve),
            _rw(reserve_supply_liquidity),
            _rw(referrer_token_account),
            _ro(lending_market),
            _ro(lending_market_authority),
            _ro(TOKEN_PROGRAM_ID),
        ),
    )


# ---------------------------------------------------------------------------
# Token, system and compute budget programs
# ---------------------------------------------------------------------------


def compute_budget(units: int) -> Instruction:
    return Instruction(COMPUTE_BUDGET_PROGRAM_ID, "setComputeUnitLimit", (), {"units": units})


def create_associated_token_account_idempotent(
    *, payer: str, associated_account: str, owner: str, mint: str
) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        "createIdempotent",
        (
            _signer(payer, writable=True),
            _rw(associated_account),
            _ro(owner),
            _ro(mint),
            _ro(SYSTEM_PROGRAM_ID),
            _ro(TOKEN_PROGRAM_ID),
        ),
    )


def system_transfer(*, source: str, destination: str, lamports: int) -> Instruction:
    return Instruction(
        SYSTEM_PROGRAM_ID,
        "transfer",
        (_signer(source, writable=True), _rw(destination)),
        {"lamports": lamports},
    )


def sync_native(account: str) -> Instruction:
    return Instruction(TOKEN_PROGRAM_ID, "syncNative", (_rw(account),))


def close_account(*, account: str, destination: str, owner: str) -> Instruction:
    return Instruction(
        TOKEN_PROGRAM_ID,
        "closeAccount",
        (_rw(account), _rw(destination), _signer(owner)),
    )
