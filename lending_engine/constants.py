"""Program ids, sysvars and protocol limits."""
from __future__ import annotations

KLEND_PROGRAM_ID = "KLend2g3cP87fffoy8q1mQqGKjrxjC8boSyAYavgmjD"
FARMS_PROGRAM_ID = "FarmsPZpWu9i7Kky8tPN37rs2TpmMrAZrC7S7vJa91Hr"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
SYSVAR_INSTRUCTIONS_ID = "Sysvar1nstructions1111111111111111111111111"
SYSVAR_RENT_ID = "SysvarRent111111111111111111111111111111111"

# All-zero key; used on chain for "unset" pubkey fields.
NULL_PUBKEY = SYSTEM_PROGRAM_ID

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"

U64_MAX = 2**64 - 1

POSITION_LIMIT = 10
BORROWS_LIMIT = 5
DEPOSITS_LIMIT = 8

SOL_PADDING_FOR_INTEREST = 1_000_000
TOKEN_ACCOUNT_SIZE = 165

# 400ms slots.
SLOTS_PER_SECOND = 2.5
SLOTS_PER_YEAR = 63_072_000

ONE_HUNDRED_PCT_IN_BPS = 10_000

DEFAULT_COMPUTE_BUDGET = 1_000_000

# PDA seed prefixes
SEED_USER_METADATA = b"user_meta"
SEED_REFERRER_TOKEN_STATE = b"referrer_acc"
SEED_LENDING_MARKET_AUTH = b"lma"
SEED_FARM_USER_STATE = b"user"

# Byte offsets used in getProgramAccounts memcmp filters.
RESERVE_MARKET_OFFSET = 32
OBLIGATION_TAG_OFFSET = 8
OBLIGATION_MARKET_OFFSET = 32
OBLIGATION_OWNER_OFFSET = 64
REFERRER_TOKEN_STATE_REFERRER_OFFSET = 8


def is_null_pubkey(address: str | None) -> bool:
    return not address or address == NULL_PUBKEY
