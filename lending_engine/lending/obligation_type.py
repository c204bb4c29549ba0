"""Obligation identity: a loaded obligation or the seeds of one not yet created."""
from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Union

from ..constants import NULL_PUBKEY
from ..interfaces import AddressDeriver

if TYPE_CHECKING:
    from .obligation import PositionLedger


class ObligationTag(IntEnum):
    VANILLA = 0
    MULTIPLY = 1
    LENDING = 2
    LEVERAGE = 3


@dataclass(frozen=True)
class ObligationDescriptor:
    """Seeds that make an obligation address unique per owner and market.

    Vanilla obligations use null seeds; the product types pin the mints the
    position is built around.
    """

    tag: ObligationTag = ObligationTag.VANILLA
    id: int = 0
    seed1: str = NULL_PUBKEY
    seed2: str = NULL_PUBKEY

    @classmethod
    def vanilla(cls, id: int = 0) -> ObligationDescriptor:
        return cls(ObligationTag.VANILLA, id)

    @classmethod
    def multiply(cls, coll_mint: str, debt_mint: str, id: int = 0) -> ObligationDescriptor:
        return cls(ObligationTag.MULTIPLY, id, coll_mint, debt_mint)

    @classmethod
    def lending(cls, mint: str, id: int = 0) -> ObligationDescriptor:
        return cls(ObligationTag.LENDING, id, mint, mint)

    @classmethod
    def leverage(cls, coll_mint: str, debt_mint: str, id: int = 0) -> ObligationDescriptor:
        return cls(ObligationTag.LEVERAGE, id, coll_mint, debt_mint)

    def seeds(self, market: str, owner: str) -> list[bytes | str]:
        return [bytes([int(self.tag)]), bytes([self.id]), owner, market, self.seed1, self.seed2]

    def to_address(self, market: str, owner: str, deriver: AddressDeriver, program_id: str) -> str:
        return deriver.find_program_address(self.seeds(market, owner), program_id)


@dataclass(frozen=True)
class ResolvedObligation:
    """An obligation that exists on chain and has been loaded."""

    ledger: PositionLedger

    @property
    def exists(self) -> bool:
        return True

    def resolve_address(self, market: str, deriver: AddressDeriver, program_id: str) -> str:
        return self.ledger.address


@dataclass(frozen=True)
class PendingObligation:
    """An obligation the action will create from ``descriptor``."""

    descriptor: ObligationDescriptor
    owner: str

    @property
    def exists(self) -> bool:
        return False

    def resolve_address(self, market: str, deriver: AddressDeriver, program_id: str) -> str:
        return self.descriptor.to_address(market, self.owner, deriver, program_id)


ObligationRef = Union[ResolvedObligation, PendingObligation]
