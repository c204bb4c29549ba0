"""Submitter protocol — signs, sends and confirms an instruction list."""
from typing import Protocol, Sequence

from ..models import Instruction


class Submitter(Protocol):
    """Abstract interface for the transaction submission collaborator."""

    async def submit(self, instructions: Sequence[Instruction], payer: str) -> str: ...
