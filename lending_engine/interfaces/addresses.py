"""Address deriver protocol — deterministic program-derived addresses."""
from typing import Protocol, Sequence


class AddressDeriver(Protocol):
    """Derive an address from seeds; ``str`` seeds are base58 account keys."""

    def find_program_address(self, seeds: Sequence[bytes | str], program_id: str) -> str: ...
