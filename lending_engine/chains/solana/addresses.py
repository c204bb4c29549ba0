"""Program-derived addresses computed with solders."""
from typing import Sequence

from solders.pubkey import Pubkey


def _seed_bytes(seed: bytes | str) -> bytes:
    if isinstance(seed, bytes):
        return seed
    return bytes(Pubkey.from_string(seed))


class SoldersAddressDeriver:
    """``AddressDeriver`` backed by ``Pubkey.find_program_address``."""

    def find_program_address(self, seeds: Sequence[bytes | str], program_id: str) -> str:
        address, _bump = Pubkey.find_program_address(
            [_seed_bytes(seed) for seed in seeds], Pubkey.from_string(program_id)
        )
        return str(address)
