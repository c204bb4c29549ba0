"""Chain client protocol — account and slot reads."""
from typing import Any, Protocol, Sequence


class ChainClient(Protocol):
    """Abstract interface for the ledger RPC calls the engine needs."""

    async def get_account_info(self, address: str) -> bytes | None: ...

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> list[bytes | None]: ...

    async def get_slot(self) -> int: ...

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int: ...

    async def get_program_accounts(
        self, program_id: str, filters: list[dict[str, Any]]
    ) -> list[tuple[str, bytes]]: ...
