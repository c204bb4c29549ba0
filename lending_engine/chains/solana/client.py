"""Solana JSON-RPC client with fallback support."""
import base64
import logging
import ssl
from typing import Any, Sequence

import aiohttp
import certifi

from ...config import ChainConfig

logger = logging.getLogger(__name__)

# getMultipleAccounts accepts at most 100 keys per request.
MULTIPLE_ACCOUNTS_BATCH = 100


def _decode_account_data(account: dict[str, Any] | None) -> bytes | None:
    if not account:
        return None
    data = account.get("data")
    if not data:
        return b""
    return base64.b64decode(data[0])


class SolanaClient:
    """Solana RPC client with automatic endpoint fallback."""

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.commitment = config.commitment
        self.current_rpc_index = 0

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
                        if "error" in result:
                            raise RuntimeError(f"RPC Error: {result['error']}")

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to RPC endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result")
            except Exception as e:
                last_error = e
                logger.warning("RPC endpoint %s failed: %s", rpc_url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

        raise RuntimeError(f"All RPC endpoints failed. Last error: {last_error}")

    def _options(self, **extra: Any) -> dict[str, Any]:
        return {"encoding": "base64", "commitment": self.commitment, **extra}

    async def get_account_info(self, address: str) -> bytes | None:
        """Raw account data, or ``None`` if the account does not exist."""
        result = await self.rpc_call("getAccountInfo", [address, self._options()])
        return _decode_account_data((result or {}).get("value"))

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> list[bytes | None]:
        accounts: list[bytes | None] = []
        for start in range(0, len(addresses), MULTIPLE_ACCOUNTS_BATCH):
            batch = list(addresses[start : start + MULTIPLE_ACCOUNTS_BATCH])
            result = await self.rpc_call("getMultipleAccounts", [batch, self._options()])
            values = (result or {}).get("value") or [None] * len(batch)
            accounts.extend(_decode_account_data(value) for value in values)
        return accounts

    async def get_slot(self) -> int:
        result = await self.rpc_call("getSlot", [{"commitment": self.commitment}])
        return int(result)

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        result = await self.rpc_call(
            "getMinimumBalanceForRentExemption", [size, {"commitment": self.commitment}]
        )
        return int(result)

    async def get_program_accounts(
        self, program_id: str, filters: list[dict[str, Any]]
    ) -> list[tuple[str, bytes]]:
        """All accounts of ``program_id`` matching the memcmp/dataSize ``filters``."""
        result = await self.rpc_call(
            "getProgramAccounts", [program_id, self._options(filters=filters)]
        )
        accounts: list[tuple[str, bytes]] = []
        for item in result or []:
            data = _decode_account_data(item.get("account"))
            accounts.append((item["pubkey"], data or b""))
        logger.debug("getProgramAccounts %s returned %d accounts", program_id, len(accounts))
        return accounts
