"""Solana chain adapters."""
from .addresses import SoldersAddressDeriver
from .client import SolanaClient

__all__ = ["SolanaClient", "SoldersAddressDeriver"]
