"""Protocol interfaces for the lending engine's external collaborators."""
from .addresses import AddressDeriver
from .chain import ChainClient
from .decoder import AccountDecoder
from .price_oracle import PriceOracle
from .submitter import Submitter

__all__ = ["AccountDecoder", "AddressDeriver", "ChainClient", "PriceOracle", "Submitter"]
