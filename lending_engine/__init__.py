"""Client-side engine for a collateralized lending market on Solana."""
from .config import AppConfig, load_config
from .errors import (
    ConfigurationError,
    InvalidStateError,
    LendingError,
    LimitExceededError,
    NotFoundError,
    TierMismatchError,
)
from .fixed_point import FixedPoint
from .lending import Action, MarketView, ObligationDescriptor, PositionLedger, ReserveView
from .logging_setup import configure_logging
from .models import ActionKind
from .services import LendingClient

__all__ = [
    "Action",
    "ActionKind",
    "AppConfig",
    "ConfigurationError",
    "FixedPoint",
    "InvalidStateError",
    "LendingClient",
    "LendingError",
    "LimitExceededError",
    "MarketView",
    "NotFoundError",
    "ObligationDescriptor",
    "PositionLedger",
    "ReserveView",
    "TierMismatchError",
    "configure_logging",
    "load_config",
]
