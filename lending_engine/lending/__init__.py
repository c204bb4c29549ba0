"""Market state, position math and instruction sequencing for the lending program."""
from .action import Action, ActionState, ActionTransactions, FarmKind
from .interest_rate import InterestRateModel
from .market import MarketView, ProductTvl
from .obligation import PositionLedger, SimulationResult
from .obligation_type import ObligationDescriptor, ObligationTag, PendingObligation, ResolvedObligation
from .reserve import ReserveView

__all__ = [
    "Action",
    "ActionState",
    "ActionTransactions",
    "FarmKind",
    "InterestRateModel",
    "MarketView",
    "ObligationDescriptor",
    "ObligationTag",
    "PendingObligation",
    "PositionLedger",
    "ProductTvl",
    "ReserveView",
    "ResolvedObligation",
    "SimulationResult",
]
