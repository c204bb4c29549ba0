"""Piecewise-linear borrow rate curve and interest compounding."""
from __future__ import annotations

import logging
from typing import Sequence

from ..constants import SLOTS_PER_YEAR
from ..errors import ConfigurationError
from ..fixed_point import ONE, FixedPoint
from ..models import CurvePoint
from .parser import truncate_borrow_curve

logger = logging.getLogger(__name__)


class InterestRateModel:
    """Utilization → annual borrow rate for one reserve.

    The curve is a list of ``(utilization, rate)`` points sorted by
    utilization, starting at 0 and terminated by the single point at 1.0.
    """

    def __init__(self, curve: Sequence[tuple[float, float]]) -> None:
        points = [(float(u), float(r)) for u, r in curve]
        if len(points) < 2:
            raise ConfigurationError(f"Borrow curve needs at least two points, got {len(points)}")
        if points[0][0] != 0.0:
            raise ConfigurationError(f"Borrow curve must start at 0% utilization, got {points[0][0]}")
        if points[-1][0] != 1.0:
            raise ConfigurationError(f"Borrow curve must end at 100% utilization, got {points[-1][0]}")
        for (u0, _), (u1, _) in zip(points, points[1:]):
            if u1 <= u0:
                raise ConfigurationError(f"Borrow curve utilizations must increase: {u0} then {u1}")
        self._curve = points

    @classmethod
    def from_points(cls, points: Sequence[CurvePoint]) -> InterestRateModel:
        return cls(truncate_borrow_curve(points))

    @property
    def curve(self) -> list[tuple[float, float]]:
        return list(self._curve)

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------

    def borrow_rate(self, utilization: float) -> float:
        """Linear interpolation between the two points bracketing ``utilization``.

        An exact hit on a point returns that point's rate; values outside
        [0, 1] are clamped.
        """
        utilization = min(max(utilization, 0.0), 1.0)
        for (u0, r0), (u1, r1) in zip(self._curve, self._curve[1:]):
            if utilization == u0:
                return r0
            if utilization == u1:
                return r1
            if u0 < utilization < u1:
                slope = (r1 - r0) / (u1 - u0)
                return r0 + (utilization - u0) * slope
        return self._curve[-1][1]

    def supply_rate(self, utilization: float, protocol_take_rate_pct: int = 0) -> float:
        """Supply APR = utilization * borrow APR * (1 - protocol take rate)."""
        utilization = min(max(utilization, 0.0), 1.0)
        return utilization * self.borrow_rate(utilization) * (1 - protocol_take_rate_pct / 100)

    # ------------------------------------------------------------------
    # Compounding
    # ------------------------------------------------------------------

    @staticmethod
    def compound_factor(apr: float, elapsed_slots: int) -> FixedPoint:
        """``(1 + apr / SLOTS_PER_YEAR) ** elapsed_slots`` in fixed point."""
        if elapsed_slots <= 0:
            return ONE
        per_slot = FixedPoint.from_float(apr) / SLOTS_PER_YEAR
        return (ONE + per_slot) ** elapsed_slots

    @classmethod
    def compound(cls, index: FixedPoint, apr: float, elapsed_slots: int) -> FixedPoint:
        """Advance a cumulative borrow index by ``elapsed_slots`` at ``apr``."""
        return index * cls.compound_factor(apr, elapsed_slots)


def apy_from_apr(apr: float) -> float:
    """Slot-compounded APY for a nominal APR."""
    return (1 + apr / SLOTS_PER_YEAR) ** SLOTS_PER_YEAR - 1
