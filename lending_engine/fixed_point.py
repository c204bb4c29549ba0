"""Scaled-integer arithmetic matching the on-chain 60-bit fraction type.

Every amount, price and ratio the program stores with an ``_sf`` suffix is an
unsigned integer holding ``value * 2**60``. ``FixedPoint`` keeps that raw
integer and reproduces the program's rounding: products and quotients are
floored, nothing is ever routed through binary floats. Floats are only
produced on request for display or for the interest curve, which the program
itself evaluates on a coarse basis-point grid.
"""
from __future__ import annotations

import functools
from decimal import ROUND_FLOOR, Decimal, localcontext
from fractions import Fraction
from typing import Union

FRACTION_BITS = 60
SCALE = 1 << FRACTION_BITS

_DECIMAL_PRECISION = 80

Operand = Union["FixedPoint", int]


@functools.total_ordering
class FixedPoint:
    """Signed rational ``raw / 2**60``."""

    __slots__ = ("raw",)

    def __init__(self, raw: int) -> None:
        if not isinstance(raw, int) or isinstance(raw, bool):
            raise TypeError(f"FixedPoint raw value must be int, got {type(raw).__name__}")
        self.raw = raw

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_int(cls, value: int) -> FixedPoint:
        return cls(int(value) << FRACTION_BITS)

    @classmethod
    def from_decimal(cls, value: Decimal | str | int) -> FixedPoint:
        """Convert a decimal (or decimal string), flooring below 2**-60."""
        with localcontext() as ctx:
            ctx.prec = _DECIMAL_PRECISION
            scaled = Decimal(value) * SCALE
            return cls(int(scaled.to_integral_value(rounding=ROUND_FLOOR)))

    @classmethod
    def from_float(cls, value: float) -> FixedPoint:
        exact = Fraction(value)
        return cls((exact.numerator << FRACTION_BITS) // exact.denominator)

    @classmethod
    def from_ratio(cls, numerator: int, denominator: int) -> FixedPoint:
        if denominator == 0:
            raise ZeroDivisionError("FixedPoint ratio with zero denominator")
        return cls((int(numerator) << FRACTION_BITS) // int(denominator))

    @classmethod
    def from_percent(cls, pct: int) -> FixedPoint:
        return cls.from_ratio(pct, 100)

    @classmethod
    def from_bps(cls, bps: int) -> FixedPoint:
        return cls.from_ratio(bps, 10_000)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(other: object) -> FixedPoint | None:
        if isinstance(other, FixedPoint):
            return other
        if isinstance(other, int) and not isinstance(other, bool):
            return FixedPoint.from_int(other)
        return None

    def __add__(self, other: Operand) -> FixedPoint:
        rhs = self._coerce(other)
        if rhs is None:
            return NotImplemented
        return FixedPoint(self.raw + rhs.raw)

    __radd__ = __add__

    def __sub__(self, other: Operand) -> FixedPoint:
        rhs = self._coerce(other)
        if rhs is None:
            return NotImplemented
        return FixedPoint(self.raw - rhs.raw)

    def __rsub__(self, other: Operand) -> FixedPoint:
        lhs = self._coerce(other)
        if lhs is None:
            return NotImplemented
        return FixedPoint(lhs.raw - self.raw)

    def __neg__(self) -> FixedPoint:
        return FixedPoint(-self.raw)

    def __abs__(self) -> FixedPoint:
        return FixedPoint(abs(self.raw))

    def __mul__(self, other: Operand) -> FixedPoint:
        if isinstance(other, int) and not isinstance(other, bool):
            return FixedPoint(self.raw * other)
        if not isinstance(other, FixedPoint):
            return NotImplemented
        return FixedPoint((self.raw * other.raw) >> FRACTION_BITS)

    __rmul__ = __mul__

    def __truediv__(self, other: Operand) -> FixedPoint:
        if isinstance(other, int) and not isinstance(other, bool):
            if other == 0:
                raise ZeroDivisionError("FixedPoint division by zero")
            return FixedPoint(self.raw // other)
        if not isinstance(other, FixedPoint):
            return NotImplemented
        if other.raw == 0:
            raise ZeroDivisionError("FixedPoint division by zero")
        return FixedPoint((self.raw << FRACTION_BITS) // other.raw)

    def __rtruediv__(self, other: Operand) -> FixedPoint:
        lhs = self._coerce(other)
        if lhs is None:
            return NotImplemented
        return lhs / self

    def safe_div(self, other: Operand) -> FixedPoint:
        """Ratio used for display statistics: zero when the denominator is zero."""
        rhs = self._coerce(other)
        if rhs is None:
            raise TypeError(f"unsupported operand for safe_div: {type(other).__name__}")
        if rhs.raw == 0:
            return ZERO
        return self / rhs

    def __pow__(self, exponent: int) -> FixedPoint:
        """Exponentiation by squaring; every intermediate product is floored."""
        if not isinstance(exponent, int) or exponent < 0:
            raise ValueError("FixedPoint exponent must be a non-negative int")
        result = ONE
        base = self
        while exponent:
            if exponent & 1:
                result = result * base
            exponent >>= 1
            if exponent:
                base = base * base
        return result

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        rhs = self._coerce(other)
        if rhs is None:
            return NotImplemented
        return self.raw == rhs.raw

    def __lt__(self, other: Operand) -> bool:
        rhs = self._coerce(other)
        if rhs is None:
            return NotImplemented
        return self.raw < rhs.raw

    def __hash__(self) -> int:
        return hash(("FixedPoint", self.raw))

    def __bool__(self) -> bool:
        return self.raw != 0

    def is_zero(self) -> bool:
        return self.raw == 0

    def positive_or_zero(self) -> FixedPoint:
        return self if self.raw > 0 else ZERO

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def floor(self) -> int:
        return self.raw >> FRACTION_BITS

    def ceil(self) -> int:
        return -((-self.raw) >> FRACTION_BITS)

    def to_decimal(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _DECIMAL_PRECISION
            return Decimal(self.raw) / Decimal(SCALE)

    def quantize(self, places: int = 6, rounding: str = ROUND_FLOOR) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _DECIMAL_PRECISION
            return self.to_decimal().quantize(Decimal(1).scaleb(-places), rounding=rounding)

    def __float__(self) -> float:
        return self.raw / SCALE

    def __int__(self) -> int:
        return self.floor()

    def __repr__(self) -> str:
        return f"FixedPoint({self.quantize(12)})"

    def __str__(self) -> str:
        with localcontext() as ctx:
            ctx.prec = _DECIMAL_PRECISION
            return f"{self.quantize(12).normalize():f}"


ZERO = FixedPoint(0)
ONE = FixedPoint(SCALE)


def as_fixed(value: FixedPoint | int | Decimal | str) -> FixedPoint:
    """Accept a caller-facing amount in any exact form."""
    if isinstance(value, FixedPoint):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return FixedPoint.from_int(value)
    if isinstance(value, (Decimal, str)):
        return FixedPoint.from_decimal(value)
    raise TypeError(f"Cannot convert {type(value).__name__} to FixedPoint")

