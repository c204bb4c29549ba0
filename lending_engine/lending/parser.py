"""Pure conversion helpers for decoded lending records. No I/O."""
from __future__ import annotations

from typing import Sequence

from ..constants import ONE_HUNDRED_PCT_IN_BPS
from ..fixed_point import FixedPoint
from ..models import CurvePoint

_WORD_BITS = 64
_WORD_MASK = (1 << _WORD_BITS) - 1
BIG_FRACTION_WORDS = 4


def parse_token_symbol(name: bytes | str) -> str:
    """Decode the fixed-size, NUL padded token name stored in reserve config.

    Examples:
        b"SOL\\x00\\x00..." → "SOL"
        "USDC" → "USDC"
    """
    if isinstance(name, str):
        return name.rstrip("\x00").strip()
    return name.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()


def truncate_borrow_curve(points: Sequence[CurvePoint]) -> list[tuple[float, float]]:
    """Convert bps curve points to fractions, stopping at the 100% utilization point.

    The on-chain curve is a fixed array of 11 points padded by repeating the
    terminal point, so anything after the first 100% entry is filler.
    """
    curve: list[tuple[float, float]] = []
    for point in points:
        curve.append(
            (
                point.utilization_rate_bps / ONE_HUNDRED_PCT_IN_BPS,
                point.borrow_rate_bps / ONE_HUNDRED_PCT_IN_BPS,
            )
        )
        if point.utilization_rate_bps == ONE_HUNDRED_PCT_IN_BPS:
            break
    return curve


def big_fraction_to_fixed(words: Sequence[int]) -> FixedPoint:
    """Assemble little-endian u64 words of a 256-bit scaled fraction."""
    raw = 0
    for index, word in enumerate(words):
        raw |= (int(word) & _WORD_MASK) << (_WORD_BITS * index)
    return FixedPoint(raw)


def fixed_to_big_fraction(value: FixedPoint) -> tuple[int, ...]:
    """Split a non-negative fraction into the little-endian u64 word layout."""
    if value.raw < 0:
        raise ValueError("big fractions are unsigned")
    return tuple(
        (value.raw >> (_WORD_BITS * index)) & _WORD_MASK
        for index in range(BIG_FRACTION_WORDS)
    )


def mint_factor(decimals: int) -> int:
    """10^decimals."""
    return 10**decimals


def token_value(amount: FixedPoint, price: FixedPoint, decimals: int) -> FixedPoint:
    """Market value of a raw token amount: ``amount * price / 10^decimals``."""
    return amount * price / mint_factor(decimals)


def ratio_or_zero(numerator: FixedPoint, denominator: FixedPoint) -> float:
    """Float ratio for rate-curve inputs; zero when the denominator is zero."""
    return float(numerator.safe_div(denominator))
