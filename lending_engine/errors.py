"""Error taxonomy for market reads, position math and instruction sequencing."""
from __future__ import annotations


class LendingError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "LENDING_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class NotFoundError(LendingError):
    """A reserve, mint, obligation or obligation entry could not be resolved."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str, detail: str = "") -> None:
        message = f"{resource} '{identifier}' not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class LimitExceededError(LendingError):
    """Position-count limit or a reserve deposit/borrow cap would be exceeded."""

    code = "LIMIT_EXCEEDED"


class InvalidStateError(LendingError):
    """A required input is missing or an operation was called out of order."""

    code = "INVALID_STATE"


class TierMismatchError(LendingError):
    """The reserve is not part of the obligation's elevation group."""

    code = "TIER_MISMATCH"

    def __init__(self, reserve: str, elevation_group: int, operation: str) -> None:
        super().__init__(
            f"Reserve {reserve} does not support elevation group {elevation_group}; "
            f"the obligation would have to leave the group to {operation} it"
        )
        self.reserve = reserve
        self.elevation_group = elevation_group


class ConfigurationError(LendingError, ValueError):
    """Oracle routing, elevation group table or configuration file is unusable."""

    code = "CONFIGURATION"
