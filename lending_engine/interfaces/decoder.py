"""Account decoder protocol — binary account layouts to typed records."""
from typing import Any, Protocol

from ..models import AccountKind


class AccountDecoder(Protocol):
    """Decode raw account data; ``None`` means the bytes are not that kind."""

    def decode(self, kind: AccountKind, data: bytes) -> Any | None: ...

    def discriminator(self, kind: AccountKind) -> bytes: ...
