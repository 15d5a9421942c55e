"""Access scope codec.

Deribit describes what a token may do with a comma-separated list of
``key:value`` tokens, e.g.::

    mainaccount,connection,session:bot,account:read,trade:read_write,ip:*

``Scope.encode`` produces the canonical form (fixed token order) and
``Scope.decode`` reads it back. Unknown tokens are ignored on decode.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

DEFAULT_SESSION: Final[str] = "default"

ANY_IP: Final[str] = "*"


class Access(Enum):
    """Access level for one permission area."""

    NONE = "none"
    READ = "read"
    READ_WRITE = "read_write"


_ACCESS_AREAS: Final[tuple[str, ...]] = ("account", "trade", "wallet", "block_trade", "block_rfq")

_ACCESS_TOKENS: Final[dict[Access, str]] = {
    Access.READ: "read",
    Access.READ_WRITE: "read_write",
}

_ACCESS_BY_TOKEN: Final[dict[str, Access]] = {
    "read": Access.READ,
    "write": Access.READ_WRITE,
    "read_write": Access.READ_WRITE,
}


@dataclass(frozen=True, slots=True)
class Scope:
    """Structured access scope.

    Attributes:
        mainaccount: Token is bound to the main account
        connection: Token is valid for this connection only
        session: Named session; ``"default"`` unless set
        account, trade, wallet, block_trade, block_rfq: Access per area
        expires_in: Requested token lifetime in seconds
        ip: ``None`` when unrestricted by scope, ``"*"`` for any address,
            otherwise the single allowed address
    """

    mainaccount: bool = False
    connection: bool = False
    session: str = DEFAULT_SESSION
    account: Access = Access.NONE
    trade: Access = Access.NONE
    wallet: Access = Access.NONE
    expires_in: int | None = None
    ip: str | None = None
    block_trade: Access = Access.NONE
    block_rfq: Access = Access.NONE

    def __post_init__(self) -> None:
        if not self.session or "," in self.session:
            raise ValueError(f"Invalid session name: {self.session!r}")
        if self.expires_in is not None and self.expires_in < 0:
            raise ValueError(f"expires_in must be non-negative, got {self.expires_in}")
        if self.ip is not None and ("," in self.ip or not self.ip):
            raise ValueError(f"Invalid ip restriction: {self.ip!r}")

    @classmethod
    def named(cls, name: str) -> Scope:
        """Default scope for a named session."""
        return cls(session=name)

    def encode(self) -> str:
        """Serialize to the canonical comma-separated form."""
        parts: list[str] = []
        if self.mainaccount:
            parts.append("mainaccount")
        if self.connection:
            parts.append("connection")
        parts.append(f"session:{self.session}")
        for area in ("account", "trade", "wallet"):
            token = _ACCESS_TOKENS.get(getattr(self, area))
            if token:
                parts.append(f"{area}:{token}")
        if self.expires_in is not None:
            parts.append(f"expires_in:{self.expires_in}")
        if self.ip is not None:
            parts.append(f"ip:{self.ip}")
        for area in ("block_trade", "block_rfq"):
            token = _ACCESS_TOKENS.get(getattr(self, area))
            if token:
                parts.append(f"{area}:{token}")
        return ",".join(parts)

    @classmethod
    def decode(cls, text: str) -> Scope:
        """Parse a scope string. Unknown or malformed tokens are skipped."""
        fields: dict[str, object] = {}
        for part in text.split(","):
            if part == "mainaccount":
                fields["mainaccount"] = True
            elif part == "connection":
                fields["connection"] = True
            elif ":" in part:
                key, _, value = part.partition(":")
                if key == "session" and value:
                    fields["session"] = value
                elif key in _ACCESS_AREAS and value in _ACCESS_BY_TOKEN:
                    fields[key] = _ACCESS_BY_TOKEN[value]
                elif key == "expires_in" and value.isascii() and value.isdecimal():
                    fields["expires_in"] = int(value)
                elif key == "ip" and value:
                    fields["ip"] = value
        return cls(**fields)

    def __str__(self) -> str:
        return self.encode()
