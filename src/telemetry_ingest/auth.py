"""
Bearer-token authentication for the ingestion endpoints.
"""

from __future__ import annotations

import hmac
from typing import Iterable, Optional, Protocol


class TokenVerifier(Protocol):
    def verify(self, token: str) -> bool: ...


class StaticTokenVerifier:
    """Accepts any token from a fixed set (``API_TOKENS``).

    An empty set rejects everything.
    """

    def __init__(self, tokens: Iterable[str]):
        self._tokens = tuple(t for t in tokens if t)

    def verify(self, token: str) -> bool:
        # constant time over the whole token set
        ok = False
        for known in self._tokens:
            ok |= hmac.compare_digest(token.encode(), known.encode())
        return ok


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
