from cachetools import FIFOCache


class RevokedTokenRegistry:
    """Logged-out access tokens. Bounded: once full, the oldest revocation is forgotten."""

    def __init__(self, capacity: int = 10000) -> None:
        self._tokens: FIFOCache = FIFOCache(maxsize=capacity)

    def revoke(self, token: str) -> None:
        self._tokens[token] = True

    def is_revoked(self, token: str) -> bool:
        return token in self._tokens

    def clear(self) -> None:
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)
