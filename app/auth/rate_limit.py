"""Per-user request budget. The window and budget come from the user's highest-priority role."""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Dict, List, Optional
from uuid import UUID

from cachetools import TTLCache

from app.core.exceptions import RateLimitExceeded
from app.core.rbac_policy import RateLimitTier


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: datetime


@dataclass
class _Window:
    started_at: float
    requests: int


class RateLimiter:
    """
    In-process and synchronous; there is no coordination between worker processes.
    Idle windows are evicted once the longest configured window has elapsed.
    """

    def __init__(
        self,
        tiers: List[RateLimitTier],
        *,
        max_tracked_users: int = 50000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not tiers:
            raise ValueError("At least one rate limit tier is required")
        self._tiers = list(tiers)
        self._default = self._tiers[-1]
        self._clock = clock
        longest = max(t.window_seconds for t in self._tiers)
        self._windows: TTLCache = TTLCache(maxsize=max_tracked_users, ttl=longest, timer=clock)

    def tier_for(self, roles: AbstractSet[str]) -> RateLimitTier:
        for tier in self._tiers:
            if tier.role in roles:
                return tier
        return self._default

    def check(self, user_id: UUID, effective_roles: AbstractSet[str]) -> RateLimitStatus:
        tier = self.tier_for(effective_roles)
        now = self._clock()
        window: Optional[_Window] = self._windows.get(user_id)

        if window is None or now - window.started_at > tier.window_seconds:
            window = _Window(started_at=now, requests=0)

        reset_at = datetime.fromtimestamp(window.started_at + tier.window_seconds, tz=timezone.utc)
        if window.requests >= tier.requests:
            raise RateLimitExceeded(limit=tier.requests, reset_at=reset_at)

        window.requests += 1
        self._windows[user_id] = window
        return RateLimitStatus(
            limit=tier.requests,
            remaining=max(0, tier.requests - window.requests),
            reset_at=reset_at,
        )

    def reset(self, user_id: UUID) -> None:
        self._windows.pop(user_id, None)

    def reset_all(self) -> None:
        self._windows.clear()

    def stats(self) -> Dict[str, int]:
        self._windows.expire()
        return {"tracked_users": len(self._windows)}
