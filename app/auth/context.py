"""Process-wide authorization services, built once from settings and the static RBAC policy."""

from app.auth.cache import AuthorizationCache
from app.auth.rate_limit import RateLimiter
from app.auth.revocation import RevokedTokenRegistry
from app.auth.store import SqlIdentityStore, SqlRoleGraphStore
from app.core.config import settings
from app.core.rbac_policy import load_policy
from app.db.session import AsyncSessionLocal

policy = load_policy(settings.rbac_policy_file)

identity_store = SqlIdentityStore(AsyncSessionLocal)
role_graph_store = SqlRoleGraphStore(AsyncSessionLocal)

authorization_cache = AuthorizationCache(
    identity_store,
    role_graph_store,
    policy,
    ttl_seconds=settings.auth_cache_ttl_seconds,
    max_entries=settings.auth_cache_max_entries,
    load_timeout=settings.auth_load_timeout_seconds,
)

rate_limiter = RateLimiter(
    policy.rate_limit_tiers,
    max_tracked_users=settings.rate_limit_max_tracked_users,
)

revoked_tokens = RevokedTokenRegistry(settings.revoked_token_capacity)


def clear_user_state(user_id) -> None:
    """Drop everything held in memory for a user (logout)."""
    authorization_cache.invalidate(user_id)
    rate_limiter.reset(user_id)
