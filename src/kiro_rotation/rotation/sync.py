"""Glue between the account pool and its network-facing collaborators.

The pool never performs network calls itself; these helpers call a refresh
provider or usage fetcher and fold the result back into pool state. Failures
are not retried here; retry policy belongs to the caller.
"""

from structlog import get_logger

from kiro_rotation.exceptions import AuthenticationError
from kiro_rotation.rotation.accounts import Account, UsageRecord, now_ms
from kiro_rotation.rotation.interfaces import RefreshProvider, UsageFetcher
from kiro_rotation.rotation.pool import AccountPool
from kiro_rotation.rotation.quota import QuotaStatus, classify, next_quota_reset


logger = get_logger(__name__)


async def refresh_account(
    pool: AccountPool,
    account: Account,
    provider: RefreshProvider,
    now: int | None = None,
) -> None:
    """Refresh an account's OAuth tokens and apply them to the pool.

    An account whose refresh token is rejected is marked unhealthy with no
    recovery time; it needs re-authentication.

    Raises:
        AuthenticationError: If the provider rejected the refresh token
    """
    try:
        refreshed = await provider.refresh(pool.to_auth_details(account))
    except AuthenticationError as e:
        logger.error("token_refresh_rejected", account_id=account.id, error=str(e))
        pool.mark_unhealthy(account, f"Refresh token rejected: {e.message}")
        raise

    pool.apply_refresh(account, refreshed, now=now)
    logger.info("token_refresh_success", account_id=account.id)


async def sync_account_usage(
    pool: AccountPool,
    account: Account,
    fetcher: UsageFetcher,
    now: int | None = None,
) -> UsageRecord | None:
    """Fetch an account's quota snapshot and store it in the pool.

    An account whose quota turns out exhausted is taken out of rotation
    until the next monthly quota reset.

    Returns:
        The stored usage record, or None if the account left the pool
    """
    now = now_ms() if now is None else now
    snapshot = await fetcher.fetch(pool.to_auth_details(account))
    record = pool.sync_usage(account.id, snapshot, now=now)
    if record is None:
        return None

    live = pool.get_account(account.id)
    if live is not None and classify(live) is QuotaStatus.EXHAUSTED:
        pool.mark_unhealthy(live, "Quota exhausted", next_quota_reset(now))

    return record
