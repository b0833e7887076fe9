"""Account pool for rotating between multiple Kiro accounts.

Provides sticky, round-robin and lowest-usage account selection with
rate limit, health and quota tracking. The pool holds state only; loading
and saving go through an injected :class:`AccountStore`.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from structlog import get_logger

from kiro_rotation.exceptions import ConfigurationError
from kiro_rotation.rotation.accounts import (
    Account,
    AccountDocument,
    AuthDetails,
    RefreshedAuth,
    RefreshParts,
    UsageDocument,
    UsageRecord,
    UsageSnapshot,
    ms_to_iso,
    now_ms,
)
from kiro_rotation.rotation.constants import (
    ANONYMOUS_EMAIL,
    DEFAULT_REGION,
    TOAST_DEBOUNCE_MS,
)
from kiro_rotation.rotation.interfaces import RefreshTokenCodec
from kiro_rotation.rotation.quota import quota_info
from kiro_rotation.rotation.storage import AccountStore


logger = get_logger(__name__)


class SelectionStrategy(StrEnum):
    """Algorithms for choosing the account that serves the next request."""

    STICKY = "sticky"
    ROUND_ROBIN = "round-robin"
    LOWEST_USAGE = "lowest-usage"


class CursorScope(StrEnum):
    """Which list a cursor position indexes into."""

    FULL_LIST = "full_list"
    AVAILABLE_LIST = "available_list"


@dataclass
class Cursor:
    """Selection position tagged with the list it refers to.

    Sticky and lowest-usage store an index into the full account list.
    Round-robin stores an offset into the list of currently available
    accounts, so the same number means different accounts under the two
    scopes.
    """

    position: int = 0
    scope: CursorScope = CursorScope.FULL_LIST


def cursor_scope_for(strategy: SelectionStrategy) -> CursorScope:
    if strategy is SelectionStrategy.ROUND_ROBIN:
        return CursorScope.AVAILABLE_LIST
    return CursorScope.FULL_LIST


def is_available(account: Account, now: int) -> bool:
    """Check if an account may serve a request at ``now``.

    An unhealthy account whose recovery time has passed is restored to
    healthy as part of the check.
    """
    if not account.is_healthy and not account.check_recovery(now):
        return False
    return not account.is_rate_limited(now)


def _apply_usage_record(account: Account, record: UsageRecord) -> None:
    account.server_used_count = record.used_count
    account.limit_count = record.limit_count
    account.real_email = record.real_email
    account.local_request_count = 0


class AccountPool:
    """In-memory pool of accounts and the single source of truth for a process.

    Features:
    - Pluggable selection strategy
    - Lazy recovery of unhealthy accounts once their recovery time passes
    - Rate limit tracking with back-off hints
    - Separate local request counting and server-reported quota usage

    The pool is not thread-safe; callers run one select/use/report cycle at
    a time.
    """

    def __init__(
        self,
        accounts: Iterable[Account] | None = None,
        usage: dict[str, UsageRecord] | None = None,
        strategy: SelectionStrategy | str = SelectionStrategy.STICKY,
        *,
        store: AccountStore | None = None,
        codec: RefreshTokenCodec | None = None,
        toast_debounce_ms: int = TOAST_DEBOUNCE_MS,
    ) -> None:
        """Initialize the pool.

        Args:
            accounts: Accounts in rotation order
            usage: Usage records keyed by account id; merged into accounts
            strategy: Selection strategy
            store: Store used by :meth:`flush` when none is passed
            codec: Refresh-token codec for credential refresh and export
            toast_debounce_ms: Default window for switch notifications
        """
        self._accounts: list[Account] = list(accounts or [])
        self._usage: dict[str, UsageRecord] = dict(usage or {})
        self._strategy = SelectionStrategy(strategy)
        self._cursor = Cursor(scope=cursor_scope_for(self._strategy))
        self._store = store
        self._codec = codec
        self._toast_debounce_ms = toast_debounce_ms
        self._last_toast_index = -1
        self._last_toast_time = 0

        for account in self._accounts:
            record = self._usage.get(account.id)
            if record is not None:
                _apply_usage_record(account, record)

    @classmethod
    def load_from_disk(
        cls,
        store: AccountStore,
        strategy: SelectionStrategy | str | None = None,
        *,
        codec: RefreshTokenCodec | None = None,
        default_region: str = DEFAULT_REGION,
        toast_debounce_ms: int = TOAST_DEBOUNCE_MS,
    ) -> "AccountPool":
        """Build a pool from the persisted account and usage documents.

        Usage records override any stale counters. The cursor always starts
        at 0; the persisted ``activeIndex`` is not restored.
        """
        accounts_document = store.load_accounts()
        usage_document = store.load_usage()

        accounts: list[Account] = []
        seen: set[str] = set()
        for entry in accounts_document.accounts:
            try:
                account = Account.from_metadata(entry, default_region=default_region)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(
                    "invalid_account_skipped",
                    account_id=entry.get("id") if isinstance(entry, dict) else None,
                    error=str(e),
                )
                continue
            if account.id in seen:
                logger.warning("duplicate_account_skipped", account_id=account.id)
                continue
            seen.add(account.id)
            accounts.append(account)

        pool = cls(
            accounts,
            usage_document.usage,
            strategy or SelectionStrategy.STICKY,
            store=store,
            codec=codec,
            toast_debounce_ms=toast_debounce_ms,
        )
        logger.info(
            "account_pool_loaded",
            count=len(accounts),
            strategy=str(pool.strategy),
            accounts_path=str(store.accounts_path),
        )
        return pool

    @property
    def strategy(self) -> SelectionStrategy:
        return self._strategy

    @property
    def cursor(self) -> Cursor:
        """A copy of the current selection cursor."""
        return Cursor(self._cursor.position, self._cursor.scope)

    @property
    def account_count(self) -> int:
        return len(self._accounts)

    @property
    def accounts(self) -> list[Account]:
        """Accounts in rotation order (shallow copy of the list)."""
        return list(self._accounts)

    @property
    def usage(self) -> dict[str, UsageRecord]:
        """Usage records keyed by account id (shallow copy)."""
        return dict(self._usage)

    def get_account(self, account_id: str) -> Account | None:
        for account in self._accounts:
            if account.id == account_id:
                return account
        return None

    def _index_of(self, account_id: str) -> int | None:
        for index, account in enumerate(self._accounts):
            if account.id == account_id:
                return index
        return None

    def _live(self, account: Account, action: str) -> Account | None:
        live = self.get_account(account.id)
        if live is None:
            logger.warning("unknown_account", account_id=account.id, action=action)
        return live

    def _require_codec(self) -> RefreshTokenCodec:
        if self._codec is None:
            raise ConfigurationError("No refresh-token codec configured for the pool")
        return self._codec

    def available_count(self, now: int | None = None) -> int:
        """Number of accounts that could serve a request right now."""
        now = now_ms() if now is None else now
        return sum(1 for account in self._accounts if is_available(account, now))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_next(self, now: int | None = None) -> Account | None:
        """Select the account that serves the next request.

        This is the main entry point for account selection. The selected
        account gets ``last_used`` stamped and its local request count
        incremented.

        Returns:
            Selected account, or None if no account is available
        """
        now = now_ms() if now is None else now
        available = [account for account in self._accounts if is_available(account, now)]

        if not available:
            logger.warning(
                "no_account_available",
                total=len(self._accounts),
                wait_ms=self.min_wait_time(now),
            )
            return None

        if self._strategy is SelectionStrategy.STICKY:
            selected = self._select_sticky(available, now)
        elif self._strategy is SelectionStrategy.ROUND_ROBIN:
            selected = self._select_round_robin(available)
        else:
            selected = self._select_lowest_usage(available)

        selected.record_request(now)
        logger.debug(
            "account_selected",
            account_id=selected.id,
            strategy=str(self._strategy),
            cursor=self._cursor.position,
            local_requests=selected.local_request_count,
        )
        return selected

    def _select_sticky(self, available: list[Account], now: int) -> Account:
        position = self._cursor.position
        if 0 <= position < len(self._accounts):
            current = self._accounts[position]
            if is_available(current, now):
                return current

        selected = available[0]
        self._cursor.position = self._accounts.index(selected)
        return selected

    def _select_round_robin(self, available: list[Account]) -> Account:
        count = len(available)
        selected = available[self._cursor.position % count]
        self._cursor.position = (self._cursor.position + 1) % count
        return selected

    def _select_lowest_usage(self, available: list[Account]) -> Account:
        # min() keeps the earliest account on a full tie
        selected = min(
            available,
            key=lambda account: (account.used_count or 0, account.last_used or 0),
        )
        self._cursor.position = self._accounts.index(selected)
        return selected

    def min_wait_time(self, now: int | None = None) -> int:
        """Milliseconds until the earliest rate limit resets, 0 if none is active."""
        now = now_ms() if now is None else now
        waits = [
            account.rate_limit_reset_time - now
            for account in self._accounts
            if account.rate_limit_reset_time is not None
        ]
        return min((wait for wait in waits if wait > 0), default=0)

    # ------------------------------------------------------------------
    # Switch notifications
    # ------------------------------------------------------------------

    def should_show_account_toast(
        self,
        account_index: int,
        debounce_ms: int | None = None,
        now: int | None = None,
    ) -> bool:
        """Whether a switch to ``account_index`` should be announced again."""
        now = now_ms() if now is None else now
        window = self._toast_debounce_ms if debounce_ms is None else debounce_ms
        return not (
            account_index == self._last_toast_index
            and now - self._last_toast_time < window
        )

    def mark_toast_shown(self, account_index: int, now: int | None = None) -> None:
        self._last_toast_index = account_index
        self._last_toast_time = now_ms() if now is None else now

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def sync_usage(
        self,
        account_id: str,
        snapshot: UsageSnapshot,
        now: int | None = None,
    ) -> UsageRecord | None:
        """Overwrite quota counters with a server-reported snapshot.

        Locally counted requests are discarded; the server value is
        authoritative.

        Returns:
            The stored usage record, or None if the account is unknown
        """
        now = now_ms() if now is None else now
        account = self.get_account(account_id)
        if account is None:
            logger.warning("unknown_account", account_id=account_id, action="sync_usage")
            return None

        if snapshot.email:
            account.real_email = snapshot.email
        record = UsageRecord(
            used_count=snapshot.used_count,
            limit_count=snapshot.limit_count,
            real_email=account.real_email,
            last_sync=now,
        )
        _apply_usage_record(account, record)
        self._usage[account_id] = record

        logger.debug(
            "account_usage_synced",
            account_id=account_id,
            used=record.used_count,
            limit=record.limit_count,
        )
        return record

    def upsert(self, account: Account) -> None:
        """Insert an account, or replace the one with the same id in place."""
        index = self._index_of(account.id)
        if index is None:
            self._accounts.append(account)
            logger.info("account_added", account_id=account.id)
        else:
            self._accounts[index] = account
            logger.info("account_replaced", account_id=account.id)

    def remove(self, account: Account) -> bool:
        """Remove an account and its usage record.

        Returns:
            True if removed (False if not found)
        """
        index = self._index_of(account.id)
        if index is None:
            logger.warning("unknown_account", account_id=account.id, action="remove")
            return False

        del self._accounts[index]
        self._usage.pop(account.id, None)

        if not self._accounts:
            self._cursor.position = 0
        elif self._cursor.position >= len(self._accounts):
            self._cursor.position = len(self._accounts) - 1

        logger.info("account_removed", account_id=account.id)
        return True

    def apply_refresh(
        self,
        account: Account,
        refreshed: RefreshedAuth,
        now: int | None = None,
    ) -> None:
        """Merge the result of an OAuth token refresh into an account."""
        now = now_ms() if now is None else now
        live = self._live(account, "apply_refresh")
        if live is None:
            return

        parts = self._require_codec().decode(refreshed.refresh_token_bundle)

        live.access_token = refreshed.access_token
        live.expires_at = refreshed.expires_at
        live.last_used = now
        if refreshed.email and refreshed.email != ANONYMOUS_EMAIL:
            live.real_email = refreshed.email
        if parts.refresh_token:
            live.refresh_token = parts.refresh_token
        if parts.profile_arn:
            live.profile_arn = parts.profile_arn
        if parts.client_id:
            live.client_id = parts.client_id

        logger.debug(
            "account_credentials_updated",
            account_id=live.id,
            expires_at=ms_to_iso(live.expires_at),
        )

    def mark_rate_limited(
        self,
        account: Account,
        retry_after_ms: int,
        now: int | None = None,
    ) -> None:
        """Make an account ineligible until ``retry_after_ms`` has elapsed."""
        now = now_ms() if now is None else now
        live = self._live(account, "mark_rate_limited")
        if live is None:
            return

        live.rate_limit_reset_time = now + retry_after_ms
        logger.info(
            "account_rate_limited",
            account_id=live.id,
            reset_time=ms_to_iso(live.rate_limit_reset_time),
        )

    def mark_unhealthy(
        self,
        account: Account,
        reason: str,
        recovery_time: int | None = None,
    ) -> None:
        """Take an account out of rotation.

        Args:
            account: Account to mark
            reason: Why the account is unhealthy
            recovery_time: Unix ms after which the account is re-evaluated.
                If None, the account stays unhealthy until marked healthy.
        """
        live = self._live(account, "mark_unhealthy")
        if live is None:
            return

        live.is_healthy = False
        live.unhealthy_reason = reason
        live.recovery_time = recovery_time
        logger.warning(
            "account_unhealthy",
            account_id=live.id,
            reason=reason,
            recovery_time=ms_to_iso(recovery_time),
        )

    def mark_healthy(self, account: Account) -> None:
        """Return an unhealthy account to rotation."""
        live = self._live(account, "mark_healthy")
        if live is None:
            return

        previous_reason = live.unhealthy_reason
        live.is_healthy = True
        live.unhealthy_reason = None
        live.recovery_time = None
        logger.info("account_healthy", account_id=live.id, previous_reason=previous_reason)

    # ------------------------------------------------------------------
    # Persistence and export
    # ------------------------------------------------------------------

    def flush(self, store: AccountStore | None = None) -> None:
        """Persist the pool: account document first, then usage document.

        Each document is written atomically under its own lock. Usage records
        of accounts no longer in the pool are not written.

        Raises:
            LockAcquisitionError: If either lock could not be acquired
            ConfigurationError: If no store is available
        """
        store = store or self._store
        if store is None:
            raise ConfigurationError("No account store configured for the pool")

        account_ids = {account.id for account in self._accounts}
        accounts_document = AccountDocument(
            accounts=[account.to_metadata() for account in self._accounts],
            active_index=self._cursor.position,
        )
        usage_document = UsageDocument(
            usage={
                account_id: record
                for account_id, record in self._usage.items()
                if account_id in account_ids
            }
        )

        store.save_accounts(accounts_document)
        store.save_usage(usage_document)
        logger.info(
            "account_pool_saved",
            count=len(self._accounts),
            usage_records=len(usage_document.usage),
        )

    def to_auth_details(self, account: Account) -> AuthDetails:
        """Export an account's credentials in upstream OAuth form."""
        parts = RefreshParts(
            refresh_token=account.refresh_token,
            auth_method=account.auth_method,
            profile_arn=account.profile_arn,
            client_id=account.client_id,
            client_secret=account.client_secret,
        )
        return AuthDetails(
            refresh=self._require_codec().encode(parts),
            access=account.access_token,
            expires=account.expires_at,
            auth_method=account.auth_method,
            region=account.region or DEFAULT_REGION,
            profile_arn=account.profile_arn,
            client_id=account.client_id,
            client_secret=account.client_secret,
            email=account.email,
        )

    def get_status(self, now: int | None = None) -> dict[str, Any]:
        """Get pool status for monitoring.

        Returns:
            Status dictionary with counts and account details
        """
        now = now_ms() if now is None else now
        available = self.available_count(now)

        return {
            "strategy": str(self._strategy),
            "cursor": self._cursor.position,
            "totalAccounts": self.account_count,
            "availableAccounts": available,
            "rateLimitedAccounts": sum(
                1 for account in self._accounts if account.is_rate_limited(now)
            ),
            "unhealthyAccounts": sum(
                1 for account in self._accounts if not account.is_healthy
            ),
            "minWaitMs": self.min_wait_time(now),
            "accounts": [
                self._get_account_status(account, now) for account in self._accounts
            ],
        }

    def _get_account_status(self, account: Account, now: int) -> dict[str, Any]:
        """Get status for a single account."""
        quota = quota_info(account)
        return {
            "id": account.id,
            "email": account.email,
            "realEmail": account.real_email,
            "authMethod": str(account.auth_method),
            "region": account.region,
            "available": is_available(account, now),
            "isHealthy": account.is_healthy,
            "unhealthyReason": account.unhealthy_reason,
            "recoveryTime": ms_to_iso(account.recovery_time),
            "rateLimitedUntil": ms_to_iso(account.rate_limit_reset_time),
            "lastUsed": ms_to_iso(account.last_used),
            "tokenExpiresAt": ms_to_iso(account.expires_at),
            "localRequestCount": account.local_request_count,
            "quota": {
                "status": str(quota.status),
                "used": quota.used,
                "limit": quota.limit,
                "remaining": None if quota.remaining == float("inf") else quota.remaining,
                "percentage": quota.percentage,
            },
        }
