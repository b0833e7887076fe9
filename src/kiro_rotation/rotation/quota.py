"""Quota classification and ranking.

Pure functions over account quota counters. Missing counters mean quota is
unknown, which is treated optimistically: healthy, with unlimited headroom.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from kiro_rotation.rotation.accounts import Account
from kiro_rotation.rotation.constants import WARNING_THRESHOLD_PERCENT


class QuotaStatus(StrEnum):
    """Quota state of an account."""

    HEALTHY = "healthy"
    WARNING = "warning"
    EXHAUSTED = "exhausted"


@dataclass
class QuotaInfo:
    """Quota summary used for status reporting."""

    status: QuotaStatus
    used: int | None
    limit: int | None
    remaining: float
    percentage: int


def usage_percentage(used: int, limit: int) -> int:
    """Percentage of ``limit`` consumed, rounded half up; 0 when limit <= 0."""
    if limit <= 0:
        return 0
    return math.floor(used / limit * 100 + 0.5)


def is_exhausted(used: int, limit: int) -> bool:
    return used >= limit


def remaining_count(used: int, limit: int) -> int:
    return max(0, limit - used)


def _known_quota(account: Account) -> tuple[int, int] | None:
    used = account.used_count
    limit = account.limit_count
    if not used or not limit:
        return None
    return used, limit


def classify(account: Account) -> QuotaStatus:
    """Classify an account's quota state.

    Accounts whose used or limit counter is absent or zero cannot be
    evaluated and count as healthy.
    """
    quota = _known_quota(account)
    if quota is None:
        return QuotaStatus.HEALTHY

    used, limit = quota
    if is_exhausted(used, limit):
        return QuotaStatus.EXHAUSTED
    if usage_percentage(used, limit) >= WARNING_THRESHOLD_PERCENT:
        return QuotaStatus.WARNING
    return QuotaStatus.HEALTHY


def remaining(account: Account) -> float:
    """Remaining quota, ``math.inf`` when unknown."""
    quota = _known_quota(account)
    if quota is None:
        return math.inf
    return remaining_count(*quota)


def rank_by_remaining(accounts: Iterable[Account]) -> list[Account]:
    """Sort accounts by remaining quota, most headroom first."""
    return sorted(accounts, key=remaining, reverse=True)


def filter_healthy(accounts: Iterable[Account]) -> list[Account]:
    """Accounts that are healthy and not quota-exhausted."""
    return [
        account
        for account in accounts
        if account.is_healthy and classify(account) is not QuotaStatus.EXHAUSTED
    ]


def account_with_most_quota(accounts: Iterable[Account]) -> Account | None:
    """The healthy, non-exhausted account with the most remaining quota."""
    ranked = rank_by_remaining(filter_healthy(accounts))
    return ranked[0] if ranked else None


def quota_info(account: Account) -> QuotaInfo:
    """Summarize an account's quota for display."""
    used = account.used_count
    limit = account.limit_count
    return QuotaInfo(
        status=classify(account),
        used=used,
        limit=limit,
        remaining=remaining(account),
        percentage=usage_percentage(used or 0, limit or 0),
    )


def next_quota_reset(now: int) -> int:
    """Start of the next UTC calendar month, in Unix milliseconds.

    Monthly quotas reset then, so it is the recovery time for an account
    whose quota is exhausted.
    """
    current = datetime.fromtimestamp(now / 1000, tz=UTC)
    if current.month == 12:
        reset = datetime(current.year + 1, 1, 1, tzinfo=UTC)
    else:
        reset = datetime(current.year, current.month + 1, 1, tzinfo=UTC)
    return int(reset.timestamp() * 1000)
