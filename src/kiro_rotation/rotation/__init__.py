"""Multi-account rotation module for kiro-rotation.

This module provides selection between multiple OAuth accounts with rate
limit, health and quota tracking, backed by lock-protected JSON documents
shared between processes.
"""

from kiro_rotation.rotation.accounts import (
    Account,
    AccountDocument,
    AuthDetails,
    AuthMethod,
    RefreshedAuth,
    RefreshParts,
    UsageDocument,
    UsageRecord,
    UsageSnapshot,
    generate_account_id,
)
from kiro_rotation.rotation.interfaces import (
    RefreshProvider,
    RefreshTokenCodec,
    UsageFetcher,
)
from kiro_rotation.rotation.pool import (
    AccountPool,
    Cursor,
    CursorScope,
    SelectionStrategy,
    is_available,
)
from kiro_rotation.rotation.quota import QuotaStatus, classify, rank_by_remaining
from kiro_rotation.rotation.storage import (
    AccountStore,
    DocumentKind,
    FileLock,
    LoadResult,
    LockOptions,
    StorageIssue,
)


__all__ = [
    "Account",
    "AccountDocument",
    "AccountPool",
    "AccountStore",
    "AuthDetails",
    "AuthMethod",
    "Cursor",
    "CursorScope",
    "DocumentKind",
    "FileLock",
    "LoadResult",
    "LockOptions",
    "QuotaStatus",
    "RefreshParts",
    "RefreshProvider",
    "RefreshTokenCodec",
    "RefreshedAuth",
    "SelectionStrategy",
    "StorageIssue",
    "UsageDocument",
    "UsageFetcher",
    "UsageRecord",
    "UsageSnapshot",
    "classify",
    "generate_account_id",
    "is_available",
    "rank_by_remaining",
]
