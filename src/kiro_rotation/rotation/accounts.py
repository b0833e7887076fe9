"""Account model and persisted document shapes for multi-account rotation.

Credential metadata and quota usage are persisted as two separate documents
so that quota syncs never rewrite credential material.
"""

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from structlog import get_logger

from kiro_rotation.rotation.constants import (
    ACCOUNT_ID_BYTES,
    DEFAULT_ACTIVE_INDEX,
    DEFAULT_REGION,
    DOCUMENT_VERSION,
)


logger = get_logger(__name__)


def now_ms() -> int:
    """Current time as a Unix timestamp in milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def ms_to_iso(timestamp_ms: int | None) -> str | None:
    """Render a millisecond timestamp as ISO-8601 UTC, passing ``None`` through."""
    if timestamp_ms is None:
        return None
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).isoformat()


def generate_account_id() -> str:
    """Generate a new random account id (32 hex characters)."""
    return secrets.token_hex(ACCOUNT_ID_BYTES)


class AuthMethod(StrEnum):
    """How the account's refresh token was obtained."""

    SOCIAL = "social"
    IDC = "idc"  # delegated identity (IAM Identity Center / Builder ID)


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass
class Account:
    """A credential set in the rotation pool plus its runtime state.

    Quota usage is tracked in two counters: ``server_used_count`` is the
    authoritative value from the last usage sync, ``local_request_count``
    counts requests served since then. ``used_count`` combines both until the
    next sync overwrites them.
    """

    id: str
    auth_method: AuthMethod
    refresh_token: str
    access_token: str
    expires_at: int  # Unix timestamp in milliseconds
    region: str = DEFAULT_REGION
    email: str | None = None
    profile_arn: str | None = None
    client_id: str | None = None
    client_secret: str | None = None

    # Runtime state
    last_used: int | None = None
    server_used_count: int | None = None
    limit_count: int | None = None
    local_request_count: int = 0
    real_email: str | None = None

    # Health / rate limiting
    rate_limit_reset_time: int | None = None
    is_healthy: bool = True
    unhealthy_reason: str | None = None
    recovery_time: int | None = None

    @property
    def used_count(self) -> int | None:
        """Server-reported usage plus locally counted requests.

        ``None`` means quota usage is unknown.
        """
        if self.server_used_count is None and self.local_request_count == 0:
            return None
        return (self.server_used_count or 0) + self.local_request_count

    def is_rate_limited(self, now: int) -> bool:
        """Whether a provider-imposed rate limit is still in effect at ``now``."""
        return self.rate_limit_reset_time is not None and now < self.rate_limit_reset_time

    def check_recovery(self, now: int) -> bool:
        """Restore health if the recovery time has passed.

        Returns:
            True if the account was restored to healthy
        """
        if self.is_healthy or self.recovery_time is None:
            return False
        if now < self.recovery_time:
            return False

        previous_reason = self.unhealthy_reason
        self.is_healthy = True
        self.unhealthy_reason = None
        self.recovery_time = None
        logger.info(
            "account_recovered",
            account_id=self.id,
            previous_reason=previous_reason,
        )
        return True

    def record_request(self, now: int) -> None:
        """Record that this account was selected to serve a request."""
        self.last_used = now
        self.local_request_count += 1

    def to_metadata(self) -> dict[str, Any]:
        """Serialize credential and health fields for the account document.

        Quota counters are excluded; they live in the usage document.
        """
        return _drop_none(
            {
                "id": self.id,
                "email": self.email,
                "authMethod": str(self.auth_method),
                "region": self.region,
                "profileArn": self.profile_arn,
                "clientId": self.client_id,
                "clientSecret": self.client_secret,
                "refreshToken": self.refresh_token,
                "accessToken": self.access_token,
                "expiresAt": self.expires_at,
                "rateLimitResetTime": self.rate_limit_reset_time,
                "isHealthy": self.is_healthy,
                "unhealthyReason": self.unhealthy_reason,
                "recoveryTime": self.recovery_time,
            }
        )

    @classmethod
    def from_metadata(
        cls, data: dict[str, Any], default_region: str = DEFAULT_REGION
    ) -> "Account":
        """Create from an account document entry."""
        return cls(
            id=data["id"],
            email=data.get("email"),
            auth_method=AuthMethod(data["authMethod"]),
            region=data.get("region") or default_region,
            profile_arn=data.get("profileArn"),
            client_id=data.get("clientId"),
            client_secret=data.get("clientSecret"),
            refresh_token=data["refreshToken"],
            access_token=data["accessToken"],
            expires_at=data["expiresAt"],
            rate_limit_reset_time=data.get("rateLimitResetTime"),
            is_healthy=data.get("isHealthy", True),
            unhealthy_reason=data.get("unhealthyReason"),
            recovery_time=data.get("recoveryTime"),
        )


@dataclass
class UsageRecord:
    """Server-reported quota usage for one account."""

    used_count: int
    limit_count: int
    last_sync: int
    real_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return _drop_none(
            {
                "usedCount": self.used_count,
                "limitCount": self.limit_count,
                "realEmail": self.real_email,
                "lastSync": self.last_sync,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageRecord":
        """Create from dictionary."""
        return cls(
            used_count=data.get("usedCount", 0),
            limit_count=data.get("limitCount", 0),
            real_email=data.get("realEmail"),
            last_sync=data.get("lastSync", 0),
        )


@dataclass
class AccountDocument:
    """Represents the accounts file structure."""

    version: int = DOCUMENT_VERSION
    accounts: list[dict[str, Any]] = field(default_factory=list)
    active_index: int = DEFAULT_ACTIVE_INDEX

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "accounts": self.accounts,
            "activeIndex": self.active_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountDocument":
        """Create from dictionary loaded from JSON."""
        accounts = data.get("accounts", [])
        if not isinstance(accounts, list):
            raise ValueError(
                f"Invalid accounts document: expected list, got {type(accounts).__name__}"
            )
        return cls(
            version=data.get("version", DOCUMENT_VERSION),
            accounts=accounts,
            active_index=data.get("activeIndex", DEFAULT_ACTIVE_INDEX),
        )


@dataclass
class UsageDocument:
    """Represents the usage file structure."""

    version: int = DOCUMENT_VERSION
    usage: dict[str, UsageRecord] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "usage": {
                account_id: record.to_dict()
                for account_id, record in self.usage.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageDocument":
        """Create from dictionary loaded from JSON."""
        usage_data = data.get("usage", {})
        if not isinstance(usage_data, dict):
            raise ValueError(
                f"Invalid usage document: expected object, got {type(usage_data).__name__}"
            )
        return cls(
            version=data.get("version", DOCUMENT_VERSION),
            usage={
                account_id: UsageRecord.from_dict(record)
                for account_id, record in usage_data.items()
            },
        )


# ============================================================================
# Values exchanged with external collaborators
# ============================================================================


@dataclass
class RefreshParts:
    """Fragments packed into the opaque refresh-token bundle."""

    refresh_token: str
    auth_method: AuthMethod
    profile_arn: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


@dataclass
class AuthDetails:
    """Credentials in the shape the upstream OAuth protocol expects."""

    refresh: str  # encoded refresh-token bundle
    access: str
    expires: int
    auth_method: AuthMethod
    region: str
    profile_arn: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    email: str | None = None


@dataclass
class RefreshedAuth:
    """Result of an OAuth token refresh."""

    access_token: str
    refresh_token_bundle: str
    expires_at: int
    email: str | None = None


@dataclass
class UsageSnapshot:
    """Parsed quota snapshot returned by the remote usage endpoint."""

    used_count: int
    limit_count: int
    email: str | None = None

    @classmethod
    def from_usage_limits(cls, data: dict[str, Any]) -> "UsageSnapshot":
        """Parse a usage-limits response body.

        Usage and limits are summed over every breakdown entry, including
        any free-trial allowance.
        """
        used = 0
        limit = 0
        breakdowns = data.get("usageBreakdownList")
        if isinstance(breakdowns, list):
            for source in breakdowns:
                trial = source.get("freeTrialInfo")
                if trial:
                    used += trial.get("currentUsage") or 0
                    limit += trial.get("usageLimit") or 0
                used += source.get("currentUsage") or 0
                limit += source.get("usageLimit") or 0

        user_info = data.get("userInfo") or {}
        return cls(used_count=used, limit_count=limit, email=user_info.get("email"))
