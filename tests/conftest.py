"""Shared fixtures for kiro-rotation tests."""

from collections.abc import Callable
from pathlib import Path

import pytest

from kiro_rotation.rotation.accounts import Account, AuthMethod, RefreshParts
from kiro_rotation.rotation.interfaces import RefreshTokenCodec
from kiro_rotation.rotation.storage import AccountStore, LockOptions


FAR_FUTURE_MS = 9_999_999_999_999


class PipeCodec(RefreshTokenCodec):
    """Test codec joining refresh fragments with '|'."""

    def encode(self, parts: RefreshParts) -> str:
        return "|".join(
            [
                parts.refresh_token,
                parts.profile_arn or "",
                parts.client_id or "",
                parts.client_secret or "",
                str(parts.auth_method),
            ]
        )

    def decode(self, bundle: str) -> RefreshParts:
        refresh_token, profile_arn, client_id, client_secret, auth_method = (
            bundle.split("|")
        )
        return RefreshParts(
            refresh_token=refresh_token,
            profile_arn=profile_arn or None,
            client_id=client_id or None,
            client_secret=client_secret or None,
            auth_method=AuthMethod(auth_method),
        )


@pytest.fixture
def codec() -> PipeCodec:
    return PipeCodec()


@pytest.fixture
def make_account() -> Callable[..., Account]:
    """Factory for accounts with valid far-future credentials."""

    def _make(account_id: str, **overrides: object) -> Account:
        fields: dict[str, object] = {
            "id": account_id,
            "auth_method": AuthMethod.SOCIAL,
            "refresh_token": f"refresh-{account_id}",
            "access_token": f"access-{account_id}",
            "expires_at": FAR_FUTURE_MS,
        }
        fields.update(overrides)
        return Account(**fields)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def store(tmp_path: Path) -> AccountStore:
    """Store rooted in a temporary directory with no real sleeping."""
    return AccountStore(
        accounts_path=tmp_path / "kiro-accounts.json",
        usage_path=tmp_path / "kiro-usage.json",
        lock_options=LockOptions(retries=2),
        sleep=lambda _seconds: None,
    )
