"""Tests for pool mutation, credential refresh and export."""

import random
from collections.abc import Callable

import pytest

from kiro_rotation.exceptions import ConfigurationError
from kiro_rotation.rotation.accounts import (
    Account,
    AuthMethod,
    RefreshedAuth,
    RefreshParts,
    UsageRecord,
    UsageSnapshot,
)
from kiro_rotation.rotation.constants import ANONYMOUS_EMAIL
from kiro_rotation.rotation.pool import AccountPool, SelectionStrategy
from kiro_rotation.rotation.interfaces import RefreshTokenCodec


@pytest.mark.unit
class TestUpsertRemove:
    """Tests for adding and removing accounts."""

    def test_upsert_replaces_by_id(self, make_account: Callable[..., Account]) -> None:
        pool = AccountPool([make_account("a"), make_account("b")])
        replacement = make_account("a", access_token="new-token")

        pool.upsert(replacement)

        assert pool.account_count == 2
        assert [a.id for a in pool.accounts] == ["a", "b"]
        assert pool.get_account("a") is replacement

    def test_ids_match_added_minus_removed(
        self, make_account: Callable[..., Account]
    ) -> None:
        rng = random.Random(1234)
        pool = AccountPool()
        expected: set[str] = set()

        for _ in range(200):
            account_id = f"acct-{rng.randrange(15)}"
            if rng.random() < 0.6:
                pool.upsert(make_account(account_id))
                expected.add(account_id)
            else:
                removed = pool.remove(make_account(account_id))
                assert removed == (account_id in expected)
                expected.discard(account_id)

            ids = [a.id for a in pool.accounts]
            assert len(ids) == len(set(ids))
            assert set(ids) == expected

    def test_remove_deletes_usage_record(
        self, make_account: Callable[..., Account]
    ) -> None:
        usage = {"a": UsageRecord(used_count=1, limit_count=10, last_sync=0)}
        pool = AccountPool([make_account("a"), make_account("b")], usage)

        pool.remove(make_account("a"))

        assert "a" not in pool.usage

    def test_remove_clamps_cursor(self, make_account: Callable[..., Account]) -> None:
        accounts = [make_account("a"), make_account("b"), make_account("c")]
        pool = AccountPool(accounts, strategy=SelectionStrategy.STICKY)
        pool.mark_unhealthy(accounts[0], "x")
        pool.mark_unhealthy(accounts[1], "x")
        pool.select_next(now=1000)
        assert pool.cursor.position == 2

        pool.remove(accounts[2])
        assert pool.cursor.position == 1

        pool.remove(accounts[1])
        pool.remove(accounts[0])
        assert pool.account_count == 0
        assert pool.cursor.position == 0

    def test_remove_unknown_account(self, make_account: Callable[..., Account]) -> None:
        pool = AccountPool([make_account("a")])
        assert pool.remove(make_account("zzz")) is False
        assert pool.account_count == 1


@pytest.mark.unit
class TestSyncUsage:
    """Tests for authoritative usage sync."""

    def test_overwrites_local_counter(
        self, make_account: Callable[..., Account]
    ) -> None:
        account = make_account("a", server_used_count=4, limit_count=50)
        pool = AccountPool([account])
        pool.select_next(now=1000)
        pool.select_next(now=1001)
        assert account.used_count == 6

        record = pool.sync_usage(
            "a", UsageSnapshot(used_count=5, limit_count=50, email="me@x.io"), now=2000
        )

        assert account.server_used_count == 5
        assert account.local_request_count == 0
        assert account.used_count == 5
        assert account.real_email == "me@x.io"
        assert record == UsageRecord(
            used_count=5, limit_count=50, last_sync=2000, real_email="me@x.io"
        )
        assert pool.usage["a"] == record

    def test_keeps_known_email_when_snapshot_has_none(
        self, make_account: Callable[..., Account]
    ) -> None:
        account = make_account("a", real_email="known@x.io")
        pool = AccountPool([account])

        pool.sync_usage("a", UsageSnapshot(used_count=1, limit_count=2), now=1)

        assert account.real_email == "known@x.io"
        assert pool.usage["a"].real_email == "known@x.io"

    def test_unknown_account_is_ignored(self) -> None:
        pool = AccountPool()
        assert pool.sync_usage("ghost", UsageSnapshot(1, 2), now=1) is None
        assert pool.usage == {}

    def test_usage_records_merged_at_construction(
        self, make_account: Callable[..., Account]
    ) -> None:
        account = make_account("a", server_used_count=99, limit_count=100)
        usage = {
            "a": UsageRecord(
                used_count=3, limit_count=50, last_sync=1, real_email="r@x.io"
            )
        }

        AccountPool([account], usage)

        assert account.server_used_count == 3
        assert account.limit_count == 50
        assert account.real_email == "r@x.io"


@pytest.mark.unit
class TestHealthTransitions:
    """Tests for rate limiting and health marking."""

    def test_mark_rate_limited_keeps_health(
        self, make_account: Callable[..., Account]
    ) -> None:
        account = make_account("a")
        pool = AccountPool([account])

        pool.mark_rate_limited(account, 60_000, now=1000)

        assert account.rate_limit_reset_time == 61_000
        assert account.is_healthy is True

    def test_mark_unhealthy_with_recovery(
        self, make_account: Callable[..., Account]
    ) -> None:
        account = make_account("a")
        pool = AccountPool([account])

        pool.mark_unhealthy(account, "quota exhausted", recovery_time=5000)

        assert account.is_healthy is False
        assert account.unhealthy_reason == "quota exhausted"
        assert pool.select_next(now=4999) is None
        assert pool.select_next(now=5000) is account
        assert account.is_healthy is True

    def test_mark_healthy(self, make_account: Callable[..., Account]) -> None:
        account = make_account("a")
        pool = AccountPool([account])
        pool.mark_unhealthy(account, "revoked")

        pool.mark_healthy(account)

        assert account.is_healthy is True
        assert account.unhealthy_reason is None

    def test_marks_apply_to_live_account_by_id(
        self, make_account: Callable[..., Account]
    ) -> None:
        live = make_account("a")
        pool = AccountPool([live])
        stale_copy = make_account("a")

        pool.mark_rate_limited(stale_copy, 1000, now=0)

        assert live.rate_limit_reset_time == 1000
        assert stale_copy.rate_limit_reset_time is None


@pytest.mark.unit
class TestCredentials:
    """Tests for refresh application and credential export."""

    def test_apply_refresh_merges_bundle(
        self, make_account: Callable[..., Account], codec: RefreshTokenCodec
    ) -> None:
        account = make_account("a", profile_arn="arn:old", client_id="old-client")
        pool = AccountPool([account], codec=codec)
        bundle = codec.encode(
            RefreshParts(
                refresh_token="refresh-new",
                auth_method=AuthMethod.SOCIAL,
                profile_arn="arn:new",
            )
        )

        pool.apply_refresh(
            account,
            RefreshedAuth(
                access_token="access-new",
                refresh_token_bundle=bundle,
                expires_at=123_456,
                email="real@x.io",
            ),
            now=1000,
        )

        assert account.access_token == "access-new"
        assert account.refresh_token == "refresh-new"
        assert account.expires_at == 123_456
        assert account.last_used == 1000
        assert account.profile_arn == "arn:new"
        assert account.client_id == "old-client"
        assert account.real_email == "real@x.io"

    def test_apply_refresh_ignores_anonymous_email(
        self, make_account: Callable[..., Account], codec: RefreshTokenCodec
    ) -> None:
        account = make_account("a", real_email="real@x.io")
        pool = AccountPool([account], codec=codec)
        bundle = codec.encode(
            RefreshParts(refresh_token="r2", auth_method=AuthMethod.IDC)
        )

        pool.apply_refresh(
            account,
            RefreshedAuth("t2", bundle, expires_at=1, email=ANONYMOUS_EMAIL),
            now=1,
        )

        assert account.real_email == "real@x.io"

    def test_apply_refresh_requires_codec(
        self, make_account: Callable[..., Account]
    ) -> None:
        account = make_account("a")
        pool = AccountPool([account])

        with pytest.raises(ConfigurationError):
            pool.apply_refresh(account, RefreshedAuth("t", "bundle", 1), now=1)
        assert account.access_token == "access-a"

    def test_to_auth_details(
        self, make_account: Callable[..., Account], codec: RefreshTokenCodec
    ) -> None:
        account = make_account(
            "a",
            auth_method=AuthMethod.IDC,
            region="eu-central-1",
            client_id="cid",
            client_secret="secret",
            email="login@x.io",
        )
        pool = AccountPool([account], codec=codec)

        details = pool.to_auth_details(account)

        assert details.refresh == "refresh-a||cid|secret|idc"
        assert details.access == "access-a"
        assert details.region == "eu-central-1"
        assert details.email == "login@x.io"
        assert codec.decode(details.refresh).client_secret == "secret"


@pytest.mark.unit
class TestToastDebounce:
    """Tests for account-switch notification debouncing."""

    def test_debounces_same_account(self) -> None:
        pool = AccountPool(toast_debounce_ms=30_000)
        assert pool.should_show_account_toast(0, now=1000) is True

        pool.mark_toast_shown(0, now=1000)

        assert pool.should_show_account_toast(0, now=20_000) is False
        assert pool.should_show_account_toast(1, now=20_000) is True
        assert pool.should_show_account_toast(0, now=31_000) is True

    def test_explicit_window(self) -> None:
        pool = AccountPool()
        pool.mark_toast_shown(2, now=0)
        assert pool.should_show_account_toast(2, debounce_ms=100, now=150) is True


@pytest.mark.unit
def test_get_status(make_account: Callable[..., Account]) -> None:
    healthy = make_account("a", server_used_count=90, limit_count=100)
    limited = make_account("b", rate_limit_reset_time=5000)
    sick = make_account("c", is_healthy=False, unhealthy_reason="revoked")
    pool = AccountPool([healthy, limited, sick])

    status = pool.get_status(now=1000)

    assert status["totalAccounts"] == 3
    assert status["availableAccounts"] == 1
    assert status["rateLimitedAccounts"] == 1
    assert status["unhealthyAccounts"] == 1
    assert status["minWaitMs"] == 4000
    first = status["accounts"][0]
    assert first["quota"]["status"] == "warning"
    assert first["quota"]["remaining"] == 10
    assert status["accounts"][1]["quota"]["remaining"] is None
    assert status["accounts"][2]["unhealthyReason"] == "revoked"
