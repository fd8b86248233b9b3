from __future__ import annotations

from datetime import timedelta

import pytest

from integrations.domain import CredentialKey, ErrorClass, RefreshOutcome
from integrations.services.errors import ProviderError
from integrations.services.health import ConnectionHealthTracker, reconnect_message

KEY = CredentialKey(user_id="u1", provider="fake")


@pytest.fixture
def tracker(store, clock) -> ConnectionHealthTracker:
    return ConnectionHealthTracker(store, clock=clock)


class TestRecord:
    def test_transient_outcome_writes_nothing(self, tracker, store, make_credential):
        before = store.upsert(make_credential())
        tracker.record(before, RefreshOutcome(classification=ErrorClass.TRANSIENT, error="503"))
        assert store.get("u1", "fake").version == before.version

    def test_failure_flags(self, tracker, store, make_credential, clock):
        snapshot = store.upsert(make_credential(expires_at=clock() - timedelta(minutes=1)))
        stored = tracker.record(snapshot, RefreshOutcome(classification=ErrorClass.AUTH_INVALID, error="revoked"))
        assert stored.healthy is False
        assert stored.last_error_message == "revoked"

    def test_record_after_delete_returns_none(self, tracker, store, make_credential, clock):
        snapshot = store.upsert(make_credential(expires_at=clock() - timedelta(minutes=1)))
        store.delete("u1", "fake")
        fresh = snapshot.model_copy(update={"access_token": "A2"})
        assert tracker.record(snapshot, RefreshOutcome(credential=fresh)) is None
        assert store.get("u1", "fake") is None

    def test_success_keeps_newer_settings(self, tracker, store, make_credential, clock):
        snapshot = store.upsert(make_credential(expires_at=clock() - timedelta(minutes=1)))
        # an unrelated write (new default destination) lands while the refresh is in flight,
        # leaving the token still stale
        store.update("u1", "fake", None, lambda c: c.model_copy(update={"default_destination": "#alerts"}))

        fresh = snapshot.model_copy(update={"access_token": "A2", "expires_at": clock() + timedelta(hours=1)})
        stored = tracker.record(snapshot, RefreshOutcome(credential=fresh))

        assert stored.access_token == "A2"
        assert stored.default_destination == "#alerts"


class TestIsHealthy:
    def test_states(self, tracker, store, make_credential, clock):
        assert tracker.is_healthy("u1", "fake") is False
        store.upsert(make_credential())
        assert tracker.is_healthy("u1", "fake") is True
        tracker.flag(KEY, "bad", ErrorClass.AUTH_INVALID)
        assert tracker.is_healthy("u1", "fake") is False


class TestReportRecovered:
    @pytest.mark.asyncio
    async def test_clears_flag_after_successful_probe(self, tracker, store, make_credential):
        store.upsert(make_credential())
        tracker.flag(KEY, "old failure", ErrorClass.UNKNOWN)
        probed = []

        async def probe():
            probed.append(True)

        assert await tracker.report_recovered("u1", "fake", None, probe) is True
        assert probed == [True]
        assert store.get("u1", "fake").last_error_message is None

    @pytest.mark.asyncio
    async def test_failed_probe_keeps_flag(self, tracker, store, make_credential):
        store.upsert(make_credential())
        tracker.flag(KEY, "old failure", ErrorClass.UNKNOWN)

        async def probe():
            raise ProviderError("invalid_auth", code="invalid_auth")

        assert await tracker.report_recovered("u1", "fake", None, probe, display_name="Fake") is False
        cred = store.get("u1", "fake")
        assert cred.healthy is False
        assert cred.last_error_kind is ErrorClass.AUTH_INVALID
        assert "Please reconnect your Fake account" in cred.last_error_message

    @pytest.mark.asyncio
    async def test_transient_probe_failure_changes_nothing(self, tracker, store, make_credential):
        before = store.upsert(make_credential())

        async def probe():
            raise ProviderError("slow down", status_code=429)

        assert await tracker.report_recovered("u1", "fake", None, probe) is False
        after = store.get("u1", "fake")
        assert after.healthy is True
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_newer_failure_during_probe_wins(self, tracker, store, make_credential, clock):
        store.upsert(make_credential())
        tracker.flag(KEY, "old failure", ErrorClass.UNKNOWN)

        async def probe():
            clock.advance(seconds=5)
            tracker.flag(KEY, "fresh failure", ErrorClass.AUTH_INVALID)

        assert await tracker.report_recovered("u1", "fake", None, probe) is False
        assert store.get("u1", "fake").last_error_message == "fresh failure"


def test_reconnect_message_names_provider():
    msg = reconnect_message("Slack", ErrorClass.AUTH_INVALID, "invalid_auth")
    assert "Please reconnect your Slack account." in msg
    assert msg.endswith("(invalid_auth)")


class TestConnectionIdentity:
    def test_flag_for_a_replaced_connection_is_ignored(self, tracker, store, make_credential):
        old = store.upsert(make_credential())
        store.delete("u1", "fake")
        store.upsert(make_credential(access_token="A-new", refresh_token="R-new"))

        tracker.flag(KEY, "invalid_auth", ErrorClass.AUTH_INVALID, old.connection_id)

        cred = store.get("u1", "fake")
        assert cred.healthy is True
        assert cred.access_token == "A-new"

    def test_flag_for_the_same_connection_applies(self, tracker, store, make_credential):
        cred = store.upsert(make_credential())
        tracker.flag(KEY, "invalid_auth", ErrorClass.AUTH_INVALID, cred.connection_id)
        assert store.get("u1", "fake").healthy is False

    def test_stale_refresh_failure_after_reconnect_writes_nothing(self, tracker, store, make_credential, clock):
        snapshot = store.upsert(make_credential(expires_at=clock() - timedelta(minutes=1)))
        store.delete("u1", "fake")
        # reconnected with a token that is itself already due for refresh
        replacement = store.upsert(make_credential(access_token="A-new", refresh_token="R-new",
                                                   expires_at=clock() - timedelta(minutes=1)))

        stored = tracker.record(snapshot, RefreshOutcome(classification=ErrorClass.AUTH_INVALID, error="revoked"))

        assert stored.version == replacement.version
        assert store.get("u1", "fake").healthy is True
