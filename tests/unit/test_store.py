"""Unit tests for the grant/token store."""

import threading

import pytest

from sso.exceptions import NotFoundError, ReplayError


class TestAuthorizationCodes:
    def test_get_unknown_code(self, store):
        with pytest.raises(NotFoundError):
            store.get_code("missing")

    def test_get_after_invalidate_is_replay_with_snapshot(self, store, snapshot_factory):
        snapshot = snapshot_factory()
        store.create_code("sig", snapshot, expires_at=2_000_000_000)
        store.invalidate_code("sig")
        with pytest.raises(ReplayError) as exc_info:
            store.get_code("sig")
        assert exc_info.value.snapshot == snapshot

    def test_redeem_once(self, store, snapshot_factory):
        store.create_code("sig", snapshot_factory(), expires_at=2_000_000_000)
        record = store.redeem_code("sig")
        assert record.active
        with pytest.raises(ReplayError):
            store.redeem_code("sig")

    def test_concurrent_redemption_single_winner(self, store, snapshot_factory):
        store.create_code("sig", snapshot_factory(), expires_at=2_000_000_000)
        results = []
        barrier = threading.Barrier(8)

        def redeem():
            barrier.wait()
            try:
                store.redeem_code("sig")
                results.append("ok")
            except ReplayError:
                results.append("replay")

        threads = [threading.Thread(target=redeem) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count("ok") == 1
        assert results.count("replay") == 7

    def test_signature_collision(self, store, snapshot_factory):
        store.create_code("sig", snapshot_factory(), expires_at=2_000_000_000)
        with pytest.raises(ValueError):
            store.create_code("sig", snapshot_factory(), expires_at=2_000_000_000)


class TestTokens:
    def _grant(self, store, snapshot, access="at-1", refresh="rt-1"):
        store.create_access_token(access, snapshot, expires_at=2_000_000_000)
        store.create_refresh_token(refresh, access, snapshot, expires_at=2_000_000_000)

    def test_refresh_requires_live_access_token(self, store, snapshot_factory):
        with pytest.raises(NotFoundError):
            store.create_refresh_token("rt", "no-such-at", snapshot_factory(), expires_at=2_000_000_000)

    def test_rotate_deactivates_refresh_and_deletes_access(self, store, snapshot_factory):
        self._grant(store, snapshot_factory())
        store.rotate("req-1")
        with pytest.raises(NotFoundError):
            store.get_access_token("at-1")
        with pytest.raises(ReplayError):
            store.get_refresh_token("rt-1")

    def test_redeem_refresh_token_once(self, store, snapshot_factory):
        self._grant(store, snapshot_factory())
        record = store.redeem_refresh_token("rt-1")
        assert record.access_token_signature == "at-1"
        with pytest.raises(ReplayError):
            store.redeem_refresh_token("rt-1")
        with pytest.raises(NotFoundError):
            store.get_access_token("at-1")

    def test_index_follows_latest_token(self, store, snapshot_factory):
        snapshot = snapshot_factory()
        self._grant(store, snapshot)
        store.redeem_refresh_token("rt-1")
        self._grant(store, snapshot, access="at-2", refresh="rt-2")
        store.revoke_access_token("req-1")
        with pytest.raises(NotFoundError):
            store.get_access_token("at-2")

    def test_revoke_by_request_id_only_touches_that_grant(self, store, snapshot_factory):
        self._grant(store, snapshot_factory("req-1"))
        self._grant(store, snapshot_factory("req-2"), access="at-2", refresh="rt-2")
        store.revoke_by_request_id("req-1")
        with pytest.raises(NotFoundError):
            store.get_access_token("at-1")
        with pytest.raises(ReplayError):
            store.get_refresh_token("rt-1")
        assert store.get_access_token("at-2").request_id == "req-2"
        assert store.get_refresh_token("rt-2").active


class TestPKCEAndOIDC:
    def test_pkce_lifecycle(self, store, snapshot_factory):
        snapshot = snapshot_factory(code_challenge="abc", code_challenge_method="plain")
        store.create_pkce_request("sig", snapshot)
        assert store.get_pkce_request("sig").code_challenge == "abc"
        store.delete_pkce_request("sig")
        with pytest.raises(NotFoundError):
            store.get_pkce_request("sig")

    def test_oidc_lifecycle(self, store, snapshot_factory):
        store.create_oidc_session("sig", snapshot_factory(nonce="n-1"))
        assert store.get_oidc_session("sig").nonce == "n-1"
        store.delete_oidc_session("sig")
        with pytest.raises(NotFoundError):
            store.get_oidc_session("sig")


class TestClientAssertionReplay:
    def test_jti_rejected_until_expiry(self, store, clock):
        store.mark_used("jti-1", clock.now + 60)
        assert store.is_used("jti-1")
        with pytest.raises(ReplayError):
            store.mark_used("jti-1", clock.now + 60)
        clock.advance(61)
        assert not store.is_used("jti-1")
        store.mark_used("jti-1", clock.now + 60)

    def test_expired_entries_reaped(self, store, clock):
        store.mark_used("old", clock.now + 1)
        clock.advance(5)
        store.mark_used("new", clock.now + 60)
        assert "old" not in store._used_jtis


class TestPurge:
    def test_purge_expired(self, store, snapshot_factory, clock):
        now = int(clock.now)
        store.create_code("code-old", snapshot_factory(), expires_at=now - 1)
        store.create_pkce_request("code-old", snapshot_factory())
        store.create_code("code-new", snapshot_factory(), expires_at=now + 600)
        store.create_access_token("at-old", snapshot_factory("req-9"), expires_at=now - 1)
        assert store.purge_expired() == 2
        with pytest.raises(NotFoundError):
            store.get_code("code-old")
        with pytest.raises(NotFoundError):
            store.get_pkce_request("code-old")
        assert store.get_code("code-new").active

    def test_redeemed_code_kept_while_grant_has_tokens(self, store, snapshot_factory, clock):
        now = int(clock.now)
        snapshot = snapshot_factory("req-7")
        store.create_code("code-used", snapshot, expires_at=now + 10)
        store.redeem_code("code-used")
        store.create_access_token("at-7", snapshot, expires_at=now + 3600)
        store.create_refresh_token("rt-7", "at-7", snapshot, expires_at=now + 86400)
        clock.advance(60)
        assert store.purge_expired() == 0
        with pytest.raises(ReplayError) as exc_info:
            store.get_code("code-used")
        assert exc_info.value.snapshot.request_id == "req-7"

    def test_redeemed_code_purged_once_grant_is_gone(self, store, snapshot_factory, clock):
        now = int(clock.now)
        snapshot = snapshot_factory("req-8")
        store.create_code("code-used", snapshot, expires_at=now + 10)
        store.redeem_code("code-used")
        store.create_access_token("at-8", snapshot, expires_at=now + 30)
        clock.advance(60)
        # The code survives the pass that drops its last token.
        assert store.purge_expired() == 1
        assert store.purge_expired() == 1
        with pytest.raises(NotFoundError):
            store.get_code("code-used")
