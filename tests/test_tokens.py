"""Unit tests for auth/tokens.py -- TokenIssuer issuance, rotation and replay handling.

Covers:
- generate_pair() claims: subject, typ, iss/aud, distinct token ids, ledger row
- verify_access() / decode_refresh() rejection paths (secret, typ, aud, expiry)
- verify_and_rotate() one-shot rotation and successor link
- replay of a rotated credential revokes the whole session set
- signed expiry wins over an active ledger row
- inactive users cannot rotate
- racing rotations: exactly one wins, the family ends revoked
"""

from __future__ import annotations

import threading
from datetime import timedelta

from jose import jwt

from auth.ledger import SessionLedger, hash_token_id
from auth.models import AccessClaims, AuthFailure, FailureKind, RefreshClaims, RequestMetadata, TokenPair, User
from auth.passwords import hash_password
from auth.store import UserStore
from auth.tokens import TokenIssuer


def _refresh_claims(issuer: TokenIssuer, token: str) -> RefreshClaims:
    claims = issuer.decode_refresh(token, verify_exp=False)
    assert isinstance(claims, RefreshClaims)
    return claims


class TestGeneratePair:
    def test_claims_and_ledger_row(self, issuer, ledger, settings, make_user):
        user = make_user()
        pair = issuer.generate_pair(user, RequestMetadata(user_agent="pytest", ip_address="127.0.0.1"))

        assert pair.token_type == "Bearer"
        assert pair.expires_in == settings.access_token_ttl_seconds == 900

        access = issuer.verify_access(pair.access_token)
        assert isinstance(access, AccessClaims)
        assert access.user_id == user.id
        assert access.email == user.email
        assert access.token_id == pair.access_token_id

        refresh = _refresh_claims(issuer, pair.refresh_token)
        assert refresh.user_id == user.id
        assert refresh.token_id == pair.refresh_token_id
        assert refresh.token_id != access.token_id

        record = ledger.find_active(hash_token_id(refresh.token_id))
        assert record is not None
        assert record.user_id == user.id
        assert record.user_agent == "pytest"
        assert record.ip_address == "127.0.0.1"

    def test_lifetimes_follow_settings(self, issuer, settings, clock, make_user):
        pair = issuer.generate_pair(make_user())
        access = issuer.verify_access(pair.access_token)
        refresh = _refresh_claims(issuer, pair.refresh_token)
        now = int(clock().timestamp())
        assert access.expires_at == now + settings.access_token_ttl_seconds
        assert refresh.expires_at == now + settings.refresh_token_ttl_seconds

    def test_signed_with_separate_secrets(self, issuer, settings, make_user):
        pair = issuer.generate_pair(make_user())
        header_claims = jwt.get_unverified_claims(pair.refresh_token)
        assert header_claims["typ"] == "refresh"
        assert header_claims["iss"] == settings.jwt_issuer
        assert header_claims["aud"] == settings.jwt_audience
        assert "email" not in header_claims

        # Each kind is rejected where the other is expected.
        assert isinstance(issuer.verify_access(pair.refresh_token), AuthFailure)
        assert isinstance(issuer.decode_refresh(pair.access_token), AuthFailure)


class TestVerification:
    def test_garbage_is_malformed(self, issuer):
        result = issuer.verify_access("not-a-jwt")
        assert result == AuthFailure(FailureKind.MALFORMED_TOKEN)
        assert issuer.decode_refresh("") == AuthFailure(FailureKind.MALFORMED_TOKEN)

    def test_wrong_audience_is_malformed(self, issuer, settings, clock):
        now = int(clock().timestamp())
        token = jwt.encode(
            {
                "sub": "1",
                "tid": "x",
                "typ": "refresh",
                "iss": settings.jwt_issuer,
                "aud": "someone-else",
                "iat": now,
                "exp": now + 60,
            },
            settings.refresh_token_secret,
            algorithm="HS256",
        )
        assert issuer.decode_refresh(token) == AuthFailure(FailureKind.MALFORMED_TOKEN)

    def test_non_numeric_subject_is_malformed(self, issuer, settings, clock):
        now = int(clock().timestamp())
        token = jwt.encode(
            {
                "sub": "alice",
                "email": "a@example.com",
                "jti": "j",
                "typ": "access",
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "iat": now,
                "exp": now + 60,
            },
            settings.access_token_secret,
            algorithm="HS256",
        )
        assert issuer.verify_access(token) == AuthFailure(FailureKind.MALFORMED_TOKEN)

    def test_access_token_expires(self, issuer, clock, settings, make_user):
        user = make_user()
        pair = issuer.generate_pair(user)
        clock.advance(seconds=settings.access_token_ttl_seconds)
        assert issuer.verify_access(pair.access_token) == AuthFailure(FailureKind.EXPIRED_TOKEN, user_id=user.id)


class TestRotation:
    def test_rotation_is_one_shot(self, issuer, ledger, make_user):
        user = make_user()
        r0 = issuer.generate_pair(user)

        r1 = issuer.verify_and_rotate(r0.refresh_token)
        assert isinstance(r1, TokenPair)
        assert r1.refresh_token != r0.refresh_token

        old = ledger.find_by_token_id(r0.refresh_token_id)
        assert old.is_revoked is True
        assert old.replaced_by_token == r1.refresh_token_id

        replay = issuer.verify_and_rotate(r0.refresh_token)
        assert replay == AuthFailure(FailureKind.REUSE_DETECTED, user_id=user.id)

        # The replay revoked the whole family, including the legitimate successor.
        assert isinstance(issuer.verify_and_rotate(r1.refresh_token), AuthFailure)
        assert ledger.count_active(user.id) == 0

    def test_replay_revokes_other_devices(self, issuer, ledger, make_user):
        user = make_user()
        phone = issuer.generate_pair(user)
        laptop = issuer.generate_pair(user)
        issuer.verify_and_rotate(phone.refresh_token)

        issuer.verify_and_rotate(phone.refresh_token)
        assert isinstance(issuer.verify_and_rotate(laptop.refresh_token), AuthFailure)

    def test_replay_does_not_touch_other_users(self, issuer, ledger, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        a0 = issuer.generate_pair(alice)
        issuer.generate_pair(bob)
        issuer.verify_and_rotate(a0.refresh_token)
        issuer.verify_and_rotate(a0.refresh_token)
        assert ledger.count_active(bob.id) == 1

    def test_signed_token_without_ledger_row_is_reuse(self, issuer, ledger, settings, make_user):
        user = make_user()
        pair = issuer.generate_pair(user)
        orphan = jwt.encode(
            {**jwt.get_unverified_claims(pair.refresh_token), "tid": "never-persisted"},
            settings.refresh_token_secret,
            algorithm="HS256",
        )
        result = issuer.verify_and_rotate(orphan)
        assert result == AuthFailure(FailureKind.REUSE_DETECTED, user_id=user.id)
        assert ledger.find_active(hash_token_id(pair.refresh_token_id)) is None

    def test_signed_expiry_wins_over_active_row(self, issuer, ledger, clock, settings, make_user):
        user = make_user()
        pair = issuer.generate_pair(user)
        clock.advance(seconds=settings.refresh_token_ttl_seconds + 1)

        result = issuer.verify_and_rotate(pair.refresh_token)
        assert result == AuthFailure(FailureKind.EXPIRED_TOKEN, user_id=user.id)
        assert ledger.find_by_token_id(pair.refresh_token_id).is_revoked is False

    def test_inactive_user_cannot_rotate(self, issuer, ledger, user_store, make_user):
        user = make_user()
        pair = issuer.generate_pair(user)
        user_store.set_active(user.id, False)

        result = issuer.verify_and_rotate(pair.refresh_token)
        assert result == AuthFailure(FailureKind.REVOKED_TOKEN, user_id=user.id)
        assert ledger.count_active(user.id) == 0

    def test_rotation_at_cap_keeps_other_sessions(self, db_url, settings, user_store, clock, make_user):
        ledger = SessionLedger(db_url, max_sessions=2, clock=clock)
        issuer = TokenIssuer(settings, ledger, user_store, clock=clock)
        try:
            user = make_user()
            phone = issuer.generate_pair(user)
            clock.advance(seconds=1)
            laptop = issuer.generate_pair(user)
            clock.advance(seconds=1)

            rotated = issuer.verify_and_rotate(laptop.refresh_token)
            assert isinstance(rotated, TokenPair)
            assert ledger.find_active(hash_token_id(phone.refresh_token_id)) is not None
            assert ledger.count_active(user.id) == 2
        finally:
            ledger.close()


class TestRevoke:
    def test_revoke_single_session(self, issuer, ledger, make_user):
        user = make_user()
        a = issuer.generate_pair(user)
        b = issuer.generate_pair(user)

        assert issuer.revoke(a.refresh_token) is True
        record = ledger.find_by_token_id(a.refresh_token_id)
        assert record.is_revoked is True
        assert record.replaced_by_token is None
        assert ledger.find_active(hash_token_id(b.refresh_token_id)) is not None

    def test_revoke_accepts_expired_token(self, issuer, ledger, clock, settings, make_user):
        pair = issuer.generate_pair(make_user())
        clock.advance(seconds=settings.refresh_token_ttl_seconds + 10)
        assert issuer.revoke(pair.refresh_token) is True

    def test_revoke_rejects_bad_signature(self, issuer):
        assert issuer.revoke("garbage") is False


class TestConcurrentRotation:
    def test_interleaved_rotation_exactly_one_wins(self, issuer, ledger, make_user, monkeypatch):
        """A second rotation lands between the first one's lookup and its revoke."""
        user = make_user()
        r0 = issuer.generate_pair(user)
        real_revoke = ledger.revoke
        results: dict[str, object] = {}

        def racing_revoke(token_id, replaced_by_token_id=None):
            if "inner" not in results:
                results["inner"] = "running"
                results["inner"] = issuer.verify_and_rotate(r0.refresh_token)
            return real_revoke(token_id, replaced_by_token_id=replaced_by_token_id)

        monkeypatch.setattr(ledger, "revoke", racing_revoke)
        results["outer"] = issuer.verify_and_rotate(r0.refresh_token)

        outcomes = [results["inner"], results["outer"]]
        assert sum(isinstance(r, TokenPair) for r in outcomes) == 1
        assert AuthFailure(FailureKind.REUSE_DETECTED, user_id=user.id) in outcomes
        assert ledger.count_active(user.id) == 0

    def test_threaded_rotation_exactly_one_wins(self, tmp_path, settings):
        """Two threads present the same refresh token against a file-backed DB."""
        url = f"sqlite:///{tmp_path / 'race.db'}"
        users = UserStore(url)
        ledger = SessionLedger(url)
        issuer = TokenIssuer(settings, ledger, users)
        try:
            uid = users.create_user(User(email="race@example.com", hashed_password=hash_password("pw")))
            r0 = issuer.generate_pair(users.get_by_id(uid))

            barrier = threading.Barrier(2)
            outcomes: list = []
            lock = threading.Lock()

            def attempt():
                barrier.wait()
                result = issuer.verify_and_rotate(r0.refresh_token)
                with lock:
                    outcomes.append(result)

            threads = [threading.Thread(target=attempt) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert len(outcomes) == 2
            assert sum(isinstance(r, TokenPair) for r in outcomes) == 1
            failure = next(r for r in outcomes if isinstance(r, AuthFailure))
            assert failure.kind == FailureKind.REUSE_DETECTED
            assert ledger.count_active(uid) == 0
        finally:
            ledger.close()
            users.close()
