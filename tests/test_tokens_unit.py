"""Unit tests for the token lifecycle.

Tests for:
- Access/refresh issuance and claims
- One-time rotation, including concurrent rotation
- Revocation (single, bulk, by id)
- Embedded expiry checks
"""

import threading
from datetime import timedelta

import pytest

from authkeep.config import Settings
from authkeep.service.errors import NotFoundError, TokenError, TokenErrorReason
from authkeep.service.tokens import TokenService

from conftest import TEST_SECRET


@pytest.fixture
def tokens(memory_store, directory, settings, clock):
    return TokenService(memory_store, directory, settings, clock=clock)


class TestIssuance:
    def test_issue_token_pair_persists_active_record(self, tokens, memory_store, alice, clock):
        pair = tokens.issue_token_pair(alice)

        record = memory_store.get_refresh_token(pair.refresh_token)
        assert record is not None
        assert record.user_id == alice.id
        assert record.revoked is False
        assert record.expires_at == clock.now + timedelta(days=7)
        assert pair.refresh_record.id == record.id

    def test_access_claims(self, tokens, alice):
        claims = tokens.verify_access_token(tokens.issue_access_token(alice))

        assert claims["id"] == alice.id
        assert claims["email"] == "alice@example.com"
        assert claims["displayName"] == "Alice Liddell"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_refresh_claims(self, tokens, alice):
        token = tokens.issue_refresh_token(alice.id)
        claims = tokens.refresh_signer.verify(token)

        assert claims["userId"] == alice.id
        assert claims["type"] == "refresh"
        assert claims["exp"] - claims["iat"] == 7 * 24 * 60 * 60

    def test_refresh_tokens_in_same_second_are_distinct(self, tokens, alice):
        """The clock is frozen, so only the jti keeps these apart."""
        first = tokens.issue_token_pair(alice)
        second = tokens.issue_token_pair(alice)

        assert first.refresh_token != second.refresh_token
        assert len(tokens.list_active(alice.id)) == 2

    def test_refresh_secret_falls_back_to_jwt_secret(self):
        settings = Settings(jwt_secret=TEST_SECRET)
        assert settings.refresh_secret == TEST_SECRET

        settings = Settings(jwt_secret=TEST_SECRET, jwt_refresh_secret="another-refresh-secret")
        assert settings.refresh_secret == "another-refresh-secret"


class TestAccessExpiry:
    def test_accepted_just_before_expiry(self, tokens, alice, clock):
        token = tokens.issue_access_token(alice)
        clock.advance(minutes=14, seconds=59)

        assert tokens.verify_access_token(token)["id"] == alice.id

    def test_rejected_just_after_expiry(self, tokens, alice, clock):
        token = tokens.issue_access_token(alice)
        clock.advance(minutes=15, seconds=1)

        with pytest.raises(TokenError) as exc_info:
            tokens.verify_access_token(token)
        assert exc_info.value.reason == TokenErrorReason.EXPIRED

    def test_refresh_token_is_not_an_access_token(self, tokens, alice):
        refresh = tokens.issue_refresh_token(alice.id)

        with pytest.raises(TokenError) as exc_info:
            tokens.verify_access_token(refresh)
        assert exc_info.value.reason == TokenErrorReason.INVALID_SIGNATURE


class TestRotation:
    def test_rotate_issues_new_pair_and_consumes_old(self, tokens, memory_store, alice):
        pair = tokens.issue_token_pair(alice)

        rotated = tokens.rotate(pair.refresh_token)

        assert rotated.refresh_token != pair.refresh_token
        assert rotated.user.id == alice.id
        assert memory_store.get_refresh_token(pair.refresh_token).revoked is True
        assert memory_store.get_refresh_token(rotated.refresh_token).revoked is False

    def test_second_rotation_is_rejected(self, tokens, alice):
        pair = tokens.issue_token_pair(alice)
        tokens.rotate(pair.refresh_token)

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(pair.refresh_token)
        assert exc_info.value.reason == TokenErrorReason.NOT_FOUND_OR_REVOKED

    def test_concurrent_rotation_has_one_winner(self, tokens, alice):
        pair = tokens.issue_token_pair(alice)
        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                outcome = tokens.rotate(pair.refresh_token)
            except TokenError as exc:
                outcome = exc
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = [r for r in results if not isinstance(r, TokenError)]
        failures = [r for r in results if isinstance(r, TokenError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0].reason in {
            TokenErrorReason.CONCURRENT_ROTATION,
            TokenErrorReason.NOT_FOUND_OR_REVOKED,
        }

    def test_lost_claim_reports_concurrent_rotation(self, tokens, memory_store, alice, monkeypatch):
        pair = tokens.issue_token_pair(alice)
        monkeypatch.setattr(memory_store, "claim_refresh_token", lambda token: False)

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(pair.refresh_token)
        assert exc_info.value.reason == TokenErrorReason.CONCURRENT_ROTATION

    def test_tampered_token_is_invalid_signature(self, tokens, alice):
        pair = tokens.issue_token_pair(alice)
        header, payload, signature = pair.refresh_token.split(".")
        tampered = f"{header}.{payload}.{signature[::-1]}"

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(tampered)
        assert exc_info.value.reason == TokenErrorReason.INVALID_SIGNATURE

    @pytest.mark.parametrize("signature", ["ééé", "\ud800", "===="])
    def test_malformed_signature_is_invalid_signature(self, tokens, memory_store, alice, signature):
        pair = tokens.issue_token_pair(alice)
        header, payload, _ = pair.refresh_token.split(".")

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(f"{header}.{payload}.{signature}")
        assert exc_info.value.reason == TokenErrorReason.INVALID_SIGNATURE
        assert memory_store.get_refresh_token(pair.refresh_token).revoked is False

    def test_garbage_is_invalid_signature(self, tokens):
        with pytest.raises(TokenError) as exc_info:
            tokens.rotate("not-a-token")
        assert exc_info.value.reason == TokenErrorReason.INVALID_SIGNATURE

    def test_access_token_cannot_rotate(self, tokens, alice):
        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(tokens.issue_access_token(alice))
        assert exc_info.value.reason == TokenErrorReason.INVALID_SIGNATURE

    def test_expired_refresh_token(self, tokens, alice, clock):
        pair = tokens.issue_token_pair(alice)
        clock.advance(days=7, seconds=1)

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(pair.refresh_token)
        assert exc_info.value.reason == TokenErrorReason.EXPIRED

    def test_unknown_but_signed_token(self, tokens, alice):
        """Signed correctly but never persisted."""
        token = tokens.issue_refresh_token(alice.id)

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(token)
        assert exc_info.value.reason == TokenErrorReason.NOT_FOUND_OR_REVOKED

    def test_missing_user(self, tokens, memory_store, alice):
        pair = tokens.issue_token_pair(alice)
        memory_store.users.pop(alice.id)

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(pair.refresh_token)
        assert exc_info.value.reason == TokenErrorReason.NOT_FOUND_OR_REVOKED
        # The record was not consumed
        assert memory_store.get_refresh_token(pair.refresh_token).revoked is False


class TestRevocation:
    def test_revoke_twice_is_idempotent(self, tokens, memory_store, alice):
        pair = tokens.issue_token_pair(alice)

        tokens.revoke(pair.refresh_token)
        tokens.revoke(pair.refresh_token)

        assert memory_store.get_refresh_token(pair.refresh_token).revoked is True

    def test_revoke_unknown_token_is_not_an_error(self, tokens):
        tokens.revoke("never-issued")

    def test_revoked_token_cannot_rotate(self, tokens, alice):
        pair = tokens.issue_token_pair(alice)
        tokens.revoke(pair.refresh_token)

        with pytest.raises(TokenError) as exc_info:
            tokens.rotate(pair.refresh_token)
        assert exc_info.value.reason == TokenErrorReason.NOT_FOUND_OR_REVOKED

    def test_revoke_all_blocks_every_token(self, tokens, alice):
        pairs = [tokens.issue_token_pair(alice) for _ in range(3)]

        assert tokens.revoke_all(alice.id) == 3
        assert tokens.revoke_all(alice.id) == 0
        for pair in pairs:
            with pytest.raises(TokenError):
                tokens.rotate(pair.refresh_token)
        assert tokens.list_active(alice.id) == []

    def test_revoke_all_leaves_other_users_alone(self, tokens, directory, alice):
        bob, _ = directory.create_user("bob@example.com", "AnotherPass1!")
        bob_pair = tokens.issue_token_pair(bob)
        tokens.issue_token_pair(alice)

        tokens.revoke_all(alice.id)

        assert tokens.rotate(bob_pair.refresh_token).user.id == bob.id

    def test_revoke_by_id(self, tokens, memory_store, alice):
        pair = tokens.issue_token_pair(alice)

        assert tokens.revoke_by_id(pair.refresh_record.id, alice.id) is True
        assert tokens.revoke_by_id(pair.refresh_record.id, alice.id) is False
        assert memory_store.get_refresh_token(pair.refresh_token).revoked is True

    def test_revoke_by_id_of_another_user_is_not_found(self, tokens, directory, alice):
        bob, _ = directory.create_user("bob@example.com", "AnotherPass1!")
        pair = tokens.issue_token_pair(bob)

        with pytest.raises(NotFoundError):
            tokens.revoke_by_id(pair.refresh_record.id, alice.id)
        with pytest.raises(NotFoundError):
            tokens.revoke_by_id("missing", alice.id)


class TestPeek:
    def test_peek_reads_unverified_claims(self, tokens, alice):
        token = tokens.issue_refresh_token(alice.id)
        header, payload, _ = token.split(".")

        assert tokens.peek_claims(f"{header}.{payload}.bogus")["userId"] == alice.id

    def test_peek_garbage_returns_none(self, tokens):
        assert tokens.peek_claims("garbage") is None
        assert tokens.peek_claims("a.b.c") is None
