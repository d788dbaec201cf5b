"""Tests for the HS256 token codec."""

from datetime import timedelta

import pytest

from adminguard.service.errors import ACTION_LOGIN, ACTION_REFRESH, TokenExpired, TokenMalformed
from adminguard.service.tokens import (
    PURPOSE_ACCESS,
    PURPOSE_REFRESH,
    TokenCodec,
    hash_token,
)


@pytest.fixture
def codec(clock):
    return TokenCodec(
        "unit-test-secret",
        issuer="adminguard",
        audience="adminguard-panel",
        access_ttl=timedelta(hours=24),
        refresh_ttl=timedelta(days=7),
        leeway=timedelta(seconds=30),
        clock=clock,
    )


class TestTokenCodec:
    def test_issue_pair_round_trip(self, codec, clock):
        """Both tokens verify for their own purpose and carry subject and session."""
        pair = codec.issue_pair("p-1", session_id="s-1", role="admin")
        access = codec.verify(pair.access_token, PURPOSE_ACCESS)
        refresh = codec.verify(pair.refresh_token, PURPOSE_REFRESH)
        assert access.subject == refresh.subject == "p-1"
        assert access.session_id == "s-1"
        assert access.role == "admin"
        assert pair.access_expires_at == clock.now + timedelta(hours=24)
        assert pair.refresh_expires_at == clock.now + timedelta(days=7)

    def test_purposes_are_not_interchangeable(self, codec):
        """An access token cannot be used as a refresh token and vice versa."""
        pair = codec.issue_pair("p-1")
        with pytest.raises(TokenMalformed):
            codec.verify(pair.access_token, PURPOSE_REFRESH)
        with pytest.raises(TokenMalformed):
            codec.verify(pair.refresh_token, PURPOSE_ACCESS)

    def test_foreign_secret_rejected(self, codec, clock):
        """A token signed with another secret is malformed."""
        other = TokenCodec(
            "other-secret", issuer="adminguard", audience="adminguard-panel", clock=clock
        )
        pair = other.issue_pair("p-1")
        with pytest.raises(TokenMalformed) as excinfo:
            codec.verify(pair.access_token, PURPOSE_ACCESS)
        assert excinfo.value.detail["action"] == ACTION_LOGIN

    def test_tampered_payload_rejected(self, codec):
        """Changing the payload invalidates the signature."""
        pair = codec.issue_pair("p-1")
        header, payload, signature = pair.access_token.split(".")
        forged_payload = codec._encode_segment(b'{"sub":"p-2"}')
        with pytest.raises(TokenMalformed):
            codec.verify(f"{header}.{forged_payload}.{signature}", PURPOSE_ACCESS)

    def test_expired_token(self, codec, clock):
        """A token past expiry plus leeway raises TokenExpired with the refresh hint."""
        pair = codec.issue_pair("p-1")
        clock.advance(hours=24, seconds=31)
        with pytest.raises(TokenExpired) as excinfo:
            codec.verify(pair.access_token, PURPOSE_ACCESS)
        assert excinfo.value.detail["action"] == ACTION_REFRESH

    def test_leeway_accepts_small_skew(self, codec, clock):
        """Expiry within the skew tolerance still verifies."""
        pair = codec.issue_pair("p-1")
        clock.advance(hours=24, seconds=10)
        assert codec.verify(pair.access_token, PURPOSE_ACCESS).subject == "p-1"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "x.y.z"])
    def test_garbage_is_malformed(self, codec, token):
        """Structurally broken tokens are malformed."""
        assert not codec.is_well_formed(token)
        with pytest.raises(TokenMalformed):
            codec.verify(token, PURPOSE_ACCESS)

    def test_is_well_formed_ignores_signature(self, codec, clock):
        """Structure checks pass for authentic-looking tokens from any signer."""
        other = TokenCodec("x", issuer="i", audience="a", clock=clock)
        assert codec.is_well_formed(other.issue_pair("p-1").access_token)

    def test_tokens_are_unique_per_issue(self, codec):
        """Two issues in the same instant still produce distinct tokens."""
        first = codec.issue_pair("p-1")
        second = codec.issue_pair("p-1")
        assert first.access_token != second.access_token
        assert hash_token(first.access_token) != hash_token(second.access_token)

    def test_empty_secret_refused(self):
        """The codec will not sign with an empty secret."""
        with pytest.raises(ValueError):
            TokenCodec("", issuer="i", audience="a")

    @pytest.mark.parametrize("signature", ["ééé", "sig+with/slash", "a b"])
    def test_signature_outside_base64url_is_malformed(self, codec, signature):
        """A signature segment with foreign characters is malformed, not an error."""
        header, payload, _ = codec.issue_pair("p-1").refresh_token.split(".")
        token = f"{header}.{payload}.{signature}"
        assert not codec.is_well_formed(token)
        with pytest.raises(TokenMalformed) as excinfo:
            codec.verify(token, PURPOSE_REFRESH)
        assert excinfo.value.detail["action"] == ACTION_LOGIN
