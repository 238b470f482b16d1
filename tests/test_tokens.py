"""Tests for the HS256 token codec."""

import base64
import json
from datetime import timedelta

import pytest

from helpdesk.service.tokens import (
    ACCESS,
    EXPIRED_TOKEN,
    INVALID_CLAIMS,
    INVALID_SIGNATURE,
    MALFORMED_TOKEN,
    MISSING_TOKEN,
    REFRESH,
    TokenCodec,
    TokenError,
    extract_bearer,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_codec(clock):
    return TokenCodec(
        "unit-test-secret-unit-test-secret-0123",
        issuer="helpdesk-system",
        access_audience="helpdesk-users",
        refresh_audience="helpdesk-refresh",
        leeway_seconds=30,
        clock=clock,
    )


class TestIssueAndDecode:
    def test_access_token_round_trip_carries_identity(self, clocked_codec):
        token, claims = clocked_codec.issue(
            "user-1",
            "technician",
            ttl=timedelta(minutes=30),
            display_name="Ana",
            department="IT",
        )

        decoded = clocked_codec.decode(token)

        assert decoded.subject == "user-1"
        assert decoded.role == "technician"
        assert decoded.token_type == ACCESS
        assert decoded.display_name == "Ana"
        assert decoded.department == "IT"
        assert decoded.jti == claims.jti
        assert decoded.expires_at == claims.expires_at

    def test_each_token_gets_distinct_jti(self, clocked_codec):
        _, first = clocked_codec.issue("user-1", "user", ttl=timedelta(minutes=5))
        _, second = clocked_codec.issue("user-1", "user", ttl=timedelta(minutes=5))
        assert first.jti != second.jti

    def test_refresh_token_not_accepted_as_access(self, clocked_codec):
        token, _ = clocked_codec.issue(
            "user-1", "user", token_type=REFRESH, ttl=timedelta(days=1)
        )

        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token, token_type=ACCESS)
        assert exc.value.reason == INVALID_CLAIMS
        assert clocked_codec.decode(token, token_type=REFRESH).subject == "user-1"

    def test_unknown_token_type_rejected_at_issue(self, clocked_codec):
        with pytest.raises(ValueError):
            clocked_codec.issue("user-1", "user", token_type="api", ttl=timedelta(minutes=1))


class TestDecodeFailures:
    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, clocked_codec, token):
        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token)
        assert exc.value.reason == MISSING_TOKEN

    @pytest.mark.parametrize("token", ["abc", "a.b", "a.b.c.d"])
    def test_wrong_segment_count_is_malformed(self, clocked_codec, token):
        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token)
        assert exc.value.reason == MALFORMED_TOKEN

    def test_garbage_header_is_malformed(self, clocked_codec):
        with pytest.raises(TokenError) as exc:
            clocked_codec.decode("!!!.payload.sig")
        assert exc.value.reason == MALFORMED_TOKEN

    def test_non_hs256_algorithm_rejected(self, clocked_codec):
        token, _ = clocked_codec.issue("user-1", "user", ttl=timedelta(minutes=5))
        _, payload, sig = token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}.{sig}"

        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(forged)
        assert exc.value.reason == INVALID_SIGNATURE

    def test_tampered_payload_fails_signature(self, clocked_codec):
        token, _ = clocked_codec.issue("user-1", "user", ttl=timedelta(minutes=5))
        header, _, sig = token.split(".")
        tampered_payload = _segment(
            {
                "iss": "helpdesk-system",
                "aud": "helpdesk-users",
                "sub": "user-1",
                "role": "admin",
                "token_type": "access",
                "exp": 9_999_999_999,
            }
        )

        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(f"{header}.{tampered_payload}.{sig}")
        assert exc.value.reason == INVALID_SIGNATURE

    def test_token_signed_with_other_secret_rejected(self, clocked_codec, clock):
        other = TokenCodec(
            "a-completely-different-secret-value-42",
            issuer="helpdesk-system",
            access_audience="helpdesk-users",
            refresh_audience="helpdesk-refresh",
            clock=clock,
        )
        token, _ = other.issue("user-1", "user", ttl=timedelta(minutes=5))

        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token)
        assert exc.value.reason == INVALID_SIGNATURE

    def test_wrong_issuer_is_invalid_claims(self, clocked_codec):
        token = clocked_codec.encode(
            {
                "iss": "someone-else",
                "aud": "helpdesk-users",
                "sub": "user-1",
                "token_type": "access",
                "exp": 9_999_999_999,
            }
        )
        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token)
        assert exc.value.reason == INVALID_CLAIMS

    def test_missing_expiry_is_invalid_claims(self, clocked_codec):
        token = clocked_codec.encode(
            {
                "iss": "helpdesk-system",
                "aud": "helpdesk-users",
                "sub": "user-1",
                "token_type": "access",
            }
        )
        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token)
        assert exc.value.reason == INVALID_CLAIMS

    def test_expired_token_after_leeway(self, clocked_codec, clock):
        token, _ = clocked_codec.issue("user-1", "user", ttl=timedelta(minutes=1))

        clock.now += 60 + 29
        assert clocked_codec.decode(token).subject == "user-1"

        clock.now += 2
        with pytest.raises(TokenError) as exc:
            clocked_codec.decode(token)
        assert exc.value.reason == EXPIRED_TOKEN


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer token123", "token123"),
            ("Bearer   ", None),
            ("Basic dXNlcjpwYXNz", None),
            (None, None),
            ("", None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected
