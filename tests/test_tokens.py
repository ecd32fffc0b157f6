"""Tests for RS256 access tokens, key material and the JWKS document."""

import base64

import jwt
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from tenantauth.service.errors import TokenExpiredError, TokenInvalidError
from tenantauth.service.keys import (
    KeyMaterialError,
    KeyProvider,
    compute_kid,
    generate_key_pair,
)
from tenantauth.service.tokens import TokenService


@pytest.fixture
def keys(settings):
    return KeyProvider(settings)


@pytest.fixture
def token_service(settings, keys, clock):
    return TokenService(settings, keys, clock)


def _b64url_uint(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


class TestKeyProvider:
    def test_kid_is_truncated_sha256_of_public_pem(self, keys, key_paths):
        _, public_path = key_paths
        assert keys.kid == compute_kid(public_path.read_bytes())
        assert len(keys.kid) == 16

    def test_material_is_loaded_once(self, keys):
        assert keys.material() is keys.material()

    def test_missing_key_fails_with_path_in_message(self, settings, tmp_path):
        broken = settings.model_copy(
            update={"private_key_path": str(tmp_path / "absent.pem")}
        )
        with pytest.raises(KeyMaterialError) as excinfo:
            KeyProvider(broken).material()
        assert "absent.pem" in str(excinfo.value)

    def test_mismatched_pair_is_rejected(self, settings, tmp_path):
        _, other_public = generate_key_pair(tmp_path / "other")
        mixed = settings.model_copy(update={"public_key_path": str(other_public)})
        with pytest.raises(KeyMaterialError):
            KeyProvider(mixed).material()

    def test_sign_produces_verifiable_signature(self, keys):
        signature = keys.sign(b"payload")
        keys.verification_key().verify(
            signature, b"payload", padding.PKCS1v15(), hashes.SHA256()
        )


class TestAccessTokens:
    def test_round_trip_preserves_claim_shape(self, token_service, clock):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", ["user", "editor"])

        claims = token_service.verify_access_token(token)

        assert claims.sub == "user-1"
        assert claims.aud == "client-1"
        assert claims.tid == "app-1"
        assert claims.roles == ["user", "editor"]
        assert claims.iss == "tenantauth-test"
        assert claims.iat == int(clock.now().timestamp())
        assert claims.exp == claims.iat + 10 * 60
        assert set(claims.to_dict()) == {"sub", "aud", "tid", "roles", "iss", "iat", "exp"}

    def test_header_carries_kid_and_rs256(self, token_service, keys):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", [])
        header = jwt.get_unverified_header(token)

        assert header["alg"] == "RS256"
        assert header["kid"] == keys.kid

    def test_expired_token_is_distinguished(self, token_service, clock):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", [])
        clock.advance(minutes=10)

        with pytest.raises(TokenExpiredError) as excinfo:
            token_service.verify_access_token(token)
        assert excinfo.value.error_code == "token_expired"
        assert excinfo.value.status_code == 401

    def test_token_valid_just_before_expiry(self, token_service, clock):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", [])
        clock.advance(minutes=9, seconds=59)

        assert token_service.verify_access_token(token).sub == "user-1"

    def test_hs256_token_is_rejected(self, token_service, clock):
        """Algorithm confusion: a symmetric signature must never be accepted."""
        now = int(clock.now().timestamp())
        payload = {
            "sub": "attacker",
            "aud": "client-1",
            "tid": "app-1",
            "roles": ["admin"],
            "iss": "tenantauth-test",
            "iat": now,
            "exp": now + 600,
        }
        forged = jwt.encode(payload, "hmac-secret-" * 6, algorithm="HS256")

        with pytest.raises(TokenInvalidError) as excinfo:
            token_service.verify_access_token(forged)
        assert excinfo.value.error_code == "token_invalid"

    def test_unsigned_token_is_rejected(self, token_service):
        unsigned = jwt.encode({"sub": "x"}, key=None, algorithm="none")
        with pytest.raises(TokenInvalidError):
            token_service.verify_access_token(unsigned)

    def test_tampered_payload_is_rejected(self, token_service):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", ["user"])
        header, payload, signature = token.split(".")
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        forged_payload = (
            base64.urlsafe_b64encode(raw.replace(b'"user"', b'"root"')).rstrip(b"=").decode()
        )

        with pytest.raises(TokenInvalidError):
            token_service.verify_access_token(".".join([header, forged_payload, signature]))

    def test_wrong_issuer_is_rejected(self, settings, keys, clock):
        other = TokenService(settings.model_copy(update={"jwt_issuer": "someone-else"}), keys, clock)
        token = other.issue_access_token("user-1", "client-1", "app-1", [])

        with pytest.raises(TokenInvalidError):
            TokenService(settings, keys, clock).verify_access_token(token)

    def test_audience_check_is_optional(self, token_service):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", [])

        assert token_service.verify_access_token(token, audience="client-1").aud == "client-1"
        with pytest.raises(TokenInvalidError):
            token_service.verify_access_token(token, audience="client-2")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b.c", "Bearer x.y.z"])
    def test_malformed_tokens_are_invalid(self, token_service, garbage):
        with pytest.raises(TokenInvalidError):
            token_service.verify_access_token(garbage)


class TestJwks:
    def test_jwks_exposes_only_public_material(self, token_service, keys):
        document = token_service.jwks()

        assert len(document["keys"]) == 1
        jwk = document["keys"][0]
        assert jwk["kid"] == keys.kid
        assert jwk["alg"] == "RS256"
        assert jwk["use"] == "sig"
        assert jwk["kty"] == "RSA"
        assert "d" not in jwk and "p" not in jwk

        numbers = keys.verification_key().public_numbers()
        assert _b64url_uint(jwk["n"]) == numbers.n
        assert _b64url_uint(jwk["e"]) == numbers.e

    def test_token_verifies_against_published_jwk(self, token_service):
        token = token_service.issue_access_token("user-1", "client-1", "app-1", [])
        jwk = token_service.jwks()["keys"][0]
        public_key = jwt.PyJWK(jwk).key

        decoded = jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            audience="client-1",
            options={"verify_exp": False, "verify_iat": False},
        )
        assert decoded["sub"] == "user-1"
