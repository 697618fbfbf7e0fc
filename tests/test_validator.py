# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import time
from typing import Any

import pytest
from conftest import ACCESS_TOKEN, AUTH_CODE, CLIENT_ID, ISSUER, SUBJECT, half_hash
from pydantic import SecretStr

from coreason_oidc.exceptions import (
    AudienceMismatchError,
    HashBindingMismatchError,
    IssuerMismatchError,
    KeyNotFoundError,
    MalformedResponseError,
    NonceMismatchError,
    SignatureVerificationError,
    TokenExpiredError,
    UnsupportedAlgorithmError,
)
from coreason_oidc.jose import JoseProcessor
from coreason_oidc.keys import public_jwk, thumbprint
from coreason_oidc.models import JWKSet
from coreason_oidc.validator import IdTokenValidator

NONCE = "n-0S6_WzA2Mj"
SALT = SecretStr("test-salt")


@pytest.fixture
def jose() -> JoseProcessor:
    return JoseProcessor()


@pytest.fixture
def validator(jose: JoseProcessor) -> IdTokenValidator:
    return IdTokenValidator(jose, CLIENT_ID, ISSUER, SALT, ["RS256"])


def claims(**overrides: Any) -> dict[str, Any]:
    now = int(time.time())
    base: dict[str, Any] = {
        "iss": ISSUER,
        "sub": SUBJECT,
        "aud": CLIENT_ID,
        "iat": now,
        "exp": now + 300,
        "nonce": NONCE,
    }
    base.update(overrides)
    return {k: v for k, v in base.items() if v is not None}


def test_valid_token(
    validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
) -> None:
    token = jose.sign(claims(name="Jane Doe"), op_signing_key, "RS256", kid="op-sig")

    result = validator.validate(token, NONCE, keys=op_jwks)

    assert result.sub == SUBJECT
    assert result.name == "Jane Doe"
    assert result.audiences == [CLIENT_ID]


def test_audience_list_with_azp(
    validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
) -> None:
    token = jose.sign(claims(aud=[CLIENT_ID, "other"], azp=CLIENT_ID), op_signing_key, "RS256", kid="op-sig")
    assert validator.validate(token, NONCE, keys=op_jwks).azp == CLIENT_ID

    token = jose.sign(claims(aud=[CLIENT_ID, "other"], azp="other"), op_signing_key, "RS256", kid="op-sig")
    with pytest.raises(AudienceMismatchError):
        validator.validate(token, NONCE, keys=op_jwks)


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"iss": "https://evil.example.com"}, IssuerMismatchError),
        ({"aud": "someone-else"}, AudienceMismatchError),
        ({"exp": int(time.time()) - 60}, TokenExpiredError),
        ({"nonce": "replayed"}, NonceMismatchError),
        ({"nonce": "n-été"}, NonceMismatchError),
        ({"nonce": None}, NonceMismatchError),
        ({"exp": None}, MalformedResponseError),
        ({"sub": None}, MalformedResponseError),
    ],
)
def test_claim_failures(
    validator: IdTokenValidator,
    jose: JoseProcessor,
    op_signing_key: Any,
    op_jwks: JWKSet,
    overrides: dict[str, Any],
    error: type[Exception],
) -> None:
    token = jose.sign(claims(**overrides), op_signing_key, "RS256", kid="op-sig")

    with pytest.raises(error):
        validator.validate(token, NONCE, keys=op_jwks)


def test_leeway_accepts_recent_expiry(jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet) -> None:
    lenient = IdTokenValidator(jose, CLIENT_ID, ISSUER, SALT, ["RS256"], leeway=120)
    token = jose.sign(claims(exp=int(time.time()) - 30), op_signing_key, "RS256", kid="op-sig")

    assert lenient.validate(token, NONCE, keys=op_jwks).sub == SUBJECT


def test_fractional_numeric_dates(
    validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
) -> None:
    now = time.time()
    token = jose.sign(claims(iat=now, exp=now + 300.5, auth_time=now - 10.25), op_signing_key, "RS256", kid="op-sig")

    result = validator.validate(token, NONCE, keys=op_jwks)
    assert result.exp == pytest.approx(now + 300.5)

    expired = jose.sign(claims(iat=now - 60, exp=now - 0.5), op_signing_key, "RS256", kid="op-sig")
    with pytest.raises(TokenExpiredError):
        validator.validate(expired, NONCE, keys=op_jwks)


def test_nonce_not_checked_when_not_sent(
    validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
) -> None:
    token = jose.sign(claims(nonce=None), op_signing_key, "RS256", kid="op-sig")
    assert validator.validate(token, None, keys=op_jwks).nonce is None


def test_signed_by_unknown_key(
    validator: IdTokenValidator, jose: JoseProcessor, other_key: Any, op_jwks: JWKSet
) -> None:
    token = jose.sign(claims(), other_key, "RS256", kid="op-sig")

    with pytest.raises(SignatureVerificationError):
        validator.validate(token, NONCE, keys=op_jwks)


def test_unknown_kid(validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet) -> None:
    token = jose.sign(claims(), op_signing_key, "RS256", kid="rotated-away")

    with pytest.raises(KeyNotFoundError):
        validator.validate(token, NONCE, keys=op_jwks)


def test_encryption_key_is_not_a_verification_key(
    validator: IdTokenValidator, jose: JoseProcessor, op_encryption_key: Any, op_jwks: JWKSet
) -> None:
    token = jose.sign(claims(), op_encryption_key, "RS256", kid="op-enc")

    with pytest.raises(KeyNotFoundError):
        validator.validate(token, NONCE, keys=op_jwks)


def test_missing_keys(validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any) -> None:
    token = jose.sign(claims(), op_signing_key, "RS256", kid="op-sig")

    with pytest.raises(KeyNotFoundError):
        validator.validate(token, NONCE)


def test_unsigned_token_rejected(validator: IdTokenValidator, jose: JoseProcessor, op_jwks: JWKSet) -> None:
    token = jose.sign(claims(), None, "none")

    with pytest.raises(UnsupportedAlgorithmError):
        validator.validate(token, NONCE, keys=op_jwks)


def test_algorithm_outside_allow_list(
    jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
) -> None:
    strict = IdTokenValidator(jose, CLIENT_ID, ISSUER, SALT, ["PS256"])
    token = jose.sign(claims(), op_signing_key, "RS256", kid="op-sig")

    with pytest.raises(UnsupportedAlgorithmError):
        strict.validate(token, NONCE, keys=op_jwks)


class TestHashBinding:
    def test_at_hash_and_c_hash(
        self, validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
    ) -> None:
        token = jose.sign(
            claims(at_hash=half_hash(ACCESS_TOKEN), c_hash=half_hash(AUTH_CODE)), op_signing_key, "RS256", kid="op-sig"
        )

        result = validator.validate(token, NONCE, keys=op_jwks, access_token=ACCESS_TOKEN, code=AUTH_CODE)
        assert result.at_hash == half_hash(ACCESS_TOKEN)

    def test_access_token_swapped(
        self, validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
    ) -> None:
        token = jose.sign(claims(at_hash=half_hash(ACCESS_TOKEN)), op_signing_key, "RS256", kid="op-sig")

        with pytest.raises(HashBindingMismatchError):
            validator.validate(token, NONCE, keys=op_jwks, access_token="stolen-token")

    def test_missing_c_hash(
        self, validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
    ) -> None:
        token = jose.sign(claims(), op_signing_key, "RS256", kid="op-sig")

        with pytest.raises(HashBindingMismatchError, match="missing 'c_hash'"):
            validator.validate(token, NONCE, keys=op_jwks, code=AUTH_CODE)

    def test_non_ascii_at_hash(
        self, validator: IdTokenValidator, jose: JoseProcessor, op_signing_key: Any, op_jwks: JWKSet
    ) -> None:
        token = jose.sign(claims(at_hash="hâsh"), op_signing_key, "RS256", kid="op-sig")

        with pytest.raises(HashBindingMismatchError):
            validator.validate(token, NONCE, keys=op_jwks, access_token=ACCESS_TOKEN)


def test_encrypted_id_token(jose: JoseProcessor, op_signing_key: Any, rp_key: Any, op_jwks: JWKSet) -> None:
    validator = IdTokenValidator(jose, CLIENT_ID, ISSUER, SALT, ["RS256"], decryption_key=rp_key)
    signed = jose.sign(claims(), op_signing_key, "RS256", kid="op-sig")
    token = jose.encrypt(signed, rp_key, "RSA1_5", "A128CBC-HS256")

    assert validator.validate(token, NONCE, keys=op_jwks).sub == SUBJECT


class TestSelfIssued:
    def self_issued_claims(self, key: Any, **overrides: Any) -> dict[str, Any]:
        jwk = public_jwk(key)
        subject = thumbprint(jwk)
        return claims(**{"iss": subject, "sub": subject, "sub_jwk": jwk, **overrides})

    def test_valid(self, validator: IdTokenValidator, jose: JoseProcessor, rp_key: Any) -> None:
        token = jose.sign(self.self_issued_claims(rp_key), rp_key, "RS256")

        result = validator.validate(token, NONCE, self_issued=True)
        assert result.iss == result.sub == thumbprint(public_jwk(rp_key))

    def test_signed_by_another_key(
        self, validator: IdTokenValidator, jose: JoseProcessor, rp_key: Any, other_key: Any
    ) -> None:
        token = jose.sign(self.self_issued_claims(rp_key), other_key, "RS256")

        with pytest.raises(SignatureVerificationError):
            validator.validate(token, NONCE, self_issued=True)

    def test_iss_must_equal_sub(self, validator: IdTokenValidator, jose: JoseProcessor, rp_key: Any) -> None:
        token = jose.sign(self.self_issued_claims(rp_key, iss="https://self-issued.me"), rp_key, "RS256")

        with pytest.raises(IssuerMismatchError, match="iss == sub"):
            validator.validate(token, NONCE, self_issued=True)

    def test_sub_must_be_key_thumbprint(self, validator: IdTokenValidator, jose: JoseProcessor, rp_key: Any) -> None:
        token = jose.sign(self.self_issued_claims(rp_key, iss="someone", sub="someone"), rp_key, "RS256")

        with pytest.raises(IssuerMismatchError, match="thumbprint"):
            validator.validate(token, NONCE, self_issued=True)

    def test_missing_sub_jwk(self, validator: IdTokenValidator, jose: JoseProcessor, rp_key: Any) -> None:
        token = jose.sign(claims(iss=SUBJECT), rp_key, "RS256")

        with pytest.raises(KeyNotFoundError, match="sub_jwk"):
            validator.validate(token, NONCE, self_issued=True)

    def test_private_sub_jwk_rejected(self, validator: IdTokenValidator, jose: JoseProcessor, rp_key: Any) -> None:
        private = dict(rp_key.as_dict(is_private=True))
        token = jose.sign(claims(sub_jwk=private), rp_key, "RS256")

        with pytest.raises(KeyNotFoundError, match="public key"):
            validator.validate(token, NONCE, self_issued=True)
