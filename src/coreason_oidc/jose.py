# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

"""
JOSE envelope processing: compact JWS signing/verification and JWE encryption/decryption.

Nested tokens are produced sign-then-encrypt and consumed decrypt-then-verify.
"""

import json
from typing import Any, NamedTuple

from authlib.common.encoding import json_dumps, to_bytes, to_unicode, urlsafe_b64decode, urlsafe_b64encode
from authlib.jose import JsonWebEncryption, JsonWebSignature
from authlib.jose.errors import BadSignatureError, DecodeError, JoseError
from authlib.jose.errors import UnsupportedAlgorithmError as JoseUnsupportedAlgorithmError
from cryptography.exceptions import InvalidTag

from coreason_oidc.exceptions import (
    CryptographicError,
    DecryptionError,
    KeyNotFoundError,
    MalformedTokenError,
    SignatureVerificationError,
    UnsupportedAlgorithmError,
)
from coreason_oidc.utils.logger import logger

UNSIGNED = "none"

DEFAULT_SIGNING_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]
DEFAULT_ENCRYPTION_ALGORITHMS = ["RSA1_5", "RSA-OAEP", "RSA-OAEP-256"]
DEFAULT_ENCRYPTION_ENCODINGS = ["A128CBC-HS256", "A192CBC-HS384", "A256CBC-HS512", "A128GCM", "A192GCM", "A256GCM"]

# A verification key, or a resolver called with the unverified (header, payload).
KeySource = Any


class Unpacked(NamedTuple):
    """Result of unpacking a possibly nested token."""

    header: dict[str, Any]
    payload: dict[str, Any]
    encrypted: bool


def _segments(token: str, expected: int) -> list[str]:
    if not isinstance(token, str) or not token:
        raise MalformedTokenError("Token must be a non-empty string")
    parts = token.strip().split(".")
    if len(parts) != expected:
        kind = "JWS" if expected == 3 else "JWE"
        raise MalformedTokenError(f"Compact {kind} must have {expected} segments, got {len(parts)}")
    return parts


def _decode_json_segment(segment: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(urlsafe_b64decode(to_bytes(segment)))
    except (ValueError, TypeError) as e:
        raise MalformedTokenError(f"Token {what} is not valid base64url-encoded JSON") from e
    if not isinstance(data, dict):
        raise MalformedTokenError(f"Token {what} must be a JSON object")
    return data


def _parse_payload(raw: bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedTokenError("Token payload is not valid JSON") from e
    if not isinstance(data, dict):
        raise MalformedTokenError("Token payload must be a JSON object")
    return data


def _key_id(key: Any) -> str | None:
    if isinstance(key, dict):
        return key.get("kid")
    kid = getattr(key, "kid", None)
    return kid if isinstance(kid, str) and kid else None


def _is_compact_jws(text: str) -> bool:
    return text.count(".") == 2 and not text.lstrip().startswith("{")


class JoseProcessor:
    """
    Signs, verifies, encrypts and decrypts JSON payloads as compact JOSE tokens.

    Every failure maps to one error kind: MalformedTokenError, UnsupportedAlgorithmError,
    SignatureVerificationError or DecryptionError. Unsigned (`alg=none`) tokens are only
    produced and accepted when explicitly permitted by the caller.

    Attributes:
        signing_algorithms (list[str]): Accepted JWS algorithms (besides `none`).
        encryption_algorithms (list[str]): Accepted JWE key management algorithms.
        encryption_encodings (list[str]): Accepted JWE content encryption algorithms.
    """

    def __init__(
        self,
        signing_algorithms: list[str] | None = None,
        encryption_algorithms: list[str] | None = None,
        encryption_encodings: list[str] | None = None,
    ) -> None:
        self.signing_algorithms = list(signing_algorithms or DEFAULT_SIGNING_ALGORITHMS)
        self.encryption_algorithms = list(encryption_algorithms or DEFAULT_ENCRYPTION_ALGORITHMS)
        self.encryption_encodings = list(encryption_encodings or DEFAULT_ENCRYPTION_ENCODINGS)
        # Explicit allow-lists so deprecated algorithms (e.g. RSA1_5) stay usable when configured
        self._jws = JsonWebSignature(algorithms=self.signing_algorithms)
        self._jwe = JsonWebEncryption(algorithms=self.encryption_algorithms + self.encryption_encodings)

    def peek_header(self, token: str) -> dict[str, Any]:
        """Returns the unverified protected header of a compact JWS or JWE."""
        if not isinstance(token, str) or "." not in token:
            raise MalformedTokenError("Token is not in compact serialization")
        return _decode_json_segment(token.strip().split(".", 1)[0], "header")

    def peek_payload(self, token: str) -> dict[str, Any]:
        """
        Returns the unverified payload of a compact JWS.

        Only for reading key material that the signature is then checked against.
        """
        return _decode_json_segment(_segments(token, 3)[1], "payload")

    def sign(self, payload: dict[str, Any], key: Any, alg: str, kid: str | None = None) -> str:
        """
        Serialises `payload` as a compact JWS.

        Args:
            payload: The JSON object to sign.
            key: The private key (authlib key, JWK dict, PEM or cryptography key). Ignored for `none`.
            alg: The JWS algorithm, or `none` for an unsecured JWS.
            kid: Key id for the header. Defaults to the key's own `kid`.

        Returns:
            str: The compact JWS.

        Raises:
            UnsupportedAlgorithmError: If `alg` is not allowed.
            CryptographicError: If the key cannot be used with `alg`.
        """
        if alg == UNSIGNED:
            header = urlsafe_b64encode(to_bytes(json_dumps({"alg": UNSIGNED})))
            body = urlsafe_b64encode(to_bytes(json_dumps(payload)))
            return f"{to_unicode(header)}.{to_unicode(body)}."

        if alg not in self.signing_algorithms:
            raise UnsupportedAlgorithmError(f"Signing algorithm '{alg}' is not allowed")

        protected: dict[str, Any] = {"alg": alg, "typ": "JWT"}
        kid = kid or _key_id(key)
        if kid:
            protected["kid"] = kid

        try:
            token = self._jws.serialize_compact(protected, to_bytes(json_dumps(payload)), key)
        except JoseUnsupportedAlgorithmError as e:
            raise UnsupportedAlgorithmError(f"Signing algorithm '{alg}' is not supported: {e}") from e
        except (JoseError, ValueError, TypeError) as e:
            logger.error(f"JWS signing with {alg} failed: {e}")
            raise CryptographicError(f"Failed to sign payload with {alg}: {e}") from e
        return to_unicode(token)

    def encrypt(self, payload: dict[str, Any] | str, key: Any, alg: str, enc: str) -> str:
        """
        Serialises `payload` as a compact JWE.

        A string payload is taken to be a compact JWS (sign-then-encrypt) and flagged with `cty: JWT`.

        Raises:
            UnsupportedAlgorithmError: If `alg` or `enc` is not allowed.
            CryptographicError: If the key cannot be used with `alg`.
        """
        if alg not in self.encryption_algorithms:
            raise UnsupportedAlgorithmError(f"Key management algorithm '{alg}' is not allowed")
        if enc not in self.encryption_encodings:
            raise UnsupportedAlgorithmError(f"Content encryption algorithm '{enc}' is not allowed")

        protected: dict[str, Any] = {"alg": alg, "enc": enc}
        if isinstance(payload, str):
            protected["cty"] = "JWT"
            plaintext = to_bytes(payload)
        else:
            plaintext = to_bytes(json_dumps(payload))
        kid = _key_id(key)
        if kid:
            protected["kid"] = kid

        try:
            token = self._jwe.serialize_compact(protected, plaintext, key)
        except JoseUnsupportedAlgorithmError as e:
            raise UnsupportedAlgorithmError(f"Encryption algorithm '{alg}/{enc}' is not supported: {e}") from e
        except (JoseError, ValueError, TypeError) as e:
            logger.error(f"JWE encryption with {alg}/{enc} failed: {e}")
            raise CryptographicError(f"Failed to encrypt payload with {alg}/{enc}: {e}") from e
        return to_unicode(token)

    def verify(self, token: str, key: KeySource, allow_unsigned: bool = False) -> dict[str, Any]:
        """
        Verifies a compact JWS and returns its payload.

        Raises:
            MalformedTokenError: If the token is not a well-formed JWS.
            UnsupportedAlgorithmError: If `alg` is not allowed (including `none` when not permitted).
            SignatureVerificationError: If the signature does not verify.
            KeyNotFoundError: If no key is available.
        """
        return self._verify(token, key, allow_unsigned)[1]

    def _verify(self, token: str, key: KeySource, allow_unsigned: bool) -> tuple[dict[str, Any], dict[str, Any]]:
        segments = _segments(token, 3)
        header = _decode_json_segment(segments[0], "header")
        alg = header.get("alg")

        if alg == UNSIGNED:
            if not allow_unsigned:
                raise UnsupportedAlgorithmError("Unsecured JWS (alg=none) is not permitted here")
            if segments[2]:
                raise MalformedTokenError("Unsecured JWS must have an empty signature segment")
            return header, _decode_json_segment(segments[1], "payload")

        if alg not in self.signing_algorithms:
            raise UnsupportedAlgorithmError(f"Signing algorithm '{alg}' is not allowed")

        if callable(key):
            key = key(header, _decode_json_segment(segments[1], "payload"))
        if key is None:
            raise KeyNotFoundError(f"No key available to verify {alg} signature")

        try:
            obj = self._jws.deserialize_compact(token.strip(), key)
        except BadSignatureError as e:
            raise SignatureVerificationError(f"Invalid signature: {e}") from e
        except JoseUnsupportedAlgorithmError as e:
            raise UnsupportedAlgorithmError(f"Signing algorithm '{alg}' is not supported: {e}") from e
        except DecodeError as e:
            raise MalformedTokenError(f"Malformed JWS: {e}") from e
        except (JoseError, ValueError, TypeError) as e:
            # Key of the wrong type or size for the algorithm
            raise SignatureVerificationError(f"Signature could not be verified with the given key: {e}") from e

        return dict(obj["header"]), _parse_payload(obj["payload"])

    def decrypt(self, token: str, key: Any) -> dict[str, Any] | str:
        """
        Decrypts a compact JWE.

        Returns:
            dict | str: The JSON payload, or the inner compact JWS when the JWE is nested.

        Raises:
            MalformedTokenError: If the token is not a well-formed JWE.
            UnsupportedAlgorithmError: If `alg`/`enc` is not allowed.
            DecryptionError: If decryption or the integrity check fails.
        """
        header, plaintext = self._decrypt(token, key)
        text = to_unicode(plaintext)
        if str(header.get("cty", "")).upper() == "JWT" or _is_compact_jws(text):
            return text.strip()
        return _parse_payload(plaintext)

    def _decrypt(self, token: str, key: Any) -> tuple[dict[str, Any], bytes]:
        segments = _segments(token, 5)
        header = _decode_json_segment(segments[0], "header")
        alg, enc = header.get("alg"), header.get("enc")
        if alg not in self.encryption_algorithms:
            raise UnsupportedAlgorithmError(f"Key management algorithm '{alg}' is not allowed")
        if enc not in self.encryption_encodings:
            raise UnsupportedAlgorithmError(f"Content encryption algorithm '{enc}' is not allowed")
        if key is None:
            raise KeyNotFoundError("No key available to decrypt the token")

        try:
            obj = self._jwe.deserialize_compact(token.strip(), key)
        except DecodeError as e:
            raise MalformedTokenError(f"Malformed JWE: {e}") from e
        except JoseUnsupportedAlgorithmError as e:
            raise UnsupportedAlgorithmError(f"Encryption algorithm '{alg}/{enc}' is not supported: {e}") from e
        except (JoseError, InvalidTag, ValueError, TypeError) as e:
            logger.warning(f"JWE decryption with {alg}/{enc} failed")
            raise DecryptionError(f"Failed to decrypt token: {e}") from e

        return dict(obj["header"]), obj["payload"]

    def unpack(
        self,
        token: str,
        verification_key: KeySource = None,
        decryption_key: Any = None,
        allow_unsigned: bool = False,
    ) -> Unpacked:
        """
        Unpacks a JWS, a JWE, or a nested sign-then-encrypt token.

        Decryption happens first, then signature verification. An encrypted payload that does not
        contain a JWS is only returned when `allow_unsigned` is set; it is never treated as signed.

        Args:
            token: The compact token.
            verification_key: Key (or resolver) for the signature.
            decryption_key: The recipient's private key for the JWE layer.
            allow_unsigned: Accept `alg=none` and encrypted-only payloads.

        Returns:
            Unpacked: The innermost header, the payload and whether a JWE layer was present.
        """
        if not isinstance(token, str):
            raise MalformedTokenError("Token must be a string")
        token = token.strip()
        if token.count(".") == 4:
            if decryption_key is None:
                raise KeyNotFoundError("Token is encrypted but no decryption key is available")
            inner = self.decrypt(token, decryption_key)
            if isinstance(inner, dict):
                if not allow_unsigned:
                    raise UnsupportedAlgorithmError("Encrypted token does not carry a signed JWS")
                return Unpacked(self.peek_header(token), inner, True)
            header, payload = self._verify(inner, verification_key, allow_unsigned)
            return Unpacked(header, payload, True)

        header, payload = self._verify(token, verification_key, allow_unsigned)
        return Unpacked(header, payload, False)
