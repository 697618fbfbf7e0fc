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
JWK Set parsing, key selection by use/type, and publication of the RP's own keys.
"""

import base64
from pathlib import Path
from typing import Any

from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from coreason_oidc.exceptions import InvalidKeySetError, KeyNotFoundError
from coreason_oidc.models import JWKSet

SIG = "sig"
ENC = "enc"

PEMSource = bytes | str | Path

_PUBLIC_RSA_FIELDS = ("kty", "n", "e")


def parse_jwks(data: Any) -> JWKSet:
    """
    Parses a JWK Set document.

    Args:
        data: The decoded JSON document.

    Returns:
        JWKSet: The key set.

    Raises:
        InvalidKeySetError: If `keys` is missing, an entry lacks `kty`, `use` is unknown,
            or two keys share a `kid`.
    """
    if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
        raise InvalidKeySetError("JWK Set must be a JSON object with a 'keys' array")

    seen: set[str] = set()
    for jwk in data["keys"]:
        if not isinstance(jwk, dict) or not jwk.get("kty"):
            raise InvalidKeySetError("Every JWK must be an object carrying 'kty'")
        if jwk.get("use") not in (None, SIG, ENC):
            raise InvalidKeySetError(f"Unknown key use '{jwk.get('use')}'")
        kid = jwk.get("kid")
        if kid is not None:
            if kid in seen:
                raise InvalidKeySetError(f"Duplicate key id '{kid}' in JWK Set")
            seen.add(kid)

    return JWKSet(keys=data["keys"])


def kty_for_alg(alg: str) -> str:
    """Maps a JWS/JWE algorithm to the key type it needs."""
    if alg.startswith(("RS", "PS")) or alg.startswith("RSA"):
        return "RSA"
    if alg.startswith("ES") or alg.startswith("ECDH"):
        return "EC"
    if alg == "EdDSA":
        return "OKP"
    if alg.startswith("HS") or alg.startswith("A") or alg == "dir":
        return "oct"
    raise KeyNotFoundError(f"No key type known for algorithm '{alg}'")


def select_key(jwks: JWKSet | dict[str, Any], use: str, kty: str, kid: str | None = None) -> Any:
    """
    Returns the first key of type `kty` usable for `use`.

    A key tagged for the other use never matches; an untagged key matches either use.

    Args:
        jwks: The key set.
        use: `sig` or `enc`.
        kty: The JWK key type (e.g. `RSA`).
        kid: Restrict the match to this key id.

    Returns:
        An authlib key object.

    Raises:
        KeyNotFoundError: If no key matches.
    """
    key_set = jwks if isinstance(jwks, JWKSet) else parse_jwks(jwks)
    for jwk in key_set.keys:
        if jwk.get("kty") != kty:
            continue
        if jwk.get("use", use) != use:
            continue
        if kid is not None and jwk.get("kid") != kid:
            continue
        try:
            return JsonWebKey.import_key(jwk)
        except (JoseError, ValueError) as e:
            raise InvalidKeySetError(f"Key '{jwk.get('kid', '?')}' could not be imported: {e}") from e

    suffix = f" and kid '{kid}'" if kid is not None else ""
    raise KeyNotFoundError(f"No {kty} key with use '{use}'{suffix}")


def _read_pem(source: PEMSource) -> bytes:
    if isinstance(source, Path):
        return source.read_bytes()
    if isinstance(source, str):
        if "-----BEGIN" in source:
            return source.encode("ascii")
        return Path(source).read_bytes()
    return source


def load_certificate(source: PEMSource) -> x509.Certificate:
    """Loads a PEM X.509 certificate from bytes, a PEM string or a file path."""
    try:
        return x509.load_pem_x509_certificate(_read_pem(source))
    except ValueError as e:
        raise InvalidKeySetError(f"Invalid PEM certificate: {e}") from e


def load_private_key(source: PEMSource, password: bytes | None = None) -> Any:
    """Loads a PEM private key from bytes, a PEM string or a file path."""
    try:
        return serialization.load_pem_private_key(_read_pem(source), password=password)
    except (ValueError, TypeError) as e:
        raise InvalidKeySetError(f"Invalid PEM private key: {e}") from e


def public_jwk(key: Any) -> dict[str, Any]:
    """
    Returns the public JWK (`kty`, `n`, `e`) of an RSA key in any form authlib can import.
    """
    try:
        imported = JsonWebKey.import_key(key, {"kty": "RSA"})
        data = imported.as_dict(is_private=False)
    except (JoseError, ValueError, TypeError) as e:
        raise InvalidKeySetError(f"Not a usable RSA key: {e}") from e
    return {name: data[name] for name in _PUBLIC_RSA_FIELDS}


def thumbprint(jwk: dict[str, Any]) -> str:
    """RFC 7638 SHA-256 thumbprint of a JWK, base64url encoded."""
    try:
        return str(JsonWebKey.import_key(jwk).thumbprint())
    except (JoseError, ValueError, TypeError) as e:
        raise InvalidKeySetError(f"Cannot compute thumbprint: {e}") from e


def _certificate_jwk(source: PEMSource, use: str) -> dict[str, Any]:
    cert = load_certificate(source)
    public_key = cert.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise InvalidKeySetError("Only RSA certificates can be published")

    jwk = public_jwk(public_key)
    # Same certificate may back both uses; kids must stay unique within the set
    jwk["kid"] = f"{use}-{thumbprint(jwk)}"
    jwk["use"] = use
    if use == SIG:
        jwk["alg"] = "RS256"
    der = cert.public_bytes(serialization.Encoding.DER)
    jwk["x5c"] = [base64.b64encode(der).decode("ascii")]
    return jwk


def publish_keys(sign_cert: PEMSource, enc_cert: PEMSource) -> dict[str, Any]:
    """
    Builds the RP's public JWK Set from its signing and encryption certificates.

    Args:
        sign_cert: PEM certificate whose key signs request objects.
        enc_cert: PEM certificate whose key receives encrypted tokens.

    Returns:
        dict: A JWK Set with one `use=sig` and one `use=enc` RSA key.
    """
    return {"keys": [_certificate_jwk(sign_cert, SIG), _certificate_jwk(enc_cert, ENC)]}
