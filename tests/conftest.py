# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import datetime
import json
import socket
import threading
import time
from collections.abc import Callable
from typing import Any, Generator
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qsl, urlencode, urlparse

import httpx
import pytest
from authlib.common.encoding import to_unicode
from authlib.jose import JsonWebKey
from authlib.oidc.core.util import create_half_hash
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from coreason_oidc.jose import JoseProcessor
from coreason_oidc.models import ClientInformation, JWKSet
from coreason_oidc.request_builder import InMemoryRequestObjectHost
from coreason_oidc.userinfo import claims_for_scopes

ISSUER = "https://op.example.com"
CLIENT_ID = "client-123"
REDIRECT_URI = "https://rp.example/cb"
SUBJECT = "user-42"
AUTH_CODE = "code-123"
ACCESS_TOKEN = "access-123"

USER_CLAIMS: dict[str, Any] = {
    "name": "Jane Doe",
    "given_name": "Jane",
    "family_name": "Doe",
    "preferred_username": "jdoe",
    "email": "jane@example.com",
    "email_verified": True,
    "address": {
        "street_address": "1 Main Street",
        "postal_code": "12345",
        "locality": "Springfield",
        "country": "US",
    },
    "phone_number": "+1 555 0100",
}


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default.

    Tests that need to verify SSRF logic should explicitly patch socket.getaddrinfo again
    or configure this mock's return value.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


def make_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


def public_entry(key: Any, kid: str, use: str | None) -> dict[str, Any]:
    jwk = dict(key.as_dict(is_private=False))
    jwk["kid"] = kid
    if use is not None:
        jwk["use"] = use
    return jwk


def make_certificate(private_key: rsa.RSAPrivateKey, common_name: str = "rp.example") -> bytes:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def op_signing_key() -> Any:
    return make_key()


@pytest.fixture(scope="session")
def op_encryption_key() -> Any:
    return make_key()


@pytest.fixture(scope="session")
def rp_key() -> Any:
    return make_key()


@pytest.fixture(scope="session")
def other_key() -> Any:
    return make_key()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate_pem(rsa_private_key: rsa.RSAPrivateKey) -> bytes:
    return make_certificate(rsa_private_key)


@pytest.fixture
def op_jwks(op_signing_key: Any, op_encryption_key: Any) -> JWKSet:
    return JWKSet(
        keys=[public_entry(op_signing_key, "op-sig", "sig"), public_entry(op_encryption_key, "op-enc", "enc")]
    )


@pytest.fixture
def client_information() -> ClientInformation:
    return ClientInformation(client_id=CLIENT_ID, redirect_uris=[REDIRECT_URI], response_types=["code"])


def half_hash(value: str, alg: str = "RS256") -> str:
    return to_unicode(create_half_hash(value, alg))


class FakeOP:
    """An in-memory OpenID Provider behind an httpx.MockTransport."""

    def __init__(self, signing_key: Any, encryption_key: Any) -> None:
        self.signing_key = signing_key
        self.encryption_key = encryption_key
        self.rp_verification_key: Any = None
        self.jose = JoseProcessor()
        self.requests: list[httpx.Request] = []
        self.request_objects: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self.authorizations: list[dict[str, str]] = []
        self.discovery: dict[str, Any] = {
            "issuer": ISSUER,
            "jwks_uri": f"{ISSUER}/jwks",
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "registration_endpoint": f"{ISSUER}/register",
            "scopes_supported": ["openid", "profile", "email", "address", "phone"],
            "response_types_supported": ["code", "id_token", "id_token token", "code id_token"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "request_uri_parameter_supported": True,
        }
        self.jwks: dict[str, Any] = {
            "keys": [public_entry(signing_key, "op-sig", "sig"), public_entry(encryption_key, "op-enc", "enc")]
        }
        self.registration_status = 201
        self.registration_reply: dict[str, Any] | None = None
        self.userinfo_claims: dict[str, Any] = {"sub": SUBJECT, **USER_CLAIMS}
        self.userinfo_jwt = False
        self.id_token_claims: dict[str, Any] = {}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery)
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/register":
            return self.register(request)
        if path == "/userinfo":
            return self.userinfo(request)
        return httpx.Response(404, json={"error": "not_found"})

    def register(self, request: httpx.Request) -> httpx.Response:
        if self.registration_status >= 400:
            return httpx.Response(
                self.registration_status,
                json={"error": "invalid_redirect_uri", "error_description": "redirect_uri not allowed"},
            )
        body = json.loads(request.content)
        reply = {**body, "client_id": CLIENT_ID, "client_secret": "s3cret", "client_id_issued_at": int(time.time())}
        if self.registration_reply is not None:
            reply.update(self.registration_reply)
        return httpx.Response(self.registration_status, json=reply)

    def userinfo(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
            return httpx.Response(401, headers={"WWW-Authenticate": 'Bearer error="invalid_token"'})
        if self.userinfo_jwt:
            token = self.jose.sign(self.userinfo_claims, self.signing_key, "RS256", kid="op-sig")
            return httpx.Response(200, content=token.encode(), headers={"Content-Type": "application/jwt"})
        return httpx.Response(200, json=self.userinfo_claims)

    def open_request_object(self, token: str) -> dict[str, str]:
        if token.count(".") == 4:
            inner = self.jose.decrypt(token, self.encryption_key)
            assert isinstance(inner, str)
        else:
            inner = token
        header = self.jose.peek_header(inner)
        if header["alg"] == "none":
            payload = self.jose.verify(inner, None, allow_unsigned=True)
        else:
            payload = self.jose.verify(inner, self.rp_verification_key)
        self.request_objects.append((header, payload))
        return {k: str(v) for k, v in payload.items() if isinstance(v, (str, int))}

    def id_token(self, params: dict[str, str], **extra: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "sub": SUBJECT,
            "aud": params["client_id"],
            "iat": now,
            "exp": now + 300,
            **extra,
        }
        if params.get("nonce"):
            claims["nonce"] = params["nonce"]
        claims.update(self.id_token_claims)
        return self.jose.sign(claims, self.signing_key, "RS256", kid="op-sig")

    def authorize(self, url: str, host: InMemoryRequestObjectHost | None = None) -> str:
        """Answers an authorization request URL with the redirect back to the RP."""
        params = dict(parse_qsl(urlparse(url).query, keep_blank_values=True))
        if "request_uri" in params:
            assert host is not None
            token = host.resolve(params["request_uri"])
            assert token is not None, "request object was not published before the redirect"
            params.update(self.open_request_object(token))
        elif "request" in params:
            params.update(self.open_request_object(params["request"]))
        self.authorizations.append(params)

        redirect_uri, state = params["redirect_uri"], params["state"]
        response_type = set(params["response_type"].split())
        if response_type == {"code"}:
            return f"{redirect_uri}?{urlencode({'code': AUTH_CODE, 'state': state})}"

        fragment: dict[str, str] = {"state": state}
        extra: dict[str, Any] = {}
        if "code" in response_type:
            fragment["code"] = AUTH_CODE
            extra["c_hash"] = half_hash(AUTH_CODE)
        if "token" in response_type:
            fragment.update(access_token=ACCESS_TOKEN, token_type="Bearer", expires_in="3600")
            extra["at_hash"] = half_hash(ACCESS_TOKEN)
        else:
            # No access token: released claims travel in the ID Token
            for name in claims_for_scopes(params.get("scope", "").split()):
                if name in USER_CLAIMS:
                    extra[name] = USER_CLAIMS[name]
        if "id_token" in response_type:
            fragment["id_token"] = self.id_token(params, **extra)
        return f"{redirect_uri}#{urlencode(fragment)}"


class FakeUserAgent:
    """Follows the authorization redirect and delivers the OP's answer from another thread."""

    def __init__(self, op: FakeOP, host: InMemoryRequestObjectHost | None = None, respond: bool = True) -> None:
        self.op = op
        self.host = host
        self.respond = respond
        self.deliver: Callable[[str], bool] | None = None
        self.visited: list[str] = []
        self.redirects: list[str] = []
        self.delivered: list[bool] = []
        self.done = threading.Event()

    async def navigate(self, url: str) -> None:
        self.visited.append(url)
        redirect = self.op.authorize(url, self.host)
        self.redirects.append(redirect)
        if self.respond:
            threading.Thread(target=self._deliver, args=(redirect,), daemon=True).start()

    def _deliver(self, redirect: str) -> None:
        assert self.deliver is not None
        self.delivered.append(self.deliver(redirect))
        self.done.set()


@pytest.fixture
def fake_op(op_signing_key: Any, op_encryption_key: Any, rp_key: Any) -> FakeOP:
    op = FakeOP(op_signing_key, op_encryption_key)
    op.rp_verification_key = rp_key
    return op
