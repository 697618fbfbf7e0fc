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
Configuration for the coreason-oidc package.
"""

from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelyingPartyConfig(BaseSettings):
    """
    Configuration settings for a Relying Party instance.

    Attributes:
        issuer (str): The OP issuer URL (e.g. https://op.example.com).
        http_timeout (float): Timeout in seconds for all OP network operations.
        callback_timeout (float): Seconds to wait for the redirect back from the OP.
        clock_skew_leeway (int): Acceptable clock skew in seconds for `exp`.
        allowed_algorithms (list[str]): Accepted ID Token signing algorithms.
        encryption_algorithms (list[str]): Accepted JWE key management algorithms.
        encryption_encodings (list[str]): Accepted JWE content encryption algorithms.
        max_response_bytes (int): Upper bound for any JSON response body.
        unsafe_local_dev (bool): Allow http issuers and skip the SSRF-safe transport.
        pii_salt (SecretStr): Salt for anonymizing subject identifiers in logs.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OIDC_",
        case_sensitive=False,
    )

    # Declared before `issuer` so the issuer validator can see it.
    unsafe_local_dev: bool = False
    issuer: str
    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all OP network operations.")
    callback_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for the authorization response.")
    clock_skew_leeway: int = Field(default=0, ge=0)
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    encryption_algorithms: list[str] = Field(default_factory=lambda: ["RSA1_5", "RSA-OAEP", "RSA-OAEP-256"])
    encryption_encodings: list[str] = Field(
        default_factory=lambda: ["A128CBC-HS256", "A256CBC-HS512", "A128GCM", "A256GCM"]
    )
    max_response_bytes: int = Field(default=1_000_000, gt=0)
    pii_salt: SecretStr = Field(
        default=SecretStr("coreason-unsafe-default-salt"),
        description="Salt for anonymizing subject identifiers in logs.",
    )

    @field_validator("issuer", mode="after")
    @classmethod
    def validate_https(cls, v: str, info: ValidationInfo) -> str:
        """
        Ensures that issuer uses HTTPS, unless strictly opted out for local dev.
        """
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Issuer must be an absolute URL, got '{v}'")
        if parsed.scheme != "https" and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v.rstrip("/")

    @field_validator("allowed_algorithms")
    @classmethod
    def reject_unsigned(cls, v: list[str]) -> list[str]:
        """
        ID Tokens are always signed; `none` cannot be configured here.
        """
        if not v:
            raise ValueError("At least one signing algorithm must be allowed")
        if "none" in v:
            raise ValueError("'none' is not an acceptable ID Token signing algorithm")
        return v
