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
OpenID Connect Relying Party engine: registration, signed and encrypted request objects,
response validation, claim aggregation and the self-issued OP flow.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .callback import CallbackRegistry, CallbackSignal, UserAgent
from .config import RelyingPartyConfig
from .exceptions import CoreasonOIDCError
from .jose import JoseProcessor
from .manager import RelyingParty, RelyingPartyAsync
from .models import AuthorizationRequest, ClientInformation, ClientMetadata, IdToken, Scope
from .oidc_provider import OIDCProvider
from .request_builder import InMemoryRequestObjectHost, RequestMode, RequestObjectProtection
from .self_issued import SelfIssuedIdentity
from .validator import IdTokenValidator

__all__ = [
    "AuthorizationRequest",
    "CallbackRegistry",
    "CallbackSignal",
    "ClientInformation",
    "ClientMetadata",
    "CoreasonOIDCError",
    "IdToken",
    "IdTokenValidator",
    "InMemoryRequestObjectHost",
    "JoseProcessor",
    "OIDCProvider",
    "RelyingParty",
    "RelyingPartyAsync",
    "RelyingPartyConfig",
    "RequestMode",
    "RequestObjectProtection",
    "Scope",
    "SelfIssuedIdentity",
    "UserAgent",
]
