# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

from collections.abc import Iterable, Mapping
from urllib.parse import urlencode, urlparse

from coreason_oidc.exceptions import SchemeViolationError

__all__ = ["append_query", "require_https"]


def require_https(uri: str, field: str, exempt_schemes: Iterable[str] = ()) -> None:
    """
    Raises SchemeViolationError unless `uri` uses https (or one of `exempt_schemes`).

    Args:
        uri: The URI to check.
        field: The metadata field or parameter the URI came from. Named in the error.
        exempt_schemes: Custom schemes accepted in addition to https (e.g. `openid`).
    """
    scheme = urlparse(uri).scheme.lower()
    if scheme == "https" or (scheme and scheme in {s.lower() for s in exempt_schemes}):
        return
    raise SchemeViolationError(
        f"Some of the URIs for the client are not on https: {field} ({uri})",
        field=field,
    )


def append_query(url: str, params: Mapping[str, str]) -> str:
    """Appends `params` to the query of `url`, keeping any query already present."""
    base, hash_mark, fragment = url.partition("#")
    if "?" not in base:
        base += "?"
    elif not base.endswith(("?", "&")):
        base += "&"
    # Custom schemes such as `openid://` keep their empty authority
    return f"{base}{urlencode(params)}{hash_mark}{fragment}"
