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
ClientRegistration component for OpenID Connect Dynamic Client Registration.
"""

import httpx
from pydantic import ValidationError

from coreason_oidc.exceptions import FieldMismatchError, RegistrationError, TransportError
from coreason_oidc.models import ClientInformation, ClientMetadata
from coreason_oidc.transport import DEFAULT_MAX_BYTES, decode_json, safe_fetch
from coreason_oidc.utils.logger import logger
from coreason_oidc.utils.uris import require_https


def check_metadata_https(metadata: ClientMetadata) -> None:
    """
    Requires every URI-valued metadata field to use https.

    Raises:
        SchemeViolationError: Naming the first offending field.
    """
    for field, uri in metadata.uri_fields():
        require_https(uri, field)


def validate_client_information(information: ClientInformation) -> ClientInformation:
    """
    Re-checks the https invariant on metadata returned by the OP.

    A compliant OP never introduces non-https endpoints into the registered client.
    """
    check_metadata_https(information)
    return information


class ClientRegistration:
    """
    Registers clients with an OP's registration endpoint.

    Attributes:
        client (httpx.AsyncClient): The HTTP client.
        max_response_bytes (int): Upper bound for the registration response.
    """

    def __init__(self, client: httpx.AsyncClient, max_response_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.client = client
        self.max_response_bytes = max_response_bytes

    async def register(
        self,
        endpoint: str,
        metadata: ClientMetadata,
        initial_access_token: str | None = None,
    ) -> ClientInformation:
        """
        Submits `metadata` and returns the registered client information.

        The https check runs before any network call: one non-https URI fails the whole request.

        Args:
            endpoint: The OP registration endpoint.
            metadata: The client metadata.
            initial_access_token: Bearer token for protected registration endpoints.

        Returns:
            ClientInformation: The OP's view of the client, including `client_id`.

        Raises:
            SchemeViolationError: If a metadata URI is not https (no request is sent).
            RegistrationError: If the OP rejects the request or returns an invalid document.
            FieldMismatchError: If the returned `redirect_uris` differ from the submitted ones.
            TransportError: On network failure.
        """
        check_metadata_https(metadata)

        headers = {"Accept": "application/json"}
        if initial_access_token:
            headers["Authorization"] = f"Bearer {initial_access_token}"

        try:
            response, content = await safe_fetch(
                self.client,
                endpoint,
                method="POST",
                max_bytes=self.max_response_bytes,
                json=metadata.to_registration_request(),
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Client registration request failed: {e}")
            raise TransportError(f"Client registration request to {endpoint} failed: {e}") from e

        if not response.is_success:
            error, description = f"HTTP {response.status_code}", None
            try:
                body = decode_json(content, endpoint)
            except TransportError:
                body = None
            if isinstance(body, dict):
                error = str(body.get("error", error))
                description = body.get("error_description")
            logger.error(f"Client registration rejected: {error}")
            message = f"Client registration rejected: {error}"
            raise RegistrationError(f"{message} ({description})" if description else message)

        data = decode_json(content, endpoint)
        if not isinstance(data, dict):
            raise RegistrationError("Registration response is not a JSON object")
        try:
            information = ClientInformation(**data)
        except ValidationError as e:
            logger.error(f"Invalid registration response: {e}")
            raise RegistrationError(f"Invalid registration response: {e}") from e

        if set(information.redirect_uris) != set(metadata.redirect_uris):
            raise FieldMismatchError(
                f"Registered redirect_uris {sorted(information.redirect_uris)} "
                f"differ from the submitted {sorted(metadata.redirect_uris)}"
            )

        validate_client_information(information)
        logger.info(f"Registered client {information.client_id}")
        return information
