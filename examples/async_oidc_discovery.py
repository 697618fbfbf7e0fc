import asyncio
import contextlib
import os
import sys

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from anyio import create_task_group
from pydantic import SecretStr

from coreason_oidc.config import RelyingPartyConfig
from coreason_oidc.exceptions import CoreasonOIDCError
from coreason_oidc.manager import RelyingPartyAsync
from coreason_oidc.models import AuthorizationRequest


async def main() -> None:
    """
    Demonstrates provider discovery and request preparation with the async Relying Party.
    Includes:
    - TaskGroup for concurrent discovery and JWKS fetching (fetched once, then cached)
    - OpenTelemetry instrumentation (auto-applied in RelyingPartyAsync)
    - A Request Object passed by value, ready for the user agent
    """
    print(">>> Starting Async OIDC Discovery Example")

    config = RelyingPartyConfig(
        issuer="https://op.example.com/",
        pii_salt=SecretStr("super-secret-salt-for-pii-hashing"),
        http_timeout=5.0,
        allowed_algorithms=["RS256"],
    )

    async with RelyingPartyAsync(config) as rp:
        print(f">>> Relying Party initialized. Client: {type(rp._client).__name__}")

        print(">>> Starting concurrent OIDC tasks...")
        try:
            async with create_task_group() as tg:
                print("    - Spawning JWKS fetch task")
                tg.start_soon(rp.fetch_keys)

                print("    - Spawning provider configuration task")
                tg.start_soon(rp.fetch_provider_metadata)

            metadata = await rp.fetch_provider_metadata()
            request = AuthorizationRequest(
                client_id="my-client", redirect_uri="https://rp.example.com/cb", scope="openid email"
            )
            dispatch = await rp.request_builder.dispatch(
                metadata.authorization_endpoint or "", request, metadata.issuer, mode="request"
            )
            print(f">>> Send the user agent to: {dispatch.url}")

        except* CoreasonOIDCError as eg:
            # Without a reachable OP this fails on the first fetch; nothing is retried
            print(f">>> Expected failure (no real server): {eg.exceptions[0]}")

        print(">>> Concurrent tasks finished.")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
