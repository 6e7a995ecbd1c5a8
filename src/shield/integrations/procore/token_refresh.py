"""Transparent access-token refresh around Procore API calls.

TokenRefreshCoordinator runs an operation with the stored access token and,
when Procore answers 401, refreshes the token pair once and retries once:

1. Serialize on a per-coordinator asyncio.Lock.
2. Re-read the connection; if another caller already rotated the token, skip
   the refresh and retry with the persisted token.
3. Otherwise exchange the refresh token and persist the pair with a
   compare-and-swap keyed on the stale access token.
4. Re-read the connection and retry the operation exactly once.

Any failure to refresh surfaces as ReauthorizationRequired and leaves the
stored connection untouched. Transient failures are not handled here; the
client retries those itself.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import structlog

from src.shield.core.monitoring import procore_token_refreshes_total
from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.errors import (
    NotConnected,
    ProcoreAPIError,
    ProcoreUnauthorized,
    ReauthorizationRequired,
    TokenRefreshFailed,
)
from src.shield.integrations.procore.schemas import OAuthConnection
from src.shield.integrations.procore.stores import CredentialStore

logger = structlog.get_logger(__name__)

ResultT = TypeVar("ResultT")


class TokenRefreshCoordinator:
    """Runs Procore calls for one connection, refreshing the token on 401.

    Args:
        client: Procore API client used for the token exchange.
        credentials: Store holding the connection's token pair.
        connection_id: Id of the OAuth connection this coordinator serves.
    """

    def __init__(
        self,
        client: ProcoreClient,
        credentials: CredentialStore,
        connection_id: str,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._connection_id = connection_id
        self._lock = asyncio.Lock()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def _load(self) -> OAuthConnection:
        connection = await self._credentials.get_by_id(self._connection_id)
        if connection is None:
            raise NotConnected()
        return connection

    async def call(self, operation: Callable[[str], Awaitable[ResultT]]) -> ResultT:
        """Run operation(access_token), refreshing and retrying once on 401."""
        connection = await self._load()
        try:
            return await operation(connection.access_token)
        except ProcoreUnauthorized:
            logger.info("procore_token.unauthorized", connection_id=self._connection_id)

        await self._refresh(stale_access_token=connection.access_token)
        connection = await self._load()

        try:
            return await operation(connection.access_token)
        except ProcoreUnauthorized as exc:
            logger.warning(
                "procore_token.unauthorized_after_refresh",
                connection_id=self._connection_id,
            )
            raise ReauthorizationRequired(
                "Procore rejected the refreshed access token. Please reconnect Procore."
            ) from exc

    async def _refresh(self, stale_access_token: str) -> None:
        async with self._lock:
            current = await self._load()
            if current.access_token != stale_access_token:
                logger.debug(
                    "procore_token.already_rotated",
                    connection_id=self._connection_id,
                )
                return

            if not current.refresh_token:
                raise ReauthorizationRequired(
                    "No refresh token stored for this Procore connection. Please reconnect Procore."
                )

            try:
                tokens = await self._client.refresh_access_token(current.refresh_token)
            except (TokenRefreshFailed, ProcoreAPIError, httpx.HTTPError) as exc:
                procore_token_refreshes_total.labels(result="failed").inc()
                logger.warning(
                    "procore_token.refresh_failed",
                    connection_id=self._connection_id,
                    error=str(exc),
                )
                raise ReauthorizationRequired(
                    "Procore token refresh failed. Please reconnect Procore."
                ) from exc

            if tokens.refresh_token is None:
                tokens = tokens.model_copy(update={"refresh_token": current.refresh_token})

            rotated = await self._credentials.rotate_tokens(
                self._connection_id, stale_access_token, tokens
            )
            procore_token_refreshes_total.labels(result="rotated" if rotated else "lost").inc()
            logger.info(
                "procore_token.refreshed",
                connection_id=self._connection_id,
                rotated=rotated,
            )
