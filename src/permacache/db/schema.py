"""
Schema-bound PostgREST clients.

One SchemaClient wraps one postgrest AsyncPostgrestClient pinned to a single
schema. The access layer receives one per schema it reads from; both are
created once and reused for the process lifetime.
"""

from __future__ import annotations

from types import TracebackType
from typing import Any

import httpx
from postgrest import AsyncPostgrestClient

from permacache.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SCHEMA = "public"
DEFAULT_TIMEOUT_SECONDS = 30.0


class SchemaClient:
    """Query dispatcher for one schema of a PostgREST endpoint.

    Construction is side-effect free: the token is not validated and nothing
    is sent until the first query.
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        schema: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: Base URL of the PostgREST endpoint.
            token: Bearer token sent with every request.
            schema: Schema to query. Defaults to the endpoint's default schema.
            timeout: Transport timeout in seconds.
        """
        self.endpoint = endpoint
        self.schema = schema or DEFAULT_SCHEMA
        self._client = AsyncPostgrestClient(
            endpoint, schema=self.schema, timeout=httpx.Timeout(timeout)
        )
        self._client.auth(token)
        logger.debug("Schema client created", endpoint=endpoint, schema=self.schema)

    def table(self, name: str) -> Any:
        """Start a query against a table in this schema."""
        return self._client.from_(name)

    def rpc(self, function: str, params: dict[str, Any]) -> Any:
        """Start a call to a remote function in this schema."""
        return self._client.rpc(function, params)

    async def aclose(self) -> None:
        """Close the underlying HTTP session."""
        await self._client.aclose()

    async def __aenter__(self) -> SchemaClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
