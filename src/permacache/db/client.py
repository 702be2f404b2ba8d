"""
Perma-cache data-access layer.

DBClient is the one place that knows how perma-cache entries and user
identity records are laid out in the store. It builds PostgREST queries
through two injected SchemaClients, runs them, and translates store
signals into the errors in permacache.exceptions:

- unique violation on insert -> ConstraintError (status 409)
- single-row query matching nothing -> None
- anything else the store reports -> DBError
"""

from __future__ import annotations

from datetime import datetime
from types import TracebackType
from typing import Any

from postgrest.exceptions import APIError
from pydantic import ValidationError

from permacache.config import DEFAULT_USER_SCHEMA, Settings, get_settings
from permacache.db.schema import DEFAULT_TIMEOUT_SECONDS, SchemaClient
from permacache.exceptions import (
    HTTP_STATUS_CONFLICT,
    ConfigurationError,
    ConstraintError,
    DBError,
    EntryNotCreatedError,
)
from permacache.logging import get_logger, log_context, setup_logging
from permacache.types import (
    DeletedEntry,
    ListOptions,
    PermaCacheEntry,
    PermaCacheItem,
    User,
    UserTagValue,
    format_timestamp,
    utc_now,
)

logger = get_logger(__name__)

PERMA_CACHE_TABLE = "perma_cache"
USER_TABLE = "user"
USER_TAG_TABLE = "user_tag"
USED_STORAGE_FUNCTION = "user_used_perma_cache_storage"

# PostgreSQL unique_violation, surfaced by PostgREST as HTTP 409
UNIQUE_VIOLATION_CODE = "23505"
# PostgREST: JSON object requested, but zero (or many) rows returned (HTTP 406)
SINGLE_ROW_MISMATCH_CODE = "PGRST116"

PERMA_CACHE_ITEM_COLUMNS = ("url", "size", "insertedAt:inserted_at")
USER_COLUMNS = (
    "id",
    "github_id",
    "did",
    "keys:auth_key_user_id_fkey(user_id,id,name,secret)",
    "tags:user_tag_user_id_fkey(user_id,id,tag,value)",
)
USER_IDENTITY_COLUMNS = ("magic_link_id", "github_id", "did")


def _quote_filter_value(value: str) -> str:
    """Quote a value for use inside a PostgREST logical filter expression."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def identity_filter(identity: str) -> str:
    """Build the OR expression matching any identity column."""
    quoted = _quote_filter_value(identity)
    return ",".join(f"{column}.eq.{quoted}" for column in USER_IDENTITY_COLUMNS)


def _unwrap_scalar(data: Any) -> Any:
    # scalar functions come back bare, as a one-element list, or as a one-key row
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        data = next(iter(data.values()), None)
    return data


class DBClient:
    """Access layer over perma-cache entries and user identity records.

    Perma-cache entries are read through ``perma_cache_db`` (default schema),
    users, keys and tags through ``user_db`` (the nftstorage schema).
    """

    def __init__(self, perma_cache_db: SchemaClient, user_db: SchemaClient) -> None:
        """Initialize the access layer.

        Args:
            perma_cache_db: Client bound to the schema holding perma_cache.
            user_db: Client bound to the schema holding user records.
        """
        self._db = perma_cache_db
        self._user_db = user_db

    @classmethod
    def create(
        cls,
        endpoint: str,
        token: str,
        user_schema: str = DEFAULT_USER_SCHEMA,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> DBClient:
        """Build both schema clients against one endpoint."""
        return cls(
            SchemaClient(endpoint, token, timeout=timeout),
            SchemaClient(endpoint, token, schema=user_schema, timeout=timeout),
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DBClient:
        """Build from application settings, configuring logging on the way."""
        if settings is None:
            try:
                settings = get_settings()
            except ValidationError as e:
                raise ConfigurationError(
                    "Invalid database settings",
                    {"fields": [".".join(map(str, err["loc"])) for err in e.errors()]},
                ) from e
        setup_logging(settings.LOG_LEVEL, log_file=settings.LOG_FILE)
        return cls.create(
            settings.database_url,
            settings.database_token,
            user_schema=settings.DATABASE_USER_SCHEMA,
            timeout=settings.DATABASE_TIMEOUT_SECONDS,
        )

    async def close(self) -> None:
        """Close both schema clients."""
        try:
            await self._db.aclose()
        finally:
            await self._user_db.aclose()

    async def __aenter__(self) -> DBClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _db_error(self, error: APIError) -> DBError:
        db_error = DBError.from_error(error)
        logger.error("Store query failed", error=str(db_error))
        return db_error

    # -------------------------------------------------------------------------
    # Perma-cache entries
    # -------------------------------------------------------------------------

    async def create_perma_cache(
        self,
        user_id: int,
        url: str,
        size: int,
        inserted_at: datetime | str,
    ) -> PermaCacheEntry:
        """Record a newly pinned URL for a user.

        Args:
            user_id: Owner of the entry.
            url: Content URL.
            size: Size in bytes.
            inserted_at: Insertion time (datetime or ISO string).

        Returns:
            The created entry.

        Raises:
            ConstraintError: The user already has an active entry for the URL.
            EntryNotCreatedError: The store acknowledged the insert without a row.
            DBError: Any other store error.
        """
        with log_context(user_id=user_id, operation="create_perma_cache"):
            try:
                response = await (
                    self._db.table(PERMA_CACHE_TABLE)
                    .insert(
                        {
                            "user_id": user_id,
                            "url": url,
                            "size": size,
                            "inserted_at": format_timestamp(inserted_at),
                        }
                    )
                    .execute()
                )
            except APIError as e:
                if e.code == UNIQUE_VIOLATION_CODE:
                    logger.warning("Perma cache entry already exists", url=url)
                    raise ConstraintError(
                        "URL already found for user",
                        {"user_id": user_id, "url": url},
                        status=HTTP_STATUS_CONFLICT,
                    ) from e
                raise self._db_error(e) from e

            if not response.data:
                raise EntryNotCreatedError(
                    "Perma cache not created", {"user_id": user_id, "url": url}
                )

            entry = PermaCacheEntry.from_row(response.data[0])
            logger.debug("Perma cache entry created", url=url, size=size, id=entry.id)
            return entry

    async def get_perma_cache(self, user_id: int, url: str) -> PermaCacheItem | None:
        """Get the active entry for a user and URL.

        Returns:
            The entry, or None if the user has no active entry for the URL.
        """
        with log_context(user_id=user_id, operation="get_perma_cache"):
            try:
                response = await (
                    self._db.table(PERMA_CACHE_TABLE)
                    .select(*PERMA_CACHE_ITEM_COLUMNS)
                    .eq("user_id", user_id)
                    .eq("url", url)
                    .is_("deleted_at", "null")
                    .single()
                    .execute()
                )
            except APIError as e:
                if e.code == SINGLE_ROW_MISMATCH_CODE:
                    return None
                raise self._db_error(e) from e

            if not response.data:
                return None
            return PermaCacheItem.from_row(response.data)

    async def list_perma_cache(
        self,
        user_id: int,
        options: ListOptions | None = None,
    ) -> list[PermaCacheItem]:
        """List a user's active entries.

        The ``before`` cursor always compares against ``inserted_at``, also
        when ordering by size.

        Args:
            user_id: Owner of the entries.
            options: Page size, cursor and ordering.

        Returns:
            Entries in the requested order; empty if there are none.
        """
        options = options or ListOptions()
        with log_context(user_id=user_id, operation="list_perma_cache"):
            query = (
                self._db.table(PERMA_CACHE_TABLE)
                .select(*PERMA_CACHE_ITEM_COLUMNS)
                .eq("user_id", user_id)
                .is_("deleted_at", "null")
                .limit(options.size)
                .order(options.sort_by.column, desc=not options.ascending)
            )
            if options.before:
                query = query.lt("inserted_at", format_timestamp(options.before))

            try:
                response = await query.execute()
            except APIError as e:
                raise self._db_error(e) from e

            return [PermaCacheItem.from_row(row) for row in response.data or []]

    async def delete_perma_cache(self, user_id: int, url: str) -> DeletedEntry | None:
        """Tombstone the active entry for a user and URL.

        Returns:
            The id of the tombstoned row, or None if nothing was active.
        """
        now = format_timestamp(utc_now())
        with log_context(user_id=user_id, operation="delete_perma_cache"):
            try:
                response = await (
                    self._db.table(PERMA_CACHE_TABLE)
                    .update({"deleted_at": now, "updated_at": now})
                    .match({"url": url, "user_id": user_id})
                    .is_("deleted_at", "null")
                    .execute()
                )
            except APIError as e:
                raise self._db_error(e) from e

            if not response.data:
                return None

            deleted = DeletedEntry(id=response.data[0]["id"])
            logger.debug("Perma cache entry deleted", url=url, id=deleted.id)
            return deleted

    async def get_used_perma_cache_storage(self, user_id: int) -> int:
        """Get the bytes used by a user's active entries."""
        with log_context(user_id=user_id, operation="get_used_perma_cache_storage"):
            try:
                response = await self._db.rpc(
                    USED_STORAGE_FUNCTION, {"query_user_id": user_id}
                ).execute()
            except APIError as e:
                raise self._db_error(e) from e

            used = _unwrap_scalar(response.data)
            return int(used) if used is not None else 0

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, identity: str) -> User | None:
        """Find a user by magic link id, GitHub id or DID.

        Active keys and tags are attached.

        Returns:
            The user, or None if no user matches.

        Raises:
            ConstraintError: The identity matches more than one user.
            DBError: Any other store error.
        """
        with log_context(operation="get_user"):
            try:
                response = await (
                    self._user_db.table(USER_TABLE)
                    .select(*USER_COLUMNS)
                    .or_(identity_filter(identity))
                    .filter("keys.deleted_at", "is", "null")
                    .filter("tags.deleted_at", "is", "null")
                    .limit(2)
                    .execute()
                )
            except APIError as e:
                raise self._db_error(e) from e

            rows = response.data or []
            if not rows:
                return None
            if len(rows) > 1:
                logger.error("Identity matches more than one user", identity=identity)
                raise ConstraintError(
                    "More than one user found for identity",
                    {"identity": identity, "user_ids": [row["id"] for row in rows]},
                )
            return User.from_row(rows[0])

    async def get_user_tags(self, user_id: int) -> list[UserTagValue]:
        """Get a user's active tags.

        The store does not enforce one active tag per name, so duplicates are
        reported as corruption instead of being returned.

        Raises:
            ConstraintError: Two active tags share a name.
            DBError: Any other store error.
        """
        with log_context(user_id=user_id, operation="get_user_tags"):
            try:
                response = await (
                    self._user_db.table(USER_TAG_TABLE)
                    .select("tag", "value")
                    .eq("user_id", user_id)
                    .filter("deleted_at", "is", "null")
                    .execute()
                )
            except APIError as e:
                raise self._db_error(e) from e

            seen: set[str] = set()
            tags: list[UserTagValue] = []
            for row in response.data or []:
                if row["tag"] in seen:
                    logger.error("Duplicate active user tag", tag=row["tag"])
                    raise ConstraintError(
                        f"More than one row found for user tag {row['tag']}",
                        {"user_id": user_id, "tag": row["tag"]},
                    )
                seen.add(row["tag"])
                tags.append(UserTagValue(tag=row["tag"], value=row["value"]))
            return tags
