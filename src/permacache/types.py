"""
Core types for the perma-cache data-access layer.

This module defines the records read from and written to the store:
- Enums for listing sort options and known user tag names
- Frozen dataclasses for perma-cache entries, users, keys and tags
- ListOptions for cursor-paginated listings
- Helper functions for timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

DEFAULT_PAGE_SIZE = 10


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a store timestamp into an aware datetime.

    Naive values are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _required_timestamp(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("timestamp is required")
    return parsed


def format_timestamp(value: datetime | str) -> str:
    """Format a timestamp for the store (ISO-8601)."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


class SortBy(str, Enum):
    """Column to order perma-cache listings by."""

    DATE = "Date"
    SIZE = "Size"

    @property
    def column(self) -> str:
        return "size" if self is SortBy.SIZE else "inserted_at"


class SortOrder(str, Enum):
    """Direction of perma-cache listings."""

    DESC = "Desc"
    ASC = "Asc"


class UserTagName(str, Enum):
    """User tags with a meaning elsewhere in the gateway."""

    ACCOUNT_RESTRICTION = "HasAccountRestriction"
    SUPER_HOT_ACCESS = "HasSuperHotAccess"


@dataclass(frozen=True)
class PermaCacheEntry:
    """A full perma-cache row as returned by an insert."""

    id: int
    user_id: int
    url: str
    size: int
    inserted_at: datetime
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PermaCacheEntry:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            url=row["url"],
            size=row["size"],
            inserted_at=_required_timestamp(row["inserted_at"]),
            updated_at=parse_timestamp(row.get("updated_at")),
            deleted_at=parse_timestamp(row.get("deleted_at")),
        )

    @property
    def active(self) -> bool:
        """Whether the entry has not been tombstoned."""
        return self.deleted_at is None


@dataclass(frozen=True)
class PermaCacheItem:
    """The url/size/insertedAt projection used by lookups and listings."""

    url: str
    size: int
    inserted_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PermaCacheItem:
        return cls(
            url=row["url"],
            size=row["size"],
            inserted_at=_required_timestamp(row["insertedAt"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "size": self.size,
            "insertedAt": self.inserted_at.isoformat(),
        }


@dataclass(frozen=True)
class DeletedEntry:
    """Identifier of a tombstoned perma-cache row."""

    id: int


@dataclass(frozen=True)
class ListOptions:
    """Paging and ordering for perma-cache listings.

    ``before`` is a cursor on the insertion time, whatever ``sort_by`` says.
    """

    size: int = DEFAULT_PAGE_SIZE
    before: datetime | str | None = None
    sort_by: SortBy = SortBy.DATE
    sort_order: SortOrder = SortOrder.DESC

    def __post_init__(self) -> None:
        if self.size < 1:
            raise ValueError(f"page size must be at least 1, got {self.size}")
        # accept plain strings such as "Size" or "Asc"
        object.__setattr__(self, "sort_by", SortBy(self.sort_by))
        object.__setattr__(self, "sort_order", SortOrder(self.sort_order))

    @property
    def ascending(self) -> bool:
        return self.sort_order is SortOrder.ASC


@dataclass(frozen=True)
class UserKey:
    """An active API key belonging to a user."""

    id: int
    user_id: int
    name: str
    secret: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> UserKey:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            secret=row["secret"],
        )


@dataclass(frozen=True)
class UserTag:
    """An active feature tag attached to a user."""

    id: int
    user_id: int
    tag: str
    value: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> UserTag:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            tag=row["tag"],
            value=row["value"],
        )


@dataclass(frozen=True)
class UserTagValue:
    """Tag name and value, as returned by a user's tag listing."""

    tag: str
    value: str


@dataclass(frozen=True)
class User:
    """A user with their active keys and tags."""

    id: int
    github_id: str | None
    did: str | None
    keys: tuple[UserKey, ...] = field(default_factory=tuple)
    tags: tuple[UserTag, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> User:
        return cls(
            id=row["id"],
            github_id=row.get("github_id"),
            did=row.get("did"),
            keys=tuple(UserKey.from_row(k) for k in row.get("keys") or ()),
            tags=tuple(UserTag.from_row(t) for t in row.get("tags") or ()),
        )

    def has_tag(self, name: UserTagName | str) -> bool:
        """Whether the user carries the tag with value "true"."""
        return tag_enabled(self.tags, name)


def tag_enabled(tags: Iterable[UserTag | UserTagValue], name: UserTagName | str) -> bool:
    """Check whether a tag is present with the value "true".

    Args:
        tags: Active tags of a user.
        name: Tag name to look for.

    Returns:
        True if the tag is present and enabled.
    """
    wanted = name.value if isinstance(name, UserTagName) else name
    return any(t.tag == wanted and str(t.value).lower() == "true" for t in tags)
