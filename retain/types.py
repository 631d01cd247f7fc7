"""
Data types for saved items.

The JSON field names match the collection format written by earlier
versions of the app, so a blob from the legacy store decodes unchanged.
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from .errors import DecodeError


# Timestamps are stored as float seconds since this reference date
REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)

LOCAL_IMAGE_SCHEME = "local://image/"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_item_id() -> str:
    return str(uuid.uuid4()).upper()


def encode_timestamp(dt: datetime) -> float:
    """Seconds since the reference date."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - REFERENCE_DATE) / timedelta(seconds=1)


def decode_timestamp(value: Any) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"Invalid timestamp: {value!r}")
    try:
        return REFERENCE_DATE + timedelta(seconds=value)
    except (OverflowError, ValueError) as e:
        raise DecodeError(f"Timestamp out of range: {value!r}") from e


class ContentKind(str, Enum):
    LINK = "link"
    IMAGE = "image"


class Category(str, Enum):
    """Sidebar categories that partition the collection for display."""
    UNREAD = "unread"
    READ = "read"
    STARRED = "starred"
    HIGHLIGHTED = "highlighted"
    ALL = "all"
    RECENTLY_DELETED = "recently-deleted"

    @classmethod
    def parse(cls, name: str) -> "Category":
        """Look up a category by name, ignoring case, spaces and underscores."""
        key = name.strip().lower().replace(" ", "-").replace("_", "-")
        if key in ("deleted", "trash"):
            return cls.RECENTLY_DELETED
        for category in cls:
            if category.value == key:
                return category
        choices = ", ".join(c.value for c in cls)
        raise ValueError(f"Unknown category: {name!r}. Choose from: {choices}")


@dataclass(frozen=True)
class SavedItem:
    """
    One saved link or image.

    ``id`` and ``url`` never change after creation. Status flags are
    toggled by the UI and persisted by rewriting the whole collection.
    A set ``deleted_at`` marks a soft-deleted (tombstoned) item.
    """
    id: str
    url: str
    title: str
    excerpt: str
    thumbnail_url: Optional[str] = None
    is_read: bool = False
    is_starred: bool = False
    is_highlighted: bool = False
    is_offline_cached: bool = False
    created_at: datetime = field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None
    content_kind: ContentKind = ContentKind.LINK
    local_image_path: Optional[str] = None
    image_size: Optional[tuple[float, float]] = None
    image_format: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_image(self) -> bool:
        return self.content_kind is ContentKind.IMAGE

    def with_changes(self, **changes) -> "SavedItem":
        return replace(self, **changes)


def make_link_item(
    url: str,
    title: str,
    excerpt: str = "",
    *,
    thumbnail_url: Optional[str] = None,
    id: Optional[str] = None,
) -> SavedItem:
    return SavedItem(
        id=id or new_item_id(),
        url=url,
        title=title,
        excerpt=excerpt,
        thumbnail_url=thumbnail_url,
    )


def make_image_item(
    *,
    id: str,
    image_path: str,
    title: str,
    image_size: tuple[float, float],
    image_format: str,
    excerpt: Optional[str] = None,
) -> SavedItem:
    """Build an image item; its url is a synthetic ``local://image/<id>``."""
    now = utc_now()
    if excerpt is None:
        excerpt = f"Image saved on {now.astimezone():%b %d, %Y at %H:%M}"
    return SavedItem(
        id=id,
        url=f"{LOCAL_IMAGE_SCHEME}{id}",
        title=title,
        excerpt=excerpt,
        created_at=now,
        content_kind=ContentKind.IMAGE,
        local_image_path=image_path,
        image_size=image_size,
        image_format=image_format,
    )


def matches_category(item: SavedItem, category: Category) -> bool:
    """Whether an item belongs in a category view.

    Soft-deleted items only ever appear in RECENTLY_DELETED.
    """
    if category is Category.RECENTLY_DELETED:
        return item.is_deleted
    if item.is_deleted:
        return False
    if category is Category.UNREAD:
        return not item.is_read
    if category is Category.READ:
        return item.is_read
    if category is Category.STARRED:
        return item.is_starred
    if category is Category.HIGHLIGHTED:
        return item.is_highlighted
    return True


# ---------------------------------------------------------------------------
# JSON codec
# ---------------------------------------------------------------------------

def item_to_dict(item: SavedItem) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": item.id,
        "url": item.url,
        "title": item.title,
        "excerpt": item.excerpt,
        "isRead": item.is_read,
        "isStarred": item.is_starred,
        "isHighlighted": item.is_highlighted,
        "isOfflineCached": item.is_offline_cached,
        "dateAdded": encode_timestamp(item.created_at),
        "contentType": item.content_kind.value,
    }
    # Optionals are omitted when absent
    if item.thumbnail_url is not None:
        d["thumbnailURL"] = item.thumbnail_url
    if item.deleted_at is not None:
        d["deletedDate"] = encode_timestamp(item.deleted_at)
    if item.local_image_path is not None:
        d["localImagePath"] = item.local_image_path
    if item.image_size is not None:
        d["imageSize"] = [item.image_size[0], item.image_size[1]]
    if item.image_format is not None:
        d["imageFormat"] = item.image_format
    return d


def _require_str(d: dict, key: str) -> str:
    value = d.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"Field {key!r} must be a string, got {value!r}")
    return value


def _optional_str(d: dict, key: str) -> Optional[str]:
    value = d.get(key)
    if value is not None and not isinstance(value, str):
        raise DecodeError(f"Field {key!r} must be a string, got {value!r}")
    return value


def _flag(d: dict, key: str) -> bool:
    value = d.get(key, False)
    if not isinstance(value, bool):
        raise DecodeError(f"Field {key!r} must be a boolean, got {value!r}")
    return value


def item_from_dict(d: Any) -> SavedItem:
    """Decode one record. Raises DecodeError on malformed input."""
    if not isinstance(d, dict):
        raise DecodeError(f"Item must be an object, got {type(d).__name__}")

    try:
        kind = ContentKind(d.get("contentType", ContentKind.LINK.value))
    except ValueError:
        raise DecodeError(f"Unknown contentType: {d.get('contentType')!r}")

    size = d.get("imageSize")
    image_size = None
    if size is not None:
        if (not isinstance(size, list) or len(size) != 2
                or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in size)):
            raise DecodeError(f"Invalid imageSize: {size!r}")
        image_size = (float(size[0]), float(size[1]))

    if "dateAdded" not in d:
        raise DecodeError("Missing field 'dateAdded'")
    deleted = d.get("deletedDate")

    return SavedItem(
        id=_require_str(d, "id"),
        url=_require_str(d, "url"),
        title=_require_str(d, "title"),
        excerpt=_require_str(d, "excerpt"),
        thumbnail_url=_optional_str(d, "thumbnailURL"),
        is_read=_flag(d, "isRead"),
        is_starred=_flag(d, "isStarred"),
        is_highlighted=_flag(d, "isHighlighted"),
        is_offline_cached=_flag(d, "isOfflineCached"),
        created_at=decode_timestamp(d["dateAdded"]),
        deleted_at=decode_timestamp(deleted) if deleted is not None else None,
        content_kind=kind,
        local_image_path=_optional_str(d, "localImagePath"),
        image_size=image_size,
        image_format=_optional_str(d, "imageFormat"),
    )


def encode_items(items: Iterable[SavedItem]) -> bytes:
    """Serialize the whole ordered collection as a JSON array."""
    return json.dumps(
        [item_to_dict(item) for item in items],
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")


def decode_items(data: bytes) -> list[SavedItem]:
    """Deserialize a collection blob. Raises DecodeError on malformed data."""
    try:
        raw = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Collection blob is not valid JSON: {e}") from e
    if not isinstance(raw, list):
        raise DecodeError(f"Collection blob must be an array, got {type(raw).__name__}")
    return [item_from_dict(entry) for entry in raw]
