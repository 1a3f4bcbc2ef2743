"""Pagination helpers shared by brand and governing endpoints.

The governing identity listing is paged by number (``page``/``per_page``).
Change request pages, both per node and merged, use a numeric ``cursor``
holding the offset of the first item plus a ``has_more`` flag.
"""

import math
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def parse_cursor(cursor: Any) -> int:
    """Offset encoded in a cursor query value; junk and negatives read as 0."""
    try:
        return max(int(cursor), 0)
    except (TypeError, ValueError):
        return 0


def page_count(total: int, size: int) -> int:
    return math.ceil(total / size) if total > 0 else 0


@dataclass
class PaginationParams:
    """Requested page, clamped to ``page >= 1`` and ``1 <= page_size <= max_page_size``."""

    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    max_page_size: int = MAX_PAGE_SIZE

    def __post_init__(self):
        self.page = max(self.page, 1)
        self.page_size = min(max(self.page_size, 1), self.max_page_size)

    @property
    def offset(self) -> int:
        return self.page_size * (self.page - 1)


@dataclass
class PaginatedResult(Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return page_count(self.total, self.page_size)

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


@dataclass
class OffsetWindow:
    """A fixed-size window starting at ``offset`` over an ordered result set.

    Attributes:
        offset: Index of the first item in the window
        limit: Window size
    """

    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE

    def __post_init__(self):
        self.offset = max(self.offset, 0)
        if self.limit < 1:
            self.limit = 1

    def slice(self, items: list[T]) -> list[T]:
        """Return the window's share of an already ordered list."""
        return items[self.offset : self.offset + self.limit]

    def has_more(self, total: int) -> bool:
        return total > self.offset + self.limit

    def next_cursor(self, total: int) -> Optional[int]:
        return self.offset + self.limit if self.has_more(total) else None

    def metadata(self, total: int, current_count: int) -> dict[str, Any]:
        """Pagination block for a single node's page."""
        return {
            "total_count": total,
            "current_count": current_count,
            "offset": self.offset,
            "limit": self.limit,
            "has_more": self.has_more(total),
            "next_cursor": self.next_cursor(total),
        }

    def merged_metadata(self, total: int, current_count: int) -> dict[str, Any]:
        """Pagination block for a merged multi-node page.

        Adds ``total_pages`` and ``current_page`` computed against the merged
        total.
        """
        meta = self.metadata(total, current_count)
        meta["total_pages"] = page_count(total, self.limit)
        meta["current_page"] = self.offset // self.limit + 1
        return meta
