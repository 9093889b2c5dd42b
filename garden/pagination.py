"""Paginated-list contract shared by every listing endpoint."""

import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass
class PageParams:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @classmethod
    def normalize(cls, page: Optional[int] = None, page_size: Optional[int] = None) -> "PageParams":
        page = page if page and page >= 1 else 1
        if not page_size or page_size < 1:
            page_size = DEFAULT_PAGE_SIZE
        return cls(page=page, page_size=min(page_size, MAX_PAGE_SIZE))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass
class Paginated(Generic[T]):
    items: List[T] = field(default_factory=list)
    total_items: int = 0
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def total_pages(self) -> int:
        if self.total_items <= 0:
            return 0
        return math.ceil(self.total_items / self.page_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() if hasattr(item, "to_dict") else item for item in self.items],
            "total_items": self.total_items,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


async def paginate(
    params: PageParams,
    count: Callable[[], Awaitable[int]],
    fetch: Callable[[int, int], Awaitable[List[T]]],
) -> Paginated[T]:
    """Run a count query and a limit/offset query into one page."""
    total = await count()
    items = await fetch(params.page_size, params.offset) if total else []
    return Paginated(items=items, total_items=total, page=params.page, page_size=params.page_size)
