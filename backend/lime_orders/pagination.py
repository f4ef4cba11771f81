import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .sanitize import unescape_value

DEFAULT_PAGE = 1
MAX_PAGE_SIZE = 10


def _parse_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(str(unescape_value(value)).strip()))
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class PageRequest:
    page: int = DEFAULT_PAGE
    limit: int = MAX_PAGE_SIZE

    @classmethod
    def from_params(cls, params: Optional[Mapping]) -> "PageRequest":
        params = params or {}
        page = _parse_int(params.get("page"))
        limit = _parse_int(params.get("limit"))
        if limit is None:
            limit = MAX_PAGE_SIZE
        return cls(
            page=max(page or DEFAULT_PAGE, DEFAULT_PAGE),
            limit=min(max(limit, 1), MAX_PAGE_SIZE),
        )

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def total_pages(self, total_items: int) -> int:
        return math.ceil(total_items / self.limit) if total_items else 0

    def slice(self, items: Sequence) -> List:
        return list(items[self.skip : self.skip + self.limit])


@dataclass
class Page:
    items: List[Any]
    total_items: int
    total_pages: int
    current_page: int
    page_size: int

    def to_dict(self, key: str) -> Dict[str, Any]:
        return {
            key: self.items,
            "pagination": {
                "totalItems": self.total_items,
                "totalPages": self.total_pages,
                "currentPage": self.current_page,
                "pageSize": self.page_size,
            },
        }


def build_page(items: List[Any], total_items: int, request: PageRequest) -> Page:
    return Page(
        items=list(items),
        total_items=total_items,
        total_pages=request.total_pages(total_items),
        current_page=request.page,
        page_size=request.limit,
    )


def paginate_items(items: Sequence, request: PageRequest) -> Page:
    """Slice an already filtered sequence the same way skip/limit would."""
    return build_page(request.slice(items), len(items), request)


def single_page(item: Any) -> Page:
    return Page(items=[item], total_items=1, total_pages=1, current_page=1, page_size=1)
