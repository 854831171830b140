from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy.orm import Query

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    def meta(self) -> dict:
        return {"total": self.total, "page": self.page, "page_size": self.page_size, "pages": self.pages}

    def serialize(self, serializer: Callable[[T], dict]) -> list[dict]:
        return [serializer(item) for item in self.items]


def paginate_query(
    query: Query,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE,
) -> Page:
    safe_page = max(1, page)
    safe_page_size = max(1, min(page_size, max_page_size))
    total = query.count()
    items = query.offset((safe_page - 1) * safe_page_size).limit(safe_page_size).all()
    return Page(items=items, total=total, page=safe_page, page_size=safe_page_size)
