"""In-memory repositories and the errors every LensFlow store raises."""

from __future__ import annotations

from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

from .domain import Order, Organization, Product, User
from .errors import ConflictError, LensFlowError, NotFoundError

T = TypeVar("T")


class RepositoryError(LensFlowError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError, ConflictError):
    """Raised when a key is already taken."""


class RecordNotFoundError(RepositoryError, NotFoundError):
    """Raised when a key has no record."""


class InMemoryRepository(Generic[T]):
    """Dictionary-backed repository; iteration follows insertion order."""

    def __init__(self) -> None:
        self._records: Dict[str, T] = {}

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._records.values()))

    def add(self, item_id: str, item: T) -> None:
        if item_id in self._records:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._records[item_id] = item

    def upsert(self, item_id: str, item: T) -> None:
        self._records[item_id] = item

    def find(self, item_id: str) -> Optional[T]:
        return self._records.get(item_id)

    def get(self, item_id: str) -> T:
        record = self.find(item_id)
        if record is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return record

    def remove(self, item_id: str) -> None:
        if self._records.pop(item_id, None) is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")

    def list(self) -> List[T]:
        return list(self._records.values())


def select(repository, predicate: Callable[[T], bool]) -> List[T]:
    """Records of ``repository`` matching ``predicate``, in store order."""

    return [record for record in repository.list() if predicate(record)]


class InMemoryDatabase:
    """Bundle of in-memory repositories, interchangeable with ``LensFlowDatabase``.

    Orders are keyed by order number, users and organizations by id, products
    by SKU.
    """

    def __init__(self) -> None:
        self.orders: InMemoryRepository[Order] = InMemoryRepository()
        self.users: InMemoryRepository[User] = InMemoryRepository()
        self.organizations: InMemoryRepository[Organization] = InMemoryRepository()
        self.products: InMemoryRepository[Product] = InMemoryRepository()

    def close(self) -> None:
        for repository in (self.orders, self.users, self.organizations, self.products):
            repository._records.clear()


__all__ = [
    "InMemoryRepository",
    "InMemoryDatabase",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "select",
]
