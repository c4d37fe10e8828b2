from abc import abstractmethod
from typing import Any, Generic, Mapping, Optional, Sequence, TypeVar

from docrepo.core import DocRepoABC
from docrepo.database.core.operations import BulkOperation, Payload
from docrepo.database.core.query import FilterLike, ProjectionLike, SortLike
from docrepo.database.core.types import (
    BulkInsertResult,
    BulkOutcome,
    BulkUpsertResult,
    DeleteManyResult,
    PaginatedResult,
    UpdateManyResult,
)

T = TypeVar("T")


class DocumentRepository(DocRepoABC, Generic[T]):
    """Abstract data-access facade over one document collection.

    Implementations are stateless apart from what they are constructed with: every method is an independent
    request against the store, and failures surface as :class:`~docrepo.database.RepositoryError` subclasses.

    Args:
        entity_name: Human-readable entity name used in diagnostics. Defaults to
            ``DOCREPO_REPOSITORY.DEFAULT_ENTITY_NAME`` ("Resource").
    """

    def __init__(self, entity_name: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.entity_name = entity_name or self.config.DOCREPO_REPOSITORY.DEFAULT_ENTITY_NAME

    @abstractmethod
    async def create(self, payload: Payload) -> T:
        """Insert one entity and return it with its generated id."""

    @abstractmethod
    async def find_all(self) -> list[T]:
        """Return every entity in the collection."""

    @abstractmethod
    async def find_by_id(self, id: str) -> T:
        """Return the entity with the given id or raise NotFoundError."""

    @abstractmethod
    async def update(self, id: str, payload: Mapping[str, Any]) -> T:
        """Apply a partial update atomically and return the updated entity."""

    @abstractmethod
    async def delete(self, id: str) -> None:
        """Remove the entity with the given id or raise NotFoundError."""

    @abstractmethod
    async def paginate(
        self,
        query: FilterLike = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort: SortLike = None,
        projection: ProjectionLike = None,
    ) -> PaginatedResult[T]:
        """Return one page of matching entities together with the total match count."""

    @abstractmethod
    async def find_by_query(
        self, query: FilterLike, projection: ProjectionLike = None, sort: SortLike = None
    ) -> list[T]:
        """Return every entity matching the filter; an empty list when nothing matches."""

    @abstractmethod
    async def find_one_by_query(
        self, query: FilterLike, projection: ProjectionLike = None, sort: SortLike = None
    ) -> T:
        """Return the first entity matching the filter or raise NotFoundError."""

    @abstractmethod
    async def check_exists_by_query(self, query: FilterLike) -> bool:
        """Return True when at least one entity matches."""

    @abstractmethod
    async def count_documents_by_query(self, query: FilterLike = None) -> int:
        """Count matching entities."""

    @abstractmethod
    async def update_many_by_query(self, query: FilterLike, update: Mapping[str, Any]) -> UpdateManyResult:
        """Apply an update to every matching entity."""

    @abstractmethod
    async def delete_many_by_query(self, query: FilterLike) -> DeleteManyResult:
        """Remove every matching entity."""

    @abstractmethod
    async def update_many_by_id(
        self, ids: Sequence[str], data: Sequence[Mapping[str, Any]]
    ) -> UpdateManyResult:
        """Apply ``data[i]`` to entity ``ids[i]`` in one batch."""

    @abstractmethod
    async def bulk_insert(self, documents: Sequence[Payload]) -> BulkInsertResult:
        """Insert many entities in one batch."""

    @abstractmethod
    async def bulk_delete(self, ids: Sequence[str]) -> DeleteManyResult:
        """Remove every entity whose id is listed, in one batch."""

    @abstractmethod
    async def bulk_upsert(
        self, ids: Sequence[Optional[str]], data: Sequence[Payload]
    ) -> BulkUpsertResult:
        """Update-or-insert ``data[i]`` keyed by ``ids[i]`` (or by the payload itself when the id is None)."""

    @abstractmethod
    async def bulk_write(self, operations: Sequence[BulkOperation]) -> BulkOutcome:
        """Dispatch a batch of insert/update/delete/upsert operations."""
