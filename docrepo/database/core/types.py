from enum import IntEnum
from typing import Generic, List, TypeVar

from pydantic import BaseModel, Field, model_validator

T = TypeVar("T")


class SortDirection(IntEnum):
    ASCENDING = 1
    DESCENDING = -1


class PaginatedResult(BaseModel, Generic[T]):
    """One page of entities plus the totals needed to render a pager.

    ``total_pages`` is ``ceil(total / limit)``, which is 0 for an empty match set.
    """

    data: List[T]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    total_pages: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_page(self):
        if len(self.data) > self.limit:
            raise ValueError(f"Page holds {len(self.data)} items but limit is {self.limit}")
        if self.total_pages != self.pages_for(self.total, self.limit):
            raise ValueError(f"total_pages={self.total_pages} does not match total={self.total}, limit={self.limit}")
        return self

    @staticmethod
    def pages_for(total: int, limit: int) -> int:
        return (total + limit - 1) // limit

    @classmethod
    def build(cls, data: List[T], total: int, page: int, limit: int) -> "PaginatedResult[T]":
        return cls(data=data, total=total, page=page, limit=limit, total_pages=cls.pages_for(total, limit))


class UpdateManyResult(BaseModel):
    matched_count: int = 0
    modified_count: int = 0


class DeleteManyResult(BaseModel):
    deleted_count: int = 0


class BulkInsertResult(BaseModel):
    inserted_count: int = 0
    upserted_ids: dict[int, str] = Field(default_factory=dict)


class BulkUpsertResult(BaseModel):
    upserted_count: int = 0
    modified_count: int = 0


class BulkOutcome(BaseModel):
    """Aggregate result of a batched write.

    ``upserted_ids`` maps the position of an upserting sub-operation in the batch to the id the store generated.
    """

    acknowledged: bool = True
    matched_count: int = 0
    modified_count: int = 0
    inserted_count: int = 0
    deleted_count: int = 0
    upserted_count: int = 0
    upserted_ids: dict[int, str] = Field(default_factory=dict)
