"""The closed set of write operations accepted by ``bulk_write``.

Each variant is validated and compiled by the repository before the batch is dispatched, so a malformed
operation never reaches the store.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Union

from pydantic import BaseModel

from docrepo.database.core.query import FilterLike

Payload = Union[Mapping[str, Any], BaseModel]


@dataclass(frozen=True)
class InsertOp:
    document: Payload


@dataclass(frozen=True)
class UpdateOp:
    filter: FilterLike
    update: Mapping[str, Any]
    many: bool = False


@dataclass(frozen=True)
class DeleteOp:
    filter: FilterLike
    many: bool = False


@dataclass(frozen=True)
class UpsertOp:
    """Update the first document matching ``filter`` with ``document``, inserting it when nothing matches."""

    filter: FilterLike
    document: Payload


BulkOperation = Union[InsertOp, UpdateOp, DeleteOp, UpsertOp]
