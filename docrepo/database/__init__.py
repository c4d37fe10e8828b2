from docrepo.database.backends.mongo_connection import MongoConnectionManager
from docrepo.database.backends.mongo_repository import MongoEntity, MongoRepository
from docrepo.database.backends.repository import DocumentRepository
from docrepo.database.core.exceptions import (
    ArityMismatchError,
    BulkWriteFailure,
    ConnectionFailedError,
    CreationError,
    EntityValidationError,
    ImmutableFieldError,
    InvalidQueryError,
    NotFoundError,
    RepositoryError,
    StoreError,
)
from docrepo.database.core.operations import BulkOperation, DeleteOp, InsertOp, UpdateOp, UpsertOp
from docrepo.database.core.query import (
    And,
    Eq,
    Exists,
    Expression,
    FieldRef,
    Gt,
    Gte,
    In,
    Lt,
    Lte,
    Ne,
    Not,
    NotIn,
    Or,
    Regex,
    compile_filter,
    compile_projection,
    compile_sort,
    compile_update,
    exclude,
    field,
    include,
)
from docrepo.database.core.types import (
    BulkInsertResult,
    BulkOutcome,
    BulkUpsertResult,
    DeleteManyResult,
    PaginatedResult,
    SortDirection,
    UpdateManyResult,
)

__all__ = [
    "And",
    "ArityMismatchError",
    "BulkInsertResult",
    "BulkOperation",
    "BulkOutcome",
    "BulkUpsertResult",
    "BulkWriteFailure",
    "compile_filter",
    "compile_projection",
    "compile_sort",
    "compile_update",
    "ConnectionFailedError",
    "CreationError",
    "DeleteManyResult",
    "DeleteOp",
    "DocumentRepository",
    "EntityValidationError",
    "Eq",
    "exclude",
    "Exists",
    "Expression",
    "field",
    "FieldRef",
    "Gt",
    "Gte",
    "ImmutableFieldError",
    "In",
    "include",
    "InsertOp",
    "InvalidQueryError",
    "Lt",
    "Lte",
    "MongoConnectionManager",
    "MongoEntity",
    "MongoRepository",
    "Ne",
    "Not",
    "NotFoundError",
    "NotIn",
    "Or",
    "PaginatedResult",
    "Regex",
    "RepositoryError",
    "SortDirection",
    "StoreError",
    "UpdateManyResult",
    "UpdateOp",
    "UpsertOp",
]
