"""Error taxonomy for docrepo repositories.

Every error raised by a repository derives from :class:`RepositoryError` and carries the entity name of the
repository that raised it. Underlying driver errors are chained as ``__cause__``.
"""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from docrepo.database.core.types import BulkOutcome


class RepositoryError(Exception):
    """Base class for every repository failure."""

    def __init__(self, message: str, *, entity_name: str = "Resource"):
        super().__init__(message)
        self.entity_name = entity_name


class NotFoundError(RepositoryError):
    """Zero documents matched a by-id or singular lookup."""

    def __init__(self, message: str, *, entity_name: str = "Resource", query: Any = None):
        super().__init__(message, entity_name=entity_name)
        self.query = query


class CreationError(RepositoryError):
    """The store rejected an insert (schema or unique-constraint violation, ...)."""


class ArityMismatchError(RepositoryError, ValueError):
    """Positional bulk operation received id and data lists of different lengths."""

    def __init__(self, message: str, *, entity_name: str = "Resource", ids_count: int = 0, data_count: int = 0):
        super().__init__(message, entity_name=entity_name)
        self.ids_count = ids_count
        self.data_count = data_count


class InvalidQueryError(RepositoryError, ValueError):
    """A filter, projection, sort, update or pagination argument failed shape validation before dispatch."""


class ImmutableFieldError(InvalidQueryError):
    """An update payload tried to change the entity identifier."""


class EntityValidationError(RepositoryError):
    """A payload failed model or server-side schema validation."""


class StoreError(RepositoryError):
    """Any other failure raised by the document store."""


class ConnectionFailedError(StoreError):
    """The store could not be reached while acquiring a connection."""


class BulkWriteFailure(StoreError):
    """A batched write failed part way. ``outcome`` reports only the sub-operations that were applied."""

    def __init__(
        self,
        message: str,
        *,
        entity_name: str = "Resource",
        outcome: Optional["BulkOutcome"] = None,
        write_errors: Optional[list[dict]] = None,
    ):
        super().__init__(message, entity_name=entity_name)
        self.outcome = outcome
        self.write_errors = write_errors or []
