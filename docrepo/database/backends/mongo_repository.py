import asyncio
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence, Type, TypeVar

from motor.motor_asyncio import AsyncIOMotorCollection
from pydantic import BaseModel, ValidationError
from pymongo import DeleteMany, DeleteOne, InsertOne, ReturnDocument, UpdateMany, UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError

from docrepo.core import DocRepo, as_bool, ifnone
from docrepo.database.backends.repository import DocumentRepository
from docrepo.database.core.exceptions import (
    ArityMismatchError,
    BulkWriteFailure,
    CreationError,
    EntityValidationError,
    InvalidQueryError,
    NotFoundError,
    RepositoryError,
    StoreError,
)
from docrepo.database.core.operations import BulkOperation, DeleteOp, InsertOp, Payload, UpdateOp, UpsertOp
from docrepo.database.core.query import (
    ID_FIELD,
    STORE_ID_FIELD,
    FilterLike,
    ProjectionLike,
    SortLike,
    check_mutable_path,
    compile_filter,
    compile_projection,
    compile_sort,
    compile_update,
    to_store_id,
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

# Server error code for a document rejected by the collection's $jsonSchema validator.
DOCUMENT_VALIDATION_FAILURE = 121

CREATED_AT = "created_at"
UPDATED_AT = "updated_at"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MongoEntity(BaseModel):
    """
    Base model for entities stored in a MongoDB collection.

    The store's ``_id`` is exposed as the string ``id``. ``created_at`` and ``updated_at`` are stamped by the
    repository when timestamps are enabled.

    Example:
        .. code-block:: python

            from docrepo.database import MongoEntity

            class User(MongoEntity):
                name: str
                email: str

                class Settings:
                    name = "users"
    """

    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Settings:
        """
        Collection settings for the entity.

        Attributes:
            name (str | None): Collection name used by ``MongoConnectionManager.repository``. Defaults to the
                lower-cased class name.
        """

        name: Optional[str] = None


T = TypeVar("T", bound=BaseModel)


class MongoRepository(DocumentRepository[T]):
    """
    MongoDB implementation of :class:`DocumentRepository`.

    Works directly on a motor collection handle, so any number of repositories can share one client. The
    repository keeps no state besides its constructor arguments; each call is a single request (or a single
    batched write) against the collection.

    Args:
        collection (AsyncIOMotorCollection): Bound collection handle.
        model_cls (Type[T]): Pydantic model the documents are read into.
        entity_name (str | None): Name used in error messages and logs. Defaults to
            ``DOCREPO_REPOSITORY.DEFAULT_ENTITY_NAME``.
        timestamps (bool | None): Stamp ``created_at``/``updated_at`` on writes. Defaults to
            ``DOCREPO_REPOSITORY.TIMESTAMPS``.
        ordered (bool | None): Default ordering for batched writes. Defaults to
            ``DOCREPO_REPOSITORY.ORDERED_BULK_WRITES``.

    Example:
        .. code-block:: python

            from motor.motor_asyncio import AsyncIOMotorClient
            from docrepo.database import MongoEntity, MongoRepository, field

            class User(MongoEntity):
                name: str
                age: int

            client = AsyncIOMotorClient("mongodb://localhost:27017")
            users = MongoRepository(client["app"]["users"], User, entity_name="User")

            user = await users.create({"name": "Ada", "age": 36})
            adults = await users.paginate(field("age") >= 18, page=1, limit=20)
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        model_cls: Type[T],
        entity_name: Optional[str] = None,
        *,
        timestamps: Optional[bool] = None,
        ordered: Optional[bool] = None,
        **kwargs,
    ):
        super().__init__(entity_name=entity_name, **kwargs)
        settings = self.config.DOCREPO_REPOSITORY
        self.collection = collection
        self.model_cls: Type[T] = model_cls
        self.timestamps = ifnone(timestamps, as_bool(settings.TIMESTAMPS))
        self.ordered = ifnone(ordered, as_bool(settings.ORDERED_BULK_WRITES))
        self.default_limit = int(settings.DEFAULT_PAGE_LIMIT)
        self.max_limit = int(settings.MAX_PAGE_LIMIT)
        self.default_sort = [(settings.DEFAULT_SORT_FIELD, int(SortDirection.DESCENDING))]

    # ------------------------------------------------------------------
    # Single-entity operations
    # ------------------------------------------------------------------

    async def create(self, payload: Payload) -> T:
        """
        Insert a new entity.

        Args:
            payload (BaseModel | Mapping): The entity, or its fields. Validated against ``model_cls`` first.

        Returns:
            T: The stored entity, with ``id`` set to the generated identifier.

        Raises:
            CreationError: If the payload is invalid or the store rejects the insert (schema or unique-index
                violation, connection failure). The underlying error is chained.

        Example:
            .. code-block:: python

                try:
                    user = await users.create(User(name="Ada", age=36))
                except CreationError as e:
                    print(f"Could not create {e.entity_name}: {e.__cause__}")
        """
        document = self._prepare_insert(payload, error_cls=CreationError)
        self.logger.debug(f"Creating {self.entity_name} in {self._collection_name}.")
        try:
            result = await self.collection.insert_one(document)
        except PyMongoError as e:
            raise CreationError(f"Failed to create {self.entity_name}: {e}", entity_name=self.entity_name) from e
        document[STORE_ID_FIELD] = result.inserted_id
        return self._to_entity(document)

    async def find_all(self) -> list[T]:
        """
        Return every entity in the collection, unfiltered and unbounded.

        Returns:
            list[T]: All entities; empty when the collection is empty.
        """
        return await self.find_by_query(None)

    async def find_by_id(self, id: str) -> T:
        """
        Retrieve an entity by its identifier.

        Raises:
            NotFoundError: If no entity has this id.
        """
        query = {STORE_ID_FIELD: to_store_id(id)}
        document = await self._find_one(query, None, None, action="find")
        if document is None:
            raise self._not_found(f"{self.entity_name} with id {id} not found", query)
        return self._to_entity(document)

    async def update(self, id: str, payload: Mapping[str, Any]) -> T:
        """
        Atomically apply a partial update and return the post-update entity.

        Only the supplied fields change, except that ``updated_at`` is refreshed when timestamps are enabled.
        Plain fields are validated against the full ``model_cls`` field definitions (constraints and field
        validators) before dispatch, and the store's schema validator still applies.

        Args:
            id (str): Identifier of the entity to update.
            payload (Mapping): Field values, or an update-operator document such as ``{"$inc": {"age": 1}}``.

        Returns:
            T: The entity after the update.

        Raises:
            ImmutableFieldError: If the payload touches ``id``/``_id``.
            EntityValidationError: If a value fails model or server-side validation.
            NotFoundError: If no entity has this id.

        Example:
            .. code-block:: python

                user = await users.update(user.id, {"age": 37})
        """
        update = self._prepare_update(payload)
        query = {STORE_ID_FIELD: to_store_id(id)}
        self.logger.debug(f"Updating {self.entity_name} {id} with {update}.")
        try:
            document = await self.collection.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise self._store_error("update", e) from e
        if document is None:
            raise self._not_found(f"{self.entity_name} with id {id} not found", query)
        return self._to_entity(document)

    async def delete(self, id: str) -> None:
        """
        Delete an entity by its identifier.

        Raises:
            NotFoundError: If no entity has this id.
        """
        query = {STORE_ID_FIELD: to_store_id(id)}
        self.logger.debug(f"Deleting {self.entity_name} {id}.")
        try:
            result = await self.collection.delete_one(query)
        except PyMongoError as e:
            raise self._store_error("delete", e) from e
        if result.deleted_count == 0:
            raise self._not_found(f"{self.entity_name} with id {id} not found", query)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def paginate(
        self,
        query: FilterLike = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort: SortLike = None,
        projection: ProjectionLike = None,
    ) -> PaginatedResult[T]:
        """
        Return one page of matching entities.

        The page read and the total count are dispatched concurrently. They are not a snapshot: a write landing
        between the two can make ``total`` disagree with the page contents by that write.

        Args:
            query: Filter expression or mapping. ``None`` matches every entity.
            page (int): 1-based page number.
            limit (int | None): Page size. Defaults to ``DOCREPO_REPOSITORY.DEFAULT_PAGE_LIMIT``.
            sort: Sort specification applied before paging. Defaults to ``created_at`` descending.
            projection: Optional field inclusion or exclusion.

        Returns:
            PaginatedResult[T]: The page with ``total`` and ``total_pages``.

        Raises:
            InvalidQueryError: If ``page < 1``, ``limit < 1`` or ``limit`` exceeds the configured maximum.

        Example:
            .. code-block:: python

                result = await users.paginate(field("age") >= 18, page=2, limit=10, sort={"name": "asc"})
                print(result.total, result.total_pages, [u.name for u in result.data])
        """
        limit = ifnone(limit, self.default_limit)
        if not isinstance(page, int) or page < 1:
            raise InvalidQueryError(f"page must be an integer >= 1, got {page!r}", entity_name=self.entity_name)
        if not isinstance(limit, int) or limit < 1:
            raise InvalidQueryError(f"limit must be an integer >= 1, got {limit!r}", entity_name=self.entity_name)
        if limit > self.max_limit:
            raise InvalidQueryError(
                f"limit {limit} exceeds the maximum page size {self.max_limit}", entity_name=self.entity_name
            )

        compiled = compile_filter(query, entity_name=self.entity_name)
        compiled_sort = ifnone(compile_sort(sort, entity_name=self.entity_name), self.default_sort)
        compiled_projection = compile_projection(projection, entity_name=self.entity_name)
        skip = (page - 1) * limit
        self.logger.debug(
            f"Paginating {self.entity_name}: filter={compiled}, page={page}, limit={limit}, sort={compiled_sort}."
        )

        cursor = self.collection.find(compiled, compiled_projection).sort(compiled_sort).skip(skip).limit(limit)
        try:
            documents, total = await asyncio.gather(
                cursor.to_list(length=None), self.collection.count_documents(compiled)
            )
        except PyMongoError as e:
            raise self._store_error("paginate", e) from e

        data = [self._to_entity(d, partial=compiled_projection is not None) for d in documents]
        return PaginatedResult[self.model_cls].build(data=data, total=total, page=page, limit=limit)

    async def find_by_query(
        self, query: FilterLike, projection: ProjectionLike = None, sort: SortLike = None
    ) -> list[T]:
        """
        Return every entity matching the filter, unbounded.

        Returns an empty list when nothing matches; use :meth:`find_one_by_query` for a lookup that raises.
        """
        compiled = compile_filter(query, entity_name=self.entity_name)
        compiled_projection = compile_projection(projection, entity_name=self.entity_name)
        compiled_sort = compile_sort(sort, entity_name=self.entity_name)
        self.logger.debug(f"Finding {self.entity_name} by {compiled}.")

        cursor = self.collection.find(compiled, compiled_projection)
        if compiled_sort:
            cursor = cursor.sort(compiled_sort)
        try:
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise self._store_error("query", e) from e
        return [self._to_entity(d, partial=compiled_projection is not None) for d in documents]

    async def find_one_by_query(
        self, query: FilterLike, projection: ProjectionLike = None, sort: SortLike = None
    ) -> T:
        """
        Return the first entity matching the filter (in ``sort`` order when given).

        Raises:
            NotFoundError: If nothing matches.
        """
        compiled = compile_filter(query, entity_name=self.entity_name)
        compiled_projection = compile_projection(projection, entity_name=self.entity_name)
        compiled_sort = compile_sort(sort, entity_name=self.entity_name)
        document = await self._find_one(compiled, compiled_projection, compiled_sort, action="query")
        if document is None:
            raise self._not_found(f"No {self.entity_name} matches {compiled}", compiled)
        return self._to_entity(document, partial=compiled_projection is not None)

    async def check_exists_by_query(self, query: FilterLike) -> bool:
        return await self.count_documents_by_query(query) > 0

    async def count_documents_by_query(self, query: FilterLike = None) -> int:
        compiled = compile_filter(query, entity_name=self.entity_name)
        try:
            return await self.collection.count_documents(compiled)
        except PyMongoError as e:
            raise self._store_error("count", e) from e

    async def update_many_by_query(self, query: FilterLike, update: Mapping[str, Any]) -> UpdateManyResult:
        """
        Apply an update to every matching entity.

        Args:
            query: Filter selecting the entities.
            update (Mapping): Plain field values (wrapped in ``$set``) or an update-operator document.

        Returns:
            UpdateManyResult: Matched and modified counts.

        Raises:
            ImmutableFieldError: If the update touches ``id``/``_id``.
            EntityValidationError: If a value fails validation.
        """
        compiled = compile_filter(query, entity_name=self.entity_name)
        compiled_update = self._prepare_update(update)
        self.logger.debug(f"Updating every {self.entity_name} matching {compiled} with {compiled_update}.")
        try:
            result = await self.collection.update_many(compiled, compiled_update)
        except PyMongoError as e:
            raise self._store_error("update", e) from e
        return UpdateManyResult(matched_count=result.matched_count, modified_count=result.modified_count)

    async def delete_many_by_query(self, query: FilterLike) -> DeleteManyResult:
        """Delete every matching entity. ``None`` deletes everything."""
        compiled = compile_filter(query, entity_name=self.entity_name)
        self.logger.debug(f"Deleting every {self.entity_name} matching {compiled}.")
        try:
            result = await self.collection.delete_many(compiled)
        except PyMongoError as e:
            raise self._store_error("delete", e) from e
        return DeleteManyResult(deleted_count=result.deleted_count)

    # ------------------------------------------------------------------
    # Batched writes
    # ------------------------------------------------------------------

    @DocRepo.autolog(suffix_formatter=lambda function, result: f"Operation {function.__name__} completed: {result}")
    async def update_many_by_id(
        self, ids: Sequence[str], data: Sequence[Mapping[str, Any]], *, ordered: Optional[bool] = None
    ) -> UpdateManyResult:
        """
        Apply ``data[i]`` to the entity with id ``ids[i]``, as one batched write.

        Raises:
            ArityMismatchError: If ``ids`` and ``data`` differ in length. Nothing is sent to the store.
            BulkWriteFailure: If a sub-operation fails; ``outcome`` reports what was applied.
        """
        self._check_arity(ids, data)
        requests = [
            UpdateOne({STORE_ID_FIELD: to_store_id(id)}, self._prepare_update(update))
            for id, update in zip(ids, data)
        ]
        outcome = await self._dispatch(requests, "update", ordered)
        return UpdateManyResult(matched_count=outcome.matched_count, modified_count=outcome.modified_count)

    @DocRepo.autolog(prefix_formatter=lambda function, args, kwargs: f"Operation {function.__name__} started.")
    async def bulk_insert(self, documents: Sequence[Payload], *, ordered: Optional[bool] = None) -> BulkInsertResult:
        """
        Insert many entities as one batched write.

        Every document is validated before anything is dispatched.

        Returns:
            BulkInsertResult: Inserted count and any upserted ids reported by the store.

        Raises:
            EntityValidationError: If a document fails model validation.
            BulkWriteFailure: If a sub-operation fails (e.g. duplicate key); ``outcome.inserted_count`` reports
                how many documents were stored.
        """
        requests = [InsertOne(self._prepare_insert(document)) for document in documents]
        outcome = await self._dispatch(requests, "insert", ordered)
        return BulkInsertResult(inserted_count=outcome.inserted_count, upserted_ids=outcome.upserted_ids)

    @DocRepo.autolog()
    async def bulk_delete(self, ids: Sequence[str], *, ordered: Optional[bool] = None) -> DeleteManyResult:
        """Delete every entity whose id is in ``ids`` with a single ``$in`` delete. Unknown ids are ignored."""
        requests = []
        if ids:
            requests.append(DeleteMany({STORE_ID_FIELD: {"$in": [to_store_id(id) for id in ids]}}))
        outcome = await self._dispatch(requests, "delete", ordered)
        return DeleteManyResult(deleted_count=outcome.deleted_count)

    @DocRepo.autolog()
    async def bulk_upsert(
        self, ids: Sequence[Optional[str]], data: Sequence[Payload], *, ordered: Optional[bool] = None
    ) -> BulkUpsertResult:
        """
        Update-or-insert ``data[i]``, keyed by ``ids[i]``, as one batched write.

        .. important::

            When ``ids[i]`` is ``None`` the payload itself is the match key: the store looks for a document whose
            fields equal every field of ``data[i]``. Repeating the same payload therefore updates the existing
            document instead of inserting a duplicate, but any payload that differs in one field inserts a new
            document.

        Args:
            ids: Entity ids, or ``None`` for content-keyed upserts.
            data: Plain field mappings or models. Update operators are not accepted.

        Returns:
            BulkUpsertResult: Upserted (inserted) and modified counts.

        Raises:
            ArityMismatchError: If ``ids`` and ``data`` differ in length. Nothing is sent to the store.
            ImmutableFieldError: If a payload sets ``id``/``_id``.
            BulkWriteFailure: If a sub-operation fails; ``outcome`` reports what was applied.

        Example:
            .. code-block:: python

                await users.bulk_upsert([ada.id, None], [{"age": 37}, {"name": "Grace", "age": 45}])
        """
        self._check_arity(ids, data)
        requests = []
        for id, payload in zip(ids, data):
            fields = self._upsert_fields(payload)
            query = {STORE_ID_FIELD: to_store_id(id)} if id is not None else dict(fields)
            requests.append(UpdateOne(query, self._upsert_update(fields), upsert=True))
        outcome = await self._dispatch(requests, "upsert", ordered)
        return BulkUpsertResult(upserted_count=outcome.upserted_count, modified_count=outcome.modified_count)

    @DocRepo.autolog()
    async def bulk_write(
        self, operations: Sequence[BulkOperation], *, ordered: Optional[bool] = None
    ) -> BulkOutcome:
        """
        Dispatch a batch of operations as a single write.

        Every operation is validated and compiled before dispatch, so an invalid one fails the call without
        touching the store.

        Args:
            operations: ``InsertOp``, ``UpdateOp``, ``DeleteOp`` and ``UpsertOp`` instances.
            ordered (bool | None): Stop at the first failure (``True``) or attempt every operation (``False``).

        Returns:
            BulkOutcome: Aggregate counts, with ``upserted_ids`` keyed by batch position.

        Raises:
            InvalidQueryError: If an operation is malformed or of an unknown type.
            EntityValidationError: If an operation carries a value that fails model validation.
            BulkWriteFailure: If a sub-operation fails; the driver error is chained.

        Example:
            .. code-block:: python

                outcome = await users.bulk_write(
                    [
                        InsertOp({"name": "Linus", "age": 54}),
                        UpdateOp(field("name") == "Ada", {"$inc": {"age": 1}}),
                        DeleteOp(field("age") < 18, many=True),
                        UpsertOp({"name": "Grace"}, {"name": "Grace", "age": 45}),
                    ]
                )
        """
        requests = [self._to_request(operation) for operation in operations]
        return await self._dispatch(requests, "bulk write", ordered)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def _collection_name(self) -> str:
        return getattr(self.collection, "name", "collection")

    def _has_field(self, name: str) -> bool:
        return name in self.model_cls.model_fields

    def _not_found(self, message: str, query: Any) -> NotFoundError:
        self.logger.warning(message)
        return NotFoundError(message, entity_name=self.entity_name, query=query)

    def _store_error(self, action: str, e: PyMongoError) -> RepositoryError:
        if getattr(e, "code", None) == DOCUMENT_VALIDATION_FAILURE:
            return EntityValidationError(
                f"{self.entity_name} failed document validation during {action}: {e}", entity_name=self.entity_name
            )
        return StoreError(f"Failed to {action} {self.entity_name}: {e}", entity_name=self.entity_name)

    def _check_arity(self, ids: Sequence, data: Sequence) -> None:
        if len(ids) != len(data):
            message = f"Got {len(ids)} ids but {len(data)} payloads for {self.entity_name}"
            self.logger.warning(message)
            raise ArityMismatchError(
                message, entity_name=self.entity_name, ids_count=len(ids), data_count=len(data)
            )

    async def _find_one(self, query: dict, projection, sort, *, action: str) -> Optional[dict]:
        self.logger.debug(f"Finding one {self.entity_name} by {query}.")
        kwargs = {"sort": sort} if sort else {}
        try:
            return await self.collection.find_one(query, projection, **kwargs)
        except PyMongoError as e:
            raise self._store_error(action, e) from e

    def _to_entity(self, document: Mapping[str, Any], partial: bool = False) -> T:
        """Build an entity from a stored document, exposing ``_id`` as the string ``id``.

        Projected documents may lack required fields, so they are constructed without validation.
        """
        fields = dict(document)
        store_id = fields.pop(STORE_ID_FIELD, None)
        if store_id is not None:
            fields[ID_FIELD] = str(store_id)
        if partial:
            return self.model_cls.model_construct(**fields)
        try:
            return self.model_cls.model_validate(fields)
        except ValidationError as e:
            raise EntityValidationError(
                f"Stored {self.entity_name} {fields.get(ID_FIELD)} does not match {self.model_cls.__name__}: {e}",
                entity_name=self.entity_name,
            ) from e

    def _prepare_insert(self, payload: Payload, error_cls: Type[RepositoryError] = EntityValidationError) -> dict:
        """Validate a full entity payload and return the document to insert."""
        try:
            entity = payload if isinstance(payload, self.model_cls) else self.model_cls.model_validate(
                payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
            )
        except (ValidationError, TypeError, ValueError) as e:
            raise error_cls(f"Invalid {self.entity_name}: {e}", entity_name=self.entity_name) from e

        document = entity.model_dump()
        entity_id = document.pop(ID_FIELD, None)
        if entity_id is not None:
            document[STORE_ID_FIELD] = to_store_id(entity_id)
        now = _utcnow()
        for stamp in (CREATED_AT, UPDATED_AT):
            if document.get(stamp) is not None:
                continue
            if self.timestamps and self._has_field(stamp):
                document[stamp] = now
            else:
                document.pop(stamp, None)
        return document

    def _validate_fields(self, fields: Mapping[str, Any]) -> dict:
        """Validate plain top-level field values with the model's full field definitions.

        Each value goes through the model's own assignment validation, so field constraints and
        ``field_validator`` hooks apply exactly as they would on a whole entity.
        """
        forbid_extra = self.model_cls.model_config.get("extra") == "forbid"
        validated = {}
        for name, value in fields.items():
            if name not in self.model_cls.model_fields:
                if forbid_extra and "." not in name:
                    raise EntityValidationError(
                        f"{self.model_cls.__name__} has no field {name!r}", entity_name=self.entity_name
                    )
                validated[name] = value
                continue
            scratch = self.model_cls.model_construct()
            try:
                self.model_cls.__pydantic_validator__.validate_assignment(scratch, name, value)
            except ValidationError as e:
                raise EntityValidationError(
                    f"Invalid value for {self.entity_name}.{name}: {e}", entity_name=self.entity_name
                ) from e
            validated[name] = scratch.model_dump(include={name})[name]
        return validated

    def _prepare_update(self, payload: Mapping[str, Any]) -> dict:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(exclude_unset=True, exclude={ID_FIELD})
        update = compile_update(payload, entity_name=self.entity_name)
        if "$set" in update:
            update["$set"] = self._validate_fields(update["$set"])
        if self.timestamps and self._has_field(UPDATED_AT):
            stamped = any(UPDATED_AT in fields for fields in update.values())
            if not stamped:
                update.setdefault("$set", {})[UPDATED_AT] = _utcnow()
        return update

    def _upsert_fields(self, payload: Payload) -> dict:
        if isinstance(payload, BaseModel):
            fields = payload.model_dump(exclude={ID_FIELD})
            fields = {k: v for k, v in fields.items() if not (k in (CREATED_AT, UPDATED_AT) and v is None)}
        else:
            fields = dict(payload)
        for name in fields:
            if isinstance(name, str) and name.startswith("$"):
                raise InvalidQueryError(
                    f"Upsert payloads take plain fields, got operator {name!r}", entity_name=self.entity_name
                )
            check_mutable_path(name, entity_name=self.entity_name)
        return self._validate_fields(fields)

    def _upsert_update(self, fields: Mapping[str, Any]) -> dict:
        update: dict[str, Any] = {"$set": dict(fields)}
        if self.timestamps:
            now = _utcnow()
            if self._has_field(UPDATED_AT) and UPDATED_AT not in fields:
                update["$set"][UPDATED_AT] = now
            if self._has_field(CREATED_AT) and CREATED_AT not in fields:
                update["$setOnInsert"] = {CREATED_AT: now}
        return update

    def _to_request(self, operation: BulkOperation):
        if isinstance(operation, InsertOp):
            return InsertOne(self._prepare_insert(operation.document))
        if isinstance(operation, UpdateOp):
            request_cls = UpdateMany if operation.many else UpdateOne
            return request_cls(
                compile_filter(operation.filter, entity_name=self.entity_name), self._prepare_update(operation.update)
            )
        if isinstance(operation, DeleteOp):
            request_cls = DeleteMany if operation.many else DeleteOne
            return request_cls(compile_filter(operation.filter, entity_name=self.entity_name))
        if isinstance(operation, UpsertOp):
            return UpdateOne(
                compile_filter(operation.filter, entity_name=self.entity_name),
                self._upsert_update(self._upsert_fields(operation.document)),
                upsert=True,
            )
        raise InvalidQueryError(
            f"Unsupported bulk operation {type(operation).__name__}", entity_name=self.entity_name
        )

    async def _dispatch(self, requests: list, action: str, ordered: Optional[bool]) -> BulkOutcome:
        """Send prepared requests as one ``bulk_write``. An empty batch is not sent."""
        if not requests:
            return BulkOutcome()
        ordered = ifnone(ordered, self.ordered)
        self.logger.debug(f"Dispatching {len(requests)} {action} operations on {self.entity_name} (ordered={ordered}).")
        try:
            result = await self.collection.bulk_write(requests, ordered=ordered)
        except BulkWriteError as e:
            details = e.details or {}
            outcome = self._outcome_from_details(details)
            write_errors = details.get("writeErrors", [])
            raise BulkWriteFailure(
                f"Bulk {action} on {self.entity_name} failed after applying {outcome.model_dump()}: "
                f"{len(write_errors)} write error(s)",
                entity_name=self.entity_name,
                outcome=outcome,
                write_errors=write_errors,
            ) from e
        except PyMongoError as e:
            raise self._store_error(action, e) from e
        return self._outcome_from_result(result)

    @staticmethod
    def _outcome_from_result(result) -> BulkOutcome:
        if not result.acknowledged:
            return BulkOutcome(acknowledged=False)
        return BulkOutcome(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            inserted_count=result.inserted_count,
            deleted_count=result.deleted_count,
            upserted_count=result.upserted_count,
            upserted_ids={int(i): str(v) for i, v in (result.upserted_ids or {}).items()},
        )

    @staticmethod
    def _outcome_from_details(details: Mapping[str, Any]) -> BulkOutcome:
        return BulkOutcome(
            matched_count=details.get("nMatched", 0),
            modified_count=details.get("nModified", 0),
            inserted_count=details.get("nInserted", 0),
            deleted_count=details.get("nRemoved", 0),
            upserted_count=details.get("nUpserted", 0),
            upserted_ids={int(u["index"]): str(u["_id"]) for u in details.get("upserted", [])},
        )
