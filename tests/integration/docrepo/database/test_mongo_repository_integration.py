import asyncio

import pytest
from pymongo import ASCENDING

from docrepo.database import (
    ArityMismatchError,
    BulkWriteFailure,
    CreationError,
    DeleteOp,
    EntityValidationError,
    ImmutableFieldError,
    InsertOp,
    MongoEntity,
    MongoRepository,
    NotFoundError,
    UpdateOp,
    UpsertOp,
    field,
)

MISSING_ID = "507f1f77bcf86cd799439011"

pytestmark = [pytest.mark.asyncio, pytest.mark.integration, pytest.mark.slow]


class User(MongoEntity):
    name: str
    age: int = 0
    email: str | None = None

    class Settings:
        name = "users"


@pytest.fixture
def users(test_db):
    return MongoRepository(test_db["users"], User, entity_name="User")


async def seed(users, count: int):
    return [await users.create({"name": f"user{i:02d}", "age": i}) for i in range(count)]


class TestCrud:
    async def test_create_then_find_by_id(self, users):
        created = await users.create({"name": "Ada", "age": 36})

        found = await users.find_by_id(created.id)

        assert found.id == created.id
        assert found.name == "Ada"
        assert found.created_at is not None

    async def test_find_by_unknown_id(self, users):
        with pytest.raises(NotFoundError):
            await users.find_by_id(MISSING_ID)

    async def test_update_changes_only_supplied_fields(self, users):
        created = await users.create({"name": "Ada", "age": 36, "email": "ada@example.com"})

        updated = await users.update(created.id, {"age": 37})

        assert updated.age == 37
        assert updated.name == "Ada"
        assert updated.email == "ada@example.com"
        assert updated.updated_at >= updated.created_at

    async def test_update_missing_and_immutable(self, users):
        created = await users.create({"name": "Ada", "age": 36})
        with pytest.raises(NotFoundError):
            await users.update(MISSING_ID, {"age": 1})
        with pytest.raises(ImmutableFieldError):
            await users.update(created.id, {"id": MISSING_ID})
        with pytest.raises(EntityValidationError):
            await users.update(created.id, {"age": "old"})

    async def test_delete_then_find(self, users):
        created = await users.create({"name": "Ada", "age": 36})

        await users.delete(created.id)

        with pytest.raises(NotFoundError):
            await users.find_by_id(created.id)
        with pytest.raises(NotFoundError):
            await users.delete(created.id)

    async def test_unique_index_violation_on_create(self, users, test_db):
        await test_db["users"].create_index([("email", ASCENDING)], unique=True)
        await users.create({"name": "Ada", "email": "ada@example.com"})

        with pytest.raises(CreationError) as exc_info:
            await users.create({"name": "Other", "email": "ada@example.com"})
        assert exc_info.value.__cause__ is not None


class TestQueries:
    async def test_paginate_second_page(self, users):
        await seed(users, 25)

        result = await users.paginate({}, page=2, limit=10, sort={"age": "asc"})

        assert result.total == 25
        assert result.total_pages == 3
        assert [u.age for u in result.data] == list(range(10, 20))

    async def test_paginate_last_and_past_pages(self, users):
        await seed(users, 25)

        last = await users.paginate(page=3, limit=10)
        past = await users.paginate(page=5, limit=10)

        assert len(last.data) == 5
        assert past.data == []
        assert past.total == 25

    async def test_find_and_count_by_query(self, users):
        await seed(users, 10)

        adults = await users.find_by_query(field("age") >= 5, sort={"age": -1})

        assert [u.age for u in adults] == [9, 8, 7, 6, 5]
        assert await users.count_documents_by_query(field("age") >= 5) == 5
        assert await users.check_exists_by_query({"name": "user03"}) is True
        assert await users.check_exists_by_query({"name": "nobody"}) is False
        assert await users.find_by_query({"name": "nobody"}) == []

    async def test_find_one_with_projection(self, users):
        await seed(users, 3)

        user = await users.find_one_by_query(field("age") == 2, projection=["name"])

        assert user.name == "user02"
        assert user.id is not None

    async def test_update_and_delete_many_by_query(self, users):
        await seed(users, 6)

        updated = await users.update_many_by_query(field("age") < 3, {"$inc": {"age": 100}})
        deleted = await users.delete_many_by_query(field("age") >= 100)

        assert updated.matched_count == 3
        assert updated.modified_count == 3
        assert deleted.deleted_count == 3
        assert await users.count_documents_by_query() == 3

    async def test_concurrent_pagination(self, users):
        await seed(users, 12)
        results = await asyncio.gather(*(users.paginate(page=p, limit=5) for p in (1, 2, 3)))
        assert [len(r.data) for r in results] == [5, 5, 2]


class TestBulk:
    async def test_bulk_insert_increases_count(self, users):
        before = await users.count_documents_by_query()

        result = await users.bulk_insert([{"name": "a", "age": 1}, {"name": "b", "age": 2}])

        assert result.inserted_count == 2
        assert await users.count_documents_by_query() == before + 2

    async def test_bulk_upsert_by_content_is_idempotent(self, users):
        first = await users.bulk_upsert([None], [{"name": "x"}])
        second = await users.bulk_upsert([None], [{"name": "x"}])

        assert first.upserted_count == 1
        assert second.upserted_count == 0
        assert await users.count_documents_by_query({"name": "x"}) == 1

    async def test_bulk_upsert_by_id(self, users):
        created = await users.create({"name": "Ada", "age": 36})

        result = await users.bulk_upsert([created.id], [{"age": 40}])

        assert result.modified_count == 1
        assert (await users.find_by_id(created.id)).age == 40

    async def test_update_many_by_id_and_bulk_delete(self, users):
        created = await seed(users, 3)
        ids = [u.id for u in created]

        with pytest.raises(ArityMismatchError):
            await users.update_many_by_id(ids, [{"age": 1}])
        updated = await users.update_many_by_id(ids[:2], [{"age": 50}, {"age": 60}])
        deleted = await users.bulk_delete(ids)

        assert updated.modified_count == 2
        assert deleted.deleted_count == 3
        assert await users.count_documents_by_query() == 0

    async def test_bulk_write_mixed_operations(self, users):
        await seed(users, 3)

        outcome = await users.bulk_write(
            [
                InsertOp({"name": "new", "age": 99}),
                UpdateOp(field("name") == "user00", {"$set": {"age": 10}}),
                DeleteOp(field("name") == "user01"),
                UpsertOp({"name": "grace"}, {"name": "grace", "age": 45}),
            ]
        )

        assert outcome.inserted_count == 1
        assert outcome.modified_count == 1
        assert outcome.deleted_count == 1
        assert outcome.upserted_count == 1
        assert set(outcome.upserted_ids) == {3}
        assert (await users.find_by_id(outcome.upserted_ids[3])).name == "grace"

    async def test_ordered_bulk_failure_keeps_applied_prefix(self, users, test_db):
        await test_db["users"].create_index([("email", ASCENDING)], unique=True, sparse=True)

        with pytest.raises(BulkWriteFailure) as exc_info:
            await users.bulk_insert(
                [
                    {"name": "a", "email": "a@example.com"},
                    {"name": "dup", "email": "a@example.com"},
                    {"name": "c", "email": "c@example.com"},
                ]
            )

        assert exc_info.value.outcome.inserted_count == 1
        assert await users.count_documents_by_query() == 1

    async def test_unordered_bulk_failure_attempts_every_write(self, users, test_db):
        await test_db["users"].create_index([("email", ASCENDING)], unique=True, sparse=True)

        with pytest.raises(BulkWriteFailure) as exc_info:
            await users.bulk_insert(
                [
                    {"name": "a", "email": "a@example.com"},
                    {"name": "dup", "email": "a@example.com"},
                    {"name": "c", "email": "c@example.com"},
                ],
                ordered=False,
            )

        assert exc_info.value.outcome.inserted_count == 2
        assert len(exc_info.value.write_errors) == 1


class TestConnectionManager:
    async def test_repository_round_trip(self, connection):
        await connection.acquire()
        users = connection.repository(User)

        created = await users.create(User(name="Ada", age=36))

        assert users.entity_name == "User"
        assert (await users.find_by_id(created.id)).name == "Ada"
        assert await connection.ping() is True

    async def test_concurrent_acquire_returns_one_database(self, connection):
        databases = await asyncio.gather(*(connection.acquire() for _ in range(5)))
        assert len({id(db) for db in databases}) == 1
