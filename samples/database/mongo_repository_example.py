#!/usr/bin/env python3
"""
MongoDB Repository Example

Demonstrates MongoRepository CRUD, pagination, typed queries and batched writes.

Prerequisites:
- MongoDB running on localhost:27017 (override with DOCREPO_MONGO__URI)
"""

import asyncio
from typing import List

from pydantic import Field

from docrepo.database import (
    DeleteOp,
    InsertOp,
    MongoConnectionManager,
    MongoEntity,
    NotFoundError,
    UpdateOp,
    UpsertOp,
    field,
)


class User(MongoEntity):
    """User stored in the ``users`` collection."""

    name: str = Field(description="User name")
    email: str = Field(description="Email address")
    age: int = Field(ge=0, description="Age")
    skills: List[str] = Field(default_factory=list, description="User skills")

    class Settings:
        name = "users"


async def main():
    connection = MongoConnectionManager.from_config(db_name="sampleapp")
    async with connection:
        users = connection.repository(User)
        await users.delete_many_by_query(None)

        print("\n--- CRUD ---")
        ada = await users.create({"name": "Ada", "email": "ada@example.com", "age": 36, "skills": ["math"]})
        print(f"✓ Created {ada.name} with id {ada.id}")

        ada = await users.update(ada.id, {"$push": {"skills": "engines"}})
        print(f"✓ Skills are now {ada.skills}")

        await users.delete(ada.id)
        try:
            await users.find_by_id(ada.id)
        except NotFoundError as e:
            print(f"✓ {e}")

        print("\n--- Batched writes ---")
        inserted = await users.bulk_insert(
            [{"name": f"user{i}", "email": f"user{i}@example.com", "age": 15 + i} for i in range(25)]
        )
        print(f"✓ Inserted {inserted.inserted_count} users")

        outcome = await users.bulk_write(
            [
                InsertOp({"name": "Linus", "email": "linus@example.com", "age": 54}),
                UpdateOp(field("age") < 18, {"$set": {"skills": ["homework"]}}, many=True),
                DeleteOp(field("name") == "user24"),
                UpsertOp({"email": "grace@example.com"}, {"name": "Grace", "email": "grace@example.com", "age": 45}),
            ]
        )
        print(f"✓ Bulk outcome: {outcome.model_dump()}")

        print("\n--- Queries ---")
        adults = (field("age") >= 18) & field("email").matches("@example.com$")
        page = await users.paginate(adults, page=2, limit=10, sort={"age": "asc"})
        print(f"✓ Page {page.page}/{page.total_pages} of {page.total} adults: {[u.name for u in page.data]}")

        print(f"✓ Teenagers: {await users.count_documents_by_query(field('age') < 18)}")
        oldest = await users.find_one_by_query(None, projection=["name", "age"], sort={"age": "desc"})
        print(f"✓ Oldest user: {oldest.name} ({oldest.age})")


if __name__ == "__main__":
    asyncio.run(main())
