import logging
import os

import pytest
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from docrepo.database import MongoConnectionManager

MONGO_URL = os.environ.get("DOCREPO_MONGO__URI", "mongodb://localhost:27017")
MONGO_DB = "docrepo_test_db"


@pytest.fixture(scope="session")
def mongo_available():
    """Skip the integration suite when no MongoDB server answers."""
    client = MongoClient(MONGO_URL, serverSelectionTimeoutMS=1000)
    try:
        client.admin.command("ping")
    except PyMongoError as e:
        pytest.skip(f"MongoDB not reachable at {MONGO_URL}: {e}")
    finally:
        client.close()


@pytest.fixture
async def mongo_client(mongo_available):
    client = AsyncIOMotorClient(MONGO_URL)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture
async def test_db(mongo_client):
    """Create a test database and drop it after the test."""
    db = mongo_client[MONGO_DB]
    try:
        yield db
    finally:
        await mongo_client.drop_database(MONGO_DB)


@pytest.fixture
async def connection(mongo_available):
    manager = MongoConnectionManager(MONGO_URL, MONGO_DB, serverSelectionTimeoutMS=1000)
    try:
        yield manager
    finally:
        if manager.is_connected:
            await manager.client.drop_database(MONGO_DB)
        await manager.close()


@pytest.fixture(autouse=True, scope="session")
def suppress_pymongo_logs():
    """Suppress PyMongo debug logging that can cause issues during cleanup."""
    loggers_to_suppress = [
        "pymongo",
        "pymongo.topology",
        "pymongo.connection",
        "pymongo.serverSelection",
        "pymongo.command",
    ]

    original_levels = {}
    for logger_name in loggers_to_suppress:
        logger = logging.getLogger(logger_name)
        original_levels[logger_name] = logger.level
        logger.setLevel(logging.CRITICAL)

    yield

    for logger_name, original_level in original_levels.items():
        logging.getLogger(logger_name).setLevel(original_level)
