"""Process-wide MongoDB connection state.

A :class:`MongoConnectionManager` owns one motor client. The first :meth:`~MongoConnectionManager.acquire` creates
and verifies it; concurrent first acquisitions wait on the same attempt instead of opening several clients.
Connections are released only by an explicit :meth:`~MongoConnectionManager.close`.
"""

import asyncio
from typing import Optional, Type

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from docrepo.core import DocRepo, as_bool, first_not_none, ifnone
from docrepo.database.backends.mongo_repository import MongoRepository
from docrepo.database.core.exceptions import ConnectionFailedError


class MongoConnectionManager(DocRepo):
    """Owns a motor client and hands out collections and repositories bound to it.

    No connection is made until :meth:`acquire` (or the first :meth:`get_collection` / :meth:`repository`
    call after it). Use one manager per process, either by passing it around or through :meth:`shared`.

    Args:
        uri: MongoDB connection URI.
        db_name: Database that collections are taken from.
        verify: Ping the server on first acquisition and raise ``ConnectionFailedError`` if it is unreachable.
        **client_kwargs: Passed to ``AsyncIOMotorClient`` (``serverSelectionTimeoutMS``, ``appname``, ...).

    Example:
        .. code-block:: python

            async with MongoConnectionManager("mongodb://localhost:27017", "app") as connection:
                users = connection.repository(User, entity_name="User")
                await users.create({"name": "Ada", "age": 36})
    """

    _shared: Optional["MongoConnectionManager"] = None

    def __init__(self, uri: str, db_name: str, *, verify: bool = True, **client_kwargs):
        super().__init__()
        self._uri = uri
        self._db_name = db_name
        self._verify = verify
        self._client_kwargs = client_kwargs
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config=None, **overrides) -> "MongoConnectionManager":
        """Build a manager from the ``DOCREPO_MONGO`` config section. ``overrides`` win over config values."""
        config = ifnone(config, cls.config)
        mongo = config.DOCREPO_MONGO
        client_kwargs = {
            "appname": mongo.APP_NAME,
            "serverSelectionTimeoutMS": int(mongo.SERVER_SELECTION_TIMEOUT_MS),
        }
        client_kwargs.update(overrides)
        uri = client_kwargs.pop("uri", None) or config.get_secret("DOCREPO_MONGO", "URI")
        db_name = client_kwargs.pop("db_name", None) or mongo.DB_NAME
        verify = client_kwargs.pop("verify", as_bool(mongo.VERIFY_ON_CONNECT))
        return cls(uri, db_name, verify=verify, **client_kwargs)

    @classmethod
    def shared(cls) -> "MongoConnectionManager":
        """Return the process-wide manager, building it from config on first use."""
        if cls._shared is None:
            cls._shared = cls.from_config()
        return cls._shared

    @classmethod
    async def reset_shared(cls) -> None:
        """Close and forget the process-wide manager."""
        if cls._shared is not None:
            shared, cls._shared = cls._shared, None
            await shared.close()

    @property
    def db_name(self) -> str:
        return self._db_name

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Optional[AsyncIOMotorClient]:
        """The motor client (None until acquired)."""
        return self._client

    async def acquire(self) -> AsyncIOMotorDatabase:
        """Return the database handle, connecting on the first call.

        Raises:
            ConnectionFailedError: If the server cannot be reached. A later call tries again.
        """
        if self._db is not None:
            return self._db
        async with self._lock:
            if self._db is not None:
                return self._db
            self.logger.debug(f"Connecting to MongoDB database {self._db_name}.")
            client = AsyncIOMotorClient(self._uri, **self._client_kwargs)
            if self._verify:
                try:
                    await client.admin.command("ping")
                except PyMongoError as e:
                    client.close()
                    raise ConnectionFailedError(
                        f"Could not connect to MongoDB for database {self._db_name}: {e}", entity_name=self._db_name
                    ) from e
            self._client = client
            self._db = client[self._db_name]
            self.logger.info(f"Connected to MongoDB database {self._db_name}.")
            return self._db

    async def ping(self) -> bool:
        """Return True when the server answers a ping. Never raises for connectivity failures."""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            self.logger.warning(f"MongoDB ping failed: {e}")
            return False
        return True

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        """Return a collection of the acquired database."""
        if self._db is None:
            raise RuntimeError("Database not connected. Call acquire() first.")
        return self._db[name]

    def repository(
        self,
        model_cls: Type[BaseModel],
        collection_name: Optional[str] = None,
        entity_name: Optional[str] = None,
        **kwargs,
    ) -> MongoRepository:
        """Build a :class:`MongoRepository` for ``model_cls``.

        The collection defaults to ``model_cls.Settings.name``, then to the lower-cased class name. The entity name
        defaults to the class name.
        """
        settings_name = getattr(getattr(model_cls, "Settings", None), "name", None)
        collection_name = first_not_none((collection_name, settings_name), model_cls.__name__.lower())
        return MongoRepository(
            self.get_collection(collection_name), model_cls, entity_name=entity_name or model_cls.__name__, **kwargs
        )

    async def close(self) -> None:
        """Close the client. The manager can be acquired again afterwards."""
        async with self._lock:
            if self._client is not None:
                self._client.close()
                self.logger.info(f"Closed MongoDB connection for database {self._db_name}.")
            self._client = None
            self._db = None

    async def __aenter__(self) -> "MongoConnectionManager":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
