"""DocRepo base class. Provides unified configuration, logging and context management."""

import inspect
import logging
import time
from abc import ABC, ABCMeta
from functools import wraps
from typing import Callable, Optional

from docrepo.core.config import CoreConfig, SettingsLike
from docrepo.core.logging.logger import get_logger
from docrepo.core.utils import ifnone

_LOGGER_KWARGS = {
    "log_dir",
    "logger_level",
    "stream_level",
    "file_level",
    "file_mode",
    "propagate",
    "max_bytes",
    "backup_count",
    "use_structlog",
    "structlog_json",
    "structlog_bind",
}


class DocRepoMeta(type):
    """Metaclass for DocRepo classes.

    Gives classes deriving from DocRepo the same default logger in class methods as in instance methods::

        from docrepo.core import DocRepo

        class MyClass(DocRepo):
            def instance_method(self):
                self.logger.info(f"Using logger: {self.logger.name}")  # docrepo.my_module.MyClass

            @classmethod
            def class_method(cls):
                cls.logger.info(f"Using logger: {cls.logger.name}")  # docrepo.my_module.MyClass
    """

    def __init__(cls, name, bases, attr_dict):
        super().__init__(name, bases, attr_dict)
        cls._logger = None
        cls._config = None

    @property
    def logger(cls):
        if cls._logger is None:
            cls._logger = get_logger(cls.unique_name)
        return cls._logger

    @logger.setter
    def logger(cls, new_logger):
        cls._logger = new_logger

    @property
    def unique_name(cls) -> str:
        return cls.__module__ + "." + cls.__name__

    @property
    def config(cls):
        if cls._config is None:
            cls._config = CoreConfig()
        return cls._config

    @config.setter
    def config(cls, new_config):
        cls._config = new_config


class DocRepo(metaclass=DocRepoMeta):
    """Base class for docrepo core classes.

    Adds a config view, a namespaced logger and context-manager support. Logger-related keyword arguments
    (``log_dir``, ``logger_level``, ``use_structlog`` ...) are forwarded to :func:`get_logger`.

    .. code-block:: python

        from docrepo.core import DocRepo

        class Service(DocRepo):
            def run(self):
                self.logger.info("running")

        with Service(stream_level=logging.INFO) as service:
            service.run()
    """

    def __init__(self, suppress: bool = False, *, config_overrides: SettingsLike | None = None, **kwargs):
        """
        Args:
            suppress: Whether to suppress exceptions in context manager use.
            config_overrides: Additional settings applied on top of the default config.
            **kwargs: Logger kwargs, passed to `get_logger`.
        """
        self.config = CoreConfig(config_overrides)
        remaining = {k: v for k, v in kwargs.items() if k not in _LOGGER_KWARGS}
        super().__init__(**remaining)

        self.suppress = suppress
        logger_kwargs = {k: v for k, v in kwargs.items() if k in _LOGGER_KWARGS}
        self.logger = get_logger(self.unique_name, **logger_kwargs)

    @property
    def unique_name(self) -> str:
        return self.__module__ + "." + type(self).__name__

    @property
    def name(self) -> str:
        return type(self).__name__

    def __enter__(self):
        self.logger.debug(f"Initializing {self.name} as a context manager.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.debug(f"Exiting context manager for {self.name}.")
        if exc_type is not None:
            self.logger.exception("Exception occurred", exc_info=(exc_type, exc_val, exc_tb))
            return self.suppress
        return False

    @classmethod
    def autolog(
        cls,
        log_level=logging.DEBUG,
        prefix_formatter: Optional[Callable] = None,
        suffix_formatter: Optional[Callable] = None,
        exception_formatter: Optional[Callable] = None,
        include_duration: bool = True,
    ):
        """Decorator that logs a method call before it runs, after it returns, and when it raises.

        Works on both sync and async methods. Exceptions are logged at ERROR and re-raised unchanged. The wrapped
        method must live on an object with a ``logger`` attribute.

        Args:
            log_level: The level used for the start and finish records.
            prefix_formatter: ``(function, args, kwargs) -> str`` for the start record.
            suffix_formatter: ``(function, result) -> str`` for the finish record.
            exception_formatter: ``(function, error) -> str`` for the failure record.
            include_duration: Append ``duration_ms`` to the finish and failure records.

        Example::

            class Repo(DocRepo):
                @DocRepo.autolog()
                async def count(self, query):
                    ...
        """
        prefix_formatter = ifnone(
            prefix_formatter,
            default=lambda function, args, kwargs: f"Operation {function.__name__} started with args: {args} and kwargs: {kwargs}",
        )
        suffix_formatter = ifnone(
            suffix_formatter,
            default=lambda function, result: f"Operation {function.__name__} completed with result: {result}",
        )
        exception_formatter = ifnone(
            exception_formatter,
            default=lambda function, e: f"Operation {function.__name__} failed with the following error: {e!r}",
        )

        def _with_duration(msg: str, started_at: float) -> str:
            if not include_duration:
                return msg
            return f"{msg} | duration_ms={(time.perf_counter() - started_at) * 1000.0:.2f}"

        def decorator(function):
            if inspect.iscoroutinefunction(function):

                @wraps(function)
                async def wrapper(self, *args, **kwargs):
                    started_at = time.perf_counter()
                    self.logger.log(log_level, prefix_formatter(function, args, kwargs))
                    try:
                        result = await function(self, *args, **kwargs)
                    except Exception as e:
                        self.logger.error(_with_duration(exception_formatter(function, e), started_at))
                        raise
                    self.logger.log(log_level, _with_duration(suffix_formatter(function, result), started_at))
                    return result

            else:

                @wraps(function)
                def wrapper(self, *args, **kwargs):
                    started_at = time.perf_counter()
                    self.logger.log(log_level, prefix_formatter(function, args, kwargs))
                    try:
                        result = function(self, *args, **kwargs)
                    except Exception as e:
                        self.logger.error(_with_duration(exception_formatter(function, e), started_at))
                        raise
                    self.logger.log(log_level, _with_duration(suffix_formatter(function, result), started_at))
                    return result

            return wrapper

        return decorator


class DocRepoABCMeta(DocRepoMeta, ABCMeta):
    """Metaclass combining DocRepoMeta and ABCMeta, so abstract classes can also derive from DocRepo."""

    pass


class DocRepoABC(DocRepo, ABC, metaclass=DocRepoABCMeta):
    """Abstract base class with DocRepo logging, configuration and context management.

    Example:
        from abc import abstractmethod
        from docrepo.core import DocRepoABC

        class Store(DocRepoABC):
            @abstractmethod
            async def get(self, id: str): ...
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
