"""Tests for the DocRepo base classes."""

import asyncio
import logging
from abc import abstractmethod
from unittest.mock import Mock

import pytest

from docrepo.core import CoreConfig, DocRepo, DocRepoABC, DocRepoMeta


class TestDocRepoMeta:
    def test_unique_name_property(self):
        class Sample(metaclass=DocRepoMeta):
            pass

        assert Sample.unique_name == f"{__name__}.Sample"

    def test_class_logger(self):
        class Sample(metaclass=DocRepoMeta):
            pass

        assert isinstance(Sample.logger, logging.Logger)
        assert Sample.logger.name == f"docrepo.{Sample.unique_name}"

    def test_logger_setter_and_regeneration(self):
        class Sample(metaclass=DocRepoMeta):
            pass

        custom = Mock(spec=logging.Logger)
        Sample.logger = custom
        assert Sample.logger is custom

        Sample.logger = None
        assert isinstance(Sample.logger, logging.Logger)

    def test_class_config(self):
        class Sample(metaclass=DocRepoMeta):
            pass

        assert isinstance(Sample.config, CoreConfig)
        assert Sample.config is Sample.config


class TestDocRepo:
    def test_init(self):
        instance = DocRepo()
        assert instance.name == "DocRepo"
        assert instance.logger.name == "docrepo.core.base.docrepo_base.DocRepo"
        assert isinstance(instance.config, CoreConfig)

    def test_config_overrides(self):
        instance = DocRepo(config_overrides={"DOCREPO_REPOSITORY": {"DEFAULT_ENTITY_NAME": "Order"}})
        assert instance.config.DOCREPO_REPOSITORY.DEFAULT_ENTITY_NAME == "Order"

    def test_logger_kwargs_are_not_forwarded_to_object(self, tmp_path):
        instance = DocRepo(log_dir=tmp_path, logger_level=logging.INFO)
        assert instance.logger.level == logging.INFO

    def test_context_manager(self):
        with DocRepo() as instance:
            assert isinstance(instance, DocRepo)

    def test_context_manager_propagates_exceptions(self):
        with pytest.raises(ValueError):
            with DocRepo():
                raise ValueError("boom")

    def test_context_manager_suppresses_exceptions(self):
        with DocRepo(suppress=True):
            raise ValueError("boom")


class TestAutolog:
    def test_autolog_sync(self, caplog):
        class Service(DocRepo):
            @DocRepo.autolog()
            def add(self, x, y):
                return x + y

        assert Service().add(1, 2) == 3
        assert "Operation add started" in caplog.text
        assert "Operation add completed with result: 3" in caplog.text
        assert "duration_ms=" in caplog.text

    def test_autolog_async(self, caplog):
        class Service(DocRepo):
            @DocRepo.autolog()
            async def add(self, x, y):
                return x + y

        assert asyncio.run(Service().add(2, 3)) == 5
        assert "Operation add completed with result: 5" in caplog.text

    def test_autolog_reraises_and_logs_error(self, caplog):
        class Service(DocRepo):
            @DocRepo.autolog()
            async def fail(self):
                raise KeyError("missing")

        with pytest.raises(KeyError):
            asyncio.run(Service().fail())
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert any("Operation fail failed" in r.getMessage() for r in errors)

    def test_autolog_custom_formatters(self, caplog):
        class Service(DocRepo):
            @DocRepo.autolog(
                prefix_formatter=lambda function, args, kwargs: "begin",
                suffix_formatter=lambda function, result: f"end {result}",
                include_duration=False,
            )
            def double(self, x):
                return 2 * x

        Service().double(4)
        assert "begin" in caplog.text
        assert "end 8" in caplog.text
        assert "duration_ms" not in caplog.text


class TestDocRepoABC:
    def test_abstract_method_enforced(self):
        class Store(DocRepoABC):
            @abstractmethod
            def get(self, id): ...

        with pytest.raises(TypeError):
            Store()

    def test_concrete_subclass(self):
        class Store(DocRepoABC):
            @abstractmethod
            def get(self, id): ...

        class MemoryStore(Store):
            def get(self, id):
                return id

        store = MemoryStore()
        assert store.get("a") == "a"
        assert store.logger.name.endswith("MemoryStore")
