from unittest.mock import patch

import pytest
from pydantic import BaseModel, SecretStr

from docrepo.core.config import Config, CoreConfig, CoreSettings
from docrepo.core.config.config import DOCREPO_MONGO, DOCREPO_REPOSITORY, _AttrView, load_ini_as_dict, load_ini_settings


class MongoSection(BaseModel):
    URI: SecretStr = SecretStr("mongodb://user:pass@db:27017")
    DB_NAME: str = "inventory"


class Settings(BaseModel):
    DOCREPO_MONGO: MongoSection = MongoSection()


class TestConfig:
    """Test cases for the Config class."""

    def test_config_init_empty(self):
        config = Config()
        assert isinstance(config, dict)
        assert len(config) == 0

    def test_config_init_with_list(self):
        """Later layers override earlier ones."""
        config = Config([{"key1": "value1"}, {"key2": "value2", "key1": "override"}])
        assert config["key1"] == "override"
        assert config["key2"] == "value2"

    def test_config_attr_access(self):
        config = Config({"section": {"key": "value"}})
        assert isinstance(config.section, _AttrView)
        assert config.section.key == "value"

    def test_config_attr_access_missing(self):
        config = Config()
        with pytest.raises(AttributeError, match="No such attribute: missing"):
            config.missing

    def test_values_are_stringified(self):
        config = Config({"section": {"count": 10, "flag": True}})
        assert config.section.count == "10"
        assert config.section.flag == "True"

    def test_deep_update(self):
        result = Config._deep_update({"a": {"b": 1, "c": 2}}, {"a": {"b": 3, "d": 4}})
        assert result == {"a": {"b": 3, "c": 2, "d": 4}}

    def test_secret_masking(self):
        config = Config(Settings(), apply_env=False)
        assert config.DOCREPO_MONGO.URI == Config.MASK
        assert config.get_secret("DOCREPO_MONGO", "URI") == "mongodb://user:pass@db:27017"
        assert config.secret_paths() == ["DOCREPO_MONGO.URI"]

    def test_to_revealed(self):
        revealed = Config(Settings(), apply_env=False).to_revealed()
        assert revealed["DOCREPO_MONGO"]["URI"] == "mongodb://user:pass@db:27017"

    def test_clone_with_overrides_keeps_secrets_masked(self):
        config = Config(Settings(), apply_env=False)
        clone = config.clone_with_overrides({"DOCREPO_MONGO": {"DB_NAME": "other"}})
        assert clone.DOCREPO_MONGO.DB_NAME == "other"
        assert clone.DOCREPO_MONGO.URI == Config.MASK
        assert clone.get_secret("DOCREPO_MONGO", "URI") == "mongodb://user:pass@db:27017"
        assert config.DOCREPO_MONGO.DB_NAME == "inventory"

    def test_clone_with_overrides_replaces_secret(self):
        config = Config(Settings(), apply_env=False)
        clone = config.clone_with_overrides({"DOCREPO_MONGO": {"URI": "mongodb://other:27017"}})
        assert clone.DOCREPO_MONGO.URI == Config.MASK
        assert clone.get_secret("DOCREPO_MONGO", "URI") == "mongodb://other:27017"

    def test_env_overrides_existing_sections_only(self):
        env = {"DOCREPO_MONGO__DB_NAME": "from_env", "UNRELATED__KEY": "ignored"}
        with patch.dict("os.environ", env):
            config = Config({"DOCREPO_MONGO": {"DB_NAME": "inventory"}})
        assert config.DOCREPO_MONGO.DB_NAME == "from_env"
        assert "UNRELATED" not in config

    def test_apply_env_disabled(self):
        with patch.dict("os.environ", {"DOCREPO_MONGO__DB_NAME": "from_env"}):
            config = Config({"DOCREPO_MONGO": {"DB_NAME": "inventory"}}, apply_env=False)
        assert config.DOCREPO_MONGO.DB_NAME == "inventory"


class TestCoreConfig:
    def test_core_config_sections(self):
        config = CoreConfig()
        for section in ("DOCREPO_DIR_PATHS", "DOCREPO_LOGGER", "DOCREPO_MONGO", "DOCREPO_REPOSITORY"):
            assert section in config
        assert config.DOCREPO_MONGO.URI == Config.MASK

    def test_core_config_overrides(self):
        config = CoreConfig({"DOCREPO_REPOSITORY": {"DEFAULT_PAGE_LIMIT": 25}})
        assert config.DOCREPO_REPOSITORY.DEFAULT_PAGE_LIMIT == "25"
        assert config.DOCREPO_REPOSITORY.DEFAULT_ENTITY_NAME == "Resource"


class TestCoreSettings:
    def test_sections_are_typed_and_filled_from_ini(self):
        assert CoreSettings.model_fields["DOCREPO_MONGO"].annotation is DOCREPO_MONGO
        assert CoreSettings.model_fields["DOCREPO_REPOSITORY"].is_required()

        settings = CoreSettings()

        assert isinstance(settings.DOCREPO_REPOSITORY, DOCREPO_REPOSITORY)
        ini_limit = load_ini_settings()["DOCREPO_REPOSITORY"]["MAX_PAGE_LIMIT"]
        assert settings.DOCREPO_REPOSITORY.MAX_PAGE_LIMIT == int(ini_limit)

    def test_defaults_from_ini(self):
        settings = CoreSettings()
        assert settings.DOCREPO_REPOSITORY.DEFAULT_ENTITY_NAME == "Resource"
        assert settings.DOCREPO_REPOSITORY.DEFAULT_PAGE_LIMIT == 10
        assert settings.DOCREPO_REPOSITORY.ORDERED_BULK_WRITES is True
        assert isinstance(settings.DOCREPO_MONGO.URI, SecretStr)

    def test_env_nested_override(self):
        with patch.dict("os.environ", {"DOCREPO_MONGO__DB_NAME": "from_env"}):
            settings = CoreSettings()
        assert settings.DOCREPO_MONGO.DB_NAME == "from_env"

    def test_init_kwargs_win(self):
        settings = CoreSettings(DOCREPO_LOGGER={"USE_STRUCTLOG": True, "STRUCTLOG_JSON": False})
        assert settings.DOCREPO_LOGGER.USE_STRUCTLOG is True


def test_load_ini_as_dict(tmp_path):
    ini = tmp_path / "config.ini"
    ini.write_text("[docrepo_mongo]\ndb_name = inventory\nroot = ~/data\n")
    result = load_ini_as_dict(ini)
    assert result["DOCREPO_MONGO"]["DB_NAME"] == "inventory"
    assert not result["DOCREPO_MONGO"]["ROOT"].startswith("~")


def test_load_ini_missing_file(tmp_path):
    assert load_ini_as_dict(tmp_path / "missing.ini") == {}
