import configparser
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union, get_args, get_origin

from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings


class DOCREPO_DIR_PATHS(BaseModel):
    ROOT: str = "~/.cache/docrepo"
    LOGGER_DIR: str = "~/.cache/docrepo/logs"
    STRUCT_LOGGER_DIR: str = "~/.cache/docrepo/structlogs"


class DOCREPO_LOGGER(BaseModel):
    USE_STRUCTLOG: bool = False
    STRUCTLOG_JSON: bool = True


class DOCREPO_MONGO(BaseModel):
    URI: SecretStr = SecretStr("mongodb://localhost:27017")
    DB_NAME: str = "docrepo"
    APP_NAME: str = "docrepo"
    SERVER_SELECTION_TIMEOUT_MS: int = 5000
    VERIFY_ON_CONNECT: bool = True


class DOCREPO_REPOSITORY(BaseModel):
    DEFAULT_ENTITY_NAME: str = "Resource"
    DEFAULT_PAGE_LIMIT: int = 10
    MAX_PAGE_LIMIT: int = 1000
    DEFAULT_SORT_FIELD: str = "created_at"
    ORDERED_BULK_WRITES: bool = True
    TIMESTAMPS: bool = True


def load_ini_as_dict(ini_path: Path) -> Dict[str, Any]:
    """
    Load and parse an INI file into a nested dictionary with normalized keys.

    Sections and keys are converted to uppercase for uniform access. Tilde (`~`)
    in values is expanded to the user home directory.

    Args:
        ini_path (Path): Path to the `.ini` configuration file.

    Returns:
        Dict[str, Any]: A dictionary where each section is a key mapped to another
        dictionary of key-value pairs from that section.

    Example:
        .. code-block:: ini

            [DOCREPO_MONGO]
            DB_NAME = inventory

        .. code-block:: python

            config = load_ini_as_dict(Path("config.ini"))
            print(config["DOCREPO_MONGO"]["DB_NAME"])
    """
    if not ini_path.exists():
        return {}

    parser = configparser.ConfigParser(interpolation=configparser.ExtendedInterpolation())
    parser.optionxform = str
    parser.read(ini_path)

    result = {}
    for section in parser.sections():
        result[section.upper()] = {
            key.upper(): os.path.expanduser(value) if value.startswith("~") else value
            for key, value in parser[section].items()
        }
    return result


def load_ini_settings() -> Dict[str, Any]:
    return load_ini_as_dict(Path(__file__).parent / "config.ini")


class CoreSettings(BaseSettings):
    """Process settings for docrepo.

    Values are resolved from constructor kwargs, then environment variables (nested with ``__``, e.g.
    ``DOCREPO_MONGO__DB_NAME=inventory``), then a ``.env`` file, then the packaged ``config.ini``.
    """

    DOCREPO_DIR_PATHS: DOCREPO_DIR_PATHS
    DOCREPO_LOGGER: DOCREPO_LOGGER
    DOCREPO_MONGO: DOCREPO_MONGO
    DOCREPO_REPOSITORY: DOCREPO_REPOSITORY

    model_config = {
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _expand_tilde(obj):
            if isinstance(obj, str):
                return os.path.expanduser(obj) if obj.startswith("~") else obj
            if isinstance(obj, dict):
                return {k: _expand_tilde(v) for k, v in obj.items()}
            return obj

        def env_settings_expanded():
            return _expand_tilde(env_settings())

        return (
            init_settings,
            env_settings_expanded,
            dotenv_settings,
            load_ini_settings,
            file_secret_settings,
        )


SettingsLike = Union[
    Dict[str, Any],
    List[Union[Dict[str, Any], BaseSettings, BaseModel]],
    BaseSettings,
    BaseModel,
    None,
]


class _AttrView:
    """Attribute-access wrapper around a nested mapping, so ``cfg.SECTION.KEY`` works."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data

    def __getattr__(self, name: str):
        if name in self._data:
            return _wrap(self._data[name])
        raise AttributeError(f"No such attribute: {name}")

    def __getitem__(self, key: str):
        return _wrap(self._data[key])

    def __repr__(self) -> str:
        return f"_AttrView({self._data!r})"


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return _AttrView(value)
    if isinstance(value, list):
        return [_AttrView(v) if isinstance(v, dict) else v for v in value]
    return value


class Config(dict):
    """
    Layered configuration for docrepo components.

    Merges any number of dicts, ``BaseModel`` or ``BaseSettings`` objects (later entries win), overlays
    ``SECTION__KEY`` environment variables, and masks every ``SecretStr`` field. Masked values remain
    reachable through :meth:`get_secret`.

    Args:
        extra_settings: A dict, ``BaseModel``, ``BaseSettings``, or a list of any of these.
        apply_env: Whether to overlay environment variables after merging.

    Example:
        >>> from docrepo.core.config import Config, CoreSettings
        >>> config = Config(CoreSettings())
        >>> config.DOCREPO_MONGO.URI
        '********'
        >>> config.get_secret("DOCREPO_MONGO", "URI")
        'mongodb://localhost:27017'
    """

    MASK = "********"

    def __init__(self, extra_settings: SettingsLike = None, *, apply_env: bool = True):
        self._secret_paths: set[Tuple[str, ...]] = set()
        self._secrets: Dict[Tuple[str, ...], str] = {}

        merged: Dict[str, Any] = {}
        for layer in self._normalize(extra_settings):
            merged = self._deep_update(merged, layer)

        if apply_env:
            merged = self._apply_env_overrides(merged)

        super().__init__(self._stringify_and_mask(merged))

    def __getattr__(self, name: str):
        if name in self:
            return _wrap(self[name])
        raise AttributeError(f"No such attribute: {name}")

    def _normalize(self, extra_settings: SettingsLike) -> List[Dict[str, Any]]:
        if extra_settings is None:
            return []
        items = extra_settings if isinstance(extra_settings, list) else [extra_settings]
        layers: List[Dict[str, Any]] = []
        for item in items:
            if isinstance(item, (BaseSettings, BaseModel)):
                self._secret_paths.update(self._collect_secret_paths(type(item)))
                layers.append(item.model_dump())
            elif isinstance(item, dict):
                layers.append(item)
        return layers

    def clone_with_overrides(self, *overrides: SettingsLike) -> "Config":
        """Return a new Config with overrides applied on top of this one; secrets stay reachable."""
        clone = Config(apply_env=False)
        clone._secret_paths = set(self._secret_paths)
        merged = self.to_revealed()
        for override in overrides:
            for layer in clone._normalize(override):
                merged = clone._deep_update(merged, layer)
        dict.update(clone, clone._stringify_and_mask(merged))
        return clone

    def get_secret(self, *path: str) -> Optional[str]:
        """Retrieve a secret by path components, e.g. ``get_secret("DOCREPO_MONGO", "URI")``."""
        return self._secrets.get(tuple(path))

    def secret_paths(self) -> List[str]:
        """Return dotted paths of fields considered secrets."""
        return sorted(".".join(p) for p in self._secret_paths)

    def to_revealed(self) -> Dict[str, Any]:
        """Return a plain dict copy with masked values replaced by the real secrets."""
        data = deepcopy(dict(self))
        for path, value in self._secrets.items():
            node = data
            for key in path[:-1]:
                node = node.setdefault(key, {})
            node[path[-1]] = value
        return data

    @staticmethod
    def _deep_update(base: dict, override: dict) -> dict:
        for k, v in (override or {}).items():
            if isinstance(v, dict) and isinstance(base.get(k), dict):
                base[k] = Config._deep_update(base.get(k, {}), v)
            else:
                base[k] = v
        return base

    @staticmethod
    def _apply_env_overrides(base: dict, delimiter: str = "__") -> dict:
        result = deepcopy(base)
        for env_key, env_value in os.environ.items():
            if delimiter not in env_key:
                continue
            parts = [p.strip().upper() for p in env_key.split(delimiter) if p.strip()]
            # Only overlay sections that already exist, unrelated FOO__BAR variables are ignored.
            if len(parts) < 2 or parts[0] not in result:
                continue
            node = result
            for key in parts[:-1]:
                if not isinstance(node.get(key), dict):
                    node[key] = {}
                node = node[key]
            node[parts[-1]] = env_value
        return result

    def _stringify_and_mask(self, data: Dict[str, Any]) -> Dict[str, Any]:
        def convert(v: Any, path: Tuple[str, ...]):
            if isinstance(v, SecretStr):
                self._secrets[path] = v.get_secret_value()
                return self.MASK
            if isinstance(v, dict):
                return {k: convert(x, path + (k,)) for k, x in v.items()}
            if isinstance(v, (list, tuple, set)):
                return [convert(x, path) for x in v]
            sval = str(v)
            if path in self._secret_paths:
                if sval != self.MASK:
                    self._secrets[path] = sval
                return self.MASK
            return os.path.expanduser(sval) if sval.startswith("~") else sval

        return convert(data, ())

    def _collect_secret_paths(self, model_cls: type, prefix: Tuple[str, ...] = ()) -> set[Tuple[str, ...]]:
        paths: set[Tuple[str, ...]] = set()
        for name, field in getattr(model_cls, "__pydantic_fields__", {}).items():
            ann = field.annotation
            candidates = get_args(ann) if get_origin(ann) is Union else (ann,)
            if any(a is SecretStr for a in candidates):
                paths.add(prefix + (name,))
                continue
            for a in candidates:
                if isinstance(a, type) and issubclass(a, BaseModel):
                    paths.update(self._collect_secret_paths(a, prefix + (name,)))
                    break
        return paths


class CoreConfig(Config):
    """
    Config that always starts from :class:`CoreSettings`.

    Usage:
        from docrepo.core.config import CoreConfig
        cfg = CoreConfig()  # CoreSettings (env + .env + config.ini)
        cfg = CoreConfig({"DOCREPO_MONGO": {"DB_NAME": "inventory"}})

    Extra overrides are applied on top of CoreSettings. Env is not re-applied at the Config layer, since
    CoreSettings already resolved it.
    """

    def __init__(self, extra_settings: SettingsLike = None):
        if extra_settings is None:
            extras: List[Any] = [CoreSettings()]
        elif isinstance(extra_settings, list):
            extras = [CoreSettings()] + extra_settings
        else:
            extras = [CoreSettings(), extra_settings]
        super().__init__(extras, apply_env=False)
