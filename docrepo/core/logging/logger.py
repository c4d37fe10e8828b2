import logging
import os
from collections import OrderedDict
from logging import Logger
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog

from docrepo.core.config import CoreSettings
from docrepo.core.utils import ifnone


def default_formatter(fmt: Optional[str] = None) -> logging.Formatter:
    """Returns a logging formatter with a default format if none is specified."""
    default_fmt = "[%(asctime)s] %(levelname)s: %(name)s: %(message)s"
    return logging.Formatter(fmt or default_fmt)


def setup_logger(
    name: str = "docrepo",
    *,
    log_dir: Optional[Path] = None,
    logger_level: int = logging.DEBUG,
    stream_level: int = logging.ERROR,
    add_stream_handler: bool = True,
    file_level: int = logging.DEBUG,
    file_mode: str = "a",
    add_file_handler: bool = True,
    propagate: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    use_structlog: Optional[bool] = None,
    structlog_json: Optional[bool] = None,
    structlog_bind: Optional[object] = None,
) -> Logger | structlog.stdlib.BoundLogger:
    """Configure and initialize logging for docrepo components.

    Sets up a rotating file handler and a console handler on the given logger. The log file defaults to
    ``<DOCREPO_DIR_PATHS.LOGGER_DIR>/docrepo.log`` for the root logger and ``.../modules/<name>.log`` for children.

    Args:
        name: Logger name, defaults to "docrepo".
        log_dir: Custom directory for log file.
        logger_level: Overall logger level.
        stream_level: StreamHandler level (e.g., ERROR).
        add_stream_handler: Whether to add a stream handler.
        file_level: FileHandler level (e.g., DEBUG).
        file_mode: Mode for file handler, default is 'a' (append).
        add_file_handler: Whether to add a file handler.
        propagate: Whether the logger should propagate messages to ancestor loggers.
        max_bytes: Maximum size in bytes before rotating log file.
        backup_count: Number of backup files to retain.
        use_structlog: If True, configure and return a structlog BoundLogger. Defaults to
            ``DOCREPO_LOGGER.USE_STRUCTLOG``.
        structlog_json: If True, render JSON; otherwise use the console renderer. Defaults to
            ``DOCREPO_LOGGER.STRUCTLOG_JSON``.
        structlog_bind: Optional dict or callable(name) -> dict of fields bound to the returned logger.

    Returns:
        Logger | structlog.stdlib.BoundLogger: Configured logger instance.
    """
    settings = CoreSettings()
    use_structlog = ifnone(use_structlog, settings.DOCREPO_LOGGER.USE_STRUCTLOG)
    structlog_json = ifnone(structlog_json, settings.DOCREPO_LOGGER.STRUCTLOG_JSON)

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(logger_level)
    logger.propagate = propagate

    child_log_path = f"{name}.log" if name == "docrepo" else os.path.join("modules", f"{name}.log")
    if log_dir:
        log_file_path = os.path.join(log_dir, child_log_path)
    elif use_structlog:
        log_file_path = os.path.join(settings.DOCREPO_DIR_PATHS.STRUCT_LOGGER_DIR, child_log_path)
    else:
        log_file_path = os.path.join(settings.DOCREPO_DIR_PATHS.LOGGER_DIR, child_log_path)

    if add_file_handler:
        os.makedirs(Path(log_file_path).parent, exist_ok=True)

    # structlog renders the full event itself, so handlers only print the message
    formatter = logging.Formatter("%(message)s") if use_structlog else default_formatter()

    if add_stream_handler:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(stream_level)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    if add_file_handler:
        file_handler = RotatingFileHandler(
            filename=str(log_file_path), maxBytes=max_bytes, backupCount=backup_count, mode=file_mode
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not use_structlog:
        return logger

    renderer = structlog.processors.JSONRenderer() if structlog_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _enforce_key_order_processor(["timestamp", "event", "entity", "duration_ms", "level", "logger"]),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    bound_logger = structlog.get_logger(name)
    if structlog_bind is not None:
        bind_dict = structlog_bind(name) if callable(structlog_bind) else dict(structlog_bind)
        if bind_dict:
            bound_logger = bound_logger.bind(**bind_dict)
    return bound_logger


def _enforce_key_order_processor(key_order: list[str]):
    def _processor(_logger, _method_name, event_dict):
        ordered = OrderedDict()
        for key in key_order:
            if key in event_dict:
                ordered[key] = event_dict.pop(key)
        for k in sorted(event_dict.keys()):
            ordered[k] = event_dict[k]
        return ordered

    return _processor


def get_logger(
    name: str | None = "docrepo", use_structlog: bool | None = None, **kwargs
) -> logging.Logger | structlog.stdlib.BoundLogger:
    """
    Create or retrieve a named logger under the ``docrepo`` namespace.

    Child loggers propagate to ``docrepo`` by default and do not get their own stream handler when a parent
    already prints, so errors are not echoed twice.

    Args:
        name (str): The name of the logger. Prefixed with ``docrepo.`` unless it already starts with it.
        use_structlog (bool): Whether to use structured logging. If None, uses config default.
        **kwargs: Additional keyword arguments to be passed to `setup_logger`.

    Returns:
        logging.Logger | structlog.stdlib.BoundLogger: A configured logger instance.

    Example:
        .. code-block:: python

            from docrepo.core.logging.logger import get_logger

            logger = get_logger("database.users")
            logger.info("Repository ready.")
    """
    if not name:
        name = "docrepo"

    full_name = name if name.startswith("docrepo") else f"docrepo.{name}"
    kwargs.setdefault("propagate", True)
    if kwargs["propagate"] and full_name != "docrepo" and logging.getLogger("docrepo").handlers:
        kwargs.setdefault("add_stream_handler", False)
    return setup_logger(full_name, use_structlog=use_structlog, **kwargs)
