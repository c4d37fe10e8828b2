from docrepo.core.utils import as_bool, first_not_none, ifnone
from docrepo.core.config import Config, CoreConfig, CoreSettings
from docrepo.core.base import DocRepo, DocRepoABC, DocRepoMeta
from docrepo.core.logging.logger import get_logger, setup_logger

setup_logger()  # Initialize the default logger

__all__ = [
    "as_bool",
    "Config",
    "CoreConfig",
    "CoreSettings",
    "DocRepo",
    "DocRepoABC",
    "DocRepoMeta",
    "first_not_none",
    "get_logger",
    "ifnone",
    "setup_logger",
]
