"""Small helpers shared across the docrepo packages."""

from .checks import as_bool, first_not_none, ifnone

__all__ = ["as_bool", "first_not_none", "ifnone"]
