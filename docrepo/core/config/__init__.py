"""
Configuration for docrepo.

Provides the typed process settings (``CoreSettings``) and the layered, secret-masking ``Config`` view used by
every docrepo component.
"""

from docrepo.core.config.config import Config, CoreConfig, CoreSettings, SettingsLike

__all__ = ["Config", "CoreConfig", "CoreSettings", "SettingsLike"]
