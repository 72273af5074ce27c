"""
Filesystem locations for persisted state.

Resolves the per-user cache and config roots used by the pricing cache and
the report config file.
"""

import os
import sys
from pathlib import Path
from typing import Mapping, Optional

APP_DIR_NAME = "llm-usage-metrics"
PRICING_CACHE_FILE_NAME = "litellm-pricing-cache.json"
CONFIG_FILE_NAME = "config.yaml"


def get_user_cache_root(
    env: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return the user cache root directory.

    ``XDG_CACHE_HOME`` wins, then ``LOCALAPPDATA`` on Windows, then
    ``~/.cache``.
    """
    env = os.environ if env is None else env
    platform = sys.platform if platform is None else platform

    xdg_cache_dir = env.get("XDG_CACHE_HOME")
    if xdg_cache_dir:
        return Path(xdg_cache_dir)

    if platform == "win32":
        local_app_data = env.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data)

    return (home or Path.home()) / ".cache"


def get_user_config_root(
    env: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return the user config root directory (XDG, APPDATA, ``~/.config``)."""
    env = os.environ if env is None else env
    platform = sys.platform if platform is None else platform

    xdg_config_dir = env.get("XDG_CONFIG_HOME")
    if xdg_config_dir:
        return Path(xdg_config_dir)

    if platform == "win32":
        app_data = env.get("APPDATA")
        if app_data:
            return Path(app_data)

    return (home or Path.home()) / ".config"


def get_default_pricing_cache_path() -> Path:
    return get_user_cache_root() / APP_DIR_NAME / PRICING_CACHE_FILE_NAME


def get_default_config_path() -> Path:
    return get_user_config_root() / APP_DIR_NAME / CONFIG_FILE_NAME
