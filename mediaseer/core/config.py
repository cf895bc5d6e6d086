"""Runtime configuration lookups with per-user overrides."""

import os
import sqlite3
import threading
from typing import Any, Callable, Dict, Optional

from mediaseer.core.logger import setup_logger
from mediaseer.core.settings_registry import find_field, list_settings_tabs, load_config_file

logger = setup_logger(__name__)


def _default_user_settings_loader(user_id: int) -> Dict[str, Any]:
    from mediaseer.core.user_db import UserDB, get_db_path

    path = get_db_path()
    if not os.path.exists(path):
        return {}
    try:
        return UserDB(path).get_user_settings(user_id)
    except sqlite3.Error as e:
        logger.debug(f"User settings lookup failed for user_id={user_id}: {e}")
        return {}


class Config:
    """Resolves settings keys across all registered tabs.

    Global values are cached until ``refresh()``; per-user overrides are read
    from the user settings table on each call and only apply to fields marked
    ``user_overridable``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, Any]] = None
        self._user_settings_loader: Callable[[int], Dict[str, Any]] = _default_user_settings_loader

    def set_user_settings_loader(self, loader: Callable[[int], Dict[str, Any]]) -> None:
        self._user_settings_loader = loader

    def refresh(self) -> None:
        with self._lock:
            self._cache = None

    def _load_all(self) -> Dict[str, Any]:
        with self._lock:
            if self._cache is None:
                merged: Dict[str, Any] = {}
                for tab in list_settings_tabs():
                    merged.update(load_config_file(tab.name))
                self._cache = merged
            return self._cache

    def get(self, key: str, default: Any = None, user_id: Optional[int] = None) -> Any:
        if user_id is not None:
            _, settings_field = find_field(key)
            if settings_field is not None and settings_field.user_overridable:
                overrides = self._user_settings_loader(user_id)
                if key in overrides and overrides[key] is not None:
                    return overrides[key]

        values = self._load_all()
        if key in values:
            return values[key]
        return default


config = Config()
