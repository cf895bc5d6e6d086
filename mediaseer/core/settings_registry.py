"""Settings tab registry and JSON persistence.

Each settings tab is declared with ``@register_settings`` and a list of field
descriptors. Values live in ``CONFIG_DIR/settings/<tab>.json``; fields that
support it may be overridden by an environment variable of the same name.
"""

import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from mediaseer.core.logger import setup_logger

logger = setup_logger(__name__)

_lock = threading.RLock()


# =============================================================================
# Field descriptors
# =============================================================================


@dataclass
class BaseField:
    key: str
    label: str = ""
    description: str = ""
    default: Any = None
    env_supported: bool = True
    user_overridable: bool = False
    required: bool = False
    show_when: Optional[Dict[str, Any]] = None

    field_type = "base"

    def coerce(self, value: Any) -> Any:
        return value

    def from_env(self, raw: str) -> Any:
        return self.coerce(raw)

    def serialize(self) -> Dict[str, Any]:
        payload = {
            "key": self.key,
            "type": self.field_type,
            "label": self.label,
            "description": self.description,
            "default": self.default,
            "envSupported": self.env_supported,
            "userOverridable": self.user_overridable,
        }
        if self.required:
            payload["required"] = True
        if self.show_when is not None:
            payload["showWhen"] = self.show_when
        return payload


@dataclass
class TextField(BaseField):
    placeholder: str = ""
    default: Any = ""

    field_type = "text"

    def coerce(self, value: Any) -> Any:
        if value is None:
            return ""
        return str(value).strip()


@dataclass
class PasswordField(TextField):
    field_type = "password"

    def serialize(self) -> Dict[str, Any]:
        payload = super().serialize()
        payload["default"] = ""
        return payload


@dataclass
class NumberField(BaseField):
    default: Any = 0
    min_value: Optional[int] = None
    max_value: Optional[int] = None

    field_type = "number"

    def coerce(self, value: Any) -> Any:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{self.key} must be a number")
        if self.min_value is not None and parsed < self.min_value:
            parsed = self.min_value
        if self.max_value is not None and parsed > self.max_value:
            parsed = self.max_value
        return parsed


@dataclass
class CheckboxField(BaseField):
    default: Any = False

    field_type = "checkbox"

    def coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on", "y"}
        return bool(value)


@dataclass
class SelectField(BaseField):
    options: List[Dict[str, Any]] = field(default_factory=list)

    field_type = "select"

    def coerce(self, value: Any) -> Any:
        allowed = {option.get("value") for option in self.options}
        if allowed and value not in allowed:
            raise ValueError(f"{self.key} must be one of: {', '.join(str(v) for v in allowed)}")
        return value

    def serialize(self) -> Dict[str, Any]:
        payload = super().serialize()
        payload["options"] = self.options
        return payload


@dataclass
class TagListField(BaseField):
    default: Any = field(default_factory=list)

    field_type = "tags"

    def coerce(self, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            delimiter = "," if "," in value else " "
            return [part.strip() for part in value.split(delimiter) if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(part).strip() for part in value if str(part).strip()]
        raise ValueError(f"{self.key} must be a list")


@dataclass
class CustomComponentField(BaseField):
    """Structured value edited by a dedicated UI component (lists of rows etc.)."""

    component: str = ""
    env_supported: bool = False

    field_type = "custom"

    def serialize(self) -> Dict[str, Any]:
        payload = super().serialize()
        payload["component"] = self.component
        return payload


@dataclass
class ActionButton(BaseField):
    callback: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    style: str = "default"
    env_supported: bool = False

    field_type = "action"

    def serialize(self) -> Dict[str, Any]:
        payload = super().serialize()
        payload.pop("default", None)
        payload["style"] = self.style
        return payload


@dataclass
class SettingsTab:
    name: str
    display_name: str
    icon: str = "settings"
    order: int = 100
    fields: List[BaseField] = field(default_factory=list)

    @property
    def value_fields(self) -> List[BaseField]:
        return [f for f in self.fields if not isinstance(f, ActionButton)]

    def get_field(self, key: str) -> Optional[BaseField]:
        for f in self.fields:
            if f.key == key:
                return f
        return None


_tabs: Dict[str, SettingsTab] = {}
_on_save_handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {}


def register_settings(name: str, display_name: str, icon: str = "settings", order: int = 100):
    """Register a settings tab whose fields are returned by the decorated function."""

    def decorator(fn: Callable[[], List[BaseField]]):
        fields = fn()
        _tabs[name] = SettingsTab(
            name=name,
            display_name=display_name,
            icon=icon,
            order=order,
            fields=list(fields),
        )
        return fn

    return decorator


def register_on_save(name: str, handler: Callable[[Dict[str, Any]], Dict[str, Any]]) -> None:
    """Register a validator run before a tab's values are persisted.

    The handler returns ``{"error": bool, "message"?: str, "values": dict}``.
    """
    _on_save_handlers[name] = handler


def get_settings_tab(name: str) -> Optional[SettingsTab]:
    return _tabs.get(name)


def list_settings_tabs() -> List[SettingsTab]:
    return sorted(_tabs.values(), key=lambda tab: (tab.order, tab.name))


def find_field(key: str) -> tuple[Optional[SettingsTab], Optional[BaseField]]:
    """Locate the tab and field declaring a settings key."""
    for tab in _tabs.values():
        found = tab.get_field(key)
        if found is not None and not isinstance(found, ActionButton):
            return tab, found
    return None, None


# =============================================================================
# Persistence
# =============================================================================


def _settings_dir() -> Path:
    return Path(os.environ.get("CONFIG_DIR", "/config")) / "settings"


def _get_config_file_path(name: str) -> Path:
    return _settings_dir() / f"{name}.json"


def _ensure_config_dir(name: str) -> Path:
    path = _get_config_file_path(name)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _read_json_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to read settings file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(tab: SettingsTab, values: Dict[str, Any]) -> Dict[str, Any]:
    for f in tab.value_fields:
        if not f.env_supported:
            continue
        raw = os.environ.get(f.key)
        if raw is None or raw == "":
            continue
        try:
            values[f.key] = f.from_env(raw)
        except ValueError as e:
            logger.warning(f"Ignoring invalid environment override for {f.key}: {e}")
    return values


def get_env_locked_keys(name: str) -> List[str]:
    """Keys of a tab currently pinned by environment variables."""
    tab = _tabs.get(name)
    if tab is None:
        return []
    return [
        f.key for f in tab.value_fields
        if f.env_supported and os.environ.get(f.key) not in (None, "")
    ]


def load_config_file(name: str) -> Dict[str, Any]:
    """Load a settings tab: defaults, then the JSON file, then env overrides."""
    tab = _tabs.get(name)
    values: Dict[str, Any] = {}
    if tab is not None:
        for f in tab.value_fields:
            default = f.default
            values[f.key] = list(default) if isinstance(default, list) else default

    with _lock:
        values.update(_read_json_file(_get_config_file_path(name)))

    if tab is not None:
        values = _apply_env_overrides(tab, values)
    return values


def save_config_file(name: str, values: Dict[str, Any]) -> None:
    """Merge values into the tab's JSON file and write it atomically."""
    with _lock:
        path = _ensure_config_dir(name)
        existing = _read_json_file(path)
        existing.update(values)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(existing, f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)


def update_settings(name: str, values: Dict[str, Any]) -> Dict[str, Any]:
    """Validate, run the on-save handler and persist values for a tab."""
    tab = _tabs.get(name)
    if tab is None:
        return {"success": False, "message": f"Unknown settings tab: {name}", "updated": []}

    locked = set(get_env_locked_keys(name))
    normalized: Dict[str, Any] = {}
    errors: List[str] = []
    for key, value in values.items():
        f = tab.get_field(key)
        if f is None or isinstance(f, ActionButton):
            errors.append(f"Unknown setting: {key}")
            continue
        if key in locked:
            errors.append(f"{key} is set by an environment variable")
            continue
        if isinstance(f, PasswordField) and value == "":
            # Blank password fields keep the stored secret.
            continue
        try:
            normalized[key] = f.coerce(value)
        except ValueError as e:
            errors.append(str(e))

    if errors:
        return {"success": False, "message": "; ".join(errors), "updated": []}

    handler = _on_save_handlers.get(name)
    if handler is not None:
        result = handler(normalized)
        if result.get("error"):
            return {
                "success": False,
                "message": result.get("message") or "Validation failed",
                "updated": [],
            }
        normalized = result.get("values", normalized)

    if not normalized:
        return {"success": True, "message": "No changes to save", "updated": []}

    try:
        save_config_file(name, normalized)
    except OSError as e:
        logger.error(f"Failed to save settings for '{name}': {e}")
        return {"success": False, "message": f"Failed to save settings: {e}", "updated": []}

    try:
        from mediaseer.core.config import config as app_config

        app_config.refresh()
    except Exception as e:
        logger.debug(f"Config refresh after save failed: {e}")

    updated = sorted(normalized)
    logger.info(f"Settings updated for '{name}': {', '.join(updated)}")
    return {"success": True, "message": "Settings saved", "updated": updated}


def serialize_tab(tab: SettingsTab, include_values: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "name": tab.name,
        "displayName": tab.display_name,
        "icon": tab.icon,
        "order": tab.order,
        "fields": [f.serialize() for f in tab.fields],
    }
    if include_values:
        values = load_config_file(tab.name)
        for f in tab.fields:
            if isinstance(f, PasswordField) and values.get(f.key):
                values[f.key] = ""
        payload["values"] = {f.key: values.get(f.key) for f in tab.value_fields}
        payload["envLocked"] = get_env_locked_keys(tab.name)
    return payload


def serialize_all_settings(include_values: bool = True) -> List[Dict[str, Any]]:
    return [serialize_tab(tab, include_values=include_values) for tab in list_settings_tabs()]


def execute_action(name: str, action_key: str, current_values: Dict[str, Any]) -> Dict[str, Any]:
    """Run a tab's action button callback with unsaved form values."""
    tab = _tabs.get(name)
    if tab is None:
        return {"success": False, "message": f"Unknown settings tab: {name}"}
    action = tab.get_field(action_key)
    if not isinstance(action, ActionButton) or action.callback is None:
        return {"success": False, "message": f"Unknown action: {action_key}"}
    return action.callback(current_values or {})
