"""Shared fixtures: point every test at a throwaway config directory."""

import os
import tempfile

_SESSION_CONFIG_DIR = tempfile.mkdtemp(prefix="mediaseer-tests-")
os.environ["CONFIG_DIR"] = _SESSION_CONFIG_DIR
os.environ.setdefault("LOG_ROOT", os.path.join(_SESSION_CONFIG_DIR, "log"))
os.environ.setdefault("ENABLE_LOGGING", "false")

import pytest  # noqa: E402

# Settings tabs register themselves on import.
import mediaseer.config.security  # noqa: E402,F401
import mediaseer.config.settings  # noqa: E402,F401
from mediaseer.core.cache import get_metadata_cache  # noqa: E402
from mediaseer.core.config import config as app_config  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG_DIR", str(tmp_path))
    app_config.refresh()
    get_metadata_cache().clear()
    yield tmp_path
    app_config.refresh()
    get_metadata_cache().clear()
