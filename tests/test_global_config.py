import json

import pytest

import nodelauncher.settings as settings
from nodelauncher.local.global_config import GlobalSync


@pytest.fixture
def overrides_path(isolated_settings, monkeypatch):
    path = isolated_settings / "overrides.json"
    monkeypatch.setattr(settings, "OVERRIDES_JSON_PATH", path)
    return path


def test_defaults_come_from_settings(overrides_path):
    config = GlobalSync()
    assert config.DOWNLOAD_MAX_RETRIES == 3
    assert config.get("MISSING", "fallback") == "fallback"


def test_overrides_file_only_applies_modifiable_keys(overrides_path):
    overrides_path.parent.mkdir(parents=True, exist_ok=True)
    overrides_path.write_text(json.dumps({"READINESS_TIMEOUT": 30, "DOWNLOADS_DIR": "/elsewhere"}))
    config = GlobalSync()
    assert config.READINESS_TIMEOUT == 30
    assert config.DOWNLOADS_DIR == settings.DOWNLOADS_DIR


def test_update_setting_coerces_and_persists(overrides_path):
    config = GlobalSync()

    ok, _ = config.update_setting("DOWNLOAD_MAX_RETRIES", "5")
    assert ok
    assert config.DOWNLOAD_MAX_RETRIES == 5
    assert json.loads(overrides_path.read_text())["DOWNLOAD_MAX_RETRIES"] == 5
    assert GlobalSync().DOWNLOAD_MAX_RETRIES == 5

    ok, message = config.update_setting("DOWNLOAD_RETRY_DELAY", "soon")
    assert not ok
    assert "Could not convert" in message


def test_update_setting_rejects_fixed_settings(overrides_path):
    config = GlobalSync()
    ok, message = config.update_setting("DOWNLOADS_DIR", "/tmp")
    assert not ok
    assert "not modifiable" in message
    assert not overrides_path.exists()
