"""Tests for configuration helpers exposed to the CLI."""

from __future__ import annotations

import os

import pytest

from cafesum import config


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean configuration environment."""

    env_path = tmp_path / ".env"
    monkeypatch.setattr(config, "_ENV_PATH", env_path)
    monkeypatch.setattr(config, "_settings", None)

    for key in list(os.environ):
        if key.startswith("CAFESUM_"):
            monkeypatch.delenv(key, raising=False)

    yield

    for key in list(os.environ):
        if key.startswith("CAFESUM_"):
            os.environ.pop(key, None)


def test_list_environment_settings_reflects_defaults():
    entries = {entry.field: entry for entry in config.list_environment_settings()}

    assert entries["capability_id"].env_name == "CAFESUM_CAPABILITY_ID"
    assert entries["reserved_tokens"].default == 3_000
    assert entries["capability_limits"].value["mixtral-8x7b-32768"] == 32_768


def test_capability_limit_falls_back_to_default():
    settings = config.Settings()

    assert settings.capability_limit("llama-3.1-8b-instant") == 128_000
    assert settings.capability_limit("unknown-model") == settings.default_capability_limit


def test_update_environment_setting_persists_and_reloads():
    updated = config.update_environment_setting("reserved_tokens", "2500")

    assert updated.reserved_tokens == 2500
    assert config.get_settings().reserved_tokens == 2500
    assert os.environ["CAFESUM_RESERVED_TOKENS"] == "2500"

    env_contents = config._ENV_PATH.read_text().strip().splitlines()  # type: ignore[attr-defined]
    assert "CAFESUM_RESERVED_TOKENS=2500" in env_contents


def test_invalid_value_is_rejected_and_not_persisted():
    with pytest.raises(config.EnvironmentSettingError):
        config.update_environment_setting("reserved_tokens", "lots")

    assert "CAFESUM_RESERVED_TOKENS" not in os.environ
    assert not config._ENV_PATH.exists()  # type: ignore[attr-defined]


def test_unknown_setting_is_rejected():
    with pytest.raises(config.EnvironmentSettingError):
        config.update_environment_setting("not_a_setting", "1")


def test_clear_environment_setting_removes_override():
    config.update_environment_setting("capability_id", "mixtral-8x7b-32768")
    cleared = config.clear_environment_setting("capability_id")

    assert cleared.capability_id == config.Settings().capability_id
    assert "CAFESUM_CAPABILITY_ID" not in os.environ
    assert not config._ENV_PATH.exists()  # type: ignore[attr-defined]
