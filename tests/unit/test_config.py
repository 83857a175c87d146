# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from deskpilot.config import BUILTIN_PROFILES, get_profile, load_settings
from deskpilot.core.exceptions import ConfigurationError
from deskpilot.core.types import Settings


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DESKPILOT_SETTINGS", raising=False)


def _write(path: Path, data: dict) -> Path:
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


def test_load_settings_valid(tmp_path):
    settings_path = _write(
        tmp_path / "custom.yaml",
        {
            "active_profile": "slowlink",
            "profiles": {
                "slowlink": {"provider_timeout_s": 90, "lifecycle_conflict": "wait"},
            },
        },
    )

    settings = load_settings(config_path=settings_path)

    assert isinstance(settings, Settings)
    assert settings.active_profile == "slowlink"
    assert settings.profiles["slowlink"].name == "slowlink"
    assert settings.profiles["slowlink"].provider_timeout_s == 90
    assert settings.profiles["slowlink"].lifecycle_conflict == "wait"


def test_builtin_profiles_survive_file_merge(tmp_path):
    settings_path = _write(tmp_path / "custom.yaml", {"profiles": {"extra": {}}})

    settings = load_settings(config_path=settings_path)

    assert settings.active_profile == "interactive"
    assert set(settings.profiles) == {"interactive", "batch", "extra"}


def test_file_profile_overrides_builtin(tmp_path):
    settings_path = _write(
        tmp_path / "custom.yaml",
        {"profiles": {"batch": {"keystroke_chunk_size": 5}}},
    )

    batch = load_settings(config_path=settings_path).profiles["batch"]

    assert batch.keystroke_chunk_size == 5
    # Unspecified fields fall back to model defaults, not the builtin values
    assert batch.lifecycle_conflict == "reject"


def test_load_settings_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_settings(config_path=Path("nonexistent.yaml"))


def test_missing_default_file_uses_builtins():
    settings = load_settings()

    assert settings.active_profile == "interactive"
    assert settings.profiles == BUILTIN_PROFILES


def test_default_file_in_cwd_is_loaded(tmp_path):
    _write(tmp_path / "settings.deskpilot.yaml", {"active_profile": "batch"})

    assert load_settings().active_profile == "batch"


def test_load_settings_from_env_var(tmp_path, monkeypatch):
    settings_path = _write(tmp_path / "env.yaml", {"active_profile": "batch"})
    monkeypatch.setenv("DESKPILOT_SETTINGS", str(settings_path))

    assert load_settings().active_profile == "batch"


def test_env_var_pointing_nowhere_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("DESKPILOT_SETTINGS", str(tmp_path / "missing.yaml"))

    with pytest.raises(FileNotFoundError):
        load_settings()


def test_unknown_active_profile_is_invalid(tmp_path):
    settings_path = _write(tmp_path / "custom.yaml", {"active_profile": "nope"})

    with pytest.raises(ValidationError):
        load_settings(config_path=settings_path)


def test_out_of_range_limit_is_invalid(tmp_path):
    settings_path = _write(
        tmp_path / "custom.yaml",
        {"profiles": {"bad": {"sandbox_timeout_s": 5}}},
    )

    with pytest.raises(ValidationError):
        load_settings(config_path=settings_path)


def test_get_profile_defaults_to_active():
    settings = load_settings()

    assert get_profile(settings).name == "interactive"
    assert get_profile(settings, "batch").lifecycle_conflict == "wait"


def test_get_profile_unknown_name():
    with pytest.raises(ConfigurationError, match="available: batch, interactive"):
        get_profile(load_settings(), "missing")
