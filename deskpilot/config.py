# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
import os
from pathlib import Path

import yaml

from deskpilot.core.exceptions import ConfigurationError
from deskpilot.core.types import Profile, Settings


DEFAULT_SETTINGS_FILE = "settings.deskpilot.yaml"

BUILTIN_PROFILES: dict[str, Profile] = {
    # A person is watching the stream; fail fast and keep probes cheap.
    "interactive": Profile(
        name="interactive",
        sandbox_timeout_s=3600,
        provider_timeout_s=20.0,
        probe_timeout_s=3.0,
        capability_ttl_s=600.0,
        check_timeout_s=10.0,
        lifecycle_conflict="reject",
        keystroke_chunk_size=25,
        keystroke_delay_ms=12,
    ),
    # Unattended automation; long-lived sandboxes, callers queue behind each other.
    "batch": Profile(
        name="batch",
        sandbox_timeout_s=4 * 3600,
        provider_timeout_s=60.0,
        probe_timeout_s=5.0,
        capability_ttl_s=1800.0,
        check_timeout_s=20.0,
        lifecycle_conflict="wait",
        keystroke_chunk_size=50,
        keystroke_delay_ms=8,
        segment_batch_size=500,
    ),
}


def default_settings() -> Settings:
    """Return settings containing only the built-in profiles."""
    return Settings(active_profile="interactive", profiles=dict(BUILTIN_PROFILES))


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from a YAML file.

    Resolution order:
    1. Explicit config_path parameter (if provided)
    2. DESKPILOT_SETTINGS environment variable (if set)
    3. Default: 'settings.deskpilot.yaml' in the current directory

    Profiles declared in the file are merged over the built-in profiles, so a
    file may reference 'interactive' or 'batch' without redefining them.

    Args:
        config_path: Optional explicit path to the configuration file.

    Returns:
        Settings object populated from the YAML configuration, or the
        built-in settings when the implicit default file does not exist.

    Raises:
        FileNotFoundError: If an explicitly requested file does not exist.
        yaml.YAMLError: If the YAML file is malformed.
        pydantic.ValidationError: If the configuration fails validation.
    """
    explicit = config_path is not None
    if config_path is None:
        env_path = os.environ.get("DESKPILOT_SETTINGS")
        explicit = bool(env_path)
        config_path = Path(env_path) if env_path else Path(DEFAULT_SETTINGS_FILE)

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Configuration file not found at {config_path}")
        return default_settings()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    profiles: dict[str, object] = {name: p.model_dump() for name, p in BUILTIN_PROFILES.items()}
    for name, raw in (data.get("profiles") or {}).items():
        profiles[name] = {"name": name, **(raw or {})}

    return Settings(
        active_profile=data.get("active_profile", "interactive"),
        profiles=profiles,  # type: ignore[arg-type]
    )


def get_profile(settings: Settings, name: str | None = None) -> Profile:
    """Return the named profile, or the active one when no name is given.

    Raises:
        ConfigurationError: If the profile is not defined.
    """
    profile_name = name or settings.active_profile
    try:
        return settings.profiles[profile_name]
    except KeyError:
        available = ", ".join(sorted(settings.profiles))
        raise ConfigurationError(
            f"Profile '{profile_name}' not found (available: {available})"
        ) from None
