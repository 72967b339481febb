"""
Profile schema for Silicon Patcher.

A profile is a small JSON file describing one game installation: where the
game and CrossOver live, which graphics toggles the user expects, which
features they have explicitly opted out of, and how the game should be
launched. The patcher never writes it back; it is read-only configuration
supplied by whoever owns the user's preferences.

Schema version 1.0
------------------

{
    "profile_version": "1.0",
    "game_path": "/Applications/TurtleWoW",
    "crossover_path": "/Applications/CrossOver.app",
    "graphics": {
        "reduce_terrain_distance": false,
        "multisample_2x": false,
        "shadow_lod_0": true,
        "silicon_patch": true
    },
    "preferences": {
        "user_disabled_silicon_patch": false,
        "user_disabled_shadow_lod": false
    },
    "launch": {
        "executable": "WoW.exe",
        "enable_metal_hud": false,
        "custom_env_vars": "WINEDEBUG=-all",
        "auto_delete_wdb": false
    }
}

Every section is optional; missing sections take the defaults below.
"""

from __future__ import annotations

import json
import logging
import shlex
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

PROFILE_FILENAME = "silicon_patcher_profile.json"
CURRENT_VERSION = (1, 0)  # (major, minor) supported by this build

_log = logging.getLogger(__name__)


class GraphicsSettings(BaseModel):
    """Expected toggle state for one game root."""

    reduce_terrain_distance: bool = False
    multisample_2x: bool = False
    shadow_lod_0: bool = True
    silicon_patch: bool = True

    def resolve(self, preferences: UserPreferences) -> GraphicsSettings:
        """Return a copy with the user's explicit opt-outs applied."""
        return self.model_copy(
            update={
                "shadow_lod_0": self.shadow_lod_0 and not preferences.user_disabled_shadow_lod,
                "silicon_patch": self.silicon_patch and not preferences.user_disabled_silicon_patch,
            }
        )


class UserPreferences(BaseModel):
    """Features the user has explicitly turned off.

    A feature that is not disabled here is enabled by default on patching.
    """

    user_disabled_silicon_patch: bool = False
    user_disabled_shadow_lod: bool = False


class LaunchSettings(BaseModel):
    executable: str = "WoW.exe"
    enable_metal_hud: bool = False
    custom_env_vars: str = ""
    auto_delete_wdb: bool = False

    @field_validator("custom_env_vars")
    @classmethod
    def _check_env_vars(cls, v: str) -> str:
        parse_env_assignments(v)
        return v.strip()

    def custom_env(self) -> dict[str, str]:
        return parse_env_assignments(self.custom_env_vars)


class PatchProfile(BaseModel):
    """Parsed contents of a profile file."""

    profile_version: str = "1.0"
    game_path: str | None = None
    crossover_path: str | None = None
    graphics: GraphicsSettings = Field(default_factory=GraphicsSettings)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    launch: LaunchSettings = Field(default_factory=LaunchSettings)

    @field_validator("profile_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        try:
            major, minor = (int(x) for x in v.split("."))
        except ValueError:
            raise ValueError(
                f"Invalid profile_version {v!r}, expected 'major.minor' (e.g. '1.0')"
            )
        cur_major, cur_minor = CURRENT_VERSION
        if major > cur_major:
            raise ValueError(
                f"profile_version {v!r} requires a newer patcher "
                f"(this build supports up to version {cur_major}.x)"
            )
        if major == cur_major and minor > cur_minor:
            _log.warning(
                "Profile version %s is newer than this build supports (%d.%d); "
                "some settings may be ignored.",
                v, cur_major, cur_minor,
            )
        return v

    @field_validator("game_path", "crossover_path")
    @classmethod
    def _normalize_path(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return str(Path(v.strip()).expanduser())


def parse_env_assignments(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` words (shell quoting allowed) into a dict.

    Raises ``ValueError`` for words that are not assignments.
    """
    env: dict[str, str] = {}
    for word in shlex.split(text):
        key, sep, value = word.partition("=")
        if not sep or not key or not (key[0].isalpha() or key[0] == "_"):
            raise ValueError(f"Invalid environment assignment {word!r}. Expected KEY=VALUE")
        env[key] = value
    return env


def parse_profile(data: bytes) -> PatchProfile:
    """Parse raw JSON bytes into a PatchProfile.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the bytes are not valid JSON.
    """
    return PatchProfile.model_validate(json.loads(data))


def load_profile(path: str | Path | None) -> PatchProfile:
    """Load a profile from disk; a missing or unset path yields the defaults."""
    if path is None:
        return PatchProfile()
    path = Path(path)
    if not path.exists():
        _log.info("Profile %s not found, using defaults", path)
        return PatchProfile()
    return parse_profile(path.read_bytes())
