import json
import os

import pytest
from pydantic import ValidationError

from profile_schema import (
    GraphicsSettings,
    PatchProfile,
    UserPreferences,
    load_profile,
    parse_env_assignments,
    parse_profile,
)


def test_defaults():
    profile = PatchProfile()
    assert profile.game_path is None
    assert profile.graphics == GraphicsSettings(
        reduce_terrain_distance=False, multisample_2x=False, shadow_lod_0=True, silicon_patch=True
    )
    assert profile.launch.executable == "WoW.exe"


def test_parse_full_profile():
    data = {
        "profile_version": "1.0",
        "game_path": "~/Games/TurtleWoW",
        "crossover_path": "  ",
        "graphics": {"reduce_terrain_distance": True},
        "preferences": {"user_disabled_shadow_lod": True},
        "launch": {"custom_env_vars": "WINEDEBUG=-all", "auto_delete_wdb": True},
    }

    profile = parse_profile(json.dumps(data).encode())

    assert profile.game_path == os.path.expanduser("~/Games/TurtleWoW")
    assert profile.crossover_path is None
    assert profile.graphics.reduce_terrain_distance
    assert profile.graphics.shadow_lod_0
    assert profile.launch.custom_env() == {"WINEDEBUG": "-all"}


def test_resolve_applies_opt_outs():
    graphics = GraphicsSettings()
    resolved = graphics.resolve(
        UserPreferences(user_disabled_silicon_patch=True, user_disabled_shadow_lod=True)
    )
    assert not resolved.silicon_patch
    assert not resolved.shadow_lod_0
    assert graphics.silicon_patch


def test_newer_major_version_rejected():
    with pytest.raises(ValidationError, match="newer patcher"):
        parse_profile(b'{"profile_version": "2.0"}')


def test_malformed_version_rejected():
    with pytest.raises(ValidationError):
        parse_profile(b'{"profile_version": "one"}')


def test_bad_env_assignment_rejected():
    with pytest.raises(ValidationError):
        parse_profile(b'{"launch": {"custom_env_vars": "NOT_AN_ASSIGNMENT"}}')


def test_parse_env_assignments_quoting():
    assert parse_env_assignments("A=1 B='two words' C=") == {"A": "1", "B": "two words", "C": ""}
    with pytest.raises(ValueError):
        parse_env_assignments("=value")


def test_load_profile_missing_file_gives_defaults(tmp_path):
    assert load_profile(tmp_path / "missing.json") == PatchProfile()
    assert load_profile(None) == PatchProfile()


def test_load_profile_from_disk(tmp_path):
    path = tmp_path / "profile.json"
    path.write_text(json.dumps({"game_path": str(tmp_path)}))
    assert load_profile(path).game_path == str(tmp_path)
