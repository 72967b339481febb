"""
Shared fixtures and helpers for the Silicon Patcher test suite.
"""

import zipfile
from pathlib import Path
from unittest.mock import patch

import py7zr
import pytest

from resource_installer import DirectoryPayloadSource

PAYLOAD_FILES = {
    "winerosetta/winerosetta.dll": b"winerosetta-dll",
    "winerosetta/d3d9.dll": b"d3d9-dll-bytes",
    "winerosetta/libSiliconPatch.dll": b"silicon-patch",
    "rosettax87/rosettax87": b"#!/bin/sh\nexit 0\n",
    "rosettax87/libRuntimeRosettax87": b"runtime-library",
}


def write_payload_tree(dest: Path, files: dict[str, bytes] = PAYLOAD_FILES) -> Path:
    for member, data in files.items():
        path = dest / member
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return dest


def zip_payloads(out: Path, files: dict[str, bytes] = PAYLOAD_FILES) -> Path:
    with zipfile.ZipFile(out, "w") as zf:
        for member, data in files.items():
            zf.writestr(member, data)
    return out


def sevenzip_payloads(out: Path, src: Path, files: dict[str, bytes] = PAYLOAD_FILES) -> Path:
    with py7zr.SevenZipFile(out, "w") as sz:
        for member in files:
            sz.write(src / member, arcname=member)
    return out


@pytest.fixture
def payload_dir(tmp_path):
    return write_payload_tree(tmp_path / "payloads")


@pytest.fixture
def source(payload_dir):
    return DirectoryPayloadSource(payload_dir)


@pytest.fixture
def roots(tmp_path):
    """Return (game_root, crossover_root) as fresh tmp_path subdirectories."""
    game = tmp_path / "TurtleWoW"
    crossover = tmp_path / "CrossOver.app"
    loader_dir = crossover / "Contents" / "SharedSupport" / "CrossOver" / "CrossOver-Hosted Application"
    game.mkdir()
    loader_dir.mkdir(parents=True)
    (loader_dir / "wineloader").write_bytes(b"signed wineloader")
    return game, crossover


@pytest.fixture
def mock_codesign():
    """Patch Patcher.run_codesign to succeed without running the real tool."""
    with patch("patcher.Patcher.run_codesign", return_value=(True, "")) as m:
        yield m
