import pytest

from dll_manifest import DllManifest
from patch_errors import IOFailure


def test_missing_file_is_empty(tmp_path):
    manifest = DllManifest.for_game(tmp_path)
    assert manifest.entries() == []
    assert not manifest.contains("winerosetta.dll")
    assert not manifest.remove_entry("winerosetta.dll")
    assert not manifest.path.exists()


def test_add_creates_file(tmp_path):
    manifest = DllManifest.for_game(tmp_path)
    assert manifest.add_entry("winerosetta.dll")
    assert manifest.path.read_text() == "winerosetta.dll\n"


def test_add_is_idempotent(tmp_path):
    manifest = DllManifest.for_game(tmp_path)
    manifest.add_entry("winerosetta.dll")
    assert not manifest.add_entry("winerosetta.dll")
    assert not manifest.add_entry("  winerosetta.dll  ")
    assert manifest.path.read_text() == "winerosetta.dll\n"


def test_add_terminates_previous_last_line(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_text("other.dll")
    manifest = DllManifest(path)

    manifest.add_entry("winerosetta.dll")

    assert path.read_text() == "other.dll\nwinerosetta.dll\n"
    assert manifest.entries() == ["other.dll", "winerosetta.dll"]


def test_contains_ignores_surrounding_whitespace(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_bytes(b"  winerosetta.dll \r\nlibSiliconPatch.dll\n")
    manifest = DllManifest(path)
    assert manifest.contains("winerosetta.dll")
    assert manifest.contains("libSiliconPatch.dll")
    assert not manifest.contains("d3d9.dll")


def test_remove_drops_all_matches_and_keeps_others(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_text("a.dll\nwinerosetta.dll\nb.dll\n winerosetta.dll\n")
    manifest = DllManifest(path)

    assert manifest.remove_entry("winerosetta.dll")

    assert path.read_text() == "a.dll\nb.dll\n"
    assert not manifest.remove_entry("winerosetta.dll")


def test_remove_without_match_does_not_touch_file(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_bytes(b"a.dll\r\nb.dll")
    mtime = path.stat().st_mtime_ns

    assert not DllManifest(path).remove_entry("winerosetta.dll")

    assert path.read_bytes() == b"a.dll\r\nb.dll"
    assert path.stat().st_mtime_ns == mtime


def test_entries_deduplicates(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_text("a.dll\n\na.dll\nb.dll\n")
    assert DllManifest(path).entries() == ["a.dll", "b.dll"]


def test_add_then_remove_restores_content(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_text("a.dll\nb.dll\n")
    manifest = DllManifest(path)

    manifest.add_entry("winerosetta.dll")
    manifest.remove_entry("winerosetta.dll")

    assert path.read_text() == "a.dll\nb.dll\n"


def test_crlf_file_keeps_crlf(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_bytes(b"a.dll\r\nb.dll\r\n")
    manifest = DllManifest(path)

    manifest.add_entry("winerosetta.dll")
    assert path.read_bytes() == b"a.dll\r\nb.dll\r\nwinerosetta.dll\r\n"

    manifest.remove_entry("a.dll")
    assert path.read_bytes() == b"b.dll\r\nwinerosetta.dll\r\n"


def test_non_utf8_bytes_survive_edits(tmp_path):
    path = tmp_path / "dlls.txt"
    path.write_bytes(b"\xff\xfeuser.dll\n")
    manifest = DllManifest(path)

    assert manifest.add_entry("winerosetta.dll")
    assert manifest.remove_entry("winerosetta.dll")

    assert path.read_bytes() == b"\xff\xfeuser.dll\n"


def test_unreadable_manifest_raises_iofailure(tmp_path):
    (tmp_path / "dlls.txt").mkdir()
    with pytest.raises(IOFailure):
        DllManifest.for_game(tmp_path).add_entry("winerosetta.dll")
