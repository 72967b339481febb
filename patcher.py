"""
Silicon Patcher - Core Logic

Applies and reverts the compatibility patches on the game root and the
CrossOver root, and reports patch status by re-reading the disk every time.

Workflow:
    1. query_game_status() / query_crossover_status() to see what is missing
    2. patch_game() / patch_crossover() to converge
    3. unpatch_game() / unpatch_crossover() to revert

Nothing here caches whether a root is patched. The only thing persisted is
an ownership record of the Config.wtf directives this tool wrote, so that
reverting never deletes values the user set themselves.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional

import wtf_settings
from dll_manifest import DllManifest
from patch_errors import ConfigurationError, ExternalToolFailure, IOFailure
from profile_schema import GraphicsSettings, UserPreferences
from resource_installer import (
    InstallTarget,
    Payload,
    PayloadSource,
    ensure_installed,
    missing_payloads,
    open_payload_source,
    remove_installed,
)
from wtf_settings import SettingsFile

_log = logging.getLogger(__name__)

WINEROSETTA_DLL = "winerosetta.dll"
SILICON_PATCH_DLL = "libSiliconPatch.dll"

GAME_PAYLOADS = [
    Payload("winerosetta/winerosetta.dll", WINEROSETTA_DLL),
    Payload("winerosetta/d3d9.dll", "d3d9.dll"),
    Payload("winerosetta/libSiliconPatch.dll", SILICON_PATCH_DLL),
]
RUNTIME_DIR = "rosettax87"
RUNTIME_PAYLOADS = [
    Payload("rosettax87/rosettax87", "rosettax87", executable=True),
    Payload("rosettax87/libRuntimeRosettax87", "libRuntimeRosettax87"),
]

CROSSOVER_LOADER_DIR = Path(
    "Contents", "SharedSupport", "CrossOver", "CrossOver-Hosted Application"
)
WINELOADER = "wineloader"
PATCHED_WINELOADER = "wineloader2"
CODESIGN_TIMEOUT = 120

STATE_FILENAME = ".silicon_patcher_state.json"
STATE_VERSION = 1


@dataclass(frozen=True)
class Toggle:
    """A Config.wtf directive driven by one GraphicsSettings flag.

    When the flag is off the directive is left to the user. ``off_values``
    are values an explicit graphics apply never removes.
    """

    key: str
    on_value: str
    off_values: tuple[str, ...] = ()


MANDATORY_DIRECTIVES = {"M2UseShaders": "1"}

GRAPHICS_TOGGLES: dict[str, Toggle] = {
    "reduce_terrain_distance": Toggle("farclip", "177"),
    "multisample_2x": Toggle("gxMultisample", "2", ("1",)),
    "shadow_lod_0": Toggle("shadowLOD", "0", ("1",)),
}


@dataclass
class PatchStatus:
    """Patch state of one root, computed from disk at query time."""

    files_installed: bool
    manifest_entries_present: bool
    settings_correct: bool
    toggles: dict[str, bool] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def is_patched(self) -> bool:
        return self.files_installed and self.manifest_entries_present and self.settings_correct


@dataclass
class OwnedDirective:
    value: str | None  # what this tool wrote, None if it deleted the line
    previous: str | None = None  # what was there before, None if absent


class Patcher:
    def __init__(
        self,
        game_root: str | Path | None,
        crossover_root: str | Path | None = None,
        source: PayloadSource | None = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.game_root = Path(game_root) if game_root else None
        self.crossover_root = Path(crossover_root) if crossover_root else None
        self._source = source
        self._log_cb = log_callback or _log.info

    def log(self, msg: str):
        self._log_cb(msg)

    # ── Roots ─────────────────────────────────────────────────────────

    def _require_game_root(self) -> Path:
        if self.game_root is None:
            raise ConfigurationError("game path not set. Please set it first.")
        return self.game_root

    def _require_crossover_root(self) -> Path:
        if self.crossover_root is None:
            raise ConfigurationError("CrossOver path not set. Please set it first.")
        return self.crossover_root

    def _payload_source(self) -> PayloadSource:
        if self._source is None:
            try:
                self._source = open_payload_source()
            except (OSError, ValueError) as exc:
                raise ConfigurationError(f"Payload bundle unavailable: {exc}") from exc
        return self._source

    def game_target(self) -> InstallTarget:
        return InstallTarget(
            root=self._require_game_root(),
            payloads=list(GAME_PAYLOADS),
            runtime_dir=RUNTIME_DIR,
            runtime_payloads=list(RUNTIME_PAYLOADS),
        )

    def patched_wineloader_path(self) -> Path:
        return self._require_crossover_root() / CROSSOVER_LOADER_DIR / PATCHED_WINELOADER

    # ── Directive ownership ───────────────────────────────────────────

    def _state_path(self) -> Path:
        return self._require_game_root() / STATE_FILENAME

    def load_owned_directives(self) -> dict[str, OwnedDirective]:
        path = self._state_path()
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if data.get("version") != STATE_VERSION:
                raise ValueError(f"Unsupported state version: {data.get('version')!r}")
            return {
                key: OwnedDirective(**rec)
                for key, rec in data.get("directives", {}).items()
            }
        except Exception as exc:
            self.log(f"Warning: Could not load ownership record: {exc}")
            return {}

    def save_owned_directives(self, owned: dict[str, OwnedDirective]):
        path = self._state_path()
        try:
            if owned:
                data = {
                    "version": STATE_VERSION,
                    "directives": {key: asdict(rec) for key, rec in owned.items()},
                }
                text = json.dumps(data, indent=2, ensure_ascii=False)
                if path.exists() and path.read_text(encoding="utf-8") == text:
                    return
                path.write_text(text, encoding="utf-8")
            elif path.exists():
                path.unlink()
        except OSError as exc:
            raise IOFailure(path, "write", exc) from exc

    def _set_directive(
        self,
        settings: SettingsFile,
        owned: dict[str, OwnedDirective],
        key: str,
        value: str,
    ):
        previous = settings.get(key)
        if previous == value:
            return
        settings.upsert(key, value)
        if key in owned:
            owned[key].value = value
        else:
            owned[key] = OwnedDirective(value=value, previous=previous)
        self.log(f"  Set {key} = {value!r}")

    def _release_directive(
        self,
        settings: SettingsFile,
        owned: dict[str, OwnedDirective],
        key: str,
    ) -> bool:
        """Put back what was there before this tool touched ``key``.

        Only happens while the value on disk is still the one recorded;
        returns False (and leaves the file alone) otherwise.
        """
        rec = owned.get(key)
        if rec is None or settings.get(key) != rec.value:
            return False
        if rec.previous is None:
            settings.delete(key)
            self.log(f"  Removed {key}")
        else:
            settings.upsert(key, rec.previous)
            self.log(f"  Restored {key} = {rec.previous!r}")
        del owned[key]
        return True

    def _clear_directive(
        self,
        settings: SettingsFile,
        owned: dict[str, OwnedDirective],
        toggle: Toggle,
        force: bool = False,
    ):
        current = settings.get(toggle.key)
        if current is None or current in toggle.off_values:
            return
        rec = owned.get(toggle.key)
        if rec is not None and rec.value == current:
            self._release_directive(settings, owned, toggle.key)
            return
        if not force:
            self.log(f"  Keeping user-set {toggle.key} = {current!r}")
            return
        # The user's value is deleted, so record it for unpatch_game().
        settings.delete(toggle.key)
        owned[toggle.key] = OwnedDirective(value=None, previous=current)
        self.log(f"  Removed {toggle.key} (was {current!r})")

    def _apply_toggles(
        self,
        settings: SettingsFile,
        owned: dict[str, OwnedDirective],
        graphics: GraphicsSettings,
        force: bool = False,
    ):
        """Write on-toggles; for off-toggles undo this tool's own values.

        With ``force`` an off-toggle is removed even when the user set it.
        """
        for name, toggle in GRAPHICS_TOGGLES.items():
            if getattr(graphics, name):
                self._set_directive(settings, owned, toggle.key, toggle.on_value)
            else:
                self._clear_directive(settings, owned, toggle, force)

    # ── Game: patch / unpatch ─────────────────────────────────────────

    def patch_game(
        self,
        graphics: GraphicsSettings | None = None,
        preferences: UserPreferences | None = None,
    ) -> str:
        """Install payloads, register DLLs and write settings on the game root.

        Safe to re-run: each step only changes what is not already correct.
        """
        root = self._require_game_root()
        effective = (graphics or GraphicsSettings()).resolve(preferences or UserPreferences())
        self.log(f"Patching game at {root}...")

        written = ensure_installed(self.game_target(), self._payload_source())
        for path in written:
            self.log(f"  Copied: {path.relative_to(root).as_posix()}")

        manifest = DllManifest.for_game(root)
        manifest.add_entry(WINEROSETTA_DLL)
        if effective.silicon_patch:
            manifest.add_entry(SILICON_PATCH_DLL)
        else:
            self.log(f"  {SILICON_PATCH_DLL} disabled by user choice")
            manifest.remove_entry(SILICON_PATCH_DLL)

        settings = SettingsFile.for_game(root)
        owned = self.load_owned_directives()
        try:
            for key, value in MANDATORY_DIRECTIVES.items():
                self._set_directive(settings, owned, key, value)
            self._apply_toggles(settings, owned, effective)
        finally:
            self.save_owned_directives(owned)

        self.log("Game patching completed successfully.")
        return f"Patched game ({len(written)} file(s) written)"

    def unpatch_game(self) -> str:
        """Remove installed files, DLL entries and the directives this tool set."""
        root = self._require_game_root()
        self.log(f"Unpatching game at {root}...")

        removed = remove_installed(self.game_target())

        manifest = DllManifest.for_game(root)
        manifest.remove_entry(WINEROSETTA_DLL)
        manifest.remove_entry(SILICON_PATCH_DLL)

        settings = SettingsFile.for_game(root)
        owned = self.load_owned_directives()
        try:
            for key in list(owned):
                if not self._release_directive(settings, owned, key):
                    current = settings.get(key)
                    self.log(f"  {key} was changed since patching ({current!r}), leaving it alone")
                    del owned[key]
        finally:
            # Whatever is still in ``owned`` was not reverted yet.
            self.save_owned_directives(owned)

        self.log("Game unpatching completed successfully.")
        return f"Unpatched game ({len(removed)} item(s) removed)"

    # ── Game: graphics settings ───────────────────────────────────────

    def apply_graphics_settings(
        self,
        graphics: GraphicsSettings,
        preferences: UserPreferences | None = None,
    ):
        """Write only the toggle directives, plus the libSiliconPatch DLL entry
        when the DLL is installed."""
        root = self._require_game_root()
        effective = graphics.resolve(preferences or UserPreferences())

        settings = SettingsFile.for_game(root)
        owned = self.load_owned_directives()
        try:
            self._apply_toggles(settings, owned, effective, force=True)
        finally:
            self.save_owned_directives(owned)

        if (root / SILICON_PATCH_DLL).exists():
            manifest = DllManifest.for_game(root)
            if effective.silicon_patch:
                manifest.add_entry(SILICON_PATCH_DLL)
            else:
                manifest.remove_entry(SILICON_PATCH_DLL)

        self.log("Applied graphics settings to Config.wtf")

    def detect_graphics_settings(self) -> GraphicsSettings:
        """Read the toggle state currently on disk."""
        root = self._require_game_root()
        doc = SettingsFile.for_game(root).read()
        values = {
            name: wtf_settings.is_set(doc, toggle.key, toggle.on_value)
            for name, toggle in GRAPHICS_TOGGLES.items()
        }
        # Enabled only when the DLL is installed and listed in dlls.txt.
        dll_present = (root / SILICON_PATCH_DLL).exists()
        values["silicon_patch"] = dll_present and DllManifest.for_game(root).contains(
            SILICON_PATCH_DLL
        )
        return GraphicsSettings(**values)

    def ensure_gx_api_d3d9(self):
        """Force the d3d9 renderer before launch, only if Config.wtf exists."""
        settings = SettingsFile.for_game(self._require_game_root())
        if settings.exists():
            settings.upsert("gxApi", "d3d9")

    # ── Game: status ──────────────────────────────────────────────────

    def query_game_status(
        self,
        graphics: GraphicsSettings | None = None,
        preferences: UserPreferences | None = None,
    ) -> PatchStatus:
        root = self._require_game_root()
        effective = (graphics or GraphicsSettings()).resolve(preferences or UserPreferences())
        missing: list[str] = []

        absent_files = missing_payloads(self.game_target())
        missing.extend(f"file {p.relative_to(root).as_posix()}" for p in absent_files)

        manifest = DllManifest.for_game(root)
        expected_entries = [WINEROSETTA_DLL]
        if effective.silicon_patch:
            expected_entries.append(SILICON_PATCH_DLL)
        absent_entries = [e for e in expected_entries if not manifest.contains(e)]
        missing.extend(f"dlls.txt entry {e}" for e in absent_entries)

        doc = SettingsFile.for_game(root).read()
        settings_ok = True
        for key, value in MANDATORY_DIRECTIVES.items():
            if wtf_settings.get(doc, key) != value:
                settings_ok = False
                missing.append(f"setting {key}={value!r}")

        toggles: dict[str, bool] = {}
        for name, toggle in GRAPHICS_TOGGLES.items():
            current = wtf_settings.get(doc, toggle.key)
            # An off toggle leaves the key to the user, whatever its value.
            correct = not getattr(effective, name) or current == toggle.on_value
            toggles[name] = correct
            if not correct:
                settings_ok = False
                missing.append(f"setting {toggle.key} (currently {current!r})")

        return PatchStatus(
            files_installed=not absent_files,
            manifest_entries_present=not absent_entries,
            settings_correct=settings_ok,
            toggles=toggles,
            missing=missing,
        )

    # ── CrossOver ─────────────────────────────────────────────────────

    def run_codesign(self, path: Path) -> tuple[bool, str]:
        """Strip the code signature from ``path``. Returns (success, combined output)."""
        cmd = ["codesign", "--remove-signature", str(path)]
        self.log(f"Executing: {' '.join(cmd)}")
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=CODESIGN_TIMEOUT,
            )
        except FileNotFoundError:
            return False, "codesign not found (Xcode command line tools required)"
        except subprocess.TimeoutExpired:
            return False, f"codesign timed out after {CODESIGN_TIMEOUT} seconds"
        return proc.returncode == 0, proc.stdout or ""

    def patch_crossover(self) -> str:
        loader_dir = self._require_crossover_root() / CROSSOVER_LOADER_DIR
        original = loader_dir / WINELOADER
        patched = loader_dir / PATCHED_WINELOADER

        if not original.exists():
            raise IOFailure(original, "find original wineloader")

        self.log(f"Copying {original} to {patched}")
        try:
            shutil.copy2(original, patched)
        except PermissionError as exc:
            raise IOFailure(
                patched,
                "copy wineloader to",
                exc,
                hint=(
                    "Solution: Open System Settings, go to Privacy & Security > "
                    "App Management, and enable this application."
                ),
            ) from exc
        except OSError as exc:
            raise IOFailure(patched, "copy wineloader to", exc) from exc

        ok, output = self.run_codesign(patched)
        if not ok:
            try:
                patched.unlink()
            except OSError as exc:
                self.log(f"Warning: failed to clean up {patched.name} after codesign failure: {exc}")
            raise ExternalToolFailure(
                "codesign", output, detail=f"could not remove signature from {patched}"
            )
        if output:
            self.log(f"  [codesign] {output.strip()}")

        try:
            patched.chmod(0o755)
        except OSError as exc:
            raise IOFailure(patched, "set executable permissions for", exc) from exc

        self.log("CrossOver patching completed successfully.")
        return "Patched CrossOver"

    def unpatch_crossover(self) -> str:
        patched = self.patched_wineloader_path()
        if not patched.exists():
            self.log(f"File not found to remove: {patched}")
            return "CrossOver was not patched"
        try:
            patched.unlink()
        except OSError as exc:
            raise IOFailure(patched, "remove file", exc) from exc
        self.log(f"Removed {patched}")
        return "Unpatched CrossOver"

    def query_crossover_status(self) -> PatchStatus:
        patched = self.patched_wineloader_path()
        present = patched.is_file()
        return PatchStatus(
            files_installed=present,
            manifest_entries_present=True,
            settings_correct=True,
            missing=[] if present else [f"file {PATCHED_WINELOADER}"],
        )
