"""
Silicon Patcher - Resource Installer

Copies bundled payload files into an install root. Payloads come from a
``PayloadSource``: either a plain directory tree or a single bundle archive
(.zip / .7z / .rar) laid out the same way, e.g.::

    payloads/
    ├── winerosetta/
    │   ├── winerosetta.dll
    │   ├── d3d9.dll
    │   └── libSiliconPatch.dll
    └── rosettax87/
        ├── rosettax87
        └── libRuntimeRosettax87

Whether a root payload needs copying is decided by comparing byte lengths
only. Same-length corruption is not detected.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

import py7zr
import rarfile

from patch_errors import IOFailure

_log = logging.getLogger(__name__)

SUPPORTED_ARCHIVE_EXTENSIONS = {".zip", ".7z", ".rar"}
EXECUTABLE_MODE = 0o755
ARCHIVE_ERRORS = (zipfile.BadZipFile, py7zr.Bad7zFile, rarfile.Error)

if getattr(sys, "frozen", False):
    DEFAULT_PAYLOAD_DIR = Path(sys._MEIPASS) / "payloads"
else:
    DEFAULT_PAYLOAD_DIR = Path(__file__).parent / "payloads"


@dataclass(frozen=True)
class Payload:
    """One bundled file and where it goes, relative to its install directory."""

    payload_id: str  # e.g. "winerosetta/d3d9.dll"
    destination: str  # e.g. "d3d9.dll"
    executable: bool = False


@dataclass
class InstallTarget:
    """Everything one install root needs from the payload bundle.

    ``payloads`` are installed directly relative to ``root``.
    ``runtime_payloads`` live in ``root / runtime_dir``, which is rebuilt from
    scratch whenever its contents don't exactly match.
    """

    root: Path
    payloads: list[Payload] = field(default_factory=list)
    runtime_dir: str | None = None
    runtime_payloads: list[Payload] = field(default_factory=list)

    @property
    def runtime_path(self) -> Path | None:
        return self.root / self.runtime_dir if self.runtime_dir else None

    def destinations(self) -> list[Path]:
        paths = [self.root / p.destination for p in self.payloads]
        if self.runtime_path is not None:
            paths.extend(self.runtime_path / p.destination for p in self.runtime_payloads)
        return paths


# ── Payload sources ───────────────────────────────────────────────────


class PayloadSource:
    """Resolves logical payload ids to raw bytes."""

    def read(self, payload_id: str) -> bytes:
        raise NotImplementedError

    def size(self, payload_id: str) -> int:
        raise NotImplementedError


class DirectoryPayloadSource(PayloadSource):
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, payload_id: str) -> Path:
        return self.root / payload_id.replace("/", os.sep)

    def read(self, payload_id: str) -> bytes:
        return self._path(payload_id).read_bytes()

    def size(self, payload_id: str) -> int:
        return self._path(payload_id).stat().st_size


class ArchivePayloadSource(PayloadSource):
    """Payloads packed into one .zip/.7z/.rar bundle.

    Zip and rar member sizes are listed once up front and contents are read
    on demand. A .7z bundle is unpacked into memory once, since py7zr has no
    per-member read.
    """

    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath)
        ext = self.filepath.suffix.lower()
        if ext not in SUPPORTED_ARCHIVE_EXTENSIONS:
            raise ValueError(f"Unsupported archive format: {ext}")
        self._unpacked: dict[str, bytes] = {}
        try:
            self._sizes = self._list_member_sizes()
        except ARCHIVE_ERRORS as exc:
            raise ValueError(f"Unreadable payload bundle {self.filepath.name}: {exc}") from exc

    def _list_member_sizes(self) -> dict[str, int]:
        ext = self.filepath.suffix.lower()
        if ext == ".zip":
            with zipfile.ZipFile(self.filepath, "r") as zf:
                infos = [(i.filename, i.file_size) for i in zf.infolist() if not i.is_dir()]
        elif ext == ".7z":
            self._unpack_7z()
            infos = [(name, len(data)) for name, data in self._unpacked.items()]
        else:
            with rarfile.RarFile(self.filepath, "r") as rf:
                infos = [(i.filename, i.file_size) for i in rf.infolist() if not i.is_dir()]
        return {name.replace("\\", "/"): size for name, size in infos}

    def _unpack_7z(self):
        with tempfile.TemporaryDirectory() as tmp:
            with py7zr.SevenZipFile(self.filepath, "r") as sz:
                sz.extractall(path=tmp)
            for path in Path(tmp).rglob("*"):
                if path.is_file():
                    self._unpacked[path.relative_to(tmp).as_posix()] = path.read_bytes()

    def _read_archive_member(self, member: str) -> bytes:
        if member in self._unpacked:
            return self._unpacked[member]
        if self.filepath.suffix.lower() == ".zip":
            with zipfile.ZipFile(self.filepath, "r") as zf:
                return zf.read(member)
        with rarfile.RarFile(self.filepath, "r") as rf:
            return rf.read(member)

    def read(self, payload_id: str) -> bytes:
        if payload_id not in self._sizes:
            raise FileNotFoundError(f"{payload_id} not found in {self.filepath.name}")
        return self._read_archive_member(payload_id)

    def size(self, payload_id: str) -> int:
        try:
            return self._sizes[payload_id]
        except KeyError:
            raise FileNotFoundError(f"{payload_id} not found in {self.filepath.name}") from None


def open_payload_source(path: str | Path | None = None) -> PayloadSource:
    """Return the payload source for a directory or bundle archive path.

    Falls back to ``SILICON_PATCHER_PAYLOADS`` and then the ``payloads/``
    folder shipped next to the code.
    """
    if path is None:
        path = os.environ.get("SILICON_PATCHER_PAYLOADS") or DEFAULT_PAYLOAD_DIR
    path = Path(path)
    if path.is_dir():
        return DirectoryPayloadSource(path)
    if path.suffix.lower() in SUPPORTED_ARCHIVE_EXTENSIONS and path.is_file():
        return ArchivePayloadSource(path)
    raise FileNotFoundError(f"Payload bundle not found: {path}")


# ── Installation ──────────────────────────────────────────────────────


def _matches_size(dest: Path, source: PayloadSource, payload: Payload) -> bool:
    try:
        return dest.is_file() and dest.stat().st_size == source.size(payload.payload_id)
    except OSError:
        return False


def _write_payload(source: PayloadSource, payload: Payload, dest: Path):
    try:
        data = source.read(payload.payload_id)
    except (OSError, KeyError, *ARCHIVE_ERRORS) as exc:
        raise IOFailure(payload.payload_id, "read bundled resource", exc) from exc

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
    except OSError as exc:
        raise IOFailure(dest, "write", exc) from exc

    if payload.executable:
        try:
            dest.chmod(EXECUTABLE_MODE)
        except OSError as exc:
            raise IOFailure(dest, "set execute permission for", exc) from exc
    _log.debug("Copied %s -> %s", payload.payload_id, dest)


def _runtime_dir_current(target: InstallTarget, source: PayloadSource) -> bool:
    runtime = target.runtime_path
    if runtime is None or not runtime.is_dir():
        return False
    expected = {p.destination: p for p in target.runtime_payloads}
    try:
        present = {entry.name for entry in runtime.iterdir()}
    except OSError:
        return False
    if present != set(expected):
        return False
    for name, payload in expected.items():
        dest = runtime / name
        if not _matches_size(dest, source, payload):
            return False
        if payload.executable and not os.access(dest, os.X_OK):
            return False
    return True


def ensure_installed(target: InstallTarget, source: PayloadSource) -> list[Path]:
    """Bring every payload of ``target`` onto disk.

    Returns the paths written; an empty list means nothing needed to change.
    Raises ``IOFailure`` on the first failing step and leaves earlier steps
    in place.
    """
    written: list[Path] = []

    for payload in target.payloads:
        dest = target.root / payload.destination
        if _matches_size(dest, source, payload):
            _log.debug("%s already present with correct size, skipping", dest)
            continue
        if dest.exists():
            _log.info("%s has incorrect size, updating", dest)
        else:
            _log.info("%s does not exist, creating", dest)
        _write_payload(source, payload, dest)
        written.append(dest)

    runtime = target.runtime_path
    if runtime is not None and not _runtime_dir_current(target, source):
        _log.info("Preparing %s directory at %s", target.runtime_dir, runtime)
        if runtime.exists() or runtime.is_symlink():
            try:
                if runtime.is_dir() and not runtime.is_symlink():
                    shutil.rmtree(runtime)
                else:
                    runtime.unlink()
            except OSError as exc:
                raise IOFailure(runtime, "remove", exc) from exc
        try:
            runtime.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(runtime, "create directory", exc) from exc
        for payload in target.runtime_payloads:
            dest = runtime / payload.destination
            _write_payload(source, payload, dest)
            written.append(dest)

    return written


def missing_payloads(target: InstallTarget) -> list[Path]:
    """Destinations of ``target`` that are not present on disk."""
    return [p for p in target.destinations() if not p.is_file()]


def remove_installed(target: InstallTarget) -> list[Path]:
    """Delete the runtime directory and every root payload of ``target``.

    Returns the paths removed. Raises ``IOFailure`` on the first failure.
    """
    removed: list[Path] = []

    runtime = target.runtime_path
    if runtime is not None and runtime.is_dir():
        _log.info("Removing directory: %s", runtime)
        try:
            shutil.rmtree(runtime)
        except OSError as exc:
            raise IOFailure(runtime, "remove directory", exc) from exc
        removed.append(runtime)

    for payload in target.payloads:
        dest = target.root / payload.destination
        if not dest.exists():
            continue
        _log.info("Removing file: %s", dest)
        try:
            dest.unlink()
        except OSError as exc:
            raise IOFailure(dest, "remove file", exc) from exc
        removed.append(dest)

    return removed

