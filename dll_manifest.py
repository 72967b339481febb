"""
Editor for ``dlls.txt``, the newline-delimited list of extra DLLs the patched
game loads at startup.

A missing file is an empty manifest. Every call reads and rewrites the whole
file; callers are responsible for not editing the same file concurrently.
"""

from __future__ import annotations

import logging
from pathlib import Path

from patch_errors import IOFailure

DLLS_FILENAME = "dlls.txt"

_log = logging.getLogger(__name__)


class DllManifest:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    @classmethod
    def for_game(cls, game_root: str | Path) -> DllManifest:
        return cls(Path(game_root) / DLLS_FILENAME)

    # Bytes that are not UTF-8 and CRLF endings survive a read/write cycle.
    def _read(self) -> str:
        if not self.path.exists():
            return ""
        try:
            with open(self.path, "r", encoding="utf-8", errors="surrogateescape", newline="") as fh:
                return fh.read()
        except (OSError, UnicodeError) as exc:
            raise IOFailure(self.path, "read", exc) from exc

    def _write(self, text: str):
        try:
            with open(self.path, "w", encoding="utf-8", errors="surrogateescape", newline="") as fh:
                fh.write(text)
        except (OSError, UnicodeError) as exc:
            raise IOFailure(self.path, "write", exc) from exc

    def entries(self) -> list[str]:
        """Effective entries in file order, blank lines and duplicates dropped."""
        seen: set[str] = set()
        result: list[str] = []
        for line in self._read().splitlines():
            name = line.strip()
            if name and name not in seen:
                seen.add(name)
                result.append(name)
        return result

    def contains(self, entry: str) -> bool:
        entry = entry.strip()
        return any(line.strip() == entry for line in self._read().splitlines())

    def add_entry(self, entry: str) -> bool:
        """Append ``entry`` unless already listed. Returns True if the file changed."""
        entry = entry.strip()
        content = self._read()
        if any(line.strip() == entry for line in content.splitlines()):
            _log.debug("%s already contains %s", self.path.name, entry)
            return False

        eol = "\r\n" if "\r\n" in content else "\n"
        if content and not content.endswith(("\n", "\r")):
            content += eol
        content += entry + eol
        self._write(content)
        _log.info("Added %s to %s", entry, self.path.name)
        return True

    def remove_entry(self, entry: str) -> bool:
        """Drop every line equal to ``entry`` once trimmed. Returns True if the file changed."""
        entry = entry.strip()
        content = self._read()
        if not content:
            return False

        lines = content.splitlines(keepends=True)
        kept = [line for line in lines if line.strip() != entry]
        if len(kept) == len(lines):
            return False

        self._write("".join(kept))
        _log.info("Removed %s from %s", entry, self.path.name)
        return True
