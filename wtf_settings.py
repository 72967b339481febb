"""
Reading and editing ``WTF/Config.wtf``.

The file is a list of directives, one per line::

    SET gxApi "d3d9"
    SET shadowLOD "0"

Values are opaque strings with no escaping, so a value can never contain a
double quote. Lines that are not directives pass through untouched.

The module-level functions operate on the document text and never touch the
disk; ``SettingsFile`` wraps them for a file on disk.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from patch_errors import IOFailure

CONFIG_RELATIVE_PATH = Path("WTF") / "Config.wtf"

_log = logging.getLogger(__name__)


def _directive_re(key: str) -> re.Pattern[str]:
    # One whole line: optional indent, SET, key, quoted value, line terminator.
    return re.compile(
        rf'^([ \t]*SET[ \t]+{re.escape(key)}[ \t]+")([^"\r\n]*)("[^\r\n]*)(\r\n|\n|\r|\Z)',
        re.MULTILINE,
    )


def _check_value(value: str):
    if '"' in value or "\n" in value or "\r" in value:
        raise ValueError(f"Setting values cannot contain quotes or newlines: {value!r}")


def format_directive(key: str, value: str) -> str:
    _check_value(value)
    return f'SET {key} "{value}"'


def get(doc: str, key: str) -> str | None:
    """Value of the first ``key`` directive in ``doc``, or None if absent."""
    m = _directive_re(key).search(doc)
    return m.group(2) if m else None


def is_set(doc: str, key: str, expected: str) -> bool:
    """True only if ``key`` is present with exactly ``expected`` as its value."""
    return get(doc, key) == expected


def upsert(doc: str, key: str, value: str) -> str:
    """Set ``key`` to ``value``.

    An existing directive keeps its line position; otherwise a new
    newline-terminated line is appended.
    """
    _check_value(value)
    pattern = _directive_re(key)
    if pattern.search(doc):
        return pattern.sub(lambda m: m.group(1) + value + m.group(3) + m.group(4), doc)

    if doc and not doc.endswith(("\n", "\r")):
        doc += "\n"
    return doc + format_directive(key, value) + "\n"


def delete(doc: str, key: str) -> str:
    """Remove every ``key`` directive line including its terminator."""
    return _directive_re(key).sub("", doc)


class SettingsFile:
    """A settings document on disk.

    A missing file reads as an empty document. Writes happen only when the
    text actually changes.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @classmethod
    def for_game(cls, game_root: str | Path) -> SettingsFile:
        return cls(Path(game_root) / CONFIG_RELATIVE_PATH)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str:
        if not self.path.exists():
            return ""
        try:
            with open(self.path, "r", encoding="utf-8", errors="surrogateescape", newline="") as fh:
                return fh.read()
        except OSError as exc:
            raise IOFailure(self.path, "read", exc) from exc

    def write(self, text: str):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8", errors="surrogateescape", newline="") as fh:
                fh.write(text)
        except OSError as exc:
            raise IOFailure(self.path, "write", exc) from exc

    def get(self, key: str) -> str | None:
        return get(self.read(), key)

    def is_set(self, key: str, expected: str) -> bool:
        return is_set(self.read(), key, expected)

    def upsert(self, key: str, value: str) -> bool:
        """Returns True if the file was written."""
        before = self.read()
        after = upsert(before, key, value)
        if after == before and self.exists():
            return False
        self.write(after)
        _log.info("Set %s to %s in %s", key, value, self.path.name)
        return True

    def delete(self, key: str) -> bool:
        """Returns True if the file was written."""
        if not self.exists():
            return False
        before = self.read()
        after = delete(before, key)
        if after == before:
            return False
        self.write(after)
        _log.info("Removed setting %s from %s", key, self.path.name)
        return True
