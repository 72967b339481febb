"""
Silicon Patcher - Game Launcher

Builds the launch command for the patched game and supervises the single
game process: output capture, liveness and stop.

The supervisor moves through IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE.
Only the exit-waiter thread ever moves it back to IDLE, so ``is_running()``
can never report a process as gone before it actually is.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from patch_errors import (
    AlreadyRunning,
    ConfigurationError,
    NotRunning,
    PatchNotApplied,
    SpawnError,
)
from patcher import CROSSOVER_LOADER_DIR, PATCHED_WINELOADER, RUNTIME_DIR, Patcher
from profile_schema import LaunchSettings

_log = logging.getLogger(__name__)
_game_log = logging.getLogger("game")

DEFAULT_KILL_TIMEOUT = 10.0  # seconds between SIGINT and SIGKILL
READER_JOIN_TIMEOUT = 1.0

LineCallback = Callable[[str, str], None]  # (stream name, line)


class SupervisorState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class LaunchCommand:
    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] | None = field(default=None, repr=False)


class GameSupervisor:
    """Owns at most one game process.

    ``GameSupervisor.instance()`` is the process-wide supervisor callers
    should share. Other instances may exist, but only one of them can have a
    game process at a time: the ``_active`` slot is claimed in ``start()``
    and released by the exit waiter.
    """

    _instance: GameSupervisor | None = None
    _instance_lock = threading.Lock()

    # Lock order: _active_lock before any instance's _lock.
    _active: GameSupervisor | None = None
    _active_lock = threading.Lock()

    @classmethod
    def instance(cls) -> GameSupervisor:
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def __init__(
        self,
        line_callback: Optional[LineCallback] = None,
        kill_timeout: float | None = DEFAULT_KILL_TIMEOUT,
    ):
        # Guards _process, _state and _kill_timer together.
        self._lock = threading.Lock()
        self._state_changed = threading.Condition(self._lock)
        self._process: subprocess.Popen | None = None
        self._state = SupervisorState.IDLE
        self._kill_timer: threading.Timer | None = None
        self._line_cb = line_callback
        self.kill_timeout = kill_timeout

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process else None

    def is_running(self) -> bool:
        with self._lock:
            return self._state is not SupervisorState.IDLE

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the supervisor is idle. Returns False on timeout."""
        with self._state_changed:
            return self._state_changed.wait_for(
                lambda: self._state is SupervisorState.IDLE, timeout
            )

    # ── Start ─────────────────────────────────────────────────────────

    def start(self, command: LaunchCommand) -> int:
        """Spawn the game and return its pid.

        Raises ``AlreadyRunning`` if a game is already supervised and
        ``SpawnError`` if the process could not be created. Anything that
        goes wrong after the spawn is only logged.
        """
        with GameSupervisor._active_lock, self._lock:
            if self._state is not SupervisorState.IDLE:
                raise AlreadyRunning()
            if GameSupervisor._active is not None:
                raise AlreadyRunning("another game process is already running")
            GameSupervisor._active = self
            self._state = SupervisorState.STARTING

        _log.info("Launching game: %s", " ".join(command.argv))
        try:
            proc = subprocess.Popen(
                command.argv,
                cwd=str(command.cwd) if command.cwd else None,
                env=command.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except (OSError, ValueError) as exc:
            with GameSupervisor._active_lock, self._lock:
                GameSupervisor._active = None
                self._state = SupervisorState.IDLE
                self._state_changed.notify_all()
            raise SpawnError(f"failed to launch game: {exc}") from exc

        with self._lock:
            self._process = proc
            self._state = SupervisorState.RUNNING

        readers = [
            threading.Thread(
                target=self._drain, args=(proc.stdout, "STDOUT"), name="game-stdout", daemon=True
            ),
            threading.Thread(
                target=self._drain, args=(proc.stderr, "STDERR"), name="game-stderr", daemon=True
            ),
        ]
        for reader in readers:
            reader.start()
        threading.Thread(
            target=self._wait_for_exit, args=(proc, readers), name="game-waiter", daemon=True
        ).start()

        _log.info("Game launched with pid %d", proc.pid)
        return proc.pid

    def _drain(self, stream, label: str):
        with stream:
            for raw in stream:
                line = raw.rstrip("\r\n")
                _game_log.info("GAME %s: %s", label, line)
                if self._line_cb is None:
                    continue
                try:
                    self._line_cb(label, line)
                except Exception:
                    _log.exception("Game output callback failed")

    def _wait_for_exit(self, proc: subprocess.Popen, readers: list[threading.Thread]):
        returncode = proc.wait()
        # Helper processes (e.g. wineserver) can inherit the pipes and keep
        # them open, so don't wait long for the readers.
        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT)

        if returncode == 0:
            _log.info("Game process ended successfully")
        else:
            _log.info("Game process ended with exit code %d", returncode)

        with GameSupervisor._active_lock, self._lock:
            if self._process is proc:
                GameSupervisor._active = None
                self._process = None
                self._state = SupervisorState.IDLE
                if self._kill_timer is not None:
                    self._kill_timer.cancel()
                    self._kill_timer = None
                self._state_changed.notify_all()

    # ── Stop ──────────────────────────────────────────────────────────

    def stop(self):
        """Ask the game to exit; does not wait for it.

        Sends SIGINT and falls back to a hard kill if signalling fails or the
        game is still alive ``kill_timeout`` seconds later.
        """
        with self._lock:
            proc = self._process
            if proc is None or self._state in (SupervisorState.IDLE, SupervisorState.STARTING):
                raise NotRunning()
            self._state = SupervisorState.STOPPING

            try:
                proc.send_signal(signal.SIGINT)
                _log.info("Sent interrupt to game process %d", proc.pid)
            except (OSError, ValueError) as exc:
                _log.warning("Interrupt failed (%s), killing game process %d", exc, proc.pid)
                self._kill(proc)
                return

            if self._kill_timer is None and self.kill_timeout is not None:
                timer = threading.Timer(self.kill_timeout, self._force_kill, args=(proc,))
                timer.daemon = True
                self._kill_timer = timer
                timer.start()

    def _force_kill(self, proc: subprocess.Popen):
        with self._lock:
            self._kill_timer = None
            if self._process is not proc or proc.poll() is not None:
                return
            _log.warning(
                "Game did not exit %.0fs after interrupt, killing process %d",
                self.kill_timeout, proc.pid,
            )
            self._kill(proc)

    @staticmethod
    def _kill(proc: subprocess.Popen):
        try:
            proc.kill()
        except ProcessLookupError:
            _log.debug("Game process %d already gone", proc.pid)


# ── Launch assembly ───────────────────────────────────────────────────


def build_launch_command(
    game_root: str | Path | None,
    crossover_root: str | Path | None,
    launch: LaunchSettings,
) -> LaunchCommand:
    """Assemble ``rosettax87 wineloader2 WoW.exe`` with its environment.

    Raises ``PatchNotApplied`` when any of the three is missing.
    """
    if not game_root:
        raise ConfigurationError("game path not set. Please set it first.")
    if not crossover_root:
        raise ConfigurationError("CrossOver path not set. Please set it first.")
    game_root = Path(game_root)
    rosetta = game_root / RUNTIME_DIR / "rosettax87"
    wineloader = Path(crossover_root) / CROSSOVER_LOADER_DIR / PATCHED_WINELOADER
    exe = game_root / launch.executable

    if not rosetta.exists():
        raise PatchNotApplied(
            f"rosetta executable not found at {rosetta}. Ensure game patching was successful"
        )
    if not wineloader.exists():
        raise PatchNotApplied(
            f"patched wineloader2 not found at {wineloader}. "
            "Ensure CrossOver patching was successful"
        )
    if not exe.exists():
        raise PatchNotApplied(
            f"game executable not found at {exe}. Ensure your game directory is correct"
        )

    env = dict(os.environ)
    env.update(launch.custom_env())
    env.update(
        {
            "WINEDLLOVERRIDES": "d3d9=n,b",
            "MTL_HUD_ENABLED": "1" if launch.enable_metal_hud else "0",
            "MVK_CONFIG_SYNCHRONOUS_QUEUE_SUBMITS": "1",
            "DXVK_ASYNC": "1",
        }
    )
    return LaunchCommand(argv=[str(rosetta), str(wineloader), str(exe)], cwd=game_root, env=env)


def delete_wdb_cache(game_root: str | Path) -> list[Path]:
    """Remove the game's WDB cache folders. Failures are logged, not raised."""
    game_root = Path(game_root)
    removed: list[Path] = []
    for wdb in (game_root / "WDB", game_root / "Cache" / "WDB"):
        if not wdb.is_dir():
            continue
        _log.info("Auto-deleting WDB directory: %s", wdb)
        try:
            shutil.rmtree(wdb)
            removed.append(wdb)
        except OSError as exc:
            _log.warning("Failed to auto-delete %s: %s", wdb, exc)
    if not removed:
        _log.debug("WDB directory not found, nothing to delete")
    return removed


def launch_game(
    patcher: Patcher,
    launch: LaunchSettings,
    supervisor: GameSupervisor | None = None,
) -> GameSupervisor:
    """Prepare the game root and start the game under ``supervisor``."""
    supervisor = supervisor or GameSupervisor.instance()
    if supervisor.is_running():
        raise AlreadyRunning()

    command = build_launch_command(patcher.game_root, patcher.crossover_root, launch)
    if launch.auto_delete_wdb:
        delete_wdb_cache(patcher.game_root)
    patcher.ensure_gx_api_d3d9()

    supervisor.start(command)
    return supervisor
