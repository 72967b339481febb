#!/usr/bin/env python3
"""Silicon Patcher - Entry Point"""

import argparse
import faulthandler
import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pydantic import ValidationError

from game_launcher import GameSupervisor, launch_game
from patch_errors import ConfigurationError, NotRunning, PatcherError
from patcher import Patcher, PatchStatus
from profile_schema import PROFILE_FILENAME, PatchProfile, load_profile
from resource_installer import open_payload_source

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(message)s"


def setup_logging(verbose: bool = False) -> tuple[logging.Logger, Path]:
    log_dir = Path(os.environ.get("SILICON_PATCHER_LOG_DIR", "~/.silicon_patcher")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "silicon_patcher.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(logging.DEBUG if verbose else logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    root.addHandler(console)

    logger = logging.getLogger("silicon_patcher")
    return logger, log_dir


def install_crash_logging(logger: logging.Logger, log_dir: Path):
    """Log uncaught exceptions, including ones raised in the game output
    and exit-waiter threads, and dump native crashes to ``crash.log``.

    Returns the open crash log file.
    """

    def log_uncaught(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))

    def log_uncaught_in_thread(args: threading.ExceptHookArgs):
        name = args.thread.name if args.thread else "unknown"
        logger.critical(
            "Uncaught exception in thread %s",
            name,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = log_uncaught
    threading.excepthook = log_uncaught_in_thread

    crash_log = open(log_dir / "crash.log", "a", encoding="utf-8")
    faulthandler.enable(crash_log, all_threads=True)
    return crash_log


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Silicon Patcher")
    parser.add_argument("--profile", default=os.environ.get("SILICON_PATCHER_PROFILE", PROFILE_FILENAME))
    parser.add_argument("--game-path")
    parser.add_argument("--crossover-path")
    parser.add_argument("--payloads", help="Payload directory or .zip/.7z/.rar bundle")
    parser.add_argument("-v", "--verbose", action="store_true")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show patch status of both roots")

    for name in ("patch", "unpatch"):
        sub = subparsers.add_parser(name, help=f"{name.capitalize()} the game and/or CrossOver")
        sub.add_argument("target", choices=("game", "crossover", "all"), nargs="?", default="all")

    subparsers.add_parser("graphics", help="Apply the profile's graphics settings only")

    launch = subparsers.add_parser("launch", help="Launch the game and wait for it to exit")
    launch.add_argument("--force", action="store_true", help="Launch even if patches look incomplete")
    return parser.parse_args(argv)


def build_patcher(args: argparse.Namespace, profile: PatchProfile) -> Patcher:
    source = None
    if args.payloads:
        try:
            source = open_payload_source(args.payloads)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Payload bundle unavailable: {exc}") from exc
    return Patcher(
        args.game_path or profile.game_path,
        args.crossover_path or profile.crossover_path,
        source=source,
    )


def _format_status(label: str, status: PatchStatus) -> str:
    state = "Applied" if status.is_patched else "Not Applied"
    lines = [
        f"{label}: {state}",
        f"  files installed:   {status.files_installed}",
        f"  dlls.txt entries:  {status.manifest_entries_present}",
        f"  settings correct:  {status.settings_correct}",
    ]
    for name, ok in status.toggles.items():
        lines.append(f"    {name}: {'ok' if ok else 'mismatch'}")
    for item in status.missing:
        lines.append(f"  missing: {item}")
    return "\n".join(lines)


def _report_status(logger: logging.Logger, patcher: Patcher, profile: PatchProfile) -> bool:
    patched = True
    for label, query in (
        ("Game", lambda: patcher.query_game_status(profile.graphics, profile.preferences)),
        ("CrossOver", patcher.query_crossover_status),
    ):
        try:
            status = query()
        except PatcherError as exc:
            logger.info("%s: %s", label, exc)
            patched = False
            continue
        logger.info(_format_status(label, status))
        patched = patched and status.is_patched
    return patched


def run(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        profile = load_profile(args.profile)
    except (ValidationError, ValueError) as exc:
        logger.error("Invalid profile %s: %s", args.profile, exc)
        return 2

    patcher = build_patcher(args, profile)

    if args.command == "status":
        return 0 if _report_status(logger, patcher, profile) else 1

    if args.command in ("patch", "unpatch"):
        targets = ("game", "crossover") if args.target == "all" else (args.target,)
        for target in targets:
            if args.command == "patch" and target == "game":
                message = patcher.patch_game(profile.graphics, profile.preferences)
            elif args.command == "patch":
                message = patcher.patch_crossover()
            elif target == "game":
                message = patcher.unpatch_game()
            else:
                message = patcher.unpatch_crossover()
            logger.info("✅ %s", message)
        return 0

    if args.command == "graphics":
        patcher.apply_graphics_settings(profile.graphics, profile.preferences)
        return 0

    if args.command == "launch":
        if not _report_status(logger, patcher, profile) and not args.force:
            logger.error("Not all patches confirmed applied. Re-run with --force to launch anyway.")
            return 1
        supervisor = launch_game(patcher, profile.launch, GameSupervisor.instance())
        try:
            supervisor.wait()
        except KeyboardInterrupt:
            logger.info("Stopping game...")
            try:
                supervisor.stop()
            except NotRunning:
                logger.debug("Game had already exited")
            supervisor.wait()
        return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging(args.verbose)
    install_crash_logging(logger, log_dir)
    logger.debug("Starting Silicon Patcher")

    try:
        return run(args, logger)
    except PatcherError as exc:
        logger.error("❌ %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
