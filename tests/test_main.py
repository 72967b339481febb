import logging
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from main import install_crash_logging, parse_args, run
from patch_errors import NotRunning
from patcher import CROSSOVER_LOADER_DIR, PATCHED_WINELOADER

logger = logging.getLogger("silicon_patcher.test")


def cli(*argv):
    return parse_args(list(argv))


def test_parse_args_defaults():
    args = cli("patch")
    assert args.command == "patch"
    assert args.target == "all"


def test_patch_status_unpatch_cycle(roots, payload_dir, mock_codesign, tmp_path):
    game, crossover = roots
    common = (
        "--profile", str(tmp_path / "no-profile.json"),
        "--game-path", str(game),
        "--crossover-path", str(crossover),
        "--payloads", str(payload_dir),
    )

    assert run(cli(*common, "status"), logger) == 1
    assert run(cli(*common, "patch"), logger) == 0
    assert (game / "winerosetta.dll").exists()
    assert (crossover / CROSSOVER_LOADER_DIR / PATCHED_WINELOADER).exists()
    assert run(cli(*common, "status"), logger) == 0

    assert run(cli(*common, "unpatch", "game"), logger) == 0
    assert not (game / "winerosetta.dll").exists()
    assert (crossover / CROSSOVER_LOADER_DIR / PATCHED_WINELOADER).exists()


def test_invalid_profile_exit_code(tmp_path):
    profile = tmp_path / "profile.json"
    profile.write_text('{"profile_version": "9.0"}')
    assert run(cli("--profile", str(profile), "status"), logger) == 2


def test_launch_refuses_unpatched_roots(roots, payload_dir, tmp_path):
    game, crossover = roots
    args = cli(
        "--profile", str(tmp_path / "no-profile.json"),
        "--game-path", str(game),
        "--crossover-path", str(crossover),
        "--payloads", str(payload_dir),
        "launch",
    )
    assert run(args, logger) == 1


def test_crash_logging_routes_uncaught_exceptions(tmp_path, caplog):
    with patch.object(sys, "excepthook"), patch.object(threading, "excepthook"), \
            patch("main.faulthandler.enable") as enable:
        crash_log = install_crash_logging(logger, tmp_path)
        hook, thread_hook = sys.excepthook, threading.excepthook
    crash_log.close()
    enable.assert_called_once()
    assert (tmp_path / "crash.log").exists()

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        hook(*sys.exc_info())
        thread_hook(
            SimpleNamespace(
                exc_type=RuntimeError,
                exc_value=sys.exc_info()[1],
                exc_traceback=sys.exc_info()[2],
                thread=SimpleNamespace(name="game-waiter"),
            )
        )

    messages = [r.getMessage() for r in caplog.records if r.levelno == logging.CRITICAL]
    assert "Uncaught exception" in messages
    assert "Uncaught exception in thread game-waiter" in messages


def test_ctrl_c_after_game_exit_is_clean(roots, payload_dir, tmp_path):
    game, crossover = roots
    supervisor = MagicMock()
    supervisor.wait.side_effect = [KeyboardInterrupt, True]
    supervisor.stop.side_effect = NotRunning()
    args = cli(
        "--profile", str(tmp_path / "no-profile.json"),
        "--game-path", str(game),
        "--crossover-path", str(crossover),
        "--payloads", str(payload_dir),
        "launch",
        "--force",
    )

    with patch("main.launch_game", return_value=supervisor):
        assert run(args, logger) == 0
    supervisor.stop.assert_called_once()
