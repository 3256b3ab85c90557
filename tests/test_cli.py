import asyncio
import importlib
import signal
import threading
from pathlib import Path

import pytest
from typer.testing import CliRunner

from rlexec import __version__
from rlexec.config import Settings
from rlexec.line_source import StreamLineSource
from rlexec.session import Session

cli_module = importlib.import_module("rlexec.cli")


def test_rltee_records_lines_to_output(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rltee_app, ["out.txt"], input="hello\nworld\n")

    assert result.exit_code == 0
    assert (tmp_path / "out.txt").read_text() == "hello\nworld\n"


@pytest.mark.parametrize("args", [[], ["one.txt", "two.txt"]])
def test_rltee_requires_exactly_one_output(args: list[str]) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rltee_app, args)

    assert result.exit_code == 2


def test_rltee_saves_history(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rltee_app, ["-H", "state/history", "out.txt"], input="first\nsecond\n")

    assert result.exit_code == 0
    assert (tmp_path / "state" / "history").read_text() == "first\nsecond\n"


def test_rltee_temp_output_replaces_existing_file(tmp_path: Path) -> None:
    (tmp_path / "out.txt").write_text("old\n")
    runner = CliRunner()
    result = runner.invoke(cli_module.rltee_app, ["-t", "out.txt"], input="new\n")

    assert result.exit_code == 0
    assert (tmp_path / "out.txt").read_text() == "new\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out.txt"]


def test_rlexec_tees_command_output(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["-o", "out.txt", "cat"], input="one\ntwo\n")

    assert result.exit_code == 0
    assert (tmp_path / "out.txt").read_text() == "one\ntwo\n"


def test_rlexec_passes_command_options_through(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["-o", "out.txt", "cat", "-n"], input="one\n")

    assert result.exit_code == 0
    assert "1\tone" in (tmp_path / "out.txt").read_text()


def test_rlexec_exits_with_child_status(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["-o", "out.txt", "--", "sh", "-c", "exit 3"], input="")

    assert result.exit_code == 3


def test_rlexec_missing_command_is_a_setup_error(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli_module.rlexec_app, ["-t", "-o", "out.txt", "rlexec-definitely-not-installed"], input="x\n"
    )

    assert result.exit_code == 1
    assert list(tmp_path.iterdir()) == []


def test_rlexec_without_command_records(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["-o", "rec.txt"], input="x\n")

    assert result.exit_code == 0
    assert (tmp_path / "rec.txt").read_text() == "x\n"


def test_rlexec_output_from_environment(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["cat"], input="a\n", env={"RLEXEC_OUTPUT": "env.txt"})

    assert result.exit_code == 0
    assert (tmp_path / "env.txt").read_text() == "a\n"


def test_rlexec_output_from_config_file(tmp_path: Path) -> None:
    (tmp_path / "custom.yml").write_text("output: cfg.txt\n")
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["-c", "custom.yml", "cat"], input="a\n")

    assert result.exit_code == 0
    assert (tmp_path / "cfg.txt").read_text() == "a\n"


def test_missing_config_file_exits_with_setup_error() -> None:
    runner = CliRunner()
    result = runner.invoke(cli_module.rlexec_app, ["-c", "absent.yml", "cat"], input="")

    assert result.exit_code == 1


@pytest.mark.parametrize("app", [cli_module.rlexec_app, cli_module.rltee_app])
def test_version_flag(app) -> None:
    runner = CliRunner()
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_cancelled_session_exits_with_sigterm_status(monkeypatch) -> None:
    async def _cancelled(session: Session):
        raise asyncio.CancelledError

    monkeypatch.setattr(cli_module, "run_session", _cancelled)
    runner = CliRunner()
    result = runner.invoke(cli_module.rltee_app, ["out.txt"], input="")

    assert result.exit_code == 128 + signal.SIGTERM


@pytest.mark.asyncio
async def test_run_session_cancels_on_sigterm(monkeypatch, tmp_path: Path, scripted) -> None:
    target = tmp_path / "out.txt"
    target.write_text("old\n")
    factory = scripted(["pending"], block_at_end=True)
    session = Session(Settings(temp=True), output=str(target), source_factory=factory)
    handlers: dict[int, object] = {}

    loop = asyncio.get_running_loop()
    original_add = loop.add_signal_handler
    original_remove = loop.remove_signal_handler

    def _add_signal_handler(sig, callback, *args):
        if sig == signal.SIGTERM:
            handlers[sig] = callback
        return original_add(sig, callback, *args)

    def _remove_signal_handler(sig):
        return original_remove(sig)

    monkeypatch.setattr(loop, "add_signal_handler", _add_signal_handler)
    monkeypatch.setattr(loop, "remove_signal_handler", _remove_signal_handler)

    task = asyncio.create_task(cli_module.run_session(session))
    await asyncio.sleep(0.05)
    assert signal.SIGTERM in handlers

    handlers[signal.SIGTERM]()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=1.0)

    assert target.read_text() == "old\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out.txt"]


def test_typed_flags_reach_settings(monkeypatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}
    real_load_settings = cli_module.load_settings

    def _spy(command_name, *, config_file=None, overrides=None):
        captured.update(overrides or {})
        return real_load_settings(command_name, config_file=config_file, overrides=overrides)

    monkeypatch.setattr(cli_module, "load_settings", _spy)
    runner = CliRunner()
    result = runner.invoke(
        cli_module.rlexec_app,
        ["--output", "out.txt", "-p", "sql> ", "-t", "-H", "hist", "cat"],
        input="q\n",
    )

    assert result.exit_code == 0
    assert captured == {"output": "out.txt", "prompt": "sql> ", "temp": True, "history": Path("hist")}
    assert (tmp_path / "out.txt").read_text() == "q\n"
    assert (tmp_path / "hist").read_text() == "q\n"


def test_rltee_typed_flags_reach_settings(monkeypatch) -> None:
    captured: dict[str, object] = {}
    real_load_settings = cli_module.load_settings

    def _spy(command_name, *, config_file=None, overrides=None):
        captured.update(overrides or {})
        return real_load_settings(command_name, config_file=config_file, overrides=overrides)

    monkeypatch.setattr(cli_module, "load_settings", _spy)
    runner = CliRunner()
    result = runner.invoke(cli_module.rltee_app, ["-b", "--log-level", "error", "out.txt"], input="")

    assert result.exit_code == 0
    assert captured == {"buffered": True, "log_level": "error", "output": "out.txt", "prompt": "> "}


@pytest.mark.asyncio
async def test_run_session_resumes_reading_after_sigint(monkeypatch, tmp_path: Path) -> None:
    release = threading.Event()

    class _PipedInput:
        def __iter__(self):
            yield "before\n"
            release.wait(5)
            yield "after\n"

    target = tmp_path / "out.txt"
    session = Session(
        Settings(),
        output=str(target),
        source_factory=lambda settings, history: StreamLineSource(history, _PipedInput()),
    )
    handlers: dict[int, object] = {}

    loop = asyncio.get_running_loop()
    original_add = loop.add_signal_handler
    original_remove = loop.remove_signal_handler

    def _add_signal_handler(sig, callback, *args):
        handlers[sig] = callback
        return original_add(sig, callback, *args)

    def _remove_signal_handler(sig):
        return original_remove(sig)

    monkeypatch.setattr(loop, "add_signal_handler", _add_signal_handler)
    monkeypatch.setattr(loop, "remove_signal_handler", _remove_signal_handler)

    task = asyncio.create_task(cli_module.run_session(session))
    for _ in range(100):
        if target.exists() and target.read_text() == "before\n":
            break
        await asyncio.sleep(0.01)
    assert signal.SIGINT in handlers

    handlers[signal.SIGINT]()
    await asyncio.sleep(0.05)
    assert not task.done()

    release.set()
    outcome = await asyncio.wait_for(task, timeout=5.0)

    assert outcome.exit_code == 0
    assert target.read_text() == "before\nafter\n"
