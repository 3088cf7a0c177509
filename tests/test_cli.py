from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from scriptor import cli
from scriptor.chain import ChainResult
from scriptor.config import ReplayMode
from scriptor.errors import SessionSetupError


def _capture_run(calls: dict[str, object], result: bool = True):
    def fake_run(script_directory, input_directory, output_directory, options, *, chain_state_file=None):
        calls["script_directory"] = script_directory
        calls["input_directory"] = input_directory
        calls["output_directory"] = output_directory
        calls["options"] = options
        calls["chain_state_file"] = chain_state_file
        if input_directory is not None:
            calls["input_files"] = sorted(entry.name for entry in Path(input_directory).iterdir())
            config = Path(input_directory) / "config.json"
            if config.exists():
                calls["input_config"] = json.loads(config.read_text())
        return result

    return fake_run


def test_run_command_chainable(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    calls: dict[str, object] = {}
    monkeypatch.setattr(cli.runner, "run", _capture_run(calls, True))
    input_directory = tmp_path / "input"
    input_directory.mkdir()

    result = CliRunner().invoke(
        cli.app,
        [
            "run",
            "-s",
            str(tmp_path / "script"),
            "-o",
            str(tmp_path / "output"),
            "-i",
            str(input_directory),
            "--replay",
            "rw",
            "--no-har",
            "--video-scale",
            "0.5",
            "-x",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "is chainable" in result.output
    options = calls["options"]
    assert options.replay == ReplayMode.READ_WRITE
    assert options.har is False
    assert options.tracing is True
    assert options.video == 0.5
    assert options.insecure is True
    assert calls["input_directory"] == input_directory
    assert calls["chain_state_file"] is None


def test_run_command_not_chainable_exit_code(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli.runner, "run", _capture_run({}, False))

    result = CliRunner().invoke(
        cli.app, ["run", "-s", str(tmp_path), "-o", str(tmp_path / "output")]
    )

    assert result.exit_code == cli.EXIT_NOT_CHAINABLE


def test_run_command_inline_json_input(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    calls: dict[str, object] = {}
    monkeypatch.setattr(cli.runner, "run", _capture_run(calls))

    result = CliRunner().invoke(
        cli.app,
        ["run", "-s", str(tmp_path), "-o", str(tmp_path / "output"), "-i", '{"url": "https://example.org"}'],
    )

    assert result.exit_code == 0, result.output
    assert calls["input_files"] == ["config.json"]
    assert calls["input_config"] == {"url": "https://example.org"}
    assert not Path(calls["input_directory"]).exists()


def test_run_command_reads_input_from_stdin(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    calls: dict[str, object] = {}
    monkeypatch.setattr(cli.runner, "run", _capture_run(calls))

    result = CliRunner().invoke(
        cli.app,
        ["run", "-s", str(tmp_path), "-o", str(tmp_path / "output"), "-i", "-"],
        input='{"url": "https://example.com"}',
    )

    assert result.exit_code == 0, result.output
    assert calls["input_config"] == {"url": "https://example.com"}


def test_run_command_rejects_non_empty_output(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    calls: dict[str, object] = {}
    monkeypatch.setattr(cli.runner, "run", _capture_run(calls))
    output_directory = tmp_path / "output"
    output_directory.mkdir()
    (output_directory / "leftover.txt").write_text("x")

    result = CliRunner().invoke(cli.app, ["run", "-s", str(tmp_path), "-o", str(output_directory)])

    assert result.exit_code == cli.EXIT_ERROR
    assert "not empty" in result.output
    assert calls == {}


def test_run_command_reports_setup_errors(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    def failing_run(*args, **kwargs):
        raise SessionSetupError("x11vnc exploded")

    monkeypatch.setattr(cli.runner, "run", failing_run)

    result = CliRunner().invoke(cli.app, ["run", "-s", str(tmp_path), "-o", str(tmp_path / "out")])

    assert result.exit_code == cli.EXIT_ERROR
    assert "x11vnc exploded" in result.output


def test_chain_command_uses_subprocess_executor(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    captured: dict[str, object] = {}

    def fake_run_chain(input_directory, parent_output_directory, config, executor):
        captured["config"] = config
        captured["executor"] = executor
        options_file = Path(executor.command(None, tmp_path / "x", None)[-1])
        captured["options"] = json.loads(options_file.read_text())
        return ChainResult(
            run_directories=[parent_output_directory / "run000001"],
            stopped_by="not-chainable",
            next_index=2,
        )

    monkeypatch.setattr(cli, "run_chain", fake_run_chain)

    result = CliRunner().invoke(
        cli.app,
        [
            "chain",
            "-s",
            str(tmp_path / "script"),
            "-o",
            str(tmp_path / "runs"),
            "--chain",
            '{"max": 3, "start": 2}',
            "--strategy",
            "counter",
            "--timeout",
            "60",
            "--no-warc",
        ],
    )

    assert result.exit_code == cli.EXIT_NOT_CHAINABLE, result.output
    config = captured["config"]
    assert (config.max, config.start, config.strategy.value) == (3, 2, "counter")
    assert isinstance(captured["executor"], cli.SubprocessRunExecutor)
    assert captured["options"]["warc"] is False
    assert captured["options"]["timeout"] == 60
    assert "stopped by not-chainable" in result.output


def test_chain_command_rejects_bad_chain_config(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cli.app,
        ["chain", "-s", str(tmp_path), "-o", str(tmp_path / "runs"), "--chain", '{"pattern": "run"}'],
    )

    assert result.exit_code == cli.EXIT_ERROR


def test_version_command() -> None:
    result = CliRunner().invoke(cli.app, ["version"])

    assert result.exit_code == 0
    assert result.output.strip()
