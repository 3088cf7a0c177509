from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
from playwright_fakes import FakePlaywright

from scriptor import archive
from scriptor.browser import contexts
from scriptor.browser.session import UNRANDOMIZE_CONSTANT_SCRIPT, SessionState
from scriptor.config import RunOptions
from scriptor.errors import SessionSetupError
from scriptor.runtime import RunContext


class _FakeProxy:
    def __init__(self, directory: Path, record: bool, port: int) -> None:
        self.directory = directory
        self.record = record
        self.server = f"http://127.0.0.1:{port}"
        self.crashed = False
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def archive_calls(monkeypatch) -> dict[str, list[Any]]:
    calls: dict[str, list[Any]] = {"initialize": [], "reindex": [], "start": []}

    def fake_initialize(directory: Path, *args: Any, **kwargs: Any) -> None:
        calls["initialize"].append(directory)
        directory.mkdir(parents=True, exist_ok=True)

    def fake_reindex(directory: Path, *args: Any, **kwargs: Any) -> None:
        calls["reindex"].append(directory)

    def fake_start(directory: Path, record: bool = True, *, upstream_proxy=None, **kwargs: Any):
        proxy = _FakeProxy(directory, record, 8000 + len(calls["start"]))
        calls["start"].append({"directory": directory, "record": record, "upstream": upstream_proxy, "proxy": proxy})
        return proxy

    monkeypatch.setattr(archive, "initialize", fake_initialize)
    monkeypatch.setattr(archive, "reindex", fake_reindex)
    monkeypatch.setattr(archive, "start", fake_start)
    return calls


def _options(**overrides: Any) -> RunOptions:
    values: dict[str, Any] = {"har": False, "tracing": False, "warc": False}
    values.update(overrides)
    return RunOptions(**values)


def _instantiate(script_directory: Path, input_directory, output_directory: Path, options: RunOptions):
    playwright = FakePlaywright()
    sessions = asyncio.run(
        contexts.instantiate_all(
            script_directory,
            input_directory,
            output_directory,
            RunContext(options=options),
            playwright,
        )
    )
    return sessions, playwright


def _close(sessions) -> None:
    async def _close_all() -> None:
        for session in sessions.values():
            await session.close()

    asyncio.run(_close_all())


def test_default_context_is_created_without_context_directories(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    script_directory.mkdir()
    output_directory = tmp_path / "output"

    sessions, playwright = _instantiate(script_directory, None, output_directory, _options())

    assert list(sessions) == ["default"]
    session = sessions["default"]
    assert session.state == SessionState.LAUNCHED
    context = playwright.launched[0]
    assert Path(context.user_data_directory) == output_directory / "browserContexts" / "default" / "userData"
    assert context.options["viewport"] == {"width": 1280, "height": 720}
    assert context.init_scripts == [UNRANDOMIZE_CONSTANT_SCRIPT]
    written = json.loads((output_directory / "browserContexts" / "default" / "browser-options.json").read_text())
    assert written == {"viewport": {"width": 1280, "height": 720}}
    _close(sessions)
    assert context.closed


def test_context_names_are_union_of_script_and_input(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    input_directory = tmp_path / "input"
    (script_directory / "browserContexts" / "shop").mkdir(parents=True)
    (input_directory / "browserContexts" / "admin").mkdir(parents=True)

    assert contexts.discover_context_names(script_directory, input_directory) == ["admin", "shop"]


def test_input_options_override_script_options(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    input_directory = tmp_path / "input"
    script_context = script_directory / "browserContexts" / "default"
    input_context = input_directory / "browserContexts" / "default"
    script_context.mkdir(parents=True)
    input_context.mkdir(parents=True)
    (script_context / "browser-options.json").write_text(json.dumps({"locale": "en-US", "viewport": {"width": 800, "height": 600}}))
    (input_context / "browser-options.json").write_text(json.dumps({"locale": "de-DE"}))

    sessions, playwright = _instantiate(
        script_directory,
        input_directory,
        tmp_path / "output",
        _options(browser_options={"timezone_id": "UTC"}, unrandomize="not"),
    )

    options = playwright.launched[0].options
    assert options["locale"] == "de-DE"
    assert options["viewport"] == {"width": 800, "height": 600}
    assert options["timezone_id"] == "UTC"
    assert playwright.launched[0].init_scripts == []
    written = json.loads((tmp_path / "output" / "browserContexts" / "default" / "browser-options.json").read_text())
    assert "timezone_id" not in written
    _close(sessions)


def test_recording_options_are_applied(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    script_directory.mkdir()
    output_directory = tmp_path / "output"

    sessions, playwright = _instantiate(
        script_directory,
        None,
        output_directory,
        _options(har=True, tracing=True, video=0.5, insecure=True),
    )

    context_directory = output_directory / "browserContexts" / "default"
    context = playwright.launched[0]
    assert context.options["record_har_path"] == str(context_directory / "archive.har")
    assert context.options["traces_dir"] == str(context_directory / "traces")
    assert context.options["record_video_dir"] == str(context_directory / "video")
    assert context.options["record_video_size"] == {"width": 640, "height": 360}
    assert context.options["ignore_https_errors"] is True
    assert context.tracing.start_kwargs == {"name": "run", "screenshots": True, "snapshots": True}

    _close(sessions)
    assert (context_directory / "trace.zip").read_bytes() == b"trace"
    assert sessions["default"].state == SessionState.CLOSED


def test_warc_recording_starts_record_proxy_through_upstream(tmp_path: Path, archive_calls) -> None:
    script_directory = tmp_path / "script"
    script_directory.mkdir()
    output_directory = tmp_path / "output"

    sessions, playwright = _instantiate(
        script_directory, None, output_directory, _options(warc=True, proxy="socks5://proxy.example:1080")
    )

    warc_directory = output_directory / "browserContexts" / "default" / "warcs"
    assert archive_calls["initialize"] == [warc_directory]
    (start,) = archive_calls["start"]
    assert start["record"] is True
    assert start["upstream"] == "socks5://proxy.example:1080"
    options = playwright.launched[0].options
    assert options["proxy"] == {"server": start["proxy"].server}
    assert options["ignore_https_errors"] is True

    _close(sessions)
    assert start["proxy"].stopped


@pytest.mark.parametrize("mode, record", [("r", False), ("rw", True)])
def test_replay_takes_precedence_over_warc(tmp_path: Path, archive_calls, mode: str, record: bool) -> None:
    script_directory = tmp_path / "script"
    script_directory.mkdir()
    input_directory = tmp_path / "input"
    input_warcs = input_directory / "browserContexts" / "default" / "warcs"
    (input_warcs / "collections" / "scriptor" / "archive").mkdir(parents=True)
    (input_warcs / "collections" / "scriptor" / "archive" / "a.warc.gz").write_bytes(b"warc")
    input_warcs.chmod(0o555)
    output_directory = tmp_path / "output"

    sessions, _ = _instantiate(
        script_directory, input_directory, output_directory, _options(warc=True, replay=mode)
    )

    warc_directory = output_directory / "browserContexts" / "default" / "warcs"
    assert archive_calls["initialize"] == []
    assert archive_calls["reindex"] == [warc_directory]
    assert [call["record"] for call in archive_calls["start"]] == [record]
    assert (warc_directory / "collections" / "scriptor" / "archive" / "a.warc.gz").read_bytes() == b"warc"
    _close(sessions)
    input_warcs.chmod(0o755)


def test_replay_without_archive_fails(tmp_path: Path, archive_calls) -> None:
    script_directory = tmp_path / "script"
    script_directory.mkdir()

    with pytest.raises(SessionSetupError, match="Missing script and input WARC directory"):
        _instantiate(script_directory, None, tmp_path / "output", _options(replay="r"))
    assert archive_calls["start"] == []


def test_user_data_is_copied_from_input(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    script_user_data = script_directory / "browserContexts" / "default" / "userData"
    script_user_data.mkdir(parents=True)
    (script_user_data / "Cookies").write_text("script")
    input_directory = tmp_path / "input"
    input_user_data = input_directory / "browserContexts" / "default" / "userData"
    input_user_data.mkdir(parents=True)
    (input_user_data / "Cookies").write_text("input")
    (input_user_data / "Cookies").chmod(0o444)
    output_directory = tmp_path / "output"

    sessions, _ = _instantiate(script_directory, input_directory, output_directory, _options())

    copied = output_directory / "browserContexts" / "default" / "userData" / "Cookies"
    assert copied.read_text() == "input"
    assert copied.stat().st_mode & 0o200
    _close(sessions)


def test_one_failing_context_closes_the_others(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    (script_directory / "browserContexts" / "good").mkdir(parents=True)
    bad = script_directory / "browserContexts" / "bad"
    bad.mkdir(parents=True)
    (bad / "browser-options.json").write_text(json.dumps({"browser_type": "netscape"}))

    playwright = FakePlaywright()
    with pytest.raises(SessionSetupError, match="Unsupported browser type 'netscape'"):
        asyncio.run(
            contexts.instantiate_all(
                script_directory,
                None,
                tmp_path / "output",
                RunContext(options=_options()),
                playwright,
            )
        )

    assert len(playwright.launched) == 1
    assert playwright.launched[0].closed


def test_browser_type_selects_launcher(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    context_directory = script_directory / "browserContexts" / "default"
    context_directory.mkdir(parents=True)
    (context_directory / "browser-options.json").write_text(json.dumps({"browser_type": "firefox"}))

    sessions, playwright = _instantiate(script_directory, None, tmp_path / "output", _options())

    assert "browser_type" not in playwright.launched[0].options
    assert sessions["default"].spec.browser_type == "firefox"
    _close(sessions)
