from __future__ import annotations

import json
from pathlib import Path

import pytest

from scriptor.errors import ConfigurationError
from scriptor.files import BROWSER_CONTEXT_OPTIONS_FILE_NAME, SCRIPT_OPTIONS_FILE_NAME
from scriptor.options import get_existing, read_options


def _write_json(path: Path, data: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def test_get_existing_skips_missing_files_and_none(tmp_path: Path) -> None:
    script_directory = tmp_path / "script"
    input_directory = tmp_path / "input"
    script_directory.mkdir()
    input_file = _write_json(input_directory / SCRIPT_OPTIONS_FILE_NAME, {"url": "https://example.org"})

    found = get_existing(SCRIPT_OPTIONS_FILE_NAME, [script_directory, None, input_directory])

    assert found == [input_file]


def test_get_existing_looks_into_context_directories(tmp_path: Path) -> None:
    path = _write_json(
        tmp_path / "browserContexts" / "login" / BROWSER_CONTEXT_OPTIONS_FILE_NAME, {}
    )

    assert get_existing(BROWSER_CONTEXT_OPTIONS_FILE_NAME, [tmp_path], "login") == [path]
    assert get_existing(BROWSER_CONTEXT_OPTIONS_FILE_NAME, [tmp_path], "other") == []


def test_get_existing_rejects_empty_file_name(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        get_existing("", [tmp_path])


def test_read_options_later_files_win(tmp_path: Path) -> None:
    first = _write_json(tmp_path / "a.json", {"url": "https://a.example", "depth": 1, "nested": {"x": 1}})
    second = _write_json(tmp_path / "b.json", {"url": "https://b.example", "nested": {"y": 2}})

    options = read_options([first, second], defaults={"depth": 0, "waitEvent": "load"})

    assert options == {
        "url": "https://b.example",
        "depth": 1,
        "waitEvent": "load",
        "nested": {"y": 2},
    }


def test_read_options_uses_defaults_without_files() -> None:
    assert read_options([], defaults={"waitEvent": "load"}) == {"waitEvent": "load"}


def test_read_options_names_missing_required_key(tmp_path: Path) -> None:
    path = _write_json(tmp_path / "config.json", {"depth": 2})

    with pytest.raises(ConfigurationError, match="'url'"):
        read_options([path], required=["url"])


def test_read_options_rejects_non_objects(tmp_path: Path) -> None:
    path = _write_json(tmp_path / "config.json", ["not", "an", "object"])

    with pytest.raises(ConfigurationError):
        read_options([path])


def test_read_options_rejects_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{broken")

    with pytest.raises(ConfigurationError):
        read_options([path])
