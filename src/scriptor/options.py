"""Layered JSON options resolution.

A typical sequence to read the options of a script is::

    options = read_options(
        get_existing(SCRIPT_OPTIONS_FILE_NAME, [script_directory, input_directory]),
        defaults={"waitEvent": "load"},
        required=["url"],
    )

Properties in later files overwrite those of earlier files and of the
defaults. The merge is shallow: a nested object in a later file replaces the
whole nested object of an earlier one.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, Sequence

from .errors import ConfigurationError
from .files import PathLike, get_context_directory

LOGGER = logging.getLogger(__name__)


def get_existing(
    file_name: str,
    base_directories: Sequence[Optional[PathLike]],
    context_name: Optional[str] = None,
) -> list[Path]:
    """Return the paths of ``file_name`` in those base directories that contain it.

    ``None`` entries are skipped. With a ``context_name`` the file is looked up
    in the respective browser context directory instead. Order is preserved.
    """

    if not isinstance(file_name, str) or not file_name:
        raise ConfigurationError(f"Not a file name: {file_name!r}")
    existing: list[Path] = []
    for base_directory in base_directories:
        if base_directory is None:
            continue
        if context_name is None:
            candidate = Path(base_directory) / file_name
        else:
            candidate = get_context_directory(context_name, base_directory) / file_name
        if candidate.is_file():
            existing.append(candidate)
    return existing


def read_options(
    paths: Iterable[PathLike],
    defaults: Optional[Mapping[str, Any]] = None,
    required: Iterable[str] = (),
) -> dict[str, Any]:
    """Merge the JSON objects in ``paths`` over ``defaults`` and check ``required``."""

    paths = [Path(path) for path in paths]
    options: dict[str, Any] = dict(defaults or {})
    for path in paths:
        options.update(_read_json_object(path))

    for name in required:
        if name not in options:
            searched = ", ".join(str(path) for path in paths) or "<no files>"
            raise ConfigurationError(f"Missing required option '{name}' in: {searched}")
    LOGGER.debug("Resolved options from %s: %s", paths, sorted(options))
    return options


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read options file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Options file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Options file {path} must contain a JSON object, not {type(data).__name__}"
        )
    return data
