"""Static helpers for the scriptor directory structure."""

from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

# Directory in the script, input and output directories that holds one
# directory per browser context, named like the context.
BROWSER_CONTEXTS_DIRECTORY = "browserContexts"
BROWSER_CONTEXT_DEFAULT = "default"

SCRIPT_MODULE_FILE_NAME = "Script.py"
SCRIPT_OPTIONS_FILE_NAME = "config.json"
BROWSER_CONTEXT_OPTIONS_FILE_NAME = "browser-options.json"

BROWSER_CONTEXT_HAR_FILE = "archive.har"
BROWSER_CONTEXT_TRACE_FILE = "trace.zip"
BROWSER_CONTEXT_TRACE_DIRECTORY = "traces"
BROWSER_CONTEXT_USER_DATA_DIRECTORY = "userData"
BROWSER_CONTEXT_VIDEO_DIRECTORY = "video"
BROWSER_CONTEXT_WARC_DIRECTORY = "warcs"
BROWSER_CONTEXT_DISPLAY_DIRECTORY = "display"

LOGS_DIRECTORY = "logs"
LOG_FILE_NAME = "scriptor.log"
IDENTITY_FILE_NAME = "identity.sha256"
INPUT_IDENTITY_FILE_NAME = "input-identity.sha256"
CHAIN_STATE_FILE_NAME = "chain.json"


def get_contexts_directory(base_directory: PathLike) -> Path:
    return Path(base_directory) / BROWSER_CONTEXTS_DIRECTORY


def get_context_directory(context_name: str, base_directory: PathLike) -> Path:
    return get_contexts_directory(base_directory) / context_name


def get_context_directory_names(base_directories: Iterable[Optional[PathLike]]) -> list[str]:
    """Return the sorted union of browser context directory names."""

    names: set[str] = set()
    for base_directory in base_directories:
        if base_directory is None:
            continue
        contexts_directory = get_contexts_directory(base_directory)
        if not contexts_directory.is_dir():
            continue
        names.update(entry.name for entry in contexts_directory.iterdir() if entry.is_dir())
    return sorted(names)


def check_directory(directory: PathLike, name: str) -> Path:
    """Return ``directory`` as a path if it exists and is a directory."""

    path = Path(directory)
    if not path.exists():
        raise ConfigurationError(f"{name} directory '{path}' does not exist.")
    if not path.is_dir():
        raise ConfigurationError(f"{name} directory '{path}' is not a directory.")
    return path


def find_first_directory(
    directory_name: str,
    base_directories: Sequence[Optional[PathLike]],
    context_name: str,
) -> Optional[Path]:
    """Return the first ``<base>/browserContexts/<context>/<directory_name>`` that exists."""

    for base_directory in base_directories:
        if base_directory is None:
            continue
        candidate = get_context_directory(context_name, base_directory) / directory_name
        if candidate.is_dir():
            return candidate
    return None


def copy_tree_writable(source: PathLike, destination: PathLike) -> Path:
    """Copy a directory tree so that the copy is writable by its owner.

    Sources are frequently finished (and thus read-only) outputs of earlier
    runs, so permission bits are not carried over. Symbolic links are copied
    as links; browser profiles contain dangling ones such as ``SingletonLock``.
    """

    destination_path = Path(destination)
    LOGGER.debug("Copying %s to %s", source, destination_path)
    shutil.copytree(
        source,
        destination_path,
        symlinks=True,
        copy_function=shutil.copyfile,
        dirs_exist_ok=True,
    )
    make_tree_writable(destination_path)
    return destination_path


def make_tree_writable(root: PathLike) -> None:
    root_path = Path(root)
    _add_mode(root_path, stat.S_IWUSR)
    for current, directories, files in os.walk(root_path):
        for name in directories + files:
            _add_mode(Path(current) / name, stat.S_IWUSR)


def _add_mode(path: Path, bits: int) -> None:
    if path.is_symlink():
        return
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & bits != bits:
        path.chmod(mode | bits)
