"""Persisted position of a chain of runs."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .errors import ChainStateError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainState:
    """Index of the next run and directory name of the previous run."""

    next_index: int
    previous: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"nextIndex": self.next_index}
        if self.previous is not None:
            data["previous"] = self.previous
        return data

    def advanced(self, run_directory_name: str) -> "ChainState":
        return ChainState(next_index=self.next_index + 1, previous=run_directory_name)


def load_chain_state(path: Path, start: int = 1) -> ChainState:
    """Read the chain state from ``path``; a missing file means a first run at ``start``."""

    if not path.exists():
        return ChainState(next_index=start)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ChainStateError(f"Cannot read chain state {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ChainStateError(f"Chain state {path} is not a JSON object")

    next_index = data.get("nextIndex", start)
    if isinstance(next_index, bool) or not isinstance(next_index, int):
        raise ChainStateError(
            f"chain nextIndex is not a positive integer but a {type(next_index).__name__}"
        )
    if next_index < 1:
        raise ChainStateError(f"chain nextIndex is not a positive integer but {next_index}")

    previous = data.get("previous")
    if previous is not None and (not isinstance(previous, str) or not previous):
        raise ChainStateError(f"chain previous is not a directory name: {previous!r}")
    if previous is not None and Path(previous).name != previous:
        raise ChainStateError(f"chain previous must be a plain directory name: {previous!r}")
    return ChainState(next_index=next_index, previous=previous)


def save_chain_state(path: Path, state: ChainState) -> None:
    """Atomically replace the chain state file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    descriptor, temporary = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump(state.to_json(), handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temporary, path)
    except BaseException:
        if os.path.exists(temporary):
            os.unlink(temporary)
        raise


def advance_chain_state(path: Path, run_directory: Path) -> ChainState:
    """Record ``run_directory`` as the previous run and increment the index."""

    state = load_chain_state(path).advanced(run_directory.name)
    save_chain_state(path, state)
    LOGGER.info("Advanced chain state %s to %s", path, state.to_json())
    return state
