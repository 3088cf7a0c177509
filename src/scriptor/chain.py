"""Chains of runs in which each run's output is the next run's input."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from .chain_state import ChainState, load_chain_state, save_chain_state
from .config import ChainConfig, ChainStrategy, RunOptions
from .errors import ChainError, ChainStateError, RunTimeoutError
from .files import CHAIN_STATE_FILE_NAME

LOGGER = logging.getLogger(__name__)

EXIT_CHAINABLE = 0
EXIT_NOT_CHAINABLE = 10
KILL_GRACE_SECONDS = 5.0


class RunExecutor(Protocol):
    """Executes one run of a chain and reports whether it is chainable."""

    def __call__(
        self,
        input_directory: Optional[Path],
        output_directory: Path,
        chain_state_file: Optional[Path],
    ) -> bool:
        """Run once; return the chainable signal."""


@dataclass
class ChainResult:
    """Outcome of :func:`run_chain`."""

    run_directories: list[Path] = field(default_factory=list)
    stopped_by: str = "max"
    next_index: Optional[int] = None

    @property
    def runs(self) -> int:
        return len(self.run_directories)


def run_chain(
    input_directory: Optional[Path],
    parent_output_directory: Path,
    config: ChainConfig,
    executor: RunExecutor,
) -> ChainResult:
    """Run ``executor`` repeatedly until ``config.max`` runs or a non-chainable run.

    Configuration, chain-state and timeout errors propagate to the caller.
    """

    parent_output_directory = Path(parent_output_directory)
    parent_output_directory.mkdir(parents=True, exist_ok=True)
    if config.strategy == ChainStrategy.STATE:
        driver: _ChainDriver = _StateChainDriver(input_directory, parent_output_directory, config)
    else:
        driver = _CounterChainDriver(input_directory, parent_output_directory, config)

    result = ChainResult()
    while config.max is None or result.runs < config.max:
        index, run_input = driver.next_run()
        output_directory = parent_output_directory / config.directory_name(index)
        driver.claim(index, output_directory)
        LOGGER.info(
            "Starting run %s of chain in %s (input: %s)", index, output_directory, run_input
        )
        chainable = executor(run_input, output_directory, driver.state_file)
        result.run_directories.append(output_directory)
        result.next_index = driver.completed(index, output_directory)
        LOGGER.info("Run %s finished (chainable=%s)", index, chainable)
        if not chainable:
            result.stopped_by = "not-chainable"
            return result
    result.stopped_by = "max"
    return result


class _ChainDriver(Protocol):
    state_file: Optional[Path]

    def next_run(self) -> tuple[int, Optional[Path]]:
        ...

    def claim(self, index: int, output_directory: Path) -> None:
        ...

    def completed(self, index: int, output_directory: Path) -> int:
        ...


class _CounterChainDriver:
    """Stateless numbering; not resumable after a crash."""

    state_file: Optional[Path] = None

    def __init__(
        self, input_directory: Optional[Path], parent: Path, config: ChainConfig
    ) -> None:
        self._index = config.start
        self._input = input_directory

    def next_run(self) -> tuple[int, Optional[Path]]:
        return self._index, self._input

    def claim(self, index: int, output_directory: Path) -> None:
        if output_directory.exists():
            raise ChainStateError(
                f"Output directory of run {index} already exists: {output_directory}"
            )

    def completed(self, index: int, output_directory: Path) -> int:
        self._index = index + 1
        self._input = output_directory
        return self._index


class _StateChainDriver:
    """Numbering persisted in ``chain.json``; resumable across restarts."""

    def __init__(
        self, input_directory: Optional[Path], parent: Path, config: ChainConfig
    ) -> None:
        self._parent = parent
        self._initial_input = input_directory
        self.state_file: Optional[Path] = parent / CHAIN_STATE_FILE_NAME
        if not self.state_file.exists():
            save_chain_state(self.state_file, ChainState(next_index=config.start))
        self._state = load_chain_state(self.state_file, config.start)

    def next_run(self) -> tuple[int, Optional[Path]]:
        assert self.state_file is not None
        self._state = load_chain_state(self.state_file)
        if self._state.previous is None:
            return self._state.next_index, self._initial_input
        previous = self._parent / self._state.previous
        if not previous.is_dir():
            raise ChainStateError(f"Previous run directory does not exist: {previous}")
        return self._state.next_index, previous

    def claim(self, index: int, output_directory: Path) -> None:
        """Move aside the leftovers of an earlier attempt at run ``index``."""

        if not output_directory.exists() and not output_directory.is_symlink():
            return
        attempt = 1
        while True:
            failed = output_directory.with_name(f"{output_directory.name}.failed-{attempt}")
            if not failed.exists() and not failed.is_symlink():
                break
            attempt += 1
        LOGGER.warning(
            "Run %s did not complete in an earlier attempt; moving %s to %s",
            index,
            output_directory,
            failed,
        )
        output_directory.rename(failed)

    def completed(self, index: int, output_directory: Path) -> int:
        assert self.state_file is not None
        state = load_chain_state(self.state_file)
        if state.next_index != index + 1 or state.previous != output_directory.name:
            raise ChainStateError(
                f"Chain state did not advance after run {index}: {state.to_json()}"
            )
        self._state = state
        return state.next_index


class InProcessRunExecutor:
    """Run each chain step in this process; no timeout is enforced."""

    def __init__(
        self,
        script_directory: Path,
        options: RunOptions,
        run: Optional[Callable[..., bool]] = None,
    ) -> None:
        self._script_directory = script_directory
        self._options = options
        if run is None:
            from .runner import run as run_once

            run = run_once
        self._run = run

    def __call__(
        self,
        input_directory: Optional[Path],
        output_directory: Path,
        chain_state_file: Optional[Path],
    ) -> bool:
        return self._run(
            self._script_directory,
            input_directory,
            output_directory,
            self._options,
            chain_state_file=chain_state_file,
        )


class SubprocessRunExecutor:
    """Run each chain step as ``python -m scriptor run`` in its own process group.

    A run exceeding ``timeout`` seconds has its whole process group terminated
    and raises :class:`RunTimeoutError`.
    """

    def __init__(
        self,
        script_directory: Path,
        run_arguments: Sequence[str] = (),
        timeout: Optional[float] = None,
        python: str = sys.executable,
    ) -> None:
        self._script_directory = script_directory
        self._run_arguments = list(run_arguments)
        self._timeout = timeout
        self._python = python

    def command(
        self,
        input_directory: Optional[Path],
        output_directory: Path,
        chain_state_file: Optional[Path],
    ) -> list[str]:
        command = [
            self._python,
            "-m",
            "scriptor",
            "run",
            "--script-directory",
            str(self._script_directory),
            "--output-directory",
            str(output_directory),
        ]
        if input_directory is not None:
            command.extend(["--input", str(input_directory)])
        if chain_state_file is not None:
            command.extend(["--chain-state-file", str(chain_state_file)])
        command.extend(self._run_arguments)
        return command

    def __call__(
        self,
        input_directory: Optional[Path],
        output_directory: Path,
        chain_state_file: Optional[Path],
    ) -> bool:
        command = self.command(input_directory, output_directory, chain_state_file)
        LOGGER.info("Spawning run: %s", " ".join(command))
        process = subprocess.Popen(command, start_new_session=True)
        try:
            returncode = process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired as exc:
            LOGGER.error("Run in %s exceeded %ss; killing it", output_directory, self._timeout)
            _kill_process_group(process)
            raise RunTimeoutError(
                f"Run in {output_directory} exceeded the timeout of {self._timeout}s"
            ) from exc
        if returncode == EXIT_CHAINABLE:
            return True
        if returncode == EXIT_NOT_CHAINABLE:
            return False
        raise ChainError(f"Run in {output_directory} failed with exit code {returncode}")


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        LOGGER.warning("Process group %s ignored SIGTERM; sending SIGKILL", process.pid)
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        process.wait()
