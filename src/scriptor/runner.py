"""Execution of a single script run."""

from __future__ import annotations

import asyncio
import enum
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.async_api import async_playwright

from .browser.contexts import instantiate_all
from .browser.session import BrowserSession
from .chain_state import advance_chain_state
from .config import RunOptions
from .errors import ScriptorError
from .files import (
    IDENTITY_FILE_NAME,
    INPUT_IDENTITY_FILE_NAME,
    LOG_FILE_NAME,
    LOGS_DIRECTORY,
    check_directory,
)
from .manifest import finalize
from .runtime import RunContext
from .scripts import ScriptorScript, instantiate

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RunState(str, enum.Enum):
    """States a run passes through; ``LOCKED`` is terminal."""

    VALIDATING = "validating"
    PREPARING_SESSIONS = "preparing-sessions"
    EXECUTING_SCRIPT = "executing-script"
    TEARING_DOWN = "tearing-down"
    HASHING = "hashing"
    LOCKED = "locked"


class ScriptRunner:
    """Run a script once and finalize its output directory."""

    def __init__(
        self,
        script_directory: Path,
        input_directory: Optional[Path],
        output_directory: Path,
        options: Optional[RunOptions] = None,
        *,
        chain_state_file: Optional[Path] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._script_directory = Path(script_directory)
        self._input_directory = Path(input_directory) if input_directory is not None else None
        self._output_directory = Path(output_directory)
        self._context = RunContext(
            options=options or RunOptions(),
            logger=logger or logging.getLogger("scriptor.run"),
        )
        self._chain_state_file = chain_state_file
        self._playwright_factory = playwright_factory
        self.state = RunState.VALIDATING
        self.identity: Optional[str] = None

    async def run(self) -> bool:
        """Run the script and return whether its output is chainable."""

        logger = self._context.logger
        self._set_state(RunState.VALIDATING)
        script = self._validate()
        logger.info("Run options: %s", self._context.options.model_dump(mode="json"))

        chainable = False
        setup_error: Optional[BaseException] = None
        log_handler = self._attach_log_handler()
        try:
            self._set_state(RunState.PREPARING_SESSIONS)
            async with self._playwright_factory() as playwright:
                try:
                    sessions = await instantiate_all(
                        self._script_directory,
                        self._input_directory,
                        self._output_directory,
                        self._context,
                        playwright,
                    )
                except ScriptorError as exc:
                    setup_error = exc
                    sessions = {}
                try:
                    if setup_error is None:
                        chainable = await self._execute(script, sessions)
                finally:
                    self._set_state(RunState.TEARING_DOWN)
                    await self._close_all(sessions)
        finally:
            self._detach_log_handler(log_handler)
            self._set_state(RunState.HASHING)
            self.identity = finalize(self._output_directory)
            self._set_state(RunState.LOCKED)

        if setup_error is not None:
            raise setup_error
        if self._chain_state_file is not None:
            advance_chain_state(self._chain_state_file, self._output_directory)
        logger.info("Run finished (chainable=%s)", chainable)
        return chainable

    def _validate(self) -> ScriptorScript:
        self._script_directory = check_directory(self._script_directory, "Script")
        if self._input_directory is not None:
            self._input_directory = check_directory(self._input_directory, "Input")
        self._output_directory.mkdir(parents=True, exist_ok=True)
        self._output_directory = check_directory(self._output_directory, "Output")
        if self._input_directory is not None:
            input_identity = self._input_directory / IDENTITY_FILE_NAME
            if input_identity.is_file():
                shutil.copyfile(input_identity, self._output_directory / INPUT_IDENTITY_FILE_NAME)
        return instantiate(self._script_directory)

    async def _execute(self, script: ScriptorScript, sessions: dict[str, BrowserSession]) -> bool:
        self._set_state(RunState.EXECUTING_SCRIPT)
        contexts = {name: session.context for name, session in sessions.items()}
        self._context.logger.info("Running %s %s", script.name, script.version)
        try:
            result = await script.run(
                contexts,
                self._script_directory,
                self._input_directory,
                self._output_directory,
            )
        except Exception:
            self._context.logger.exception("Script %s failed", script.name)
            return False
        return bool(result)

    async def _close_all(self, sessions: dict[str, BrowserSession]) -> None:
        for name, session in sessions.items():
            try:
                await session.close()
            except Exception:
                self._context.logger.exception("Failed to close context '%s'", name)

    def _attach_log_handler(self) -> logging.Handler:
        logs_directory = self._output_directory / LOGS_DIRECTORY
        logs_directory.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(logs_directory / LOG_FILE_NAME, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(logging.INFO)
        package_logger = logging.getLogger("scriptor")
        self._previous_level = package_logger.level
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)
        package_logger.addHandler(handler)
        return handler

    def _detach_log_handler(self, handler: logging.Handler) -> None:
        package_logger = logging.getLogger("scriptor")
        package_logger.removeHandler(handler)
        package_logger.setLevel(self._previous_level)
        handler.close()

    def _set_state(self, state: RunState) -> None:
        LOGGER.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state


async def run_script(
    script_directory: Path,
    input_directory: Optional[Path],
    output_directory: Path,
    options: Optional[RunOptions] = None,
    *,
    chain_state_file: Optional[Path] = None,
    playwright_factory: Callable[[], Any] = async_playwright,
) -> bool:
    """Run a script once; see :class:`ScriptRunner`."""

    runner = ScriptRunner(
        script_directory,
        input_directory,
        output_directory,
        options,
        chain_state_file=chain_state_file,
        playwright_factory=playwright_factory,
    )
    return await runner.run()


def run(
    script_directory: Path,
    input_directory: Optional[Path],
    output_directory: Path,
    options: Optional[RunOptions] = None,
    *,
    chain_state_file: Optional[Path] = None,
    playwright_factory: Callable[[], Any] = async_playwright,
) -> bool:
    """Synchronous wrapper around :func:`run_script`."""

    return asyncio.run(
        run_script(
            script_directory,
            input_directory,
            output_directory,
            options,
            chain_state_file=chain_state_file,
            playwright_factory=playwright_factory,
        )
    )
