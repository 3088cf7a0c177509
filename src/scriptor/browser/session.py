"""Browser sessions: one Playwright persistent context plus the processes it owns."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from ..config import ReplayMode
from ..errors import SessionSetupError
from ..files import BROWSER_CONTEXT_TRACE_FILE

LOGGER = logging.getLogger(__name__)

BROWSER_TYPES = ("chromium", "firefox", "webkit")
BROWSER_TYPE_OPTION = "browser_type"
BROWSER_TYPE_DEFAULT = "chromium"

# https://xkcd.com/221/
UNRANDOMIZE_CONSTANT_SCRIPT = "Math.random = () => 0.4;"


class OwnedResource(Protocol):
    """Something a session started and has to stop on close."""

    crashed: bool

    def stop(self) -> None:
        """Stop the resource."""


class SessionState(str, enum.Enum):
    """Lifecycle states of a browser session."""

    CREATED = "created"
    CONFIGURED = "configured"
    LAUNCHED = "launched"
    TRACE_STOPPED = "trace_stopped"
    CLOSED = "closed"


@dataclass
class ContextSpec:
    """Everything needed to launch one named browser context."""

    name: str
    options: dict[str, Any] = field(default_factory=dict)
    har: bool = False
    tracing: bool = False
    video: Optional[float] = None
    warc: bool = False
    replay: ReplayMode = ReplayMode.NOT

    @property
    def browser_type(self) -> str:
        return self.options.get(BROWSER_TYPE_OPTION) or BROWSER_TYPE_DEFAULT

    def launch_options(self) -> dict[str, Any]:
        """Return the options for ``launch_persistent_context``."""

        return {key: value for key, value in self.options.items() if key != BROWSER_TYPE_OPTION}


class BrowserSession:
    """A launched browser context bound to its output directory.

    The session owns every subprocess (display, archival proxy) started for
    it. :meth:`close` tears everything down exactly once.
    """

    def __init__(
        self,
        spec: ContextSpec,
        directory: Path,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.spec = spec
        self.directory = directory
        self.state = SessionState.CREATED
        self.context: Any = None
        self._logger = logger or logging.LoggerAdapter(LOGGER, {})
        self._resources: list[OwnedResource] = []
        self._tracing = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def trace_path(self) -> Path:
        return self.directory / BROWSER_CONTEXT_TRACE_FILE

    def own(self, resource: OwnedResource) -> OwnedResource:
        """Register ``resource`` to be stopped when the session closes."""

        self._resources.append(resource)
        return resource

    def mark_configured(self) -> None:
        self.state = SessionState.CONFIGURED

    async def launch(self, playwright: Any, user_data_directory: Path) -> Any:
        browser_type = self.spec.browser_type
        if browser_type not in BROWSER_TYPES:
            raise SessionSetupError(
                f"Unsupported browser type '{browser_type}' for context '{self.name}'"
            )
        self._logger.info("Launching %s with user data in %s", browser_type, user_data_directory)
        launcher = getattr(playwright, browser_type)
        try:
            self.context = await launcher.launch_persistent_context(
                str(user_data_directory),
                **self.spec.launch_options(),
            )
        except Exception as exc:
            raise SessionSetupError(
                f"Failed to launch browser for context '{self.name}': {exc}"
            ) from exc
        self.state = SessionState.LAUNCHED
        return self.context

    async def start_tracing(self) -> None:
        self._require_context()
        self._logger.info("Starting trace")
        await self.context.tracing.start(name="run", screenshots=True, snapshots=True)
        self._tracing = True

    async def unrandomize(self) -> None:
        self._require_context()
        self._logger.info("Replacing Math.random by a constant")
        await self.context.add_init_script(script=UNRANDOMIZE_CONSTANT_SCRIPT)

    async def stop_tracing(self) -> None:
        if self._tracing and self.context is not None:
            self._tracing = False
            self._logger.info("Writing trace to %s", self.trace_path)
            await self.context.tracing.stop(path=str(self.trace_path))
        if self.state == SessionState.LAUNCHED:
            self.state = SessionState.TRACE_STOPPED

    async def close(self) -> None:
        """Stop tracing, close the browser and stop all owned processes."""

        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        try:
            try:
                await self.stop_tracing()
            finally:
                if self.context is not None:
                    self._logger.debug("Closing browser context")
                    await self.context.close()
        finally:
            self._stop_resources()
        self._logger.info("Session closed")

    def _stop_resources(self) -> None:
        resources, self._resources = self._resources, []
        failures: list[Exception] = []
        for resource in reversed(resources):
            try:
                resource.stop()
            except Exception as exc:
                self._logger.exception("Failed to stop %s", type(resource).__name__)
                failures.append(exc)
            if resource.crashed:
                self._logger.error(
                    "%s crashed while the session was running", type(resource).__name__
                )
        if failures:
            raise failures[0]

    def _require_context(self) -> None:
        if self.context is None:
            raise SessionSetupError(f"Browser context '{self.name}' is not launched")
