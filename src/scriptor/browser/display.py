"""Virtual display, VNC server and window manager for a headed browser."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pyvirtualdisplay import Display

from ..errors import SessionSetupError
from ..processes import ManagedProcess

LOGGER = logging.getLogger(__name__)


@dataclass
class VNCConnectionInfo:
    """Details for connecting to the VNC server."""

    host: str
    port: int
    display: str


class DisplayStack:
    """Manage an Xvfb display, an x11vnc server and an lwm window manager.

    The three are started and torn down together. The display is not exported
    to the global environment; pass :attr:`env` to the browser instead.
    """

    def __init__(
        self,
        log_directory: Path,
        width: int = 1280,
        height: int = 720,
        host: str = "127.0.0.1",
        password: Optional[str] = None,
    ) -> None:
        self._log_directory = log_directory
        self._width = width
        self._height = height
        self._host = host
        self._password = password
        self._display: Optional[Display] = None
        self._vnc: Optional[ManagedProcess] = None
        self._window_manager: Optional[ManagedProcess] = None
        self._connection_info: Optional[VNCConnectionInfo] = None
        self._display_var: Optional[str] = None

    @property
    def env(self) -> dict[str, str]:
        if not self._display_var:
            return {}
        return {"DISPLAY": self._display_var}

    @property
    def connection_info(self) -> Optional[VNCConnectionInfo]:
        return self._connection_info

    @property
    def crashed(self) -> bool:
        return any(
            process is not None and process.crashed
            for process in (self._vnc, self._window_manager)
        )

    def start(self) -> Optional[VNCConnectionInfo]:
        self._log_directory.mkdir(parents=True, exist_ok=True)
        LOGGER.debug("Starting virtual display %sx%s", self._width, self._height)
        try:
            self._display = Display(
                visible=False,
                size=(self._width, self._height),
                manage_global_env=False,
            )
            self._display.start()
        except Exception as exc:
            self._display = None
            raise SessionSetupError(f"Failed to start virtual display: {exc}") from exc
        self._display_var = self._display.new_display_var
        env = self.env

        if shutil.which("lwm") is None:
            LOGGER.warning("lwm not found; continuing without a window manager")
        else:
            self._window_manager = ManagedProcess(
                "lwm", ["lwm"], log_directory=self._log_directory, env=env
            ).start()

        if shutil.which("x11vnc") is None:
            LOGGER.warning("x11vnc not found; the browser is not reachable via VNC")
            return None
        display_number = self._display_var.lstrip(":").split(".")[0]
        port = 5900 + int(display_number)
        args = [
            "x11vnc",
            "-display",
            self._display_var,
            "-rfbport",
            str(port),
            "-forever",
            "-shared",
            "-quiet",
        ]
        if self._password:
            args.extend(["-passwd", self._password])
        else:
            args.append("-nopw")
        LOGGER.debug("Launching x11vnc on display %s port %s", self._display_var, port)
        self._vnc = ManagedProcess(
            "x11vnc", args, log_directory=self._log_directory, env=env
        ).start()
        self._connection_info = VNCConnectionInfo(
            host=self._host, port=port, display=self._display_var
        )
        LOGGER.info("Browser display available via VNC at %s:%s", self._host, port)
        return self._connection_info

    def stop(self) -> None:
        if self._vnc is not None:
            self._vnc.stop()
        if self._window_manager is not None:
            self._window_manager.stop()
        if self._display is not None:
            LOGGER.debug("Stopping virtual display")
            self._display.stop()
        self._display = None
        self._vnc = None
        self._window_manager = None
        self._connection_info = None
        self._display_var = None
