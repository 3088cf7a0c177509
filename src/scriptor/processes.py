"""Helpers for the subprocesses owned by a browser session."""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import threading
from pathlib import Path
from typing import Mapping, Optional, Sequence

LOGGER = logging.getLogger(__name__)


def get_unused_port(host: str = "127.0.0.1") -> int:
    """Return a port number that was free on ``host`` a moment ago."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


class ManagedProcess:
    """A long-running subprocess with log files and crash detection.

    A watcher thread waits on the process; if it exits before :meth:`stop`
    was called the exit is logged as an error and :attr:`crashed` is set.
    :meth:`stop` terminates the process exactly once.
    """

    def __init__(
        self,
        name: str,
        args: Sequence[str],
        *,
        log_directory: Path,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.name = name
        self._args = list(args)
        self._log_directory = log_directory
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._process: Optional[subprocess.Popen[bytes]] = None
        self._watcher: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self.crashed = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def start(self) -> "ManagedProcess":
        self._log_directory.mkdir(parents=True, exist_ok=True)
        environment = dict(os.environ)
        if self._env:
            environment.update(self._env)
        LOGGER.info("Starting %s: %s", self.name, " ".join(self._args))
        with open(self._log_directory / f"{self.name}.log", "ab") as stdout, open(
            self._log_directory / f"{self.name}.err", "ab"
        ) as stderr:
            self._process = subprocess.Popen(
                self._args,
                cwd=str(self._cwd) if self._cwd else None,
                env=environment,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
        self._watcher = threading.Thread(
            target=self._watch,
            name=f"watch-{self.name}",
            daemon=True,
        )
        self._watcher.start()
        return self

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._stopping.is_set():
                return
            self._stopping.set()
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            LOGGER.debug("Terminating %s (pid %s)", self.name, process.pid)
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                LOGGER.warning("%s did not terminate in %ss; killing it", self.name, timeout)
                process.kill()
                process.wait()
        if self._watcher is not None:
            self._watcher.join(timeout=timeout)

    def _watch(self) -> None:
        assert self._process is not None
        returncode = self._process.wait()
        if self._stopping.is_set():
            LOGGER.debug("%s exited with %s after stop", self.name, returncode)
            return
        self.crashed = True
        LOGGER.error(
            "%s exited unexpectedly with code %s (see %s)",
            self.name,
            returncode,
            self._log_directory / f"{self.name}.err",
        )
