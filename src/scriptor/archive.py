"""Control wrapper around a pywb record/replay proxy."""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .errors import ArchiveError
from .processes import ManagedProcess, get_unused_port

LOGGER = logging.getLogger(__name__)

COLLECTION_NAME_DEFAULT = "scriptor"
COMMAND_TIMEOUT_DEFAULT = 10.0
STARTUP_TIMEOUT_DEFAULT = 15.0
PROXY_HOST = "127.0.0.1"

PYWB_CONFIG = "proxy:\n  enable_content_rewrite: false\n"


@dataclass
class ArchiveProxy:
    """A running pywb proxy and the local port it listens on."""

    process: ManagedProcess
    port: int
    directory: Path
    record: bool

    @property
    def server(self) -> str:
        return f"http://{PROXY_HOST}:{self.port}"

    @property
    def crashed(self) -> bool:
        return self.process.crashed

    def stop(self) -> None:
        self.process.stop()


def collection_archive_directory(
    directory: Path, collection: str = COLLECTION_NAME_DEFAULT
) -> Path:
    return directory / "collections" / collection / "archive"


def collection_index_directory(
    directory: Path, collection: str = COLLECTION_NAME_DEFAULT
) -> Path:
    return directory / "collections" / collection / "indexes"


def initialize(
    directory: Path,
    collection: str = COLLECTION_NAME_DEFAULT,
    timeout: float = COMMAND_TIMEOUT_DEFAULT,
) -> None:
    """Create a fresh pywb collection in ``directory``."""

    directory.mkdir(parents=True, exist_ok=True)
    _run_wb_manager(directory, ["init", collection], "initialize", timeout)
    (directory / "config.yaml").write_text(PYWB_CONFIG, encoding="utf-8")


def reindex(
    directory: Path,
    collection: str = COLLECTION_NAME_DEFAULT,
    timeout: float = COMMAND_TIMEOUT_DEFAULT,
) -> None:
    """Rebuild the URL index of all WARC files in the collection."""

    if not directory.is_dir():
        raise ArchiveError(f"Archive directory '{directory}' does not exist")
    _run_wb_manager(directory, ["reindex", collection], "reindex", timeout)


def start(
    directory: Path,
    record: bool = True,
    *,
    upstream_proxy: Optional[str] = None,
    collection: str = COLLECTION_NAME_DEFAULT,
    startup_timeout: float = STARTUP_TIMEOUT_DEFAULT,
) -> ArchiveProxy:
    """Start the pywb proxy for ``directory`` on a free local port."""

    port = get_unused_port(PROXY_HOST)
    args = ["wayback", "--bind", PROXY_HOST, "--proxy", collection, "--port", str(port)]
    if record:
        args.append("--proxy-record")
    env = _upstream_proxy_env(upstream_proxy) if upstream_proxy else None
    LOGGER.info(
        "Starting archival proxy for %s on port %s (record=%s, upstream=%s)",
        directory,
        port,
        record,
        upstream_proxy,
    )
    process = ManagedProcess(
        "pywb-start",
        args,
        log_directory=directory,
        cwd=directory,
        env=env,
    )
    try:
        process.start()
    except OSError as exc:
        raise ArchiveError(f"Failed to launch wayback: {exc}") from exc
    proxy = ArchiveProxy(process=process, port=port, directory=directory, record=record)
    try:
        _wait_until_ready(proxy, startup_timeout)
    except ArchiveError:
        process.stop()
        raise
    return proxy


def _wait_until_ready(proxy: ArchiveProxy, timeout: float) -> None:
    deadline = time.monotonic() + timeout
    url = f"{proxy.server}/"
    while time.monotonic() < deadline:
        if not proxy.process.running:
            raise ArchiveError(
                f"wayback exited with code {proxy.process.returncode} before accepting connections"
            )
        try:
            httpx.get(url, timeout=1.0, trust_env=False)
            LOGGER.debug("Archival proxy on port %s is ready", proxy.port)
            return
        except httpx.TransportError:
            time.sleep(0.1)
    raise ArchiveError(f"wayback did not accept connections on port {proxy.port} within {timeout}s")


def _upstream_proxy_env(upstream_proxy: str) -> dict[str, str]:
    # pywb tunnels live-web traffic through SOCKS_HOST/SOCKS_PORT
    parts = urlsplit(upstream_proxy if "://" in upstream_proxy else f"socks5://{upstream_proxy}")
    if not parts.hostname or not parts.port:
        raise ArchiveError(f"Upstream proxy needs a host and a port: {upstream_proxy!r}")
    return {"SOCKS_HOST": parts.hostname, "SOCKS_PORT": str(parts.port)}


def _run_wb_manager(directory: Path, args: list[str], label: str, timeout: float) -> None:
    executable = shutil.which("wb-manager")
    if executable is None:
        raise ArchiveError("wb-manager not found; install scriptor with the 'archive' extra")
    command = [executable, *args]
    LOGGER.info("Running %s in %s", " ".join(command), directory)
    with open(directory / f"pywb-{label}.log", "ab") as stdout, open(
        directory / f"pywb-{label}.err", "ab"
    ) as stderr:
        try:
            completed = subprocess.run(
                command,
                cwd=str(directory),
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ArchiveError(f"wb-manager {label} timed out after {timeout}s") from exc
    if completed.returncode != 0:
        raise ArchiveError(
            f"wb-manager {label} failed with code {completed.returncode} in {directory}"
        )
