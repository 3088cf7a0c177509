"""Creation of all named browser contexts of a run."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .. import archive
from ..config import ReplayMode, RunOptions, UnrandomizeMode
from ..errors import ScriptorError, SessionSetupError
from ..files import (
    BROWSER_CONTEXT_DEFAULT,
    BROWSER_CONTEXT_DISPLAY_DIRECTORY,
    BROWSER_CONTEXT_HAR_FILE,
    BROWSER_CONTEXT_OPTIONS_FILE_NAME,
    BROWSER_CONTEXT_TRACE_DIRECTORY,
    BROWSER_CONTEXT_USER_DATA_DIRECTORY,
    BROWSER_CONTEXT_VIDEO_DIRECTORY,
    BROWSER_CONTEXT_WARC_DIRECTORY,
    copy_tree_writable,
    find_first_directory,
    get_context_directory,
    get_context_directory_names,
)
from ..options import get_existing, read_options
from ..runtime import RunContext
from .display import DisplayStack
from .session import BrowserSession, ContextSpec

LOGGER = logging.getLogger(__name__)

BROWSER_VIEWPORT_DEFAULT = {"width": 1280, "height": 720}


def discover_context_names(script_directory: Path, input_directory: Optional[Path]) -> list[str]:
    """Return the declared context names, or the default name if there are none."""

    names = get_context_directory_names([script_directory, input_directory])
    return names or [BROWSER_CONTEXT_DEFAULT]


def resolve_context_spec(
    context_name: str,
    script_directory: Path,
    input_directory: Optional[Path],
    output_context_directory: Path,
    options: RunOptions,
) -> ContextSpec:
    """Read the automation options of a context and record them in the output.

    The options of the input directory overwrite those of the script
    directory; ``options.browser_options`` overwrite both. Only the file-based
    options are written to the output, so that the output works as input of a
    later run.
    """

    browser_options = read_options(
        get_existing(
            BROWSER_CONTEXT_OPTIONS_FILE_NAME,
            [script_directory, input_directory],
            context_name=context_name,
        ),
        defaults={"viewport": dict(BROWSER_VIEWPORT_DEFAULT)},
    )
    (output_context_directory / BROWSER_CONTEXT_OPTIONS_FILE_NAME).write_text(
        json.dumps(browser_options, indent=2), encoding="utf-8"
    )
    browser_options.update(options.browser_options)
    return ContextSpec(
        name=context_name,
        options=browser_options,
        har=options.har,
        tracing=options.tracing,
        video=options.video,
        warc=options.archiving,
        replay=options.replay,
    )


async def instantiate_all(
    script_directory: Path,
    input_directory: Optional[Path],
    output_directory: Path,
    run_context: RunContext,
    playwright: Any,
) -> dict[str, BrowserSession]:
    """Create one launched :class:`BrowserSession` per context name.

    Contexts are set up concurrently. If any of them fails, every session
    that was created is closed again and the first error is raised.
    """

    context_names = discover_context_names(script_directory, input_directory)
    run_context.logger.info("Instantiating browser contexts: %s", ", ".join(context_names))
    results = await asyncio.gather(
        *(
            instantiate_context(
                name,
                script_directory,
                input_directory,
                output_directory,
                run_context,
                playwright,
            )
            for name in context_names
        ),
        return_exceptions=True,
    )

    sessions: dict[str, BrowserSession] = {}
    failures: list[BaseException] = []
    for name, result in zip(context_names, results):
        if isinstance(result, BaseException):
            run_context.logger.error("Failed to instantiate context '%s': %s", name, result)
            failures.append(result)
        else:
            sessions[name] = result
    if not failures:
        return sessions

    for session in sessions.values():
        try:
            await session.close()
        except Exception:
            run_context.logger.exception("Failed to close context '%s'", session.name)
    failure = failures[0]
    if isinstance(failure, ScriptorError) or not isinstance(failure, Exception):
        raise failure
    raise SessionSetupError(f"Failed to instantiate browser contexts: {failure}") from failure


async def instantiate_context(
    context_name: str,
    script_directory: Path,
    input_directory: Optional[Path],
    output_directory: Path,
    run_context: RunContext,
    playwright: Any,
) -> BrowserSession:
    """Configure, launch and prepare a single browser context."""

    logger = run_context.for_context(context_name)
    options = run_context.options
    output_context_directory = get_context_directory(context_name, output_directory)
    output_context_directory.mkdir(parents=True, exist_ok=True)

    spec = resolve_context_spec(
        context_name, script_directory, input_directory, output_context_directory, options
    )
    logger.info("Resolved browser options: %s", spec.options)
    session = BrowserSession(spec, output_context_directory, logger)
    try:
        prepare_insecure(spec, options, logger)
        prepare_proxy(spec, options, logger)
        await prepare_show_browser(session, options, logger)
        prepare_har(spec, output_context_directory, logger)
        prepare_tracing(spec, output_context_directory, logger)
        prepare_video(spec, output_context_directory, logger)
        await prepare_warc(session, options, logger)
        await prepare_replay(session, options, script_directory, input_directory, logger)
        session.mark_configured()

        user_data_directory = await asyncio.to_thread(
            prepare_user_data,
            context_name,
            output_context_directory,
            script_directory,
            input_directory,
        )
        await session.launch(playwright, user_data_directory)
        if spec.tracing:
            await session.start_tracing()
        if options.unrandomize == UnrandomizeMode.CONSTANT:
            await session.unrandomize()
    except BaseException:
        try:
            await session.close()
        except Exception:
            logger.exception("Failed to clean up after setup failure")
        raise
    logger.info("Browser context ready")
    return session


def prepare_insecure(spec: ContextSpec, options: RunOptions, logger: logging.LoggerAdapter) -> bool:
    if not options.insecure:
        return False
    logger.info("Ignoring HTTPS errors")
    spec.options["ignore_https_errors"] = True
    return True


def prepare_proxy(spec: ContextSpec, options: RunOptions, logger: logging.LoggerAdapter) -> bool:
    if not options.proxy:
        return False
    logger.info("Using upstream proxy %s", options.proxy)
    spec.options["proxy"] = {"server": options.proxy}
    return True


async def prepare_show_browser(
    session: BrowserSession, options: RunOptions, logger: logging.LoggerAdapter
) -> bool:
    if not options.show_browser:
        return False
    logger.info("Showing the browser on a virtual display")
    display = DisplayStack(
        session.directory / BROWSER_CONTEXT_DISPLAY_DIRECTORY,
        width=options.display_width,
        height=options.display_height,
        password=options.vnc_password,
    )
    session.own(display)
    await asyncio.to_thread(display.start)
    spec = session.spec
    spec.options["headless"] = False
    spec.options["env"] = {**os.environ, **spec.options.get("env", {}), **display.env}
    return True


def prepare_har(spec: ContextSpec, output_context_directory: Path, logger: logging.LoggerAdapter) -> bool:
    if not spec.har:
        return False
    har_path = output_context_directory / BROWSER_CONTEXT_HAR_FILE
    logger.info("Recording HAR to %s", har_path)
    spec.options["record_har_path"] = str(har_path)
    return True


def prepare_tracing(
    spec: ContextSpec, output_context_directory: Path, logger: logging.LoggerAdapter
) -> bool:
    if not spec.tracing:
        return False
    traces_directory = output_context_directory / BROWSER_CONTEXT_TRACE_DIRECTORY
    logger.info("Tracing into %s", traces_directory)
    spec.options["traces_dir"] = str(traces_directory)
    return True


def prepare_video(
    spec: ContextSpec, output_context_directory: Path, logger: logging.LoggerAdapter
) -> bool:
    if spec.video is None:
        return False
    viewport = spec.options.get("viewport") or BROWSER_VIEWPORT_DEFAULT
    width = int(viewport["width"] * spec.video)
    height = int(viewport["height"] * spec.video)
    logger.info("Recording video at scale %s (%sx%s)", spec.video, width, height)
    spec.options["record_video_dir"] = str(
        output_context_directory / BROWSER_CONTEXT_VIDEO_DIRECTORY
    )
    spec.options["record_video_size"] = {"width": width, "height": height}
    return True


async def prepare_warc(
    session: BrowserSession, options: RunOptions, logger: logging.LoggerAdapter
) -> bool:
    """Record all traffic of the session into a fresh web archive."""

    if not session.spec.warc:
        return False
    warc_directory = session.directory / BROWSER_CONTEXT_WARC_DIRECTORY
    logger.info("Archiving into %s", warc_directory)
    await asyncio.to_thread(archive.initialize, warc_directory)
    await _start_archive_proxy(session, warc_directory, record=True, logger=logger)
    return True


async def prepare_replay(
    session: BrowserSession,
    options: RunOptions,
    script_directory: Path,
    input_directory: Optional[Path],
    logger: logging.LoggerAdapter,
) -> bool:
    """Serve the session from a copy of the input's (or else script's) web archive."""

    replay = session.spec.replay
    if replay == ReplayMode.NOT:
        return False
    source = find_first_directory(
        BROWSER_CONTEXT_WARC_DIRECTORY, [input_directory, script_directory], session.name
    )
    if source is None:
        raise SessionSetupError(
            f"Missing script and input WARC directory for context '{session.name}'"
        )
    warc_directory = session.directory / BROWSER_CONTEXT_WARC_DIRECTORY
    logger.info("Copying web archive from %s to %s", source, warc_directory)
    await asyncio.to_thread(copy_tree_writable, source, warc_directory)
    await asyncio.to_thread(archive.reindex, warc_directory)
    record = replay == ReplayMode.READ_WRITE
    await _start_archive_proxy(session, warc_directory, record=record, logger=logger)
    return True


async def _start_archive_proxy(
    session: BrowserSession,
    warc_directory: Path,
    *,
    record: bool,
    logger: logging.LoggerAdapter,
) -> archive.ArchiveProxy:
    spec = session.spec
    upstream = (spec.options.get("proxy") or {}).get("server")
    proxy = await asyncio.to_thread(
        archive.start, warc_directory, record, upstream_proxy=upstream
    )
    session.own(proxy)
    logger.info("Archival proxy listening at %s (record=%s)", proxy.server, record)
    # the local proxy terminates TLS with its own certificate
    spec.options["ignore_https_errors"] = True
    spec.options["proxy"] = {"server": proxy.server}
    return proxy


def prepare_user_data(
    context_name: str,
    output_context_directory: Path,
    script_directory: Path,
    input_directory: Optional[Path],
) -> Path:
    """Seed the user data directory from the input or else the script directory."""

    output_user_data_directory = output_context_directory / BROWSER_CONTEXT_USER_DATA_DIRECTORY
    source = find_first_directory(
        BROWSER_CONTEXT_USER_DATA_DIRECTORY, [input_directory, script_directory], context_name
    )
    if source is not None:
        LOGGER.info("Copying user data of '%s' from %s", context_name, source)
        copy_tree_writable(source, output_user_data_directory)
    output_user_data_directory.mkdir(parents=True, exist_ok=True)
    return output_user_data_directory
