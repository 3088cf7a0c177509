"""Command line interface for scriptor."""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from contextlib import ExitStack
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import runner
from .chain import (
    EXIT_CHAINABLE,
    EXIT_NOT_CHAINABLE,
    ChainResult,
    InProcessRunExecutor,
    SubprocessRunExecutor,
    run_chain,
)
from .config import (
    ChainStrategy,
    ReplayMode,
    RunOptions,
    UnrandomizeMode,
    load_run_options,
    parse_chain_config,
)
from .errors import ConfigurationError, ScriptorError
from .files import SCRIPT_OPTIONS_FILE_NAME

LOGGER = logging.getLogger(__name__)

EXIT_ERROR = 2
STDIN_INPUT = "-"

app = typer.Typer(help="Run Playwright scripts with archiving, tracing and chaining.")
console = Console()

ScriptDirectoryOption = Annotated[
    Path,
    typer.Option("--script-directory", "-s", help="Directory containing Script.py."),
]
InputOption = Annotated[
    Optional[str],
    typer.Option(
        "--input",
        "-i",
        help="Input directory, an inline JSON object for config.json, or '-' to read it from stdin.",
    ),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="YAML or JSON file with run options."),
]
EnvFileOption = Annotated[
    Optional[Path],
    typer.Option("--env-file", help="Path to an .env file with SCRIPTOR_* defaults."),
]
ReplayOption = Annotated[
    Optional[ReplayMode],
    typer.Option("--replay", help="Serve requests from the input's web archive (r) and record misses (rw)."),
]
ProxyOption = Annotated[
    Optional[str],
    typer.Option("--proxy", help="Upstream proxy for the live web, e.g. socks5://host:1080."),
]
InsecureOption = Annotated[
    Optional[bool],
    typer.Option("--insecure", "-x", help="Ignore HTTPS certificate errors."),
]
ShowBrowserOption = Annotated[
    Optional[bool],
    typer.Option("--show-browser", "-b", help="Run headed on a virtual display reachable via VNC."),
]
UnrandomizeOption = Annotated[
    Optional[UnrandomizeMode],
    typer.Option("--unrandomize", help="Replace Math.random in every page."),
]
VideoOption = Annotated[
    Optional[bool],
    typer.Option("--video/--no-video", help="Record a video of every page."),
]
VideoScaleOption = Annotated[
    Optional[float],
    typer.Option("--video-scale", help="Video size relative to the viewport; implies --video."),
]
HarOption = Annotated[
    Optional[bool],
    typer.Option("--har/--no-har", help="Record an HTTP archive per context."),
]
TracingOption = Annotated[
    Optional[bool],
    typer.Option("--tracing/--no-tracing", help="Record a Playwright trace per context."),
]
WarcOption = Annotated[
    Optional[bool],
    typer.Option("--warc/--no-warc", help="Record a web archive per context."),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before executing any command."""

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def version() -> None:
    """Print the package version."""

    try:
        typer.echo(get_version("scriptor"))
    except PackageNotFoundError:  # pragma: no cover - when running from source tree
        typer.echo("0.0.0")


@app.command()
def run(
    script_directory: ScriptDirectoryOption,
    output_directory: Annotated[
        Path,
        typer.Option("--output-directory", "-o", help="Empty directory to write the run output to."),
    ],
    input_value: InputOption = None,
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    replay: ReplayOption = None,
    proxy: ProxyOption = None,
    insecure: InsecureOption = None,
    show_browser: ShowBrowserOption = None,
    unrandomize: UnrandomizeOption = None,
    video: VideoOption = None,
    video_scale: VideoScaleOption = None,
    har: HarOption = None,
    tracing: TracingOption = None,
    warc: WarcOption = None,
    chain_state_file: Annotated[
        Optional[Path],
        typer.Option("--chain-state-file", hidden=True),
    ] = None,
) -> None:
    """Run a script once.

    Exits with 0 if the output can be used as input of another run and 10 if not.
    """

    with ExitStack() as stack:
        try:
            options = _load_options(
                config_path,
                env_file,
                replay=replay,
                proxy=proxy,
                insecure=insecure,
                show_browser=show_browser,
                unrandomize=unrandomize,
                video=video,
                video_scale=video_scale,
                har=har,
                tracing=tracing,
                warc=warc,
            )
            input_directory = _resolve_input(input_value, stack)
            _require_empty(output_directory)
            chainable = runner.run(
                script_directory,
                input_directory,
                output_directory,
                options,
                chain_state_file=chain_state_file,
            )
        except ScriptorError as exc:
            _fail(exc)
    if chainable:
        typer.echo(f"Run finished; output in {output_directory} is chainable.")
        raise typer.Exit(code=EXIT_CHAINABLE)
    typer.echo(f"Run finished; output in {output_directory} is not chainable.")
    raise typer.Exit(code=EXIT_NOT_CHAINABLE)


@app.command()
def chain(
    script_directory: ScriptDirectoryOption,
    output_directory: Annotated[
        Path,
        typer.Option(
            "--output-directory", "-o", help="Parent directory that receives one directory per run."
        ),
    ],
    chain_spec: Annotated[
        Optional[str],
        typer.Option(
            "--chain",
            help='Chain settings as JSON, e.g. \'{"pattern": "run%06d", "start": 1, "max": 3}\'.',
        ),
    ] = None,
    strategy: Annotated[
        Optional[ChainStrategy],
        typer.Option("--strategy", help="Keep the chain position in chain.json (state) or in memory (counter)."),
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", help="Wall-clock limit in seconds for each run."),
    ] = None,
    in_process: Annotated[
        bool,
        typer.Option("--in-process", help="Run each step in this process instead of a subprocess."),
    ] = False,
    input_value: InputOption = None,
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    replay: ReplayOption = None,
    proxy: ProxyOption = None,
    insecure: InsecureOption = None,
    show_browser: ShowBrowserOption = None,
    unrandomize: UnrandomizeOption = None,
    video: VideoOption = None,
    video_scale: VideoScaleOption = None,
    har: HarOption = None,
    tracing: TracingOption = None,
    warc: WarcOption = None,
) -> None:
    """Run a script repeatedly, each run reading the previous run's output."""

    with ExitStack() as stack:
        try:
            chain_config = parse_chain_config(chain_spec)
            if strategy is not None:
                chain_config = chain_config.model_copy(update={"strategy": strategy})
            options = _load_options(
                config_path,
                env_file,
                replay=replay,
                proxy=proxy,
                insecure=insecure,
                show_browser=show_browser,
                unrandomize=unrandomize,
                video=video,
                video_scale=video_scale,
                har=har,
                tracing=tracing,
                warc=warc,
                timeout=timeout,
            )
            input_directory = _resolve_input(input_value, stack)
            if in_process:
                executor: Any = InProcessRunExecutor(script_directory, options)
            else:
                options_file = _write_options(options, stack)
                executor = SubprocessRunExecutor(
                    script_directory,
                    run_arguments=["--config", str(options_file)],
                    timeout=options.timeout,
                )
            result = run_chain(input_directory, output_directory, chain_config, executor)
        except ScriptorError as exc:
            _fail(exc)
    _print_summary(result)
    if result.stopped_by == "not-chainable":
        raise typer.Exit(code=EXIT_NOT_CHAINABLE)
    raise typer.Exit(code=EXIT_CHAINABLE)


def _load_options(
    config_path: Optional[Path],
    env_file: Optional[Path],
    *,
    video: Optional[bool] = None,
    video_scale: Optional[float] = None,
    **flags: Any,
) -> RunOptions:
    overrides: dict[str, Any] = {name: value for name, value in flags.items() if value is not None}
    if video_scale is not None:
        overrides["video"] = video_scale
    elif video is not None:
        overrides["video"] = video
    return load_run_options(config_path, env_file=env_file, **overrides)


def _resolve_input(value: Optional[str], stack: ExitStack) -> Optional[Path]:
    """Turn the ``--input`` value into a directory; JSON becomes a temporary ``config.json``."""

    if value is None:
        return None
    if value == STDIN_INPUT:
        text = sys.stdin.read()
    elif value.lstrip().startswith("{"):
        text = value
    else:
        return Path(value)

    try:
        script_options = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Input is not a valid JSON object: {exc}") from exc
    if not isinstance(script_options, dict):
        raise ConfigurationError("Input JSON must be an object")
    directory = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="scriptor-input-")))
    (directory / SCRIPT_OPTIONS_FILE_NAME).write_text(json.dumps(script_options), encoding="utf-8")
    LOGGER.debug("Wrote inline input to %s", directory)
    return directory


def _write_options(options: RunOptions, stack: ExitStack) -> Path:
    directory = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="scriptor-options-")))
    path = directory / "run-options.json"
    path.write_text(json.dumps(options.model_dump(mode="json")), encoding="utf-8")
    return path


def _require_empty(directory: Path) -> None:
    if directory.exists() and (not directory.is_dir() or any(directory.iterdir())):
        raise ConfigurationError(f"Output directory '{directory}' exists and is not empty.")


def _fail(exc: ScriptorError) -> NoReturn:
    LOGGER.debug("Command failed", exc_info=exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=EXIT_ERROR)


def _print_summary(result: ChainResult) -> None:
    table = Table(title="Chain runs")
    table.add_column("#", justify="right")
    table.add_column("Directory")
    for number, directory in enumerate(result.run_directories, start=1):
        table.add_row(str(number), str(directory))
    console.print(table)
    console.print(
        f"{result.runs} run(s), stopped by [bold]{result.stopped_by}[/bold]; "
        f"next index {result.next_index}"
    )


if __name__ == "__main__":
    app()
