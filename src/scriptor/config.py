"""Configuration models for scriptor runs and chains."""

from __future__ import annotations

import enum
import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

CHAIN_PATTERN_DEFAULT = "run%06d"
CHAIN_PATTERN_PLACEHOLDER = re.compile(r"%0[0-9]+d")

VIDEO_SCALE_FACTOR_DEFAULT_IF_SET = 1.0


class ReplayMode(str, enum.Enum):
    """Whether and how to serve requests from a previously recorded archive."""

    NOT = "not"
    READ_ONLY = "r"
    READ_WRITE = "rw"


class UnrandomizeMode(str, enum.Enum):
    """How to pin ``Math.random`` inside the browser."""

    NOT = "not"
    CONSTANT = "constant"


class ChainStrategy(str, enum.Enum):
    """How the chain driver keeps track of its position."""

    STATE = "state"
    COUNTER = "counter"


class RunOptions(BaseSettings):
    """Options for a single script run. Frozen once resolved."""

    model_config = SettingsConfigDict(
        env_prefix="SCRIPTOR_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        frozen=True,
        extra="forbid",
    )

    har: bool = True
    tracing: bool = True
    warc: bool = True
    video: Optional[float] = Field(
        default=None,
        description="Scale factor of the recorded video relative to the viewport; None for no video.",
    )
    replay: ReplayMode = ReplayMode.NOT
    insecure: bool = False
    proxy: Optional[str] = Field(
        default=None,
        description="Upstream proxy for the live web, e.g. socks5://myproxy.com:3128.",
    )
    show_browser: bool = False
    display_width: int = 1280
    display_height: int = 720
    vnc_password: Optional[str] = None
    unrandomize: UnrandomizeMode = UnrandomizeMode.CONSTANT
    timeout: Optional[float] = Field(
        default=None,
        description="Wall-clock limit in seconds for each run of a chain.",
    )
    browser_options: dict[str, Any] = Field(
        default_factory=dict,
        description="Automation options that override every options file.",
    )

    @field_validator("video", mode="before")
    @classmethod
    def _video_flag(cls, value: object) -> object:
        if value is True:
            return VIDEO_SCALE_FACTOR_DEFAULT_IF_SET
        if value is False:
            return None
        return value

    @field_validator("video")
    @classmethod
    def _video_positive(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("video scale factor must be positive")
        return value

    @field_validator("proxy", mode="before")
    @classmethod
    def _proxy_flag(cls, value: object) -> object:
        if value is False or value == "":
            return None
        return value

    @property
    def archiving(self) -> bool:
        """Whether a record-only archival proxy is started."""

        return self.warc and self.replay == ReplayMode.NOT


class ChainConfig(BaseModel):
    """Settings for running a script several times in a row."""

    model_config = ConfigDict(frozen=True)

    pattern: str = CHAIN_PATTERN_DEFAULT
    start: int = 1
    max: Optional[int] = None
    strategy: ChainStrategy = ChainStrategy.STATE

    @field_validator("pattern")
    @classmethod
    def _single_placeholder(cls, value: str) -> str:
        placeholders = CHAIN_PATTERN_PLACEHOLDER.findall(value)
        if len(placeholders) != 1:
            raise ValueError(
                f"chain pattern must contain exactly one '%0<width>d' placeholder: {value!r}"
            )
        if "/" in value or "\\" in value:
            raise ValueError(f"chain pattern must not contain path separators: {value!r}")
        return value

    @field_validator("start", "max", mode="before")
    @classmethod
    def _positive_integer(cls, value: object) -> object:
        if value is None:
            return value
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"must be a positive integer, not {value!r}")
        return value

    def directory_name(self, index: int) -> str:
        """Return the run directory name for the run with ``index``."""

        def _pad(match: re.Match[str]) -> str:
            width = int(match.group(0)[2:-1])
            return str(index).zfill(width)

        return CHAIN_PATTERN_PLACEHOLDER.sub(_pad, self.pattern, count=1)


def load_run_options(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    **overrides: object,
) -> RunOptions:
    """Load run options from an optional YAML/JSON file, the environment and overrides."""

    data: dict[str, Any] = {}
    if path:
        data = _read_mapping(path)
    if overrides:
        _deep_update(data, overrides)
    settings_kwargs: dict[str, object] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = env_file
    try:
        return RunOptions(**data, **settings_kwargs)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid run options: {exc}") from exc


def parse_chain_config(spec: Union[str, Mapping[str, Any], None]) -> ChainConfig:
    """Parse a chain configuration given as JSON text or mapping."""

    if spec is None or spec is True or spec == "":
        data: Mapping[str, Any] = {}
    elif isinstance(spec, str):
        try:
            data = json.loads(spec)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Chain configuration is not valid JSON: {spec!r}") from exc
    else:
        data = spec
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Chain configuration must be a JSON object: {spec!r}")
    try:
        return ChainConfig.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid chain configuration: {exc}") from exc


def _read_mapping(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot parse run options file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Run options file {path} does not contain a mapping")
    return data


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> None:
    """Recursively merge ``updates`` into ``target`` in-place."""

    for key, value in updates.items():
        if (
            isinstance(value, Mapping)
            and isinstance(existing := target.get(key), Mapping)
        ):
            nested: dict[str, Any]
            if isinstance(existing, dict):
                nested = existing
            else:
                nested = dict(existing)
            _deep_update(nested, value)
            target[key] = nested
        else:
            target[key] = value
