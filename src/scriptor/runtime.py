"""Explicit per-run context handed down the call chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import RunOptions


@dataclass(frozen=True)
class RunContext:
    """Resolved run options plus the logger a run reports to."""

    options: RunOptions
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("scriptor.run"))

    def for_context(self, context_name: str) -> logging.LoggerAdapter:
        """Return a logger adapter that prefixes messages with the context name."""

        return _ContextLoggerAdapter(self.logger, {"context": context_name})


class _ContextLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['context']}] {msg}", kwargs
