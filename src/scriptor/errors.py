"""Exception hierarchy for scriptor."""

from __future__ import annotations


class ScriptorError(Exception):
    """Base class for all errors raised by scriptor."""


class ConfigurationError(ScriptorError):
    """Raised when options, directories or chain settings are invalid."""


class SessionSetupError(ScriptorError):
    """Raised when a browser session or one of its processes fails to start."""


class ArchiveError(SessionSetupError):
    """Raised when a pywb command fails or times out."""


class ChainError(ScriptorError):
    """Raised when a chain of runs has to stop with an error."""


class ChainStateError(ChainError):
    """Raised when the persisted chain state is malformed or regressed."""


class RunTimeoutError(ChainError):
    """Raised when a single run of a chain exceeds its timeout."""
