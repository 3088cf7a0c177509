"""User script contract and loader."""

from __future__ import annotations

import importlib.util
import inspect
import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigurationError
from .files import SCRIPT_MODULE_FILE_NAME, check_directory

LOGGER = logging.getLogger(__name__)

SCRIPT_CLASS_NAME = "Script"


class ScriptorScript(ABC):
    """Base class for user scripts.

    A script directory contains a ``Script.py`` that defines a class named
    ``Script`` deriving from this class and constructible without arguments::

        class Script(ScriptorScript):
            def __init__(self) -> None:
                super().__init__("Snapshot", "0.1.0")

            async def run(self, contexts, script_directory, input_directory, output_directory):
                page = await contexts[BROWSER_CONTEXT_DEFAULT].new_page()
                ...
                return True
    """

    def __init__(self, name: str = "UnnamedScript", version: str = "0.0.0") -> None:
        self.name = name
        self.version = version
        self.logger = logging.getLogger(f"scriptor.script.{name}")
        LOGGER.info("Constructed script %s %s", name, version)

    @abstractmethod
    async def run(
        self,
        contexts: Mapping[str, Any],
        script_directory: Path,
        input_directory: Optional[Path],
        output_directory: Path,
    ) -> bool:
        """Run the script against the launched browser contexts.

        ``contexts`` maps each context name to a Playwright ``BrowserContext``.
        Return ``True`` if the output directory can be used as the input
        directory of another run.
        """

        raise NotImplementedError(f"{type(self).__name__} does not implement run()")


def source(script_directory: Path) -> type[ScriptorScript]:
    """Import ``Script.py`` from ``script_directory`` and return its script class."""

    script_directory = check_directory(script_directory, "Script")
    script_file = script_directory / SCRIPT_MODULE_FILE_NAME
    if not script_file.is_file():
        raise ConfigurationError(f"Script file '{script_file}' does not exist.")

    module_name = f"scriptor_user_script_{abs(hash(str(script_file.resolve())))}"
    LOGGER.debug("Importing %s as %s", script_file, module_name)
    spec = importlib.util.spec_from_file_location(module_name, script_file)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Cannot import script file '{script_file}'")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception:
        del sys.modules[module_name]
        raise

    script_class = getattr(module, SCRIPT_CLASS_NAME, None)
    if not isinstance(script_class, type) or not issubclass(script_class, ScriptorScript):
        raise ConfigurationError(
            f"Script file '{script_file}' must define a class '{SCRIPT_CLASS_NAME}' "
            f"deriving from {ScriptorScript.__name__}"
        )
    if inspect.isabstract(script_class):
        raise NotImplementedError(
            f"Script class in '{script_file}' does not implement run()"
        )
    return script_class


def instantiate(script_directory: Path) -> ScriptorScript:
    script_class = source(script_directory)
    return script_class()
