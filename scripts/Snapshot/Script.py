"""Take a screenshot and an HTML snapshot of one web page."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional

from scriptor.files import BROWSER_CONTEXT_DEFAULT, SCRIPT_OPTIONS_FILE_NAME
from scriptor.options import get_existing, read_options
from scriptor.scripts import ScriptorScript


class Script(ScriptorScript):
    def __init__(self) -> None:
        super().__init__("Snapshot", "0.1.0")

    async def run(
        self,
        contexts: Mapping[str, Any],
        script_directory: Path,
        input_directory: Optional[Path],
        output_directory: Path,
    ) -> bool:
        options = read_options(
            get_existing(SCRIPT_OPTIONS_FILE_NAME, [script_directory, input_directory]),
            defaults={"waitUntil": "load"},
            required=("url",),
        )
        page = await contexts[BROWSER_CONTEXT_DEFAULT].new_page()
        self.logger.info("Loading %s", options["url"])
        await page.goto(options["url"], wait_until=options["waitUntil"])
        await page.screenshot(path=str(output_directory / "snapshot.png"), full_page=True)
        (output_directory / "snapshot.html").write_text(await page.content(), encoding="utf-8")
        await page.close()
        return True
