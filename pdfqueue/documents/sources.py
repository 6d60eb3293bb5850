"""
Template lookup.
"""

import asyncio
import re
from pathlib import Path
from typing import Protocol

TEMPLATE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class TemplateNotFound(LookupError):
    """No template exists with the given id."""


class TemplateSource(Protocol):
    """Anything that can return a template's HTML by id."""

    async def get_template(self, template_id: str) -> str:
        ...


class DirectoryTemplateSource:
    """Templates stored as `{template_id}.html` files in one directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, template_id: str) -> Path:
        if not TEMPLATE_ID_PATTERN.match(template_id):
            raise TemplateNotFound(f"Invalid template id: {template_id!r}")
        return self.directory / f"{template_id}.html"

    async def get_template(self, template_id: str) -> str:
        """
        Read a template's HTML.

        Raises:
            TemplateNotFound: If the id is malformed or no file exists.
        """
        path = self.path_for(template_id)
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            raise TemplateNotFound(f"Template {template_id} not found") from None
