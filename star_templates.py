"""Materialize requests into pixlet applet sources.

Templates are Jinja2 files named ``<kind>.star`` in the template directory and
are compiled once when the registry is built. Values are written into the
applet through the ``starlark`` filter, which emits quoted literals so request
text can never break out of a string.
"""

import base64
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template, TemplateError

from errors import RenderPrepError
from scratch import ScratchFiles

logger = logging.getLogger("tidbyt_proxy.templates")

SOURCE_PREFIX = "tidbyt"
SOURCE_SUFFIX = ".star"
ICON_DIR_NAME = "icons"
ICON_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def starlark_literal(value: Any) -> str:
    """Render a Python value as a Starlark literal (strings, numbers, bools and None)."""
    if value is None:
        return "None"
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(str(value), ensure_ascii=False)


class TemplateRegistry:
    def __init__(self, template_dir: Union[str, Path]):
        self.template_dir = Path(template_dir).resolve()
        if not self.template_dir.is_dir():
            raise RuntimeError(f"Template directory not found at {self.template_dir}")
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters["starlark"] = starlark_literal
        templates: Dict[str, Template] = {}
        for path in sorted(self.template_dir.glob(f"*{SOURCE_SUFFIX}")):
            templates[path.stem] = self.env.get_template(path.name)
        self._templates: Mapping[str, Template] = MappingProxyType(templates)
        logger.info("Loaded templates %s from %s", sorted(templates), self.template_dir)

    def names(self):
        return sorted(self._templates)

    def icon_data(self, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        if not ICON_NAME_PATTERN.match(name):
            logger.warning("Ignoring icon with unsupported name '%s'", name)
            return None
        icon_path = self.template_dir / ICON_DIR_NAME / f"{name}.png"
        if not icon_path.is_file():
            logger.warning("Icon '%s' not found at %s; rendering without it", name, icon_path)
            return None
        return base64.b64encode(icon_path.read_bytes()).decode("ascii")

    def render(self, request) -> str:
        template = self._templates.get(request.template_name)
        if template is None:
            raise RenderPrepError(f"No template named '{request.template_name}' in {self.template_dir}")
        context = request.template_context()
        if "icon" in context:
            context["icon_data"] = self.icon_data(context["icon"])
        try:
            return template.render(context)
        except TemplateError as exc:
            raise RenderPrepError(f"Template '{request.template_name}' failed to render: {exc}") from exc


def materialize(registry: TemplateRegistry, request, scratch: ScratchFiles) -> Path:
    """Write the applet source for ``request`` to ``<scratch>/tidbyt<random>.star``.

    The file is tracked by ``scratch`` as soon as it exists, so a template
    failure still leaves it for the caller's cleanup to remove.
    """
    try:
        fd, name = tempfile.mkstemp(prefix=SOURCE_PREFIX, suffix=SOURCE_SUFFIX, dir=str(scratch.directory))
    except OSError as exc:
        logger.error("Failed to create template file in %s: %s", scratch.directory, exc)
        raise RenderPrepError(f"Could not create a scratch file in {scratch.directory}: {exc}") from exc
    source_path = scratch.track(name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(registry.render(request))
    except RenderPrepError as exc:
        logger.error("Template render failed for %s: %s", source_path, exc)
        raise
    except OSError as exc:
        logger.error("Failed to write template file %s: %s", source_path, exc)
        raise RenderPrepError(f"Could not write {source_path}: {exc}") from exc

    logger.debug("rendered template to path %s", source_path)
    return source_path
