"""Split a resource's .iql file into named, option-tagged query fragments."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .templating import Renderer

logger = logging.getLogger(__name__)

_ANCHOR_PATTERN = re.compile(r"/\*\+(.*?)\*/")

ANCHOR_ALIASES = {
    "preflight": "exists",
    "postdeploy": "statecheck",
}

EXISTS = "exists"
CREATE = "create"
UPDATE = "update"
CREATE_OR_UPDATE = "createorupdate"
STATECHECK = "statecheck"
EXPORTS = "exports"
DELETE = "delete"
COMMAND = "command"


@dataclass
class QueryOptions:
    """Retry options attached to an anchor."""

    retries: int = 1
    retry_delay: int = 0
    postdelete_retries: int = 10
    postdelete_retry_delay: int = 5


@dataclass
class QueryFragment:
    """A named query template; rendered only when it is about to run."""

    anchor: str
    template: str
    options: QueryOptions = field(default_factory=QueryOptions)

    def render(self, renderer: Renderer, variables: Mapping[str, Any], *, resource: str = "") -> str:
        logger.debug("[%s] [%s] query template:\n\n%s\n", resource, self.anchor, self.template)
        try:
            rendered = renderer.render(self.template, variables)
        except ConfigurationError as exc:
            raise ConfigurationError(
                f"Error rendering query for [{resource}] [{self.anchor}]: {exc}"
            ) from exc
        logger.debug("[%s] [%s] rendered query:\n\n%s\n", resource, self.anchor, rendered)
        return rendered


def parse_anchor(anchor: str) -> tuple[str, QueryOptions]:
    """Parse 'name, key=value, ...' into a normalized anchor name and options.

    Unknown keys and values that are not unsigned integers are ignored.
    """
    name, *parts = anchor.split(",")
    key = name.strip().lower()
    key = ANCHOR_ALIASES.get(key, key)
    options = QueryOptions()
    for part in parts:
        option, sep, value = part.partition("=")
        option, value = option.strip(), value.strip()
        if not sep or not value.isdigit():
            continue
        if option in QueryOptions.__dataclass_fields__:
            setattr(options, option, int(value))
    return key, options


def parse_queries(text: str) -> dict[str, QueryFragment]:
    """Split query file content into fragments keyed by anchor name."""
    fragments: dict[str, QueryFragment] = {}
    current: tuple[str, QueryOptions] | None = None
    buffer: list[str] = []

    def flush() -> None:
        if current is None:
            return
        body = "\n".join(buffer).strip()
        if body:
            key, options = current
            fragments[key] = QueryFragment(anchor=key, template=body, options=options)

    for line in text.splitlines():
        match = _ANCHOR_PATTERN.search(line)
        if line.lstrip().startswith("/*+") and match:
            flush()
            current = parse_anchor(match.group(1))
            buffer = []
        elif current is not None:
            buffer.append(line)
    flush()

    return fragments


def load_queries(path: Path) -> dict[str, QueryFragment]:
    """Load and parse a query file."""
    if not path.is_file():
        raise ConfigurationError(f"Query file not found: {path}")
    fragments = parse_queries(path.read_text())
    logger.debug("Queries in '%s': %s", path.name, sorted(fragments))
    return fragments
