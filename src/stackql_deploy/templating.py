"""Jinja2 rendering with strict variables and SQL-friendly filters."""

from __future__ import annotations

import base64
import json
import logging
import uuid
from collections.abc import Mapping
from typing import Any

import jinja2

from .errors import ConfigurationError, TemplateRenderError

logger = logging.getLogger(__name__)


def to_json(value: Any) -> str:
    """Serialize a value as compact JSON."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _parse_json(value: Any) -> Any:
    """Parse a JSON string, passing through anything already structured."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def to_template_value(value: Any) -> str:
    """Serialize a context value for use inside a template.

    Booleans become lowercase literals, lists and dicts become compact JSON,
    and strings holding a JSON array or object are re-compacted.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return to_json(value)
    if isinstance(value, str):
        if value.lstrip()[:1] in ("[", "{"):
            try:
                parsed = json.loads(value)
            except ValueError:
                return value
            if isinstance(parsed, (list, dict)):
                return to_json(parsed)
        return value
    return str(value)


def normalize_bool(text: str) -> str:
    """Lowercase a rendered Python boolean literal."""
    if text == "True":
        return "true"
    if text == "False":
        return "false"
    return text


# -- Filters --


def from_json(value: Any) -> Any:
    try:
        return _parse_json(value)
    except ValueError as exc:
        raise jinja2.TemplateRuntimeError(f"from_json: {exc}") from exc


def base64_encode(value: str) -> str:
    return base64.b64encode(str(value).encode()).decode()


def merge_lists(left: Any, right: Any) -> list[Any]:
    """Union two lists by value, keeping first-seen order."""
    seen: set[str] = set()
    merged: list[Any] = []
    for item in [*_parse_json(left), *_parse_json(right)]:
        key = json.dumps(item, sort_keys=True)
        if key not in seen:
            seen.add(key)
            merged.append(item)
    return merged


def merge_objects(left: Any, right: Any) -> dict[str, Any]:
    """Shallow-merge two objects; keys from the right operand win."""
    return {**_parse_json(left), **_parse_json(right)}


def generate_patch_document(value: Any) -> str:
    """Build a JSON patch document adding every key of an object."""
    obj = _parse_json(value)
    if not isinstance(obj, dict):
        raise jinja2.TemplateRuntimeError("generate_patch_document: expected an object")
    ops = []
    for key, val in obj.items():
        if isinstance(val, str):
            try:
                val = json.loads(val)
            except ValueError:
                pass
        ops.append({"op": "add", "path": f"/{key}", "value": val})
    return to_json(ops)


def sql_list(value: Any) -> str:
    """Format a list as a SQL IN clause, e.g. ('a','b')."""
    if isinstance(value, str):
        try:
            items = json.loads(value)
        except ValueError:
            items = [value]
        if not isinstance(items, list):
            items = [value]
    elif isinstance(value, list):
        items = value
    else:
        return "(NULL)"
    if not items:
        return "(NULL)"
    return "(" + ",".join(f"'{item}'" for item in items) + ")"


def sql_escape(value: Any) -> str:
    return str(value).replace("'", "''")


_FILTERS = {
    "from_json": from_json,
    "base64_encode": base64_encode,
    "merge_lists": merge_lists,
    "merge_objects": merge_objects,
    "generate_patch_document": generate_patch_document,
    "sql_list": sql_list,
    "sql_escape": sql_escape,
}


class Renderer:
    """Render templates against a string-serialized variable mapping."""

    def __init__(self) -> None:
        self.env = jinja2.Environment(
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self.env.filters.update(_FILTERS)
        self.env.globals["uuid"] = lambda: str(uuid.uuid4())

    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        """Render a template, raising TemplateRenderError on any failure."""
        context = {k: to_template_value(v) for k, v in variables.items()}
        try:
            return self.env.from_string(template).render(context)
        except jinja2.TemplateError as exc:
            raise TemplateRenderError(str(exc)) from exc

    def render_value(self, value: Any, variables: Mapping[str, Any]) -> Any:
        """Render a manifest value, recursing into lists and mappings.

        Rendered leaves inside structures are parsed as JSON where possible
        so nested values keep their types.
        """
        if isinstance(value, str):
            return normalize_bool(self.render(value, variables))
        if isinstance(value, dict):
            return {str(k): self._render_leaf(v, variables) for k, v in value.items()}
        if isinstance(value, list):
            return [self._render_leaf(v, variables) for v in value]
        return value

    def _render_leaf(self, value: Any, variables: Mapping[str, Any]) -> Any:
        rendered = self.render_value(value, variables)
        if isinstance(rendered, str):
            try:
                return json.loads(rendered)
            except ValueError:
                return rendered
        return rendered

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """Render a condition and evaluate it as a Jinja expression."""
        rendered = self.render(expression, variables).strip()
        try:
            result = self.env.compile_expression(rendered)()
        except jinja2.TemplateError as exc:
            raise ConfigurationError(f"cannot evaluate condition '{rendered}': {exc}") from exc
        if not isinstance(result, bool):
            raise ConfigurationError(f"condition '{rendered}' did not evaluate to true or false")
        return result
