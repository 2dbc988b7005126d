"""Render globals and resource properties into template variables."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from .errors import ConfigurationError
from .manifest import Manifest, Property, Resource
from .templating import Renderer

logger = logging.getLogger(__name__)


def build_global_context(
    overrides: Mapping[str, Any],
    manifest: Manifest,
    env: str,
    stack_name: str,
    *,
    renderer: Renderer | None = None,
) -> dict[str, Any]:
    """Render every global variable in declaration order.

    Each global sees the overrides and every global rendered before it; the
    rendered globals win over overrides of the same name.
    """
    renderer = renderer or Renderer()
    context: dict[str, Any] = {"stack_env": env, "stack_name": stack_name}
    logger.debug("Rendering %d global variable(s)", len(manifest.globals))
    for var in manifest.globals:
        value = renderer.render_value(var.value, {**overrides, **context})
        if value is None or value == "":
            raise ConfigurationError(f"Global variable '{var.name}' cannot be empty")
        logger.debug("Setting global variable [%s] to %r", var.name, value)
        context[var.name] = value
    return context


def _as_json(name: str, value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Merge value '{name}' is not valid JSON") from None


def merge_values(prop_name: str, base: Any, sources: list[tuple[str, Any]]) -> Any:
    """Merge JSON sources into a base value.

    Arrays are unioned by value (first occurrence wins the position), objects
    are overlaid with later sources winning. A missing base takes the first
    source as-is.
    """
    merged = None if base is None else _as_json(prop_name, base)
    for source_name, raw in sources:
        value = _as_json(source_name, raw)
        if merged is None:
            merged = value
        elif isinstance(merged, list) and isinstance(value, list):
            seen: set[str] = set()
            union = []
            for item in [*merged, *value]:
                key = json.dumps(item, sort_keys=True)
                if key not in seen:
                    seen.add(key)
                    union.append(item)
            merged = union
        elif isinstance(merged, dict) and isinstance(value, dict):
            merged = {**merged, **value}
        else:
            raise ConfigurationError(
                f"Type mismatch or unsupported merge operation on property '{prop_name}'"
            )
    return merged


def _render_property(
    renderer: Renderer,
    prop: Property,
    scope: Mapping[str, Any],
    env: str,
) -> tuple[bool, Any]:
    found, template = prop.value_for(env)
    if not found:
        return False, None
    return True, renderer.render_value(template, scope)


def render_properties(
    global_vars: Mapping[str, Any],
    resource: Resource,
    env: str,
    *,
    renderer: Renderer | None = None,
) -> dict[str, Any]:
    """Resolve a resource's properties; returns only the property values."""
    renderer = renderer or Renderer()
    props: dict[str, Any] = {}
    scope = dict(global_vars)
    logger.debug("Rendering properties for [%s]", resource.name)

    for prop in resource.props:
        found, value = _render_property(renderer, prop, scope, env)
        if found:
            logger.debug("Setting property [%s] to %r", prop.name, value)

        if prop.merge:
            sources = []
            for source_name in prop.merge:
                if source_name not in scope:
                    raise ConfigurationError(
                        f"Merge item '{source_name}' for property '{prop.name}' not found in context"
                    )
                sources.append((source_name, scope[source_name]))
            value = merge_values(prop.name, value if found else None, sources)
            found = True
            logger.debug("Merged property [%s] to %r", prop.name, value)

        if found:
            props[prop.name] = value
            scope[prop.name] = value

    return props


def build_resource_context(
    global_vars: Mapping[str, Any],
    resource: Resource,
    env: str,
    *,
    renderer: Renderer | None = None,
) -> dict[str, Any]:
    """Return the global variables overlaid with the resource's properties."""
    return {**global_vars, **render_properties(global_vars, resource, env, renderer=renderer)}
