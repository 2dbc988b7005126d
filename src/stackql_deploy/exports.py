"""Export extraction, masking, and the stack export file."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .errors import ConfigurationError, ExecutionError, InvariantViolation
from .executor import is_error_row, row_error
from .manifest import Manifest, Resource

logger = logging.getLogger(__name__)

PLACEHOLDER = "<evaluated>"


def mask(value: Any) -> str:
    """Return asterisks matching the length of a protected value."""
    return "*" * len(str(value))


def extract_exports(
    resource: Resource,
    rows: list[dict[str, str]],
    *,
    tolerate_empty: bool = False,
) -> dict[str, Any]:
    """Map a single-row result onto the resource's declared exports.

    Returns the delta to fold into the context. More than one row is always
    an error; zero rows is an error unless tolerate_empty is set.
    """
    if not resource.exports:
        return {}
    if not rows:
        if tolerate_empty:
            logger.debug("No export rows for [%s], continuing", resource.name)
            return {}
        raise ExecutionError(f"Exports query failed for {resource.name}: no rows returned")
    if is_error_row(rows):
        raise ExecutionError(
            f"Exports query failed for {resource.name}\n\nError details:\n{row_error(rows)}"
        )
    if len(rows) > 1:
        raise InvariantViolation(
            f"Exports should include one row only, received {len(rows)} rows for {resource.name}"
        )

    row = rows[0]
    delta: dict[str, Any] = {}
    for column, name in resource.export_pairs():
        if column not in row:
            logger.warning("export column '%s' not in exports result for [%s]", column, resource.name)
        delta[name] = row.get(column, "")
    return delta


def placeholder_exports(resource: Resource) -> dict[str, Any]:
    """Dry-run stand-ins for every declared export."""
    return {name: PLACEHOLDER for name in resource.export_names()}


def log_exports(delta: Mapping[str, Any], protected: list[str]) -> None:
    for name, value in delta.items():
        if name in protected:
            logger.info("set protected variable [%s] to [%s] in exports", name, mask(value))
        else:
            logger.info("set [%s] to [%s] in exports", name, value)


def reverse_exports(resource: Resource, variables: Mapping[str, Any]) -> dict[str, Any]:
    """Expose renamed exports under their original source column names."""
    if not resource.renames_exports:
        return {}
    return {
        column: variables[name]
        for column, name in resource.export_pairs()
        if name in variables
    }


def _output_value(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("[", "{"):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def stack_exports(
    manifest: Manifest,
    variables: Mapping[str, Any],
    *,
    stack_name: str,
    stack_env: str,
    elapsed_time: str,
) -> dict[str, Any]:
    """Collect the manifest's declared exports from the final variables."""
    data: dict[str, Any] = {"stack_name": stack_name, "stack_env": stack_env}
    missing = []
    for name in manifest.exports:
        if name in ("stack_name", "stack_env"):
            continue
        if name not in variables:
            missing.append(name)
            continue
        data[name] = _output_value(variables[name])
    if missing:
        raise ConfigurationError(f"Exports failed: variables not found in context: {missing}")
    data["elapsed_time"] = elapsed_time
    return data


def write_stack_exports(path: str | Path, data: Mapping[str, Any]) -> None:
    """Write stack exports as pretty-printed JSON, creating parent directories."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False))
    except OSError as exc:
        raise ExecutionError(f"Failed to write exports file {path}: {exc}") from exc
    logger.info("Exported %d variables to %s", len(data), path)
