"""Runtime execution context for a deploy run."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class Context:
    """Runtime state passed through the deploy chain.

    Owns the canonical variable mapping. Values written here stay visible to
    every resource processed afterwards and to the stack export file.
    """

    def __init__(
        self,
        stack_name: str,
        stack_env: str,
        *,
        variables: Mapping[str, Any] | None = None,
        dry_run: bool = False,
        show_queries: bool = False,
    ) -> None:
        self.stack_name = stack_name
        self.stack_env = stack_env
        self.dry_run = dry_run
        self.show_queries = show_queries
        self.variables: dict[str, Any] = {"stack_name": stack_name, "stack_env": stack_env}
        if variables:
            self.variables.update(variables)

    def update(self, delta: Mapping[str, Any]) -> None:
        """Fold a delta (exports, script output) into the canonical mapping."""
        self.variables.update(delta)

    def view(self, overlay: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Return a copy of the variables shadowed by an overlay."""
        merged = dict(self.variables)
        if overlay:
            merged.update(overlay)
        return merged

    def __contains__(self, name: object) -> bool:
        return name in self.variables

    def __getitem__(self, name: str) -> Any:
        return self.variables[name]
