"""Shared per-resource operations used by the build, test, and teardown commands."""

from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .client import Engine
from .context import Context
from .display import print_box
from .errors import ConfigurationError, ExecutionError
from .executor import QueryExecutor, is_error_row
from .exports import (
    extract_exports,
    log_exports,
    placeholder_exports,
    stack_exports,
    write_stack_exports,
)
from .manifest import Manifest, Resource, ResourceType, load_manifest
from .queries import COMMAND, EXPORTS, QueryFragment, load_queries
from .templating import Renderer, normalize_bool
from .variables import build_global_context, render_properties

logger = logging.getLogger(__name__)

Rows = list[dict[str, str]]


def format_elapsed(seconds: float) -> str:
    return f"{seconds:.2f}s"


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version))


@dataclass
class ResourceScope:
    """A resource together with its rendered properties.

    Variables are read live from the context, so a query rendered late sees
    exports written by earlier steps.
    """

    resource: Resource
    ctx: Context
    overlay: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.resource.name

    def variables(self) -> dict[str, Any]:
        return self.ctx.view(self.overlay)


class StackRunner:
    """Base class for commands that walk the resources of a stack."""

    def __init__(
        self,
        manifest: Manifest,
        ctx: Context,
        executor: QueryExecutor,
        stack_dir: str | Path,
        *,
        renderer: Renderer | None = None,
    ) -> None:
        self.manifest = manifest
        self.ctx = ctx
        self.executor = executor
        self.stack_dir = Path(stack_dir)
        self.renderer = renderer or Renderer()

    @classmethod
    def from_stack(
        cls,
        stack_dir: str | Path,
        stack_env: str,
        engine: Engine,
        *,
        env_vars: Mapping[str, str] | None = None,
        dry_run: bool = False,
        show_queries: bool = False,
    ):
        """Load the manifest in stack_dir and render its globals."""
        manifest = load_manifest(stack_dir)
        renderer = Renderer()
        globals_ = build_global_context(
            env_vars or {}, manifest, stack_env, manifest.name, renderer=renderer
        )
        ctx = Context(
            manifest.name,
            stack_env,
            variables=globals_,
            dry_run=dry_run,
            show_queries=show_queries,
        )
        return cls(manifest, ctx, QueryExecutor(engine), stack_dir, renderer=renderer)

    @property
    def dry_run(self) -> bool:
        return self.ctx.dry_run

    # -- Resource setup --

    def prepare(self, resource: Resource) -> ResourceScope:
        """Render a resource's properties against the current context."""
        props = render_properties(
            self.ctx.variables, resource, self.ctx.stack_env, renderer=self.renderer
        )
        return ResourceScope(resource=resource, ctx=self.ctx, overlay=props)

    def should_process(self, scope: ResourceScope) -> bool:
        """Evaluate the resource's condition guard."""
        condition = scope.resource.condition
        if not condition:
            return True
        if self.renderer.evaluate(condition, scope.variables()):
            return True
        logger.info("Skipping resource [%s] due to condition: %s", scope.name, condition)
        return False

    def load_queries(self, resource: Resource) -> dict[str, QueryFragment]:
        return load_queries(self.stack_dir / "resources" / resource.query_file)

    def resource_queries(self, resource: Resource) -> tuple[dict[str, QueryFragment], QueryFragment | None]:
        """Return the anchor fragments and, for inline statements, the inline fragment."""
        if resource.sql and resource.type in (ResourceType.COMMAND, ResourceType.QUERY):
            anchor = COMMAND if resource.type is ResourceType.COMMAND else EXPORTS
            return {}, QueryFragment(anchor=anchor, template=resource.sql)
        return self.load_queries(resource), None

    def render(self, scope: ResourceScope, fragment: QueryFragment) -> str:
        return fragment.render(self.renderer, scope.variables(), resource=scope.name)

    def show_query(self, statement: str) -> None:
        if self.ctx.show_queries:
            logger.info("query:\n\n%s\n", statement)

    # -- Checks --

    def check_exists(
        self,
        scope: ResourceScope,
        fragment: QueryFragment,
        *,
        retries: int | None = None,
        delay: int | None = None,
        delete_test: bool = False,
    ) -> bool:
        """Probe for the resource; with delete_test, probe for its absence."""
        check_type = "post-delete" if delete_test else "exists"
        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info(
                "dry run %s check for [%s]:\n\n/* exists query */\n%s\n",
                check_type,
                scope.name,
                statement,
            )
            return False

        logger.info("running %s check for [%s]...", check_type, scope.name)
        self.show_query(statement)
        return self.executor.probe(
            scope.name,
            statement,
            retries=fragment.options.retries if retries is None else retries,
            delay=fragment.options.retry_delay if delay is None else delay,
            delete_test=delete_test,
        )

    def check_state(self, scope: ResourceScope, fragment: QueryFragment) -> bool:
        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info(
                "dry run state check for [%s]:\n\n/* state check query */\n%s\n",
                scope.name,
                statement,
            )
            return True

        logger.info("running state check for [%s]...", scope.name)
        self.show_query(statement)
        correct = self.executor.probe(
            scope.name,
            statement,
            retries=fragment.options.retries,
            delay=fragment.options.retry_delay,
        )
        if correct:
            logger.info("[%s] is in the desired state", scope.name)
        else:
            logger.info("[%s] is not in the desired state", scope.name)
        return correct

    def check_state_via_exports(
        self,
        scope: ResourceScope,
        fragment: QueryFragment,
        *,
        retries: int,
        delay: int,
    ) -> tuple[bool, Rows | None]:
        """Use the exports query as a state check; returns the rows when it passes."""
        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info(
                "dry run state check using exports proxy for [%s]:\n\n/* exports as statecheck proxy */\n%s\n",
                scope.name,
                statement,
            )
            return True, None

        logger.info("running state check using exports proxy for [%s]...", scope.name)
        self.show_query(statement)
        rows = self.executor.run_query(statement, suppress_errors=True, retries=retries, delay=delay)
        if rows and not is_error_row(rows):
            logger.info("[%s] exports proxy indicates resource is in the desired state", scope.name)
            return True, rows
        logger.info("[%s] exports proxy indicates resource is not in the desired state", scope.name)
        return False, None

    # -- Mutations --

    def create(self, scope: ResourceScope, fragment: QueryFragment, *, ignore_errors: bool = False) -> bool:
        """Run the create query; returns True when a statement was dispatched."""
        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info(
                "dry run create for [%s]:\n\n/* insert (create) query */\n%s\n",
                scope.name,
                statement,
            )
            return False

        logger.info("[%s] does not exist, creating...", scope.name)
        self.show_query(statement)
        msg = self.executor.run_command(
            statement,
            ignore_errors=ignore_errors,
            retries=fragment.options.retries,
            delay=fragment.options.retry_delay,
        )
        logger.debug("Create response: %s", msg)
        return True

    def update(
        self,
        scope: ResourceScope,
        fragment: QueryFragment | None,
        *,
        ignore_errors: bool = False,
    ) -> bool:
        """Run the update query if one is configured."""
        if fragment is None:
            logger.info("Update query not configured for [%s], skipping update...", scope.name)
            return False

        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info("dry run update for [%s]:\n\n/* update query */\n%s\n", scope.name, statement)
            return False

        logger.info("updating [%s]...", scope.name)
        self.show_query(statement)
        msg = self.executor.run_command(
            statement,
            ignore_errors=ignore_errors,
            retries=fragment.options.retries,
            delay=fragment.options.retry_delay,
        )
        logger.debug("Update response: %s", msg)
        return True

    def delete(self, scope: ResourceScope, fragment: QueryFragment, *, ignore_errors: bool = False) -> None:
        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info("dry run delete for [%s]:\n\n%s\n", scope.name, statement)
            return

        logger.info("deleting [%s]...", scope.name)
        self.show_query(statement)
        msg = self.executor.run_command(
            statement,
            ignore_errors=ignore_errors,
            retries=fragment.options.retries,
            delay=fragment.options.retry_delay,
        )
        logger.debug("Delete response: %s", msg)

    def run_command(self, scope: ResourceScope, fragment: QueryFragment) -> None:
        statement = self.render(scope, fragment)
        if self.dry_run:
            logger.info("dry run command:\n\n%s\n", statement)
            return

        logger.info("running command...")
        self.show_query(statement)
        self.executor.run_command(
            statement,
            retries=fragment.options.retries,
            delay=fragment.options.retry_delay,
        )

    # -- Exports --

    def apply_exports(self, scope: ResourceScope, delta: Mapping[str, Any]) -> None:
        log_exports(delta, scope.resource.protected)
        self.ctx.update(delta)

    def apply_export_rows(self, scope: ResourceScope, rows: Rows) -> None:
        """Export from rows already fetched (e.g. by the exports proxy)."""
        self.apply_exports(scope, extract_exports(scope.resource, rows))

    def process_exports(
        self,
        scope: ResourceScope,
        fragment: QueryFragment,
        *,
        tolerate_empty: bool = False,
    ) -> None:
        """Run the exports query and fold the declared values into the context."""
        resource = scope.resource
        if not resource.exports:
            return

        statement = self.render(scope, fragment)
        if self.dry_run:
            self.apply_exports(scope, placeholder_exports(resource))
            logger.info(
                "dry run exports query for [%s]:\n\n/* exports query */\n%s\n",
                scope.name,
                statement,
            )
            return

        logger.info("exporting variables for [%s]...", scope.name)
        self.show_query(statement)
        rows = self.executor.run_query(
            statement,
            suppress_errors=True,
            retries=fragment.options.retries,
            delay=fragment.options.retry_delay,
        )
        logger.debug("Exports result: %s", rows)
        self.apply_exports(scope, extract_exports(resource, rows, tolerate_empty=tolerate_empty))

    # -- Scripts --

    def run_script(self, scope: ResourceScope) -> None:
        """Run a script resource and export the values it prints as JSON."""
        resource = scope.resource
        if not resource.run:
            raise ConfigurationError(f"Script resource [{resource.name}] must include 'run' key")

        script = normalize_bool(self.renderer.render(resource.run, scope.variables()))
        if self.dry_run:
            logger.info(
                "dry run script for [%s]:\n\n%s\n",
                resource.name,
                script.replace('""', '"<evaluated>"'),
            )
            if resource.exports:
                self.apply_exports(scope, placeholder_exports(resource))
            return

        logger.info("running script for [%s]...", resource.name)
        proc = subprocess.run(script, shell=True, capture_output=True, text=True, check=False)
        logger.debug("Script output: %s", proc.stdout)
        if proc.returncode != 0:
            raise ExecutionError(
                f"Script for [{resource.name}] failed with status {proc.returncode}: {proc.stderr}"
            )
        if not resource.exports:
            return

        try:
            output = json.loads(proc.stdout)
        except ValueError:
            raise ExecutionError(f"External scripts must return valid JSON: {proc.stdout}") from None
        if not isinstance(output, dict) or any(isinstance(v, (dict, list)) for v in output.values()):
            raise ExecutionError(f"External scripts must return a flat JSON object: {proc.stdout}")
        for name in resource.export_names():
            if name not in output:
                raise ExecutionError(f"Exported variable '{name}' not found in script output")
        logger.info("Exported variables from script: %s", sorted(output))
        self.apply_exports(scope, output)

    # -- Stack-level --

    def pull_providers(self) -> None:
        """Make sure every manifest provider is installed, pulling missing ones."""
        if self.dry_run:
            logger.info("dry run: would check providers %s", self.manifest.providers)
            return

        installed = self.executor.run_query("SHOW PROVIDERS")
        for provider in self.manifest.providers:
            name, _, version = provider.partition("::")
            versions = [p.get("version", "") for p in installed if p.get("name") == name]
            if versions and (
                not version or any(_version_key(v) >= _version_key(version) for v in versions)
            ):
                logger.info("Provider '%s' is already installed.", provider)
                continue
            logger.info("Pulling provider '%s'...", provider)
            msg = self.executor.run_command(f"REGISTRY PULL {provider}")
            if msg:
                logger.info("%s", msg)

    def write_outputs(self, output_file: str | Path | None, elapsed_time: str) -> None:
        """Write the stack export file when an output path was requested."""
        if output_file is None:
            return
        logger.info("Processing stack exports...")
        if self.dry_run:
            logger.info(
                "dry run: would export %d variables to %s "
                "(including automatic stack_name, stack_env, and elapsed_time)",
                len(self.manifest.exports) + 3,
                output_file,
            )
            return
        data = stack_exports(
            self.manifest,
            self.ctx.variables,
            stack_name=self.ctx.stack_name,
            stack_env=self.ctx.stack_env,
            elapsed_time=elapsed_time,
        )
        write_stack_exports(output_file, data)

    def banner(self, message: str, color: str = "blue") -> None:
        print_box(message, color)

    def timer(self) -> float:
        return time.monotonic()
