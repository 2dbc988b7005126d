"""Build command: reconcile every resource in a stack with its declared state."""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import ConfigurationError, ConvergenceError
from .manifest import Resource, ResourceType
from .queries import COMMAND, CREATE, CREATE_OR_UPDATE, EXPORTS, UPDATE, QueryFragment
from .runner import ResourceScope, Rows, StackRunner, format_elapsed
from .strategies import select_strategy

logger = logging.getLogger(__name__)


class Provisioner(StackRunner):
    """Deploys resources in manifest order, exporting values as it goes."""

    def run(self, *, output_file: str | Path | None = None) -> None:
        start = self.timer()
        logger.info(
            "deploying [%s] in [%s] environment %s",
            self.ctx.stack_name,
            self.ctx.stack_env,
            "(dry run)" if self.dry_run else "",
        )
        self.pull_providers()

        for resource in self.manifest.resources:
            self.deploy(resource)

        elapsed = format_elapsed(self.timer() - start)
        logger.info("deployment completed in %s", elapsed)
        self.write_outputs(output_file, elapsed)

    def deploy(self, resource: Resource) -> None:
        self.banner(f"Processing resource: {resource.name}")
        scope = self.prepare(resource)
        if not self.should_process(scope):
            return

        if resource.type is ResourceType.SCRIPT:
            self.run_script(scope)
            logger.info("script [%s] complete", resource.name)
            return

        queries, inline = self.resource_queries(resource)
        exports = queries.get(EXPORTS)
        if resource.type is ResourceType.QUERY:
            exports = exports or inline
            if exports is None:
                raise ConfigurationError(f"Query resource [{resource.name}] has no exports query")

        proxy_rows: Rows | None = None
        if resource.type in (ResourceType.RESOURCE, ResourceType.MULTI):
            proxy_rows = self.reconcile(scope, queries, exports)
        elif resource.type is ResourceType.COMMAND:
            command = inline or queries.get(COMMAND)
            if command is None:
                raise ConfigurationError(f"Command resource [{resource.name}] has no command query")
            self.run_command(scope, command)

        if exports is not None:
            if proxy_rows is not None:
                logger.info("reusing exports result from proxy for [%s]...", resource.name)
                self.apply_export_rows(scope, proxy_rows)
            else:
                self.process_exports(scope, exports)

        if not self.dry_run:
            if resource.type is ResourceType.RESOURCE:
                logger.info("successfully deployed %s", resource.name)
            elif resource.type is ResourceType.QUERY:
                logger.info("successfully exported variables for query in %s", resource.name)

    def reconcile(
        self,
        scope: ResourceScope,
        queries: dict[str, QueryFragment],
        exports: QueryFragment | None,
    ) -> Rows | None:
        """Bring a resource to its declared state; returns proxy rows when available."""
        resource = scope.resource
        create = queries.get(CREATE_OR_UPDATE) or queries.get(CREATE)
        if create is None:
            raise ConfigurationError(
                f"Query file for [{resource.name}] must include either 'create' or 'createorupdate' anchor"
            )
        update = queries.get(CREATE_OR_UPDATE) or queries.get(UPDATE)
        strategy = select_strategy(queries, exports)
        logger.debug("[%s] using %s strategy", resource.name, strategy.name)

        ignore_errors = resource.type is ResourceType.MULTI
        state = strategy.assess(self, scope)
        changed = False
        if not state.exists:
            changed = self.create(scope, create, ignore_errors=ignore_errors)
        elif not state.correct:
            changed = self.update(scope, update, ignore_errors=ignore_errors)
        else:
            logger.info("[%s] exists and is in the desired state", resource.name)

        if changed:
            state = strategy.confirm(self, scope)

        if not state.correct and not self.dry_run:
            raise ConvergenceError(f"Deployment failed for {resource.name} after post-deploy checks")
        return state.proxy_rows
