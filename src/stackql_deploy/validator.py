"""Test command: check state without changing anything."""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import ConfigurationError, ConvergenceError
from .manifest import Resource, ResourceType
from .queries import EXPORTS
from .runner import StackRunner, format_elapsed
from .strategies import select_strategy

logger = logging.getLogger(__name__)


class StackValidator(StackRunner):
    """Checks state for each resource and exports values for later resources."""

    def run(self, *, output_file: str | Path | None = None) -> None:
        start = self.timer()
        logger.info(
            "testing [%s] in [%s] environment %s",
            self.ctx.stack_name,
            self.ctx.stack_env,
            "(dry run)" if self.dry_run else "",
        )

        for resource in self.manifest.resources:
            self.check(resource)

        elapsed = format_elapsed(self.timer() - start)
        logger.info("test completed in %s", elapsed)
        self.write_outputs(output_file, elapsed)

    def check(self, resource: Resource) -> None:
        if resource.type in (ResourceType.COMMAND, ResourceType.SCRIPT):
            logger.debug("skipping %s resource [%s]", resource.type.value, resource.name)
            return

        self.banner(f"Testing resource: {resource.name}")
        scope = self.prepare(resource)
        if not self.should_process(scope):
            return

        queries, inline = self.resource_queries(resource)
        exports = queries.get(EXPORTS) or inline

        proxy_rows = None
        if resource.type is ResourceType.QUERY:
            if exports is None:
                raise ConfigurationError(f"Query resource [{resource.name}] has no exports query")
        elif resource.skip_validation:
            logger.info("skipping validation for [%s]", resource.name)
        else:
            strategy = select_strategy(queries, exports, allow_upsert=False)
            state = strategy.validate(self, scope)
            if not state.correct and not self.dry_run:
                raise ConvergenceError(f"Test failed for {resource.name}")
            proxy_rows = state.proxy_rows
            if not self.dry_run:
                logger.info("test passed for %s", resource.name)

        if exports is not None:
            if proxy_rows is not None:
                logger.info("reusing exports result from proxy for [%s]...", resource.name)
                self.apply_export_rows(scope, proxy_rows)
            else:
                self.process_exports(scope, exports)
