"""Teardown command."""

from __future__ import annotations

import logging

from .errors import ConvergenceError
from .exports import reverse_exports
from .manifest import Resource, ResourceType
from .queries import DELETE, EXISTS, EXPORTS, STATECHECK
from .runner import StackRunner, format_elapsed

logger = logging.getLogger(__name__)

_DELETABLE = (ResourceType.RESOURCE, ResourceType.MULTI)
_EXPORTING = (ResourceType.RESOURCE, ResourceType.MULTI, ResourceType.QUERY)


class Deprovisioner(StackRunner):
    """Collects every export up front, then deletes resources last-to-first."""

    def run(self) -> None:
        start = self.timer()
        logger.info(
            "tearing down [%s] in [%s] environment %s",
            self.ctx.stack_name,
            self.ctx.stack_env,
            "(dry run)" if self.dry_run else "",
        )
        self.collect_exports()

        for resource in reversed(self.manifest.resources):
            if resource.type in _DELETABLE:
                self.destroy(resource)

        logger.info("teardown completed in %s", format_elapsed(self.timer() - start))

    def collect_exports(self) -> None:
        """Resolve exports for all resources before anything is destroyed."""
        logger.info("collecting exports for [%s] in [%s] environment", self.ctx.stack_name, self.ctx.stack_env)
        for resource in self.manifest.resources:
            if resource.type not in _EXPORTING:
                continue
            scope = self.prepare(resource)
            if not self.should_process(scope):
                continue
            queries, inline = self.resource_queries(resource)
            exports = queries.get(EXPORTS) or inline
            if exports is None:
                logger.debug("no exports query for [%s]", resource.name)
                continue
            self.process_exports(scope, exports, tolerate_empty=True)

    def destroy(self, resource: Resource) -> None:
        self.banner(f"Processing resource: {resource.name}", "red")
        scope = self.prepare(resource)
        if not self.should_process(scope):
            return

        reverse = reverse_exports(resource, self.ctx.variables)
        if reverse:
            logger.debug("adding reverse export mappings for [%s]: %s", resource.name, sorted(reverse))
            scope.overlay = {**scope.overlay, **reverse}

        queries = self.load_queries(resource)
        probe = queries.get(EXISTS) or queries.get(STATECHECK)
        if probe is None:
            logger.info("No exists or statecheck query for [%s], skipping...", resource.name)
            return
        delete = queries.get(DELETE)
        if delete is None:
            logger.info("No delete query for [%s], skipping...", resource.name)
            return

        is_multi = resource.type is ResourceType.MULTI
        if is_multi:
            logger.debug("[%s] is a multi resource, assuming it exists", resource.name)
            exists = True
        else:
            exists = self.check_exists(scope, probe)

        if not exists:
            logger.info("[%s] does not exist, skipping delete", resource.name)
            return

        self.delete(scope, delete, ignore_errors=is_multi)

        gone = self.check_exists(
            scope,
            probe,
            retries=probe.options.postdelete_retries,
            delay=probe.options.postdelete_retry_delay,
            delete_test=True,
        )
        if gone:
            logger.info("successfully deleted %s", resource.name)
        elif self.dry_run:
            pass
        elif is_multi:
            logger.warning("[%s] may not be fully deleted", resource.name)
        else:
            raise ConvergenceError(f"Failed to delete {resource.name}")
