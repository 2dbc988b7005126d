"""State-determination strategies for deployable resources."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ConfigurationError
from .queries import CREATE_OR_UPDATE, EXISTS, STATECHECK, QueryFragment

if TYPE_CHECKING:
    from .runner import ResourceScope, Rows, StackRunner

logger = logging.getLogger(__name__)


@dataclass
class Assessment:
    """Outcome of a state check.

    proxy_rows holds the exports result when the exports query doubled as
    the state check, so the caller can export without querying again.
    """

    exists: bool = False
    correct: bool = False
    proxy_rows: Rows | None = None


class StateStrategy(ABC):
    """Decides how a resource's existence and state are determined."""

    name = "strategy"

    def __init__(self, queries: Mapping[str, QueryFragment], exports: QueryFragment | None = None) -> None:
        self.queries = queries
        self.exports = exports

    @property
    def exists_query(self) -> QueryFragment | None:
        return self.queries.get(EXISTS)

    @property
    def statecheck_query(self) -> QueryFragment | None:
        return self.queries.get(STATECHECK)

    @abstractmethod
    def assess(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        """Determine state before any mutation."""

    @abstractmethod
    def confirm(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        """Re-check state after a create or update."""

    def validate(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        """Check state for the test command."""
        raise ConfigurationError(
            f"Query file for [{scope.name}] must include either 'statecheck' or 'exports' anchor for validation"
        )

    def _proxy(self, runner: StackRunner, scope: ResourceScope, *, retries: int, delay: int) -> Assessment:
        assert self.exports is not None
        correct, rows = runner.check_state_via_exports(scope, self.exports, retries=retries, delay=delay)
        return Assessment(exists=correct, correct=correct, proxy_rows=rows)

    def _exports_budget(self) -> tuple[int, int]:
        """Retry budget for a post-mutation exports proxy.

        A statecheck with more than one retry lends its budget; otherwise the
        exports query's own options apply.
        """
        statecheck = self.statecheck_query
        if statecheck is not None and statecheck.options.retries > 1:
            return statecheck.options.retries, statecheck.options.retry_delay
        assert self.exports is not None
        return self.exports.options.retries, self.exports.options.retry_delay


class Upsert(StateStrategy):
    """A createorupdate anchor makes checks unnecessary before mutating."""

    name = "upsert"

    def assess(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        logger.debug("[%s] has createorupdate, skipping state checks", scope.name)
        return Assessment(exists=False, correct=False)

    def confirm(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        if self.statecheck_query is not None:
            correct = runner.check_state(scope, self.statecheck_query)
            return Assessment(exists=correct, correct=correct)
        if self.exports is not None:
            retries, delay = self._exports_budget()
            return self._proxy(runner, scope, retries=retries, delay=delay)
        exists = runner.check_exists(scope, self.exists_query)
        return Assessment(exists=exists, correct=exists)


class StatecheckBased(StateStrategy):
    """Existence from the exists query, correctness from the statecheck query."""

    name = "statecheck"

    def assess(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        statecheck = self.statecheck_query
        if self.exists_query is not None:
            exists = runner.check_exists(scope, self.exists_query)
            correct = False
        else:
            logger.info("no exists query for [%s], using statecheck for existence", scope.name)
            correct = runner.check_state(scope, statecheck)
            exists = correct
            return Assessment(exists=exists, correct=correct)

        if exists:
            if scope.resource.skip_validation:
                logger.info("skipping statecheck for [%s] (skip_validation)", scope.name)
                correct = True
            else:
                correct = runner.check_state(scope, statecheck)
        return Assessment(exists=exists, correct=correct)

    def confirm(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        correct = runner.check_state(scope, self.statecheck_query)
        return Assessment(exists=correct, correct=correct)

    def validate(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        correct = runner.check_state(scope, self.statecheck_query)
        return Assessment(exists=correct, correct=correct)


class ExportsProxy(StateStrategy):
    """The exports query stands in for a statecheck; a non-empty result means correct."""

    name = "exports-proxy"

    def assess(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        state = self._proxy(runner, scope, retries=1, delay=0)
        if state.correct:
            return state
        exists = False
        if self.exists_query is not None:
            exists = runner.check_exists(scope, self.exists_query)
        return Assessment(exists=exists, correct=False)

    def confirm(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        retries, delay = self._exports_budget()
        return self._proxy(runner, scope, retries=retries, delay=delay)

    def validate(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        return self._proxy(runner, scope, retries=1, delay=0)


class ExistsOnly(StateStrategy):
    """Only an exists query is available; an existing resource is taken as correct."""

    name = "exists-only"

    def assess(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        exists = runner.check_exists(scope, self.exists_query)
        return Assessment(exists=exists, correct=exists)

    def confirm(self, runner: StackRunner, scope: ResourceScope) -> Assessment:
        exists = runner.check_exists(scope, self.exists_query)
        return Assessment(exists=exists, correct=exists)


def select_strategy(
    queries: Mapping[str, QueryFragment],
    exports: QueryFragment | None = None,
    *,
    allow_upsert: bool = True,
) -> StateStrategy:
    """Pick a strategy from the anchors a resource provides."""
    has_check = EXISTS in queries or STATECHECK in queries or exports is not None
    if not has_check:
        raise ConfigurationError("Query file must include either 'exists', 'statecheck', or 'exports' anchor")
    if allow_upsert and CREATE_OR_UPDATE in queries:
        return Upsert(queries, exports)
    if STATECHECK in queries:
        return StatecheckBased(queries, exports)
    if exports is not None:
        return ExportsProxy(queries, exports)
    return ExistsOnly(queries, exports)
