"""Retry executor. Runs statements with a fixed retry budget and classifies the results."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from .client import CommandResult, Empty, Engine, EngineError, Rows
from .errors import ExecutionError, InvariantViolation

logger = logging.getLogger(__name__)

ERROR_MARKER = "_stackql_deploy_error"

_REGISTRY_PULL = re.compile(r"^(REGISTRY PULL \w+)::(v[\d.]+)")

_ERROR_SIGNATURES = (
    "http response status code: 4",
    "http response status code: 5",
    "error:",
    "disparity in fields to insert",
    "cannot find matching operation",
)

Row = dict[str, str]


def rewrite_registry_pull(statement: str) -> str:
    """Rewrite 'REGISTRY PULL name::vX.Y' to the engine's 'REGISTRY PULL name vX.Y' form."""
    return _REGISTRY_PULL.sub(r"\1 \2", statement, count=1)


def is_error_notice(message: str) -> bool:
    return message.startswith(_ERROR_SIGNATURES)


def is_error_row(rows: list[Row]) -> bool:
    """True when a result carries an engine error or the internal error marker."""
    return bool(rows) and (ERROR_MARKER in rows[0] or "error" in rows[0])


def row_error(rows: list[Row]) -> str:
    return rows[0].get(ERROR_MARKER) or rows[0].get("error", "")


def _parse_count(value: str) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class QueryExecutor:
    """Dispatch statements to an engine with retries and a blocking delay between attempts."""

    def __init__(self, engine: Engine, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.engine = engine
        self._sleep = sleep

    def run_query(
        self,
        statement: str,
        *,
        suppress_errors: bool = False,
        retries: int = 0,
        delay: int = 0,
    ) -> list[Row]:
        """Run a read statement up to retries+1 times.

        Returns the rows of the first non-empty, error-free attempt; an empty
        list when every attempt came back empty; and, when errors are
        suppressed, a single row holding the error marker once the budget is
        spent. A count above one is never retried.
        """
        last_error: str | None = None

        for attempt in range(retries + 1):
            final = attempt == retries
            logger.debug("Executing stackql query on attempt %d:\n\n%s\n", attempt + 1, statement)
            result = self.engine.execute(statement)

            if isinstance(result, EngineError):
                last_error = result.message
                if final and not suppress_errors:
                    raise ExecutionError(f"Exception during stackql query execution:\n\n{result.message}\n")
                if not final:
                    logger.error("Exception on attempt %d:\n\n%s\n", attempt + 1, result.message)
                    self._sleep(delay)
                continue

            if isinstance(result, CommandResult):
                logger.debug("Command result: %s", result.message)
                return []

            if isinstance(result, Rows):
                notice = next((n for n in result.notices if "error" in n or n.startswith("ERROR")), None)
                if notice is not None:
                    last_error = notice
                    if final and not suppress_errors:
                        raise ExecutionError(f"Error during stackql query execution:\n\n{notice}\n")

            if isinstance(result, Empty) or not result.rows:
                logger.debug("Stackql query executed successfully, retrieved 0 items.")
                if final:
                    return []
                self._sleep(delay)
                continue

            rows = result.rows
            if "error" in rows[0]:
                last_error = rows[0]["error"]
                if not suppress_errors:
                    if final:
                        raise ExecutionError(f"Error during stackql query execution:\n\n{last_error}\n")
                    logger.error("Attempt %d failed:\n\n%s\n", attempt + 1, last_error)
                if not final:
                    self._sleep(delay)
                continue

            if "count" in rows[0]:
                count = _parse_count(rows[0]["count"])
                logger.debug("Stackql query executed successfully, count: %s", rows[0]["count"])
                if count is not None and count > 1:
                    raise InvariantViolation(
                        "Detected more than one resource matching query criteria, "
                        f"expected 0 or 1, got {count}"
                    )
                return rows

            logger.debug("Stackql query executed successfully, retrieved %d items.", len(rows))
            return rows

        logger.debug("All attempts (%d) to execute the query completed.", retries + 1)
        if suppress_errors and last_error is not None:
            return [{ERROR_MARKER: last_error}]
        return []

    def run_command(
        self,
        statement: str,
        *,
        ignore_errors: bool = False,
        retries: int = 0,
        delay: int = 0,
    ) -> str:
        """Run a mutating statement; returns the engine's message.

        Error notices and engine errors are retried and then raised, unless
        ignore_errors is set, in which case the failure is swallowed.
        """
        statement = rewrite_registry_pull(statement)

        for attempt in range(retries + 1):
            final = attempt == retries
            logger.debug("Executing stackql command (attempt %d):\n\n%s\n", attempt + 1, statement)
            result = self.engine.execute(statement)

            if isinstance(result, EngineError):
                if ignore_errors:
                    logger.debug("Command failed (ignored): %s", result.message)
                    return ""
                if final:
                    raise ExecutionError(f"Exception during stackql command execution:\n\n{result.message}\n")
                logger.warning(
                    "Command failed, retrying in %d seconds (attempt %d of %d)...",
                    delay,
                    attempt + 1,
                    retries + 1,
                )
                self._sleep(delay)
                continue

            if isinstance(result, CommandResult):
                logger.debug("Stackql command executed successfully:\n\n%s\n", result.message)
                return result.message

            if isinstance(result, Empty):
                logger.debug("Command executed with empty result")
                return ""

            failed = next((n for n in result.notices if is_error_notice(n)), None)
            if failed is not None:
                if ignore_errors:
                    logger.debug("Command failed (ignored): %s", failed)
                    return ""
                if final:
                    raise ExecutionError(f"Error during stackql command execution:\n\n{failed}\n")
                logger.warning(
                    "Dependent resource(s) may not be ready, retrying in %d seconds (attempt %d of %d)...",
                    delay,
                    attempt + 1,
                    retries + 1,
                )
                self._sleep(delay)
                continue

            message = "\n".join(result.notices)
            if message:
                logger.debug("Stackql command executed successfully:\n\n%s\n", message)
            return message

        return ""

    def test(self, resource_name: str, statement: str, *, delete_test: bool = False) -> bool:
        """Run one probe attempt.

        For existence a count of 1 (or any non-count row) passes; for a
        post-delete check a count of 0, an empty result, or an error passes.
        """
        rows = self.run_query(statement, suppress_errors=True, retries=0, delay=0)

        if not rows:
            logger.debug("Test result %s for [%s]: no rows", delete_test, resource_name)
            return delete_test

        if is_error_row(rows):
            logger.debug("Test query errored for [%s]: %s", resource_name, row_error(rows))
            return delete_test

        count = _parse_count(rows[0].get("count")) if "count" in rows[0] else None
        if count is not None:
            expected = 0 if delete_test else 1
            passed = count == expected
            logger.debug(
                "Test result %s for [%s], expected %d got %d",
                passed,
                resource_name,
                expected,
                count,
            )
            return passed

        return not delete_test

    def probe(
        self,
        resource_name: str,
        statement: str,
        *,
        retries: int,
        delay: int,
        delete_test: bool = False,
    ) -> bool:
        """Repeat a probe up to `retries` times until it passes."""
        start = time.monotonic()
        for attempt in range(retries):
            if self.test(resource_name, statement, delete_test=delete_test):
                return True
            if attempt + 1 < retries:
                logger.info(
                    "attempt %d/%d: retrying in %d seconds (%d seconds elapsed).",
                    attempt + 1,
                    retries,
                    delay,
                    time.monotonic() - start,
                )
                self._sleep(delay)
        return False
