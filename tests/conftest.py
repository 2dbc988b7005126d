"""Shared fixtures for stackql_deploy tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from stackql_deploy.client import Empty, Rows
from stackql_deploy.executor import QueryExecutor


class FakeEngine:
    """Records statements and answers them from substring rules.

    A rule with several results hands them out in order and then repeats the
    last one. Unmatched statements return Empty.
    """

    def __init__(self):
        self.statements: list[str] = []
        self._rules: list[tuple[str, list]] = []

    def on(self, fragment: str, *results) -> FakeEngine:
        self._rules.append((fragment, list(results)))
        return self

    def execute(self, statement: str):
        self.statements.append(statement)
        for fragment, results in self._rules:
            if fragment in statement:
                if len(results) > 1:
                    return results.pop(0)
                return results[0]
        return Empty()

    def matching(self, fragment: str) -> list[str]:
        return [s for s in self.statements if fragment in s]


def rows(*items: dict[str, str]) -> Rows:
    columns = list(items[0]) if items else []
    return Rows(columns=columns, rows=list(items))


def count(n: int) -> Rows:
    return rows({"count": str(n)})


def write_stack(stack_dir: Path, manifest: str, queries: dict[str, str] | None = None) -> Path:
    stack_dir.mkdir(parents=True, exist_ok=True)
    (stack_dir / "stackql_manifest.yml").write_text(manifest)
    resources = stack_dir / "resources"
    resources.mkdir(exist_ok=True)
    for filename, text in (queries or {}).items():
        (resources / filename).write_text(text)
    return stack_dir


def make_runner(cls, stack_dir: Path, engine: FakeEngine, env: str = "dev", **kwargs):
    """Build a runner whose retries never sleep."""
    runner = cls.from_stack(stack_dir, env, engine, **kwargs)
    runner.sleeps = []
    runner.executor = QueryExecutor(engine, sleep=runner.sleeps.append)
    return runner


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()
