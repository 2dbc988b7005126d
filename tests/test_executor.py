"""Tests for stackql_deploy.executor."""

from __future__ import annotations

import pytest
from conftest import FakeEngine, count, rows

from stackql_deploy.client import CommandResult, Empty, EngineError, Rows
from stackql_deploy.errors import ExecutionError, InvariantViolation
from stackql_deploy.executor import ERROR_MARKER, QueryExecutor, is_error_notice, rewrite_registry_pull


def _executor(engine):
    sleeps = []
    return QueryExecutor(engine, sleep=sleeps.append), sleeps


class TestHelpers:
    def test_registry_pull_rewrite(self):
        assert rewrite_registry_pull("REGISTRY PULL aws::v24.7.00244") == "REGISTRY PULL aws v24.7.00244"

    def test_registry_pull_without_version(self):
        assert rewrite_registry_pull("REGISTRY PULL aws") == "REGISTRY PULL aws"

    def test_error_notice(self):
        assert is_error_notice("http response status code: 404, response body: ...")
        assert is_error_notice("error: bad request")
        assert not is_error_notice("http response status code: 200")


class TestRunQuery:
    def test_returns_rows(self, engine):
        engine.on("SELECT", rows({"vpc_id": "vpc-1"}))
        executor, _ = _executor(engine)
        assert executor.run_query("SELECT vpc_id") == [{"vpc_id": "vpc-1"}]

    def test_retries_empty_then_rows(self, engine):
        engine.on("SELECT", Empty(), rows({"a": "1"}))
        executor, sleeps = _executor(engine)
        assert executor.run_query("SELECT a", retries=2, delay=3) == [{"a": "1"}]
        assert len(engine.statements) == 2
        assert sleeps == [3]

    def test_empty_after_budget(self, engine):
        executor, sleeps = _executor(engine)
        assert executor.run_query("SELECT a", retries=2, delay=1) == []
        assert len(engine.statements) == 3
        assert sleeps == [1, 1]

    def test_engine_error_raises(self, engine):
        engine.on("SELECT", EngineError("boom"))
        executor, _ = _executor(engine)
        with pytest.raises(ExecutionError, match="boom"):
            executor.run_query("SELECT a", retries=1)
        assert len(engine.statements) == 2

    def test_engine_error_suppressed(self, engine):
        engine.on("SELECT", EngineError("boom"))
        executor, _ = _executor(engine)
        assert executor.run_query("SELECT a", suppress_errors=True) == [{ERROR_MARKER: "boom"}]

    def test_error_row(self, engine):
        engine.on("SELECT", rows({"error": "denied"}))
        executor, _ = _executor(engine)
        with pytest.raises(ExecutionError, match="denied"):
            executor.run_query("SELECT a")
        assert executor.run_query("SELECT a", suppress_errors=True) == [{ERROR_MARKER: "denied"}]

    def test_error_notice_fatal(self, engine):
        engine.on("SELECT", Rows(columns=[], rows=[], notices=["error: quota exceeded"]))
        executor, _ = _executor(engine)
        with pytest.raises(ExecutionError, match="quota"):
            executor.run_query("SELECT a")

    def test_command_result(self, engine):
        engine.on("SELECT", CommandResult("OK"))
        executor, _ = _executor(engine)
        assert executor.run_query("SELECT a") == []

    def test_count_above_one_never_retried(self, engine):
        engine.on("SELECT", count(2))
        executor, sleeps = _executor(engine)
        with pytest.raises(InvariantViolation, match="got 2"):
            executor.run_query("SELECT COUNT(*) as count", retries=5, delay=10)
        assert len(engine.statements) == 1
        assert sleeps == []

    def test_count_one(self, engine):
        engine.on("SELECT", count(1))
        executor, _ = _executor(engine)
        assert executor.run_query("SELECT COUNT(*) as count") == [{"count": "1"}]


class TestRunCommand:
    def test_returns_message(self, engine):
        engine.on("INSERT", CommandResult("INSERT 0 1"))
        executor, _ = _executor(engine)
        assert executor.run_command("INSERT INTO t") == "INSERT 0 1"

    def test_rewrites_registry_pull(self, engine):
        executor, _ = _executor(engine)
        executor.run_command("REGISTRY PULL google::v24.1.0")
        assert engine.statements == ["REGISTRY PULL google v24.1.0"]

    def test_error_notice_retried_then_fatal(self, engine):
        engine.on("INSERT", Rows(columns=[], rows=[], notices=["http response status code: 409"]))
        executor, sleeps = _executor(engine)
        with pytest.raises(ExecutionError, match="409"):
            executor.run_command("INSERT INTO t", retries=2, delay=5)
        assert len(engine.statements) == 3
        assert sleeps == [5, 5]

    def test_error_notice_ignored(self, engine):
        engine.on("INSERT", Rows(columns=[], rows=[], notices=["http response status code: 500"]))
        executor, _ = _executor(engine)
        assert executor.run_command("INSERT INTO t", ignore_errors=True, retries=3) == ""
        assert len(engine.statements) == 1

    def test_engine_error_recovers(self, engine):
        engine.on("INSERT", EngineError("not ready"), CommandResult("done"))
        executor, _ = _executor(engine)
        assert executor.run_command("INSERT INTO t", retries=1) == "done"

    def test_informational_notice(self, engine):
        engine.on("INSERT", Rows(columns=[], rows=[], notices=["accepted"]))
        executor, _ = _executor(engine)
        assert executor.run_command("INSERT INTO t") == "accepted"


class TestProbe:
    def test_exists(self, engine):
        engine.on("SELECT", count(1))
        executor, _ = _executor(engine)
        assert executor.test("vpc", "SELECT count") is True

    def test_not_exists(self, engine):
        engine.on("SELECT", count(0))
        executor, _ = _executor(engine)
        assert executor.test("vpc", "SELECT count") is False

    def test_delete_test(self, engine):
        engine.on("SELECT", count(0))
        executor, _ = _executor(engine)
        assert executor.test("vpc", "SELECT count", delete_test=True) is True

    def test_delete_test_error_counts_as_gone(self, engine):
        engine.on("SELECT", EngineError("not found"))
        executor, _ = _executor(engine)
        assert executor.test("vpc", "SELECT count", delete_test=True) is True
        assert executor.test("vpc", "SELECT count") is False

    def test_non_count_row(self, engine):
        engine.on("SELECT", rows({"id": "x"}))
        executor, _ = _executor(engine)
        assert executor.test("vpc", "SELECT id") is True
        assert executor.test("vpc", "SELECT id", delete_test=True) is False

    def test_probe_retries_without_final_sleep(self, engine):
        engine.on("SELECT", count(0))
        executor, sleeps = _executor(engine)
        assert executor.probe("vpc", "SELECT count", retries=3, delay=2) is False
        assert len(engine.statements) == 3
        assert sleeps == [2, 2]

    def test_probe_stops_on_success(self, engine):
        engine.on("SELECT", count(0), count(1))
        executor, _ = _executor(engine)
        assert executor.probe("vpc", "SELECT count", retries=5, delay=0) is True
        assert len(engine.statements) == 2

    def test_probe_count_two_fatal(self):
        engine = FakeEngine().on("SELECT", count(2))
        executor, _ = _executor(engine)
        with pytest.raises(InvariantViolation):
            executor.probe("vpc", "SELECT count", retries=5, delay=1)
        assert len(engine.statements) == 1
