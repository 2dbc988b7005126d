"""Tests for stackql_deploy.validator."""

from __future__ import annotations

import pytest
from conftest import count, make_runner, rows, write_stack

from stackql_deploy.errors import ConfigurationError, ConvergenceError
from stackql_deploy.validator import StackValidator

MANIFEST = """
version: 1
name: test-stack
providers:
  - aws
resources:
  - name: vpc
    exports:
      - vpc_id
  - name: subnet
    exports:
      - subnet_id
  - name: lookup
    type: query
    sql: "SELECT region FROM regions WHERE vpc = '{{ vpc_id }}'"
    exports:
      - region
  - name: tag
    type: command
    sql: "UPDATE vpcs SET tags = 'x'"
  - name: token
    type: script
    run: "exit 1"
"""

QUERIES = {
    "vpc.iql": (
        "/*+ exists */\nSELECT COUNT(*) AS count FROM vpcs\n"
        "/*+ create */\nINSERT INTO vpcs SELECT 1\n"
        "/*+ exports */\nSELECT vpc_id FROM vpcs\n"
    ),
    "subnet.iql": (
        "/*+ create */\nINSERT INTO subnets SELECT 1\n"
        "/*+ statecheck */\nSELECT COUNT(*) AS count FROM subnets WHERE vpc = '{{ vpc_id }}'\n"
        "/*+ exports */\nSELECT subnet_id FROM subnets\n"
    ),
}


def _runner(tmp_path, engine, manifest=MANIFEST, queries=QUERIES, **kwargs):
    return make_runner(StackValidator, write_stack(tmp_path / "stack", manifest, queries), engine, **kwargs)


def _healthy(engine):
    engine.on("SELECT vpc_id", rows({"vpc_id": "vpc-1"}))
    engine.on("FROM subnets WHERE", count(1))
    engine.on("SELECT subnet_id", rows({"subnet_id": "sn-1"}))
    engine.on("SELECT region", rows({"region": "us-east-1"}))


class TestStackValidator:
    def test_passes(self, tmp_path, engine):
        _healthy(engine)
        runner = _runner(tmp_path, engine)
        runner.run()
        assert runner.ctx["vpc_id"] == "vpc-1"
        assert runner.ctx["subnet_id"] == "sn-1"
        assert runner.ctx["region"] == "us-east-1"
        assert "SELECT COUNT(*) AS count FROM subnets WHERE vpc = 'vpc-1'" in engine.statements

    def test_never_mutates(self, tmp_path, engine):
        _healthy(engine)
        _runner(tmp_path, engine).run()
        assert engine.matching("INSERT") == []
        assert engine.matching("UPDATE") == []

    def test_exports_proxy_reused(self, tmp_path, engine):
        _healthy(engine)
        _runner(tmp_path, engine).run()
        assert len(engine.matching("SELECT vpc_id")) == 1
        assert engine.matching("SELECT COUNT(*) AS count FROM vpcs") == []

    def test_idempotent(self, tmp_path, engine):
        _healthy(engine)
        first = _runner(tmp_path, engine)
        first.run()
        second = _runner(tmp_path, engine)
        second.run()
        assert first.ctx.variables == second.ctx.variables

    def test_statecheck_failure_fatal(self, tmp_path, engine):
        engine.on("SELECT vpc_id", rows({"vpc_id": "vpc-1"}))
        engine.on("FROM subnets WHERE", count(0))
        with pytest.raises(ConvergenceError, match="subnet"):
            _runner(tmp_path, engine).run()

    def test_proxy_failure_fatal(self, tmp_path, engine):
        with pytest.raises(ConvergenceError, match="vpc"):
            _runner(tmp_path, engine).run()

    def test_skip_validation(self, tmp_path, engine):
        manifest = MANIFEST.replace("  - name: subnet\n", "  - name: subnet\n    skip_validation: true\n")
        engine.on("SELECT vpc_id", rows({"vpc_id": "vpc-1"}))
        engine.on("SELECT subnet_id", rows({"subnet_id": "sn-1"}))
        engine.on("SELECT region", rows({"region": "us-east-1"}))
        _runner(tmp_path, engine, manifest).run()
        assert engine.matching("FROM subnets WHERE") == []

    def test_exists_only_not_testable(self, tmp_path, engine):
        manifest = """
version: 1
name: test-stack
providers:
  - aws
resources:
  - name: vpc
"""
        queries = {"vpc.iql": "/*+ exists */\nSELECT COUNT(*) AS count FROM vpcs\n/*+ create */\nINSERT 1\n"}
        with pytest.raises(ConfigurationError, match="for validation"):
            _runner(tmp_path, engine, manifest, queries).run()
        assert engine.statements == []

    @pytest.mark.parametrize("mutation", ["create", "createorupdate"])
    def test_skip_validation_needs_no_check_anchor(self, tmp_path, engine, mutation):
        manifest = """
version: 1
name: test-stack
providers:
  - aws
resources:
  - name: vpc
    skip_validation: true
"""
        queries = {"vpc.iql": f"/*+ exists */\nSELECT COUNT(*) AS count FROM vpcs\n/*+ {mutation} */\nINSERT 1\n"}
        _runner(tmp_path, engine, manifest, queries).run()
        assert engine.statements == []

    def test_output_file(self, tmp_path, engine):
        _healthy(engine)
        manifest = MANIFEST + "exports:\n  - vpc_id\n  - region\n"
        output = tmp_path / "exports.json"
        _runner(tmp_path, engine, manifest).run(output_file=output)
        assert '"region": "us-east-1"' in output.read_text()

    def test_dry_run(self, tmp_path, engine):
        runner = _runner(tmp_path, engine, dry_run=True)
        runner.run()
        assert engine.statements == []
