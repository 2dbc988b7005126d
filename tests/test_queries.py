"""Tests for stackql_deploy.queries."""

from __future__ import annotations

import pytest

from stackql_deploy.errors import ConfigurationError
from stackql_deploy.queries import QueryFragment, load_queries, parse_anchor, parse_queries
from stackql_deploy.templating import Renderer


class TestParseAnchor:
    def test_plain_name(self):
        name, options = parse_anchor("exists")
        assert name == "exists"
        assert options.retries == 1
        assert options.retry_delay == 0

    def test_case_insensitive(self):
        name, _ = parse_anchor(" CreateOrUpdate ")
        assert name == "createorupdate"

    def test_aliases(self):
        assert parse_anchor("preflight")[0] == "exists"
        assert parse_anchor("postdeploy")[0] == "statecheck"

    def test_options(self):
        _, options = parse_anchor("statecheck, retries=5, retry_delay=10")
        assert options.retries == 5
        assert options.retry_delay == 10

    def test_postdelete_options(self):
        _, options = parse_anchor("delete, postdelete_retries=3, postdelete_retry_delay=2")
        assert options.postdelete_retries == 3
        assert options.postdelete_retry_delay == 2

    def test_invalid_values_ignored(self):
        _, options = parse_anchor("exists, retries=abc, retry_delay=-1, bogus=4")
        assert options.retries == 1
        assert options.retry_delay == 0


class TestParseQueries:
    def test_splits_fragments(self):
        text = (
            "/*+ exists */\n"
            "SELECT COUNT(*) as count FROM t\n"
            "\n"
            "/*+ create, retries=3 */\n"
            "INSERT INTO t SELECT 1\n"
        )
        queries = parse_queries(text)
        assert sorted(queries) == ["create", "exists"]
        assert queries["exists"].template == "SELECT COUNT(*) as count FROM t"
        assert queries["create"].options.retries == 3

    def test_preamble_ignored(self):
        queries = parse_queries("-- a comment\nSELECT 1\n/*+ exports */\nSELECT 2\n")
        assert list(queries) == ["exports"]
        assert queries["exports"].template == "SELECT 2"

    def test_blank_fragments_dropped(self):
        queries = parse_queries("/*+ exists */\n\n/*+ delete */\nDELETE FROM t\n")
        assert list(queries) == ["delete"]

    def test_alias_keyed_by_canonical_name(self):
        queries = parse_queries("/*+ postdeploy, retries=4 */\nSELECT 1\n")
        assert queries["statecheck"].options.retries == 4


class TestLoadQueries:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_queries(tmp_path / "nope.iql")

    def test_loads_file(self, tmp_path):
        path = tmp_path / "vpc.iql"
        path.write_text("/*+ exists */\nSELECT 1\n")
        assert "exists" in load_queries(path)


class TestQueryFragment:
    def test_render(self):
        fragment = QueryFragment(anchor="exists", template="SELECT '{{ region }}'")
        assert fragment.render(Renderer(), {"region": "us-east-1"}) == "SELECT 'us-east-1'"

    def test_render_error_names_resource(self):
        fragment = QueryFragment(anchor="create", template="{{ missing }}")
        with pytest.raises(ConfigurationError, match=r"\[vpc\] \[create\]"):
            fragment.render(Renderer(), {}, resource="vpc")
