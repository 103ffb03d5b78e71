"""Tests for filter compilation and evaluation."""

import logging

import pytest

from buildnotify.cel.predicate import compile_filter, make_predicate
from buildnotify.errors import CompileError, FilterCompileError
from buildnotify.models.build import Status

from conftest import make_event


class TestFilterMatching:
    """Filters evaluated against sample builds."""

    @pytest.mark.parametrize(
        "expression, overrides, expected",
        [
            ("build.status == Build.Status.SUCCESS", {}, True),
            ("build.status == Build.Status.SUCCESS", {"status": "FAILURE"}, False),
            ('build.status == "SUCCESS"', {}, True),
            ("build.status != Build.Status.FAILURE", {}, True),
            ("build.status in [Build.Status.FAILURE, Build.Status.TIMEOUT]", {"status": "TIMEOUT"}, True),
            ("build.status in [Build.Status.FAILURE, Build.Status.TIMEOUT]", {}, False),
            ('build.substitutions["BRANCH_NAME"] == "main"', {}, True),
            ("build.substitutions.BRANCH_NAME == 'develop'", {}, False),
            ('"bar" in build.tags', {}, True),
            ('"qux" in build.tags', {}, False),
            ("size(build.steps) == 2", {}, True),
            ("build.steps.size() > 5", {}, False),
            ('build.steps.exists(s, s.name.contains("docker"))', {}, True),
            ("build.steps.all(s, s.status == Build.Status.SUCCESS)", {}, True),
            ('build.steps.exists_one(s, s.name.endsWith("gcloud"))', {}, True),
            ('build.tags.filter(t, t.startsWith("b")).size() == 2', {}, True),
            ('build.tags.map(t, t + "!")[0] == "foo!"', {}, True),
            ('build.build_trigger_id.matches("^some-.*-id$")', {}, True),
            ('build.create_time > timestamp("2021-01-01T00:00:00Z")', {}, True),
            ('build.finish_time - build.start_time > duration("5m")', {}, True),
            ('build.timeout == duration("600s")', {}, True),
            ("build.start_time.getHours() == 18", {}, True),
            ("has(build.source)", {}, False),
            ("has(build.log_url)", {}, True),
            ("build.status == Build.Status.SUCCESS ? true : false", {}, True),
            ("!(build.status == Build.Status.SUCCESS) || build.project_id == 'my-project-id'", {}, True),
        ],
    )
    def test_expression(self, expression, overrides, expected):
        predicate = make_predicate(expression)
        assert predicate.apply(make_event(**overrides)) is expected

    def test_numeric_status_on_the_wire(self):
        predicate = make_predicate("build.status == Build.Status.FAILURE")
        assert predicate.apply(make_event(status=4)) is True

    def test_fully_qualified_enum_constant(self):
        predicate = make_predicate(
            "build.status == google.devtools.cloudbuild.v1.Build.Status.SUCCESS"
        )
        assert predicate.apply(make_event()) is True

    def test_matches_across_all_statuses(self):
        predicate = make_predicate("build.status == Build.Status.CANCELLED")
        for status in Status:
            assert predicate.apply(make_event(status=status.value)) is (
                status == Status.CANCELLED
            )

    def test_is_deterministic(self, event):
        predicate = make_predicate('build.tags.exists(t, t == "baz") && build.status == "SUCCESS"')
        assert {predicate.apply(event) for _ in range(20)} == {True}


class TestFilterEvaluationErrors:
    """Runtime errors become a non-match, never an exception."""

    def test_absent_optional_field_is_no_match(self, event, caplog):
        predicate = make_predicate('build.source.repo_source.branch_name == "main"')
        with caplog.at_level(logging.WARNING):
            assert predicate.apply(event) is False
        assert "treating as no match" in caplog.text

    def test_missing_map_key_is_no_match(self, event):
        predicate = make_predicate('build.substitutions["NOPE"] == "x"')
        assert predicate.apply(event) is False

    def test_list_index_out_of_range_is_no_match(self, event):
        predicate = make_predicate('build.tags[7] == "foo"')
        assert predicate.apply(event) is False

    def test_or_absorbs_error_on_left(self, event):
        predicate = make_predicate(
            'build.substitutions["NOPE"] == "x" || build.status == Build.Status.SUCCESS'
        )
        assert predicate.apply(event) is True

    def test_and_absorbs_error_on_right(self, event):
        predicate = make_predicate(
            'build.status == Build.Status.FAILURE && build.substitutions["NOPE"] == "x"'
        )
        assert predicate.apply(event) is False

    def test_division_by_zero_is_no_match(self, event):
        predicate = make_predicate("size(build.tags) / (size(build.images) - 1) == 1")
        assert predicate.apply(event) is False


class TestFilterCompileErrors:
    """Expressions rejected before any event is seen."""

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "   ",
            "build.id",
            "build.salad == 'x'",
            "event.id == 'x'",
            'build.status == "SALAD"',
            "build.status == Build.Status.SALAD",
            "build.status ==",
            "size(build.id, 1) == 1",
            'build.id.matches("(") ',
            'build.create_time > timestamp("yesterday")',
            "build.tags + 1 == 2",
            "1 + 2",
            "!" * 3000 + "true",
            "-" * 3000 + "1 == 1",
            " && ".join(["true"] * 3000),
            "build.id == 'x' || 1 == \u00b2",
        ],
    )
    def test_rejected(self, expression):
        with pytest.raises(FilterCompileError) as excinfo:
            compile_filter(expression)
        assert isinstance(excinfo.value, CompileError)
        assert excinfo.value.expression == expression

    def test_error_message_names_the_expression(self):
        with pytest.raises(FilterCompileError, match="build.salad"):
            make_predicate("build.salad == 'x'")

    def test_result_type_is_bool(self):
        assert str(compile_filter("build.id == 'x'").type) == "bool"
