"""
Tests for survey diagnostics.
"""

import pytest
from questengine.analyzer import analyze_survey
from questengine.compiler import SurveyCompiler

SURVEY = """{"name":"Checks"}
[A!] Pick
(1) Yes -> ZZZ
(0) No
[B,displayif=equals(A,1)] b
[C,displayif=exists("MISSING")] c
[END] Done"""


def test_counts():
    """Question and mandatory counts."""
    report = analyze_survey(SurveyCompiler(SURVEY))
    assert report.survey_name == "Checks"
    assert report.total_questions == 4
    assert report.mandatory_questions == 1
    assert report.total_loops == 0


def test_undefined_skip_target():
    """Skips to ids that do not exist are reported."""
    report = analyze_survey(SurveyCompiler(SURVEY))
    assert report.skip_targets == {"A": ["ZZZ"]}
    assert report.undefined_skip_targets == {"ZZZ"}
    assert "Undefined skip targets: ZZZ" in report.warnings


def test_unknown_references():
    """Condition references to undeclared ids are reported."""
    report = analyze_survey(SurveyCompiler(SURVEY))
    assert "MISSING" in report.unknown_references
    assert "A" not in report.unknown_references
    assert report.max_expression_depth == 1


def test_external_ids_are_declared():
    """Ids supplied from an earlier survey are not unknown."""
    report = analyze_survey(SurveyCompiler(SURVEY), external_ids=["MISSING"])
    assert report.unknown_references == set()


def test_loop_without_bound():
    """A loop whose first question names no bound source is flagged."""
    report = analyze_survey(SurveyCompiler("[A] a\n<loop max=2>\n[L] x\n</loop>\n[END] Done"))
    assert report.total_loops == 1
    assert report.loops_without_bound == [1]


def test_dropped_boundaries():
    """Duplicate ids dropped at compile time are reported."""
    with pytest.warns(UserWarning):
        compiler = SurveyCompiler("[A] a\n[A] b\n[END] Done")
    report = analyze_survey(compiler)
    assert report.dropped_boundaries == ["A"]
    assert "Dropped question boundaries: A" in report.warnings
