"""
Tests for survey serialization.
"""

from questengine.compiler import SurveyCompiler
from questengine.serialization import (
    survey_from_json,
    survey_from_yaml,
    survey_to_json,
    survey_to_yaml,
)

SURVEY = """{"name":"Mod1"}
[N!] How many jobs? |__|__|min=0 max=3|
<loop max=2>
[L1,displayif=greaterThanOrEqual(N,#loop)] Job {##}
</loop>
|grid?|id=G1|How often?|[G1_A] walk;[G1_B] run;|(1:Never)(2:Often)|
[END] Done"""


def test_survey_json_round_trip():
    """A loaded survey compiles to the same records and markup."""
    original = SurveyCompiler(SURVEY)
    original.compile_all()
    loaded = SurveyCompiler("", parsed=survey_from_json(survey_to_json(original)))

    assert loaded.name == "Mod1"
    assert [r.id for r in loaded.records] == [r.id for r in original.records]
    assert [r.directives for r in loaded.records] == [r.directives for r in original.records]
    assert loaded.loop_max == {1: 2}
    assert loaded.loops == original.loops
    for index in range(len(original)):
        assert loaded.compiled_markup(index).html == original.compiled_markup(index).html


def test_survey_yaml_round_trip():
    """The YAML form carries the same data as the JSON form."""
    original = SurveyCompiler(SURVEY)
    loaded = SurveyCompiler("", parsed=survey_from_yaml(survey_to_yaml(original)))
    grid = loaded.record("G1")
    assert grid.grid.rows == original.record("G1").grid.rows
    assert loaded.grid_cell("G1_B_0") == ("G1_B", "1")
    assert loaded.find_index("END") == len(original) - 1
