"""
Tests for the Survey Compiler.

Tests verify that the compiler correctly:
    - Strips comments and reads the name header
    - Segments records on question boundaries
    - Drops malformed and duplicate boundaries with a warning
    - Compiles records lazily, once
    - Registers loop descriptors
"""

import pytest
from questengine.compiler import (
    SurveyCompiler,
    build_directives,
    read_name,
    segment_definition,
    strip_comments,
)
from questengine.errors import SurveyCompileError
from questengine.model import MandatoryMode, QuestionRecord

SURVEY = """{"name":"Mod1"}
// screening block
[A] First (1) Yes (0) No
[B!|nodisplay_skip=C|,displayif=equals(A,1)] Second |__|
[CITY_NAME] Third
[END] Done"""

LOOP_SURVEY = """[N] How many jobs? |__|__|min=0 max=3|
<loop max=3>
[L1,displayif=greaterThanOrEqual(N,#loop)] Your {##} job |__|id=L1TXT|
[L2] Hours for job #loop?
</loop>
[END] Done"""


class TestText:

    def test_strip_comments_keeps_urls(self):
        """// after a colon is not a comment."""
        assert strip_comments("a // note\nhttp://x /* gone */b") == "a \nhttp://x b"

    def test_read_name(self):
        """The name header is split off the text."""
        assert read_name('{"name":"Mod1"}\n[A] hi') == ("Mod1", "\n[A] hi")
        assert read_name("[A] hi") == ("", "[A] hi")

    def test_build_directives(self):
        """Mandatory suffix, options, displayif and end are read from a boundary."""
        question_id, directives = build_directives(
            "Q1!", "nodisplay_skip=Q5", ",displayif=equals(Q1,1),end=noback"
        )
        assert question_id == "Q1"
        assert directives.mandatory == MandatoryMode.HARD
        assert directives.end and directives.noback
        assert directives.displayif == "equals%28Q1%2C1%29"
        assert directives.options == {"nodisplay_skip": "Q5"}

    def test_soft_mandatory(self):
        """A ? suffix marks soft mandatory."""
        question_id, directives = build_directives("Q2?", None, None)
        assert question_id == "Q2"
        assert directives.mandatory == MandatoryMode.SOFT
        assert directives.displayif is None


class TestSegmentation:

    def test_records_in_order(self):
        """Records come back in definition order with their name."""
        parsed = segment_definition(SURVEY)
        assert parsed.name == "Mod1"
        assert [r.id for r in parsed.records] == ["A", "B", "CITY_NAME", "END"]
        assert [r.index for r in parsed.records] == [0, 1, 2, 3]
        assert parsed.records[0].raw_body.strip() == "First (1) Yes (0) No"

    def test_duplicate_boundary_dropped(self):
        """A duplicate id is dropped with a warning; the first one stays."""
        with pytest.warns(UserWarning):
            parsed = segment_definition("[A] one\n[A] two\n[END] x")
        assert [r.id for r in parsed.records] == ["A", "END"]
        assert parsed.dropped == ["A"]
        assert "one" in parsed.records[0].raw_body

    def test_no_questions(self):
        """A definition without questions cannot be compiled."""
        with pytest.raises(SurveyCompileError):
            SurveyCompiler("just some text")
        with pytest.raises(SurveyCompileError):
            SurveyCompiler("")

    def test_grid_is_a_record(self):
        """A grid block becomes a finished record between its neighbours."""
        compiler = SurveyCompiler(
            "[A] hi\n|grid|id=G1|How often?|[G1_A] walk;|(1:Never)(2:Often)|\n[END] bye"
        )
        assert [r.id for r in compiler.records] == ["A", "G1", "END"]
        assert compiler.records[1].compiled is not None
        assert compiler.grid_cell("G1_A_1") == ("G1_A", "2")
        assert compiler.grid_cell("nope") is None


class TestLookup:

    def test_find_index(self):
        """Exact id, then prefix; END is always the last record."""
        compiler = SurveyCompiler(SURVEY)
        assert compiler.find_index("B") == 1
        assert compiler.find_index("CITY") == 2
        assert compiler.find_index("END") == 3
        assert compiler.find_index("ZZZ") is None
        assert compiler.find_index(None) is None

    def test_find_index_loop_base_id(self):
        """A loop's base id resolves to its first iteration copy."""
        compiler = SurveyCompiler(LOOP_SURVEY)
        assert compiler.records[1].id == "L1_1_1"
        assert compiler.find_index("L1") == 1
        assert compiler.find_index("L2") == 2

    def test_find_index_prefers_exact_id(self):
        """An exact id wins over an earlier id that merely starts with it."""
        compiler = SurveyCompiler("[Q10] ten\n[Q1] one\n[END] Done")
        assert compiler.find_index("Q1") == 1
        compiler = SurveyCompiler("[Q10] ten\n[Q2] two\n[END] Done")
        assert compiler.find_index("Q1") == 0

    def test_compiled_once(self):
        """Re-accessing a compiled record returns the same object."""
        compiler = SurveyCompiler(SURVEY)
        assert compiler.records[1].compiled is None
        first = compiler.compiled_markup(1)
        assert compiler.compiled_markup(1) is first

    def test_form_attributes(self):
        """Options and the encoded displayif become form attributes."""
        html = SurveyCompiler(SURVEY).compiled_markup(1).html
        assert "nodisplay_skip='C'" in html
        assert "displayif='equals%28A%2C1%29'" in html
        assert "hardEdit='true'" in html

    def test_exclusive_values(self):
        """Exclusive checkbox values are looked up per group."""
        compiler = SurveyCompiler("[Q2] [1] A [99*] None\n[END] x")
        assert compiler.exclusive_values("Q2", "Q2") == {"99"}
        assert compiler.exclusive_values("NOPE", "Q2") == set()

    def test_worker_compile_matches_inline(self):
        """Compiling on a worker gives the same records."""
        inline = SurveyCompiler(SURVEY)
        worker = SurveyCompiler(SURVEY, compile_in_worker=True, worker_timeout=10)
        assert [r.id for r in worker.records] == [r.id for r in inline.records]
        assert worker.name == "Mod1"


class TestLoops:

    def test_loop_descriptor(self):
        """The first iteration's record registers the loop."""
        compiler = SurveyCompiler(LOOP_SURVEY)
        assert compiler.loops == {}
        descriptor = compiler.loop_descriptor(1)
        assert descriptor.location_index == 1
        assert descriptor.bound_source_id == "N"
        assert descriptor.hard_max == 3
        assert descriptor.first_question_base_id == "L1"
        assert descriptor.iteration_id(2) == "L1_2_2"
        assert compiler.loop_descriptor(7) is None

    @pytest.mark.parametrize("question_id,expected", [
        ("L1_2_2", "L1"),
        ("Q1_2", "Q1_2"),
        ("Q12_3_10", "Q12"),
        ("A", "A"),
    ])
    def test_base_id(self, question_id, expected):
        """Only a full _i_i suffix is stripped."""
        assert QuestionRecord(id=question_id, raw_body="").base_id == expected

    def test_end_of_loop_exit(self):
        """The exit is the record after END_OF_LOOP."""
        compiler = SurveyCompiler(LOOP_SURVEY)
        exit_index = compiler.end_of_loop_exit(1)
        assert compiler.records[exit_index].id == "END"
        assert compiler.records[exit_index - 1].id == "END_OF_LOOP"
        assert compiler.end_of_loop_exit(exit_index) is None
