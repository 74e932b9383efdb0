"""
Tests for loop expansion.
"""

from questengine.loops import loop_bound_source, ordinal, unroll_loops

LOOP_SURVEY = """[N] How many jobs? |__|__|min=0 max=3|
<loop max=3>
[L1,displayif=greaterThanOrEqual(N,#loop)] Your {##} job |__|id=L1TXT|
[L2] Hours for job #loop?
</loop>
[END] Done"""


def test_ordinals():
    """English ordinals, including the teens."""
    assert [ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22)] == [
        "1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd",
    ]
    assert ordinal(2, "es") == "2o"


def test_loop_max_recorded():
    """Each loop's max is recorded by loop index."""
    _, loop_max = unroll_loops(LOOP_SURVEY)
    assert loop_max == {1: 3}


def test_ids_suffixed_per_iteration():
    """Question and field ids get the _i_i suffix in every copy."""
    text, _ = unroll_loops(LOOP_SURVEY)
    for i in (1, 2, 3):
        assert f"[L2_{i}_{i}]" in text
        assert f"id=L1TXT_{i}_{i}" in text


def test_first_question_annotated():
    """The first question carries the loop index, iteration and bound source."""
    text, _ = unroll_loops(LOOP_SURVEY)
    assert "[L1_1_1|loopindx=1 firstquestion=1 loopmax=N|,displayif=greaterThanOrEqual(N,1)]" in text
    assert "[L1_2_2|loopindx=1 firstquestion=2 loopmax=N|" in text


def test_ordinal_and_loop_counter():
    """{##} becomes the ordinal and #loop the iteration number."""
    text, _ = unroll_loops(LOOP_SURVEY)
    assert "Your 2nd job" in text
    assert "Hours for job 3?" in text


def test_continuation_markers():
    """Every iteration ends with a marker; DONE and END_OF_LOOP follow the last."""
    text, _ = unroll_loops(LOOP_SURVEY)
    for i in (1, 2, 3):
        assert f"[_CONTINUE1_{i}_{i},displayif=setFalse(-1,{i})]" in text
    assert "[_CONTINUE1_DONE," in text
    assert text.index("[_CONTINUE1_DONE,") < text.index("[END_OF_LOOP]") < text.index("[END]")


def test_continue_target_retargeted():
    """"-> _CONTINUE" skips point at the loop's own marker for the iteration."""
    survey = "<loop max=2>\n[A] Any? (1) Yes (0) No -> _CONTINUE\n[B] More\n</loop>\n[END] Done"
    text, _ = unroll_loops(survey)
    assert "-> _CONTINUE1_1_1" in text
    assert "-> _CONTINUE1_2_2" in text


def test_named_groups_suffixed():
    """Named radio groups get the iteration suffix."""
    survey = "<loop max=2>\n[A] (1:grp) Yes\n</loop>\n[END] Done"
    text, _ = unroll_loops(survey)
    assert "(1:grp_1)" in text
    assert "(1:grp_2)" in text


def test_previous_iteration_reference():
    """_a_b#prev points at the previous iteration."""
    survey = "<loop max=2>\n[A,displayif=exists(\"A_1_1#prev\")] Again\n</loop>\n[END] Done"
    text, _ = unroll_loops(survey)
    assert 'exists("A_1_1")' in text


def test_text_without_loops_untouched():
    """Definitions without loops pass through unchanged."""
    assert unroll_loops("[A] One\n[END] Done") == ("[A] One\n[END] Done", {})


def test_loop_bound_source():
    """Only a plain id counts as a bound source."""
    assert loop_bound_source({"loopmax": "N"}) == "N"
    assert loop_bound_source({"loopmax": "valueOrDefault(N,2)"}) is None
    assert loop_bound_source({}) is None
