"""
Tests for grid questions.
"""

from urllib.parse import quote

from questengine.grid import grid_record, parse_grid, render_grid
from questengine.model import MandatoryMode

GRID = '|grid!|id=G1|How often do you...|[G1_A] walk;[G1_B,displayif=exists("Q1")] run;|(1:Never)(2:Often)|'


def test_parse_grid():
    """Rows, responses and the mandatory marker are read from the block."""
    grid = parse_grid(GRID)
    assert grid.id == "G1"
    assert grid.mandatory == MandatoryMode.HARD
    assert grid.shared_text == "How often do you..."
    assert [(r.id, r.text) for r in grid.rows] == [("G1_A", "walk"), ("G1_B", "run")]
    assert grid.rows[1].displayif == quote('exists("Q1")', safe="")
    assert [(r.kind, r.value, r.text) for r in grid.responses] == [
        ("radio", "1", "Never"),
        ("radio", "2", "Often"),
    ]


def test_checkbox_grid():
    """[v:text] responses make a checkbox grid."""
    grid = parse_grid("|grid|id=G2|Pick|[G2_A] one;|[1:Yes][2:No]|")
    assert {r.kind for r in grid.responses} == {"checkbox"}
    assert grid.mandatory == MandatoryMode.NONE


def test_not_a_grid():
    """Text without a grid block gives None."""
    assert parse_grid("[Q1] plain question") is None


def test_cells():
    """Every cell resolves to its row and value."""
    cells = parse_grid(GRID).cells()
    assert cells["G1_A_0"] == ("G1_A", "1")
    assert cells["G1_B_1"] == ("G1_B", "2")
    assert len(cells) == 4


def test_grid_record_fields():
    """Each row is one field of the grid question."""
    record = grid_record(parse_grid(GRID), 3)
    assert record.id == "G1"
    assert record.index == 3
    assert record.directives.mandatory == MandatoryMode.HARD
    assert record.grid_membership.row_ids == ["G1_A", "G1_B"]
    assert [(f.key, f.kind, f.grid_id) for f in record.compiled.fields] == [
        ("G1_A", "radio", "G1"),
        ("G1_B", "radio", "G1"),
    ]
    assert record.compiled.fields[1].condition == quote('exists("Q1")', safe="")


def test_render_grid():
    """The table carries row ids, cell ids and the row display conditions."""
    html = render_grid(parse_grid(GRID), buttons="<div class='py-0'></div>")
    assert "data-grid='true'" in html
    assert "hardedit='true'" in html
    assert "id='G1_A_0'" in html
    assert "data-displayif='exists%28%22Q1%22%29'" in html
    assert html.endswith("<div class='py-0'></div></form>")


def test_piped_values_in_text():
    """{$id} in grid text becomes a replacement span."""
    grid = parse_grid("|grid|id=G3|Hi {$Q1}|[G3_A] one;|(1:Yes)|")
    assert "data-gridreplacetype=_val data-gridreplace=Q1" in render_grid(grid)
