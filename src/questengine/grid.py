"""
Grid Questions

A grid block shares one set of response options across several row
questions:

    |grid!|id=G1|How often do you...|[G1_A] walk;[G1_B,displayif=exists("Q1")] run;|(1:Never)(2:Often)|

Fields (pipe separated): mandatory marker, args, shared text, rows,
responses. "(v:text)" responses render as radios, "[v:text]" as checkboxes.

Grids are compiled eagerly, at segmentation time, into a finished
QuestionRecord. Every cell gets the element id "{rowId}_{i}" and is
indexed so that isSelected()/someSelected() can resolve a cell to its row
and value through the Response State Store.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

from questengine.model import (
    CompiledQuestion,
    Directives,
    FieldSpec,
    GridMembership,
    MandatoryMode,
    QuestionRecord,
)

logger = logging.getLogger(__name__)

GRID_BLOCK = re.compile(r"\|grid([!?]*)\|([^|]+)\|([^|]+)\|([^|]+)\|([^|]+)\|")
GRID_ROW = re.compile(r"\[([A-Z][A-Z0-9_]*)(,displayif=[^\]]+)?\](.*?)[;\]]")
GRID_RESPONSE = re.compile(r"([\[(])(\w+):([^\])]+)[\])]")
GRID_ID = re.compile(r"""\bid\s*=\s*["']?(\w+)""")
GRID_DISPLAYIF = re.compile(r"""displayif\s*=\s*['"]?(.+?)['"]?\s*$""")
TEXT_DISPLAYIF = re.compile(r"%displayif=([^%]+)%([^%]+)%")
PIPED_VALUE = re.compile(r"\{\$([ue]:)?([^}]+)\}")


@dataclass
class GridRow:
    id: str
    text: str
    displayif: Optional[str] = None


@dataclass
class GridResponse:
    kind: str  # "radio" or "checkbox"
    value: str
    text: str


@dataclass
class GridQuestion:
    """
    Parsed grid block.

    Properties:
        id: Grid question id (from id= in the args)
        mandatory: "!" hard, "?" soft
        args: Raw args text
        displayif: URI-encoded grid-level displayif
        shared_text: Prompt shown above the table
        rows: Row questions, in order
        responses: Shared response options, in order
    """

    id: str
    mandatory: MandatoryMode = MandatoryMode.NONE
    args: str = ""
    displayif: Optional[str] = None
    shared_text: str = ""
    rows: List[GridRow] = field(default_factory=list)
    responses: List[GridResponse] = field(default_factory=list)

    def cell_id(self, row_id: str, response_index: int) -> str:
        return f"{row_id}_{response_index}"

    def cells(self) -> Dict[str, Tuple[str, str]]:
        """cell element id -> (row id, response value)"""
        return {
            self.cell_id(row.id, i): (row.id, response.value)
            for row in self.rows
            for i, response in enumerate(self.responses)
        }


def parse_grid(text: str) -> Optional[GridQuestion]:
    """
    Parse one grid block.

    Returns:
        GridQuestion, or None if the text is not a grid block
    """
    match = GRID_BLOCK.search(text)
    if match is None:
        return None
    prompt, args, shared_text, rows_text, responses_text = match.groups()

    mandatory = MandatoryMode.NONE
    if "!" in prompt:
        mandatory = MandatoryMode.HARD
    elif "?" in prompt:
        mandatory = MandatoryMode.SOFT

    id_match = GRID_ID.search(args)
    if id_match is None:
        logger.warning("Grid block has no id= argument: %s", args.strip())
    grid_id = id_match.group(1) if id_match else ""

    displayif = None
    displayif_match = GRID_DISPLAYIF.search(args)
    if displayif_match:
        displayif = quote(displayif_match.group(1), safe="")

    rows = []
    for row in GRID_ROW.finditer(rows_text):
        condition = row.group(2)[len(",displayif="):] if row.group(2) else None
        rows.append(GridRow(
            id=row.group(1),
            text=row.group(3).strip(),
            displayif=quote(condition, safe="") if condition else None,
        ))

    responses = [
        GridResponse(
            kind="radio" if r.group(1) == "(" else "checkbox",
            value=r.group(2),
            text=r.group(3),
        )
        for r in GRID_RESPONSE.finditer(responses_text)
    ]

    return GridQuestion(
        id=grid_id,
        mandatory=mandatory,
        args=args.strip(),
        displayif=displayif,
        shared_text=shared_text.strip(),
        rows=rows,
        responses=responses,
    )


def _render_text(text: str) -> str:
    """Shared/row text: %displayif=c%text% spans and {$...} piped values."""
    text = TEXT_DISPLAYIF.sub(
        lambda m: f"<span displayif=\"{quote(m.group(1), safe='')}\" class=\"grid-displayif\"> {m.group(2)}</span>",
        text,
    )

    def piped(m: "re.Match") -> str:
        kind = "eval" if m.group(1) == "e:" else "_val"
        return f"<span data-gridreplacetype={kind} data-gridreplace={quote(m.group(2), safe='')}></span>"

    return PIPED_VALUE.sub(piped, text)


def render_grid(grid: GridQuestion, buttons: str = "") -> str:
    """Render a grid as an HTML table form."""
    hard = grid.mandatory == MandatoryMode.HARD
    soft = grid.mandatory == MandatoryMode.SOFT
    displayif = f" displayif='{grid.displayif}'" if grid.displayif else ""
    parts = [
        f"<form class='container question' id='{html.escape(grid.id, quote=True)}' data-grid='true'"
        f" hardedit='{str(hard).lower()}' softedit='{str(soft).lower()}'{displayif} role='form'>",
        f"<div>{_render_text(grid.shared_text)}</div>",
        "<table class='quest-grid table-layout table'>",
        "<thead class='hr' role='rowgroup'><tr><th class='nr hr'></th>",
    ]
    for response in grid.responses:
        header = html.escape(response.text, quote=True)
        parts.append(f"<th class='hr' scope='col' data-header='{header}'>{response.text}</th>")
    parts.append("</tr></thead><tbody role='rowgroup'>")

    for row in grid.rows:
        row_displayif = f" data-displayif='{row.displayif}'" if row.displayif else ""
        parts.append(
            f"<tr role='row' data-question-id='{row.id}' data-gridrow='true'"
            f" aria-labelledby='qtext{row.id}'{row_displayif}>"
            f"<th scope='row' id='qtext{row.id}' class='nr'>{_render_text(row.text)}</th>"
        )
        for i, response in enumerate(grid.responses):
            cell = grid.cell_id(row.id, i)
            value = html.escape(response.value, quote=True)
            parts.append(
                f"<td class='response' data-question-id='{row.id}' role='gridcell'>"
                f"<input type='{response.kind}' name='{row.id}' id='{cell}' value='{value}'"
                f" data-gridcell='true' data-grid='true'>"
                f"<label for='{cell}' id='label{cell}' class='custom-label'>{response.text}</label></td>"
            )
        parts.append("</tr>")

    parts.append(f"</tbody></table>{buttons}</form>")
    return "".join(parts)


def grid_record(grid: GridQuestion, index: int, buttons: str = "") -> QuestionRecord:
    """
    Build the finished QuestionRecord for a grid.

    Each row is one field: radio/checkbox group named by the row id.
    """
    kind = grid.responses[0].kind if grid.responses else "radio"
    fields = [
        FieldSpec(
            key=row.id,
            kind=kind,
            element_ids=[grid.cell_id(row.id, i) for i in range(len(grid.responses))],
            condition=row.displayif,
            grid_id=grid.id,
        )
        for row in grid.rows
    ]
    record = QuestionRecord(
        id=grid.id,
        raw_body=None,
        directives=Directives(displayif=grid.displayif, mandatory=grid.mandatory),
        index=index,
        grid=grid,
        grid_membership=GridMembership(grid.id, [row.id for row in grid.rows]),
    )
    record.compiled = CompiledQuestion(html=render_grid(grid, buttons), fields=fields)
    return record


__all__ = [
    "GRID_BLOCK",
    "GridRow",
    "GridResponse",
    "GridQuestion",
    "parse_grid",
    "render_grid",
    "grid_record",
]
