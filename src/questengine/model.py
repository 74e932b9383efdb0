"""
Core Survey Model Objects

Defines the data structures produced by the compiler and consumed by
navigation:

    - QuestionRecord    one question after loop expansion
    - Directives        display/terminal/mandatory instructions for a record
    - LoopDescriptor    control data for one bounded-repetition block
    - GridMembership    back-reference from a grid question to its rows
    - FieldSpec         one answerable field of a compiled question
    - CompiledQuestion  the memoized render of a record

ARCHITECTURAL RULE:
    These objects:
        - Know nothing about HTML rendering or response storage
        - Represent structure, not behavior
        - Are serializable (see questengine.serialization)

    The only mutable parts are QuestionRecord.compiled (filled once, on
    first access) and LoopDescriptor.current_bound (tracks the bound answer).
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

END_ID = "END"
END_OF_LOOP_ID = "END_OF_LOOP"
CONTINUE_PREFIX = "_CONTINUE"

# "Q5_3_3": base "Q5", iteration 3
ITERATION_SUFFIX = re.compile(r"_(\d+)_(\d+)$")
CONTINUE_ID = re.compile(r"^_CONTINUE(\d+)(_DONE)?(?:_(\d+)_\d+)?$")


class MandatoryMode(Enum):
    """How strictly a question requires an answer before Advance."""
    NONE = "none"
    SOFT = "soft"   # "?" suffix: respondent may override
    HARD = "hard"   # "!" suffix: no override


@dataclass
class Directives:
    """
    Instructions attached to a question boundary.

    Properties:
        displayif:
            URI-encoded condition text; evaluated at navigation time.
            If None the question is always shown.

        end:
            The question is terminal (no Next control).

        noback:
            With end: the Back control is removed as well ("end=noback").

        mandatory:
            MandatoryMode from the "!"/"?" id suffix.

        options:
            Raw "|key=value ...|" options: firstquestion, loopindx, loopmax,
            nodisplay_skip, min-count, max-count ...
    """

    displayif: Optional[str] = None
    end: bool = False
    noback: bool = False
    mandatory: MandatoryMode = MandatoryMode.NONE
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class GridMembership:
    """
    Links a grid question to its row questions.

    Each row is answered as its own field (response key = row id) inside
    the grid question's Response Entry.
    """

    grid_id: str
    row_ids: List[str] = field(default_factory=list)


@dataclass
class FieldSpec:
    """
    One answerable field of a compiled question.

    Properties:
        key: Response key. Radio and checkbox groups use the group name,
             every other input uses its element id.
        kind: radio, checkbox, number, text, textarea, email, date, month,
              time, tel, SSN, SSNsm, zip, state
        element_ids: Rendered element ids belonging to the field
        xor: XOR group name; fields in a group clear each other
        condition: URI-encoded displayif of the field, if any
        grid_id: Grid question id when the field is a grid row
    """

    key: str
    kind: str
    element_ids: List[str] = field(default_factory=list)
    xor: Optional[str] = None
    condition: Optional[str] = None
    grid_id: Optional[str] = None


@dataclass
class SkipOption:
    """
    A skip target declared in a question body.

    Properties:
        target: Question id to queue
        key: Response key the option belongs to (None for hidden skips)
        value: Option value that must be selected (None: any non-empty value)
        condition: URI-encoded "if=" guard for hidden skips
        no_response: "#NR" skip, taken only when nothing visible is selected
        hidden: A "< ... -> T >" skip that is always selected
    """

    target: str
    key: Optional[str] = None
    value: Optional[str] = None
    condition: Optional[str] = None
    no_response: bool = False
    hidden: bool = False


@dataclass
class CompiledQuestion:
    """
    The rendered form of a question record.

    document is the markup AST (None for pre-built grids); html is the
    rendered markup string.
    """

    html: str
    fields: List[FieldSpec] = field(default_factory=list)
    skips: List[SkipOption] = field(default_factory=list)
    hidden_ids: List[str] = field(default_factory=list)
    exclusive_values: Dict[str, List[str]] = field(default_factory=dict)
    document: Any = None

    @property
    def num_response_keys(self) -> int:
        return len({f.key for f in self.fields})


@dataclass
class QuestionRecord:
    """
    A single question in the compiled sequence.

    Properties:
        id:
            Unique after loop expansion (loop copies carry "_i_i").
        raw_body:
            Uncompiled source text; None for pre-built grid questions.
        directives:
            Directives parsed from the boundary.
        index:
            Position in the compiled sequence.
        grid:
            Pre-built grid structure (questengine.grid.GridQuestion) or None.
        grid_membership:
            Row back-reference for grid questions.
        compiled:
            Memoized CompiledQuestion; created on first access and kept
            for the session.
    """

    id: str
    raw_body: Optional[str]
    directives: Directives = field(default_factory=Directives)
    index: int = 0
    grid: Any = None
    grid_membership: Optional[GridMembership] = None
    compiled: Optional[CompiledQuestion] = field(default=None, repr=False, compare=False)

    @property
    def is_continuation_marker(self) -> bool:
        return is_continuation_marker(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.id == END_ID or self.directives.end

    @property
    def base_id(self) -> str:
        """Id without the loop-iteration suffix."""
        return ITERATION_SUFFIX.sub("", self.id)


@dataclass
class LoopDescriptor:
    """
    Control data for one bounded-repetition block.

    Properties:
        loop_index: 1-based position of the <loop> block in the definition
        location_index: Sequence index of the first iteration's first record
        bound_source_id: Question whose answer bounds the iteration count
        hard_max: The loop's max=N
        current_bound: Last resolved bound answer (clamped to hard_max)
        first_question_base_id: First record's id without "_i_i"

    INVARIANT:
        current_bound <= hard_max
    """

    loop_index: int
    location_index: int
    bound_source_id: Optional[str]
    hard_max: int
    current_bound: Optional[int] = None
    first_question_base_id: str = ""

    def update_bound(self, value: Optional[int]) -> Optional[int]:
        """Store a new bound, clamped to hard_max."""
        self.current_bound = None if value is None else min(int(value), self.hard_max)
        return self.current_bound

    def iteration_id(self, iteration: int) -> str:
        return f"{self.first_question_base_id}_{iteration}_{iteration}"


def is_continuation_marker(question_id: Optional[str]) -> bool:
    return bool(question_id) and question_id.startswith(CONTINUE_PREFIX)


def iteration_of(question_id: str) -> Optional[int]:
    """Loop iteration encoded in an id suffix, or None."""
    match = ITERATION_SUFFIX.search(question_id)
    return int(match.group(1)) if match else None


__all__ = [
    "END_ID",
    "END_OF_LOOP_ID",
    "CONTINUE_PREFIX",
    "MandatoryMode",
    "Directives",
    "GridMembership",
    "FieldSpec",
    "SkipOption",
    "CompiledQuestion",
    "QuestionRecord",
    "LoopDescriptor",
    "is_continuation_marker",
    "iteration_of",
]
