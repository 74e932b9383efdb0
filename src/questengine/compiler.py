"""
Survey Compiler

Turns survey definition text into an ordered sequence of QuestionRecords.

Pipeline:
    1. strip // and /* */ comments, read the {"name":"X"} header
    2. unroll <loop max=N> blocks            (questengine.loops)
    3. replace grid blocks with placeholders (questengine.grid)
    4. segment on [ID[!?][|options|][,args]] boundaries
    5. compile each record on first access   (questengine.markup)

Steps 1-4 are a pure function of the text (segment_definition) and may run
on a worker thread. Step 5 is lazy and memoized per record: re-accessing a
compiled record returns the identical object.

ARCHITECTURAL RULE:
    The compiler never reads responses. The one exception is handled
    elsewhere: loop bounds are resolved by navigation against the
    LoopDescriptors registered here.

IMPORTANT:
    displayif= and end= arguments are stored URI-encoded and are not
    interpreted here. A malformed boundary drops its record (logged); an
    empty sequence is a SurveyCompileError.
"""

import concurrent.futures
import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

from questengine.errors import SurveyCompileError
from questengine.grid import GRID_BLOCK, GridQuestion, grid_record, parse_grid
from questengine.loops import loop_bound_source, unroll_loops
from questengine.markup import button_div, compile_question, split_options
from questengine.model import (
    END_ID,
    END_OF_LOOP_ID,
    CompiledQuestion,
    Directives,
    LoopDescriptor,
    MandatoryMode,
    QuestionRecord,
)

logger = logging.getLogger(__name__)

COMMENTS = re.compile(r"(?<![:\"'])//.*|/\*[\s\S]*?\*/")
NAME_HEADER = re.compile(r"^\s*\{\s*\"name\"\s*:\s*\"([^\"]*)\"\s*\}")
SEGMENT = re.compile(
    r"\[([A-Z_][A-Z0-9_#]*[?!]?)(?:\|([^,|\]]+)\|?)?(,.*?)?\](.*?)(?=$|\[[A-Z_]|<<GRID_PLACEHOLDER)",
    re.DOTALL,
)
GRID_PLACEHOLDER = re.compile(r"<<GRID_PLACEHOLDER_(\d+)>>")
DISPLAYIF_ARG = re.compile(r"displayif\s*=\s*(.*)", re.DOTALL)
END_ARG = re.compile(r",\s*end\s*=\s*(\w*)\s*$")
VALID_ID = re.compile(r"^[A-Z_][A-Z0-9_#]*$")


@dataclass
class ParsedDefinition:
    """
    Output of the text-only compile stages.

    Properties:
        name: Survey name from the {"name":"X"} header ("" if absent)
        records: Question records in order (grids already compiled)
        loop_max: loop index -> max iterations
        dropped: Boundaries dropped as malformed or duplicate
        loops: Loop descriptors already known (only set when loaded from a dict)
    """
    name: str = ""
    records: List[QuestionRecord] = field(default_factory=list)
    loop_max: Dict[int, int] = field(default_factory=dict)
    dropped: List[str] = field(default_factory=list)
    loops: Dict[int, LoopDescriptor] = field(default_factory=dict)


def strip_comments(text: str) -> str:
    return COMMENTS.sub("", text)


def read_name(text: str) -> Tuple[str, str]:
    """Split off the {"name":"X"} header: (name, remaining text)."""
    match = NAME_HEADER.match(text)
    if match is None:
        return "", text
    return match.group(1), text[match.end():]


def build_directives(question_id: str, opts: Optional[str], args: Optional[str]) -> Tuple[str, Directives]:
    """
    Directives from a boundary's id suffix, options and args.

    Returns:
        (id without the mandatory suffix, Directives)
    """
    mandatory = MandatoryMode.NONE
    if question_id.endswith("!"):
        mandatory = MandatoryMode.HARD
    elif question_id.endswith("?"):
        mandatory = MandatoryMode.SOFT
    question_id = question_id.rstrip("!?")

    directives = Directives(mandatory=mandatory, options=dict(split_options(opts)))
    args = (args or "").strip()
    end = END_ARG.search(args)
    if end:
        directives.end = True
        directives.noback = end.group(1) == "noback"
        args = args[:end.start()]
    displayif = DISPLAYIF_ARG.search(args)
    if displayif and displayif.group(1).strip():
        directives.displayif = quote(displayif.group(1).strip(), safe="")
    return question_id, directives


def _segment(text: str, records: List[QuestionRecord], seen: Set[str], dropped: List[str]) -> None:
    for match in SEGMENT.finditer(text):
        raw_id, opts, args, body = match.groups()
        question_id, directives = build_directives(raw_id, opts, args)
        if not VALID_ID.match(question_id) or question_id in seen:
            warnings.warn(f"Dropped question boundary {raw_id}: malformed or duplicate id", UserWarning)
            dropped.append(raw_id)
            continue
        seen.add(question_id)
        records.append(QuestionRecord(
            id=question_id,
            raw_body=body,
            directives=directives,
            index=len(records),
        ))


def segment_definition(text: str, language: str = "en") -> ParsedDefinition:
    """
    Run the text-only stages of compilation.

    Grid questions come back as finished records; every other record
    keeps its raw body for lazy compilation.
    """
    text = strip_comments(text or "")
    name, text = read_name(text)
    text, loop_max = unroll_loops(text, language)

    grids: List[GridQuestion] = []

    def extract(match: "re.Match") -> str:
        grid = parse_grid(match.group(0))
        grids.append(grid)
        return f"<<GRID_PLACEHOLDER_{len(grids) - 1}>>"

    text = GRID_BLOCK.sub(extract, text)

    parsed = ParsedDefinition(name=name, loop_max=loop_max)
    seen: Set[str] = set()
    chunks = GRID_PLACEHOLDER.split(text)
    # split() alternates text chunks and captured grid indexes
    for i, chunk in enumerate(chunks):
        if i % 2 == 0:
            _segment(chunk, parsed.records, seen, parsed.dropped)
            continue
        grid = grids[int(chunk)]
        if not grid.id or grid.id in seen:
            warnings.warn(f"Dropped grid question {grid.id!r}: missing or duplicate id", UserWarning)
            parsed.dropped.append(grid.id)
            continue
        seen.add(grid.id)
        parsed.records.append(grid_record(grid, len(parsed.records)))

    logger.debug("Segmented %s: %d record(s), %d loop(s)",
                 name or "survey", len(parsed.records), len(loop_max))
    return parsed


class SurveyCompiler:
    """
    Holds one survey's question sequence and compiles records on demand.

    Args:
        text: Survey definition text
        language: Language for loop ordinals
        context: Precalculated context values used while rendering
        evaluate: Expression evaluator used for number min/max hints
        labels: UI label overrides
        compile_in_worker: Run the text stages on a worker thread
        worker_timeout: Seconds to wait for the worker before compiling inline
        parsed: Already segmented definition (text is then ignored)

    Raises:
        SurveyCompileError: If the definition yields no questions
    """

    def __init__(
        self,
        text: str,
        language: str = "en",
        context: Optional[Dict[str, Any]] = None,
        evaluate: Optional[Callable[[str], Any]] = None,
        labels: Optional[Dict[str, Any]] = None,
        compile_in_worker: bool = False,
        worker_timeout: float = 5.0,
        parsed: Optional[ParsedDefinition] = None,
    ):
        self.language = language
        self.context = context or {}
        self.evaluate = evaluate
        self.labels = labels

        if parsed is None and compile_in_worker:
            parsed = self._segment_in_worker(text, worker_timeout)
        elif parsed is None:
            parsed = segment_definition(text, language)
        if not parsed.records:
            raise SurveyCompileError("Survey definition contains no questions")

        self.name = parsed.name
        self.records: List[QuestionRecord] = parsed.records
        self.loop_max = parsed.loop_max
        self.dropped = parsed.dropped
        self.loops: Dict[int, LoopDescriptor] = dict(parsed.loops)
        self._by_id: Dict[str, int] = {r.id: r.index for r in self.records}
        self._grid_cells: Dict[str, Tuple[str, str]] = {}
        for record in self.records:
            if record.grid is not None:
                self._grid_cells.update(record.grid.cells())
        self._finish_grids()

    def _segment_in_worker(self, text: str, timeout: float) -> ParsedDefinition:
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(segment_definition, text, self.language)
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Worker compile timed out after %ss; compiling inline", timeout)
        except Exception as exc:
            logger.warning("Worker compile failed (%s); compiling inline", exc)
        finally:
            executor.shutdown(wait=False)
        return segment_definition(text, self.language)

    def _finish_grids(self) -> None:
        """Grids are pre-built; give them their position-dependent buttons now."""
        last = len(self.records) - 1
        for record in self.records:
            if record.grid is None:
                continue
            buttons = button_div(record.id, True, is_first=record.index == 0,
                                 is_last=record.index == last, labels=self.labels)
            rebuilt = grid_record(record.grid, record.index, buttons)
            record.compiled = rebuilt.compiled

    def __len__(self) -> int:
        return len(self.records)

    # =========================================================================
    # Lookup
    # =========================================================================

    def find_index(self, question_id: Optional[str]) -> Optional[int]:
        """
        Sequence index of a question id.

        Exact id first, then the first id starting with it; END always
        resolves to the last record.

        The prefix match lets a target written as a loop's base id (L1)
        reach the first iteration copy (L1_1_1). It is positional, so with
        no exact Q1 present "Q1" also matches Q10.
        """
        if not question_id:
            return None
        if question_id == END_ID:
            return len(self.records) - 1
        if question_id in self._by_id:
            return self._by_id[question_id]
        for record in self.records:
            if record.id.startswith(question_id):
                return record.index
        return None

    def record(self, question_id: str) -> Optional[QuestionRecord]:
        index = self.find_index(question_id)
        return None if index is None else self.records[index]

    def end_of_loop_exit(self, from_index: int) -> Optional[int]:
        """Index of the first record after the next END_OF_LOOP placeholder."""
        for record in self.records[from_index + 1:]:
            if record.id == END_OF_LOOP_ID and record.index + 1 < len(self.records):
                return record.index + 1
        return None

    def grid_cell(self, cell_id: str) -> Optional[Tuple[str, str]]:
        """Grid cell element id -> (row question id, cell value)"""
        return self._grid_cells.get(cell_id)

    def exclusive_values(self, question_id: str, name: str) -> Set[str]:
        """Values of the exclusive ("*") checkboxes in a group."""
        index = self.find_index(question_id)
        if index is None:
            return set()
        compiled = self.compiled_markup(index)
        return set(compiled.exclusive_values.get(name, []))

    # =========================================================================
    # Lazy compile
    # =========================================================================

    def compiled_markup(self, index: int) -> CompiledQuestion:
        """Compiled form of a record; compiled once, then returned as is."""
        record = self.records[index]
        if record.compiled is not None:
            return record.compiled

        directives = record.directives
        attributes = [f"{k}='{v}'" for k, v in directives.options.items()]
        if directives.displayif:
            attributes.append(f"displayif='{directives.displayif}'")
        record.compiled = compile_question(
            record.id,
            record.raw_body or "",
            attributes=" ".join(attributes),
            end=directives.end,
            noback=directives.noback,
            hard=directives.mandatory == MandatoryMode.HARD,
            soft=directives.mandatory == MandatoryMode.SOFT,
            is_first=index == 0,
            is_last=index == len(self.records) - 1,
            context=self.context,
            evaluate=self.evaluate,
            labels=self.labels,
        )
        self._register_loop(record)
        return record.compiled

    def _register_loop(self, record: QuestionRecord) -> None:
        options = record.directives.options
        if "loopindx" not in options or options.get("firstquestion") != "1":
            return
        loop_index = int(options["loopindx"])
        if loop_index in self.loops:
            return
        descriptor = LoopDescriptor(
            loop_index=loop_index,
            location_index=record.index,
            bound_source_id=loop_bound_source(options),
            hard_max=self.loop_max.get(loop_index, 0),
            first_question_base_id=record.base_id,
        )
        self.loops[loop_index] = descriptor
        logger.debug("Registered loop %d at %d (bound source %s, max %d)",
                     loop_index, record.index, descriptor.bound_source_id, descriptor.hard_max)

    def loop_descriptor(self, loop_index: int) -> Optional[LoopDescriptor]:
        """Descriptor of a loop, materializing its first-iteration record if needed."""
        if loop_index not in self.loops:
            for record in self.records:
                options = record.directives.options
                if options.get("loopindx") == str(loop_index) and options.get("firstquestion") == "1":
                    self.compiled_markup(record.index)
                    break
        return self.loops.get(loop_index)

    def compile_all(self) -> None:
        for index in range(len(self.records)):
            self.compiled_markup(index)


__all__ = [
    "ParsedDefinition",
    "SurveyCompiler",
    "segment_definition",
    "build_directives",
    "strip_comments",
    "read_name",
]
