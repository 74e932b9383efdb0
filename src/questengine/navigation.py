"""
Navigation State Machine

Decides which question is active.

States:
    IDLE      before start()
    ACTIVE    a question is shown
    TERMINAL  the reserved END question is shown; submission is offered

Advance:
    1. mandatory gate (hard refuses, soft refuses unless forced)
    2. queue skip targets of the selected responses
    3. take the next id from History; fall back to the next record in
       compiled order
    4. continuation markers resolve through their LoopDescriptor to the
       next iteration or past END_OF_LOOP; entering an iteration beyond
       the bound also jumps past the loop
    5. a candidate whose displayif is false is dropped (nodisplay_skip=
       queues its replacement) and the search repeats

Retreat:
    step back in History, never landing on a continuation marker.

ARCHITECTURAL RULE:
    A transition either completes or leaves History, the active question
    and the store exactly as they were. Authoring errors found on the way
    (unknown targets, bad loop bounds) are logged, reported to the
    error_logger and turn the transition into a no-op returning None.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from questengine.compiler import SurveyCompiler
from questengine.errors import LoopBoundError, NavigationError
from questengine.evaluator import ConditionEvaluator
from questengine.functions import to_number
from questengine.history import NavigationHistory
from questengine.markup import ChoiceOption, InputField, walk
from questengine.model import (
    CONTINUE_ID,
    END_ID,
    END_OF_LOOP_ID,
    FieldSpec,
    LoopDescriptor,
    MandatoryMode,
    QuestionRecord,
    is_continuation_marker,
)
from questengine.state import ResponseStore

logger = logging.getLogger(__name__)


class NavigationState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    TERMINAL = "terminal"


@dataclass
class Checkpoint:
    """Everything a transition may change outside the store."""
    state: NavigationState
    active_id: Optional[str]
    position: int
    history: Dict[str, Any]


def is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


class NavigationStateMachine:
    """
    Drives one respondent through a compiled survey.

    Args:
        compiler: The survey's SurveyCompiler
        store: The session's ResponseStore
        evaluator: ConditionEvaluator bound to the store
        history: NavigationHistory (a fresh one when omitted)
        error_logger: Optional host callable receiving authoring errors
        on_mandatory: Called with (question_id, unanswered, soft) when the
                      mandatory gate refuses an advance
    """

    def __init__(
        self,
        compiler: SurveyCompiler,
        store: ResponseStore,
        evaluator: ConditionEvaluator,
        history: Optional[NavigationHistory] = None,
        error_logger: Optional[Callable[[str, str], None]] = None,
        on_mandatory: Optional[Callable[[str, int, bool], None]] = None,
    ):
        self.compiler = compiler
        self.store = store
        self.evaluator = evaluator
        self.history = history or NavigationHistory()
        self.error_logger = error_logger
        self.on_mandatory = on_mandatory
        self.state = NavigationState.IDLE
        self.active_id: Optional[str] = None
        self.position = -1

    # =========================================================================
    # State
    # =========================================================================

    @property
    def active_record(self) -> Optional[QuestionRecord]:
        if self.active_id is None:
            return None
        return self.compiler.record(self.active_id)

    def start(self, question_id: Optional[str] = None) -> Optional[QuestionRecord]:
        """
        Activate the resume point: the given id, else the first question.

        A leading continuation marker is skipped.
        """
        index = self.compiler.find_index(question_id) if question_id else 0
        if index is None:
            logger.error("Cannot start at unknown question %s; starting at the first question", question_id)
            index = 0
        while index < len(self.compiler) - 1 and self.compiler.records[index].is_continuation_marker:
            index += 1
        record = self.compiler.records[index]
        self._activate(record)
        return record

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(self.state, self.active_id, self.position, self.history.to_dict())

    def restore(self, checkpoint: Checkpoint) -> None:
        self.state = checkpoint.state
        self.active_id = checkpoint.active_id
        self.position = checkpoint.position
        self.history.load_from_json(checkpoint.history)

    def _activate(self, record: QuestionRecord) -> None:
        self.active_id = record.id
        self.position = record.index
        self.state = NavigationState.TERMINAL if record.id == END_ID else NavigationState.ACTIVE
        logger.debug("Active question: %s (%s)", record.id, self.state.value)

    def _authoring_error(self, message: str, context: str = "") -> None:
        logger.error(message)
        if self.error_logger is not None:
            self.error_logger(message, context)

    # =========================================================================
    # Field values
    # =========================================================================

    def field_value(self, record: QuestionRecord, field_spec: FieldSpec) -> Any:
        """Live (pending over committed) value of one field of a record."""
        value = self.store.live_value(record.id)
        if isinstance(value, dict):
            return value.get(field_spec.key)
        num_keys = self.store.get_num_response_keys(record.id)
        if num_keys is None:
            num_keys = self.compiler.compiled_markup(record.index).num_response_keys
        return value if num_keys == 1 else None

    def _field_visible(self, field_spec: FieldSpec) -> bool:
        return field_spec.condition is None or self.evaluator.evaluate_condition(field_spec.condition)

    @staticmethod
    def _is_selected(value: Any, expected: Optional[str]) -> bool:
        if is_blank(value):
            return False
        if expected is None:
            return True
        if isinstance(value, list):
            return any(str(v) == expected for v in value)
        return str(value) == expected

    # =========================================================================
    # Mandatory gate
    # =========================================================================

    def unanswered_count(self, record: QuestionRecord) -> int:
        """
        Number of unanswered fields that block Advance on a mandatory question.

        Visible free-entry fields count one each when blank (XOR fields
        excluded); grid rows count individually. A question with nothing
        selected counts at least one; a question where anything is
        selected (and every selected option's inline input is filled)
        counts zero.
        """
        compiled = self.compiler.compiled_markup(record.index)
        fields = [f for f in compiled.fields if self._field_visible(f)]

        if record.grid is not None:
            blank = sum(1 for f in fields if is_blank(self.field_value(record, f)))
            incomplete = blank > 0
        else:
            blank = sum(
                1 for f in fields
                if f.kind not in ("radio", "checkbox") and not f.xor
                and is_blank(self.field_value(record, f))
            )
            incomplete = not any(not is_blank(self.field_value(record, f)) for f in fields)
            if not incomplete and not self._inline_inputs_answered(record, compiled.fields):
                incomplete = True

        if not incomplete:
            return 0
        return max(blank, 1)

    def _inline_inputs_answered(self, record: QuestionRecord, fields: List[FieldSpec]) -> bool:
        """Selected options with an input in their label need that input filled."""
        if not record.compiled or not record.compiled.document:
            return True
        field_specs = {f.key: f for f in fields}
        for node in walk(record.compiled.document):
            if not isinstance(node, ChoiceOption):
                continue
            inputs = [n for n in walk(node.label) if isinstance(n, InputField)]
            if not inputs or node.name not in field_specs:
                continue
            if not self._is_selected(self.field_value(record, field_specs[node.name]), node.value):
                continue
            for field_node in inputs:
                field_spec = field_specs.get(field_node.element_id)
                if field_spec is not None and is_blank(self.field_value(record, field_spec)):
                    return False
        return True

    # =========================================================================
    # Loops
    # =========================================================================

    def refresh_bound(self, descriptor: LoopDescriptor) -> int:
        """
        Re-resolve a loop's bound from its source answer.

        An unanswered source leaves only the hard max in force.

        Raises:
            LoopBoundError: If the source answer is not a number
        """
        if descriptor.bound_source_id is None:
            return descriptor.hard_max
        value = self.store.find_response_value(descriptor.bound_source_id)
        if is_blank(value):
            logger.warning("Loop %d bound source %s is unanswered; using max=%d",
                           descriptor.loop_index, descriptor.bound_source_id, descriptor.hard_max)
            descriptor.update_bound(None)
            return descriptor.hard_max
        number = to_number(value) if not isinstance(value, (list, dict)) else math.nan
        if math.isnan(number):
            raise LoopBoundError(
                f"Loop {descriptor.loop_index} bound source {descriptor.bound_source_id} "
                f"has non-numeric answer {value!r}"
            )
        return descriptor.update_bound(int(number))

    def _loop_exit(self, from_index: int) -> int:
        target = self.compiler.end_of_loop_exit(from_index)
        if target is None:
            raise NavigationError(f"No END_OF_LOOP after index {from_index}")
        return target

    def _resolve_marker(self, record: QuestionRecord) -> int:
        """Sequence index a continuation marker leads to."""
        match = CONTINUE_ID.match(record.id)
        if match is None:
            raise NavigationError(f"Malformed continuation marker {record.id}")
        loop_index, done, iteration = match.groups()
        if done or iteration is None:
            return self._loop_exit(record.index)

        descriptor = self.compiler.loop_descriptor(int(loop_index))
        if descriptor is None:
            raise NavigationError(f"No loop descriptor for loop {loop_index}")
        bound = self.refresh_bound(descriptor)
        following = int(iteration) + 1
        if following > bound or following > descriptor.hard_max:
            logger.debug("Loop %s finished after iteration %s", loop_index, iteration)
            return self._loop_exit(record.index)

        target = self.compiler.find_index(descriptor.iteration_id(following))
        if target is None:
            raise NavigationError(f"Loop {loop_index} has no iteration {following}")
        return target

    def _check_loop_entry(self, record: QuestionRecord) -> QuestionRecord:
        """A first question whose iteration exceeds the bound jumps past the loop."""
        options = record.directives.options
        if "firstquestion" not in options or "loopindx" not in options:
            return record
        try:
            iteration = int(options["firstquestion"])
            loop_index = int(options["loopindx"])
        except ValueError:
            self._authoring_error(f"Loop options of {record.id} are not numeric: {options}", record.id)
            return record

        self.compiler.compiled_markup(record.index)
        descriptor = self.compiler.loop_descriptor(loop_index)
        if descriptor is None:
            self._authoring_error(f"No loop descriptor for {record.id}", record.id)
            return record
        if iteration > self.refresh_bound(descriptor):
            return self._replace_current(self._loop_exit(record.index))
        return record

    # =========================================================================
    # Advance
    # =========================================================================

    def _replace_current(self, index: int) -> QuestionRecord:
        """Swap the History node at the cursor for another record."""
        record = self.compiler.records[index]
        self.history.replace(record.id)
        return record

    def _next_candidate(self) -> Optional[str]:
        candidate = self.history.next()
        if candidate is not None:
            return candidate
        if self.position + 1 >= len(self.compiler):
            return None
        self.history.add(self.compiler.records[self.position + 1].id)
        return self.history.next()

    def queue_skips(self, record: QuestionRecord) -> List[str]:
        """
        Queue the skip targets of the current answers beneath the cursor.

        Declaration order is kept. A "#NR" skip is taken only when nothing
        visible is selected; "if=" guards are evaluated now.
        """
        compiled = self.compiler.compiled_markup(record.index)
        values = {f.key: self.field_value(record, f) for f in compiled.fields}
        anything_selected = any(not is_blank(v) for v in values.values())

        targets: List[str] = []
        for skip in compiled.skips:
            if skip.no_response:
                taken = not anything_selected
            elif skip.hidden:
                taken = skip.condition is None or self.evaluator.evaluate_condition(skip.condition)
            else:
                taken = self._is_selected(values.get(skip.key), skip.value)
            if taken and skip.target not in targets:
                targets.append(skip.target)

        if targets:
            self.history.add(targets)
            logger.debug("Queued skip targets from %s: %s", record.id, targets)
        return targets

    def _find_next(self) -> QuestionRecord:
        candidate_id = self._next_candidate()
        # every dropped candidate leaves History, so this terminates
        for _ in range(4 * len(self.compiler) + 4):
            if candidate_id is None:
                raise NavigationError(f"No question follows {self.active_id}")
            index = self.compiler.find_index(candidate_id)
            if index is None:
                raise NavigationError(f"Skip target {candidate_id} does not exist")
            record = self.compiler.records[index]

            if record.is_continuation_marker:
                record = self._replace_current(self._resolve_marker(record))
            record = self._check_loop_entry(record)
            if record.id == END_OF_LOOP_ID:
                if record.index + 1 >= len(self.compiler):
                    raise NavigationError("END_OF_LOOP is the last record")
                record = self._replace_current(record.index + 1)
            self.position = record.index

            condition = record.directives.displayif
            if condition is None or self.evaluator.evaluate_condition(condition):
                return record

            logger.debug("Skipping hidden question %s", record.id)
            self.history.pop()
            replacement = record.directives.options.get("nodisplay_skip")
            if replacement:
                self.history.add(replacement)
            candidate_id = self._next_candidate()
        raise NavigationError(f"Navigation from {self.active_id} did not settle")

    def mark_hidden_fields(self, record: QuestionRecord) -> None:
        """Hidden fields are recorded as "true" when their question is left."""
        compiled = self.compiler.compiled_markup(record.index)
        for hidden_id in compiled.hidden_ids:
            self.store.set_response(hidden_id, hidden_id, 1, "true")

    def advance(self, force: bool = False) -> Optional[QuestionRecord]:
        """
        Move to the next question.

        Args:
            force: Override a soft mandatory refusal

        Returns:
            The new active record, or None if Advance was refused or had
            no valid target (nothing changed in that case).
        """
        record = self.active_record
        if record is None or self.state == NavigationState.IDLE:
            logger.error("advance() called with no active question")
            return None
        if self.state == NavigationState.TERMINAL:
            logger.info("advance() at END; submit instead")
            return None

        mode = record.directives.mandatory
        if mode != MandatoryMode.NONE:
            unanswered = self.unanswered_count(record)
            if unanswered and (mode == MandatoryMode.HARD or not force):
                logger.info("%s has %d unanswered field(s)", record.id, unanswered)
                if self.on_mandatory is not None:
                    self.on_mandatory(record.id, unanswered, mode == MandatoryMode.SOFT)
                return None

        checkpoint = self.checkpoint()
        store_snapshot = self.store.snapshot()
        try:
            self.mark_hidden_fields(record)
            if self.history.is_empty():
                self.history.add(record.id)
                self.history.next()
            self.history.reset_upcoming()
            self.queue_skips(record)
            target = self._find_next()
        except (NavigationError, LoopBoundError) as exc:
            self._authoring_error(f"Advance from {record.id} failed: {exc}", record.id)
            self.restore(checkpoint)
            self.store.restore(store_snapshot)
            return None

        self._activate(target)
        return target

    # =========================================================================
    # Retreat
    # =========================================================================

    def retreat(self) -> Optional[QuestionRecord]:
        """
        Step back to the previously shown question.

        Returns:
            The new active record, or None (nothing changed) at the start.
        """
        if self.state == NavigationState.IDLE:
            logger.error("retreat() called with no active question")
            return None

        checkpoint = self.checkpoint()
        previous = self.history.previous()
        while previous is not None and is_continuation_marker(previous):
            previous = self.history.previous()

        record = self.compiler.record(previous) if previous is not None else None
        if record is None:
            logger.warning("No previous question before %s", self.active_id)
            self.restore(checkpoint)
            return None

        self._activate(record)
        return record


__all__ = [
    "NavigationState",
    "NavigationStateMachine",
    "Checkpoint",
    "is_blank",
]
