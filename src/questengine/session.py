"""
Survey Session

Wires one running survey together:

    SessionConfig ──► ResponseStore ◄── ConditionEvaluator
                            ▲                  ▲
                            │                  │
    definition ──► SurveyCompiler ──► NavigationStateMachine ──► PresentationHooks

The host drives it with start(), answer()/toggle()/clear(), next(),
previous() and submit(). Everything the presentation layer needs to do
(show a question, put stored answers back into it, report a refused
advance or a failed save) arrives through PresentationHooks.

Persistence:
    Every transition commits the pending edits plus the serialized
    History. By default the commit runs as a task and navigation does
    not wait for it. If it fails, the session rolls back to the state
    captured before that transition, even if newer edits exist, and
    re-shows the question that was active then. drain() waits for
    outstanding commits.
"""

import asyncio
import inspect
import logging
from datetime import date
from typing import Any, Dict, Optional, Set

from questengine.compiler import SurveyCompiler
from questengine.config import SessionConfig
from questengine.errors import LoopBoundError, PersistenceError, StateError
from questengine.evaluator import ConditionEvaluator
from questengine.functions import FunctionLibrary
from questengine.history import NavigationHistory
from questengine.markup import quest_format_date
from questengine.model import QuestionRecord
from questengine.navigation import (
    Checkpoint,
    NavigationState,
    NavigationStateMachine,
    is_blank,
)
from questengine.state import HISTORY_KEY, ResponseStore, StoreSnapshot

logger = logging.getLogger(__name__)

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
]


class PresentationHooks:
    """
    Callbacks into the presentation layer. Every method is a no-op here;
    hosts subclass and override what they need.
    """

    def show_question(self, record: QuestionRecord, html: str) -> None:
        pass

    def restore_responses(self, question_id: str, value: Any) -> None:
        pass

    def mandatory_refused(self, question_id: str, unanswered: int, soft: bool) -> None:
        pass

    def notify_error(self, message: str) -> None:
        pass

    def offer_submission(self, question_id: str) -> None:
        pass


def precalculate_context(today: Optional[date] = None,
                         user_values: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Values fixed for the whole session (#today, #currentYear, {$u:var}, ...)."""
    today = today or date.today()
    context = dict(user_values or {})
    context.update({
        "current_date": today,
        "current_day": today.day,
        "current_month": today.month,
        "current_month_str": MONTH_NAMES[today.month - 1],
        "current_year": today.year,
        "quest_format_date": quest_format_date(today),
    })
    return context


def unwrap_retrieved(data: Any, survey_name: str) -> Dict[str, Any]:
    """Retrieved state may come wrapped as {surveyName: {...}}."""
    if not isinstance(data, dict):
        return {}
    if len(data) == 1:
        (key, value), = data.items()
        if isinstance(value, dict) and (key == survey_name or not survey_name):
            return value
    return data


class SurveySession:
    """
    One respondent working through one survey.

    Args:
        definition: Survey definition text
        config: SessionConfig (defaults apply when omitted)
        hooks: PresentationHooks implementation

    Raises:
        SurveyCompileError: If the definition yields no questions
    """

    def __init__(self, definition: str, config: Optional[SessionConfig] = None,
                 hooks: Optional[PresentationHooks] = None):
        self.config = config or SessionConfig()
        self.hooks = hooks or PresentationHooks()
        self.context = precalculate_context(self.config.today, self.config.user_values)
        self.completed = False
        self._commits: Set["asyncio.Future"] = set()

        self.store = ResponseStore(
            survey_name=self.config.survey_name,
            store=self.config.store,
            prior_results=self.config.prior_results,
        )
        self.compiler: Optional[SurveyCompiler] = None
        library = FunctionLibrary(
            self.store.find_response_value,
            grid_cells=lambda cell_id: self.compiler.grid_cell(cell_id),
            exclusive_values=lambda qid, name: self.compiler.exclusive_values(qid, name),
            today=lambda: self.context["current_date"],
        )
        self.evaluator = ConditionEvaluator(
            self.store.find_response_value,
            library=library,
            error_logger=self.config.error_logger,
        )
        self.compiler = SurveyCompiler(
            definition,
            language=self.config.language,
            context=self.context,
            evaluate=self.evaluator.evaluate_value,
            labels=self.config.labels,
            compile_in_worker=self.config.compile_in_worker,
            worker_timeout=self.config.worker_timeout,
        )
        if not self.store.survey_name:
            self.store.survey_name = self.compiler.name

        self.history = NavigationHistory()
        self.navigation = NavigationStateMachine(
            self.compiler,
            self.store,
            self.evaluator,
            history=self.history,
            error_logger=self.config.error_logger,
            on_mandatory=self.hooks.mandatory_refused,
        )

    @property
    def survey_name(self) -> str:
        return self.store.survey_name

    @property
    def state(self) -> NavigationState:
        return self.navigation.state

    @property
    def active_id(self) -> Optional[str]:
        return self.navigation.active_id

    @property
    def active_record(self) -> Optional[QuestionRecord]:
        return self.navigation.active_record

    # =========================================================================
    # Startup
    # =========================================================================

    async def start(self) -> QuestionRecord:
        """
        Load prior state and show the resume point.

        Raises:
            PersistenceError: If the retrieve callback fails
        """
        data: Dict[str, Any] = {}
        if self.config.retrieve is not None:
            try:
                result = self.config.retrieve()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                raise PersistenceError(f"Retrieve callback failed: {exc}") from exc
            data = unwrap_retrieved(result, self.survey_name)

        self.store.load_initial_state(data)
        self.completed = bool(data.get("COMPLETED"))

        self.history.clear()
        saved = data.get(HISTORY_KEY)
        if saved:
            try:
                self.history.load_from_json(saved)
            except ValueError as exc:
                logger.warning("Discarding saved history for %s: %s", self.survey_name, exc)
                self.history.clear()

        record = self.navigation.start(self.history.current)
        self._show(record)
        return record

    def _show(self, record: QuestionRecord) -> None:
        compiled = self.compiler.compiled_markup(record.index)
        self.store.set_num_response_keys(record.id, compiled.num_response_keys)
        self.store.clear_other_response_keys(record.id)
        self.store.set_active_question_state(record.id)
        self.hooks.show_question(record, compiled.html)
        self.hooks.restore_responses(record.id, self.store.live_value(record.id))
        if self.navigation.state == NavigationState.TERMINAL:
            self.hooks.offer_submission(record.id)

    # =========================================================================
    # Answers
    # =========================================================================

    def _field(self, key: str):
        record = self.active_record
        if record is None:
            raise StateError("No active question")
        compiled = self.compiler.compiled_markup(record.index)
        for field_spec in compiled.fields:
            if field_spec.key == key:
                return record, compiled, field_spec
        raise StateError(f"{record.id} has no field {key}")

    def answer(self, key: str, value: Any) -> None:
        """
        Record the value of one field of the active question.

        A blank value clears the field. Answering a field of an XOR group
        clears the other fields of that group.
        """
        record, compiled, field_spec = self._field(key)
        num_keys = compiled.num_response_keys
        if is_blank(value):
            self.store.remove_response_item(record.id, key, num_keys)
        else:
            self.store.set_response(record.id, key, num_keys, value)
            if field_spec.xor:
                for other in compiled.fields:
                    if other.xor == field_spec.xor and other.key != key:
                        self.store.remove_response_item(record.id, other.key, num_keys)
        self._refresh_loops(record.id, key)

    def toggle(self, key: str, value: str) -> None:
        """
        Check or uncheck one checkbox value.

        Checking an exclusive value clears the rest of the group; checking
        any other value clears the exclusive ones.
        """
        record, compiled, field_spec = self._field(key)
        current = self.navigation.field_value(record, field_spec)
        current = list(current) if isinstance(current, list) else ([] if is_blank(current) else [current])
        value = str(value)
        if value in current:
            remaining = [v for v in current if v != value]
            if remaining:
                self.store.set_response(record.id, key, compiled.num_response_keys, remaining)
            else:
                self.store.remove_response_item(record.id, key, compiled.num_response_keys, value)
        else:
            exclusive = compiled.exclusive_values.get(key, [])
            if value in exclusive:
                selected = [value]
            else:
                selected = [v for v in current if v not in exclusive] + [value]
            self.store.set_response(record.id, key, compiled.num_response_keys, selected)
        self._refresh_loops(record.id, key)

    def clear(self, key: Optional[str] = None) -> None:
        """Clear one field, or the whole active question."""
        if key is None:
            record = self.active_record
            if record is None:
                raise StateError("No active question")
            self.store.remove_response(record.id)
            self._refresh_loops(record.id, record.id)
            return
        self.answer(key, None)

    def _refresh_loops(self, question_id: str, key: str) -> None:
        for descriptor in self.compiler.loops.values():
            if descriptor.bound_source_id not in (question_id, key):
                continue
            try:
                self.navigation.refresh_bound(descriptor)
            except LoopBoundError as exc:
                # the bound is checked again when the loop is navigated
                logger.warning("%s", exc)

    def echo(self, for_id: str, default: str = "") -> str:
        """Display text for a {$id} / {$id:default} response echo."""
        value = self.store.find_response_value(for_id)
        if is_blank(value):
            return default
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return str(value)

    def evaluate(self, expression: str) -> bool:
        return self.evaluator.evaluate_condition(expression)

    # =========================================================================
    # Navigation
    # =========================================================================

    async def next(self, force: bool = False) -> Optional[QuestionRecord]:
        """
        Advance, then commit.

        Returns:
            The new active record, or None if Advance was refused, had no
            target, or (with await_persistence) the commit failed.
        """
        checkpoint = self.navigation.checkpoint()
        snapshot = self.store.snapshot()
        target = self.navigation.advance(force)
        if target is None:
            return None
        return await self._finish_transition(target, checkpoint, snapshot)

    async def previous(self) -> Optional[QuestionRecord]:
        """Retreat, then commit."""
        checkpoint = self.navigation.checkpoint()
        snapshot = self.store.snapshot()
        target = self.navigation.retreat()
        if target is None:
            return None
        return await self._finish_transition(target, checkpoint, snapshot)

    async def _finish_transition(self, target: QuestionRecord, checkpoint: Checkpoint,
                                 snapshot: StoreSnapshot) -> Optional[QuestionRecord]:
        history_json = self.history.to_json()
        if self.config.await_persistence:
            if not await self._commit(history_json, checkpoint, snapshot):
                return None
        else:
            task = asyncio.ensure_future(self._commit(history_json, checkpoint, snapshot))
            self._commits.add(task)
            task.add_done_callback(self._commits.discard)
        self._show(target)
        return target

    async def _commit(self, history_json: str, checkpoint: Checkpoint,
                      snapshot: StoreSnapshot) -> bool:
        try:
            await self.store.commit(history_json, snapshot=snapshot)
        except PersistenceError as exc:
            logger.error("Rolling back to %s after failed commit: %s", checkpoint.active_id, exc)
            self.navigation.restore(checkpoint)
            record = self.navigation.active_record
            if record is not None:
                self._show(record)
            self.hooks.notify_error(f"Your answers could not be saved: {exc}")
            return False
        return True

    async def drain(self) -> None:
        """Wait for every outstanding commit."""
        while self._commits:
            await asyncio.gather(*list(self._commits))

    async def submit(self) -> Optional[Any]:
        """
        Persist the finished survey (COMPLETED, COMPLETED_TS).

        Returns:
            The store callback's result, or None if not at END or the
            submission failed.
        """
        if self.navigation.state != NavigationState.TERMINAL:
            logger.error("submit() called at %s; only END can be submitted", self.active_id)
            return None
        await self.drain()
        try:
            result = await self.store.submit(self.history.to_json())
        except PersistenceError as exc:
            self.hooks.notify_error(f"Your survey could not be submitted: {exc}")
            return None
        self.completed = True
        logger.info("Survey %s submitted", self.survey_name)
        return result


__all__ = [
    "SurveySession",
    "PresentationHooks",
    "precalculate_context",
    "unwrap_retrieved",
]
