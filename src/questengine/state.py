"""
Response State Store

Holds a respondent's answers for one survey session.

Two halves:
    committed   durable snapshot, already accepted by the persistence callback
    pending     in-progress edits, merged into committed only after a
                successful commit

A Response Entry for a question is a scalar (radio/text), a list
(checkbox group) or a dict keyed by field (multi-field questions, grid
rows, "other" text). A pending value of None means "removed": it hides the
committed value from lookups and deletes it on merge.

IMPORTANT:
    Every value read made by the evaluator and the navigation layer goes
    through find_response_value(). Nothing reads presentation state.
"""

import copy
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from questengine.errors import PersistenceError, StateError
from questengine.functions import looks_numeric, clean_number

logger = logging.getLogger(__name__)

HISTORY_KEY = "treeJSON"
SUCCESS_CODE = 200


@dataclass
class StoreSnapshot:
    """Deep copy of every mutable part of the store, for rollback."""
    committed: Dict[str, Any]
    pending: Dict[str, Any]
    cache: Dict[str, Any]
    key_paths: Dict[str, str]


class ResponseStore:
    """
    Committed/pending response state with compound-key lookups.

    Args:
        survey_name: Prefix applied to every key sent to the store callback
        store: Persistence callback, store(changed) -> {"code": int}; may be async
        prior_results: Flat answers from an earlier survey (lowest priority)
    """

    def __init__(
        self,
        survey_name: str = "",
        store: Optional[Callable[[Dict[str, Any]], Any]] = None,
        prior_results: Optional[Dict[str, Any]] = None,
    ):
        self.survey_name = survey_name
        self.store = store
        self.prior_results: Dict[str, Any] = dict(prior_results or {})
        self.committed: Dict[str, Any] = {}
        self.pending: Dict[str, Any] = {}
        # question id -> number of answerable fields
        self._num_keys: Dict[str, int] = {}
        # "fieldKey.questionId" -> "questionId.fieldKey" storage path
        self._key_paths: Dict[str, str] = {}
        self._cache: Dict[str, Any] = {}
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    # =========================================================================
    # Writes
    # =========================================================================

    def set_response(self, question_id: str, key: str, num_keys: int, value: Any) -> None:
        """
        Store one field's value in pending state.

        With num_keys == 1 the value is stored bare under the question id;
        otherwise it is stored under key inside a dict for the question.
        """
        if not isinstance(question_id, str) or not isinstance(key, str):
            raise StateError("set_response: question id and key must be strings")

        compound = f"{key}.{question_id}"
        path = question_id if num_keys == 1 else f"{question_id}.{key}"
        existing = self._key_paths.get(compound)
        if existing is None:
            self._key_paths[compound] = path
        elif existing != path:
            logger.error(
                "Response key %s is already mapped to %s and cannot be remapped to %s",
                compound, existing, path,
            )

        if num_keys == 1:
            self.pending[question_id] = value
        else:
            container = self.pending.get(question_id)
            if not isinstance(container, dict):
                container = {}
                self.pending[question_id] = container
            container[key] = value

        self._invalidate(question_id, key)
        self._cache[compound] = value
        self._notify()

    def remove_response_item(self, question_id: str, key: str, num_keys: int,
                             element_value: Any = None) -> None:
        """
        Clear one field (or one checkbox value) from pending state.

        When the last value of an entry goes, the whole entry goes.
        """
        if not isinstance(question_id, str) or not isinstance(key, str):
            raise StateError("remove_response_item: question id and key must be strings")
        if self.pending.get(question_id) is None:
            return

        current = self.pending[question_id]
        if num_keys == 1 or not isinstance(current, dict):
            if isinstance(current, list) and element_value is not None:
                remaining = [v for v in current if v != element_value]
                self.pending[question_id] = remaining if remaining else None
            else:
                self.pending[question_id] = None
        else:
            value = current.get(key)
            if isinstance(value, list) and element_value is not None:
                remaining = [v for v in value if v != element_value]
                if remaining:
                    current[key] = remaining
                else:
                    current.pop(key, None)
            else:
                current.pop(key, None)
            if not current:
                self.pending[question_id] = None

        self._invalidate(question_id, key)
        self._notify()

    def remove_response(self, question_id: str) -> None:
        """Drop every field of a question from pending state."""
        if not isinstance(question_id, str):
            raise StateError("remove_response: question id must be a string")

        current = self.pending.get(question_id)
        if isinstance(current, dict):
            for key in current:
                self._key_paths.pop(f"{key}.{question_id}", None)
        else:
            self._key_paths.pop(f"{question_id}.{question_id}", None)
        keys = set()
        for entry in (current, self.committed.get(question_id)):
            if isinstance(entry, dict):
                keys.update(entry)
        self.pending[question_id] = None
        self._invalidate(question_id, *keys)
        self._notify()

    def clear_all_state(self) -> None:
        self.committed = {}
        self.pending = {}
        self._num_keys = {}
        self._key_paths = {}
        self._cache = {}
        self._notify()

    def set_active_question_state(self, question_id: str) -> None:
        """Seed pending state with the stored answer of the question being shown."""
        if not isinstance(question_id, str):
            raise StateError("set_active_question_state: question id must be a string")
        if question_id in self.committed and question_id not in self.pending:
            self.pending[question_id] = copy.deepcopy(self.committed[question_id])
            self._notify()

    def clear_active_question_state(self) -> None:
        self.pending = {}
        self._notify()

    def load_initial_state(self, data: Optional[Dict[str, Any]]) -> None:
        """
        Replace committed state with previously persisted data.

        Builds the response-key index by walking the whole tree, then
        warms the lookup cache from it.
        """
        self.committed = dict(data or {})
        self.pending = {}
        self._cache = {}
        self._key_paths = _index_response_keys(self.committed)
        for compound in list(self._key_paths):
            key, _, question_id = compound.partition(".")
            value = self.find_response_value(key, question_id or None)
            if value is not None:
                self._cache[compound] = value

    # =========================================================================
    # Field counts
    # =========================================================================

    def set_num_response_keys(self, question_id: str, count: int) -> None:
        self._num_keys[question_id] = count

    def get_num_response_keys(self, question_id: str) -> Optional[int]:
        return self._num_keys.get(question_id)

    def clear_other_response_keys(self, active_question_id: str) -> None:
        """Forget field counts of every other question (displayifs change them)."""
        self._num_keys = {
            qid: count for qid, count in self._num_keys.items() if qid == active_question_id
        }

    # =========================================================================
    # Reads
    # =========================================================================

    def live_value(self, question_id: str) -> Any:
        """Pending value if the question has one (None = removed), else committed."""
        if question_id in self.pending:
            return self.pending[question_id]
        return self.committed.get(question_id)

    def responses(self) -> Dict[str, Any]:
        """Committed state overlaid with pending edits."""
        merged = dict(self.committed)
        for question_id, value in self.pending.items():
            if value is None:
                merged.pop(question_id, None)
            else:
                merged[question_id] = value
        return merged

    def find_response_value(self, key: str, question_id: Optional[str] = None) -> Any:
        """
        Resolve a response key to its value.

        Resolution order:
            1. numeric literal shortcut
            2. compound-key cache ("fieldKey.questionId")
            3. the owning question's live value, unwrapping containers
            4. prior-session results
            5. the response-key index built from the full state tree

        Returns:
            The value, or None if nothing is stored.
        """
        if not isinstance(key, str) or (question_id is not None and not isinstance(question_id, str)):
            raise StateError("find_response_value: key(s) must be strings")

        if looks_numeric(key) and not key[:1].isalpha():
            return clean_number(float(key))

        compound = f"{key}.{question_id}" if question_id else key
        if compound in self._cache:
            logger.debug("Lookup cache hit: %s", compound)
            return self._cache[compound]

        value = self._owned_value(key, question_id, compound)
        if value is None:
            value = self.prior_results.get(compound, self.prior_results.get(key))
        if value is None:
            value = self._indexed_value(compound, question_id)

        if value is not None:
            self._cache[compound] = value
        return value

    def _owned_value(self, key: str, question_id: Optional[str], compound: str) -> Any:
        state = self.responses()
        if compound in state:
            return _unwrap(state[compound], key, compound)
        if question_id and question_id in state:
            return _unwrap(state[question_id], key, compound)
        return None

    def _indexed_value(self, compound: str, question_id: Optional[str]) -> Any:
        if question_id:
            path = self._key_paths.get(compound)
        else:
            matches = [k for k in self._key_paths if k == compound or k.startswith(compound + ".")]
            if len(matches) > 1:
                logger.warning("Response key %s matches several stored paths: %s", compound, matches)
            path = self._key_paths[matches[0]] if matches else None
        if not path:
            return None

        value: Any = self.responses()
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def _invalidate(self, question_id: str, *keys: str) -> None:
        stale = {question_id, f"{question_id}.{question_id}"}
        for key in keys:
            stale.update({key, f"{key}.{question_id}"})
        suffix = f".{question_id}"
        for cached in list(self._cache):
            if cached in stale or cached.endswith(suffix):
                del self._cache[cached]

    # =========================================================================
    # Persistence
    # =========================================================================

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            committed=copy.deepcopy(self.committed),
            pending=copy.deepcopy(self.pending),
            cache=copy.deepcopy(self._cache),
            key_paths=dict(self._key_paths),
        )

    def restore(self, snapshot: StoreSnapshot) -> None:
        """Put both state halves back exactly as captured."""
        self.committed = copy.deepcopy(snapshot.committed)
        self.pending = copy.deepcopy(snapshot.pending)
        self._cache = copy.deepcopy(snapshot.cache)
        self._key_paths = dict(snapshot.key_paths)
        self._notify()

    def _prefixed(self, state: Dict[str, Any]) -> Dict[str, Any]:
        if not self.survey_name:
            return dict(state)
        return {f"{self.survey_name}.{k}": v for k, v in state.items()}

    async def _send(self, changed: Dict[str, Any]) -> Any:
        if self.store is None:
            return {"code": SUCCESS_CODE}
        try:
            result = self.store(changed)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            raise PersistenceError(f"Store callback failed: {exc}") from exc
        code = _result_code(result)
        if code != SUCCESS_CODE:
            raise PersistenceError(f"Store callback returned code {code}", code=code)
        return result

    async def commit(self, history_json: Any = None,
                     snapshot: Optional[StoreSnapshot] = None) -> Any:
        """
        Send pending edits (plus the serialized history) to the store callback.

        On success the sent entries are merged into committed state. On
        failure committed and pending state are restored from the snapshot
        taken before the call (or the one passed in) and PersistenceError
        is raised.
        """
        snapshot = snapshot or self.snapshot()
        staged = copy.deepcopy(self.pending)
        if history_json is not None:
            staged[HISTORY_KEY] = history_json

        try:
            result = await self._send(self._prefixed(staged))
        except PersistenceError:
            logger.error("Commit failed for %s; rolling back", self.survey_name or "survey")
            self.restore(snapshot)
            raise

        for question_id, value in staged.items():
            if value is None:
                self.committed.pop(question_id, None)
            else:
                self.committed[question_id] = value
            if question_id in self.pending and self.pending[question_id] == value:
                del self.pending[question_id]
        self._notify()
        return result

    async def submit(self, history_json: Any = None) -> Any:
        """Terminal commit: flags the survey COMPLETED with a timestamp."""
        snapshot = self.snapshot()
        staged = dict(copy.deepcopy(self.pending))
        staged.update({
            HISTORY_KEY: history_json,
            "COMPLETED": True,
            "COMPLETED_TS": datetime.now().isoformat(),
        })

        try:
            result = await self._send(self._prefixed(staged))
        except PersistenceError:
            logger.error("Submit failed for %s; rolling back", self.survey_name or "survey")
            self.restore(snapshot)
            raise

        for question_id, value in staged.items():
            if value is None:
                self.committed.pop(question_id, None)
            else:
                self.committed[question_id] = value
        self.pending = {}
        self._notify()
        return result

    # =========================================================================
    # Listeners
    # =========================================================================

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Register a listener called with the committed state after each change."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.committed)


def _unwrap(container: Any, key: str, compound: str) -> Any:
    """Scalar/list as-is; single-key dicts unwrap; multi-key dicts index by key."""
    if not isinstance(container, dict):
        return container
    if key in container:
        return container[key]
    if len(container) == 1:
        return next(iter(container.values()))
    return container.get(compound)


def _index_response_keys(state: Dict[str, Any]) -> Dict[str, str]:
    """
    Map "responseKey.parentPath" -> "parentPath.responseKey" for every leaf.

    Top-level scalars map to themselves. The serialized history is skipped.
    """
    index: Dict[str, str] = {}

    def traverse(obj: Dict[str, Any], parents: List[str]) -> None:
        for key, value in obj.items():
            if key == HISTORY_KEY:
                continue
            if isinstance(value, dict):
                traverse(value, parents + [key])
                continue
            full_path = ".".join(parents + [key])
            unique = f"{key}.{'.'.join(parents)}" if parents else key
            if unique in index:
                logger.error(
                    "Response key %s is already mapped to %s and cannot be remapped to %s",
                    unique, index[unique], full_path,
                )
            else:
                index[unique] = full_path

    traverse(state, [])
    return index


def _result_code(result: Any) -> Optional[int]:
    if isinstance(result, dict):
        return result.get("code")
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    return getattr(result, "code", None)


__all__ = [
    "ResponseStore",
    "StoreSnapshot",
    "HISTORY_KEY",
    "SUCCESS_CODE",
]
