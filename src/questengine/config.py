"""
Session configuration.

A SessionConfig carries everything the host supplies to a SurveySession:
persistence callbacks, prior results, error reporting and a few switches.

The plain-data part can be kept in YAML:

    survey_name: Module1
    await_persistence: true
    language: en
    today: 2024-03-07
    prior_results:
      AGE: 42

Callables (store, retrieve, error_logger) are passed as keyword arguments
to from_yaml(); they cannot come from a file.
"""

import logging
from dataclasses import dataclass, field, fields
from datetime import date
from typing import Any, Callable, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CALLABLE_FIELDS = ("store", "retrieve", "error_logger")


@dataclass
class SessionConfig:
    """
    Host-supplied settings for one survey session.

    Properties:
        survey_name: Prefix for persisted keys; defaults to the definition's name header
        store: store(changed) -> {"code": int}, sync or async
        retrieve: retrieve() -> previously committed state, sync or async
        prior_results: Flat answers from an earlier survey
        error_logger: error_logger(message, expression) for authoring errors
        await_persistence: Wait for each commit before showing the next question
        compile_in_worker: Segment the definition on a worker thread
        worker_timeout: Seconds before the worker is abandoned for inline compilation
        language: Language used for loop ordinals
        today: Session date (defaults to the real date at session start)
        user_values: Values for {$u:var} markers
        labels: UI label overrides (Next, Back, ...)
    """

    survey_name: str = ""
    store: Optional[Callable[[Dict[str, Any]], Any]] = None
    retrieve: Optional[Callable[[], Any]] = None
    prior_results: Dict[str, Any] = field(default_factory=dict)
    error_logger: Optional[Callable[[str, str], None]] = None
    await_persistence: bool = False
    compile_in_worker: bool = False
    worker_timeout: float = 5.0
    language: str = "en"
    today: Optional[date] = None
    user_values: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.worker_timeout <= 0:
            raise ValueError(f"worker_timeout must be positive, got {self.worker_timeout}")
        if isinstance(self.today, str):
            self.today = date.fromisoformat(self.today)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **callables) -> "SessionConfig":
        """
        Build a config from plain data plus callables.

        Raises:
            ValueError: On unknown keys or callables given as data
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown session config key(s): {', '.join(unknown)}")
        in_data = [name for name in CALLABLE_FIELDS if name in data]
        if in_data:
            raise ValueError(f"Callables cannot be configured from data: {', '.join(in_data)}")
        bad = sorted(set(callables) - set(CALLABLE_FIELDS))
        if bad:
            raise ValueError(f"Not a callable config field: {', '.join(bad)}")
        data.update(callables)
        return cls(**data)

    @classmethod
    def from_yaml(cls, text: str, **callables) -> "SessionConfig":
        """Build a config from a YAML mapping (see module docstring)."""
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError("Session config YAML must be a mapping")
        logger.debug("Loaded session config keys: %s", sorted(data))
        return cls.from_dict(data, **callables)


__all__ = ["SessionConfig"]
