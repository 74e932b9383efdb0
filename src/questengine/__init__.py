"""
Quest Survey Engine

Compiles the Quest plaintext survey-definition language into an ordered
sequence of question records and drives a respondent through it.

Layers:
    - expressions / expression_parser / evaluator: condition language
    - state: respondent answers (committed vs pending) and lookups
    - compiler / markup / grid / loops: definition text -> question records
    - history / navigation: which question is active
    - session: wires one survey instance together

ARCHITECTURAL GUARANTEE:
------------------------
There is no module-level mutable state in this package.
Everything a running survey needs lives on a SurveySession.
"""

from questengine.errors import (
    QuestError,
    SurveyCompileError,
    ExpressionError,
    ExpressionSyntaxError,
    LoopBoundError,
    NavigationError,
    PersistenceError,
    StateError,
)
from questengine.config import SessionConfig
from questengine.session import SurveySession

__version__ = "0.1.0"

__all__ = [
    "QuestError",
    "SurveyCompileError",
    "ExpressionError",
    "ExpressionSyntaxError",
    "LoopBoundError",
    "NavigationError",
    "PersistenceError",
    "StateError",
    "SessionConfig",
    "SurveySession",
]
