"""
Exception hierarchy for the survey engine.

Three kinds of failure are distinguished:
    - authoring errors (bad definition text, bad expressions, bad loop bounds)
    - persistence errors (the host's store callback failed)
    - navigation invariant violations (nowhere to go)

Authoring errors are raised by the low-level layers and caught at the
navigation/evaluation boundary, where a safe default is chosen.
"""


class QuestError(Exception):
    """Base class for every error raised by this package."""
    pass


class SurveyCompileError(QuestError):
    """Raised when survey definition text cannot produce a usable sequence."""
    pass


class ExpressionError(QuestError):
    """
    Raised when a condition expression cannot be evaluated.

    Properties:
        expression: The source text being evaluated
        stack: Remaining tokens at the point of failure (may be empty)
    """

    def __init__(self, message: str, expression: str = "", stack=None):
        super().__init__(message)
        self.expression = expression
        self.stack = list(stack or [])


class ExpressionSyntaxError(ExpressionError):
    """Raised when a condition expression does not parse."""
    pass


class LoopBoundError(QuestError):
    """Raised when a loop's bound-source answer is not numeric."""
    pass


class NavigationError(QuestError):
    """Raised when advance/retreat has no valid target."""
    pass


class PersistenceError(QuestError):
    """
    Raised when the store callback rejects a commit.

    Properties:
        code: The code returned by the callback, or None if it raised
    """

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


class StateError(QuestError):
    """Raised on invalid Response State Store usage (e.g. non-string keys)."""
    pass
