"""
Function library for the condition language.

Two registries live here:

    FUNCTION_NAMES         modern, variadic functions. String arguments
                           passed to the lookup functions are response ids:
                           exists("D_1"), valueOrDefault("D_1", 125)

    LEGACY_FUNCTION_NAMES  two-argument positional functions. Their
                           arguments arrive already resolved through the
                           name-resolution chain: equals(D_1,1)

Values follow loose comparison rules: "1" equals 1, numeric strings
compare numerically, and parse failures become NaN rather than errors.

IMPORTANT:
    No function here reads presentation state. Every value comes from
    the lookup callable (the Response State Store) or, for grid cells and
    exclusive checkbox options, from indexes built by the compiler.
"""

import logging
import math
import re
from datetime import date
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from questengine.errors import ExpressionError

logger = logging.getLogger(__name__)

FUNCTION_NAMES = frozenset([
    "exists",
    "doesNotExist",
    "noneExist",
    "someExist",
    "allExist",
    "valueEquals",
    "equals",
    "valueIsOneOf",
    "valueIsBetween",
    "existingValues",
    "valueLength",
    "dateCompare",
    "isSelected",
    "someSelected",
    "noneSelected",
    "valueOrDefault",
    "selectionCount",
    "yearMonth",
    "min",
    "max",
    "and",
    "or",
    "not",
])

LEGACY_FUNCTION_NAMES = frozenset([
    "and",
    "or",
    "isDefined",
    "isNotDefined",
    "min",
    "max",
    "equals",
    "doesNotEqual",
    "lessThan",
    "lessThanOrEqual",
    "greaterThan",
    "greaterThanOrEqual",
    "setFalse",
    "difference",
    "sum",
    "percentDiff",
    "numberOfChoicesSelected",
])

_NUMBER_PREFIX = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INT_PREFIX = re.compile(r"^\s*[+-]?\d+")
_NUMBER_FULL = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$")
_YEAR_MONTH = re.compile(r"^(\d+)-(\d+)$")


# =============================================================================
# Coercion helpers
# =============================================================================

def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> float:
    """parseFloat-style coercion: leading numeric prefix, else NaN."""
    if isinstance(value, bool):
        return float(value)
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_PREFIX.match(value)
        if match:
            return float(match.group())
    return math.nan


def to_int(value: Any) -> float:
    """parseInt-style coercion; NaN when there is no leading integer."""
    if is_number(value):
        return float(int(value)) if not math.isnan(value) else math.nan
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        if match:
            return float(int(match.group()))
    return math.nan


def looks_numeric(value: Any) -> bool:
    """True for numbers and for strings that are entirely a number."""
    if is_number(value):
        return True
    return isinstance(value, str) and bool(_NUMBER_FULL.match(value))


def is_falsy(value: Any) -> bool:
    if value is None or value is False or value == "":
        return True
    if is_number(value):
        return value == 0 or math.isnan(value)
    return False


def clean_number(value: float):
    """Return ints for integral floats so results read like authored values."""
    if isinstance(value, float) and not math.isnan(value) and not math.isinf(value) \
            and value.is_integer():
        return int(value)
    return value


def _strict_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if is_number(value):
        return float(value)
    if isinstance(value, str) and _NUMBER_FULL.match(value):
        return float(value)
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """
    Equality with the survey language's loose rules.

    "1" == 1, "1.0" == 1, true == 1; strings otherwise compare exactly.
    """
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, YearMonth) or isinstance(right, YearMonth):
        return str(left) == str(right)
    left_num = _strict_number(left)
    right_num = _strict_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    if isinstance(left, bool) or isinstance(right, bool):
        return False
    return str(left) == str(right)


# =============================================================================
# YearMonth
# =============================================================================

class YearMonth:
    """
    A calendar month, "YYYY-MM".

    Supports month arithmetic:
        YearMonth("2023-11") + 3  -> "2024-02"
        YearMonth("2024-02") - 3  -> "2023-11"
        YearMonth("2024-02") - YearMonth("2023-11") -> 3
    """

    def __init__(self, value):
        if isinstance(value, YearMonth):
            self.year, self.month = value.year, value.month
            return
        match = _YEAR_MONTH.match(str(value).strip())
        if not match:
            raise ValueError("Invalid YearMonth format. Expected 'YYYY-MM'.")
        self.year = int(match.group(1))
        self.month = int(match.group(2))

    def __str__(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def __repr__(self) -> str:
        return f"YearMonth('{self}')"

    def __eq__(self, other) -> bool:
        if isinstance(other, YearMonth):
            return (self.year, self.month) == (other.year, other.month)
        return NotImplemented

    def __hash__(self):
        return hash((self.year, self.month))

    def add(self, months: int) -> str:
        total = self.year * 12 + (self.month - 1) + int(months)
        return str(YearMonth(f"{total // 12}-{total % 12 + 1}"))

    def subtract(self, months: int) -> str:
        return self.add(-int(months))

    def months_since(self, other: "YearMonth") -> int:
        return 12 * (self.year - other.year) + self.month - other.month


def add_values(left: Any, right: Any):
    """The + operator: YearMonth month arithmetic, else numeric addition."""
    if isinstance(left, YearMonth) and is_number(right):
        return left.add(right)
    if isinstance(right, YearMonth) and is_number(left):
        return right.add(left)
    return clean_number(to_number(left) + to_number(right))


def subtract_values(left: Any, right: Any):
    """The - operator: YearMonth month arithmetic, else numeric subtraction."""
    if isinstance(left, YearMonth) and isinstance(right, YearMonth):
        return left.months_since(right)
    if isinstance(left, YearMonth) and is_number(right):
        return left.subtract(right)
    return clean_number(to_number(left) - to_number(right))


# =============================================================================
# Library
# =============================================================================

class FunctionLibrary:
    """
    Callable registries bound to one session's lookups.

    Args:
        lookup: find_response_value(key) -> value or None
        grid_cells: cell element id -> (row question id, cell value)
        exclusive_values: (question id, group name) -> values marked exclusive
        today: returns the session's current date
    """

    def __init__(
        self,
        lookup: Callable[[str], Any],
        grid_cells: Optional[Callable[[str], Optional[Tuple[str, str]]]] = None,
        exclusive_values: Optional[Callable[[str, str], Set[str]]] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.lookup = lookup
        self.grid_cells = grid_cells or (lambda cell_id: None)
        self.exclusive_values = exclusive_values or (lambda question_id, name: set())
        self.today = today or date.today

        self.functions: Dict[str, Callable[..., Any]] = {
            "exists": self.exists,
            "doesNotExist": self.does_not_exist,
            "noneExist": self.none_exist,
            "someExist": self.some_exist,
            "allExist": self.all_exist,
            "valueEquals": self.value_equals,
            "equals": self.value_equals,
            "valueIsOneOf": self.value_is_one_of,
            "valueIsBetween": self.value_is_between,
            "existingValues": self.existing_values,
            "valueLength": self.value_length,
            "dateCompare": self.date_compare,
            "isSelected": self.is_selected,
            "someSelected": self.some_selected,
            "noneSelected": self.none_selected,
            "valueOrDefault": self.value_or_default,
            "selectionCount": self.selection_count,
            "yearMonth": self.year_month,
            "min": _modern_min,
            "max": _modern_max,
            "and": lambda *args: all(not is_falsy(a) for a in args),
            "or": lambda *args: any(not is_falsy(a) for a in args),
            "not": lambda value: is_falsy(value),
        }

        self.legacy: Dict[str, Callable[[Any, Any], Any]] = {
            "and": lambda x, y: x if is_falsy(x) else y,
            "or": lambda x, y: y if is_falsy(x) else x,
            "isDefined": self.legacy_is_defined,
            "isNotDefined": lambda x, y="": is_falsy(x),
            "min": _legacy_min,
            "max": _legacy_max,
            "equals": self.legacy_equals,
            "doesNotEqual": self.legacy_does_not_equal,
            "lessThan": lambda x, y: to_number(x) < to_number(y),
            "lessThanOrEqual": lambda x, y: to_number(x) <= to_number(y),
            "greaterThan": lambda x, y: to_number(x) > to_number(y),
            "greaterThanOrEqual": lambda x, y: to_number(x) >= to_number(y),
            "setFalse": lambda x, y="": False,
            "difference": lambda x, y: clean_number(to_int(x) - to_int(y)),
            "sum": lambda x, y: clean_number(to_int(x) + to_int(y)),
            "percentDiff": _percent_diff,
            "numberOfChoicesSelected": lambda x, y="": 0 if x is None or x == "" else len(x),
        }

    # -- existence ---------------------------------------------------------

    def exists(self, x) -> bool:
        if x is None or x == "":
            return False
        if is_number(x):
            return True
        if "." in str(x):
            return self._keyed_value(str(x)) is not None
        value = self.lookup(str(x))
        if value is None:
            return False
        if isinstance(value, (list, dict, str)):
            return len(value) > 0
        return True

    def does_not_exist(self, x) -> bool:
        return not self.exists(x)

    def none_exist(self, *ids) -> bool:
        return all(self.does_not_exist(i) for i in ids)

    def some_exist(self, *ids) -> bool:
        return any(self.exists(i) for i in ids)

    def all_exist(self, *ids) -> bool:
        return all(self.exists(i) for i in ids)

    # -- values ------------------------------------------------------------

    def _keyed_value(self, key: str):
        """Drill into a stored container: "D_1.D_1A" -> value(D_1)["D_1A"]."""
        head, *parts = key.split(".")
        value = self.lookup(head)
        for part in parts:
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def value(self, x):
        if not self.exists(x):
            return None
        if is_number(x):
            return x
        if "." in str(x):
            return self._keyed_value(str(x))
        return self.lookup(str(x))

    def value_equals(self, id_, expected) -> bool:
        if self.does_not_exist(id_):
            return False
        value = self.value(id_)
        if isinstance(value, dict) and id_ in value:
            value = value[id_]
        if isinstance(value, list):
            return any(loose_equals(v, expected) for v in value)
        return loose_equals(value, expected)

    def value_is_one_of(self, id_, *values) -> bool:
        if self.does_not_exist(id_):
            return False
        allowed = {str(clean_number(v)) if is_number(v) else str(v) for v in values}
        value = self.value(id_)
        if isinstance(value, dict) and id_ in value:
            value = value[id_]
        if isinstance(value, list):
            return any(str(v) in allowed for v in value)
        return str(value) in allowed

    def value_is_between(self, lower, upper, *ids) -> bool:
        """lower <= value(id) <= upper; several ids go through valueOrDefault."""
        if lower is None or upper is None or not ids:
            return False
        if len(ids) > 1:
            value = self.value_or_default(ids[0], *ids[1:])
        else:
            value = self.value(ids[0])
        number = to_number(value)
        low, high = to_number(lower), to_number(upper)
        if any(math.isnan(n) for n in (number, low, high)):
            return False
        return low <= number <= high

    def value_or_default(self, x, *defaults):
        """
        Value of x, else the first default that resolves, else the last
        default taken literally.
        """
        value = self.value(x)
        for default in defaults:
            if value is not None:
                break
            value = self.value(default)
        if value is None and defaults:
            value = defaults[-1]
        return value

    def value_length(self, id_):
        if self.does_not_exist(id_):
            return False
        value = self.value(id_)
        return len(value) if isinstance(value, str) else -1

    def existing_values(self, *args) -> str:
        """
        existingValues(cond1, text1, cond2, text2[, separator])

        Joins the texts whose condition is true.
        """
        separator = ", "
        if len(args) % 2 == 1:
            separator = str(args[-1])
            args = args[:-1]
        found = []
        for condition, text in zip(args[0::2], args[1::2]):
            if not is_falsy(condition):
                found.append(str(self.value_or_default(text, text)))
        return separator.join(found)

    def date_compare(self, month1, year1, month2, year2) -> int:
        months = [to_int(month1), to_int(month2)]
        if any(math.isnan(m) or m < 0 or m > 11 for m in months):
            raise ExpressionError("dateCompare: months need to be from 0 (Jan) to 11 (Dec)")
        years = [to_number(year1), to_number(year2)]
        if any(math.isnan(y) for y in years):
            raise ExpressionError("dateCompare: years need to be numeric")
        first = (years[0], months[0])
        second = (years[1], months[1])
        return -1 if first < second else (0 if first == second else 1)

    # -- grids and selections ------------------------------------------------

    def is_selected(self, cell_id) -> bool:
        """True if the grid cell's value is the stored answer for its row."""
        cell = self.grid_cells(str(cell_id))
        if cell is None:
            logger.warning("isSelected: unknown grid cell %s", cell_id)
            return False
        row_id, cell_value = cell
        response = self.lookup(row_id)
        if response is None or response == "":
            return False
        if isinstance(response, list):
            return any(loose_equals(v, cell_value) for v in response)
        return loose_equals(response, cell_value)

    def some_selected(self, *ids) -> bool:
        return any(self.is_selected(i) for i in ids)

    def none_selected(self, *ids) -> bool:
        return not any(self.is_selected(i) for i in ids)

    def selection_count(self, x, count_reset=False) -> int:
        """
        selectionCount("QID:name") -> number of checked boxes in a group.

        Selecting an exclusive ("none of the above") option counts as zero
        unless count_reset is true.
        """
        question_id, _, name = str(x).partition(":")
        name = name or question_id
        if not self.exists(question_id):
            return 0
        value = self.value(question_id)
        if isinstance(value, dict):
            value = value.get(name)
        if not isinstance(value, list):
            return 0
        if not is_falsy(count_reset):
            return len(value)
        exclusive = self.exclusive_values(question_id, name)
        if any(str(v) in exclusive for v in value):
            return 0
        return len(value)

    def year_month(self, value):
        text = str(value)
        if _YEAR_MONTH.match(text):
            return YearMonth(text)
        stored = self.value(text)
        if stored is not None and _YEAR_MONTH.match(str(stored)):
            return YearMonth(str(stored))
        return False

    # -- legacy ------------------------------------------------------------

    def legacy_is_defined(self, x, y=""):
        candidate = y if is_falsy(x) else x
        if looks_numeric(candidate):
            return candidate
        found = self.lookup(str(candidate)) if candidate is not None else None
        return y if found is None else found

    def _legacy_operand(self, y):
        if isinstance(y, str):
            y = y.replace('"', "")
            if y == "true":
                return True
            if y == "false":
                return False
            if y == "_TODAY_":
                return self.today().isoformat()
        return y

    def legacy_equals(self, x, y="") -> bool:
        if y is None or y == "undefined":
            return x is None or x == ""
        y = self._legacy_operand(y)
        if isinstance(x, list):
            return any(loose_equals(v, y) for v in x)
        return loose_equals(x, y)

    def legacy_does_not_equal(self, x, y="") -> bool:
        if y is None or y == "undefined":
            return not (x is None or x == "")
        y = self._legacy_operand(y)
        if isinstance(x, list):
            return not any(loose_equals(v, y) for v in x)
        return not loose_equals(x, y)


def _numeric_args(values: Iterable[Any]):
    return [n for n in (to_number(v) for v in values) if not math.isnan(n)]


def _modern_min(*values):
    numbers = _numeric_args(values)
    return clean_number(min(numbers)) if numbers else math.nan


def _modern_max(*values):
    numbers = _numeric_args(values)
    return clean_number(max(numbers)) if numbers else math.nan


def _legacy_min(x, y=""):
    if is_falsy(x) and is_falsy(y):
        return ""
    numbers = [to_number(v) for v in (x, y)]
    numbers = [math.inf if math.isnan(n) else n for n in numbers]
    return clean_number(min(numbers))


def _legacy_max(x, y=""):
    if is_falsy(x) and is_falsy(y):
        return ""
    numbers = [to_number(v) for v in (x, y)]
    numbers = [-math.inf if math.isnan(n) else n for n in numbers]
    return clean_number(max(numbers))


def _percent_diff(x, y):
    if not x or not isinstance(x, str) or not y or not isinstance(y, str):
        return math.nan
    base = to_number(x)
    if math.isnan(base) or base == 0:
        return math.nan
    return (to_int(x) - to_int(y)) / base


__all__ = [
    "FUNCTION_NAMES",
    "LEGACY_FUNCTION_NAMES",
    "FunctionLibrary",
    "YearMonth",
    "add_values",
    "subtract_values",
    "loose_equals",
    "to_number",
    "is_falsy",
]
