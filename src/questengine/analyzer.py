"""
Survey Analyzer: early diagnostics for compiled surveys.

This module provides lightweight analysis of a SurveyCompiler:
    - Skip target inventory (undefined targets)
    - Ids referenced by conditions that no question or field declares
    - Loops whose bound source cannot be found
    - Boundaries dropped at compile time (duplicate ids)
    - Expression complexity metrics

IMPORTANT: This is an analysis layer. It does NOT change the sequence;
it compiles every record (which only fills the memoized markup) and
produces a read-only report.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import unquote

from questengine.compiler import SurveyCompiler
from questengine.errors import ExpressionError
from questengine.expression_parser import parse_expression
from questengine.expressions import (
    Expression,
    BinaryExpression,
    VariableReference,
    Literal,
    UnaryExpression,
    FunctionCall,
    LegacyCall,
)
from questengine.functions import looks_numeric
from questengine.markup import ChoiceOption, DisplayIf, walk
from questengine.model import END_ID, MandatoryMode

ID_LIKE = re.compile(r"^[A-Z_][A-Za-z0-9_]*(?:[.:][A-Za-z0-9_]+)?$")
RESERVED_NAMES = {"null", "undefined", "true", "false", "#loop"}


@dataclass
class ExpressionMetrics:
    """Metrics about a single expression tree."""
    depth: int = 0
    node_count: int = 0
    references: Set[str] = field(default_factory=set)

    def add(self, other: ExpressionMetrics) -> None:
        self.depth = max(self.depth, other.depth)
        self.node_count += other.node_count
        self.references.update(other.references)


def _analyze_expression(expr: Expression | None) -> ExpressionMetrics:
    """Recursively analyze an expression tree."""
    if expr is None:
        return ExpressionMetrics(depth=0, node_count=0)

    metrics = ExpressionMetrics(node_count=1)

    if isinstance(expr, BinaryExpression):
        left = _analyze_expression(expr.left)
        right = _analyze_expression(expr.right)
        metrics.depth = 1 + max(left.depth, right.depth)
        metrics.node_count += left.node_count + right.node_count
        metrics.references.update(left.references | right.references)

    elif isinstance(expr, UnaryExpression):
        operand = _analyze_expression(expr.operand)
        metrics.depth = 1 + operand.depth
        metrics.node_count += operand.node_count
        metrics.references.update(operand.references)

    elif isinstance(expr, (FunctionCall, LegacyCall)):
        children = [_analyze_expression(a) for a in expr.arguments]
        metrics.depth = 1 + max((c.depth for c in children), default=0)
        for child in children:
            metrics.node_count += child.node_count
            metrics.references.update(child.references)
        if isinstance(expr, FunctionCall):
            # modern lookups take response ids as string literals
            for arg in expr.arguments:
                if isinstance(arg, Literal) and isinstance(arg.value, str) and ID_LIKE.match(arg.value):
                    metrics.references.add(arg.value)

    elif isinstance(expr, VariableReference):
        name = expr.name
        if name.lower() not in RESERVED_NAMES and not looks_numeric(name) and ID_LIKE.match(name):
            metrics.references.add(name)

    return metrics


@dataclass
class SurveyReport:
    """Analysis report for one compiled survey."""

    survey_name: str
    total_questions: int = 0
    total_grids: int = 0
    total_loops: int = 0
    total_fields: int = 0
    mandatory_questions: int = 0

    # Skips
    skip_targets: Dict[str, List[str]] = field(default_factory=dict)
    undefined_skip_targets: Set[str] = field(default_factory=set)

    # Conditions
    reference_usage: Dict[str, int] = field(default_factory=dict)
    unknown_references: Set[str] = field(default_factory=set)
    unparseable_conditions: List[Tuple[str, str]] = field(default_factory=list)

    # Structure
    loops_without_bound: List[int] = field(default_factory=list)
    dropped_boundaries: List[str] = field(default_factory=list)

    # Expression complexity
    max_expression_depth: int = 0
    avg_expression_depth: float = 0.0
    total_expression_nodes: int = 0

    # Warnings and flags
    warnings: List[str] = field(default_factory=list)

    def add_warning(self, msg: str) -> None:
        """Add a warning to the report."""
        if msg not in self.warnings:
            self.warnings.append(msg)


def _conditions(compiler: SurveyCompiler) -> Iterable[Tuple[str, str]]:
    """(question id, decoded condition text) for every condition in the survey."""
    for record in compiler.records:
        if record.directives.displayif:
            yield record.id, unquote(record.directives.displayif)
        compiled = compiler.compiled_markup(record.index)
        for field_spec in compiled.fields:
            if field_spec.condition:
                yield record.id, unquote(field_spec.condition)
        for skip in compiled.skips:
            if skip.condition:
                yield record.id, unquote(skip.condition)
        for node in walk(compiled.document or ()):
            if isinstance(node, (ChoiceOption, DisplayIf)) and node.condition:
                yield record.id, node.condition


def _declared_ids(compiler: SurveyCompiler, external_ids: Iterable[str]) -> Set[str]:
    declared = set(external_ids)
    for record in compiler.records:
        declared.add(record.id)
        compiled = compiler.compiled_markup(record.index)
        for field_spec in compiled.fields:
            declared.add(field_spec.key)
            declared.update(field_spec.element_ids)
        declared.update(compiled.hidden_ids)
        if record.grid is not None:
            declared.update(record.grid.cells())
    return declared


def _is_declared(reference: str, declared: Set[str]) -> bool:
    parts = re.split(r"[.:]", reference)
    return reference in declared or any(p in declared for p in parts)


def analyze_survey(compiler: SurveyCompiler, external_ids: Optional[Iterable[str]] = None) -> SurveyReport:
    """
    Perform read-only analysis of a compiled survey.

    Args:
        compiler: The survey
        external_ids: Ids supplied from outside the definition (prior-session results)

    Returns a SurveyReport with metrics and warnings.
    """
    compiler.compile_all()
    report = SurveyReport(survey_name=compiler.name)

    report.total_questions = len(compiler.records)
    report.total_grids = sum(1 for r in compiler.records if r.grid is not None)
    report.total_loops = len(compiler.loop_max)
    report.mandatory_questions = sum(
        1 for r in compiler.records if r.directives.mandatory != MandatoryMode.NONE
    )
    report.dropped_boundaries = list(compiler.dropped)

    # =========================================================================
    # 1. SKIP TARGETS
    # =========================================================================

    for record in compiler.records:
        compiled = compiler.compiled_markup(record.index)
        report.total_fields += len(compiled.fields)
        targets = [s.target for s in compiled.skips]
        replacement = record.directives.options.get("nodisplay_skip")
        if replacement:
            targets.append(replacement)
        if targets:
            report.skip_targets[record.id] = targets
        for target in targets:
            if target != END_ID and compiler.find_index(target) is None:
                report.undefined_skip_targets.add(target)

    # =========================================================================
    # 2. CONDITIONS
    # =========================================================================

    declared = _declared_ids(compiler, external_ids or [])
    usage: Dict[str, int] = defaultdict(int)
    depths = []

    for question_id, text in _conditions(compiler):
        try:
            expr = parse_expression(text)
        except ExpressionError as exc:
            report.unparseable_conditions.append((question_id, text))
            report.add_warning(f"Unparseable condition in {question_id}: {text} ({exc})")
            continue
        metrics = _analyze_expression(expr)
        depths.append(metrics.depth)
        report.total_expression_nodes += metrics.node_count
        for reference in metrics.references:
            usage[reference] += 1
            if not _is_declared(reference, declared):
                report.unknown_references.add(reference)

    report.reference_usage = dict(usage)
    if depths:
        report.max_expression_depth = max(depths)
        report.avg_expression_depth = sum(depths) / len(depths)

    # =========================================================================
    # 3. LOOPS
    # =========================================================================

    for loop_index in sorted(compiler.loop_max):
        descriptor = compiler.loop_descriptor(loop_index)
        if descriptor is None or descriptor.bound_source_id is None:
            report.loops_without_bound.append(loop_index)
        elif compiler.find_index(descriptor.bound_source_id) is None \
                and descriptor.bound_source_id not in declared:
            report.add_warning(
                f"Loop {loop_index} bound source {descriptor.bound_source_id} is not defined"
            )

    # =========================================================================
    # 4. WARNING FLAGS
    # =========================================================================

    if report.undefined_skip_targets:
        report.add_warning(
            f"Undefined skip targets: {', '.join(sorted(report.undefined_skip_targets))}"
        )

    if report.unknown_references:
        report.add_warning(
            f"Unknown ids in conditions: {', '.join(sorted(report.unknown_references))}"
        )

    if report.loops_without_bound:
        report.add_warning(
            f"Loops without a bound source: {', '.join(str(n) for n in report.loops_without_bound)}"
        )

    if report.dropped_boundaries:
        report.add_warning(
            f"Dropped question boundaries: {', '.join(report.dropped_boundaries)}"
        )

    if report.max_expression_depth > 5:
        report.add_warning(
            f"High expression complexity: max depth {report.max_expression_depth}"
        )

    return report


__all__ = [
    "ExpressionMetrics",
    "SurveyReport",
    "analyze_survey",
]
