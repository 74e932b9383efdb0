"""
Serialization helpers for questengine objects (question records, grids,
loop descriptors, compiled surveys).

Provides JSON/YAML round-trip via an intermediate dict representation.
Compiled markup is not serialized: it is rebuilt lazily after loading.
Navigation History has its own to_json()/load_from_json().
"""
from __future__ import annotations

import json
from typing import Any, Dict

import yaml

from questengine.compiler import ParsedDefinition, SurveyCompiler
from questengine.grid import GridQuestion, GridResponse, GridRow, grid_record
from questengine.model import (
    Directives,
    LoopDescriptor,
    MandatoryMode,
    QuestionRecord,
)


def directives_to_dict(d: Directives) -> Dict[str, Any]:
    return {
        "displayif": d.displayif,
        "end": d.end,
        "noback": d.noback,
        "mandatory": d.mandatory.value,
        "options": dict(d.options),
    }


def directives_from_dict(d: Dict[str, Any] | None) -> Directives:
    d = d or {}
    return Directives(
        displayif=d.get("displayif"),
        end=d.get("end", False),
        noback=d.get("noback", False),
        mandatory=MandatoryMode(d.get("mandatory", MandatoryMode.NONE.value)),
        options=dict(d.get("options", {})),
    )


def grid_to_dict(g: GridQuestion) -> Dict[str, Any]:
    return {
        "id": g.id,
        "mandatory": g.mandatory.value,
        "args": g.args,
        "displayif": g.displayif,
        "shared_text": g.shared_text,
        "rows": [{"id": r.id, "text": r.text, "displayif": r.displayif} for r in g.rows],
        "responses": [{"kind": r.kind, "value": r.value, "text": r.text} for r in g.responses],
    }


def grid_from_dict(d: Dict[str, Any]) -> GridQuestion:
    return GridQuestion(
        id=d["id"],
        mandatory=MandatoryMode(d.get("mandatory", MandatoryMode.NONE.value)),
        args=d.get("args", ""),
        displayif=d.get("displayif"),
        shared_text=d.get("shared_text", ""),
        rows=[GridRow(r["id"], r.get("text", ""), r.get("displayif")) for r in d.get("rows", [])],
        responses=[GridResponse(r["kind"], r["value"], r.get("text", "")) for r in d.get("responses", [])],
    )


def record_to_dict(r: QuestionRecord) -> Dict[str, Any]:
    return {
        "id": r.id,
        "index": r.index,
        "raw_body": r.raw_body,
        "directives": directives_to_dict(r.directives),
        "grid": grid_to_dict(r.grid) if r.grid is not None else None,
    }


def record_from_dict(d: Dict[str, Any]) -> QuestionRecord:
    if d.get("grid") is not None:
        return grid_record(grid_from_dict(d["grid"]), d.get("index", 0))
    return QuestionRecord(
        id=d["id"],
        raw_body=d.get("raw_body"),
        directives=directives_from_dict(d.get("directives")),
        index=d.get("index", 0),
    )


def loop_descriptor_to_dict(l: LoopDescriptor) -> Dict[str, Any]:
    return {
        "loop_index": l.loop_index,
        "location_index": l.location_index,
        "bound_source_id": l.bound_source_id,
        "hard_max": l.hard_max,
        "current_bound": l.current_bound,
        "first_question_base_id": l.first_question_base_id,
    }


def loop_descriptor_from_dict(d: Dict[str, Any]) -> LoopDescriptor:
    return LoopDescriptor(
        loop_index=d["loop_index"],
        location_index=d["location_index"],
        bound_source_id=d.get("bound_source_id"),
        hard_max=d["hard_max"],
        current_bound=d.get("current_bound"),
        first_question_base_id=d.get("first_question_base_id", ""),
    )


def survey_to_dict(s: SurveyCompiler) -> Dict[str, Any]:
    return {
        "name": s.name,
        "records": [record_to_dict(r) for r in s.records],
        # JSON object keys are strings
        "loop_max": {str(k): v for k, v in s.loop_max.items()},
        "loops": [loop_descriptor_to_dict(l) for l in s.loops.values()],
        "dropped": list(s.dropped),
    }


def survey_from_dict(d: Dict[str, Any]) -> ParsedDefinition:
    """A ParsedDefinition; pass it to SurveyCompiler(parsed=...) to use it."""
    loops = [loop_descriptor_from_dict(l) for l in d.get("loops", [])]
    return ParsedDefinition(
        name=d.get("name", ""),
        records=[record_from_dict(r) for r in d.get("records", [])],
        loop_max={int(k): v for k, v in d.get("loop_max", {}).items()},
        dropped=list(d.get("dropped", [])),
        loops={l.loop_index: l for l in loops},
    )


def survey_to_json(s: SurveyCompiler) -> str:
    return json.dumps(survey_to_dict(s), sort_keys=True)


def survey_from_json(s: str) -> ParsedDefinition:
    d = json.loads(s)
    return survey_from_dict(d)


def survey_to_yaml(s: SurveyCompiler) -> str:
    return yaml.safe_dump(survey_to_dict(s))


def survey_from_yaml(s: str) -> ParsedDefinition:
    d = yaml.safe_load(s)
    return survey_from_dict(d)
