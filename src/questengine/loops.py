"""
Loop Expansion

Rewrites every <loop max=N> ... </loop> block of a survey definition into
N concrete copies before the text is segmented into questions.

For iteration i of loop n:
    - question ids declared in the body become ID_i_i
    - field ids (id=X, |___|X|, textbox:X) become X_i_i
    - named radio/checkbox groups (v:name) become name_i
    - {##} becomes the ordinal of i ("1st", "2nd", ...)
    - #loop becomes i
    - _a_b#prev references become _{i-1}_{i-1}
    - "-> _CONTINUE" is retargeted to the loop's own marker

Each iteration ends with a continuation marker _CONTINUEn_i_i whose
displayif is always false; navigation resolves it to the next iteration
or past the loop. After the last iteration come _CONTINUEn_DONE and the
END_OF_LOOP placeholder.

The first question of the body is annotated with
"loopindx=n firstquestion=i loopmax=BOUND" so the compiler can build the
loop's LoopDescriptor when that record is materialized.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LOOP_BLOCK = re.compile(r"<loop max=(\d+)\s*>(.*?)</loop>", re.DOTALL)
QUESTION_HEADER = re.compile(r"\[([A-Z_][A-Z0-9_#]*)([?!]?)(?:\|([^|\]]+)\|)?(,.*?)?\]")
FIELD_ID = re.compile(r"\|[\w\s=]*id=(\w+)|___\|\s*(\w+)|text\s?box:\s*(\w+)")
NAMED_GROUP = re.compile(r"([(\[])(\d+):(.*?)([,)\]])")
BOUND_FROM_DISPLAYIF = re.compile(r"displayif=greaterThanOrEqual\(([A-Za-z_][A-Za-z0-9_]*),#loop\)")
PREVIOUS_ITERATION = re.compile(r"_\d+_\d+#prev")
CONTINUE_TARGET = re.compile(r"->\s*_CONTINUE\b")


def ordinal(number: int, language: str = "en") -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th'; Spanish uses '1o'."""
    if language == "es":
        return f"{number}o"
    if number % 100 in (11, 12, 13):
        return f"{number}th"
    return f"{number}" + {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")


def unroll_loops(text: str, language: str = "en") -> Tuple[str, Dict[int, int]]:
    """
    Expand every loop block in a definition.

    Args:
        text: Definition text with comments already removed
        language: Language used for {##} ordinals

    Returns:
        (expanded text, {loop index: max iterations})
    """
    hard_max: Dict[int, int] = {}

    def expand(match: "re.Match") -> str:
        loop_index = len(hard_max) + 1
        count = int(match.group(1))
        hard_max[loop_index] = count
        logger.debug("Unrolling loop %d (max=%d)", loop_index, count)
        return _expand_loop(loop_index, count, match.group(2), language)

    return LOOP_BLOCK.sub(expand, text), hard_max


def _annotate_first_question(body: str, loop_index: int) -> str:
    match = QUESTION_HEADER.search(body)
    if match is None:
        logger.warning("Loop %d has no question boundary", loop_index)
        return body

    question_id, operator, opts, args = match.groups()
    bound = BOUND_FROM_DISPLAYIF.search(body)
    bound_text = f" loopmax={bound.group(1)}" if bound else ""

    if not opts or "firstquestion" not in opts:
        opts = (opts.strip() + " " if opts else "") + f"firstquestion=#loop{bound_text}"
    elif bound_text and "loopmax" not in opts:
        opts = opts.strip() + bound_text
    opts = opts.replace("firstquestion", f"loopindx={loop_index} firstquestion", 1)

    header = f"[{question_id}{operator or ''}|{opts}|{args or ''}]"
    return body[:match.start()] + header + body[match.end():]


def _declared_ids(body: str) -> Tuple[List[str], List[str]]:
    question_ids: List[str] = []
    for match in QUESTION_HEADER.finditer(body):
        if match.group(1) not in question_ids:
            question_ids.append(match.group(1))

    field_ids: List[str] = []
    for match in FIELD_ID.finditer(body):
        value = match.group(1) or match.group(2) or match.group(3)
        if value not in field_ids and value not in question_ids:
            field_ids.append(value)
    return question_ids, field_ids


def _expand_loop(loop_index: int, count: int, body: str, language: str) -> str:
    body = _annotate_first_question(body, loop_index)
    body += f"[_CONTINUE{loop_index},displayif=setFalse(-1,#loop)]"
    body = CONTINUE_TARGET.sub(f"-> _CONTINUE{loop_index}", body)

    question_ids, field_ids = _declared_ids(body)
    id_patterns = [
        (re.compile(r"\b" + re.escape(qid) + r"\b(?!#)"), qid) for qid in question_ids
    ] + [
        (re.compile(r"\b" + re.escape(fid) + r"\b"), fid) for fid in field_ids
    ]

    copies = []
    for i in range(1, count + 1):
        current = body
        for pattern, original in id_patterns:
            current = pattern.sub(f"{original}_{i}_{i}", current)
        current = NAMED_GROUP.sub(
            lambda m: f"{m.group(1)}{m.group(2)}:{m.group(3)}_{i}{m.group(4)}", current
        )
        current = current.replace("{##}", ordinal(i, language))
        current = current.replace("#loop", str(i))
        current = PREVIOUS_ITERATION.sub(f"_{i - 1}_{i - 1}", current)
        copies.append(current)

    text = "\n" + "\n".join(copies)
    text += f"[_CONTINUE{loop_index}_DONE,displayif=setFalse(-1,#loop)]"
    text += "[END_OF_LOOP] placeholder"
    return text


def loop_bound_source(options: Dict[str, str]) -> Optional[str]:
    """Bound-source question id from a first-question record's options."""
    value = (options.get("loopmax") or "").strip()
    return value if re.fullmatch(r"\w+", value) else None


__all__ = [
    "ordinal",
    "unroll_loops",
    "loop_bound_source",
]
