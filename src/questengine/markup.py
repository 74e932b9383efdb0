"""
Question Markup (body text -> markup AST -> HTML)

A question body is compiled in two separate passes:

    1. parse_markup()   recursive-descent parser, body text -> tuple of nodes
    2. render_markup()  nodes -> HTML string

and a third, read-only walk:

    3. inventory()      nodes -> answerable fields, skip options, hidden ids

The parser is cursor based. At each position the rules for the current
character are tried in order; the first anchored match produces a node
and moves the cursor past it. Anything no rule claims is plain text.

Element ids are deterministic: "{questionId}_{suffix}" for inputs
(num, txt, text, ta, email, date, month, time, tel, SSN, SSNsm, zip,
state), "{name}_{value}" for radio/checkbox options, and
"{questionId}_skipto_{T}" / "{questionId}_NR" for hidden skips.

IMPORTANT:
    Nodes are structure only. Rendering never evaluates display
    conditions; they are emitted URI-encoded for display time. The only
    evaluation done while rendering is the numeric min/max hint of number
    inputs.
"""

import html
import logging
import re
from abc import ABC
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from questengine.functions import looks_numeric
from questengine.model import CompiledQuestion, FieldSpec, SkipOption, END_ID

logger = logging.getLogger(__name__)

DEFAULT_LABELS = {
    "yes": "Yes",
    "no": "No",
    "prefer_not_to_answer": "Prefer not to answer",
    "next": "Next",
    "back": "Back",
    "reset": "Reset answer",
    "submit": "Submit Survey",
    "enter_value": "Enter a value",
    "example": "Example",
    "choose_state": "Choose a state",
}

STATES = [
    ("AL", "Alabama"), ("AK", "Alaska"), ("AZ", "Arizona"), ("AR", "Arkansas"),
    ("CA", "California"), ("CO", "Colorado"), ("CT", "Connecticut"), ("DE", "Delaware"),
    ("DC", "District Of Columbia"), ("FL", "Florida"), ("GA", "Georgia"), ("HI", "Hawaii"),
    ("ID", "Idaho"), ("IL", "Illinois"), ("IN", "Indiana"), ("IA", "Iowa"),
    ("KS", "Kansas"), ("KY", "Kentucky"), ("LA", "Louisiana"), ("ME", "Maine"),
    ("MD", "Maryland"), ("MA", "Massachusetts"), ("MI", "Michigan"), ("MN", "Minnesota"),
    ("MS", "Mississippi"), ("MO", "Missouri"), ("MT", "Montana"), ("NE", "Nebraska"),
    ("NV", "Nevada"), ("NH", "New Hampshire"), ("NJ", "New Jersey"), ("NM", "New Mexico"),
    ("NY", "New York"), ("NC", "North Carolina"), ("ND", "North Dakota"), ("OH", "Ohio"),
    ("OK", "Oklahoma"), ("OR", "Oregon"), ("PA", "Pennsylvania"), ("RI", "Rhode Island"),
    ("SC", "South Carolina"), ("SD", "South Dakota"), ("TN", "Tennessee"), ("TX", "Texas"),
    ("UT", "Utah"), ("VT", "Vermont"), ("VA", "Virginia"), ("WA", "Washington"),
    ("WV", "West Virginia"), ("WI", "Wisconsin"), ("WY", "Wyoming"),
]


# =============================================================================
# Nodes
# =============================================================================

class MarkupNode(ABC):
    """Base class for markup AST nodes. Structure only."""
    pass


@dataclass(frozen=True)
class Text(MarkupNode):
    text: str


@dataclass(frozen=True)
class LineBreak(MarkupNode):
    pass


@dataclass(frozen=True)
class ContextValue(MarkupNode):
    """
    A value known when the session starts.

    name is a context key (current_year, quest_format_date, ...) or a
    {$u:var} user variable; offset is the day offset of #today+N.
    """
    name: str
    offset: int = 0
    user: bool = False


@dataclass(frozen=True)
class ForIdSpan(MarkupNode):
    """{$id} / {$id:default}: echo of a stored response, filled at display time."""
    for_id: str
    default: str = ""


@dataclass(frozen=True)
class ComputedSpan(MarkupNode):
    """{#expr}: expression evaluated at display time."""
    expression: str


@dataclass(frozen=True)
class DisplayIf(MarkupNode):
    """Content shown only while condition holds; block renders a div."""
    condition: str
    children: Tuple[MarkupNode, ...] = ()
    block: bool = False


@dataclass(frozen=True)
class DisplayList(MarkupNode):
    args: str
    block: bool = False


@dataclass(frozen=True)
class Popover(MarkupNode):
    button: str
    title: str
    text: str


@dataclass(frozen=True)
class Image(MarkupNode):
    url: str
    height: str = ""
    width: str = ""


@dataclass(frozen=True)
class ChoiceOption(MarkupNode):
    """
    One radio or checkbox option.

    Properties:
        kind: "radio" or "checkbox"
        value: Option value
        name: Group name (response key); defaults to the question id
        element_id: "{name}_{value}" unless overridden (#YN uses _1/_0/_99)
        label_id: Label element id
        condition: Raw displayif condition text, if any
        exclusive: "*" checkbox that clears the rest of its group
        label: Parsed label content
        skip_to: "-> T" target
    """
    kind: str
    value: str
    name: str
    element_id: str
    label_id: str
    condition: Optional[str] = None
    exclusive: bool = False
    label: Tuple[MarkupNode, ...] = ()
    skip_to: Optional[str] = None


@dataclass(frozen=True)
class InputField(MarkupNode):
    """
    A free-entry input.

    attrs keeps the author's key=value options in order; min/max of number
    inputs are kept raw and hinted at render time.
    """
    kind: str
    element_id: str
    name: str
    attrs: Tuple[Tuple[str, str], ...] = ()
    skip_to: Optional[str] = None

    def attr(self, key: str) -> Optional[str]:
        for k, v in self.attrs:
            if k == key:
                return v
        return None


@dataclass(frozen=True)
class HiddenValue(MarkupNode):
    element_id: str


@dataclass(frozen=True)
class SkipDirective(MarkupNode):
    """< |if=c| -> T > (conditional) or < #NR -> T > (no response)."""
    target: str
    element_id: str
    condition: Optional[str] = None
    no_response: bool = False


# =============================================================================
# Parser
# =============================================================================

_USER_VALUE = re.compile(r"\{\$u:(\w+)\}")
_FOR_ID = re.compile(r"""\{\$(\w+(?:\.\w+)?):?([a-zA-Z0-9 ,.!?"-]*)\}""")
_COMPUTED = re.compile(r"\{#([^}#]+)\}")
_CONTEXT_TAG = re.compile(r"#(currentMonthStr|currentMonth|currentYear|today)(?:(\s*[+-]\s*\d+))?")
_YES_NO = re.compile(r"#YNP?")
_NESTED_DISPLAYIF = re.compile(r"!\|displayif=(.+?)\|(.*?)\|!", re.DOTALL)
_DISPLAYIF = re.compile(r"\|displayif=(.+?)(:)?\|(.*?)\|", re.DOTALL)
_DISPLAY_LIST = re.compile(r"\|(displayList\(.+?\))\s*(:)?\|")
_POPUP = re.compile(r"\|popup\|([^|]+)\|(?:([^|]+)\|)?([^|]+)\|")
_HIDDEN = re.compile(r"\|hidden\|\s*id\s*=\s*([^|]+)\|?")
_IMAGE = re.compile(r"\|image\|(.*?)\|(?:([0-9]+),([0-9]+)\|)?")
_TYPED_INPUT = re.compile(r"\|(@|date|month|time|tel|SSNsm|SSN|zip|state)\|(?:([^|<]+[^|]+)\|)?")
_NUMBER = re.compile(r"\|(?:__\|){2,}(?:([^|<]+[^|]+)\|)?")
_TEXTAREA = re.compile(r"\|___\|(?:(\w+)\|)?")
_TEXT = re.compile(r"\|__\|(?:([^\s<][^|<]+[^\s<])\|)?")
_TEXT_BOX = re.compile(r"\[text\s?box(?:\s*:\s*(\w+))?\]")
_CHECKBOX = re.compile(
    r"\[(\d*)(\*)?(?::(\w+))?(?:\|(\w+))?(?:,(displayif\s*=\s*.+?\)\s*)?)?\][ \t]*(.*?)[ \t]*(?=\[\d|\n|$)"
)
_RADIO = re.compile(r"\((\d+)(?::(\w+))?(?:\|(\w+))?(,displayif=)?")
_RADIO_CLOSE = re.compile(r"\s*\)")
_IF_SKIP = re.compile(r"<\s*(?:\|if\s*=\s*([^|]+)\|)?\s*->\s*([A-Z_][A-Z0-9_#]*)\s*>")
_NR_SKIP = re.compile(r"<\s*#NR\s*->\s*([A-Z_][A-Z0-9_#]*)\s*>")
_TRAILING_SKIP = re.compile(r"[ \t]*->[ \t]*([A-Z_][A-Z0-9_#]*)")
_LABEL_SKIP = re.compile(r"\s*->\s*([A-Z_][A-Z0-9_#]*)\s*")
_OPTION = re.compile(r"([\w-]+)=(\s?.+?)\s*(?=[\w-]+=|$)")
_ELEMENT_ID = re.compile(r"id=([^\s]+)")

_INPUT_SUFFIX = {
    "@": ("email", "email"),
    "date": ("date", "date"),
    "month": ("month", "month"),
    "time": ("time", "time"),
    "tel": ("tel", "tel"),
    "SSN": ("SSN", "SSN"),
    "SSNsm": ("SSNsm", "SSNsm"),
    "zip": ("zip", "zip"),
    "state": ("state", "state"),
}

_TRIGGERS = set("{#!|[(<")


def split_options(text: Optional[str]) -> List[Tuple[str, str]]:
    """'id=X min=0 max=valueOrDefault("A", 5)' -> [(key, value), ...]"""
    if not text:
        return []
    return [(m.group(1), m.group(2).strip()) for m in _OPTION.finditer(text.strip())]


def prepare_body(text: str) -> str:
    """Normalize newlines, drop [_#] markers and number bare [] checkboxes."""
    text = text.replace("\u001f", "\n").replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("[_#]", "")
    counter = iter(range(1, text.count("[]") + 1))
    return re.sub(r"\[\]", lambda m: f"[{next(counter)}]", text)


class MarkupParser:
    """
    Recursive-descent parser for one question body.

    Args:
        question_id: Id of the question being parsed (default names/ids)
    """

    def __init__(self, question_id: str):
        self.question_id = question_id
        self._rules: List[Callable[[str, int], Optional[Tuple[List[MarkupNode], int]]]] = [
            self._user_value,
            self._for_id,
            self._computed,
            self._yes_no,
            self._context_tag,
            self._nested_displayif,
            self._displayif,
            self._display_list,
            self._popup,
            self._hidden,
            self._image,
            self._typed_input,
            self._number,
            self._textarea,
            self._text_input,
            self._text_box,
            self._checkbox,
            self._radio,
            self._nr_skip,
            self._if_skip,
        ]

    def parse(self, text: str) -> Tuple[MarkupNode, ...]:
        return self._parse(prepare_body(text))

    def _parse(self, text: str) -> Tuple[MarkupNode, ...]:
        nodes: List[MarkupNode] = []
        buffer: List[str] = []
        pos = 0

        def flush():
            if buffer:
                nodes.append(Text("".join(buffer)))
                buffer.clear()

        while pos < len(text):
            char = text[pos]
            if char in _TRIGGERS:
                for rule in self._rules:
                    result = rule(text, pos)
                    if result is not None:
                        flush()
                        produced, pos = result
                        nodes.extend(produced)
                        break
                else:
                    buffer.append(char)
                    pos += 1
                continue
            if char == "\n":
                flush()
                nodes.append(LineBreak())
            else:
                buffer.append(char)
            pos += 1

        flush()
        return tuple(nodes)

    # -- inline values -------------------------------------------------------

    def _user_value(self, text, pos):
        m = _USER_VALUE.match(text, pos)
        if m:
            return [ContextValue(m.group(1), user=True)], m.end()
        return None

    def _for_id(self, text, pos):
        m = _FOR_ID.match(text, pos)
        if m:
            return [ForIdSpan(m.group(1), m.group(2) or "")], m.end()
        return None

    def _computed(self, text, pos):
        m = _COMPUTED.match(text, pos)
        if m:
            return [ComputedSpan(m.group(1))], m.end()
        return None

    def _context_tag(self, text, pos):
        m = _CONTEXT_TAG.match(text, pos)
        if m is None:
            return None
        names = {
            "currentMonthStr": "current_month_str",
            "currentMonth": "current_month",
            "currentYear": "current_year",
            "today": "quest_format_date",
        }
        offset = int(re.sub(r"\s", "", m.group(2))) if m.group(2) else 0
        return [ContextValue(names[m.group(1)], offset=offset)], m.end()

    def _yes_no(self, text, pos):
        m = _YES_NO.match(text, pos)
        if m is None:
            return None
        qid = self.question_id
        choices = [("yes", "1", "yes"), ("no", "0", "no")]
        if m.group() == "#YNP":
            choices.append(("prefer not to answer", "99", "prefer_not_to_answer"))
        nodes = [
            ChoiceOption(
                kind="radio",
                value=value,
                name=qid,
                element_id=f"{qid}_{suffix}",
                label_id=f"{qid}_{suffix}_label",
                label=(Text(DEFAULT_LABELS[label]),),
            )
            for value, suffix, label in choices
        ]
        return nodes, m.end()

    # -- display control ---------------------------------------------------

    def _nested_displayif(self, text, pos):
        m = _NESTED_DISPLAYIF.match(text, pos)
        if m:
            return [DisplayIf(m.group(1).strip(), self._parse(m.group(2)))], m.end()
        return None

    def _displayif(self, text, pos):
        m = _DISPLAYIF.match(text, pos)
        if m:
            return [DisplayIf(m.group(1).strip(), self._parse(m.group(3)), bool(m.group(2)))], m.end()
        return None

    def _display_list(self, text, pos):
        m = _DISPLAY_LIST.match(text, pos)
        if m:
            return [DisplayList(m.group(1), bool(m.group(2)))], m.end()
        return None

    def _popup(self, text, pos):
        m = _POPUP.match(text, pos)
        if m:
            return [Popover(m.group(1), m.group(2) or "", m.group(3))], m.end()
        return None

    def _image(self, text, pos):
        m = _IMAGE.match(text, pos)
        if m:
            return [Image(m.group(1), m.group(2) or "", m.group(3) or "")], m.end()
        return None

    # -- inputs --------------------------------------------------------------

    def _input(self, kind: str, suffix: str, opts: Optional[str], text: str, end: int,
               default_id: Optional[str] = None):
        attrs = split_options(opts)
        element_id = next((v for k, v in attrs if k == "id"), None)
        if element_id is None:
            id_match = _ELEMENT_ID.search(opts or "")
            element_id = id_match.group(1) if id_match else (default_id or f"{self.question_id}_{suffix}")
        attrs = tuple((k, v) for k, v in attrs if k != "id")

        skip_to = None
        skip = _TRAILING_SKIP.match(text, end)
        if skip:
            skip_to = skip.group(1)
            end = skip.end()
        return [InputField(kind, element_id, self.question_id, attrs, skip_to)], end

    def _hidden(self, text, pos):
        m = _HIDDEN.match(text, pos)
        if m:
            return [HiddenValue(m.group(1).strip())], m.end()
        return None

    def _typed_input(self, text, pos):
        m = _TYPED_INPUT.match(text, pos)
        if m is None:
            return None
        kind, suffix = _INPUT_SUFFIX[m.group(1)]
        return self._input(kind, suffix, m.group(2), text, m.end())

    def _number(self, text, pos):
        m = _NUMBER.match(text, pos)
        if m:
            return self._input("number", "num", m.group(1), text, m.end())
        return None

    def _textarea(self, text, pos):
        m = _TEXTAREA.match(text, pos)
        if m is None:
            return None
        element_id = m.group(1) or f"{self.question_id}_ta"
        return self._input("textarea", "ta", f"id={element_id}", text, m.end())

    def _text_input(self, text, pos):
        m = _TEXT.match(text, pos)
        if m:
            return self._input("text", "txt", m.group(1), text, m.end())
        return None

    def _text_box(self, text, pos):
        m = _TEXT_BOX.match(text, pos)
        if m:
            return self._input("text", "text", None, text, m.end(),
                               default_id=m.group(1) or f"{self.question_id}_text")
        return None

    # -- choices -------------------------------------------------------------

    def _label(self, raw: str) -> Tuple[Tuple[MarkupNode, ...], Optional[str]]:
        skip_to = None
        skip = _LABEL_SKIP.search(raw)
        if skip:
            skip_to = skip.group(1)
            raw = raw[:skip.start()] + " " + raw[skip.end():]
        return self._parse(raw.strip()), skip_to

    def _checkbox(self, text, pos):
        m = _CHECKBOX.match(text, pos)
        if m is None:
            return None
        value, star, name, label_id, condition, label_text = m.groups()
        name = name or self.question_id
        if condition:
            condition = condition.strip()
            condition = condition[condition.index("=") + 1:].strip()
        label, skip_to = self._label(label_text)
        option = ChoiceOption(
            kind="checkbox",
            value=value,
            name=name,
            element_id=f"{name}_{value}",
            label_id=label_id or f"{name}_{value}_label",
            condition=condition or None,
            exclusive=bool(star),
            label=label,
            skip_to=skip_to,
        )
        return [option], m.end()

    def _radio(self, text, pos):
        m = _RADIO.match(text, pos)
        if m is None:
            return None
        value, name, label_id, has_condition = m.groups()
        name = name or self.question_id

        condition = None
        if has_condition:
            # The condition may hold nested parentheses: find the close that
            # balances the option's opening "(" on the same line.
            depth = 0
            end = pos
            for i in range(pos, len(text)):
                char = text[i]
                if char == "\n":
                    break
                if char == "(":
                    depth += 1
                elif char == ")":
                    depth -= 1
                end = i + 1
                if depth == 0:
                    break
            if depth != 0:
                return None
            condition = text[m.end():end - 1].strip()
        else:
            close = _RADIO_CLOSE.match(text, m.end())
            if close is None:
                return None
            end = close.end()

        label_end = text.find("\n", end)
        if label_end == -1:
            label_end = len(text)
        label, skip_to = self._label(text[end:label_end])
        option = ChoiceOption(
            kind="radio",
            value=value,
            name=name,
            element_id=f"{name}_{value}",
            label_id=label_id or f"{name}_{value}_label",
            condition=condition or None,
            label=label,
            skip_to=skip_to,
        )
        return [option], label_end

    # -- skips ---------------------------------------------------------------

    def _if_skip(self, text, pos):
        m = _IF_SKIP.match(text, pos)
        if m is None:
            return None
        target = m.group(2)
        return [SkipDirective(
            target=target,
            element_id=f"{self.question_id}_skipto_{target}",
            condition=m.group(1).strip() if m.group(1) else None,
        )], m.end()

    def _nr_skip(self, text, pos):
        m = _NR_SKIP.match(text, pos)
        if m is None:
            return None
        return [SkipDirective(
            target=m.group(1),
            element_id=f"{self.question_id}_NR",
            no_response=True,
        )], m.end()


def parse_markup(question_id: str, text: str) -> Tuple[MarkupNode, ...]:
    """Parse a question body into markup nodes."""
    return MarkupParser(question_id).parse(text or "")


# =============================================================================
# Renderer
# =============================================================================

def _attr(value: Any) -> str:
    return html.escape(str(value), quote=True)


def _encoded(condition: str) -> str:
    return quote(condition, safe="")


def quest_format_date(day: date) -> str:
    """Dates as the survey language writes them: 2024-3-7 (no padding)."""
    return f"{day.year}-{day.month}-{day.day}"


class MarkupRenderer:
    """
    Renders markup nodes to an HTML string.

    Args:
        question_id: Question being rendered
        context: Precalculated context values (current_date, current_year, ...)
        evaluate: Expression evaluator used for number min/max hints
        labels: UI strings (defaults to DEFAULT_LABELS)
    """

    def __init__(
        self,
        question_id: str,
        context: Optional[Dict[str, Any]] = None,
        evaluate: Optional[Callable[[str], Any]] = None,
        labels: Optional[Dict[str, Any]] = None,
    ):
        self.question_id = question_id
        self.context = context or {}
        self.evaluate = evaluate
        self.labels = dict(DEFAULT_LABELS, **(labels or {}))

    def render(self, nodes: Tuple[MarkupNode, ...]) -> str:
        return "".join(self.render_node(node) for node in nodes)

    def render_node(self, node: MarkupNode) -> str:
        if isinstance(node, Text):
            return node.text
        if isinstance(node, LineBreak):
            return "<br>\n"
        if isinstance(node, ContextValue):
            return self._context_value(node)
        if isinstance(node, ForIdSpan):
            optional = f" optional='{_encoded(node.default)}'" if node.default else ""
            return f"<span forId='{_attr(node.for_id)}'{optional}>{node.for_id}</span>"
        if isinstance(node, ComputedSpan):
            return f"<span data-encoded-expression={_encoded(node.expression)}>{node.expression}</span>"
        if isinstance(node, DisplayIf):
            tag = "div" if node.block else "span"
            return (f"<{tag} class='displayif' displayif='{_encoded(node.condition)}'>"
                    f"{self.render(node.children)}</{tag}>")
        if isinstance(node, DisplayList):
            tag = "div" if node.block else "span"
            args = node.args.replace("'", '"')
            return f"<{tag} class='displayList' data-displayList-args='{_attr(args)}'>{args}</{tag}>"
        if isinstance(node, Popover):
            return (f"<a tabindex='0' class='popover-dismiss btn' role='button' title='{_attr(node.title)}'"
                    f" data-bs-toggle='popover' data-bs-trigger='focus'"
                    f" data-bs-content='{_attr(node.text)}'>{node.button}</a>")
        if isinstance(node, Image):
            size = f" height={node.height} width={node.width}" if node.height else ""
            return f"<img src='https://{_attr(node.url)}'{size} loading='lazy'>"
        if isinstance(node, ChoiceOption):
            return self._choice(node)
        if isinstance(node, InputField):
            return self._input(node)
        if isinstance(node, HiddenValue):
            return f"<input type='text' data-hidden=true id='{_attr(node.element_id)}'>"
        if isinstance(node, SkipDirective):
            if node.no_response:
                return (f"<input type='hidden' class='noresponse' id='{_attr(node.element_id)}'"
                        f" name='{_attr(self.question_id)}' skipTo='{_attr(node.target)}' checked>")
            condition = f" if='{_encoded(node.condition)}'" if node.condition else ""
            return (f"<input type='hidden'{condition} id='{_attr(node.element_id)}'"
                    f" name='{_attr(self.question_id)}' skipTo='{_attr(node.target)}' checked>")
        raise TypeError(f"Unknown markup node: {type(node).__name__}")

    def _context_value(self, node: ContextValue) -> str:
        if node.user:
            value = self.context.get(node.name, "")
            return f"<span name='{_attr(node.name)}'>{html.escape(str(value))}</span>"
        if node.name == "quest_format_date" and node.offset:
            current = self.context.get("current_date")
            if not isinstance(current, date):
                return ""
            return quest_format_date(current + timedelta(days=node.offset))
        return str(self.context.get(node.name, ""))

    def _choice(self, node: ChoiceOption) -> str:
        displayif = f" displayif='{_encoded(node.condition)}'" if node.condition else ""
        reset = " data-reset=true" if node.exclusive else ""
        skip = f" skipTo='{_attr(node.skip_to)}'" if node.skip_to else ""
        return (
            f"<div class='response'{displayif}>"
            f"<input type='{node.kind}' name='{_attr(node.name)}' value='{_attr(node.value)}'"
            f" id='{_attr(node.element_id)}'{reset}{skip}></input>"
            f"<label id='{_attr(node.label_id)}' for='{_attr(node.element_id)}'>{self.render(node.label)}</label>"
            f"</div>"
        )

    def _bound_hint(self, value: Optional[str]) -> str:
        """Number min/max as a number, evaluating expressions when possible."""
        if not value or value == "0" or value.startswith("valueOr") or "isDefined" in value:
            return ""
        if looks_numeric(value):
            return value
        if self.evaluate is None:
            return ""
        result = self.evaluate(value)
        return str(result) if looks_numeric(result) else ""

    def _input(self, node: InputField) -> str:
        element_id = _attr(node.element_id)
        extra = "".join(f" {_attr(k)}='{_attr(v)}'" for k, v in node.attrs)
        skip = f" skipTo='{_attr(node.skip_to)}'" if node.skip_to else ""

        if node.kind == "number":
            minimum = self._bound_hint(node.attr("min"))
            maximum = self._bound_hint(node.attr("max"))
            placeholder = self.labels["enter_value"]
            if minimum and maximum and float(maximum) <= 100:
                average = (int(float(minimum)) + int(float(maximum))) // 2
                placeholder = f"{self.labels['example']}: {average}"
            hints = ""
            if node.attr("min") is not None:
                hints += f" data-min='{_attr(node.attr('min'))}'"
            if node.attr("max") is not None:
                hints += f" data-max='{_attr(node.attr('max'))}'"
            return (f"<input type='number' step='any' name='{_attr(node.name)}' id='{element_id}'"
                    f"{extra}{hints}{skip} placeholder='{_attr(placeholder)}'>")
        if node.kind == "textarea":
            return (f"<textarea id='{element_id}' name='{element_id}'{skip}"
                    f" aria-label='Enter your response'></textarea>")
        if node.kind == "state":
            options = "".join(f"<option value='{code}'>{name}</option>" for code, name in STATES)
            return (f"<select id='{element_id}'{extra}><option value='' disabled selected>"
                    f"{self.labels['choose_state']}: </option>{options}</select>")
        input_type = {"SSN": "text", "SSNsm": "text", "zip": "text"}.get(node.kind, node.kind)
        css = f" class='{node.kind.lower()}'" if node.kind in ("SSN", "SSNsm", "zip") else ""
        return f"<input type='{input_type}' name='{_attr(node.name)}' id='{element_id}'{css}{extra}{skip}>"


def render_markup(question_id: str, nodes: Tuple[MarkupNode, ...], **kwargs) -> str:
    return MarkupRenderer(question_id, **kwargs).render(nodes)


def button_div(question_id: str, has_input: bool, end: bool = False, noback: bool = False,
               is_first: bool = False, is_last: bool = False,
               labels: Optional[Dict[str, Any]] = None) -> str:
    """Back/Reset/Next (or Submit) controls for a question form."""
    labels = dict(DEFAULT_LABELS, **(labels or {}))
    parts = []
    if not (noback or is_first):
        parts.append(f"<button type='submit' class='previous' data-click-type='previous'>{labels['back']}</button>")
    if question_id == END_ID:
        parts.append(f"<button type='submit' class='reset' id='submitButton'"
                     f" data-click-type='submitSurvey'>{labels['submit']}</button>")
    elif has_input:
        parts.append(f"<button type='submit' class='reset' data-click-type='reset'>{labels['reset']}</button>")
    if not (end or is_last):
        parts.append(f"<button type='submit' class='next' data-click-type='next'>{labels['next']}</button>")
    return f"<div class='py-0'>{''.join(parts)}</div>"


# =============================================================================
# Inventory
# =============================================================================

def walk(nodes: Tuple[MarkupNode, ...]):
    """Every node, depth first (display-if children and option labels included)."""
    for node in nodes:
        yield node
        if isinstance(node, DisplayIf):
            yield from walk(node.children)
        elif isinstance(node, ChoiceOption):
            yield from walk(node.label)


def inventory(nodes: Tuple[MarkupNode, ...]):
    """
    Collect the answerable fields of a parsed question.

    Returns:
        (fields, skips, hidden_ids, exclusive_values)
    """
    fields: Dict[str, FieldSpec] = {}
    skips: List[SkipOption] = []
    hidden_ids: List[str] = []
    exclusive: Dict[str, List[str]] = {}

    for node in walk(nodes):
        if isinstance(node, ChoiceOption):
            field_spec = fields.setdefault(node.name, FieldSpec(key=node.name, kind=node.kind))
            field_spec.element_ids.append(node.element_id)
            if node.exclusive:
                exclusive.setdefault(node.name, []).append(node.value)
            if node.skip_to:
                skips.append(SkipOption(target=node.skip_to, key=node.name, value=node.value))
        elif isinstance(node, InputField):
            fields.setdefault(node.element_id, FieldSpec(
                key=node.element_id,
                kind=node.kind,
                element_ids=[node.element_id],
                xor=node.attr("xor"),
            ))
            if node.skip_to:
                skips.append(SkipOption(target=node.skip_to, key=node.element_id))
        elif isinstance(node, HiddenValue):
            hidden_ids.append(node.element_id)
        elif isinstance(node, SkipDirective):
            skips.append(SkipOption(
                target=node.target,
                condition=_encoded(node.condition) if node.condition else None,
                no_response=node.no_response,
                hidden=True,
            ))
    return list(fields.values()), skips, hidden_ids, exclusive


def compile_question(
    question_id: str,
    body: str,
    attributes: str = "",
    end: bool = False,
    noback: bool = False,
    hard: bool = False,
    soft: bool = False,
    is_first: bool = False,
    is_last: bool = False,
    context: Optional[Dict[str, Any]] = None,
    evaluate: Optional[Callable[[str], Any]] = None,
    labels: Optional[Dict[str, Any]] = None,
) -> CompiledQuestion:
    """
    Parse, render and inventory one question body.

    Args:
        attributes: Extra form attributes (options, encoded displayif)
    """
    nodes = parse_markup(question_id, body)
    fields, skips, hidden_ids, exclusive = inventory(nodes)
    body_html = render_markup(question_id, nodes, context=context, evaluate=evaluate, labels=labels)
    buttons = button_div(question_id, bool(fields), end=end, noback=noback,
                         is_first=is_first, is_last=is_last, labels=labels)
    form = (
        f"<form class='question' id='{_attr(question_id)}'{(' ' + attributes) if attributes else ''}"
        f" novalidate hardEdit='{str(hard).lower()}' softEdit='{str(soft).lower()}'>"
        f"<fieldset>{body_html}</fieldset>{buttons}</form>"
    )
    logger.debug("Compiled %s: %d field(s), %d skip(s)", question_id, len(fields), len(skips))
    return CompiledQuestion(
        html=form,
        fields=fields,
        skips=skips,
        hidden_ids=hidden_ids,
        exclusive_values=exclusive,
        document=nodes,
    )


__all__ = [
    "MarkupNode",
    "Text",
    "LineBreak",
    "ContextValue",
    "ForIdSpan",
    "ComputedSpan",
    "DisplayIf",
    "DisplayList",
    "Popover",
    "Image",
    "ChoiceOption",
    "InputField",
    "HiddenValue",
    "SkipDirective",
    "MarkupParser",
    "MarkupRenderer",
    "parse_markup",
    "render_markup",
    "button_div",
    "inventory",
    "compile_question",
    "split_options",
    "quest_format_date",
    "DEFAULT_LABELS",
]
