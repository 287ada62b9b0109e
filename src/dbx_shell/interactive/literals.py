import base64
import copy
import datetime
import functools
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Type, Union

import structlog
from bson import Binary, Decimal128, ObjectId, Timestamp
from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError
from rich.console import Console
from rich.markup import escape

from ..utils import get_pkg_root

console = Console()
logger = structlog.get_logger(__name__)


@dataclass
class Step:
    """One link of a call chain: `.find({...})`, `.users` or `["my-coll"]`."""

    name: str
    args: List[Any] = field(default_factory=list)
    is_call: bool = False


@dataclass
class MongoExpression:
    target: str
    steps: List[Step] = field(default_factory=list)


_ESCAPE = re.compile(r'\\(.)|"', re.DOTALL)
_JSON_ESCAPES = set('"\\/bfnrtu')


def _to_json_escape(match) -> str:
    char = match.group(1)
    if char is None:
        return '\\"'
    if char in _JSON_ESCAPES:
        return "\\" + char
    return json.dumps(char)[1:-1]


def _decode_string(token) -> str:
    """Decodes a quoted token with JSON escape rules; unknown escapes keep the character."""
    raw = str(token)
    if raw.startswith("`"):
        return raw[1:-1].replace("\\`", "`")
    body = _ESCAPE.sub(_to_json_escape, raw[1:-1])
    return json.loads(f'"{body}"', strict=False)


def _parse_date(value: Optional[str] = None) -> datetime.datetime:
    if value is None:
        return datetime.datetime.now(datetime.timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.datetime.fromisoformat(text)


def _bin_data(subtype: int, data: str) -> Binary:
    return Binary(base64.b64decode(data), int(subtype))


def _uuid(value: Optional[str] = None) -> Binary:
    return Binary.from_uuid(uuid.UUID(value) if value else uuid.uuid4())


# Shell constructors that may appear inside argument literals.
CONSTRUCTORS = {
    "ObjectId": lambda value=None: ObjectId(value) if value else ObjectId(),
    "ISODate": _parse_date,
    "Date": _parse_date,
    "NumberLong": lambda value: int(value),
    "NumberInt": lambda value: int(value),
    "NumberDecimal": lambda value: Decimal128(str(value)),
    "UUID": _uuid,
    "BinData": _bin_data,
    "Timestamp": lambda t, i: Timestamp(int(t), int(i)),
}


@v_args(inline=True)
class LiteralTransformer(Transformer):
    """Transforms the Lark parse tree into Python values and call chains."""

    def expression(self, target, *steps):
        return MongoExpression(str(target), list(steps))

    def method_call(self, name, arguments=None):
        return Step(str(name), arguments or [], is_call=True)

    def attribute(self, name):
        return Step(str(name))

    def item(self, key):
        return Step(_decode_string(key))

    def arguments(self, *values):
        return list(values)

    def literal(self, value):
        return value

    def object(self, *pairs):
        return dict(pairs)

    def pair(self, key, value):
        return (key, value)

    def bare_key(self, token):
        return str(token)

    def quoted_key(self, token):
        return _decode_string(token)

    def number_key(self, token):
        return str(token)

    def array(self, *values):
        return list(values)

    def constructor(self, name, *args):
        factory = CONSTRUCTORS.get(str(name))
        if factory is None:
            raise ValueError(f"Unsupported constructor '{name}(...)'")
        return factory(*args)

    def string(self, token):
        return _decode_string(token)

    def number(self, token):
        text = str(token)
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)

    def true(self, *_):
        return True

    def false(self, *_):
        return False

    def null(self, *_):
        return None


@functools.lru_cache(maxsize=1)
def get_parser() -> Lark:
    grammar_path = get_pkg_root() / "interactive" / "grammar" / "mongo.lark"
    with open(grammar_path, "r", encoding="utf-8") as f:
        return Lark(f.read(), start=["expression", "literal"], parser="lalr")


def _parse(text: str, start: str) -> Any:
    try:
        tree = get_parser().parse(text, start=start)
        return LiteralTransformer().transform(tree)
    except LarkError as e:
        original_exc = getattr(e, "orig_exc", e)
        raise ValueError(str(original_exc).strip()) from e


def parse_expression(text: str) -> MongoExpression:
    """Parses a Mongo shell expression; raises ValueError on invalid input."""
    return _parse(text.strip(), "expression")


def parse_literal(
    text: str,
    default: Any = None,
    label: str = "argument",
    expected: Union[Type, Tuple[Type, ...], None] = None,
) -> Any:
    """
    Converts loosely JSON/JS-literal text into a Python value.

    Bare keys, single quotes, trailing commas and shell constructors such as
    `ObjectId("...")` are accepted. Malformed input never raises: a warning is
    logged and printed, and a copy of `default` is returned instead. When
    `expected` is given, a value of the wrong type is treated the same way.
    """
    try:
        value = _parse(text, "literal")
    except ValueError as e:
        logger.warning("literals.parse.failed", label=label, text=text, error=str(e))
        console.print(
            f"[bold yellow]⚠️  Could not parse {escape(label)}, using {default!r}:[/bold yellow] {escape(str(e))}"
        )
        return copy.deepcopy(default)

    if expected is not None and not isinstance(value, expected):
        logger.warning(
            "literals.parse.wrong_type",
            label=label,
            got=type(value).__name__,
        )
        console.print(
            f"[bold yellow]⚠️  Expected {label} to be "
            f"{_type_names(expected)}, got {type(value).__name__}; using {default!r}.[/bold yellow]"
        )
        return copy.deepcopy(default)
    return value


def _type_names(expected) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def split_args(text: str) -> List[str]:
    """
    Splits dot-command argument text on whitespace, keeping quoted strings and
    brace/bracket/parenthesis groups (which may nest) together as one token.
    """
    parts: List[str] = []
    buf: List[str] = []
    depth = 0
    quote = None
    escaped = False
    for ch in text.strip():
        if quote:
            buf.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ("'", '"', "`"):
            quote = ch
            buf.append(ch)
            continue
        if ch in "{[(":
            depth += 1
        elif ch in "}])":
            depth = max(depth - 1, 0)
        if ch.isspace() and depth == 0:
            if buf:
                parts.append("".join(buf))
                buf = []
            continue
        buf.append(ch)
    if buf:
        parts.append("".join(buf))
    return parts


def unquote(token: str) -> str:
    """Strips one pair of matching surrounding quotes, if present."""
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"', "`"):
        return token[1:-1]
    return token
