"""Line formats with ``$v``, ``$i`` and ``$t`` placeholders, parsed like scanf."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from .reading import Reading

_FLOAT = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan)",
    re.IGNORECASE,
)
_WORD = re.compile(r"[^ \t\n\v\f\r]+")
_SPACE = re.compile(r"[ \t\n\v\f\r]*")
_TEMPLATE = re.compile(r"\$(.?)|(.)", re.DOTALL)


class _Field(enum.Enum):
    VALUE = "v"
    IDENTIFIER = "i"
    TIMESTAMP = "t"


@dataclass(frozen=True)
class ParsedLine:
    """Result of matching one line against a format."""

    value: float = 0.0
    identifier: str | None = None
    timestamp: float | None = None
    matched: int = 0


def _skip_space(text: str, pos: int) -> int:
    return _SPACE.match(text, pos).end()


@dataclass(frozen=True)
class LineFormat:
    """A compiled line format.

    Whitespace in the template matches any run of whitespace, other
    characters must match literally, and the placeholders read a value,
    a whitespace-free identifier and a timestamp.
    """

    template: str
    tokens: tuple[_Field | str, ...]

    def __bool__(self) -> bool:
        return bool(self.tokens)

    def parse(self, line: str) -> ParsedLine:
        """Match ``line``, stopping at the first directive that fails."""
        value = 0.0
        identifier = None
        timestamp = None
        matched = 0
        pos = 0
        for token in self.tokens:
            if isinstance(token, _Field):
                pos = _skip_space(line, pos)
                pattern = _WORD if token is _Field.IDENTIFIER else _FLOAT
                match = pattern.match(line, pos)
                if match is None:
                    break
                text = match.group()
                if token is _Field.VALUE:
                    value = float(text)
                elif token is _Field.TIMESTAMP:
                    timestamp = float(text)
                else:
                    identifier = text
                pos = match.end()
                matched += 1
            elif token.isspace():
                pos = _skip_space(line, pos)
            else:
                if token == "%":
                    pos = _skip_space(line, pos)
                if not line.startswith(token, pos):
                    break
                pos += 1
        return ParsedLine(value, identifier, timestamp, matched)


def compile_format(template: str) -> LineFormat:
    """Compile a template such as ``"$i: $v $t"``.

    Unknown ``$`` tokens and a trailing ``$`` are dropped.
    """
    tokens: list[_Field | str] = []
    for match in _TEMPLATE.finditer(template):
        placeholder, literal = match.groups()
        if literal is not None:
            tokens.append(literal)
        elif placeholder in ("v", "i", "t"):
            tokens.append(_Field(placeholder))
    return LineFormat(template, tuple(tokens))


def parse_leading_float(text: str) -> tuple[float, int]:
    """Parse a number at the start of ``text`` after optional whitespace.

    Returns the value and the number of characters consumed, or
    ``(0.0, 0)`` when no number is found.
    """
    match = _FLOAT.match(text, _skip_space(text, 0))
    if match is None:
        return 0.0, 0
    return float(match.group()), match.end()


def _strip_line_end(line: str) -> str:
    if "\n" in line:
        line = line.rpartition("\n")[0]
    if "\r" in line:
        line = line.rpartition("\r")[0]
    return line


def reading_from_line(line: str, line_format: LineFormat | None) -> Reading | None:
    """Turn one input line into a reading, or ``None`` if nothing was read.

    Without a format the line holds just a value. With a format at least
    one placeholder has to match; a missing identifier becomes
    ``"<null>"`` and a missing or negative timestamp becomes now.
    """
    line = _strip_line_end(line)
    if not line_format:
        value, consumed = parse_leading_float(line)
        return Reading.now(value, "") if consumed else None

    parsed = line_format.parse(line)
    if parsed.matched < 1:
        return None
    identifier = parsed.identifier if parsed.identifier is not None else "<null>"
    if parsed.timestamp is not None and parsed.timestamp >= 0.0:
        return Reading(parsed.value, identifier, parsed.timestamp)
    return Reading.now(parsed.value, identifier)