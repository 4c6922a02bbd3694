"""
Incremental JSON parser for streamed model output.

The model writes its JSON answer a few characters at a time, and a fragment
boundary can fall anywhere: inside a key, inside an escape sequence, between
a number's digits. ``IncrementalJSONParser`` keeps an explicit stack of open
containers plus a small lexical state, so stopping between fragments is just
"keep the stack". Every call to ``feed`` returns a lazy iterator of events:

    ValueCommitted(path, value)   a number/bool/null or a finished object/array
    StringDelta(path, delta)      new characters of a string value in progress
    StringResolved(path, value)   a string value reached its closing quote

Malformed input is corrected locally (skip a stray comma, insert a missing
colon, ...) and ``close`` synthesizes whatever closers a truncated document
needs. Each correction is reported to ``on_error`` as a ``ParseRepair``;
event production never stops because of one.

Usage:
    parser = IncrementalJSONParser()
    for fragment in fragments:
        for event in parser.feed(fragment):
            handle(event)
    for event in parser.close():
        handle(event)
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, List, Optional, Union

from core.errors import ParseRepair

logger = logging.getLogger("lingo.parser")

Segment = Union[str, int]


class StructuralPath(tuple):
    """Key/index chain locating a node, e.g. ('example_sentences', 2, 'english')."""

    __slots__ = ()

    def __new__(cls, segments: Iterable[Segment] = ()):
        return super().__new__(cls, tuple(segments))

    @classmethod
    def from_uri(cls, uri: str) -> "StructuralPath":
        """Inverse of ``uri``: numeric segments become array indices."""
        if not uri:
            return cls()
        return cls(int(part) if part.isdigit() else part for part in uri.split("/"))

    def child(self, segment: Segment) -> "StructuralPath":
        return StructuralPath(tuple(self) + (segment,))

    def with_last(self, segment: Segment) -> "StructuralPath":
        """Same location with the final segment replaced (english -> audio)."""
        if not self:
            return StructuralPath((segment,))
        return StructuralPath(tuple(self)[:-1] + (segment,))

    @property
    def last(self) -> Optional[Segment]:
        return self[-1] if self else None

    @property
    def uri(self) -> str:
        return "/".join(str(segment) for segment in self)

    def __repr__(self) -> str:
        return f"StructuralPath({self.uri!r})"


@dataclass(frozen=True)
class ValueCommitted:
    path: StructuralPath
    value: Any


@dataclass(frozen=True)
class StringDelta:
    path: StructuralPath
    delta: str


@dataclass(frozen=True)
class StringResolved:
    path: StructuralPath
    value: str


ParseEvent = Union[ValueCommitted, StringDelta, StringResolved]


@dataclass
class _Frame:
    """One open container on the parse stack."""
    kind: str
    path: StructuralPath
    value: Union[dict, list]
    key: Optional[str] = None
    index: int = 0


# Lexical modes
_BETWEEN = "between"
_STRING = "string"
_ESCAPE = "escape"
_UNICODE = "unicode"
_LITERAL = "literal"

# Grammar expectations between tokens
_VALUE = "value"
_VALUE_OR_CLOSE = "value_or_close"
_KEY = "key"
_KEY_OR_CLOSE = "key_or_close"
_COLON = "colon"
_COMMA_OR_CLOSE = "comma_or_close"
_DONE = "done"

_WHITESPACE = " \t\r\n"
_LITERAL_START = "-0123456789"
_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}
_KEYWORDS = {"true": True, "false": False, "null": None}
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_HEX = "0123456789abcdefABCDEF"
_REPLACEMENT = "\ufffd"


def _is_literal_char(ch: str) -> bool:
    return ch.isalnum() or ch in "+-."


def _resolve_literal(text: str):
    """Return (ok, value) for a bare JSON token."""
    if text in _KEYWORDS:
        return True, _KEYWORDS[text]
    if _NUMBER_RE.fullmatch(text):
        return True, json.loads(text)
    return False, None


class IncrementalJSONParser:
    """Event-producing JSON parser that accepts arbitrary fragment boundaries."""

    def __init__(self, on_error: Optional[Callable[[ParseRepair], None]] = None):
        self._on_error = on_error
        self._buffer = ""
        self._pos = 0
        self._offset = 0
        self._stack: List[_Frame] = []
        self._expect = _VALUE
        self._mode = _BETWEEN
        self._out: List[ParseEvent] = []
        self._skipping = False
        self._closed = False
        self._root: Any = None
        self._has_root = False
        self.repairs = 0

        # string in progress
        self._string_is_key = False
        self._string_path = StructuralPath()
        self._chars: List[str] = []
        self._delta: List[str] = []
        self._hex: List[str] = []
        self._high_surrogate: Optional[int] = None

        # literal in progress
        self._literal: List[str] = []
        self._literal_path = StructuralPath()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        """True once the root value has been committed."""
        return self._has_root

    @property
    def value(self) -> Any:
        return self._root

    def feed(self, fragment: str) -> Iterator[ParseEvent]:
        """Queue a fragment and return the events it makes available.

        The fragment is buffered immediately; the returned iterator consumes
        the buffer as it is iterated, so it must be drained before the
        events are considered complete.
        """
        if fragment:
            self._buffer = self._buffer[self._pos:] + fragment
            self._pos = 0
        return self._drain()

    def close(self) -> Iterator[ParseEvent]:
        """Signal end of input and synthesize any closers still needed."""
        yield from self._drain()
        if self._closed:
            return
        self._closed = True
        yield from self._repair_tail()
        self._expect = _DONE

    # ------------------------------------------------------------------
    # driver
    # ------------------------------------------------------------------

    def _drain(self) -> Iterator[ParseEvent]:
        while self._pos < len(self._buffer):
            ch = self._buffer[self._pos]
            self._pos += 1
            self._consume(ch)
            self._offset += 1
            if self._out:
                events, self._out = self._out, []
                yield from events
        self._flush_delta()
        if self._out:
            events, self._out = self._out, []
            yield from events

    def _consume(self, ch: str) -> None:
        mode = self._mode
        if mode == _STRING:
            if ch == '"':
                self._finish_string()
            elif ch == "\\":
                self._mode = _ESCAPE
            else:
                self._code_point(ord(ch))
        elif mode == _ESCAPE:
            self._escape(ch)
        elif mode == _UNICODE:
            self._unicode(ch)
        elif mode == _LITERAL:
            if _is_literal_char(ch):
                self._literal.append(ch)
            else:
                self._finish_literal()
                self._between(ch)
        else:
            self._between(ch)

    def _repair(self, kind: str, detail: str) -> None:
        self.repairs += 1
        error = ParseRepair(kind, detail, self._offset)
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.warning(f"[PARSER] {error}")

    # ------------------------------------------------------------------
    # structure
    # ------------------------------------------------------------------

    def _value_path(self) -> StructuralPath:
        if not self._stack:
            return StructuralPath()
        top = self._stack[-1]
        if top.kind == "object":
            return top.path.child(top.key if top.key is not None else "")
        return top.path.child(top.index)

    def _attach(self, value: Any) -> None:
        """Hand a finished value to its parent container (or make it the root)."""
        if not self._stack:
            self._root = value
            self._has_root = True
            self._expect = _DONE
            return
        top = self._stack[-1]
        if top.kind == "object":
            top.value[top.key if top.key is not None else ""] = value
            top.key = None
        else:
            top.value.append(value)
            top.index += 1
        self._expect = _COMMA_OR_CLOSE

    def _open(self, kind: str) -> None:
        frame = _Frame(kind, self._value_path(), {} if kind == "object" else [])
        self._stack.append(frame)
        self._expect = _KEY_OR_CLOSE if kind == "object" else _VALUE_OR_CLOSE

    def _close(self) -> None:
        frame = self._stack.pop()
        self._out.append(ValueCommitted(frame.path, frame.value))
        self._attach(frame.value)

    def _commit_scalar(self, value: Any, path: StructuralPath) -> None:
        self._out.append(ValueCommitted(path, value))
        self._attach(value)

    def _start_string(self, is_key: bool) -> None:
        self._mode = _STRING
        self._string_is_key = is_key
        self._string_path = StructuralPath() if is_key else self._value_path()
        self._chars = []
        self._delta = []
        self._high_surrogate = None

    def _start_literal(self, ch: str) -> None:
        self._mode = _LITERAL
        self._literal = [ch]
        self._literal_path = self._value_path()

    def _begins_value(self, ch: str) -> bool:
        return ch in '{["' or ch in _LITERAL_START or ch.isalpha()

    def _start_value(self, ch: str) -> None:
        self._skipping = False
        if ch == "{":
            self._open("object")
        elif ch == "[":
            self._open("array")
        elif ch == '"':
            self._start_string(is_key=False)
        else:
            self._start_literal(ch)

    def _skip(self, kind: str, ch: str) -> None:
        # one report per run of skipped characters
        if not self._skipping:
            self._repair(kind, f"skipped {ch!r}")
        self._skipping = True

    def _between(self, ch: str) -> None:
        if ch in _WHITESPACE:
            return
        expect = self._expect
        top = self._stack[-1] if self._stack else None

        if expect in (_VALUE, _VALUE_OR_CLOSE):
            if self._begins_value(ch):
                self._start_value(ch)
            elif ch in "]}" and top is not None:
                self._skipping = False
                if top.kind == "object":
                    self._repair("missing_value", f"key {top.key!r} committed as null")
                    self._commit_scalar(None, self._value_path())
                    self._close()
                else:
                    if ch == "}":
                        self._repair("mismatched_closer", "'}' closes an array")
                    elif expect == _VALUE:
                        self._repair("trailing_comma", "comma before ']' ignored")
                    self._close()
            elif ch == ",":
                self._skip("stray_comma", ch)
            else:
                self._skip("unexpected_character", ch)

        elif expect in (_KEY, _KEY_OR_CLOSE):
            if ch == '"':
                self._skipping = False
                self._start_string(is_key=True)
            elif ch in "}]":
                self._skipping = False
                if ch == "]":
                    self._repair("mismatched_closer", "']' closes an object")
                elif expect == _KEY:
                    self._repair("trailing_comma", "comma before '}' ignored")
                self._close()
            elif ch == ",":
                self._skip("stray_comma", ch)
            else:
                self._skip("unexpected_character", ch)

        elif expect == _COLON:
            if ch == ":":
                self._skipping = False
                self._expect = _VALUE
            elif self._begins_value(ch):
                self._repair("missing_colon", f"colon inserted after key {top.key!r}")
                self._expect = _VALUE
                self._start_value(ch)
            elif ch in "},":
                self._skipping = False
                self._repair("missing_value", f"key {top.key!r} committed as null")
                self._commit_scalar(None, self._value_path())
                if ch == "}":
                    self._close()
                else:
                    self._expect = _KEY
            else:
                self._skip("unexpected_character", ch)

        elif expect == _COMMA_OR_CLOSE:
            if ch == ",":
                self._skipping = False
                self._expect = _KEY if top.kind == "object" else _VALUE
            elif ch in "}]":
                self._skipping = False
                if (ch == "}") != (top.kind == "object"):
                    self._repair("mismatched_closer", f"{ch!r} closes an {top.kind}")
                self._close()
            elif ch == '"' and top.kind == "object":
                self._skipping = False
                self._repair("missing_comma", "comma inserted before key")
                self._start_string(is_key=True)
            elif top.kind == "array" and self._begins_value(ch):
                self._repair("missing_comma", "comma inserted before array element")
                self._start_value(ch)
            else:
                self._skip("unexpected_character", ch)

        else:
            self._skip("trailing_data", ch)

    # ------------------------------------------------------------------
    # strings
    # ------------------------------------------------------------------

    def _flush_surrogate(self) -> None:
        if self._high_surrogate is not None:
            self._repair("invalid_escape", f"unpaired surrogate {self._high_surrogate:#06x} replaced")
            self._high_surrogate = None
            self._emit_char(_REPLACEMENT)

    def _emit_char(self, ch: str) -> None:
        self._chars.append(ch)
        if not self._string_is_key:
            self._delta.append(ch)

    def _append_char(self, ch: str) -> None:
        self._flush_surrogate()
        self._emit_char(ch)

    def _escape(self, ch: str) -> None:
        self._mode = _STRING
        if ch == "u":
            self._mode = _UNICODE
            self._hex = []
        elif ch in _ESCAPES:
            self._append_char(_ESCAPES[ch])
        else:
            self._repair("invalid_escape", f"'\\{ch}' kept as {ch!r}")
            self._append_char(ch)

    def _unicode(self, ch: str) -> None:
        if ch not in _HEX:
            self._repair("invalid_escape", "incomplete \\u escape dropped")
            self._mode = _STRING
            self._consume(ch)
            return
        self._hex.append(ch)
        if len(self._hex) < 4:
            return
        self._mode = _STRING
        self._code_point(int("".join(self._hex), 16))

    def _code_point(self, code: int) -> None:
        """Escaped or raw character; surrogate halves are paired or replaced."""
        if 0xD800 <= code < 0xDC00:
            self._flush_surrogate()
            self._high_surrogate = code
        elif 0xDC00 <= code < 0xE000:
            if self._high_surrogate is None:
                self._repair("invalid_escape", f"unpaired surrogate {code:#06x} replaced")
                self._emit_char(_REPLACEMENT)
                return
            combined = 0x10000 + ((self._high_surrogate - 0xD800) << 10) + (code - 0xDC00)
            self._high_surrogate = None
            self._emit_char(chr(combined))
        else:
            self._append_char(chr(code))

    def _flush_delta(self) -> None:
        if self._mode in (_STRING, _ESCAPE, _UNICODE) and not self._string_is_key and self._delta:
            self._out.append(StringDelta(self._string_path, "".join(self._delta)))
            self._delta = []

    def _finish_string(self) -> None:
        self._flush_surrogate()
        self._mode = _BETWEEN
        text = "".join(self._chars)
        if self._string_is_key:
            self._stack[-1].key = text
            self._expect = _COLON
            return
        if self._delta:
            self._out.append(StringDelta(self._string_path, "".join(self._delta)))
            self._delta = []
        self._out.append(StringResolved(self._string_path, text))
        self._attach(text)

    # ------------------------------------------------------------------
    # literals
    # ------------------------------------------------------------------

    def _finish_literal(self) -> None:
        self._mode = _BETWEEN
        text = "".join(self._literal)
        self._literal = []
        ok, value = _resolve_literal(text)
        if ok:
            self._commit_scalar(value, self._literal_path)
        elif not self._stack:
            self._repair("invalid_literal", f"{text!r} skipped before the document")
        else:
            self._repair("invalid_literal", f"{text!r} committed as null")
            self._commit_scalar(None, self._literal_path)

    # ------------------------------------------------------------------
    # end of input
    # ------------------------------------------------------------------

    def _repair_tail(self) -> Iterator[ParseEvent]:
        if self._mode in (_ESCAPE, _UNICODE):
            self._repair("incomplete_escape", "escape at end of input dropped")
            self._mode = _STRING

        if self._mode == _STRING:
            if self._string_is_key:
                self._repair("dangling_key", f"unterminated key {''.join(self._chars)!r} dropped")
                self._mode = _BETWEEN
                self._expect = _COMMA_OR_CLOSE
            else:
                self._repair("unterminated_string", f"closing quote synthesized at {self._string_path.uri!r}")
                self._finish_string()

        if self._mode == _LITERAL:
            text = "".join(self._literal)
            if not _resolve_literal(text)[0]:
                candidates = [word for word in _KEYWORDS if word.startswith(text)]
                if len(candidates) == 1:
                    self._repair("truncated_literal", f"{text!r} completed as {candidates[0]!r}")
                    self._literal = list(candidates[0])
            self._finish_literal()

        top = self._stack[-1] if self._stack else None
        if top is not None and top.kind == "object" and top.key is not None:
            self._repair("dangling_key", f"key {top.key!r} has no value, dropped")
            top.key = None

        while self._stack:
            self._repair("unclosed_container", f"{self._stack[-1].kind} at {self._stack[-1].path.uri!r} closed")
            self._close()

        events, self._out = self._out, []
        yield from events


def iter_events(fragments: Iterable[str], on_error=None) -> Iterator[ParseEvent]:
    """Parse a whole fragment sequence, including the end-of-input repair."""
    parser = IncrementalJSONParser(on_error=on_error)
    for fragment in fragments:
        yield from parser.feed(fragment)
    yield from parser.close()
