"""Parse IMAP FETCH responses and ``BODYSTRUCTURE`` trees.

``imaplib`` hands back FETCH data as a list mixing plain response lines with
``(prefix, literal)`` tuples, where ``prefix`` ends in ``{n}`` and
``literal`` holds the ``n`` octets that follow. This module reassembles one
response per message, tokenizes it into nested lists (RFC 3501 section 9
syntax) and turns the ``BODYSTRUCTURE`` item into a ``MimeNode`` tree.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from email.utils import collapse_rfc2231_value, decode_params, unquote
from typing import Any

_LITERAL_RE = re.compile(rb"\{(\d+)\}$")
_RESPONSE_START_RE = re.compile(rb"^\d+ \(")

Segment = tuple[bool, bytes]


class FetchParseError(ValueError):
    """Raised when a FETCH response cannot be parsed."""


@dataclass
class MimeNode:
    """One node of a message's MIME tree as reported by ``BODYSTRUCTURE``."""

    type: str
    subtype: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    id: str | None = None
    encoding: str | None = None
    size: int = 0
    disposition: str | None = None
    disposition_parameters: dict[str, str] = field(default_factory=dict)
    child_nodes: list[MimeNode] = field(default_factory=list)

    @property
    def mime_type(self) -> str:
        return f"{self.type}/{self.subtype or 'octet-stream'}"


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


class QuotedString(str):
    """A quoted string token; never treated as ``NIL``."""


_OPEN = object()
_CLOSE = object()
_END = object()


class _Tokenizer:
    """Tokenize a reassembled response made of text and literal segments."""

    def __init__(self, segments: list[Segment]) -> None:
        self._segments = segments
        self._seg = 0
        self._pos = 0

    def _advance_segment(self) -> None:
        self._seg += 1
        self._pos = 0

    def next(self) -> Any:
        """Return the next token: a paren marker, ``str``, literal ``bytes`` or ``_END``."""
        while self._seg < len(self._segments):
            is_literal, data = self._segments[self._seg]
            if is_literal:
                self._advance_segment()
                return data
            if self._pos >= len(data):
                self._advance_segment()
                continue

            char = data[self._pos : self._pos + 1]
            if char in (b" ", b"\r", b"\n"):
                self._pos += 1
            elif char == b"(":
                self._pos += 1
                return _OPEN
            elif char == b")":
                self._pos += 1
                return _CLOSE
            elif char == b'"':
                return self._quoted(data)
            elif char == b"{":
                match = _LITERAL_RE.match(data, self._pos)
                if match is None:
                    raise FetchParseError(f"unexpected literal marker at offset {self._pos}")
                self._advance_segment()
                if self._seg >= len(self._segments) or not self._segments[self._seg][0]:
                    raise FetchParseError("literal marker without literal data")
            else:
                return self._atom(data)
        return _END

    def _quoted(self, data: bytes) -> QuotedString:
        self._pos += 1
        out = bytearray()
        while self._pos < len(data):
            char = data[self._pos]
            if char == 0x5C and self._pos + 1 < len(data):  # backslash escape
                out.append(data[self._pos + 1])
                self._pos += 2
                continue
            if char == 0x22:
                self._pos += 1
                return QuotedString(out.decode("utf-8", errors="replace"))
            out.append(char)
            self._pos += 1
        raise FetchParseError("unterminated quoted string")

    def _atom(self, data: bytes) -> str:
        # Section specs like BODY[HEADER.FIELDS (FROM)] keep their brackets.
        start = self._pos
        depth = 0
        while self._pos < len(data):
            char = data[self._pos : self._pos + 1]
            if char == b"[":
                depth += 1
            elif char == b"]":
                depth -= 1
            elif depth <= 0 and char in (b" ", b"(", b")", b'"'):
                break
            self._pos += 1
        return data[start : self._pos].decode("utf-8", errors="replace")


def _parse_value(tokenizer: _Tokenizer, token: Any) -> Any:
    if token is _OPEN:
        items: list[Any] = []
        while True:
            inner = tokenizer.next()
            if inner is _END:
                raise FetchParseError("unterminated list")
            if inner is _CLOSE:
                return items
            items.append(_parse_value(tokenizer, inner))
    if isinstance(token, str) and not isinstance(token, QuotedString) and token.upper() == "NIL":
        return None
    return token


def parse_sexpr(segments: list[Segment]) -> list[Any]:
    """Parse a sequence of top-level values from text/literal segments."""
    tokenizer = _Tokenizer(segments)
    values: list[Any] = []
    while True:
        token = tokenizer.next()
        if token is _END:
            return values
        if token is _CLOSE:
            raise FetchParseError("unbalanced closing parenthesis")
        values.append(_parse_value(tokenizer, token))


# ---------------------------------------------------------------------------
# FETCH responses
# ---------------------------------------------------------------------------


def split_fetch_responses(data: list[Any]) -> list[list[Segment]]:
    """Group raw ``imaplib`` FETCH data into one segment list per message."""
    responses: list[list[Segment]] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            prefix, literal = item
            if _RESPONSE_START_RE.match(prefix) or not responses:
                responses.append([])
            responses[-1].append((False, prefix))
            responses[-1].append((True, literal))
            continue
        if _RESPONSE_START_RE.match(item) or not responses:
            responses.append([])
        responses[-1].append((False, item))
    return responses


def parse_fetch_response(segments: list[Segment]) -> tuple[int, dict[str, Any]]:
    """Parse ``<seq> (KEY value KEY value ...)`` into ``(seq, {KEY: value})``.

    Keys are upper-cased; ``BODY.PEEK[...]`` items come back as ``BODY[...]``.
    """
    values = parse_sexpr(segments)
    if len(values) < 2 or not isinstance(values[1], list):
        raise FetchParseError(f"malformed FETCH response: {values!r}")
    try:
        seq = int(values[0])
    except (TypeError, ValueError) as exc:
        raise FetchParseError(f"FETCH response without sequence number: {values[0]!r}") from exc

    pairs = values[1]
    if len(pairs) % 2:
        raise FetchParseError("FETCH attribute list has an odd number of items")
    attributes = {str(pairs[i]).upper(): pairs[i + 1] for i in range(0, len(pairs), 2)}
    return seq, attributes


# ---------------------------------------------------------------------------
# BODYSTRUCTURE
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, list):
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _decode_mime_words(value: str) -> str:
    if "=?" not in value:
        return value
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError):
        return value


def _parse_params(value: Any) -> dict[str, str]:
    """Turn ``("name" "x.pdf" "charset" "utf-8")`` into a dict.

    Keys are lower-cased. RFC 2231 (``filename*=``) and RFC 2047 encoded
    values are decoded.
    """
    if not isinstance(value, list):
        return {}
    # decode_params treats the first pair as the main header value.
    raw: list[tuple[str, str]] = [("", "")]
    for i in range(0, len(value) - 1, 2):
        key = _as_text(value[i])
        val = _as_text(value[i + 1])
        if key is None or val is None:
            continue
        raw.append((key.lower(), val))

    params: dict[str, str] = {}
    for key, val in decode_params(raw)[1:]:
        if isinstance(val, tuple):
            charset, language, text = val
            params[key] = collapse_rfc2231_value((charset, language, unquote(text)))
        else:
            params[key] = _decode_mime_words(unquote(val))
    return params


def _parse_disposition(value: Any) -> tuple[str | None, dict[str, str]]:
    if not isinstance(value, list) or not value:
        return None, {}
    disposition = _as_text(value[0])
    params = _parse_params(value[1]) if len(value) > 1 else {}
    return (disposition.lower() if disposition else None), params


def parse_bodystructure(value: Any) -> MimeNode:
    """Convert a parsed ``BODYSTRUCTURE`` list into a ``MimeNode`` tree."""
    if not isinstance(value, list) or not value:
        raise FetchParseError(f"BODYSTRUCTURE must be a non-empty list, got {value!r}")

    if isinstance(value[0], list):
        children: list[MimeNode] = []
        index = 0
        while index < len(value) and isinstance(value[index], list):
            children.append(parse_bodystructure(value[index]))
            index += 1
        subtype = _as_text(value[index]) if index < len(value) else None
        # Multipart extension data: parameters, disposition, language, location.
        ext = value[index + 1 :]
        params = _parse_params(ext[0]) if ext else {}
        disposition, disposition_params = (
            _parse_disposition(ext[1]) if len(ext) > 1 else (None, {})
        )
        return MimeNode(
            type="multipart",
            subtype=(subtype or "mixed").lower(),
            parameters=params,
            disposition=disposition,
            disposition_parameters=disposition_params,
            child_nodes=children,
        )

    if len(value) < 7:
        raise FetchParseError(f"single-part BODYSTRUCTURE is too short: {value!r}")

    mime_type = (_as_text(value[0]) or "application").lower()
    subtype = (_as_text(value[1]) or "octet-stream").lower()
    try:
        size = int(_as_text(value[6]) or 0)
    except ValueError:
        size = 0

    # Type-specific fields sit between the basic fields and the extension data,
    # which starts with the body MD5 followed by the disposition.
    if mime_type == "text":
        ext_start = 8
    elif mime_type == "message" and subtype == "rfc822":
        ext_start = 10
    else:
        ext_start = 7
    disposition_index = ext_start + 1
    if len(value) > disposition_index:
        disposition, disposition_params = _parse_disposition(value[disposition_index])
    else:
        disposition, disposition_params = None, {}

    encoding = _as_text(value[5])
    return MimeNode(
        type=mime_type,
        subtype=subtype,
        parameters=_parse_params(value[2]),
        id=_as_text(value[3]),
        encoding=encoding.lower() if encoding else None,
        size=size,
        disposition=disposition,
        disposition_parameters=disposition_params,
    )
