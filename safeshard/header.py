"""Recursive-descent parser for the safetensors JSON header.

Only the subset safetensors headers actually use is understood: a top-level
object mapping tensor names to ``{dtype, shape, data_offsets}`` records.
Anything else (extra record fields, non-tensor top-level values, the
``__metadata__`` object) is skipped with a balanced-bracket scan, so newer
producers that add fields still load.

String escapes cover ``\\n``, ``\\t``, ``\\"`` and ``\\\\``; any other
escaped character is kept verbatim with the backslash dropped. ``\\uXXXX``
is *not* decoded.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .dtypes import element_count
from .errors import HeaderParseError
from .format import DType, MAX_NAME_BYTES, METADATA_KEY, parse_dtype

logger = logging.getLogger("safeshard")

_WS = re.compile(r"[ \t\n\r]*")
_STRING_RUN = re.compile(r'[^"\\]*')
_INT = re.compile(r"-?[0-9]+")
_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}
_TENSOR_FIELDS = ("dtype", "shape", "data_offsets")


# ── TensorDescriptor ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TensorDescriptor:
    """Parsed metadata for one tensor.

    ``data_offset`` / ``data_size`` are relative to the start of the data
    block (end of header), not to the start of the file.
    """

    name: str
    dtype: DType
    shape: tuple[int, ...]
    data_offset: int
    data_size: int
    dtype_name: str = ""

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def numel(self) -> int:
        return element_count(self.shape)

    @property
    def data_end(self) -> int:
        return self.data_offset + self.data_size

    @property
    def dtype_label(self) -> str:
        if self.dtype is DType.UNKNOWN:
            return f"UNKNOWN({self.dtype_name})"
        return self.dtype.name

    def describe(self) -> str:
        dims = ", ".join(str(d) for d in self.shape)
        return (
            f"{self.name}: {self.dtype_label} [{dims}] "
            f"offset={self.data_offset} size={self.data_size}"
        )


@dataclass
class ParsedHeader:
    tensors: list[TensorDescriptor] = field(default_factory=list)
    metadata_text: str | None = None


# ── Parser ──────────────────────────────────────────────────────────────────


class _HeaderParser:
    def __init__(self, text: str, max_name_bytes: int) -> None:
        self._text = text
        self._pos = 0
        self._end = len(text)
        self._max_name_bytes = max_name_bytes

    def parse(self) -> ParsedHeader:
        result = ParsedHeader()
        self._expect("{", "opening '{'")
        while True:
            ch = self._peek()
            if ch == "":
                raise self._error("header missing closing '}'")
            if ch == "}":
                self._pos += 1
                break

            key = self._string()
            self._expect(":", f"':' after key {key!r}")

            if key == METADATA_KEY:
                self._skip_ws()
                start = self._pos
                self._skip_value()
                result.metadata_text = self._text[start:self._pos]
            elif self._peek() == "{":
                desc = self._tensor_record(key)
                if desc is None:
                    logger.debug("skipping non-tensor header object %r", key)
                else:
                    result.tensors.append(desc)
            else:
                logger.debug("skipping non-tensor header value %r", key)
                self._skip_value()

            if self._peek() == ",":
                self._pos += 1
        return result

    # ── records ──────────────────────────────────────────────────────────

    def _tensor_record(self, key: str) -> TensorDescriptor | None:
        self._expect("{", "'{'")
        dtype_name = ""
        shape: tuple[int, ...] = ()
        offsets = (0, 0)
        seen = False
        while True:
            ch = self._peek()
            if ch == "":
                raise self._error(f"record {key!r} missing closing '}}'")
            if ch == "}":
                self._pos += 1
                break

            name = self._string()
            self._expect(":", f"':' after {name!r}")
            if name == "dtype":
                dtype_name = self._string()
            elif name == "shape":
                shape = tuple(self._int_array("shape"))
            elif name == "data_offsets":
                offsets = self._data_offsets(key)
            else:
                self._skip_value()
            seen = seen or name in _TENSOR_FIELDS
            if self._peek() == ",":
                self._pos += 1

        if not seen:
            return None
        start, end = offsets
        return TensorDescriptor(
            name=self._clip_name(key),
            dtype=parse_dtype(dtype_name),
            shape=shape,
            data_offset=start,
            data_size=end - start,
            dtype_name=dtype_name,
        )

    def _data_offsets(self, key: str) -> tuple[int, int]:
        values = self._int_array("data_offsets")
        if len(values) != 2:
            raise self._error(
                f"data_offsets of {key!r} must hold 2 integers, got {len(values)}"
            )
        start, end = values
        if start < 0 or end < start:
            raise self._error(f"data_offsets of {key!r} out of order: [{start}, {end}]")
        return start, end

    def _clip_name(self, name: str) -> str:
        raw = name.encode("utf-8")
        if len(raw) <= self._max_name_bytes:
            return name
        clipped = raw[: self._max_name_bytes].decode("utf-8", errors="ignore")
        logger.warning(
            "tensor name longer than %d bytes truncated: %r", self._max_name_bytes, clipped
        )
        return clipped

    # ── tokens ───────────────────────────────────────────────────────────

    def _error(self, message: str) -> HeaderParseError:
        return HeaderParseError(message, position=self._pos)

    def _skip_ws(self) -> None:
        self._pos = _WS.match(self._text, self._pos).end()

    def _peek(self) -> str:
        self._skip_ws()
        return self._text[self._pos] if self._pos < self._end else ""

    def _expect(self, ch: str, what: str) -> None:
        if self._peek() != ch:
            raise self._error(f"expected {what}")
        self._pos += 1

    def _string(self) -> str:
        if self._peek() != '"':
            raise self._error("expected string")
        self._pos += 1
        text = self._text
        parts = []
        while True:
            m = _STRING_RUN.match(text, self._pos)
            parts.append(m.group())
            self._pos = m.end()
            if self._pos >= self._end:
                raise self._error("unterminated string")
            if text[self._pos] == '"':
                self._pos += 1
                return "".join(parts)
            # backslash
            self._pos += 1
            if self._pos >= self._end:
                raise self._error("unterminated string")
            ch = text[self._pos]
            parts.append(_ESCAPES.get(ch, ch))
            self._pos += 1

    def _integer(self) -> int:
        self._skip_ws()
        m = _INT.match(self._text, self._pos)
        if m is None:
            raise self._error("expected integer")
        self._pos = m.end()
        return int(m.group())

    def _int_array(self, what: str) -> list[int]:
        self._expect("[", f"'[' to open {what}")
        values: list[int] = []
        if self._peek() == "]":
            self._pos += 1
            return values
        while True:
            if self._peek() == "":
                raise self._error(f"{what} array missing closing ']'")
            values.append(self._integer())
            ch = self._peek()
            if ch == ",":
                self._pos += 1
            elif ch == "]":
                self._pos += 1
                return values
            elif ch == "":
                raise self._error(f"{what} array missing closing ']'")
            else:
                raise self._error(f"unexpected {ch!r} in {what} array")

    def _skip_value(self) -> None:
        """Advance past one value, stopping before a ``,`` or closing bracket at depth 0."""
        self._skip_ws()
        start = self._pos
        depth = 0
        text = self._text
        while self._pos < self._end:
            ch = text[self._pos]
            if ch == '"':
                self._string()
                continue
            if ch in "{[":
                depth += 1
            elif ch in "}]":
                if depth == 0:
                    break
                depth -= 1
            elif ch == "," and depth == 0:
                break
            self._pos += 1
        if depth:
            raise self._error("unbalanced brackets in skipped value")
        if self._pos == start:
            raise self._error("expected value")


def parse_header(
    header: bytes | bytearray | memoryview | str,
    *,
    max_name_bytes: int = MAX_NAME_BYTES,
) -> ParsedHeader:
    """Parse header text into tensor descriptors (in file order).

    Raises :class:`HeaderParseError` on malformed input; no partial
    result is ever returned.
    """
    if isinstance(header, str):
        text = header
    else:
        try:
            text = bytes(header).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HeaderParseError("header is not valid UTF-8", position=exc.start) from exc
    return _HeaderParser(text, max_name_bytes).parse()
