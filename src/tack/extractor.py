"""Incremental extraction of invocation blocks from model output.

Model output is narration interleaved with blocks such as::

    <invoke name="fs.read">
      <arg name="path">README.md</arg>
    </invoke>

The extractor is fed fragments as they stream in. It keeps only the text it
cannot decide yet (an open block, or a partial ``<invoke`` at the end of a
fragment) and emits everything else in source order.
"""

from __future__ import annotations

import html
import json
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from tack.types import InvocationRequest, MalformedRequest, SourceSpan

OPEN_TAG = "<invoke"
CLOSE_TAG = "</invoke>"
ARG_CLOSE_TAG = "</arg>"
CDATA_OPEN = "<![CDATA["
CDATA_CLOSE = "]]>"

OPEN_TAG_RE = re.compile(r"<invoke(?P<attrs>[^>]*?)(?P<selfclose>/?)>", re.DOTALL)
ATTR_RE = re.compile(r"""([A-Za-z_][\w.-]*)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
ARG_OPEN_RE = re.compile(r"""<arg\s+name\s*=\s*(?:"([^"]*)"|'([^']*)')\s*(/?)>""")
WHITESPACE_RE = re.compile(r"\s*")
MAX_SNIPPET = 40


@dataclass(frozen=True)
class TextSegment:
    """Plain narration between blocks."""

    text: str
    source_span: SourceSpan


ExtractedRequest = InvocationRequest | MalformedRequest
Segment = TextSegment | InvocationRequest | MalformedRequest


@dataclass(frozen=True)
class Extraction:
    """Segments decided by one ``feed`` or ``close`` call, in source order."""

    segments: tuple[Segment, ...] = ()

    @property
    def requests(self) -> list[ExtractedRequest]:
        return [segment for segment in self.segments if not isinstance(segment, TextSegment)]

    @property
    def text(self) -> str:
        return "".join(segment.text for segment in self.segments if isinstance(segment, TextSegment))


class _BlockError(ValueError):
    pass


class RequestExtractor:
    """Scans streamed model text for invocation blocks."""

    def __init__(self, *, id_prefix: str = "req") -> None:
        self._id_prefix = id_prefix
        self._buffer = ""
        self._offset = 0
        self._in_block = False
        self._next_index = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, fragment: str) -> Extraction:
        if self._closed:
            raise RuntimeError("extractor is closed")
        self._buffer += fragment
        return Extraction(tuple(self._drain(final=False)))

    def close(self) -> Extraction:
        """Flush held-back text; an open block is reported as malformed."""

        if self._closed:
            return Extraction()
        segments = list(self._drain(final=True))
        if self._in_block:
            raw = self._buffer
            segments.append(
                self._malformed(
                    "unterminated invoke block",
                    raw,
                    start=self._offset,
                    capability_name=_peek_name(raw),
                )
            )
            self._advance(len(raw))
            self._in_block = False
        self._closed = True
        return Extraction(tuple(segments))

    def _drain(self, *, final: bool) -> Iterator[Segment]:
        while True:
            if not self._in_block:
                index, safe = self._locate_open(final=final)
                if safe > 0:
                    yield TextSegment(self._buffer[:safe], SourceSpan(self._offset, self._offset + safe))
                    self._advance(safe)
                if index is None:
                    return
                self._in_block = True
                continue

            end = self._locate_close()
            if end is None:
                return
            raw = self._buffer[:end]
            yield self._parse_block(raw, start=self._offset)
            self._advance(end)
            self._in_block = False

    def _advance(self, count: int) -> None:
        self._buffer = self._buffer[count:]
        self._offset += count

    def _locate_open(self, *, final: bool) -> tuple[int | None, int]:
        """Return (block start, length of text that is safe to emit)."""

        buffer = self._buffer
        search = 0
        while True:
            index = buffer.find(OPEN_TAG, search)
            if index < 0:
                break
            after = index + len(OPEN_TAG)
            if after >= len(buffer):
                if final:
                    return None, len(buffer)
                return None, index
            if buffer[after].isspace() or buffer[after] in ">/":
                return index, index
            search = index + 1

        if final:
            return None, len(buffer)
        return None, len(buffer) - _partial_suffix(buffer, OPEN_TAG)

    def _locate_close(self) -> int | None:
        """Return the end offset of the open block, or None while it is still open."""

        buffer = self._buffer
        header_end = buffer.find(">", len(OPEN_TAG))
        if header_end < 0:
            return None
        if buffer[header_end - 1] == "/":
            return header_end + 1

        position = header_end + 1
        while True:
            cdata = buffer.find(CDATA_OPEN, position)
            close = buffer.find(CLOSE_TAG, position)
            if cdata >= 0 and (close < 0 or cdata < close):
                cdata_end = buffer.find(CDATA_CLOSE, cdata + len(CDATA_OPEN))
                if cdata_end < 0:
                    return None
                position = cdata_end + len(CDATA_CLOSE)
                continue
            if close < 0:
                return None
            return close + len(CLOSE_TAG)

    def _parse_block(self, raw: str, *, start: int) -> ExtractedRequest:
        match = OPEN_TAG_RE.match(raw)
        if match is None:
            return self._malformed("invalid invoke tag", raw, start=start)

        attrs = _parse_attributes(match.group("attrs"))
        name = attrs.get("name", "").strip()
        if not name:
            return self._malformed("invoke block is missing a capability name", raw, start=start)

        if match.group("selfclose"):
            body = ""
        else:
            body = raw[match.end() : len(raw) - len(CLOSE_TAG)]

        try:
            arguments = _parse_body(body)
        except _BlockError as exc:
            return self._malformed(str(exc), raw, start=start, capability_name=name)

        index = self._take_index()
        return InvocationRequest(
            capability_name=name,
            raw_arguments=arguments,
            source_span=SourceSpan(start, start + len(raw)),
            sequence_index=index,
            request_id=f"{self._id_prefix}.{index}",
            raw_text=raw,
        )

    def _malformed(
        self,
        reason: str,
        raw: str,
        *,
        start: int,
        capability_name: str | None = None,
    ) -> MalformedRequest:
        index = self._take_index()
        return MalformedRequest(
            reason=reason,
            raw_text=raw,
            source_span=SourceSpan(start, start + len(raw)),
            sequence_index=index,
            request_id=f"{self._id_prefix}.{index}",
            capability_name=capability_name,
        )

    def _take_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index


def extract_all(text: str, *, id_prefix: str = "req") -> Extraction:
    """Extract from a completed string in one go."""

    extractor = RequestExtractor(id_prefix=id_prefix)
    first = extractor.feed(text)
    rest = extractor.close()
    return Extraction(first.segments + rest.segments)


def _partial_suffix(buffer: str, token: str) -> int:
    for size in range(min(len(token) - 1, len(buffer)), 0, -1):
        if buffer.endswith(token[:size]):
            return size
    return 0


def _parse_attributes(text: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in ATTR_RE.finditer(text):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1)] = html.unescape(value or "")
    return attrs


def _peek_name(raw: str) -> str | None:
    header_end = raw.find(">")
    header = raw if header_end < 0 else raw[: header_end + 1]
    name = _parse_attributes(header).get("name", "").strip()
    return name or None


def _parse_body(body: str) -> dict[str, Any]:
    stripped = body.strip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise _BlockError(f"invalid JSON arguments: {exc.msg}") from exc
        except (ValueError, RecursionError) as exc:
            raise _BlockError("invalid JSON arguments: number or nesting out of range") from exc
        if not isinstance(payload, dict):
            raise _BlockError("JSON arguments must be an object")
        return payload

    arguments: dict[str, Any] = {}
    position = 0
    while True:
        position = WHITESPACE_RE.match(body, position).end()  # type: ignore[union-attr]
        if position >= len(body):
            return arguments
        match = ARG_OPEN_RE.match(body, position)
        if match is None:
            snippet = body[position : position + MAX_SNIPPET]
            raise _BlockError(f"unexpected text in invoke body: {snippet!r}")
        raw_key = match.group(1) if match.group(1) is not None else match.group(2)
        key = html.unescape(raw_key or "").strip()
        if not key:
            raise _BlockError("arg is missing a name")
        if key in arguments:
            raise _BlockError(f"duplicate arg: {key}")
        if match.group(3):
            arguments[key] = ""
            position = match.end()
            continue
        arguments[key], position = _read_value(body, match.end(), key)


def _read_value(body: str, position: int, key: str) -> tuple[str, int]:
    parts: list[str] = []
    while True:
        cdata = body.find(CDATA_OPEN, position)
        close = body.find(ARG_CLOSE_TAG, position)
        if cdata >= 0 and (close < 0 or cdata < close):
            parts.append(html.unescape(body[position:cdata]))
            cdata_end = body.find(CDATA_CLOSE, cdata + len(CDATA_OPEN))
            if cdata_end < 0:
                raise _BlockError(f"unterminated CDATA in arg: {key}")
            parts.append(body[cdata + len(CDATA_OPEN) : cdata_end])
            position = cdata_end + len(CDATA_CLOSE)
            continue
        if close < 0:
            raise _BlockError(f"unterminated arg: {key}")
        parts.append(html.unescape(body[position:close]))
        return "".join(parts), close + len(ARG_CLOSE_TAG)
