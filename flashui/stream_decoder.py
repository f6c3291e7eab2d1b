from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional

log = logging.getLogger(__name__)


def _match_brace(text: str, start: int) -> int:
    """Return the index of the ``}`` closing the ``{`` at ``start``, or -1.

    Braces inside JSON string literals are skipped, so markup such as
    ``"<style>.a{color:red}</style>"`` inside a value does not end the frame
    early. A stray quote inside a malformed frame can keep the scan open; such
    frames are dropped at end of input.
    """
    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


class FrameBuffer:
    """Growing text buffer that hands out complete JSON objects.

    ``feed`` appends a fragment and returns every frame that became complete.
    A candidate that fails to parse is left in place and the search resumes
    one character after its opening brace. An unclosed candidate stops the
    scan until more text arrives. ``close`` treats unclosed candidates as
    malformed, tries any later opening braces, then discards the rest.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, fragment: Optional[str]) -> List[Any]:
        if not isinstance(fragment, str) or not fragment:
            return []
        self._buffer += fragment
        return self._drain(final=False)

    def close(self) -> List[Any]:
        frames = self._drain(final=True)
        if self._buffer.strip():
            log.debug("stream_decoder: discarding %d trailing chars", len(self._buffer))
        self._buffer = ""
        return frames

    def _drain(self, final: bool) -> List[Any]:
        frames: List[Any] = []
        start = self._buffer.find("{")
        while start != -1:
            end = _match_brace(self._buffer, start)
            if end == -1:
                if not final:
                    break
                start = self._buffer.find("{", start + 1)
                continue
            candidate = self._buffer[start : end + 1]
            try:
                value = json.loads(candidate)
            except ValueError:
                log.debug("stream_decoder: skipping malformed frame at offset %d", start)
                start = self._buffer.find("{", start + 1)
                continue
            frames.append(value)
            self._buffer = self._buffer[end + 1 :]
            start = self._buffer.find("{")
        if "{" not in self._buffer:
            # Nothing here can start a frame
            self._buffer = ""
        return frames


async def decode_frames(fragments: AsyncIterable[Optional[str]]) -> AsyncIterator[Any]:
    """Yield JSON objects from an async stream of text fragments as soon as each closes."""
    buffer = FrameBuffer()
    async for fragment in fragments:
        for frame in buffer.feed(fragment):
            yield frame
    for frame in buffer.close():
        yield frame


def iter_frames(fragments: Iterable[Optional[str]]) -> Iterator[Any]:
    """Synchronous twin of ``decode_frames``."""
    buffer = FrameBuffer()
    for fragment in fragments:
        yield from buffer.feed(fragment)
    yield from buffer.close()
