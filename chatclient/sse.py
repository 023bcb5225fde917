"""
Incremental server-sent events decoder.

Network reads do not line up with frames, so bytes are buffered until a
blank line closes a frame. Only "event:" and "data:" fields are used.
"""
import codecs
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, List, Optional

from .events import StreamEvent, decode_event


@dataclass(frozen=True)
class Frame:
    event: Optional[str]
    data: str


class FrameDecoder:
    """Turns arbitrary byte chunks into complete frames."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ''

    def feed(self, chunk: bytes) -> List[Frame]:
        text = self._buffer + self._decoder.decode(chunk)
        # A trailing CR may be the first half of a CRLF split across reads
        held = '\r' if text.endswith('\r') else ''
        if held:
            text = text[:-1]
        text = text.replace('\r\n', '\n').replace('\r', '\n')

        blocks = text.split('\n\n')
        self._buffer = blocks.pop() + held
        return [f for f in (parse_frame(b) for b in blocks) if f is not None]

    def close(self) -> List[Frame]:
        """Flush a trailing frame that arrived without its blank line."""
        rest = self._buffer + self._decoder.decode(b'', final=True)
        self._buffer = ''
        frame = parse_frame(rest.replace('\r\n', '\n').replace('\r', '\n'))
        return [frame] if frame is not None else []


def parse_frame(block: str) -> Optional[Frame]:
    event = None
    data_lines = []
    for line in block.split('\n'):
        if not line or line.startswith(':'):
            continue
        name, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]
        if name == 'event':
            event = value.strip() or None
        elif name == 'data':
            data_lines.append(value)

    if not data_lines:
        return None
    data = '\n'.join(data_lines)
    if data.strip() == '[DONE]':
        return None
    return Frame(event=event, data=data)


def frames_to_events(frames: List[Frame]) -> Iterator[StreamEvent]:
    for frame in frames:
        event = decode_event(frame.event, frame.data)
        if event is not None:
            yield event


async def iter_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
    """Decode a byte stream into typed events, skipping malformed frames."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for event in frames_to_events(decoder.feed(chunk)):
            yield event
    for event in frames_to_events(decoder.close()):
        yield event
