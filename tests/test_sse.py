"""
Tests for the client-side SSE decoder and typed stream events.
"""
import asyncio
import json

import pytest

from chatclient.events import (
    DEFAULT_SILENCE_MESSAGE,
    CitationsEvent,
    ConfidenceEvent,
    DoneEvent,
    ErrorEvent,
    MetadataEvent,
    SilenceEvent,
    StatusEvent,
    TokenEvent,
    UnknownEvent,
    decode_event,
    extract_answer,
)
from chatclient.sse import Frame, FrameDecoder, iter_events, parse_frame


async def collect(chunks):
    async def source():
        for chunk in chunks:
            yield chunk

    return [event async for event in iter_events(source())]


# ============================================================================
# Framing
# ============================================================================

class TestFrameDecoder:
    """Tests for turning byte chunks into frames."""

    def test_single_frame(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'event: token\ndata: {"text": "hi"}\n\n') == [
            Frame(event='token', data='{"text": "hi"}')
        ]

    def test_frame_split_across_reads(self):
        """Should buffer until the blank line arrives."""
        decoder = FrameDecoder()

        assert decoder.feed(b'event: tok') == []
        assert decoder.feed(b'en\ndata: {"text"') == []
        assert decoder.feed(b': "hi"}\n\n') == [Frame(event='token', data='{"text": "hi"}')]

    def test_crlf_split_between_reads(self):
        """Should treat a CRLF split across reads as one line break."""
        decoder = FrameDecoder()

        assert decoder.feed(b'data: {}\r') == []
        assert decoder.feed(b'\n\r\n') == [Frame(event=None, data='{}')]

    def test_multibyte_character_split(self):
        """Should not corrupt a UTF-8 character split between reads."""
        encoded = 'data: {"text": "café"}\n\n'.encode('utf-8')
        cut = encoded.index(b'\xa9')
        decoder = FrameDecoder()

        assert decoder.feed(encoded[:cut]) == []
        assert decoder.feed(encoded[cut:]) == [Frame(event=None, data='{"text": "café"}')]

    def test_multiple_frames_in_one_read(self):
        decoder = FrameDecoder()
        frames = decoder.feed(b'data: 1\n\ndata: 2\n\n')
        assert [f.data for f in frames] == ['1', '2']

    def test_close_flushes_unterminated_frame(self):
        decoder = FrameDecoder()
        decoder.feed(b'event: done\ndata: {}')
        assert decoder.close() == [Frame(event='done', data='{}')]

    def test_multiline_data(self):
        assert parse_frame('data: line1\ndata: line2').data == 'line1\nline2'

    def test_comments_and_done_sentinel_ignored(self):
        assert parse_frame(': keep-alive') is None
        assert parse_frame('data: [DONE]') is None


# ============================================================================
# Event decoding
# ============================================================================

class TestDecodeEvent:
    """Tests for frame -> typed event."""

    def test_status(self):
        assert decode_event('status', '{"stage": "retrieving"}') == StatusEvent({'stage': 'retrieving'})

    def test_token(self):
        assert decode_event('token', '{"text": "Two "}') == TokenEvent('Two ')

    def test_unlabeled_text_is_token(self):
        assert decode_event(None, '{"text": "hi"}') == TokenEvent('hi')

    def test_citations(self):
        event = decode_event('citations', json.dumps([
            {'documentId': 'doc-1', 'excerpt': 'Term is two years', 'relevanceScore': 0.9}
        ]))

        assert isinstance(event, CitationsEvent)
        assert event.citations[0].document_id == 'doc-1'
        assert event.citations[0].relevance_score == 0.9
        assert event.citations[0].index == 0

    def test_wrapped_citations(self):
        event = decode_event('citations', '{"citations": [{"document_id": 5, "snippet": "x"}]}')
        assert event.citations[0].document_id == '5'

    def test_confidence(self):
        event = decode_event('confidence', '{"score": 0.8, "modelUsed": "gpt-4o", "latencyMs": 900}')
        assert event == ConfidenceEvent(score=0.8, model_used='gpt-4o', provider=None, latency_ms=900)

    def test_silence_default_message(self):
        assert decode_event('silence', '{"confidence": 0.2}') == SilenceEvent(DEFAULT_SILENCE_MESSAGE, 0.2)

    def test_metadata(self):
        event = decode_event('metadata', '{"model_used": "m", "provider": "openrouter", "latency_ms": 5}')
        assert event == MetadataEvent(model_used='m', provider='openrouter', latency_ms=5)

    def test_error(self):
        assert decode_event('error', '{"message": "boom", "canRetry": false}') == ErrorEvent('boom', False)

    def test_done_with_answer_and_metadata(self):
        event = decode_event('done', json.dumps({
            'data': {'answer': 'Two years.', 'modelUsed': 'gpt-4o', 'citations': []},
        }))

        assert isinstance(event, DoneEvent)
        assert event.answer == 'Two years.'
        assert event.metadata == {'modelUsed': 'gpt-4o'}
        assert event.citations == ()

    def test_unknown_label(self):
        assert decode_event('ping', '{"n": 1}') == UnknownEvent('ping', {'n': 1})

    def test_malformed_json(self):
        assert decode_event('token', '{not json') is None

    @pytest.mark.parametrize('payload,expected', [
        ({'answer': 'a'}, 'a'),
        ({'content': 'c'}, 'c'),
        ({'fullText': 'f'}, 'f'),
        ({'data': {'text': 't'}}, 't'),
        ({'answer': '   '}, None),
        ([], None),
    ])
    def test_extract_answer(self, payload, expected):
        assert extract_answer(payload) == expected


class TestIterEvents:
    """Tests for the async event iterator."""

    def test_malformed_frame_skipped(self):
        """Should keep reading after a bad frame."""
        events = asyncio.run(collect([
            b'event: token\ndata: {"text": "A"}\n\n',
            b'event: token\ndata: {broken\n\n',
            b'event: token\ndata: {"text": "B"}\n\n',
        ]))
        assert events == [TokenEvent('A'), TokenEvent('B')]

    def test_trailing_frame_without_blank_line(self):
        events = asyncio.run(collect([b'event: done\ndata: {"answer": "x"}']))
        assert events == [DoneEvent(answer='x', metadata={}, citations=None)]
