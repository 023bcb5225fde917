"""
Typed chat stream events.

Each SSE frame from /api/chat is decoded into exactly one of the event
classes below. Consumers dispatch on the class, so a payload can never be
mistaken for answer text.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

ANSWER_FIELDS = ('answer', 'content', 'text', 'fullText')

# Keys on a done payload that are kept as message metadata
DONE_METADATA_FIELDS = (
    'model_used', 'modelUsed', 'provider', 'latency_ms', 'latencyMs',
    'sources', 'evidence',
    'documents_searched', 'chunks_searched',
    'totalDocumentsSearched', 'totalChunksSearched',
)

DEFAULT_SILENCE_MESSAGE = 'Unable to provide a grounded answer.'


@dataclass(frozen=True)
class Citation:
    document_id: Optional[str]
    excerpt: str
    relevance_score: Optional[float]
    index: int

    @classmethod
    def from_payload(cls, item: Dict[str, Any], position: int) -> 'Citation':
        document_id = item.get('documentId') or item.get('document_id')
        excerpt = item.get('excerpt') or item.get('snippet') or ''
        score = item.get('relevanceScore', item.get('relevance', item.get('score')))
        index = item.get('citationIndex', item.get('index', position))
        return cls(
            document_id=str(document_id) if document_id is not None else None,
            excerpt=str(excerpt),
            relevance_score=float(score) if isinstance(score, (int, float)) else None,
            index=index if isinstance(index, int) else position,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'documentId': self.document_id,
            'excerpt': self.excerpt,
            'relevanceScore': self.relevance_score,
            'index': self.index,
        }


@dataclass(frozen=True)
class StatusEvent:
    payload: Dict[str, Any]


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class CitationsEvent:
    citations: Tuple[Citation, ...]


@dataclass(frozen=True)
class ConfidenceEvent:
    score: Optional[float]
    model_used: Optional[str] = None
    provider: Optional[str] = None
    latency_ms: Optional[int] = None


@dataclass(frozen=True)
class SilenceEvent:
    message: str
    confidence: float


@dataclass(frozen=True)
class MetadataEvent:
    model_used: Optional[str]
    provider: Optional[str]
    latency_ms: Optional[int]


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    can_retry: bool = True


@dataclass(frozen=True)
class DoneEvent:
    answer: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    citations: Optional[Tuple[Citation, ...]] = None


@dataclass(frozen=True)
class UnknownEvent:
    label: Optional[str]
    payload: Any


StreamEvent = Union[
    StatusEvent, TokenEvent, CitationsEvent, ConfidenceEvent, SilenceEvent,
    MetadataEvent, ErrorEvent, DoneEvent, UnknownEvent,
]


def _number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    return float(value) if isinstance(value, (int, float)) else None


def _integer(value) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def _string(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def parse_citations(payload: Any) -> Tuple[Citation, ...]:
    """Accept a bare array or one wrapped as {"citations": [...]}."""
    if isinstance(payload, dict):
        payload = payload.get('citations')
    if not isinstance(payload, list):
        return ()
    return tuple(
        Citation.from_payload(item, i)
        for i, item in enumerate(payload)
        if isinstance(item, dict)
    )


def extract_answer(payload: Any) -> Optional[str]:
    """
    Find the prose answer in a done/JSON payload.

    Looks at the flat shape first, then under a "data" wrapper, across the
    field names the backend has used over time.
    """
    if not isinstance(payload, dict):
        return None
    for source in (payload, payload.get('data')):
        if not isinstance(source, dict):
            continue
        for name in ANSWER_FIELDS:
            value = source.get(name)
            if isinstance(value, str) and value.strip():
                return value
    return None


def _done_metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    metadata = {}
    for source in (payload, payload.get('data')):
        if isinstance(source, dict):
            for name in DONE_METADATA_FIELDS:
                if name in source and name not in metadata:
                    metadata[name] = source[name]
    return metadata


def _done_citations(payload: Dict[str, Any]) -> Optional[Tuple[Citation, ...]]:
    for source in (payload, payload.get('data')):
        if isinstance(source, dict) and isinstance(source.get('citations'), list):
            return parse_citations(source['citations'])
    return None


def decode_event(label: Optional[str], data: str) -> Optional[StreamEvent]:
    """
    Build the typed event for one frame.

    Returns None for frames whose data is not valid JSON; the caller skips
    them and keeps reading.
    """
    try:
        payload = json.loads(data)
    except ValueError:
        logger.debug(f"Skipping malformed {label or 'unlabeled'} frame")
        return None

    obj = payload if isinstance(payload, dict) else {}

    if label == 'status':
        return StatusEvent(payload=obj)
    if label == 'token':
        text = obj.get('text')
        return TokenEvent(text=text) if isinstance(text, str) else UnknownEvent(label, payload)
    if label == 'citations':
        return CitationsEvent(citations=parse_citations(payload))
    if label == 'confidence':
        score = obj.get('score', obj.get('confidence'))
        return ConfidenceEvent(
            score=_number(score),
            model_used=_string(obj.get('modelUsed') or obj.get('model_used')),
            provider=_string(obj.get('provider')),
            latency_ms=_integer(obj.get('latencyMs', obj.get('latency_ms'))),
        )
    if label == 'silence':
        message = obj.get('message')
        return SilenceEvent(
            message=message if isinstance(message, str) and message else DEFAULT_SILENCE_MESSAGE,
            confidence=_number(obj.get('confidence')) or 0.0,
        )
    if label == 'metadata':
        return MetadataEvent(
            model_used=_string(obj.get('model_used') or obj.get('modelUsed')),
            provider=_string(obj.get('provider')),
            latency_ms=_integer(obj.get('latency_ms', obj.get('latencyMs'))),
        )
    if label == 'error':
        message = obj.get('message') or obj.get('error')
        return ErrorEvent(
            message=message if isinstance(message, str) and message else 'The response stream failed.',
            can_retry=obj.get('canRetry', True) is not False,
        )
    if label == 'done':
        return DoneEvent(
            answer=extract_answer(obj),
            metadata=_done_metadata(obj),
            citations=_done_citations(obj),
        )

    # Older backends sent bare {"text": ...} frames
    text = obj.get('text')
    if isinstance(text, str):
        return TokenEvent(text=text)
    return UnknownEvent(label=label, payload=payload)
