"""
Chat session state and its transitions.

SessionState is immutable. Every transition is a pure function that takes
a state (plus whatever ids/timestamps it needs) and returns a new one; the
network and timers live in chatclient.session.

    idle -> sending -> streaming -> complete | error | aborted -> idle
"""
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type

from .events import (
    CitationsEvent,
    Citation,
    ConfidenceEvent,
    DoneEvent,
    ErrorEvent,
    MetadataEvent,
    SilenceEvent,
    StatusEvent,
    StreamEvent,
    TokenEvent,
    UnknownEvent,
    extract_answer,
)

EMPTY_RESPONSE = 'No response generated.'
STOP_MARKER = '\n\n[Query stopped by user]'
GENERIC_ERROR = 'An error occurred while processing your request. Please try again.'


class Phase(str, Enum):
    IDLE = 'idle'
    SENDING = 'sending'
    STREAMING = 'streaming'
    COMPLETE = 'complete'
    ERROR = 'error'
    ABORTED = 'aborted'


BUSY_PHASES = (Phase.SENDING, Phase.STREAMING)


@dataclass(frozen=True)
class ChatMessage:
    id: str
    role: str
    content: str
    timestamp: float
    confidence: Optional[float] = None
    citations: Tuple[Citation, ...] = ()
    model_used: Optional[str] = None
    provider: Optional[str] = None
    latency_ms: Optional[int] = None
    is_error: bool = False
    can_retry: Optional[bool] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_history(self) -> Dict[str, str]:
        return {'role': self.role, 'content': self.content}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'role': self.role,
            'content': self.content,
            'timestamp': self.timestamp,
            'confidence': self.confidence,
            'citations': [c.to_dict() for c in self.citations],
            'modelUsed': self.model_used,
            'provider': self.provider,
            'latencyMs': self.latency_ms,
            'isError': self.is_error,
            'metadata': dict(self.metadata),
        }


@dataclass(frozen=True)
class ConfirmationRequest:
    tool_call_id: str
    tool_name: str
    payload: Mapping[str, Any]
    severity: str
    message: str
    expires_at: float  # absolute wall-clock deadline (epoch seconds)

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class TurnBuffer:
    """What has been received so far for the in-flight answer."""
    content: str = ''
    citations: Tuple[Citation, ...] = ()
    confidence: Optional[float] = None
    model_used: Optional[str] = None
    provider: Optional[str] = None
    latency_ms: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    silenced: bool = False
    closed: bool = False  # a done event arrived
    error: Optional[ErrorEvent] = None


@dataclass(frozen=True)
class SessionState:
    phase: Phase = Phase.IDLE
    messages: Tuple[ChatMessage, ...] = ()
    turn: TurnBuffer = TurnBuffer()
    confirmation: Optional[ConfirmationRequest] = None
    title: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.phase in BUSY_PHASES

    @property
    def streaming_content(self) -> str:
        return self.turn.content

    def history(self) -> list:
        """Conversation history in the shape /api/chat expects."""
        return [m.to_history() for m in self.messages if not m.is_error]


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

def _on_status(turn: TurnBuffer, event: StatusEvent) -> TurnBuffer:
    return turn


def _on_token(turn: TurnBuffer, event: TokenEvent) -> TurnBuffer:
    if turn.silenced or turn.closed:
        return turn
    return replace(turn, content=turn.content + event.text)


def _on_citations(turn: TurnBuffer, event: CitationsEvent) -> TurnBuffer:
    return replace(turn, citations=event.citations)


def _on_confidence(turn: TurnBuffer, event: ConfidenceEvent) -> TurnBuffer:
    return replace(
        turn,
        confidence=event.score if event.score is not None else turn.confidence,
        model_used=event.model_used or turn.model_used,
        provider=event.provider or turn.provider,
        latency_ms=event.latency_ms if event.latency_ms is not None else turn.latency_ms,
    )


def _on_silence(turn: TurnBuffer, event: SilenceEvent) -> TurnBuffer:
    return replace(turn, content=event.message, confidence=event.confidence, silenced=True)


def _on_metadata(turn: TurnBuffer, event: MetadataEvent) -> TurnBuffer:
    return replace(
        turn,
        model_used=event.model_used or turn.model_used,
        provider=event.provider or turn.provider,
        latency_ms=event.latency_ms if event.latency_ms is not None else turn.latency_ms,
    )


def _on_error(turn: TurnBuffer, event: ErrorEvent) -> TurnBuffer:
    return replace(turn, error=event)


def _on_done(turn: TurnBuffer, event: DoneEvent) -> TurnBuffer:
    metadata = dict(turn.metadata)
    metadata.update(event.metadata)
    updated = replace(turn, metadata=metadata, closed=True)
    if event.answer is not None and not turn.silenced:
        updated = replace(updated, content=event.answer)
    if event.citations and not turn.citations:
        updated = replace(updated, citations=event.citations)
    return updated


def _on_unknown(turn: TurnBuffer, event: UnknownEvent) -> TurnBuffer:
    return turn


EVENT_REDUCERS: Dict[Type, Callable[[TurnBuffer, Any], TurnBuffer]] = {
    StatusEvent: _on_status,
    TokenEvent: _on_token,
    CitationsEvent: _on_citations,
    ConfidenceEvent: _on_confidence,
    SilenceEvent: _on_silence,
    MetadataEvent: _on_metadata,
    ErrorEvent: _on_error,
    DoneEvent: _on_done,
    UnknownEvent: _on_unknown,
}


def apply_event(state: SessionState, event: StreamEvent) -> SessionState:
    """Fold one stream event into the in-flight turn."""
    reducer = EVENT_REDUCERS.get(type(event))
    if reducer is None:
        raise TypeError(f"No reducer for stream event {type(event).__name__}")
    return replace(state, turn=reducer(state.turn, event))


# ---------------------------------------------------------------------------
# Turn lifecycle
# ---------------------------------------------------------------------------

def prose(text: str) -> str:
    """
    Return the prose of a finished answer.

    If a whole JSON envelope ended up in the buffer, its answer field is
    used instead of the serialized object.
    """
    stripped = text.strip()
    if stripped.startswith('{') and stripped.endswith('}'):
        try:
            answer = extract_answer(json.loads(stripped))
        except ValueError:
            return text
        if answer is not None:
            return answer
    return text


def begin_send(state: SessionState, message: ChatMessage) -> SessionState:
    return replace(
        state,
        phase=Phase.SENDING,
        messages=state.messages + (message,),
        turn=TurnBuffer(),
    )


def begin_stream(state: SessionState) -> SessionState:
    return replace(state, phase=Phase.STREAMING)


def error_message(message_id: str, now: float, content: Optional[str] = None,
                  can_retry: Optional[bool] = True) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        role='assistant',
        content=content or GENERIC_ERROR,
        timestamp=now,
        is_error=True,
        can_retry=can_retry,
    )


def finish_stream(state: SessionState, message_id: str, now: float) -> SessionState:
    """
    Finalize the streamed answer.

    A stream that only produced an error event ends in the error phase;
    otherwise the buffer (or a placeholder) becomes the assistant message.
    """
    turn = state.turn
    if turn.error is not None and not turn.content:
        return fail_turn(state, error_message(
            message_id, now, turn.error.message, turn.error.can_retry
        ))

    message = ChatMessage(
        id=message_id,
        role='assistant',
        content=prose(turn.content) or EMPTY_RESPONSE,
        timestamp=now,
        confidence=turn.confidence,
        citations=turn.citations,
        model_used=turn.model_used,
        provider=turn.provider,
        latency_ms=turn.latency_ms,
        metadata=dict(turn.metadata),
    )
    return complete_turn(state, message)


def complete_turn(state: SessionState, message: ChatMessage) -> SessionState:
    return replace(
        state,
        phase=Phase.COMPLETE,
        messages=state.messages + (message,),
        turn=TurnBuffer(),
    )


def fail_turn(state: SessionState, message: ChatMessage) -> SessionState:
    return replace(
        state,
        phase=Phase.ERROR,
        messages=state.messages + (message,),
        turn=TurnBuffer(),
    )


def abort_turn(state: SessionState, message_id: str, now: float) -> SessionState:
    """Keep partial content (with a stop marker); add nothing if there was none."""
    messages = state.messages
    partial = state.turn.content
    if partial:
        messages = messages + (ChatMessage(
            id=message_id,
            role='assistant',
            content=prose(partial) + STOP_MARKER,
            timestamp=now,
            confidence=state.turn.confidence,
            citations=state.turn.citations,
            model_used=state.turn.model_used,
            provider=state.turn.provider,
            latency_ms=state.turn.latency_ms,
        ),)
    return replace(state, phase=Phase.ABORTED, messages=messages, turn=TurnBuffer())


def settle(state: SessionState) -> SessionState:
    return replace(state, phase=Phase.IDLE, turn=TurnBuffer())


def append_message(state: SessionState, message: ChatMessage) -> SessionState:
    return replace(state, messages=state.messages + (message,))


def request_confirmation(state: SessionState, request: ConfirmationRequest) -> SessionState:
    if state.confirmation is not None:
        raise ValueError("A confirmation is already pending")
    return replace(state, confirmation=request)


def clear_confirmation(state: SessionState) -> SessionState:
    return replace(state, confirmation=None)


def set_title(state: SessionState, title: str) -> SessionState:
    return replace(state, title=title)
