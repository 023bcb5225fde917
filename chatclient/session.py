"""
Chat session orchestration.

ChatSession owns one conversation: it routes each utterance to a local
tool or to /api/chat, consumes the JSON or SSE answer, supports stopping
mid-stream and gates side-effecting tools behind a confirmation. All
state changes go through the pure transitions in chatclient.state.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from .config import ClientSettings
from .confirmation import (
    BUSY_MESSAGE,
    CANCELLED_MESSAGE,
    EXPIRED_MESSAGE,
    ConfirmationGate,
    Resolution,
    keyword_resolution,
    pending_action,
)
from .events import extract_answer, parse_citations
from .sse import iter_events
from .state import (
    EMPTY_RESPONSE,
    GENERIC_ERROR,
    ChatMessage,
    SessionState,
    abort_turn,
    append_message,
    apply_event,
    begin_send,
    begin_stream,
    complete_turn,
    error_message,
    fail_turn,
    finish_stream,
    request_confirmation,
    set_title,
    settle,
)
from .tools import ToolExecutor, ToolIntent, ToolResult, detect_tool_intent

logger = logging.getLogger(__name__)

AEGIS_MODEL = 'aegis'
TITLE_FALLBACK_LENGTH = 50


def _new_id() -> str:
    return uuid.uuid4().hex


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class ChatSession:
    """
    One conversation with the vault.

    Args:
        settings: Client settings; read from the environment if omitted
        client: Async HTTP client to use (the session closes it only if it
            created it)
        model: 'aegis' for the platform model, anything else selects
            BYOLLM with that model id
        clock: Wall-clock source, used for timestamps and deadlines
        id_factory: Message id generator
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        model: str = AEGIS_MODEL,
        privilege_mode: bool = False,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = _new_id,
    ):
        self.settings = settings or ClientSettings.from_env()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.timeout)
        self._executor = ToolExecutor(self._client, self.settings)
        self._gate = ConfirmationGate(ttl=self.settings.confirmation_ttl, clock=clock)
        self._clock = clock
        self._new_id = id_factory

        self.selected_model = model
        self.privilege_mode = privilege_mode
        self.thread_id: Optional[str] = None
        self.state = SessionState()

        self._inflight: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[SessionState], None]] = []
        self._actions: List[Any] = []
        self._exchanged = False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[SessionState], None]):
        """Call listener with every new state (including each streamed token)."""
        self._listeners.append(listener)

    def _set(self, state: SessionState):
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    def drain_actions(self) -> list:
        """UI actions produced by tools since the last call."""
        actions, self._actions = self._actions, []
        return actions

    @property
    def busy(self) -> bool:
        return self._inflight is not None or self.state.busy

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def submit(self, text: str) -> SessionState:
        """
        Handle one user utterance.

        Empty text and submissions while a turn is in flight are ignored.
        While a confirmation is pending, confirm/cancel keywords resolve it
        instead of being sent.
        """
        text = (text or '').strip()
        if not text or self.busy:
            return self.state

        if self.state.confirmation is not None:
            resolution = keyword_resolution(text)
            if resolution is Resolution.CONFIRMED:
                return await self.confirm()
            if resolution is Resolution.DENIED:
                return self.deny()

        intent = detect_tool_intent(text)
        if intent is not None:
            coro = self._run_tool(text, intent)
        else:
            coro = self._run_query(text)

        self._stop_requested = False
        self._inflight = asyncio.ensure_future(coro)
        try:
            await self._inflight
        except asyncio.CancelledError:
            if not self._stop_requested:
                raise
        finally:
            self._inflight = None
        return self.state

    def stop(self) -> bool:
        """Cancel the in-flight turn. Returns False if nothing was running."""
        if self._inflight is None or self._inflight.done():
            return False
        self._stop_requested = True
        self._inflight.cancel()
        return True

    def _payload(self, text: str, history: List[Dict[str, str]]) -> Dict[str, Any]:
        payload = {
            'query': text,
            'history': history,
            'stream': True,
            'privilegeMode': self.privilege_mode,
        }
        if self.selected_model and self.selected_model != AEGIS_MODEL:
            payload['llmProvider'] = 'byollm'
            payload['llmModel'] = self.selected_model
        return payload

    async def _run_query(self, text: str):
        history = self.state.history()
        user = ChatMessage(id=self._new_id(), role='user', content=text, timestamp=self._clock())
        self._set(begin_send(self.state, user))

        try:
            await self._exchange(self._payload(text, history))
        except asyncio.CancelledError:
            self._set(settle(abort_turn(self.state, self._new_id(), self._clock())))
            logger.info("Query stopped by user")
            raise

        self._set(settle(self.state))
        self._after_exchange(text)

    async def _exchange(self, payload: Dict[str, Any]):
        request = self._client.build_request(
            'POST',
            self._url(self.settings.chat_path),
            json=payload,
            headers=self.settings.headers(),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning(f"Chat request failed: {e}")
            self._fail(GENERIC_ERROR, True)
            return

        try:
            content_type = response.headers.get('content-type', '')
            if not response.is_success or 'application/json' in content_type:
                await self._consume_json(response)
            else:
                await self._consume_stream(response)
        except httpx.HTTPError as e:
            logger.warning(f"Chat stream interrupted: {e}")
            self._fail(GENERIC_ERROR, True)
        finally:
            await response.aclose()

    async def _consume_stream(self, response: httpx.Response):
        self._set(begin_stream(self.state))
        async for event in iter_events(response.aiter_bytes()):
            self._set(apply_event(self.state, event))
        self._set(finish_stream(self.state, self._new_id(), self._clock()))

    async def _consume_json(self, response: httpx.Response):
        raw = await response.aread()
        try:
            body = json.loads(raw)
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning(f"Unreadable chat response (status {response.status_code})")
            self._fail(GENERIC_ERROR, True)
            return

        if not response.is_success or body.get('success') is False:
            message = body.get('response') or body.get('error')
            self._fail(message if isinstance(message, str) else GENERIC_ERROR,
                       body.get('canRetry', True) is not False)
            return

        data = body.get('data') if isinstance(body.get('data'), dict) else body
        answer = extract_answer(body) or ''
        latency = _number(data.get('latencyMs', data.get('latency_ms')))
        message = ChatMessage(
            id=self._new_id(),
            role='assistant',
            content=answer or EMPTY_RESPONSE,
            timestamp=self._clock(),
            confidence=_number(data.get('confidence')),
            citations=parse_citations(data.get('citations')),
            model_used=data.get('modelUsed') or data.get('model_used'),
            provider=data.get('provider'),
            latency_ms=int(latency) if latency is not None else None,
        )
        self._set(complete_turn(self.state, message))

    def _fail(self, content: str, can_retry: bool):
        self._set(fail_turn(self.state, error_message(
            self._new_id(), self._clock(), content, can_retry
        )))

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}{path}"

    # ------------------------------------------------------------------
    # Tools and confirmations
    # ------------------------------------------------------------------

    async def _run_tool(self, text: str, intent: ToolIntent):
        logger.info(f"Routing to tool {intent.tool}")
        self._append('user', text)
        result = await self._executor.execute(intent)

        if result.requires_confirmation:
            if self.state.confirmation is not None:
                self._append('assistant', BUSY_MESSAGE)
                return
            request = self._gate.create(result.pending)
            self._set(request_confirmation(self.state, request))
            self._gate.arm(request, self._on_expired)

        self._show_result(result)

    async def confirm(self, tool_call_id: Optional[str] = None) -> SessionState:
        """Approve the pending action and run it (at most once)."""
        state, request, resolution = self._gate.claim(self.state, tool_call_id, Resolution.CONFIRMED)
        if request is None:
            return self.state
        self._set(state)
        if resolution is Resolution.EXPIRED:
            self._append('assistant', EXPIRED_MESSAGE)
            return self.state

        result = await self._executor.run_confirmed(pending_action(request))
        self._show_result(result)
        return self.state

    def deny(self, tool_call_id: Optional[str] = None) -> SessionState:
        state, request, _ = self._gate.claim(self.state, tool_call_id, Resolution.DENIED)
        if request is None:
            return self.state
        self._set(state)
        self._append('assistant', CANCELLED_MESSAGE)
        return self.state

    def _on_expired(self, tool_call_id: str):
        state, request, _ = self._gate.claim(self.state, tool_call_id, Resolution.EXPIRED)
        if request is None:
            return
        self._set(state)
        self._append('assistant', EXPIRED_MESSAGE)

    def _show_result(self, result: ToolResult):
        if result.action is not None:
            if result.action.type == 'toggle_privilege':
                self.privilege_mode = bool(result.action.payload.get('enabled'))
            self._actions.append(result.action)
        self._append('assistant', result.display, is_error=not result.success)

    def _append(self, role: str, content: str, is_error: bool = False):
        self._set(append_message(self.state, ChatMessage(
            id=self._new_id(),
            role=role,
            content=content,
            timestamp=self._clock(),
            is_error=is_error,
            can_retry=False if is_error else None,
        )))

    # ------------------------------------------------------------------
    # Thread bookkeeping (fire-and-forget)
    # ------------------------------------------------------------------

    def _after_exchange(self, query: str):
        messages = self.state.messages[-2:]
        if self.thread_id:
            self._spawn(self._persist(messages), 'persist messages')
        first_exchange, self._exchanged = not self._exchanged, True
        if self.state.title is None and first_exchange:
            self._spawn(self._generate_title(query), 'generate title')

    def _spawn(self, coro, label: str):
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.warning(f"Background {label} failed: {error}")

        task.add_done_callback(_done)

    async def _persist(self, messages):
        response = await self._client.post(
            self._url(self.settings.thread_messages_path),
            json={'threadId': self.thread_id, 'messages': [m.to_dict() for m in messages]},
            headers=self.settings.headers(),
        )
        response.raise_for_status()

    async def _generate_title(self, query: str):
        title = None
        try:
            response = await self._client.post(
                self._url(self.settings.thread_title_path),
                json={'threadId': self.thread_id, 'query': query},
                headers=self.settings.headers(),
            )
            if response.is_success:
                body = response.json()
                if isinstance(body, dict) and isinstance(body.get('title'), str):
                    title = body['title'].strip() or None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Title generation failed: {e}")
        self._set(set_title(self.state, title or query[:TITLE_FALLBACK_LENGTH]))

    async def wait_background(self):
        """Wait for pending bookkeeping tasks (mainly for tests and shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self):
        self.stop()
        self._gate.disarm()
        await self.wait_background()
        if self._owns_client:
            await self._client.aclose()
