"""
Local tool routing and execution.

Utterances that match a tool pattern never reach the RAG pipeline: the
tool runs here and its display text becomes the assistant reply. Tools with
side effects return a pending action that must be confirmed first.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import ClientSettings
from .sse import iter_events
from .state import SessionState, apply_event, prose

logger = logging.getLogger(__name__)

INTENT_CONFIDENCE = 0.9


@dataclass(frozen=True)
class ToolIntent:
    tool: str
    args: Dict[str, str]
    confidence: float = INTENT_CONFIDENCE


@dataclass(frozen=True)
class ToolPattern:
    pattern: 're.Pattern'
    tool: str
    args: Callable[['re.Match'], Dict[str, str]]


def _p(regex: str) -> 're.Pattern':
    return re.compile(regex, re.IGNORECASE)


# Order matters: the first match wins
TOOL_PATTERNS: List[ToolPattern] = [
    ToolPattern(_p(r'^(?:email|send\s+(?:an?\s+)?email|mail)\s+(.+?)\s+to\s+(\S+@\S+)'),
                'send_email', lambda m: {'content': m.group(1), 'to': m.group(2)}),
    ToolPattern(_p(r'^(?:email|send\s+(?:an?\s+)?email|mail)\s+(.+)'),
                'send_email', lambda m: {'content': m.group(1)}),
    ToolPattern(_p(r'^(?:text|sms|send\s+(?:a\s+)?(?:text|sms))\s+(.+?)\s+to\s+(\+?[\d\-().\s]{7,})'),
                'send_sms', lambda m: {'content': m.group(1), 'to': re.sub(r'[\s\-().]', '', m.group(2))}),
    ToolPattern(_p(r'^(?:text|sms|send\s+(?:a\s+)?(?:text|sms))\s+(.+)'),
                'send_sms', lambda m: {'content': m.group(1)}),
    ToolPattern(_p(r'^(?:summarize|summarise|summary of)\s+(.+)'),
                'summarize_document', lambda m: {'query': m.group(1)}),
    ToolPattern(_p(r'^(?:compare|diff)\s+(.+?)\s+(?:with|to|and|vs)\s+(.+)'),
                'compare_documents', lambda m: {'doc1': m.group(1), 'doc2': m.group(2)}),
    ToolPattern(_p(r'^(?:find|extract|show|get)\s+(?:dates?|deadlines?|key dates?)\s+(?:in|from|of)\s+(.+)'),
                'extract_key_dates', lambda m: {'query': m.group(1)}),
    ToolPattern(_p(r'^(?:find|extract|show|get)\s+(?:liability|indemnif)'),
                'extract_liability_clauses', lambda m: {'query': m.group(0)}),
    ToolPattern(_p(r'^(?:list|show)\s+(?:all\s+|my\s+)?(?:documents?|files?|docs?)'),
                'list_documents', lambda m: {}),
    ToolPattern(_p(r'^(?:export|download)\s+(?:the\s+)?audit\s*(?:log|trail)?'),
                'export_audit_log', lambda m: {}),
    ToolPattern(_p(r'^(?:navigate|go|switch)\s+to\s+(.+)'),
                'navigate_to', lambda m: {'panel': m.group(1).strip()}),
    ToolPattern(_p(r'^(enable|disable|toggle)\s+privilege'),
                'toggle_privilege_mode', lambda m: {'enabled': str(m.group(1).lower() == 'enable').lower()}),
    ToolPattern(_p(r'^/help\s*$'), 'show_help', lambda m: {}),
    ToolPattern(_p(r'^(?:help|what can you do|commands?)\b'), 'show_help', lambda m: {}),
]


def detect_tool_intent(text: str) -> Optional[ToolIntent]:
    """Classify raw user text as a tool call, or None for a RAG query."""
    trimmed = text.strip()
    for entry in TOOL_PATTERNS:
        match = entry.pattern.match(trimmed)
        if match:
            return ToolIntent(tool=entry.tool, args=entry.args(match))
    return None


# Tools whose effect must be confirmed: tool -> (severity, endpoint or None)
RISKY_TOOLS = {
    'send_email': ('medium', '/api/actions/send-email'),
    'send_sms': ('medium', '/api/actions/send-sms'),
    'toggle_privilege_mode': ('high', None),
    'export_audit_log': ('medium', None),
}

HELP_TEXT = (
    "Here is what I can do:\n"
    "- **Ask** anything about your documents\n"
    "- **summarize** <document>\n"
    "- **compare** <document> with <document>\n"
    "- **extract dates from** <document>\n"
    "- **list documents**\n"
    "- **email** <message> to <address>\n"
    "- **text** <message> to <phone number>\n"
    "- **enable / disable privilege** mode\n"
    "- **export audit log**"
)


@dataclass(frozen=True)
class ToolAction:
    """A UI-side effect the embedding application should carry out."""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingAction:
    """A side effect waiting for the user's go-ahead."""
    tool_name: str
    payload: Dict[str, Any]
    severity: str
    message: str


@dataclass(frozen=True)
class ToolResult:
    success: bool
    display: str
    data: Any = None
    action: Optional[ToolAction] = None
    pending: Optional[PendingAction] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.pending is not None


class ToolExecutionError(Exception):
    """Raised by a tool handler when it cannot produce a result."""
    pass


def format_size(size_bytes) -> str:
    if not isinstance(size_bytes, (int, float)) or size_bytes < 1024:
        return f"{int(size_bytes or 0)} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


class ToolExecutor:
    """
    Runs tool intents against the platform API.

    Args:
        client: Shared async HTTP client
        settings: Client settings (base URL and auth)
    """

    def __init__(self, client: httpx.AsyncClient, settings: ClientSettings):
        self._client = client
        self._settings = settings

    def _url(self, path: str) -> str:
        return f"{self._settings.base_url.rstrip('/')}{path}"

    async def execute(self, intent: ToolIntent) -> ToolResult:
        """Run a tool. Failures become an unsuccessful result, never an exception."""
        handler = getattr(self, f'_tool_{intent.tool}', None)
        if handler is None:
            return ToolResult(success=False, display=f"Unknown tool: {intent.tool}")
        try:
            return await handler(intent.args)
        except (ToolExecutionError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Tool {intent.tool} failed: {e}")
            return ToolResult(success=False, display=f"Error executing {intent.tool}: {e}")

    async def run_confirmed(self, pending: PendingAction) -> ToolResult:
        """Carry out a confirmed side effect."""
        _, endpoint = RISKY_TOOLS.get(pending.tool_name, ('low', None))
        if endpoint is None:
            return self._local_effect(pending)

        try:
            response = await self._client.post(
                self._url(endpoint), json=dict(pending.payload), headers=self._settings.headers()
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Action {pending.tool_name} failed: {e}")
            return ToolResult(success=False, display=f"Error executing {pending.tool_name}: {e}")
        if not isinstance(body, dict):
            body = {}

        if response.is_success and body.get('success'):
            target = pending.payload.get('to', '')
            noun = 'Email' if pending.tool_name == 'send_email' else 'Text message'
            return ToolResult(success=True, display=f"{noun} sent to {target}.", data=body)
        error = body.get('error') or f"Request failed with status {response.status_code}"
        return ToolResult(success=False, display=f"Could not complete {pending.tool_name}: {error}", data=body)

    def _local_effect(self, pending: PendingAction) -> ToolResult:
        if pending.tool_name == 'toggle_privilege_mode':
            enabled = bool(pending.payload.get('enabled'))
            return ToolResult(
                success=True,
                display='Privilege mode enabled.' if enabled else 'Privilege mode disabled.',
                action=ToolAction('toggle_privilege', {'enabled': enabled}),
            )
        if pending.tool_name == 'export_audit_log':
            return ToolResult(
                success=True,
                display='Exporting audit log...',
                action=ToolAction('export_audit'),
            )
        return ToolResult(success=False, display=f"Unknown tool: {pending.tool_name}")

    async def _chat_query(self, query: str) -> ToolResult:
        """Ask /api/chat directly and collect the streamed answer."""
        request = self._client.build_request(
            'POST',
            self._url(self._settings.chat_path),
            json={'query': query, 'history': [], 'stream': True, 'privilegeMode': False},
            headers=self._settings.headers(),
        )
        response = await self._client.send(request, stream=True)
        try:
            if not response.is_success:
                return ToolResult(success=False, display='Failed to get a response.')
            state = SessionState()
            async for event in iter_events(response.aiter_bytes()):
                state = apply_event(state, event)
        finally:
            await response.aclose()

        return ToolResult(
            success=True,
            display=prose(state.turn.content) or 'No results found.',
            data={'confidence': state.turn.confidence,
                  'citations': [c.to_dict() for c in state.turn.citations]},
        )

    async def _tool_summarize_document(self, args) -> ToolResult:
        return await self._chat_query(f"Summarize document: {args['query']}")

    async def _tool_compare_documents(self, args) -> ToolResult:
        return await self._chat_query(f'Compare "{args["doc1"]}" and "{args["doc2"]}"')

    async def _tool_extract_key_dates(self, args) -> ToolResult:
        return await self._chat_query(f"Extract all dates and deadlines from {args['query']}")

    async def _tool_extract_liability_clauses(self, args) -> ToolResult:
        return await self._chat_query(
            f"Extract liability and indemnification clauses from {args['query']}"
        )

    async def _tool_list_documents(self, args) -> ToolResult:
        response = await self._client.get(self._url('/api/documents'), headers=self._settings.headers())
        if not response.is_success:
            return ToolResult(success=False, display='Failed to fetch documents.')
        body = response.json()
        if not isinstance(body, dict):
            raise ToolExecutionError("unexpected document list response")
        docs = body.get('data') or body.get('documents') or []
        if not docs:
            return ToolResult(success=True, data=[], display='Your vault is empty. Upload documents to get started.')

        lines = [
            f"{i}. **{d.get('originalName') or d.get('filename')}** "
            f"({d.get('fileType', 'file')}, {format_size(d.get('sizeBytes'))}) - {d.get('indexStatus', 'unknown')}"
            for i, d in enumerate(docs, start=1)
        ]
        return ToolResult(
            success=True,
            data=docs,
            display=f"Found **{len(docs)}** documents:\n\n" + '\n'.join(lines),
        )

    async def _tool_navigate_to(self, args) -> ToolResult:
        panel = args['panel']
        return ToolResult(
            success=True,
            display=f"Navigating to {panel}...",
            action=ToolAction('navigate', {'panel': panel}),
        )

    async def _tool_show_help(self, args) -> ToolResult:
        return ToolResult(success=True, display=HELP_TEXT)

    async def _tool_send_email(self, args) -> ToolResult:
        content = args['content'].strip()
        to = args.get('to')
        if not to:
            return ToolResult(
                success=False,
                display='Who should I send this to? Try: email <message> to name@example.com',
            )
        payload = {'to': to, 'subject': content[:60], 'body': content}
        return self._confirmable('send_email', payload, f"Send an email to {to}?\n\n> {content}")

    async def _tool_send_sms(self, args) -> ToolResult:
        content = args['content'].strip()
        to = args.get('to')
        if not to:
            return ToolResult(
                success=False,
                display='Which number should I text? Try: text <message> to +15551234567',
            )
        payload = {'to': to, 'body': content}
        return self._confirmable('send_sms', payload, f"Send a text message to {to}?\n\n> {content}")

    async def _tool_toggle_privilege_mode(self, args) -> ToolResult:
        enabled = args.get('enabled') == 'true'
        verb = 'Enable' if enabled else 'Disable'
        return self._confirmable('toggle_privilege_mode', {'enabled': enabled}, f"{verb} privilege mode?")

    async def _tool_export_audit_log(self, args) -> ToolResult:
        return self._confirmable('export_audit_log', {}, 'Export the audit log?')

    def _confirmable(self, tool_name: str, payload: Dict[str, Any], message: str) -> ToolResult:
        severity, _ = RISKY_TOOLS[tool_name]
        return ToolResult(
            success=True,
            display=message,
            pending=PendingAction(tool_name=tool_name, payload=payload, severity=severity, message=message),
        )
