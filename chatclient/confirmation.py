"""
Confirmation gate for side-effecting tools.

At most one ConfirmationRequest is pending per session. It is claimed
exactly once, by confirm, deny or expiry; whichever claims first wins and
later attempts find nothing to resolve. The deadline is an absolute
wall-clock time so it means the same thing however often it is re-read.
"""
import asyncio
import logging
import re
import time
import uuid
from enum import Enum
from typing import Callable, Optional, Tuple

from .config import DEFAULT_CONFIRMATION_TTL
from .state import ConfirmationRequest, SessionState, clear_confirmation
from .tools import PendingAction

logger = logging.getLogger(__name__)

CONFIRM_WORDS = re.compile(r'^\s*(?:confirm|yes|proceed)\W*$', re.IGNORECASE)
DENY_WORDS = re.compile(r'^\s*(?:cancel|no|deny)\W*$', re.IGNORECASE)

CANCELLED_MESSAGE = 'Action cancelled.'
EXPIRED_MESSAGE = 'Confirmation timed out. Action cancelled.'
BUSY_MESSAGE = 'Another action is awaiting confirmation. Confirm or cancel it first.'


class Resolution(str, Enum):
    CONFIRMED = 'confirmed'
    DENIED = 'denied'
    EXPIRED = 'expired'


def keyword_resolution(text: str) -> Optional[Resolution]:
    """Map a typed or spoken reply to a resolution, if it is one."""
    if CONFIRM_WORDS.match(text):
        return Resolution.CONFIRMED
    if DENY_WORDS.match(text):
        return Resolution.DENIED
    return None


def pending_action(request: ConfirmationRequest) -> PendingAction:
    return PendingAction(
        tool_name=request.tool_name,
        payload=dict(request.payload),
        severity=request.severity,
        message=request.message,
    )


class ConfirmationGate:
    """
    Creates requests, runs their expiry timer and arbitrates resolution.

    Args:
        ttl: Seconds until a new request expires
        clock: Wall-clock source (epoch seconds)
    """

    def __init__(self, ttl: float = DEFAULT_CONFIRMATION_TTL, clock: Callable[[], float] = time.time):
        self._ttl = ttl
        self._clock = clock
        self._timer: Optional[asyncio.TimerHandle] = None

    def create(self, action: PendingAction) -> ConfirmationRequest:
        return ConfirmationRequest(
            tool_call_id=uuid.uuid4().hex,
            tool_name=action.tool_name,
            payload=dict(action.payload),
            severity=action.severity,
            message=action.message,
            expires_at=self._clock() + self._ttl,
        )

    def arm(self, request: ConfirmationRequest, on_expire: Callable[[str], None]):
        """Fire on_expire(tool_call_id) at the request's deadline."""
        self.disarm()
        delay = max(0.0, request.expires_at - self._clock())
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, on_expire, request.tool_call_id)

    def disarm(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def claim(
        self,
        state: SessionState,
        tool_call_id: Optional[str],
        requested: Resolution,
    ) -> Tuple[SessionState, Optional[ConfirmationRequest], Resolution]:
        """
        Take the pending request out of the state.

        Returns the new state, the claimed request (None if there was
        nothing to claim) and the effective resolution. A confirm that
        arrives after the deadline resolves as expired.
        """
        request = state.confirmation
        if request is None:
            return state, None, requested
        if tool_call_id is not None and request.tool_call_id != tool_call_id:
            return state, None, requested

        self.disarm()
        if requested is Resolution.CONFIRMED and request.expired(self._clock()):
            requested = Resolution.EXPIRED
        logger.info(f"Confirmation {request.tool_call_id} for {request.tool_name}: {requested.value}")
        return clear_confirmation(state), request, requested
