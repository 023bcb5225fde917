"""
Failure bodies returned to the chat client.

Every failure carries a canRetry hint. Structured tool errors from the RAG
backend ({code, message, recoverable, suggestion}) are rewritten into a
user-facing sentence; anything else becomes a generic upstream failure.
"""
from typing import Any, Dict, Optional


class ToolErrorCodes:
    PERMISSION_DENIED = 'PERMISSION_DENIED'
    TIMEOUT = 'TIMEOUT'
    VALIDATION_FAILED = 'VALIDATION_FAILED'
    FILE_ERROR = 'FILE_ERROR'
    UPSTREAM_FAILURE = 'UPSTREAM_FAILURE'
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    TOOL_NOT_FOUND = 'TOOL_NOT_FOUND'


UPSTREAM_FAILURE_MESSAGE = 'I encountered an issue processing your request. Please try again.'
GENERIC_FAILURE_MESSAGE = 'Failed to process chat request'

_TOOL_ERROR_FIELDS = ('code', 'message', 'recoverable', 'suggestion')


def is_tool_error(value: Any) -> bool:
    """True if value has the full structured tool error shape."""
    return isinstance(value, dict) and all(k in value for k in _TOOL_ERROR_FIELDS)


def format_tool_error_for_user(error: Dict[str, Any]) -> str:
    code = error.get('code')
    message = str(error.get('message', ''))
    suggestion = str(error.get('suggestion', '')).strip()

    if code == ToolErrorCodes.PERMISSION_DENIED:
        text = "You don't have permission to do that."
    elif code == ToolErrorCodes.TIMEOUT:
        text = 'That request timed out.'
    elif code == ToolErrorCodes.VALIDATION_FAILED:
        text = f"I couldn't process that request: {message.lower()}."
    elif code == ToolErrorCodes.FILE_ERROR:
        text = 'I had trouble with that file.'
    elif code == ToolErrorCodes.UPSTREAM_FAILURE:
        return UPSTREAM_FAILURE_MESSAGE
    elif code == ToolErrorCodes.INTERNAL_ERROR:
        text = 'Something unexpected went wrong.'
    elif code == ToolErrorCodes.TOOL_NOT_FOUND:
        return "That capability isn't available."
    else:
        text = message

    return f"{text} {suggestion}".strip()


def create_error_response(error: Dict[str, Any]) -> Dict[str, Any]:
    """Build the client body for a structured tool error."""
    recoverable = bool(error.get('recoverable'))
    return {
        'success': False,
        'response': format_tool_error_for_user(error),
        'error': {'code': error.get('code'), 'recoverable': recoverable},
        'canRetry': recoverable,
    }


def upstream_failure_response(can_retry: bool = True) -> Dict[str, Any]:
    return {
        'success': False,
        'response': UPSTREAM_FAILURE_MESSAGE,
        'error': {'code': ToolErrorCodes.UPSTREAM_FAILURE, 'recoverable': can_retry},
        'canRetry': can_retry,
    }


def failure_from_backend_body(body: Any) -> Dict[str, Any]:
    """
    Map a non-2xx backend body to the client failure body.

    The canRetry hint comes from the backend when it gives one.
    """
    if is_tool_error(body):
        return create_error_response(body)
    if isinstance(body, dict) and is_tool_error(body.get('error')):
        return create_error_response(body['error'])

    can_retry: Optional[bool] = None
    if isinstance(body, dict):
        if isinstance(body.get('canRetry'), bool):
            can_retry = body['canRetry']
        elif isinstance(body.get('error'), dict) and isinstance(body['error'].get('recoverable'), bool):
            can_retry = body['error']['recoverable']
    return upstream_failure_response(True if can_retry is None else can_retry)


def internal_error_response() -> Dict[str, Any]:
    """Generic failure that reveals nothing about the cause."""
    return {
        'success': False,
        'error': GENERIC_FAILURE_MESSAGE,
        'code': ToolErrorCodes.INTERNAL_ERROR,
        'canRetry': False,
    }
