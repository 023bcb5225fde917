"""
Redis-backed rate limiter.

Chat queries use a token bucket (bursty, refilling); settings writes and
side-effect actions use fixed windows. Redis outages fail open.
"""
import time
import logging
import functools
from dataclasses import dataclass
from typing import Optional, Callable, Dict, Any

import redis
from asgiref.sync import iscoroutinefunction, sync_to_async
from django.conf import settings
from django.http import JsonResponse

from .audit import audit_ratelimit_exceeded

logger = logging.getLogger(__name__)


# Rate limit configurations
CHAT_RATE_LIMIT = {
    'algorithm': 'token_bucket',
    'bucket_capacity': 5,
    'refill_rate': 0.2,  # tokens per second (12/minute)
}

SETTINGS_RATE_LIMIT = {
    'algorithm': 'fixed_window',
    'window_seconds': 60,
    'max_requests': 20,
}

ACTION_RATE_LIMIT = {
    'algorithm': 'fixed_window',
    'window_seconds': 60,
    'max_requests': 5,
}


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # Unix timestamp
    retry_after: Optional[int] = None  # seconds to wait if blocked


UNLIMITED = RateLimitResult(allowed=True, limit=999, remaining=999, reset_at=0)


def get_redis_client() -> redis.Redis:
    """Get a Redis client from the configured URL."""
    redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
    return redis.from_url(redis_url, decode_responses=True)


def is_rate_limiting_disabled() -> bool:
    """Rate limiting can be switched off for local development."""
    return bool(getattr(settings, 'DISABLE_RATE_LIMITING', False))


# Atomic fixed window: one counter per (key, window start)
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local window_start = math.floor(now / window) * window
local window_key = key .. ":" .. window_start
local reset_at = window_start + window

local current = tonumber(redis.call('GET', window_key) or '0')
if current >= limit then
    return {0, limit, 0, reset_at, reset_at - now}
end

redis.call('INCR', window_key)
redis.call('EXPIRE', window_key, window + 1)
return {1, limit, limit - current - 1, reset_at, 0}
"""


# Atomic token bucket: state is {tokens, last_refill} in a hash
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(state[1]) or capacity
local last_refill = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + (now - last_refill) * refill_rate)

if tokens < 1 then
    local retry_after = math.ceil((1 - tokens) / refill_rate)
    return {0, capacity, math.floor(tokens), 0, retry_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'last_refill', now)
redis.call('EXPIRE', key, 3600)
return {1, capacity, math.floor(tokens), 0, 0}
"""


class RateLimiter:
    """Redis-backed rate limiter with lazily registered Lua scripts."""

    def __init__(self):
        self._redis: Optional[redis.Redis] = None
        self._scripts: Dict[str, Any] = {}

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    def _script(self, name: str, source: str):
        if name not in self._scripts:
            self._scripts[name] = self.redis.register_script(source)
        return self._scripts[name]

    def check_fixed_window(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Check rate limit using fixed window algorithm.

        Args:
            key: Rate limit key (e.g., "settings:user123")
            limit: Maximum requests per window
            window_seconds: Window size in seconds
        """
        script = self._script('fixed_window', FIXED_WINDOW_SCRIPT)
        allowed, limit, remaining, reset_at, retry_after = script(
            keys=[f"ratelimit:{key}"],
            args=[limit, window_seconds, int(time.time())]
        )
        return RateLimitResult(
            allowed=bool(allowed),
            limit=limit,
            remaining=remaining,
            reset_at=reset_at,
            retry_after=retry_after if retry_after > 0 else None
        )

    def check_token_bucket(self, key: str, capacity: int, refill_rate: float) -> RateLimitResult:
        """
        Check rate limit using token bucket algorithm.

        Args:
            key: Rate limit key (e.g., "chat:user123")
            capacity: Maximum tokens (burst capacity)
            refill_rate: Tokens added per second
        """
        script = self._script('token_bucket', TOKEN_BUCKET_SCRIPT)
        allowed, limit, remaining, _, retry_after = script(
            keys=[f"ratelimit:{key}"],
            args=[capacity, refill_rate, time.time()]
        )
        return RateLimitResult(
            allowed=bool(allowed),
            limit=limit,
            remaining=remaining,
            reset_at=0,  # Token bucket doesn't have fixed reset
            retry_after=retry_after if retry_after > 0 else None
        )


# Singleton instance
_limiter: Optional[RateLimiter] = None


def get_limiter() -> RateLimiter:
    """Get the singleton rate limiter instance."""
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter


def _fail_open(check: Callable[[], RateLimitResult]) -> RateLimitResult:
    if is_rate_limiting_disabled():
        return UNLIMITED
    try:
        return check()
    except redis.RedisError as e:
        logger.error(f"Redis error in rate limiting: {e}")
        return RateLimitResult(allowed=True, limit=0, remaining=0, reset_at=0)


def check_chat_rate_limit(user_id: str) -> RateLimitResult:
    """Check rate limit for chat queries."""
    return _fail_open(lambda: get_limiter().check_token_bucket(
        key=f"chat:{user_id}",
        capacity=CHAT_RATE_LIMIT['bucket_capacity'],
        refill_rate=CHAT_RATE_LIMIT['refill_rate']
    ))


def check_settings_rate_limit(user_id: str) -> RateLimitResult:
    """Check rate limit for LLM settings changes and connectivity tests."""
    return _fail_open(lambda: get_limiter().check_fixed_window(
        key=f"settings:{user_id}",
        limit=SETTINGS_RATE_LIMIT['max_requests'],
        window_seconds=SETTINGS_RATE_LIMIT['window_seconds']
    ))


def check_action_rate_limit(user_id: str) -> RateLimitResult:
    """Check rate limit for confirmed side-effect actions."""
    return _fail_open(lambda: get_limiter().check_fixed_window(
        key=f"action:{user_id}",
        limit=ACTION_RATE_LIMIT['max_requests'],
        window_seconds=ACTION_RATE_LIMIT['window_seconds']
    ))


def add_rate_limit_headers(response, result: RateLimitResult):
    """Add standard rate limit headers to a response."""
    response['X-RateLimit-Limit'] = str(result.limit)
    response['X-RateLimit-Remaining'] = str(result.remaining)
    if result.reset_at > 0:
        response['X-RateLimit-Reset'] = str(result.reset_at)
    return response


def rate_limit_response(result: RateLimitResult) -> JsonResponse:
    """Generate a 429 rate limit exceeded response."""
    retry_after = result.retry_after or 60
    response = JsonResponse(
        {
            'success': False,
            'error': 'Rate limit exceeded',
            'code': 'RATE_LIMITED',
            'retryAfter': retry_after,
            'canRetry': True,
        },
        status=429
    )
    response['Retry-After'] = str(retry_after)
    add_rate_limit_headers(response, result)
    return response


def rate_limited(check_func: Callable[[str], RateLimitResult], methods=None):
    """
    Decorator to apply rate limiting to a view.

    Must run after auth_required so request.user_claims is set.

    Args:
        check_func: Function that takes user_id and returns RateLimitResult
        methods: Optional HTTP methods to limit; others pass through
    """
    limited_methods = {m.upper() for m in methods} if methods else None

    def check(request) -> Optional[RateLimitResult]:
        """Run the limiter, or return None when this request is not limited."""
        if limited_methods and request.method not in limited_methods:
            return None

        user_id = getattr(getattr(request, 'user_claims', None), 'sub', None)
        if not user_id:
            return None

        result = check_func(user_id)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for user {user_id} on {request.path}")
            audit_ratelimit_exceeded(request, endpoint=request.path, limit=result.limit)
        return result

    def decorator(view_func):
        if iscoroutinefunction(view_func):
            @functools.wraps(view_func)
            async def async_wrapper(request, *args, **kwargs):
                result = await sync_to_async(check)(request)
                if result is None:
                    return await view_func(request, *args, **kwargs)
                if not result.allowed:
                    return rate_limit_response(result)

                response = await view_func(request, *args, **kwargs)
                add_rate_limit_headers(response, result)
                return response

            return async_wrapper

        @functools.wraps(view_func)
        def wrapper(request, *args, **kwargs):
            result = check(request)
            if result is None:
                return view_func(request, *args, **kwargs)
            if not result.allowed:
                return rate_limit_response(result)

            response = view_func(request, *args, **kwargs)
            add_rate_limit_headers(response, result)
            return response

        return wrapper
    return decorator
