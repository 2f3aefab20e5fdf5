"""Small helpers shared across the SDK."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import jwt

from .exceptions import AuthenticationFailedError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def decode_token_claims(token: str) -> Dict[str, Any]:
    """Decode a JWT payload without verifying its signature or expiry.

    Raises:
        AuthenticationFailedError: If the token is not a decodable JWT
    """
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.PyJWTError as e:
        raise AuthenticationFailedError("Invalid JWT token", details=e) from e


def expiry_from_claims(claims: Dict[str, Any]) -> Optional[datetime]:
    exp = claims.get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise AuthenticationFailedError("Invalid JWT token", details=e) from e


class AsyncDebouncer:
    """Run a coroutine function once, ``delay`` seconds after the last trigger."""

    def __init__(self, delay: float, func: Callable[[], Awaitable[None]]) -> None:
        self._delay = delay
        self._func = func
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._func())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
