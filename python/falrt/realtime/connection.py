"""
Caller-facing handle for a realtime connection.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from .. import codec
from ..errors import InvalidResultError
from .pool import SessionPool
from .session import Session, SessionState

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_INTERVAL = 0.064

ResultCallback = Callable[[Any], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Union[None, Awaitable[None]]]


class Throttle:
    """
    Drops calls made less than interval seconds after the last allowed one.

    Dropped calls are not replayed later. An interval of 0 allows everything.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        """True if a call now would be let through. Does not record it."""
        if self.interval <= 0 or self._last is None:
            return True
        return self._clock() - self._last >= self.interval

    def mark(self) -> None:
        self._last = self._clock()

    def allow(self) -> bool:
        if not self.ready():
            return False
        self.mark()
        return True


class RealtimeConnection:
    """
    Handle returned by AsyncFalClient.connect.

    Sends go through the pooled Session for (endpoint_id, connection_key);
    results and errors arrive on the callbacks. A handle stays usable after
    close() or a connection failure: the next send opens a fresh session.

    Example:
        async def on_result(result):
            print(result["images"][0]["url"])

        connection = await client.connect("fal-ai/fast-lcm-diffusion", on_result)
        await connection.send({"prompt": "a cat", "image": frame_bytes})
    """

    def __init__(
        self,
        pool: SessionPool,
        endpoint_id: str,
        connection_key: str,
        session_factory: Callable[[], Session],
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
        throttle_interval: float = DEFAULT_THROTTLE_INTERVAL,
        result_decoder: Optional[Callable[[Any], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoint_id = endpoint_id
        self.connection_key = connection_key
        self.on_result = on_result
        self.on_error = on_error
        self.result_decoder = result_decoder
        self._pool = pool
        self._session_factory = session_factory
        self._throttle = Throttle(throttle_interval, clock)
        self._session: Optional[Session] = None
        self._acquire()

    def __repr__(self) -> str:
        return f"RealtimeConnection({self.endpoint_id!r}, key={self.connection_key!r})"

    def _acquire(self) -> Session:
        session = self._pool.get_or_create(
            self.endpoint_id, self.connection_key, self._session_factory
        )
        if session is not self._session:
            session.attach(self)
            self._session = session
        return session

    @property
    def session(self) -> Session:
        return self._session

    @property
    def closed(self) -> bool:
        return self._session.state is SessionState.CLOSED

    async def send(self, value: Any) -> bool:
        """
        Send value over the connection.

        Returns False when the call was dropped by the throttle. Dropped
        values are not encoded.

        Raises:
            InvalidInputError: If value cannot be encoded; the failed call
                does not count against the throttle
        """
        if not self._throttle.ready():
            logger.debug(f"{self.endpoint_id}: send dropped by throttle")
            return False
        frame = codec.encode(value)
        self._throttle.mark()
        await self._acquire().send(frame)
        return True

    async def close(self) -> None:
        """
        Close the session currently pooled under this key. Closing twice is
        a no-op.

        Another handle may have replaced a torn-down session; the live one is
        closed in that case.
        """
        current = self._pool.get(self.endpoint_id, self.connection_key)
        if current is not None and current is not self._session:
            await current.close()
        await self._session.close()

    async def __aenter__(self) -> "RealtimeConnection":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _deliver_result(self, message: Any):
        if self.result_decoder is not None:
            try:
                message = self.result_decoder(message)
            except Exception as e:
                error = InvalidResultError(f"Cannot decode realtime result: {e}")
                error.__cause__ = e
                return self._deliver_error(error)
        return self.on_result(message)

    def _deliver_error(self, error: Exception):
        if self.on_error is None:
            logger.error(f"Realtime error on {self.endpoint_id}: {error}")
            return None
        return self.on_error(error)
