"""
Realtime session: one physical websocket to one endpoint.

A Session connects lazily on the first send, authenticates with a short-lived
token, keeps at most one message aside while offline and dispatches inbound
frames to the connection handle that currently owns it. All state lives on
the event loop the session was first used from.
"""

from __future__ import annotations

import asyncio
import errno
import inspect
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol

import aiohttp

from ..app_id import build_realtime_url
from ..auth import TokenGrant, TokenProvider
from ..codec import EncodedFrame, Envelope, FrameKind, classify, decode
from ..config import DEFAULT_RUN_HOST
from ..errors import FalError, InvalidResultError, RealtimeConnectionError

if TYPE_CHECKING:
    from .pool import SessionPool

logger = logging.getLogger(__name__)

# Fraction of the token lifetime after which the cached token is dropped.
TOKEN_REFRESH_RATIO = 0.9
CLOSE_RACE_WINDOW = 1.0
NORMAL_CLOSURE = 1000

_END_OF_STREAM = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


class SessionState(Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    REFRESHING_TOKEN = "refreshing_token"
    OPEN = "open"


class Listener(Protocol):
    """Receiver of decoded results and errors; implemented by RealtimeConnection."""

    def _deliver_result(self, message: Any) -> Optional[Awaitable[None]]: ...

    def _deliver_error(self, error: Exception) -> Optional[Awaitable[None]]: ...


class AiohttpTransport:
    """Opens websockets through a shared aiohttp ClientSession."""

    def __init__(
        self,
        session_factory: Callable[[], Awaitable[aiohttp.ClientSession]],
        heartbeat: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.heartbeat = heartbeat

    async def connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        session = await self._session_factory()
        return await session.ws_connect(url, heartbeat=self.heartbeat, max_msg_size=0)


def _is_not_connected(error: BaseException) -> bool:
    while error is not None:
        if isinstance(error, OSError) and error.errno == errno.ENOTCONN:
            return True
        error = error.__cause__
    return False


class Session:
    """
    Connection state machine for a single (endpoint, connection key) pair.

    Args:
        endpoint_id: Endpoint identifier, e.g. "fal-ai/fast-lcm-diffusion"
        connection_key: Key the session is registered under in the pool
        token_provider: Source of realtime auth tokens
        transport: Object with an async connect(url) returning a websocket
        host: Host serving realtime endpoints
        pool: Pool to deregister from on teardown
    """

    def __init__(
        self,
        endpoint_id: str,
        connection_key: str,
        token_provider: TokenProvider,
        transport: Any,
        host: str = DEFAULT_RUN_HOST,
        pool: Optional["SessionPool"] = None,
        refresh_ratio: float = TOKEN_REFRESH_RATIO,
        close_race_window: float = CLOSE_RACE_WINDOW,
    ):
        self.endpoint_id = endpoint_id
        self.connection_key = connection_key
        self._token_provider = token_provider
        self._transport = transport
        self._host = host
        self._pool = pool
        self._refresh_ratio = refresh_ratio
        self._close_race_window = close_race_window

        self.state = SessionState.CLOSED
        self._ws = None
        self._token: Optional[str] = None
        self._token_timer: Optional[asyncio.TimerHandle] = None
        self._pending: Optional[EncodedFrame] = None
        self._listener: Optional[Listener] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._closed_at: Optional[float] = None

    def __repr__(self) -> str:
        return (
            f"Session({self.endpoint_id!r}, key={self.connection_key!r}, "
            f"state={self.state.value})"
        )

    @property
    def key(self):
        return (self.endpoint_id, self.connection_key)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def attach(self, listener: Listener) -> None:
        """Route results and errors to listener from now on."""
        self._listener = listener

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug(f"{self.endpoint_id}[{self.connection_key}]: "
                         f"{self.state.value} -> {state.value}")
            self.state = state

    # -- token handling ---------------------------------------------------

    def _store_token(self, grant: TokenGrant) -> None:
        self._token = grant.token
        if self._token_timer is not None:
            self._token_timer.cancel()
        delay = max(grant.expires_in * self._refresh_ratio, 0.0)
        self._token_timer = asyncio.get_running_loop().call_later(
            delay, self._invalidate_token
        )

    def _invalidate_token(self) -> None:
        logger.debug(f"Realtime token for {self.endpoint_id} expired, will refresh")
        self._token = None
        self._token_timer = None

    # -- outbound ---------------------------------------------------------

    async def send(self, frame: EncodedFrame) -> None:
        """
        Transmit frame, or keep it as the pending message while offline.

        Only the newest pending message survives; older ones are dropped.
        """
        if self.state is SessionState.OPEN and self._ws is not None:
            await self._transmit(self._ws, frame)
            return

        if self._pending is not None:
            logger.debug(f"{self.endpoint_id}: replacing pending realtime message")
        self._pending = frame
        self.ensure_connected()

    async def _transmit(self, ws, frame: EncodedFrame) -> None:
        try:
            if frame.kind is FrameKind.BINARY:
                await ws.send_bytes(frame.data)
            else:
                await ws.send_str(frame.data)
        except Exception as e:
            if getattr(ws, "closed", False) and ws is self._ws:
                await self._teardown(
                    RealtimeConnectionError("Realtime connection lost", ws.close_code)
                )
                return
            await self._emit_error(e)

    def ensure_connected(self) -> Optional[asyncio.Task]:
        """Start the connect sequence unless one is running or already open."""
        if self.state is SessionState.OPEN:
            return None
        if self._connect_task is not None and not self._connect_task.done():
            return self._connect_task
        self._connect_task = asyncio.get_running_loop().create_task(self._connect())
        return self._connect_task

    async def _connect(self) -> None:
        generation = self._generation
        self._set_state(SessionState.CONNECTING)
        try:
            token = self._token
            if token is None:
                self._set_state(SessionState.REFRESHING_TOKEN)
                grant = await self._token_provider.fetch_token(self.endpoint_id)
                if generation != self._generation:
                    return
                self._store_token(grant)
                token = grant.token
                self._set_state(SessionState.CONNECTING)

            url = build_realtime_url(self.endpoint_id, self._host, token)
            ws = await self._transport.connect(url)
        except asyncio.CancelledError:
            raise
        except FalError as e:
            await self._connect_failed(generation, e)
            return
        except Exception as e:
            error = RealtimeConnectionError(f"Failed to open realtime connection: {e}")
            error.__cause__ = e
            await self._connect_failed(generation, error)
            return

        if generation != self._generation:
            logger.debug(f"{self.endpoint_id}: closed while connecting, dropping socket")
            await ws.close()
            return

        self._ws = ws
        self._set_state(SessionState.OPEN)
        self._reader_task = asyncio.get_running_loop().create_task(
            self._receive_loop(ws, generation)
        )

        pending, self._pending = self._pending, None
        if pending is not None:
            await self._transmit(ws, pending)

    async def _connect_failed(self, generation: int, error: Exception) -> None:
        if generation != self._generation:
            return
        self._pending = None
        await self._teardown(error)

    # -- inbound ----------------------------------------------------------

    async def _receive_loop(self, ws, generation: int) -> None:
        next_message = asyncio.ensure_future(ws.receive())
        try:
            while True:
                message = await next_message
                if message.type in _END_OF_STREAM:
                    await self._transport_ended(ws, message, generation)
                    return
                # Arm the next receive before handling this frame.
                next_message = asyncio.ensure_future(ws.receive())
                if message.type is aiohttp.WSMsgType.BINARY:
                    await self._handle_frame(FrameKind.BINARY, message.data)
                elif message.type is aiohttp.WSMsgType.TEXT:
                    await self._handle_frame(FrameKind.TEXT, message.data)
        except asyncio.CancelledError:
            next_message.cancel()
            raise
        except Exception as e:
            await self._receive_failed(ws, e, generation)

    async def _handle_frame(self, kind: FrameKind, data) -> None:
        try:
            message = decode(kind, data)
        except InvalidResultError as e:
            await self._emit_error(e)
            return

        envelope, value = classify(message)
        if envelope is Envelope.SKIP:
            return
        if envelope is Envelope.ERROR:
            await self._emit_error(value)
            return
        await self._emit_result(value)

    async def _transport_ended(self, ws, message, generation: int) -> None:
        if generation != self._generation:
            return
        if message.type is aiohttp.WSMsgType.ERROR:
            await self._receive_failed(ws, message.data, generation)
            return

        code = ws.close_code
        if code is None and isinstance(message.data, int):
            code = message.data
        if code in (None, NORMAL_CLOSURE):
            logger.debug(f"{self.endpoint_id}: server closed the realtime connection")
            await self._teardown(None)
        else:
            await self._teardown(
                RealtimeConnectionError("Realtime connection closed", code)
            )

    async def _receive_failed(self, ws, error: BaseException, generation: int) -> None:
        stale = generation != self._generation
        if stale and _is_not_connected(error) and self._closed_recently():
            logger.debug(f"{self.endpoint_id}: ignoring receive on locally closed socket")
            return

        wrapped = RealtimeConnectionError(
            f"Realtime connection failed: {error}", getattr(ws, "close_code", None)
        )
        wrapped.__cause__ = error
        if stale:
            # Already torn down; report without touching the current transport.
            await self._emit_error(wrapped)
            return
        await self._teardown(wrapped)

    def _closed_recently(self) -> bool:
        if self._closed_at is None:
            return False
        elapsed = asyncio.get_running_loop().time() - self._closed_at
        return elapsed <= self._close_race_window

    # -- delivery ---------------------------------------------------------

    async def _emit_result(self, value: Any) -> None:
        if self._listener is None:
            return
        try:
            outcome = self._listener._deliver_result(value)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception(f"Realtime result callback for {self.endpoint_id} raised")

    async def _emit_error(self, error: Exception) -> None:
        if self._listener is None:
            logger.error(f"Unhandled realtime error for {self.endpoint_id}: {error}")
            return
        try:
            outcome = self._listener._deliver_error(error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception(f"Realtime error callback for {self.endpoint_id} raised")

    # -- teardown ---------------------------------------------------------

    async def _teardown(self, error: Optional[Exception]) -> None:
        """Drop the transport after a fatal failure and leave the pool."""
        self._generation += 1
        self._connect_task = None
        ws, self._ws = self._ws, None
        self._set_state(SessionState.CLOSED)
        self._cancel_reader()
        if self._pool is not None:
            self._pool.remove(self.endpoint_id, self.connection_key, self)
        if ws is not None and not ws.closed:
            await ws.close()
        if error is not None:
            await self._emit_error(error)

    def _cancel_reader(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def close(self) -> None:
        """
        Close the session without reporting an error.

        Safe in every state. A connect still in flight closes its socket as
        soon as it completes.
        """
        self._generation += 1
        self._closed_at = asyncio.get_running_loop().time()
        self._pending = None
        self._connect_task = None
        ws, self._ws = self._ws, None
        self._set_state(SessionState.CLOSED)
        self._cancel_reader()
        if self._token_timer is not None:
            self._token_timer.cancel()
            self._token_timer = None
        if self._pool is not None:
            self._pool.remove(self.endpoint_id, self.connection_key, self)
        if ws is not None:
            await ws.close()
