"""
falrt Client SDK

Provides synchronous and asynchronous clients for running model endpoints
directly, through the queue, or over a realtime websocket.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from typing import Any, Callable, Dict, Optional

import aiohttp

from . import codec
from .app_id import build_run_url
from .auth import TokenProvider
from .config import ClientConfig
from .errors import InvalidUrlError, ServerError
from .queue import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT,
    AsyncQueueClient,
    QueueClient,
    QueueStatus,
)
from .realtime import (
    DEFAULT_THROTTLE_INTERVAL,
    AiohttpTransport,
    RealtimeConnection,
    Session,
    SessionPool,
)
from .realtime.connection import ErrorCallback, ResultCallback

logger = logging.getLogger(__name__)


def _with_query(url: str, params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return url
    query = urllib.parse.urlencode({k: str(v) for k, v in params.items()})
    separator = "&" if urllib.parse.urlsplit(url).query else "?"
    return f"{url}{separator}{query}"


def _validate_url(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidUrlError(url)
    return url


def _error_message(body: str) -> str:
    try:
        error_json = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(error_json, dict):
        message = error_json.get("detail", error_json.get("error", body))
        return message if isinstance(message, str) else json.dumps(message)
    return body


def _parse_body(body: str) -> Any:
    if not body:
        return None
    return json.loads(body)


class FalClient:
    """
    Synchronous HTTP client for model endpoints and the queue.

    Example:
        client = FalClient()

        result = client.subscribe(
            "fal-ai/fast-sdxl",
            {"prompt": "a cute shih-tzu puppy"},
            on_update=print,
        )
        print(result["images"][0]["url"])
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """
        Initialize the client.

        Args:
            config: Client configuration; read from the environment if omitted
        """
        self.config = config or ClientConfig.from_env()
        self.queue = QueueClient(self._request, self.config.run_host)

    def _request(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Any:
        """Make HTTP request and decode the JSON response."""
        target = _validate_url(_with_query(url, params))
        request_url = _validate_url(self.config.request_proxy) if self.config.request_proxy else target
        headers = self.config.headers(target)

        body = None
        if data is not None and method != "GET":
            body = codec.dumps_json(data).encode("utf-8")

        last_error = None
        attempts = self.config.max_retries if retry else 1

        for attempt in range(max(attempts, 1)):
            try:
                req = urllib.request.Request(
                    request_url,
                    data=body,
                    headers=headers,
                    method=method
                )
                logger.debug(f"{method} {target}")
                with urllib.request.urlopen(req, timeout=self.config.timeout) as response:
                    return _parse_body(response.read().decode("utf-8"))

            except urllib.error.HTTPError as e:
                error_body = e.read().decode("utf-8")
                raise ServerError(e.code, _error_message(error_body))

            except urllib.error.URLError as e:
                last_error = e
                logger.warning(f"{method} {target} failed (attempt {attempt + 1}): {e}")
                if attempt < attempts - 1:
                    time.sleep(self.config.retry_delay * (attempt + 1))

        raise ConnectionError(f"Failed to connect to server: {last_error}")

    def run(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        path: str = "",
        method: str = "POST",
    ) -> Any:
        """
        Run an endpoint and wait for its result in a single request.

        GET requests send input as query parameters.

        Raises:
            ServerError: If server returns an error
            ConnectionError: If unable to connect to server
        """
        url = build_run_url(endpoint_id, self.config.run_host, path)
        if method == "GET":
            return self._request(method, url, params=input)
        return self._request(method, url, data=input or {})

    def submit(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        webhook_url: Optional[str] = None,
    ) -> str:
        return self.queue.submit(endpoint_id, input, webhook_url)

    def status(
        self, endpoint_id: str, request_id: str, include_logs: bool = False
    ) -> QueueStatus:
        return self.queue.status(endpoint_id, request_id, include_logs)

    def response(self, endpoint_id: str, request_id: str) -> Any:
        return self.queue.response(endpoint_id, request_id)

    def subscribe(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        include_logs: bool = False,
        on_update: Optional[Callable[[QueueStatus], Any]] = None,
    ) -> Any:
        """
        Submit through the queue, poll until completion and return the result.

        Args:
            endpoint_id: Endpoint identifier, e.g. "fal-ai/fast-sdxl"
            input: JSON-serializable input
            poll_interval: Seconds between status polls
            timeout: Seconds before giving up with QueueTimeoutError
            include_logs: Request log lines with every status
            on_update: Called with every polled status

        Returns:
            The decoded result payload
        """
        request_id = self.queue.submit(endpoint_id, input)
        self.queue.poll_until_complete(
            endpoint_id,
            request_id,
            poll_interval=poll_interval,
            timeout=timeout,
            include_logs=include_logs,
            on_update=on_update,
        )
        return self.queue.response(endpoint_id, request_id)


class AsyncFalClient:
    """
    Asynchronous client with queue and realtime support.

    Example:
        async with AsyncFalClient() as client:
            result = await client.subscribe("fal-ai/fast-sdxl", {"prompt": "a cat"})

            connection = client.connect(
                "fal-ai/fast-lcm-diffusion",
                on_result=lambda result: print(result["images"]),
                on_error=lambda error: print("error", error),
            )
            await connection.send({"prompt": "a cat", "image": jpeg_bytes})
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        pool: Optional[SessionPool] = None,
        transport: Any = None,
        token_provider: Optional[TokenProvider] = None,
        max_connections: int = 100,
    ):
        """
        Initialize the async client.

        Args:
            config: Client configuration; read from the environment if omitted
            pool: Realtime session pool; pass the same pool to several clients
                to share connections between them
            transport: Websocket opener, defaults to aiohttp
            token_provider: Source of realtime tokens
            max_connections: Maximum concurrent HTTP connections
        """
        self.config = config or ClientConfig.from_env()
        self.pool = pool if pool is not None else SessionPool()
        self.max_connections = max_connections
        self._session: Optional[aiohttp.ClientSession] = None
        self.queue = AsyncQueueClient(self._request, self.config.run_host)
        self.token_provider = token_provider or TokenProvider(
            self._request_text, self.config.rest_host
        )
        self.transport = transport or AiohttpTransport(self._ensure_session)

    async def __aenter__(self) -> "AsyncFalClient":
        """Enter async context manager."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure session is created."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                connector=aiohttp.TCPConnector(limit=self.max_connections),
            )
        return self._session

    async def close(self):
        """Close realtime sessions and the HTTP session."""
        await self.pool.close_all()
        if self._session:
            await self._session.close()
            self._session = None

    async def _request_text(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Make async HTTP request and return the raw body."""
        session = await self._ensure_session()
        target = _validate_url(_with_query(url, params))
        request_url = _validate_url(self.config.request_proxy) if self.config.request_proxy else target

        body = None
        if data is not None and method != "GET":
            body = codec.dumps_json(data)

        logger.debug(f"{method} {target}")
        async with session.request(
            method,
            request_url,
            data=body,
            headers=self.config.headers(target),
        ) as response:
            text = await response.text()

            if response.status >= 400:
                raise ServerError(response.status, _error_message(text))

            return text

    async def _request(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make async HTTP request and decode the JSON response."""
        return _parse_body(await self._request_text(method, url, data, params))

    async def run(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        path: str = "",
        method: str = "POST",
    ) -> Any:
        """Run an endpoint and wait for its result in a single request."""
        url = build_run_url(endpoint_id, self.config.run_host, path)
        if method == "GET":
            return await self._request(method, url, params=input)
        return await self._request(method, url, data=input or {})

    async def submit(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        webhook_url: Optional[str] = None,
    ) -> str:
        return await self.queue.submit(endpoint_id, input, webhook_url)

    async def status(
        self, endpoint_id: str, request_id: str, include_logs: bool = False
    ) -> QueueStatus:
        return await self.queue.status(endpoint_id, request_id, include_logs)

    async def response(self, endpoint_id: str, request_id: str) -> Any:
        return await self.queue.response(endpoint_id, request_id)

    async def subscribe(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        include_logs: bool = False,
        on_update: Optional[Callable[[QueueStatus], Any]] = None,
    ) -> Any:
        """Submit through the queue, poll until completion and return the result."""
        request_id = await self.queue.submit(endpoint_id, input)
        await self.queue.poll_until_complete(
            endpoint_id,
            request_id,
            poll_interval=poll_interval,
            timeout=timeout,
            include_logs=include_logs,
            on_update=on_update,
        )
        return await self.queue.response(endpoint_id, request_id)

    def _session_factory(self, endpoint_id: str, connection_key: str) -> Callable[[], Session]:
        def create() -> Session:
            return Session(
                endpoint_id,
                connection_key,
                token_provider=self.token_provider,
                transport=self.transport,
                host=self.config.run_host,
                pool=self.pool,
            )
        return create

    def connect(
        self,
        endpoint_id: str,
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
        connection_key: Optional[str] = None,
        throttle_interval: float = DEFAULT_THROTTLE_INTERVAL,
        result_decoder: Optional[Callable[[Any], Any]] = None,
    ) -> RealtimeConnection:
        """
        Open (or join) a realtime connection to an endpoint.

        Calls with the same endpoint_id and connection_key share one
        websocket; the latest handle receives the results. The socket opens
        lazily on the first send.

        Args:
            endpoint_id: Endpoint identifier, e.g. "fal-ai/fast-lcm-diffusion"
            on_result: Called with every decoded result
            on_error: Called with every error (token, transport, service,
                decoding); errors are logged when omitted
            connection_key: Sharing key; a fresh one per call when omitted
            throttle_interval: Minimum seconds between sends, 0 disables
            result_decoder: Converts each decoded message before on_result

        Returns:
            RealtimeConnection handle
        """
        connection_key = connection_key or str(uuid.uuid4())
        return RealtimeConnection(
            self.pool,
            endpoint_id,
            connection_key,
            self._session_factory(endpoint_id, connection_key),
            on_result=on_result,
            on_error=on_error,
            throttle_interval=throttle_interval,
            result_decoder=result_decoder,
        )
