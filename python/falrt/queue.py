"""
Queue API: submit a request, poll its status and fetch the result.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .app_id import build_queue_url, build_request_url
from .config import DEFAULT_RUN_HOST
from .errors import InvalidResultFormatError, QueueTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_TIMEOUT = 180.0


@dataclass
class RequestLog:
    """One log line emitted while a request runs."""
    message: str
    timestamp: str = ""
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestLog":
        labels = data.get("labels") or {}
        return cls(
            message=data.get("message", ""),
            timestamp=data.get("timestamp", ""),
            level=data.get("level") or labels.get("level", "INFO"),
        )


@dataclass
class QueueStatus:
    """Base class of the request statuses."""

    @property
    def is_completed(self) -> bool:
        return False


@dataclass
class InQueue(QueueStatus):
    """Waiting to be processed; position is 0-indexed."""
    position: int
    response_url: str = ""


@dataclass
class InProgress(QueueStatus):
    """Being processed. Logs are only filled when requested."""
    logs: List[RequestLog] = field(default_factory=list)


@dataclass
class Completed(QueueStatus):
    """Done; fetch the result with response()."""
    logs: List[RequestLog] = field(default_factory=list)
    response_url: str = ""
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return True


def _parse_logs(data: Dict[str, Any]) -> List[RequestLog]:
    return [RequestLog.from_dict(log) for log in data.get("logs") or []]


def parse_status(data: Any) -> QueueStatus:
    """
    Build a QueueStatus from a status response.

    Raises:
        InvalidResultFormatError: If the payload has no known status
    """
    if not isinstance(data, dict):
        raise InvalidResultFormatError(f"Unexpected status payload: {data!r}")

    status = data.get("status")
    try:
        if status == "IN_QUEUE":
            return InQueue(
                position=int(data.get("queue_position", 0)),
                response_url=data.get("response_url", ""),
            )
        if status == "IN_PROGRESS":
            return InProgress(logs=_parse_logs(data))
        if status == "COMPLETED":
            # legacy apps do not report metrics
            return Completed(
                logs=_parse_logs(data),
                response_url=data.get("response_url", ""),
                metrics=data.get("metrics") or {},
            )
    except (TypeError, ValueError, AttributeError) as e:
        raise InvalidResultFormatError(f"Malformed status payload: {e}") from e
    raise InvalidResultFormatError(f"Unknown status: {status!r}")


def parse_request_id(data: Any) -> str:
    request_id = data.get("request_id") if isinstance(data, dict) else None
    if not isinstance(request_id, str) or not request_id:
        raise InvalidResultFormatError("Submit response is missing request_id")
    return request_id


def _submit_params(webhook_url: Optional[str]) -> Optional[Dict[str, str]]:
    return {"fal_webhook": webhook_url} if webhook_url else None


def _status_params(include_logs: bool) -> Dict[str, str]:
    return {"logs": "1" if include_logs else "0"}


class AsyncQueueClient:
    """
    Asynchronous queue API client.

    Args:
        request: Coroutine (method, url, data=None, params=None) returning the
            decoded JSON body
        host: Host serving the queue, prefixed with "queue."
    """

    def __init__(
        self,
        request: Callable[..., Awaitable[Any]],
        host: str = DEFAULT_RUN_HOST,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._request = request
        self.host = host
        self._clock = clock
        self._sleep = sleep

    async def submit(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        webhook_url: Optional[str] = None,
    ) -> str:
        """Enqueue a request and return its request id."""
        result = await self._request(
            "POST",
            build_queue_url(endpoint_id, self.host),
            data=input or {},
            params=_submit_params(webhook_url),
        )
        request_id = parse_request_id(result)
        logger.debug(f"Submitted {endpoint_id} request {request_id}")
        return request_id

    async def status(
        self, endpoint_id: str, request_id: str, include_logs: bool = False
    ) -> QueueStatus:
        result = await self._request(
            "GET",
            build_request_url(endpoint_id, self.host, request_id, "/status"),
            params=_status_params(include_logs),
        )
        return parse_status(result)

    async def response(self, endpoint_id: str, request_id: str) -> Any:
        """Fetch the result of a completed request."""
        return await self._request(
            "GET", build_request_url(endpoint_id, self.host, request_id)
        )

    async def cancel(self, endpoint_id: str, request_id: str) -> None:
        await self._request(
            "PUT", build_request_url(endpoint_id, self.host, request_id, "/cancel")
        )

    async def poll_until_complete(
        self,
        endpoint_id: str,
        request_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        include_logs: bool = False,
        on_update: Optional[Callable[[QueueStatus], Any]] = None,
    ) -> Completed:
        """
        Poll status until the request completes.

        on_update receives every polled status. Elapsed time counts from the
        first poll, and the deadline is checked between polls.

        Raises:
            QueueTimeoutError: If the request is not completed within timeout
        """
        start = self._clock()
        while self._clock() - start < timeout:
            update = await self.status(endpoint_id, request_id, include_logs)
            if on_update is not None:
                outcome = on_update(update)
                if inspect.isawaitable(outcome):
                    await outcome
            if update.is_completed:
                return update
            await self._sleep(poll_interval)
        raise QueueTimeoutError(request_id, timeout)


class QueueClient:
    """
    Blocking queue API client.

    Args:
        request: Callable (method, url, data=None, params=None) returning the
            decoded JSON body
        host: Host serving the queue, prefixed with "queue."
    """

    def __init__(
        self,
        request: Callable[..., Any],
        host: str = DEFAULT_RUN_HOST,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._request = request
        self.host = host
        self._clock = clock
        self._sleep = sleep

    def submit(
        self,
        endpoint_id: str,
        input: Optional[Dict[str, Any]] = None,
        webhook_url: Optional[str] = None,
    ) -> str:
        result = self._request(
            "POST",
            build_queue_url(endpoint_id, self.host),
            data=input or {},
            params=_submit_params(webhook_url),
        )
        return parse_request_id(result)

    def status(
        self, endpoint_id: str, request_id: str, include_logs: bool = False
    ) -> QueueStatus:
        result = self._request(
            "GET",
            build_request_url(endpoint_id, self.host, request_id, "/status"),
            params=_status_params(include_logs),
        )
        return parse_status(result)

    def response(self, endpoint_id: str, request_id: str) -> Any:
        return self._request("GET", build_request_url(endpoint_id, self.host, request_id))

    def cancel(self, endpoint_id: str, request_id: str) -> None:
        self._request(
            "PUT", build_request_url(endpoint_id, self.host, request_id, "/cancel")
        )

    def poll_until_complete(
        self,
        endpoint_id: str,
        request_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        include_logs: bool = False,
        on_update: Optional[Callable[[QueueStatus], Any]] = None,
    ) -> Completed:
        """Blocking counterpart of AsyncQueueClient.poll_until_complete."""
        start = self._clock()
        while self._clock() - start < timeout:
            update = self.status(endpoint_id, request_id, include_logs)
            if on_update is not None:
                on_update(update)
            if update.is_completed:
                return update
            self._sleep(poll_interval)
        raise QueueTimeoutError(request_id, timeout)
