"""pytest configuration for falrt tests."""

import asyncio
import json

import aiohttp
import msgpack
import pytest

from falrt.auth import TokenGrant
from falrt.errors import UnauthorizedError
from falrt.realtime import Session, SessionPool


class FakeWebSocket:
    """In-memory stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self, url):
        self.url = url
        self.sent = []
        self.closed = False
        self.close_code = None
        self._incoming = asyncio.Queue()

    async def send_str(self, data):
        if self.closed:
            raise ConnectionResetError("socket is closed")
        self.sent.append(("text", data))

    async def send_bytes(self, data):
        if self.closed:
            raise ConnectionResetError("socket is closed")
        self.sent.append(("binary", data))

    async def receive(self):
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code=1000):
        if not self.closed:
            self.closed = True
            self.close_code = code
            self._incoming.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None))

    def feed_json(self, payload):
        self._incoming.put_nowait(
            aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, json.dumps(payload), None)
        )

    def feed_msgpack(self, payload):
        self._incoming.put_nowait(
            aiohttp.WSMessage(
                aiohttp.WSMsgType.BINARY, msgpack.packb(payload, use_bin_type=True), None
            )
        )

    def feed_raw(self, msg_type, data):
        self._incoming.put_nowait(aiohttp.WSMessage(msg_type, data, None))

    def feed_error(self, error):
        self._incoming.put_nowait(error)

    def server_close(self, code):
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSE, code, ""))

    @property
    def sent_json(self):
        return [json.loads(data) for kind, data in self.sent if kind == "text"]


class FakeTransport:
    """Opens FakeWebSockets; can be held open with a gate or made to fail."""

    def __init__(self):
        self.sockets = []
        self.gate = None
        self.error = None

    @property
    def connect_count(self):
        return len(self.sockets)

    @property
    def last(self):
        return self.sockets[-1]

    async def connect(self, url):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws


class FakeTokenProvider:
    """Counts token fetches; can be held with a gate or made to fail."""

    def __init__(self, token="jwt-token", expires_in=120.0):
        self.token = token
        self.expires_in = expires_in
        self.calls = []
        self.gate = None
        self.fail = False

    async def fetch_token(self, endpoint_id):
        self.calls.append(endpoint_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise UnauthorizedError("token request rejected")
        return TokenGrant(self.token, self.expires_in)


class Recorder:
    """Collects results and errors delivered by a session."""

    def __init__(self):
        self.results = []
        self.errors = []

    def on_result(self, result):
        self.results.append(result)

    def on_error(self, error):
        self.errors.append(error)

    def _deliver_result(self, result):
        return self.on_result(result)

    def _deliver_error(self, error):
        return self.on_error(error)


async def _wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def token_provider():
    return FakeTokenProvider()


@pytest.fixture
def pool():
    return SessionPool()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def wait_until():
    """Await until predicate() is true, failing after a timeout."""
    return _wait_until


@pytest.fixture
def make_session(transport, token_provider, pool, recorder):
    """Create a pooled Session wired to the fakes."""

    def factory(endpoint_id="fal-ai/fast-lcm-diffusion", connection_key="key", **kwargs):
        session = pool.get_or_create(
            endpoint_id,
            connection_key,
            lambda: Session(
                endpoint_id,
                connection_key,
                token_provider=token_provider,
                transport=transport,
                pool=pool,
                **kwargs,
            ),
        )
        session.attach(recorder)
        return session

    return factory
