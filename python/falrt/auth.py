"""
Short-lived auth tokens for realtime connections.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .app_id import AppId
from .config import DEFAULT_REST_HOST
from .errors import ServerError, UnauthorizedError

logger = logging.getLogger(__name__)

TOKEN_EXPIRATION_SECONDS = 120

# (method, url, json body) -> raw response text
TextRequester = Callable[[str, str, Optional[Dict[str, Any]]], Awaitable[str]]


@dataclass(frozen=True)
class TokenGrant:
    """A bearer token and its lifetime in seconds."""
    token: str
    expires_in: float


def parse_token_response(body: str) -> str:
    """
    Extract the token from the body of a token response.

    The API answers with a JSON string, so the raw body is quoted. Objects
    carrying the token under "token" or "detail" are accepted too.
    """
    text = body.strip()
    try:
        data = json.loads(text)
    except ValueError:
        data = text.strip('"')

    if isinstance(data, dict):
        data = data.get("token") or data.get("detail")
    if not isinstance(data, str) or not data.strip():
        raise UnauthorizedError("Unexpected realtime token response format")
    return data.strip()


class TokenProvider:
    """
    Fetches realtime tokens scoped to a single app.

    Args:
        request: Coroutine performing the HTTP call and returning the body
        rest_host: Host serving the token API
        expiration: Requested token lifetime in seconds
    """

    def __init__(
        self,
        request: TextRequester,
        rest_host: str = DEFAULT_REST_HOST,
        expiration: int = TOKEN_EXPIRATION_SECONDS,
    ):
        self._request = request
        self.rest_host = rest_host
        self.expiration = expiration

    @property
    def url(self) -> str:
        return f"https://{self.rest_host}/tokens/"

    async def fetch_token(self, endpoint_id: str) -> TokenGrant:
        """
        Request a new token for endpoint_id.

        Raises:
            UnauthorizedError: If the API rejects the request or the body is
                not a token
        """
        app_id = AppId.parse(endpoint_id)
        body = {"allowed_apps": [app_id.alias], "token_expiration": self.expiration}
        try:
            raw = await self._request("POST", self.url, body)
        except ServerError as e:
            raise UnauthorizedError(
                f"Token request for {app_id.alias} failed: {e.message}"
            ) from e

        token = parse_token_response(raw)
        logger.debug(f"Fetched realtime token for {app_id.alias} ({self.expiration}s)")
        return TokenGrant(token=token, expires_in=float(self.expiration))
