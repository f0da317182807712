"""
Endpoint identifiers and the URLs derived from them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode

from .errors import InvalidAppIdError

APP_NAMESPACES = ("workflows", "comfy")

# Realtime apps that predate the /realtime route and still listen on /ws.
LEGACY_REALTIME_APPS = (
    "lcm-sd15-i2i",
    "lcm",
    "sdxl-turbo-realtime",
    "sd15-turbo-realtime",
    "lcm-sdxl",
    "lcm-realtime",
    "sd-turbo-real-time-high-fps-msgpack-a10g",
    "sd-turbo-real-time-high-fps-msgpack",
    "sdxl-turbo-real-time-high-fps-msgpack",
)

_LEGACY_ID = re.compile(r"^([0-9]+)-([a-zA-Z0-9-]+)$")


def is_legacy_format(endpoint_id: str) -> bool:
    """True for ids in the old "<digits>-<alias>" form."""
    return _LEGACY_ID.match(endpoint_id) is not None


def ensure_app_id_format(endpoint_id: str) -> str:
    """
    Normalize an endpoint id to "owner/alias[/...]".

    Canonical ids are returned unchanged, legacy "<digits>-<alias>" ids are
    rewritten to "<digits>/<alias>".

    Raises:
        InvalidAppIdError: If the id is neither canonical nor legacy
    """
    if "/" in endpoint_id:
        return endpoint_id

    match = _LEGACY_ID.match(endpoint_id)
    if match:
        owner, alias = match.groups()
        return f"{owner}/{alias}"

    raise InvalidAppIdError(endpoint_id)


@dataclass(frozen=True)
class AppId:
    """Structured form of an endpoint identifier."""
    owner: str
    alias: str
    path: Optional[str] = None
    namespace: Optional[str] = None

    @classmethod
    def parse(cls, endpoint_id: str) -> "AppId":
        parts = ensure_app_id_format(endpoint_id).split("/")

        namespace = None
        if parts[0] in APP_NAMESPACES:
            namespace, parts = parts[0], parts[1:]

        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise InvalidAppIdError(endpoint_id)

        return cls(
            owner=parts[0],
            alias=parts[1],
            path="/".join(parts[2:]) or None,
            namespace=namespace,
        )

    @property
    def root(self) -> str:
        """Owner/alias with the namespace prefix, without the sub-path."""
        prefix = f"{self.namespace}/" if self.namespace else ""
        return f"{prefix}{self.owner}/{self.alias}"

    def __str__(self) -> str:
        suffix = f"/{self.path}" if self.path else ""
        return f"{self.root}{suffix}"


def build_run_url(endpoint_id: str, host: str, path: str = "") -> str:
    """URL for a one-shot request, e.g. https://fal.run/fal-ai/fast-sdxl."""
    return f"https://{host}/{ensure_app_id_format(endpoint_id)}{path}"


def build_queue_url(endpoint_id: str, host: str) -> str:
    return f"https://queue.{host}/{ensure_app_id_format(endpoint_id)}"


def build_request_url(endpoint_id: str, host: str, request_id: str, suffix: str = "") -> str:
    """URL of a queued request; sub-paths of the endpoint are not part of it."""
    app_id = AppId.parse(endpoint_id)
    return f"https://queue.{host}/{app_id.root}/requests/{request_id}{suffix}"


def build_realtime_url(endpoint_id: str, host: str, token: Optional[str] = None) -> str:
    """
    URL of the realtime websocket for an endpoint.

    Legacy apps, and ids given without an owner separator, are served on /ws;
    everything else on /realtime. The token travels as fal_jwt_token.
    """
    app_id = AppId.parse(endpoint_id)
    legacy = app_id.alias in LEGACY_REALTIME_APPS or "/" not in endpoint_id
    suffix = "ws" if legacy else "realtime"

    url = f"wss://{host}/{app_id}/{suffix}"
    if token is not None:
        query: Dict[str, str] = {"fal_jwt_token": token}
        url = f"{url}?{urlencode(query)}"
    return url
