"""
Client configuration.

Credentials and hosts are read from the environment by default, the same
variables the hosted platform documents (FAL_KEY, or FAL_KEY_ID together with
FAL_KEY_SECRET).
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Union

__version__ = "0.1.0"

USER_AGENT = f"falrt/{__version__} (python)"
DEFAULT_RUN_HOST = "fal.run"
DEFAULT_REST_HOST = "rest.alpha.fal.ai"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_env_int(name: str, default: int) -> int:
    """Get integer from environment variable."""
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


def get_env_float(name: str, default: float) -> float:
    """Get float from environment variable."""
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def credentials_from_env() -> str:
    """Resolve API credentials from FAL_KEY or FAL_KEY_ID/FAL_KEY_SECRET."""
    key = os.environ.get("FAL_KEY")
    if key:
        return key

    key_id = os.environ.get("FAL_KEY_ID")
    key_secret = os.environ.get("FAL_KEY_SECRET")
    if key_id and key_secret:
        return f"{key_id}:{key_secret}"
    return ""


Credentials = Union[str, Callable[[], str], None]


@dataclass(frozen=True)
class ClientConfig:
    """
    Configuration shared by the sync and async clients.

    Args:
        credentials: "key_id:key_secret" string, a callable returning one, or
            None to read them from the environment on every request
        request_proxy: Optional URL that receives every HTTP request; the real
            target is passed in the x-fal-target-url header
        custom_headers: Extra headers added to every HTTP request
        run_host: Host serving run, queue and realtime endpoints
        rest_host: Host serving the token API
        timeout: HTTP request timeout in seconds
        max_retries: Attempts for connection-level failures (sync client)
        retry_delay: Base delay between retries in seconds
    """
    credentials: Credentials = None
    request_proxy: Optional[str] = None
    custom_headers: Dict[str, str] = field(default_factory=dict)
    run_host: str = DEFAULT_RUN_HOST
    rest_host: str = DEFAULT_REST_HOST
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 0.5

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        """Build a config from environment variables, overridable by kwargs."""
        values = dict(
            run_host=os.environ.get("FAL_RUN_HOST", DEFAULT_RUN_HOST),
            rest_host=os.environ.get("FAL_REST_HOST", DEFAULT_REST_HOST),
            timeout=get_env_float("FAL_REQUEST_TIMEOUT", 30.0),
            max_retries=get_env_int("FAL_MAX_RETRIES", 3),
        )
        values.update(overrides)
        return cls(**values)

    def resolve_credentials(self) -> str:
        if self.credentials is None:
            return credentials_from_env()
        if callable(self.credentials):
            return self.credentials()
        return self.credentials

    def headers(self, target_url: Optional[str] = None) -> Dict[str, str]:
        """Headers for an HTTP request to target_url."""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        credentials = self.resolve_credentials()
        if credentials:
            headers["Authorization"] = f"Key {credentials}"
        if self.request_proxy and target_url:
            headers["x-fal-target-url"] = target_url
        headers.update(self.custom_headers)
        return headers


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach a stdout handler to the package logger.

    The level defaults to FALRT_LOG_LEVEL, then LOG_LEVEL, then INFO. Invalid
    names fall back to INFO.
    """
    value = level or os.environ.get("FALRT_LOG_LEVEL") or os.environ.get("LOG_LEVEL")
    resolved = getattr(logging, value.upper(), None) if value else logging.INFO
    if not isinstance(resolved, int):
        resolved = logging.INFO

    logger = logging.getLogger("falrt")
    logger.setLevel(resolved)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
