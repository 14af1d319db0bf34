"""Pydantic configuration for the instrumented probe.

Timeouts mirror a transport with fixed handshake, idle, response-header and
overall limits, 10 seconds each by default.
"""

import urllib.request
from typing import Optional
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from conntrace.utils.errors import ConfigurationError

DEFAULT_TARGET_URL = "https://update.traefik.io/repos/traefik/traefik/releases"
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_OUTPUT_DIR = "out"


class ProbeConfig(BaseModel):
    """Fixed request parameters for every attempt."""

    url: str = Field(DEFAULT_TARGET_URL, description="Endpoint requested on every attempt")
    method: str = Field("GET", description="HTTP method")
    tls_handshake_timeout: float = Field(
        DEFAULT_TIMEOUT, description="TCP connect plus TLS handshake timeout"
    )
    response_header_timeout: float = Field(
        DEFAULT_TIMEOUT, description="Timeout for each read while waiting on the response"
    )
    idle_conn_timeout: float = Field(
        DEFAULT_TIMEOUT, description="How long an idle pooled connection is kept"
    )
    request_timeout: float = Field(
        DEFAULT_TIMEOUT, description="Overall limit for one attempt, body drain included"
    )
    trust_env: bool = Field(True, description="Resolve proxies from the environment")
    verify: bool = Field(True, description="Verify TLS certificates")
    output_dir: str = Field(DEFAULT_OUTPUT_DIR, description="Where attempt artifacts are written")

    @field_validator(
        "tls_handshake_timeout",
        "response_header_timeout",
        "idle_conn_timeout",
        "request_timeout",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("method")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    def to_httpx_timeout(self) -> httpx.Timeout:
        """Per-operation timeouts for the httpx client."""
        return httpx.Timeout(
            connect=min(self.tls_handshake_timeout, self.request_timeout),
            read=min(self.response_header_timeout, self.request_timeout),
            write=self.request_timeout,
            pool=self.request_timeout,
        )

    def to_httpx_limits(self) -> httpx.Limits:
        return httpx.Limits(keepalive_expiry=self.idle_conn_timeout)

    def resolve_proxy(self) -> Optional[str]:
        """Proxy URL for the target, taken from the environment.

        Returns:
            Proxy URL, or None when proxies are disabled or bypassed
        """
        if not self.trust_env:
            return None

        parts = urlsplit(self.url)
        if parts.hostname and urllib.request.proxy_bypass(parts.hostname):
            return None

        proxies = urllib.request.getproxies()
        return proxies.get(parts.scheme) or proxies.get("all")


def build_config(**settings) -> ProbeConfig:
    """Build a ProbeConfig, reporting invalid values as ConfigurationError.

    Args:
        **settings: ProbeConfig fields; None values fall back to defaults
    """
    values = {key: value for key, value in settings.items() if value is not None}
    try:
        return ProbeConfig(**values)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(f"Invalid {field or 'setting'}: {first['msg']}", field=field) from e
