"""Tests for probe configuration."""

import pytest
from conntrace.probe.config import (
    DEFAULT_TARGET_URL,
    DEFAULT_TIMEOUT,
    ProbeConfig,
    build_config,
)
from conntrace.utils.errors import ConfigurationError
from pydantic import ValidationError


@pytest.fixture
def clean_proxy_env(monkeypatch):
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "NO_PROXY"):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(name.lower(), raising=False)
    return monkeypatch


class TestProbeConfig:
    """Tests for ProbeConfig."""

    def test_defaults(self):
        config = ProbeConfig()
        assert config.url == DEFAULT_TARGET_URL
        assert config.method == "GET"
        assert config.tls_handshake_timeout == DEFAULT_TIMEOUT
        assert config.response_header_timeout == DEFAULT_TIMEOUT
        assert config.idle_conn_timeout == DEFAULT_TIMEOUT
        assert config.request_timeout == 10.0
        assert config.trust_env is True
        assert config.verify is True

    def test_method_uppercased(self):
        assert ProbeConfig(method="head").method == "HEAD"

    @pytest.mark.parametrize("value", [0, -1.5])
    def test_timeouts_must_be_positive(self, value):
        with pytest.raises(ValidationError):
            ProbeConfig(request_timeout=value)

    def test_httpx_timeout(self):
        config = ProbeConfig(
            tls_handshake_timeout=3,
            response_header_timeout=4,
            request_timeout=5,
        )
        timeout = config.to_httpx_timeout()
        assert timeout.connect == 3
        assert timeout.read == 4
        assert timeout.write == 5
        assert timeout.pool == 5

    def test_httpx_timeout_capped_by_overall(self):
        timeout = ProbeConfig(tls_handshake_timeout=30, request_timeout=2).to_httpx_timeout()
        assert timeout.connect == 2
        assert timeout.read == 2

    def test_httpx_limits(self):
        limits = ProbeConfig(idle_conn_timeout=7).to_httpx_limits()
        assert limits.keepalive_expiry == 7


class TestProxyResolution:
    """Environment proxy resolution."""

    def test_no_proxy_configured(self, clean_proxy_env):
        assert ProbeConfig(url="https://example.com/").resolve_proxy() is None

    def test_scheme_proxy(self, clean_proxy_env):
        clean_proxy_env.setenv("HTTPS_PROXY", "http://proxy.internal:3128")
        config = ProbeConfig(url="https://example.com/")
        assert config.resolve_proxy() == "http://proxy.internal:3128"

    def test_no_proxy_bypass(self, clean_proxy_env):
        clean_proxy_env.setenv("HTTPS_PROXY", "http://proxy.internal:3128")
        clean_proxy_env.setenv("NO_PROXY", "example.com")
        assert ProbeConfig(url="https://example.com/").resolve_proxy() is None

    def test_disabled(self, clean_proxy_env):
        clean_proxy_env.setenv("HTTPS_PROXY", "http://proxy.internal:3128")
        config = ProbeConfig(url="https://example.com/", trust_env=False)
        assert config.resolve_proxy() is None


class TestBuildConfig:
    """Tests for build_config."""

    def test_none_values_use_defaults(self):
        config = build_config(url="http://localhost:8080/", request_timeout=None)
        assert config.url == "http://localhost:8080/"
        assert config.request_timeout == DEFAULT_TIMEOUT

    def test_invalid_value_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_config(request_timeout=-1)
        assert exc_info.value.field == "request_timeout"
        assert "request_timeout" in str(exc_info.value)
