"""
Pytest configuration and shared fixtures.
"""

import socket
from collections.abc import Generator

import pytest
from prometheus_client import CollectorRegistry

from gearqueue.config import get_settings
from gearqueue.observability.metrics import MetricsCollector
from gearqueue.protocol.connection import Connection
from gearqueue.worker.handlers import HandlerRegistry
from tests.helpers import FakeServers, PairedServers


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None]:
    """Reload settings from the environment for every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    """Private Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=metrics_registry)


@pytest.fixture
def registry() -> HandlerRegistry:
    """Empty handler registry."""
    return HandlerRegistry()


@pytest.fixture
def socket_pair() -> Generator[tuple[Connection, socket.socket]]:
    """A Connection wired to a local socket, and the server end of it."""
    client_sock, server_sock = socket.socketpair()
    client_sock.settimeout(0.5)
    server_sock.settimeout(0.5)

    conn = Connection(timeout_ms=500, version_lookup=None)
    conn.socket = client_sock
    conn.server = "localhost:4730"

    yield conn, server_sock

    conn.close()
    server_sock.close()


@pytest.fixture
def fake_servers() -> FakeServers:
    """Factory where servers a, b and c are reachable."""
    return FakeServers(["a:4730", "b:4730", "c:4730"])


@pytest.fixture
def paired_servers() -> Generator[PairedServers]:
    """Socket pair backed factory; tests fill in ``scripts`` before use."""
    servers = PairedServers()
    yield servers
    servers.close()
