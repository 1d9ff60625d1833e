"""Pytest configuration and fixtures for serialsession tests.

Every test starts without a process-wide default gateway and without
SERIALSESSION_* environment overrides, so tests cannot leak gateways or
configuration into each other.
"""

import sys
import warnings

import pytest

# Suppress ResourceWarnings from event loop cleanup in Python 3.13
if sys.version_info >= (3, 13):
    warnings.filterwarnings("ignore", category=ResourceWarning)


@pytest.fixture(autouse=True)
def _isolate_default_gateway(monkeypatch):  # noqa: PT004
    """Reset the default gateway and gateway environment around each test."""
    from serialsession.gateway import set_default_gateway

    for name in ("SERIALSESSION_GATEWAY_URL", "SERIALSESSION_HOST", "SERIALSESSION_PORT", "SERIALSESSION_REQUEST_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    set_default_gateway(None)
    yield
    set_default_gateway(None)
