"""
Transport gateways.

The default gateway is shared process-wide: a LocalSerialGateway, or a
WebSocketGateway when SERIALSESSION_GATEWAY_URL is set.
"""

import logging
import threading

from serialsession.gateway.base import TransportGateway
from serialsession.gateway.local import LocalSerialGateway
from serialsession.gateway.remote import WebSocketGateway
from serialsession.options import get_gateway_url

logger = logging.getLogger(__name__)

_default_gateway: TransportGateway | None = None
_default_lock = threading.Lock()


def get_default_gateway() -> TransportGateway:
    """Return the process-wide gateway, creating it on first use."""
    global _default_gateway
    with _default_lock:
        if _default_gateway is None:
            url = get_gateway_url()
            if url:
                logger.info(f"Using remote gateway at {url}")
                _default_gateway = WebSocketGateway(url)
            else:
                _default_gateway = LocalSerialGateway()
        return _default_gateway


def set_default_gateway(gateway: TransportGateway | None) -> None:
    """Replace the process-wide gateway (None resets to lazy creation)."""
    global _default_gateway
    with _default_lock:
        _default_gateway = gateway


__all__ = [
    "LocalSerialGateway",
    "TransportGateway",
    "WebSocketGateway",
    "get_default_gateway",
    "set_default_gateway",
]
