"""
Transport gateway contract.

A gateway performs the actual port I/O for sessions and owns the registry of
open paths. Data read from a port is not returned from read(); it is
published as ReadData on the channel read_event_name(path), which callers
consume through listen().
"""

from abc import ABC, abstractmethod

from serialsession.events import NotificationCallback, Subscription
from serialsession.options import FlowControl, Parity
from serialsession.ports import PortInfo


class TransportGateway(ABC):
    """Interface sessions use to reach serial hardware.

    All failures are raised as GatewayError (PortNotOpenError when the path
    is not registered as open).
    """

    @abstractmethod
    async def available_ports(self) -> list[PortInfo]:
        """Enumerate ports, sorted by name."""

    @abstractmethod
    async def open(
        self,
        path: str,
        baud_rate: int,
        data_bits: int,
        parity: Parity,
        flow_control: FlowControl,
        stop_bits: int,
        timeout: int,
    ) -> None:
        """Open path and add it to the registry."""

    @abstractmethod
    async def close(self, path: str) -> None:
        """Close path; no notification for path is published after this returns."""

    @abstractmethod
    async def force_close(self, path: str) -> None:
        """Close path regardless of owner; succeeds if path is not open."""

    @abstractmethod
    async def close_all(self) -> None:
        """Close every open path."""

    @abstractmethod
    async def read(self, path: str, timeout: int, size: int) -> None:
        """Start reading path; data arrives as notifications."""

    @abstractmethod
    async def cancel_read(self, path: str) -> None:
        """Stop any in-flight read on path. Idempotent."""

    @abstractmethod
    async def write(self, path: str, value: str) -> int:
        """Write text to path, returning the number of bytes written."""

    @abstractmethod
    async def write_binary(self, path: str, value: bytes) -> int:
        """Write bytes to path, returning the number of bytes written."""

    @abstractmethod
    async def listen(self, channel: str, callback: NotificationCallback) -> Subscription:
        """Subscribe callback to notifications published on channel."""
