"""Shared fakes for serialsession unit tests."""

import pytest

from serialsession.errors import GatewayError, PortNotOpenError
from serialsession.events import EventBus, NotificationCallback, ReadData, Subscription, read_event_name
from serialsession.gateway.base import TransportGateway
from serialsession.options import FlowControl, Parity
from serialsession.ports import PortInfo


class RecordingGateway(TransportGateway):
    """In-memory gateway that records every call in order.

    calls holds tuples such as ("open", path, baud_rate), ("write", path, value)
    and ("unlisten", channel) when the last subscription on a channel is
    cancelled. Set failures[name] to an exception to make that operation raise.
    """

    def __init__(self, ports: list[PortInfo] | None = None):
        self.calls: list[tuple] = []
        self.open_paths: set[str] = set()
        self.open_params: dict[str, dict] = {}
        self.failures: dict[str, Exception] = {}
        self.ports = ports or []
        self.bus = EventBus(on_channel_empty=lambda channel: self.calls.append(("unlisten", channel)))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def _maybe_fail(self, name: str) -> None:
        error = self.failures.get(name)
        if error is not None:
            raise error

    def emit(self, path: str, data: bytes) -> int:
        return self.bus.emit(read_event_name(path), ReadData(data=data, size=len(data)))

    async def available_ports(self) -> list[PortInfo]:
        self.calls.append(("available_ports",))
        self._maybe_fail("available_ports")
        return sorted(self.ports, key=lambda p: p.port_name)

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
        self.calls.append(("open", path, baud_rate))
        self._maybe_fail("open")
        if path in self.open_paths:
            raise GatewayError(f"Port {path} is already opened")
        self.open_paths.add(path)
        self.open_params[path] = {
            "baud_rate": baud_rate,
            "data_bits": data_bits,
            "parity": parity,
            "flow_control": flow_control,
            "stop_bits": stop_bits,
            "timeout": timeout,
        }

    async def close(self, path: str) -> None:
        self.calls.append(("close", path))
        self._maybe_fail("close")
        if path not in self.open_paths:
            raise PortNotOpenError(path)
        self.open_paths.discard(path)

    async def force_close(self, path: str) -> None:
        self.calls.append(("force_close", path))
        self._maybe_fail("force_close")
        self.open_paths.discard(path)

    async def close_all(self) -> None:
        self.calls.append(("close_all",))
        self._maybe_fail("close_all")
        self.open_paths.clear()

    async def read(self, path: str, timeout: int, size: int) -> None:
        self.calls.append(("read", path, timeout, size))
        self._maybe_fail("read")
        if path not in self.open_paths:
            raise PortNotOpenError(path, f"Serial port {path} not found")

    async def cancel_read(self, path: str) -> None:
        self.calls.append(("cancel_read", path))
        self._maybe_fail("cancel_read")

    async def write(self, path: str, value: str) -> int:
        self.calls.append(("write", path, value))
        self._maybe_fail("write")
        if path not in self.open_paths:
            raise PortNotOpenError(path, f"Serial port {path} not found")
        return len(value.encode("utf-8"))

    async def write_binary(self, path: str, value: bytes) -> int:
        self.calls.append(("write_binary", path, value))
        self._maybe_fail("write_binary")
        if path not in self.open_paths:
            raise PortNotOpenError(path, f"Serial port {path} not found")
        return len(value)

    async def listen(self, channel: str, callback: NotificationCallback) -> Subscription:
        self.calls.append(("listen", channel))
        self._maybe_fail("listen")
        return self.bus.subscribe(channel, callback)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def make_gateway():
    """Factory for additional RecordingGateway instances."""
    return RecordingGateway
