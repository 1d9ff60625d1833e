"""
In-process transport gateway built on pyserial.

Open ports live in a process-wide registry keyed by path. read() starts a
background reader thread for the path which publishes every non-empty
chunk as ReadData on read_event_name(path), pausing `timeout` milliseconds
between reads, until cancel_read(), close(), force_close() or close_all()
stops it. Blocking pyserial calls run in the default executor so the
calling event loop never blocks.
"""

import asyncio
import functools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import serial

from serialsession.errors import GatewayError, PortNotOpenError
from serialsession.events import EventBus, NotificationCallback, ReadData, Subscription, read_event_name
from serialsession.gateway.base import TransportGateway
from serialsession.options import FlowControl, Parity
from serialsession.ports import PortInfo, enumerate_ports

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Extra time allowed for a reader thread to notice its stop event
READER_JOIN_GRACE = 1.0

_BYTESIZES = {5: serial.FIVEBITS, 6: serial.SIXBITS, 7: serial.SEVENBITS, 8: serial.EIGHTBITS}
_PARITIES = {Parity.NONE: serial.PARITY_NONE, Parity.ODD: serial.PARITY_ODD, Parity.EVEN: serial.PARITY_EVEN}
_STOPBITS = {1: serial.STOPBITS_ONE, 2: serial.STOPBITS_TWO}


@dataclass
class PortEntry:
    """Registry entry for one open path.

    Attributes:
        path: Port path
        handle: Open pyserial handle
        timeout: Read timeout the port was opened with, in milliseconds
        reader: Background reader thread, if a read is in progress
        stop_event: Set to stop the reader thread
    """

    path: str
    handle: Any
    timeout: int
    reader: threading.Thread | None = None
    stop_event: threading.Event | None = None


class LocalSerialGateway(TransportGateway):
    """Gateway performing serial I/O in this process.

    Example:
        >>> gateway = LocalSerialGateway()
        >>> await gateway.open("/dev/ttyUSB0", 9600, 8, Parity.NONE, FlowControl.NONE, 1, 200)
        >>> await gateway.write("/dev/ttyUSB0", "AT\\r\\n")
        >>> await gateway.close("/dev/ttyUSB0")
    """

    def __init__(self, bus: EventBus | None = None):
        self._lock = threading.RLock()
        self._ports: dict[str, PortEntry] = {}
        self.bus = bus or EventBus()

    def open_paths(self) -> list[str]:
        """Paths currently in the registry."""
        with self._lock:
            return sorted(self._ports)

    def is_reading(self, path: str) -> bool:
        with self._lock:
            entry = self._ports.get(path)
            return entry is not None and entry.reader is not None and entry.reader.is_alive()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # =========================================================================
    # Registry
    # =========================================================================

    async def available_ports(self) -> list[PortInfo]:
        try:
            return await self._run(enumerate_ports)
        except (serial.SerialException, OSError) as e:
            raise GatewayError(f"Failed to enumerate serial ports: {e}") from e

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
        await self._run(self._open_sync, path, baud_rate, data_bits, parity, flow_control, stop_bits, timeout)

    def _open_sync(
        self,
        path: str,
        baud_rate: int,
        data_bits: int,
        parity: Parity,
        flow_control: FlowControl,
        stop_bits: int,
        timeout: int,
    ) -> None:
        with self._lock:
            if path in self._ports:
                raise GatewayError(f"Port {path} is already opened")
            try:
                handle = serial.Serial(
                    port=path,
                    baudrate=baud_rate,
                    bytesize=_BYTESIZES[data_bits],
                    parity=_PARITIES[parity],
                    stopbits=_STOPBITS[stop_bits],
                    xonxoff=flow_control == FlowControl.SOFTWARE,
                    rtscts=flow_control == FlowControl.HARDWARE,
                    timeout=timeout / 1000.0,
                )
            except (serial.SerialException, ValueError, OSError) as e:
                raise GatewayError(f"Failed to open port {path}: {e}") from e
            self._ports[path] = PortEntry(path=path, handle=handle, timeout=timeout)
        logger.info(f"Opened {path} @ {baud_rate} baud")

    async def close(self, path: str) -> None:
        await self._run(self._close_sync, path, False)

    async def force_close(self, path: str) -> None:
        await self._run(self._close_sync, path, True)

    def _close_sync(self, path: str, force: bool) -> None:
        with self._lock:
            entry = self._ports.pop(path, None)
        if entry is None:
            if force:
                return
            raise PortNotOpenError(path)
        self._stop_reader(entry)
        try:
            entry.handle.close()
        except (serial.SerialException, OSError) as e:
            raise GatewayError(f"Failed to close port {path}: {e}") from e
        logger.info(f"{'Force closed' if force else 'Closed'} {path}")

    async def close_all(self) -> None:
        await self._run(self._close_all_sync)

    def _close_all_sync(self) -> None:
        with self._lock:
            entries = list(self._ports.values())
            self._ports.clear()
        for entry in entries:
            self._stop_reader(entry)
        first_error: GatewayError | None = None
        for entry in entries:
            try:
                entry.handle.close()
            except (serial.SerialException, OSError) as e:
                logger.warning(f"Failed to close port {entry.path}: {e}")
                if first_error is None:
                    first_error = GatewayError(f"Failed to close port {entry.path}: {e}")
        logger.info(f"Closed all ports ({len(entries)})")
        if first_error is not None:
            raise first_error

    # =========================================================================
    # Reading
    # =========================================================================

    async def read(self, path: str, timeout: int, size: int) -> None:
        # Thread start is cheap, no executor needed
        self._start_reader(path, timeout, size)

    def _start_reader(self, path: str, timeout: int, size: int) -> None:
        with self._lock:
            entry = self._ports.get(path)
            if entry is None:
                raise PortNotOpenError(path, f"Serial port {path} not found")
            if entry.reader is not None and entry.reader.is_alive():
                logger.debug(f"Port {path} is already reading")
                return
            stop_event = threading.Event()
            reader = threading.Thread(
                target=self._read_loop,
                args=(path, entry.handle, stop_event, timeout, size),
                name=f"serial-reader-{path}",
                daemon=True,
            )
            entry.stop_event = stop_event
            entry.reader = reader
            reader.start()
        logger.debug(f"Start reading data from {path}")

    def _read_loop(self, path: str, handle: Any, stop_event: threading.Event, timeout: int, size: int) -> None:
        channel = read_event_name(path)
        while not stop_event.is_set():
            try:
                chunk = handle.read(size)
            except (serial.SerialException, OSError, TypeError) as e:
                # TypeError: pyserial raises it when the handle is closed mid-read
                if not stop_event.is_set():
                    logger.error(f"Port {path} read failed: {e}")
                break
            if chunk and not stop_event.is_set():
                logger.debug(f"Port {path} read {len(chunk)} bytes")
                self.bus.emit(channel, ReadData(data=bytes(chunk), size=len(chunk)))
            if stop_event.wait(timeout / 1000.0):
                break
        logger.debug(f"Stopped reading data from {path}")

    async def cancel_read(self, path: str) -> None:
        with self._lock:
            entry = self._ports.get(path)
        if entry is None:
            return
        await self._run(self._stop_reader, entry)

    def _stop_reader(self, entry: PortEntry) -> None:
        with self._lock:
            reader, stop_event = entry.reader, entry.stop_event
            entry.reader = None
            entry.stop_event = None
        if reader is None or stop_event is None:
            return
        stop_event.set()
        if reader is not threading.current_thread():
            reader.join(timeout=entry.timeout / 1000.0 + READER_JOIN_GRACE)
            if reader.is_alive():
                logger.warning(f"Reader for {entry.path} did not stop in time")
        logger.debug(f"Canceled read data from {entry.path}")

    # =========================================================================
    # Writing
    # =========================================================================

    async def write(self, path: str, value: str) -> int:
        return await self._run(self._write_sync, path, value.encode("utf-8"))

    async def write_binary(self, path: str, value: bytes) -> int:
        return await self._run(self._write_sync, path, bytes(value))

    def _write_sync(self, path: str, data: bytes) -> int:
        with self._lock:
            entry = self._ports.get(path)
        if entry is None:
            raise PortNotOpenError(path, f"Serial port {path} not found")
        try:
            written = entry.handle.write(data)
        except (serial.SerialException, OSError) as e:
            raise GatewayError(f"Failed to write data to port {path}: {e}") from e
        return written if written is not None else len(data)

    # =========================================================================
    # Notifications
    # =========================================================================

    async def listen(self, channel: str, callback: NotificationCallback) -> Subscription:
        return self.bus.subscribe(channel, callback)
