"""
Serial port options and environment configuration.

Options mirror the parameters a transport gateway needs to open a port.
Fixed line settings (data bits, parity, flow control, stop bits) are
validated once at construction and sent verbatim on every open.

Environment:
- SERIALSESSION_GATEWAY_URL: use a remote gateway daemon as the default gateway
- SERIALSESSION_HOST / SERIALSESSION_PORT: listen address for `serialsession serve`
- SERIALSESSION_REQUEST_TIMEOUT: remote request timeout in seconds
"""

import codecs
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from serialsession.errors import InvalidConfigError

DEFAULT_DATA_BITS = 8
DEFAULT_STOP_BITS = 2
DEFAULT_TIMEOUT_MS = 200
DEFAULT_READ_SIZE = 1024
DEFAULT_ENCODING = "utf-8"

VALID_DATA_BITS = (5, 6, 7, 8)
VALID_STOP_BITS = (1, 2)

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 9877
DEFAULT_REQUEST_TIMEOUT = 10.0


class Parity(Enum):
    """Parity checking mode."""

    NONE = "None"
    ODD = "Odd"
    EVEN = "Even"

    @classmethod
    def from_value(cls, value: "Parity | str | None") -> "Parity":
        """Convert None, a Parity, or a case-insensitive name to Parity."""
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value.lower():
                return member
        raise InvalidConfigError(f"Invalid parity: {value!r} (expected None, 'Odd' or 'Even')")


class FlowControl(Enum):
    """Flow control mode."""

    NONE = "None"
    SOFTWARE = "Software"
    HARDWARE = "Hardware"

    @classmethod
    def from_value(cls, value: "FlowControl | str | None") -> "FlowControl":
        """Convert None, a FlowControl, or a case-insensitive name to FlowControl."""
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value.lower():
                return member
        raise InvalidConfigError(f"Invalid flow control: {value!r} (expected None, 'Software' or 'Hardware')")


@dataclass
class SerialportOptions:
    """Configuration for one serial session.

    Attributes:
        path: Serial port identifier (e.g., "COM3", "/dev/ttyUSB0")
        baud_rate: Baud rate for the connection
        encoding: Text encoding used when listeners request decoded data
        data_bits: Number of data bits (5-8)
        flow_control: Flow control mode
        parity: Parity mode
        stop_bits: Number of stop bits (1 or 2)
        timeout: Default read/operation timeout in milliseconds
        size: Default read size in bytes
    """

    path: str
    baud_rate: int
    encoding: str = DEFAULT_ENCODING
    data_bits: int = DEFAULT_DATA_BITS
    flow_control: FlowControl = FlowControl.NONE
    parity: Parity = Parity.NONE
    stop_bits: int = DEFAULT_STOP_BITS
    timeout: int = DEFAULT_TIMEOUT_MS
    size: int = DEFAULT_READ_SIZE

    def __post_init__(self):
        if self.data_bits not in VALID_DATA_BITS:
            raise InvalidConfigError(f"Invalid data bits: {self.data_bits} (expected one of {VALID_DATA_BITS})")
        if self.stop_bits not in VALID_STOP_BITS:
            raise InvalidConfigError(f"Invalid stop bits: {self.stop_bits} (expected one of {VALID_STOP_BITS})")
        self.parity = Parity.from_value(self.parity)
        self.flow_control = FlowControl.from_value(self.flow_control)
        try:
            codecs.lookup(self.encoding)
        except LookupError as e:
            raise InvalidConfigError(f"Unknown encoding: {self.encoding}") from e
        if self.timeout < 0:
            raise InvalidConfigError(f"Invalid timeout: {self.timeout}")
        if self.size <= 0:
            raise InvalidConfigError(f"Invalid read size: {self.size}")

    def open_params(self) -> dict[str, Any]:
        """Parameters sent to the gateway on open."""
        return {
            "path": self.path,
            "baud_rate": self.baud_rate,
            "data_bits": self.data_bits,
            "parity": self.parity,
            "flow_control": self.flow_control,
            "stop_bits": self.stop_bits,
            "timeout": self.timeout,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["parity"] = self.parity.value
        data["flow_control"] = self.flow_control.value
        return data


def get_gateway_url() -> str | None:
    """Remote gateway URL from SERIALSESSION_GATEWAY_URL, or None for the local gateway."""
    url = os.environ.get("SERIALSESSION_GATEWAY_URL", "").strip()
    return url or None


def get_server_host() -> str:
    """Listen host for the gateway daemon."""
    return os.environ.get("SERIALSESSION_HOST", DEFAULT_SERVER_HOST)


def get_server_port() -> int:
    """Listen port for the gateway daemon."""
    value = os.environ.get("SERIALSESSION_PORT")
    if not value:
        return DEFAULT_SERVER_PORT
    try:
        return int(value)
    except ValueError as e:
        raise InvalidConfigError(f"SERIALSESSION_PORT must be an integer, got {value!r}") from e


def get_request_timeout() -> float:
    """Remote gateway request timeout in seconds."""
    value = os.environ.get("SERIALSESSION_REQUEST_TIMEOUT")
    if not value:
        return DEFAULT_REQUEST_TIMEOUT
    try:
        return float(value)
    except ValueError as e:
        raise InvalidConfigError(f"SERIALSESSION_REQUEST_TIMEOUT must be a number, got {value!r}") from e
