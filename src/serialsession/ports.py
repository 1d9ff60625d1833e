"""
Serial port descriptors and enumeration.
"""

from dataclasses import asdict, dataclass
from typing import Any

from serial.tools import list_ports


@dataclass
class PortInfo:
    """Description of an enumerable serial port.

    Attributes:
        port_name: Device path (e.g., "COM3", "/dev/ttyUSB0")
        port_type: "USB", "PCI", "Bluetooth" or "Unknown"
        vid: USB vendor id as 4-digit hex, None if unknown
        pid: USB product id as 4-digit hex, None if unknown
        manufacturer: Manufacturer string, None if unknown
        product: Product string, None if unknown
        serial_number: Serial number, None if unknown
    """

    port_name: str
    port_type: str
    vid: str | None = None
    pid: str | None = None
    manufacturer: str | None = None
    product: str | None = None
    serial_number: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortInfo":
        """Create PortInfo from dictionary."""
        return cls(
            port_name=data["port_name"],
            port_type=data.get("port_type", "Unknown"),
            vid=data.get("vid"),
            pid=data.get("pid"),
            manufacturer=data.get("manufacturer"),
            product=data.get("product"),
            serial_number=data.get("serial_number"),
        )


def _port_type(info: Any) -> str:
    if info.vid is not None:
        return "USB"
    hwid = (info.hwid or "").upper()
    if "PCI" in hwid:
        return "PCI"
    if "BTHENUM" in hwid or "BLUETOOTH" in hwid:
        return "Bluetooth"
    return "Unknown"


def _optional(value: str | None) -> str | None:
    # pyserial reports missing strings as None or ""
    return value or None


def port_info_from_list_port(info: Any) -> PortInfo:
    """Convert a pyserial ListPortInfo to PortInfo."""
    port_type = _port_type(info)
    if port_type != "USB":
        return PortInfo(port_name=info.device, port_type=port_type)
    return PortInfo(
        port_name=info.device,
        port_type=port_type,
        vid=f"{info.vid:04x}",
        pid=f"{info.pid:04x}" if info.pid is not None else None,
        manufacturer=_optional(info.manufacturer),
        product=_optional(info.product),
        serial_number=_optional(info.serial_number),
    )


def enumerate_ports() -> list[PortInfo]:
    """List the serial ports currently visible to the OS, sorted by name."""
    ports = [port_info_from_list_port(info) for info in list_ports.comports()]
    ports.sort(key=lambda p: p.port_name)
    return ports
