"""Unit tests for Serialport sessions.

Uses the RecordingGateway fake from conftest so every gateway call can be
asserted in order. Uses asyncio.run() directly since pytest-asyncio is not
a dependency.
"""

import array
import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from serialsession import Serialport, set_default_gateway
from serialsession.errors import (
    GatewayError,
    InvalidArgumentError,
    InvalidConfigError,
    NotOpenError,
    PortNotOpenError,
    SubscriptionError,
)
from serialsession.events import read_event_name
from serialsession.options import FlowControl, Parity
from serialsession.ports import PortInfo


def _run(coro):
    """Helper to run an async coroutine in a new event loop."""
    return asyncio.run(coro)


async def _drain():
    """Let notification callbacks scheduled on the loop run."""
    for _ in range(3):
        await asyncio.sleep(0)


class TestInit:
    """Test constructor and default state."""

    def test_init_defaults(self, gateway):
        port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
        assert port.path == "COM3"
        assert port.baud_rate == 9600
        assert port.encoding == "utf-8"
        assert port.options.data_bits == 8
        assert port.options.flow_control is FlowControl.NONE
        assert port.options.parity is Parity.NONE
        assert port.options.stop_bits == 2
        assert port.options.timeout == 200
        assert port.options.size == 1024
        assert port.is_open is False
        assert port.is_listening is False
        assert gateway.calls == []

    def test_init_custom_params(self, gateway):
        port = Serialport(
            path="/dev/ttyUSB0",
            baud_rate=115200,
            encoding="latin-1",
            data_bits=7,
            flow_control="Hardware",
            parity="even",
            stop_bits=1,
            timeout=50,
            size=64,
            gateway=gateway,
        )
        assert port.options.data_bits == 7
        assert port.options.flow_control is FlowControl.HARDWARE
        assert port.options.parity is Parity.EVEN
        assert port.options.stop_bits == 1
        assert port.options.timeout == 50
        assert port.options.size == 64
        assert port.encoding == "latin-1"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"data_bits": 9},
            {"stop_bits": 3},
            {"parity": "Mark"},
            {"flow_control": "Xon"},
            {"encoding": "no-such-codec"},
        ],
    )
    def test_init_invalid_options(self, gateway, kwargs):
        with pytest.raises(InvalidConfigError):
            Serialport(path="COM3", baud_rate=9600, gateway=gateway, **kwargs)

    def test_default_gateway_used_when_none_given(self, gateway):
        set_default_gateway(gateway)
        port = Serialport(path="COM3", baud_rate=9600)
        assert port.gateway is gateway


class TestOpen:
    """Test open() method."""

    def test_open_sends_full_configuration(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, data_bits=7, parity="Odd", flow_control="Software", stop_bits=1, timeout=300, gateway=gateway)
            await port.open()

            assert port.is_open is True
            assert gateway.calls == [("open", "COM3", 9600)]
            assert gateway.open_params["COM3"] == {
                "baud_rate": 9600,
                "data_bits": 7,
                "parity": Parity.ODD,
                "flow_control": FlowControl.SOFTWARE,
                "stop_bits": 1,
                "timeout": 300,
            }

        _run(run())

    def test_open_logs_options(self, gateway, caplog):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, parity="Odd", gateway=gateway)
            with caplog.at_level(logging.DEBUG, logger="serialsession.session"):
                await port.open()

        _run(run())
        messages = [record.getMessage() for record in caplog.records]
        assert any("'baud_rate': 9600" in m and "'parity': 'Odd'" in m for m in messages)

    def test_open_already_open_noop(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.open()
            assert gateway.names() == ["open"]
            assert port.is_open is True

        _run(run())

    def test_open_empty_path_rejected(self, gateway):
        async def run():
            port = Serialport(path="", baud_rate=9600, gateway=gateway)
            with pytest.raises(InvalidConfigError, match="path"):
                await port.open()
            assert port.is_open is False
            assert gateway.calls == []

        _run(run())

    def test_open_zero_baud_rate_rejected(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=0, gateway=gateway)
            with pytest.raises(InvalidConfigError, match="baud_rate"):
                await port.open()
            assert gateway.calls == []

        _run(run())

    def test_open_gateway_failure_passes_through(self, gateway):
        async def run():
            error = GatewayError("Failed to open port COM3: access denied")
            gateway.failures["open"] = error
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)

            with pytest.raises(GatewayError) as exc_info:
                await port.open()

            assert exc_info.value is error
            assert port.is_open is False

        _run(run())

    def test_open_close_open_cycle(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.close()
            assert port.is_open is False
            await port.open()
            assert port.is_open is True
            assert gateway.names() == ["open", "cancel_read", "close", "open"]
            assert gateway.calls[0] == gateway.calls[-1]

        _run(run())


class TestClose:
    """Test close() method."""

    def test_close_not_open_noop(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.close()
            assert port.is_open is False
            assert gateway.calls == []

        _run(run())

    def test_close_order_with_listener_and_pending_read(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.listen(MagicMock())
            await port.read()
            gateway.calls.clear()

            await port.close()

            assert gateway.names() == ["cancel_read", "close", "unlisten"]
            assert port.is_open is False
            assert port.is_listening is False
            assert gateway.bus.subscriber_count(read_event_name("COM3")) == 0

        _run(run())

    def test_no_notification_after_close(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.listen(handler)
            await port.close()

            gateway.emit("COM3", b"late")
            await _drain()
            handler.assert_not_called()

        _run(run())

    def test_cancel_read_failure_not_fatal(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            gateway.failures["cancel_read"] = GatewayError("cancel failed")

            await port.close()

            assert port.is_open is False
            assert "close" in gateway.names()

        _run(run())

    def test_close_after_force_close_marks_closed(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await Serialport.force_close("COM3", gateway=gateway)
            assert port.is_open is True

            await port.close()
            assert port.is_open is False

        _run(run())

    def test_close_gateway_failure_keeps_session_open(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.listen(MagicMock())
            gateway.failures["close"] = GatewayError("device busy")

            with pytest.raises(GatewayError, match="device busy"):
                await port.close()

            assert port.is_open is True
            assert port.is_listening is True

        _run(run())


class TestReadWrite:
    """Test read(), cancel_read(), write() and write_binary()."""

    @pytest.mark.parametrize(
        "operation",
        [
            lambda port: port.read(),
            lambda port: port.write("AT\r\n"),
            lambda port: port.write_binary(b"\x01"),
        ],
    )
    def test_io_on_never_opened_session_fails(self, gateway, operation):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            with pytest.raises(NotOpenError):
                await operation(port)
            assert gateway.calls == []

        _run(run())

    def test_write_text(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            written = await port.write("AT\r\n")

            assert gateway.calls[-1] == ("write", "COM3", "AT\r\n")
            assert isinstance(written, int)
            assert written >= 0

        _run(run())

    def test_write_rejects_non_text(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            with pytest.raises(InvalidArgumentError):
                await port.write(b"AT")  # type: ignore[arg-type]
            assert "write" not in gateway.names()

        _run(run())

    def test_write_binary_list_and_bytes_equivalent(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            assert await port.write_binary([1, 2, 3]) == 3
            assert await port.write_binary(bytes([1, 2, 3])) == 3
            assert await port.write_binary(bytearray([1, 2, 3])) == 3

            writes = [call for call in gateway.calls if call[0] == "write_binary"]
            assert writes[0] == writes[1] == writes[2] == ("write_binary", "COM3", b"\x01\x02\x03")

        _run(run())

    @pytest.mark.parametrize("value", ["abc", [256], [1.5], [True], None, {1, 2}, array.array("H", [1, 2])])
    def test_write_binary_rejects_non_byte_sequence(self, gateway, value):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            with pytest.raises(InvalidArgumentError):
                await port.write_binary(value)
            assert "write_binary" not in gateway.names()

        _run(run())

    @pytest.mark.parametrize(
        "value",
        [
            array.array("B", [1, 2, 3]),
            range(1, 4),
            memoryview(b"\x01\x02\x03"),
            (1, 2, 3),
        ],
    )
    def test_write_binary_accepts_byte_sequences(self, gateway, value):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            assert await port.write_binary(value) == 3
            assert gateway.calls[-1] == ("write_binary", "COM3", b"\x01\x02\x03")

        _run(run())

    def test_read_uses_session_defaults(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, timeout=150, size=64, gateway=gateway)
            await port.open()
            result = await port.read()
            assert result is None
            assert gateway.calls[-1] == ("read", "COM3", 150, 64)

        _run(run())

    def test_read_per_call_overrides(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.read(timeout=500, size=16)
            assert gateway.calls[-1] == ("read", "COM3", 500, 16)

        _run(run())

    def test_cancel_read_idempotent(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.cancel_read()
            await port.cancel_read()
            assert gateway.names() == ["cancel_read", "cancel_read"]

        _run(run())

    def test_write_after_force_close_marks_closed(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await Serialport.force_close("COM3", gateway=gateway)

            with pytest.raises(PortNotOpenError):
                await port.write("AT")
            assert port.is_open is False

        _run(run())

    def test_write_gateway_failure_passes_through(self, gateway):
        async def run():
            error = GatewayError("Failed to write data to port COM3: broken pipe")
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            gateway.failures["write"] = error

            with pytest.raises(GatewayError) as exc_info:
                await port.write("AT")
            assert exc_info.value is error
            assert port.is_open is True

        _run(run())


class TestListen:
    """Test listen() and cancel_listen()."""

    def test_listen_decodes_text(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.listen(handler, decode=True)

            gateway.emit("COM3", bytes([72, 105]))
            await _drain()

            handler.assert_called_once_with("Hi")

        _run(run())

    def test_listen_raw_bytes(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler, decode=False)

            gateway.emit("COM3", b"\x00\xff")
            await _drain()

            handler.assert_called_once_with(b"\x00\xff")

        _run(run())

    def test_listen_uses_session_encoding(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, encoding="latin-1", gateway=gateway)
            await port.listen(handler)

            gateway.emit("COM3", b"\xe9")
            await _drain()

            handler.assert_called_once_with("é")

        _run(run())

    def test_listen_joins_split_multibyte_characters(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler)

            gateway.emit("COM3", b"\xc3")
            gateway.emit("COM3", b"\xa9!")
            await _drain()

            handler.assert_called_once_with("é!")

        _run(run())

    def test_listen_ignores_other_paths(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler)

            gateway.emit("COM4", b"other")
            await _drain()

            handler.assert_not_called()

        _run(run())

    def test_listen_twice_keeps_one_subscription(self, gateway):
        async def run():
            first = MagicMock()
            second = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(first)
            await port.listen(second)

            assert gateway.bus.subscriber_count(read_event_name("COM3")) == 1

            gateway.emit("COM3", b"data")
            await _drain()

            first.assert_not_called()
            second.assert_called_once_with("data")

        _run(run())

    def test_handler_error_keeps_subscription_alive(self, gateway):
        async def run():
            handler = MagicMock(side_effect=[ValueError("boom"), None])
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler)

            gateway.emit("COM3", b"one")
            gateway.emit("COM3", b"two")
            await _drain()

            assert handler.call_count == 2
            assert handler.call_args_list[1][0][0] == "two"
            assert port.is_listening is True

        _run(run())

    def test_async_handler_awaited(self, gateway):
        async def run():
            received = []

            async def handler(value):
                received.append(value)

            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler)

            gateway.emit("COM3", b"async")
            await _drain()

            assert received == ["async"]

        _run(run())

    def test_async_handler_error_is_contained(self, gateway):
        async def run():
            calls = []

            async def handler(value):
                calls.append(value)
                raise RuntimeError("handler failed")

            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler)

            gateway.emit("COM3", b"a")
            gateway.emit("COM3", b"b")
            await _drain()

            assert calls == ["a", "b"]

        _run(run())

    def test_cancel_listen_without_subscription(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.cancel_listen()
            await port.cancel_listen()
            assert gateway.calls == []

        _run(run())

    def test_cancel_listen_stops_delivery(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.listen(handler)
            await port.cancel_listen()

            gateway.emit("COM3", b"data")
            await _drain()

            handler.assert_not_called()
            assert port.is_listening is False

        _run(run())

    def test_listen_failure_raises_subscription_error(self, gateway):
        async def run():
            gateway.failures["listen"] = GatewayError("no event channel")
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)

            with pytest.raises(SubscriptionError, match="Failed to listen"):
                await port.listen(MagicMock())
            assert port.is_listening is False

        _run(run())


class TestReconfigure:
    """Test change(), set_baud_rate() and set_path()."""

    def test_set_baud_rate_closed_session(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=115200, gateway=gateway)
            await port.set_baud_rate(9600)

            assert port.baud_rate == 9600
            assert port.is_open is False
            assert gateway.calls == []

        _run(run())

    def test_set_baud_rate_open_session_reopens(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=115200, gateway=gateway)
            await port.open()
            gateway.calls.clear()

            await port.set_baud_rate(9600)

            assert gateway.names().count("close") == 1
            assert gateway.names().count("open") == 1
            assert gateway.calls[-1] == ("open", "COM3", 9600)
            assert gateway.names().index("close") < gateway.names().index("open")
            assert port.is_open is True

        _run(run())

    def test_set_path_open_session_reopens_on_new_path(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            gateway.calls.clear()

            await port.set_path("COM4")

            assert ("close", "COM3") in gateway.calls
            assert gateway.calls[-1] == ("open", "COM4", 9600)
            assert gateway.open_paths == {"COM4"}
            assert port.path == "COM4"

        _run(run())

    def test_change_updates_both(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()

            await port.change(path="COM5", baud_rate=57600)

            assert port.path == "COM5"
            assert port.baud_rate == 57600
            assert gateway.calls[-1] == ("open", "COM5", 57600)
            assert port.is_open is True

        _run(run())

    def test_change_ignores_empty_values(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.change(path="", baud_rate=0)
            assert port.path == "COM3"
            assert port.baud_rate == 9600

            await port.change(baud_rate=19200)
            assert port.path == "COM3"
            assert port.baud_rate == 19200
            assert gateway.calls == []

        _run(run())

    def test_reconfigure_close_failure_rejects(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            gateway.failures["close"] = GatewayError("device busy")
            gateway.calls.clear()

            with pytest.raises(GatewayError, match="device busy"):
                await port.set_baud_rate(19200)

            assert port.baud_rate == 19200
            assert port.is_open is True
            assert "open" not in gateway.names()

        _run(run())

    def test_reconfigure_drops_listener(self, gateway):
        async def run():
            handler = MagicMock()
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()
            await port.listen(handler)

            await port.set_path("COM4")
            gateway.emit("COM3", b"old")
            gateway.emit("COM4", b"new")
            await _drain()

            handler.assert_not_called()
            assert port.is_listening is False

        _run(run())


class TestRegistryOperations:
    """Test available_ports(), force_close() and close_all()."""

    def test_available_ports(self, make_gateway):
        async def run():
            ports = [
                PortInfo(port_name="COM4", port_type="Unknown"),
                PortInfo(port_name="COM3", port_type="USB", vid="2341", pid="0043", manufacturer="Arduino"),
            ]
            gateway = make_gateway(ports=ports)
            result = await Serialport.available_ports(gateway=gateway)
            assert [p.port_name for p in result] == ["COM3", "COM4"]
            assert result[1].vid is None

        _run(run())

    def test_force_close_does_not_touch_sessions(self, gateway):
        async def run():
            port = Serialport(path="COM3", baud_rate=9600, gateway=gateway)
            await port.open()

            await Serialport.force_close("COM3", gateway=gateway)

            assert gateway.calls[-1] == ("force_close", "COM3")
            assert "COM3" not in gateway.open_paths
            assert port.is_open is True

        _run(run())

    def test_close_all_uses_default_gateway(self, gateway):
        async def run():
            set_default_gateway(gateway)
            first = Serialport(path="COM3", baud_rate=9600)
            second = Serialport(path="COM4", baud_rate=9600)
            await first.open()
            await second.open()

            await Serialport.close_all()

            assert gateway.calls[-1] == ("close_all",)
            assert gateway.open_paths == set()

        _run(run())


class TestContextManager:
    """Test async with support."""

    def test_async_with_opens_and_closes(self, gateway):
        async def run():
            async with Serialport(path="COM3", baud_rate=9600, gateway=gateway) as port:
                assert port.is_open is True
            assert port.is_open is False
            assert gateway.names() == ["open", "cancel_read", "close"]

        _run(run())
