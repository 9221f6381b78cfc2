"""Test command channel locking, timeouts and interrupts."""

import asyncio
import queue
from types import SimpleNamespace

import pytest

from cnc_control.api.machine.clients import MockGrblChannel, SerialChannel, create_channel, list_ports
from cnc_control.api.machine.clients import serial_channel
from cnc_control.api.machine.config import ChannelConfig
from cnc_control.api.machine.exceptions import (
    ChannelError,
    ChannelInterrupted,
    ChannelNotConnected,
    ChannelTimeout
)


class TestCommandChannel:
    """Test base channel behaviour via the mock controller."""

    @pytest.mark.asyncio
    async def test_send_not_connected(self):
        """Test send on a closed channel."""
        channel = MockGrblChannel()
        with pytest.raises(ChannelNotConnected):
            await channel.send("?")
        with pytest.raises(ChannelNotConnected):
            await channel.send_urgent("!")

    @pytest.mark.asyncio
    async def test_send_records_success(self, channel):
        """Test reply and monitor bookkeeping."""
        response = await channel.send("G90 G0 X1")
        assert response.lines == ["ok"]
        assert response.ok
        assert channel.monitor.sample().samples == 1

    @pytest.mark.asyncio
    async def test_timeout(self, channel):
        """Test hung exchange times out and frees the lock."""
        channel.hang_on.add("$H")
        with pytest.raises(ChannelTimeout) as exc:
            await channel.send("$H", timeout_ms=50)
        assert exc.value.command == "$H"
        assert not channel.is_busy
        assert channel.monitor.sample().error_rate_percent == 100.0
        response = await channel.send("?")
        assert response.ok

    @pytest.mark.asyncio
    async def test_transport_error(self, channel):
        """Test transport failure propagates as channel error."""
        channel.fail_on.add("$X")
        with pytest.raises(ChannelError):
            await channel.send("$X")

    @pytest.mark.asyncio
    async def test_exchanges_serialized(self, channel):
        """Test concurrent sends never overlap."""
        channel.latency_ms = 20
        active = 0
        peak = 0
        exchange = channel._exchange

        async def tracking_exchange(command):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await exchange(command)
            finally:
                active -= 1

        channel._exchange = tracking_exchange
        await asyncio.gather(*(channel.send("?") for _ in range(5)))
        assert peak == 1
        assert channel.sent == ["?"] * 5

    @pytest.mark.asyncio
    async def test_interrupt_aborts_wait(self, channel):
        """Test interrupt ends an in-flight wait."""
        channel.hang_on.add("$H")
        pending = asyncio.ensure_future(channel.send("$H", timeout_ms=5000))
        await asyncio.sleep(0.01)
        assert channel.is_busy
        channel.interrupt()
        with pytest.raises(ChannelInterrupted):
            await pending
        assert not channel.is_busy

    @pytest.mark.asyncio
    async def test_urgent_bypasses_lock(self, channel):
        """Test urgent write goes out while an exchange is stuck."""
        channel.hang_on.add("$H")
        pending = asyncio.ensure_future(channel.send("$H", timeout_ms=200))
        await asyncio.sleep(0.01)
        await channel.send_urgent("!")
        assert channel.urgent == ["!"]
        with pytest.raises(ChannelTimeout):
            await pending

    @pytest.mark.asyncio
    async def test_disconnect(self, channel):
        """Test disconnect updates state and monitor."""
        await channel.disconnect()
        assert not channel.is_connected
        assert not channel.monitor.sample().connected


class TestChannelFactory:
    """Test channel selection."""

    def test_mock_channel(self):
        """Test default mode builds the mock."""
        assert isinstance(create_channel(ChannelConfig()), MockGrblChannel)

    def test_serial_channel(self):
        """Test serial mode builds the serial channel."""
        channel = create_channel(ChannelConfig(mode="serial", port="/dev/null-cnc"))
        assert isinstance(channel, SerialChannel)
        assert channel.port == "/dev/null-cnc"

    @pytest.mark.asyncio
    async def test_serial_without_port(self):
        """Test serial connect without a port fails cleanly."""
        channel = SerialChannel(ChannelConfig(mode="serial"))
        with pytest.raises(ChannelError):
            await channel.connect()
        assert not channel.is_connected

    def test_serial_encoding(self):
        """Test realtime bytes are sent bare and lines terminated."""
        assert SerialChannel._encode("?") == b"?"
        assert SerialChannel._encode("\x18") == b"\x18"
        assert SerialChannel._encode(" G0 X1 ") == b"G0 X1\n"

    @pytest.mark.parametrize("command,line,expected", [
        ("G0 X1", "ok", True),
        ("G0 X1", "error:9", True),
        ("G0 X1", "[MSG:Caution]", False),
        ("?", "<Idle|MPos:0,0,0>", True),
        ("$X", "<Idle|MPos:0,0,0>", False),
        ("\x18", "Grbl 1.1h ['$' for help]", True),
    ])
    def test_serial_terminators(self, command, line, expected):
        """Test reply terminator detection."""
        assert SerialChannel._is_terminator(command, line) is expected


class TestExclusiveChannel:
    """Test holding the channel across several exchanges."""

    @pytest.mark.asyncio
    async def test_other_callers_wait(self, channel):
        """Test sends from other tasks run only after release."""
        async with channel.exclusive():
            assert channel.is_held
            other = asyncio.ensure_future(channel.send("?"))
            await asyncio.sleep(0.01)
            assert not other.done()
            await channel.send("G91 G01 X1")
            await channel.send("G4 P0")
            await channel.send_urgent("!")
        await other
        assert not channel.is_held
        assert channel.sent == ["G91 G01 X1", "G4 P0", "?"]
        assert channel.urgent == ["!"]

    @pytest.mark.asyncio
    async def test_released_on_error(self, channel):
        """Test the hold ends when the block raises."""
        channel.fail_on.add("$X")
        with pytest.raises(ChannelError):
            async with channel.exclusive():
                await channel.send("$X")
        assert not channel.is_held
        assert not channel.is_busy
        assert (await channel.send("?")).ok


class FakeSerial:
    """In-memory serial port with canned replies per written line."""

    REPLIES = {
        b"G0 X1\n": [b"ok\r\n"],
        b"G4 P0\n": [],
    }

    def __init__(self, port=None, baudrate=None, timeout=0.1):
        self.port = port
        self.timeout = timeout
        self.is_open = True
        self.written = []
        self._incoming = queue.Queue()

    def write(self, data):
        self.written.append(data)
        for line in self.REPLIES.get(data, []):
            self._incoming.put(line)
        return len(data)

    def flush(self):
        pass

    def reset_input_buffer(self):
        while not self._incoming.empty():
            self._incoming.get_nowait()

    def readline(self):
        try:
            return self._incoming.get(timeout=self.timeout)
        except queue.Empty:
            return b""

    def close(self):
        self.is_open = False


@pytest.fixture
def fake_ports(mocker):
    """Route serial port opens to FakeSerial."""
    opened = []

    def open_port(**kwargs):
        port = FakeSerial(**kwargs)
        opened.append(port)
        return port

    mocker.patch.object(serial_channel.serial, "Serial", side_effect=open_port)
    mocker.patch.object(SerialChannel, "STARTUP_DELAY", 0)
    return opened


class TestSerialChannel:
    """Test the serial channel against an in-memory port."""

    @pytest.mark.asyncio
    async def test_exchange(self, fake_ports):
        """Test a line is written and its reply collected."""
        channel = SerialChannel(ChannelConfig(mode="serial", port="/dev/ttyFAKE0"))
        await channel.connect()
        try:
            response = await channel.send("G0 X1", timeout_ms=500)
            assert response.lines == ["ok"]
            assert fake_ports[0].written[-1] == b"G0 X1\n"
        finally:
            await channel.disconnect()
        assert not fake_ports[0].is_open

    @pytest.mark.asyncio
    async def test_timed_out_reader_stops(self, fake_ports):
        """Test a timed-out exchange leaves no reader behind to take later replies."""
        channel = SerialChannel(ChannelConfig(mode="serial", port="/dev/ttyFAKE0"))
        await channel.connect()
        try:
            for _ in range(3):
                with pytest.raises(ChannelTimeout):
                    await channel.send("G4 P0", timeout_ms=30)
                response = await channel.send("G0 X1", timeout_ms=500)
                assert response.lines == ["ok"]
        finally:
            await channel.disconnect()

    def test_list_ports(self, mocker):
        """Test host ports are listed sorted by device."""
        mocker.patch.object(serial_channel, "comports", return_value=[
            SimpleNamespace(device="COM4", description="USB-SERIAL CH340", hwid="USB VID:PID=1A86:7523"),
            SimpleNamespace(device="COM3", description="Arduino Uno", hwid="USB VID:PID=2341:0043"),
        ])
        ports = list_ports()
        assert [p.device for p in ports] == ["COM3", "COM4"]
        assert ports[1].hwid == "USB VID:PID=1A86:7523"
