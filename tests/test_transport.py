"""
Tests for the Serial Frame Transport
====================================

SerialFrameTransport is exercised against a mocked serial port whose
read() returns one scripted byte per call.
"""

import threading

import pytest
from unittest.mock import Mock, patch

import serial

from ghostlink.comms.slip import slip_encode
from ghostlink.comms.transport import POLL_INTERVAL, SerialFrameTransport
from ghostlink.errors import TimeoutError, TransportReadError, TransportWriteError


def create_mock_port(incoming: bytes = b""):
    """Create a mock serial port that yields incoming one byte per read."""
    stream = list(incoming)
    port = Mock()
    port.timeout = 1.0
    port.is_open = True

    def read(size=1):
        if stream:
            return bytes([stream.pop(0)])
        return b""

    port.read = Mock(side_effect=read)
    port.remaining = stream
    return port


class HungUpPort:
    """
    A port whose tty has hung up.

    pyserial reconfigures the tty when timeout is assigned, which fails
    once the device is gone. The first `working_sets` assignments succeed.
    """

    def __init__(self, working_sets: int = 0):
        self._timeout = 1.0
        self.working_sets = working_sets
        self.is_open = True

    @property
    def timeout(self):
        return self._timeout

    @timeout.setter
    def timeout(self, value):
        if self.working_sets <= 0:
            raise serial.SerialException("Could not configure port: (5, 'Input/output error')")
        self.working_sets -= 1
        self._timeout = value

    def read(self, size=1):
        raise serial.SerialException("device reports readiness to read but returned no data")


class TestWrite:
    """Tests for writing to the port."""

    def test_write_and_flush(self):
        """Bytes are written and flushed."""
        port = create_mock_port()
        transport = SerialFrameTransport(port)
        transport.write(b"\xC0\x01\xC0")
        port.write.assert_called_once_with(b"\xC0\x01\xC0")
        port.flush.assert_called_once()

    def test_write_failure(self):
        """Serial errors become TransportWriteError."""
        port = create_mock_port()
        port.write.side_effect = serial.SerialException("device disconnected")
        transport = SerialFrameTransport(port)
        with pytest.raises(TransportWriteError, match="device disconnected"):
            transport.write(b"\x00")

    def test_write_closed_port(self):
        """Writing to a closed port is a write failure."""
        port = create_mock_port()
        port.write.side_effect = serial.PortNotOpenError()
        with pytest.raises(TransportWriteError):
            SerialFrameTransport(port).write(b"\x00")


class TestReadFrame:
    """Tests for reading delimited frames."""

    def test_read_single_frame(self):
        """A frame is returned with both delimiters."""
        frame = slip_encode(b"\x08\x00\x00\xF8")
        transport = SerialFrameTransport(create_mock_port(frame))
        assert transport.read_frame(1.0) == frame

    def test_leading_noise_skipped(self):
        """Bytes before the first delimiter are ignored."""
        frame = slip_encode(b"\x10\x00\x00\xF0")
        transport = SerialFrameTransport(create_mock_port(b"\x55\xAA" + frame))
        assert transport.read_frame(1.0) == frame

    def test_back_to_back_delimiters(self):
        """Consecutive delimiters never produce an empty frame."""
        transport = SerialFrameTransport(create_mock_port(b"\xC0\xC0\xC0\x01\x02\xC0"))
        assert transport.read_frame(1.0) == b"\xC0\x01\x02\xC0"

    def test_stops_at_closing_delimiter(self):
        """Bytes after the frame are left for the next read."""
        first = slip_encode(b"\x01")
        second = slip_encode(b"\x02")
        port = create_mock_port(first + second)
        transport = SerialFrameTransport(port)

        assert transport.read_frame(1.0) == first
        assert bytes(port.remaining) == second
        assert transport.read_frame(1.0) == second

    def test_timeout(self):
        """No frame before the deadline raises TimeoutError."""
        transport = SerialFrameTransport(create_mock_port())
        with pytest.raises(TimeoutError):
            transport.read_frame(0.01)

    def test_partial_frame_not_carried_over(self):
        """A timed-out partial frame does not leak into the next read."""
        port = create_mock_port(b"\xC0\x01\x02")
        transport = SerialFrameTransport(port)
        with pytest.raises(TimeoutError):
            transport.read_frame(0.01)

        port.remaining.extend(b"\xC0\x03\xC0")
        # The old bytes are gone; the new opening delimiter starts afresh
        assert transport.read_frame(1.0) == b"\xC0\x03\xC0"

    def test_read_failure(self):
        """Serial errors become TransportReadError."""
        port = create_mock_port()
        port.read.side_effect = serial.SerialException("read failed")
        with pytest.raises(TransportReadError):
            SerialFrameTransport(port).read_frame(1.0)

    def test_port_timeout_restored(self):
        """The port timeout is set for polling and restored afterwards."""
        port = create_mock_port(slip_encode(b"\x01"))
        seen = []
        original_read = port.read.side_effect

        def read(size=1):
            seen.append(port.timeout)
            return original_read(size)

        port.read.side_effect = read
        SerialFrameTransport(port).read_frame(1.0)

        assert set(seen) == {POLL_INTERVAL}
        assert port.timeout == 1.0

    def test_port_timeout_restored_after_error(self):
        """The port timeout is restored when the read fails."""
        port = create_mock_port()
        port.read.side_effect = OSError("gone")
        with pytest.raises(TransportReadError):
            SerialFrameTransport(port).read_frame(1.0)
        assert port.timeout == 1.0

    def test_timeout_rejected_by_port(self):
        """A port that cannot take the poll timeout fails as a read error."""
        transport = SerialFrameTransport(HungUpPort())
        with pytest.raises(TransportReadError, match="read timeout"):
            transport.read_frame(1.0)
        assert not transport._read_lock.locked()

    def test_restore_failure_keeps_read_error(self):
        """Failing to restore the timeout does not replace the read error."""
        transport = SerialFrameTransport(HungUpPort(working_sets=1))
        with pytest.raises(TransportReadError, match="Serial read failed"):
            transport.read_frame(1.0)
        assert not transport._read_lock.locked()

    def test_handle_released_after_timeout(self):
        """A timed-out read never blocks the next one."""
        port = create_mock_port()
        transport = SerialFrameTransport(port)
        with pytest.raises(TimeoutError):
            transport.read_frame(0.01)
        assert not transport._read_lock.locked()

    def test_busy_handle(self):
        """A read while another read holds the handle fails cleanly."""
        transport = SerialFrameTransport(create_mock_port())
        transport._read_lock.acquire()
        try:
            with pytest.raises(TransportReadError, match="busy"):
                transport.read_frame(0.01)
        finally:
            transport._read_lock.release()

    def test_concurrent_reads_do_not_share_buffer(self):
        """Two readers each receive a whole frame."""
        frames = slip_encode(b"\x01\x01") + slip_encode(b"\x02\x02")
        transport = SerialFrameTransport(create_mock_port(frames))
        results = []

        def reader():
            results.append(transport.read_frame(2.0))

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == sorted([slip_encode(b"\x01\x01"), slip_encode(b"\x02\x02")])


class TestLifecycle:
    """Tests for closing the transport."""

    def test_context_manager_closes_port(self):
        """Leaving the with block closes the port."""
        port = create_mock_port()
        with SerialFrameTransport(port):
            pass
        port.close.assert_called_once()

    def test_close_errors_ignored(self):
        """A device that vanished does not raise on close."""
        port = create_mock_port()
        port.close.side_effect = OSError("device gone")
        with patch("ghostlink.comms.serial.logger") as log:
            SerialFrameTransport(port).close()
        log.warning.assert_called_once()
