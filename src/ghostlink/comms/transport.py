"""
Frame Transport
===============

Thin byte-stream abstraction used by the DFU orchestrator. The
orchestrator only ever needs two operations:

- ``write(data)``: push bytes to the device
- ``read_frame(timeout)``: return exactly one SLIP frame, delimiters
  included, or raise after ``timeout`` seconds

Read Handle
-----------
Every call to ``read_frame`` acquires the read handle afresh and builds
its frame in a call-local buffer. The handle is released on success,
timeout and error, so an abandoned read can never hold the port or
leave half a frame behind for the next caller. Bytes are pulled from
the port one at a time, which means nothing past the closing delimiter
is consumed.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Final, Iterator, Protocol

from ghostlink.comms.serial import close_serial_port
from ghostlink.comms.slip import SLIP_END
from ghostlink.errors import (
    TimeoutError,
    TransportReadError,
    TransportWriteError,
)

if TYPE_CHECKING:
    import serial

logger = logging.getLogger(__name__)


# Per-read port timeout while polling for frame bytes (seconds)
POLL_INTERVAL: Final[float] = 0.05


class FrameTransport(Protocol):
    """Interface the DFU orchestrator expects from a transport."""

    def write(self, data: bytes) -> None:
        """Write bytes. Raises TransportWriteError on failure."""
        ...

    def read_frame(self, timeout: float) -> bytes:
        """
        Read one delimiter-bounded frame.

        Raises:
            TimeoutError: If no complete frame arrives in time.
            TransportReadError: If the underlying read fails.
        """
        ...


class _FrameReader:
    """Call-local frame assembly state."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.started = False

    def feed(self, byte: int) -> bool:
        """
        Consume one byte.

        Returns:
            True once a complete frame (opening and closing delimiter with
            at least one byte between) has been collected.
        """
        if byte == SLIP_END:
            if self.started and len(self.buffer) > 1:
                self.buffer.append(SLIP_END)
                return True
            # Start of frame, or back-to-back delimiters
            self.started = True
            self.buffer = bytearray([SLIP_END])
        elif self.started:
            self.buffer.append(byte)
        return False


class SerialFrameTransport:
    """
    FrameTransport over an open pyserial port.

    Usage:
        port = open_serial_port('/dev/ttyACM0')
        with SerialFrameTransport(port) as transport:
            transfer = DfuTransfer(transport)
            transfer.perform(init_data, firmware)
    """

    def __init__(self, port: "serial.Serial"):
        """
        Args:
            port: Configured, open serial port.
        """
        self.port = port
        self._read_lock = threading.Lock()

    def __enter__(self) -> "SerialFrameTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying port."""
        close_serial_port(self.port)

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        """
        Write bytes to the port and flush.

        Raises:
            TransportWriteError: If the port rejects the write.
        """
        try:
            self.port.write(data)
            self.port.flush()
        except (OSError, ValueError) as e:
            # SerialException subclasses OSError; a closed port raises
            # PortNotOpenError (also a SerialException)
            raise TransportWriteError(f"Serial write failed: {e}") from e
        logger.debug("Sent %d bytes: %s", len(data), data.hex())

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    @contextmanager
    def _acquire_reader(self, timeout: float) -> Iterator[_FrameReader]:
        """
        Acquire the read handle with a fresh frame buffer.

        The handle is always released when the block exits, and the
        port's own timeout setting is restored where the port still
        allows it.

        Raises:
            TransportReadError: If the handle is busy or the port rejects
                the read timeout (a hung-up tty does).
        """
        if not self._read_lock.acquire(timeout=max(timeout, 0.0)):
            raise TransportReadError("Read handle is busy")
        old_timeout = self.port.timeout
        try:
            try:
                self.port.timeout = POLL_INTERVAL
            except (OSError, ValueError) as e:
                raise TransportReadError(f"Cannot set read timeout: {e}") from e
            yield _FrameReader()
        finally:
            try:
                self.port.timeout = old_timeout
            except (OSError, ValueError) as e:
                # Port already gone; the read outcome is what matters
                logger.debug("Could not restore port timeout: %s", e)
            finally:
                self._read_lock.release()

    def read_frame(self, timeout: float) -> bytes:
        """
        Read one SLIP frame, delimiters included.

        Args:
            timeout: Maximum time to wait in seconds.

        Returns:
            Frame bytes starting and ending with SLIP_END.

        Raises:
            TimeoutError: If no complete frame arrives within timeout.
            TransportReadError: If the port read fails.
        """
        deadline = time.monotonic() + timeout

        with self._acquire_reader(timeout) as reader:
            while time.monotonic() < deadline:
                try:
                    chunk = self.port.read(1)
                except (OSError, ValueError) as e:
                    raise TransportReadError(f"Serial read failed: {e}") from e

                if chunk and reader.feed(chunk[0]):
                    frame = bytes(reader.buffer)
                    logger.debug("Received frame %d bytes: %s", len(frame), frame.hex())
                    return frame

        raise TimeoutError(f"No frame received within {timeout}s")
