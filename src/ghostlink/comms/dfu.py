"""
Legacy Serial DFU Transfer
==========================

This module pushes an application image to the device's serial
bootloader using the legacy (SDK 11 era) DFU protocol. Each DFU command
travels as one HCI packet (see ghostlink.comms.hci).

Transfer Sequence
-----------------
    ┌──────────┐  Start: opcode 3, mode 4, sizes (20 bytes)
    │ STARTING │ ─────────────────────────────────────────────→
    ├──────────┤
    │ ERASING  │  blind wait: max(pages * 90 ms, 1000 ms)
    ├──────────┤
    │ INIT     │  opcode 1 + init packet + 00 00, then 300 ms settle
    ├──────────┤
    │ DATA     │  opcode 4 + 512-byte chunk, 100 ms pause every 8
    ├──────────┤
    │ FINALIZE │  opcode 5; device validates, activates and reboots
    └──────────┘

Opcodes are deliberately non-sequential: Init=1, Start=3, Data=4, Stop=5.

Acknowledgments
---------------
The bootloader answers every packet with a short ack frame, but the
protocol gives no way to act on it: erase completion is not signalled,
and a lost chunk cannot be resent at a known offset. The send step
therefore reads the ack only to keep the serial buffer drained. Whatever
happens during that read is discarded. When no usable frame arrives
the sequence counter is reset to 0, which is what the bootloader expects
after a link hiccup. Only a failed *write* aborts the transfer.

The final Stop packet makes the device reboot immediately, so its ack
usually times out. That is expected.

Usage
-----
    port = open_serial_port('/dev/ttyACM0')
    with SerialFrameTransport(port) as transport:
        transfer = DfuTransfer(transport, progress=on_progress, log=on_log)
        transfer.perform(init_data, firmware)
"""

import logging
import math
import struct
import threading
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Final, Optional

from ghostlink.comms.hci import build_hci_packet, parse_ack, SEQUENCE_MODULUS
from ghostlink.comms.slip import slip_decode
from ghostlink.comms.transport import FrameTransport
from ghostlink.config import DfuTiming
from ghostlink.errors import (
    TransferCancelled,
    TransportWriteError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DFU Protocol Constants
# =============================================================================

class DfuOpcode(IntEnum):
    """DFU command opcodes. The values are fixed by the bootloader."""

    INIT = 1
    START = 3
    DATA = 4
    STOP = 5


# Update mode: application only
DFU_UPDATE_MODE_APP: Final[int] = 4

# Firmware bytes per data packet
DATA_CHUNK_SIZE: Final[int] = 512

# Data packets per flash page write
CHUNKS_PER_PAGE: Final[int] = 8

# Flash page size used for the erase estimate
FLASH_PAGE_SIZE: Final[int] = 4096

# Zero padding appended to the init packet
INIT_PADDING: Final[bytes] = b"\x00\x00"

# Progress milestones (percent)
PROGRESS_START: Final[int] = 0
PROGRESS_ERASE: Final[int] = 2
PROGRESS_INIT: Final[int] = 5
PROGRESS_DATA_START: Final[int] = 8
PROGRESS_DATA_SPAN: Final[int] = 82
PROGRESS_FINALIZE: Final[int] = 95
PROGRESS_COMPLETE: Final[int] = 100

# Minimum percentage advance between "Writing at" log lines
LOG_INTERVAL_PCT: Final[int] = 2


class DfuState(Enum):
    """Orchestrator phases, in the order they are entered."""

    IDLE = "idle"
    STARTING = "starting"
    ERASING_WAIT = "erasing"
    SENDING_INIT = "init"
    TRANSFERRING_DATA = "data"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    """Levels passed to the log callback."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


# Callback signatures
ProgressCallback = Callable[[int, str], None]
LogCallback = Callable[[str, str], None]

_LOG_LEVELS: Final[dict[LogLevel, int]] = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.ERROR: logging.ERROR,
}


# =============================================================================
# Payload Builders
# =============================================================================

def _uint32(value: int) -> bytes:
    return struct.pack("<I", value)


def build_start_payload(app_size: int) -> bytes:
    """Start payload: opcode, mode, softdevice size, bootloader size, app size."""
    return struct.pack("<5I", DfuOpcode.START, DFU_UPDATE_MODE_APP, 0, 0, app_size)


def build_init_payload(init_data: bytes) -> bytes:
    """Init payload: opcode, init packet bytes, two zero bytes."""
    return _uint32(DfuOpcode.INIT) + bytes(init_data) + INIT_PADDING


def build_data_payload(chunk: bytes) -> bytes:
    """Data payload: opcode followed by one firmware chunk."""
    return _uint32(DfuOpcode.DATA) + bytes(chunk)


def build_stop_payload() -> bytes:
    """Stop payload: opcode only."""
    return _uint32(DfuOpcode.STOP)


def chunk_count(image_size: int) -> int:
    """Number of data packets needed for an image."""
    return math.ceil(image_size / DATA_CHUNK_SIZE)


def erase_page_count(image_size: int) -> int:
    """Number of flash pages the bootloader erases for an image."""
    return math.ceil(image_size / FLASH_PAGE_SIZE)


def data_progress(chunks_sent: int, total_chunks: int) -> int:
    """Linear 8%..90% progress during the data phase, rounded half-up."""
    # round(a / b) half-up, in integers: (2a + b) // 2b
    scaled = chunks_sent * PROGRESS_DATA_SPAN
    return PROGRESS_DATA_START + (2 * scaled + total_chunks) // (2 * total_chunks)


# =============================================================================
# Session
# =============================================================================

class DfuSession:
    """
    Mutable state of one transfer.

    The session owns the HCI sequence counter. A new session is created
    for every call to DfuTransfer.perform(), so repeated or parallel
    transfers on different transports never share a counter.

    Attributes:
        init_data: Init packet bytes
        firmware: Application image bytes
        state: Current phase
        sequence: Sequence number of the most recent packet (0-7)
        chunks_sent: Data chunks written so far
        last_progress: Last percentage reported
        last_logged_pct: Percentage at the last "Writing at" log line
    """

    def __init__(self, init_data: bytes, firmware: bytes, timing: DfuTiming):
        self.init_data = bytes(init_data)
        self.firmware = bytes(firmware)
        self.state = DfuState.IDLE
        self.sequence = 0
        self.chunks_sent = 0
        self.last_progress = -1
        # Forces a log line at the first chunk
        self.last_logged_pct = -LOG_INTERVAL_PCT

        self.total_chunks = chunk_count(len(self.firmware))
        self.erase_pages = erase_page_count(len(self.firmware))
        self.erase_wait_ms = timing.erase_wait_ms(self.erase_pages)

    def next_sequence(self) -> int:
        """Advance the sequence counter (7 wraps to 0) and return it."""
        self.sequence = (self.sequence + 1) % SEQUENCE_MODULUS
        return self.sequence

    def reset_sequence(self) -> None:
        """Reset the sequence counter after a failed ack read."""
        self.sequence = 0

    def chunks(self):
        """Yield (index, offset, chunk) for each data packet."""
        for index in range(self.total_chunks):
            offset = index * DATA_CHUNK_SIZE
            yield index, offset, self.firmware[offset:offset + DATA_CHUNK_SIZE]


@dataclass(frozen=True)
class DfuResult:
    """Summary of a completed transfer."""

    chunks_sent: int
    bytes_sent: int
    elapsed: float


# =============================================================================
# Transfer Orchestrator
# =============================================================================

class DfuTransfer:
    """
    Drives one legacy serial DFU transfer over a FrameTransport.

    The transfer runs on the calling thread. Another thread may call
    cancel(); the request is honoured before the next phase or chunk,
    never in the middle of a write.
    """

    def __init__(
        self,
        transport: FrameTransport,
        progress: Optional[ProgressCallback] = None,
        log: Optional[LogCallback] = None,
        timing: Optional[DfuTiming] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            transport: Frame transport connected to the bootloader.
            progress: Called with (percent, message) at each milestone
                      and after every data chunk.
            log: Called with (message, level) for the user-facing log.
                 Levels are "info", "success" and "error".
            timing: Delay and timeout settings (defaults match the
                    reference tool).
            sleep: Blocking sleep function, injectable for tests.
        """
        self.transport = transport
        self.timing = timing or DfuTiming()
        self._progress = progress
        self._log = log
        self._sleep = sleep
        self._cancel = threading.Event()
        self.session: Optional[DfuSession] = None

    @property
    def state(self) -> DfuState:
        """Phase of the current or most recent transfer."""
        return self.session.state if self.session else DfuState.IDLE

    def cancel(self) -> None:
        """Ask the running transfer to stop before its next send."""
        self._cancel.set()

    # -------------------------------------------------------------------------
    # Transfer
    # -------------------------------------------------------------------------

    def perform(self, init_data: bytes, firmware: bytes) -> DfuResult:
        """
        Run the complete transfer.

        Args:
            init_data: Init packet (.dat) bytes.
            firmware: Application image (.bin) bytes.

        Returns:
            DfuResult summary.

        Raises:
            ValueError: If the firmware image is empty.
            TransportWriteError: If any write fails. The transfer stops
                                 immediately and nothing else is sent.
            TransferCancelled: If cancel() was called.
        """
        if not firmware:
            raise ValueError("Firmware image is empty")

        self._cancel.clear()
        session = DfuSession(init_data, firmware, self.timing)
        self.session = session
        started = time.monotonic()

        try:
            self._start(session)
            self._wait_for_erase(session)
            self._send_init(session)
            data_elapsed = self._send_data(session)
            self._finalize(session)
        except TransferCancelled:
            session.state = DfuState.CANCELLED
            raise
        except Exception:
            session.state = DfuState.FAILED
            raise

        session.state = DfuState.COMPLETE
        self._report_progress(session, PROGRESS_COMPLETE, "Firmware update complete!")
        self._emit_log("Firmware update complete!", LogLevel.SUCCESS)

        logger.debug("Data phase took %.1fs", data_elapsed)
        return DfuResult(
            chunks_sent=session.chunks_sent,
            bytes_sent=len(session.firmware),
            elapsed=time.monotonic() - started,
        )

    def _start(self, session: DfuSession) -> None:
        self._enter(session, DfuState.STARTING)
        size = len(session.firmware)

        self._report_progress(session, PROGRESS_START, "Starting DFU...")
        self._emit_log("Starting DFU (application mode)", LogLevel.INFO)
        self._emit_log(
            f"Firmware: {size / 1024:.1f} KB ({size} bytes), "
            f"{session.total_chunks} chunks",
            LogLevel.INFO,
        )

        self.send_packet(session, build_start_payload(size))

    def _wait_for_erase(self, session: DfuSession) -> None:
        # No packet and no confirmation: the bootloader erases silently
        self._enter(session, DfuState.ERASING_WAIT)
        pages = session.erase_pages

        self._report_progress(session, PROGRESS_ERASE, f"Erasing flash ({pages} pages)...")
        self._emit_log(
            f"Erasing flash ({pages} page{'s' if pages != 1 else ''})...",
            LogLevel.INFO,
        )

        erase_start = time.monotonic()
        self._sleep(session.erase_wait_ms / 1000)
        self._emit_log(
            f"Erase wait complete ({time.monotonic() - erase_start:.1f}s)",
            LogLevel.INFO,
        )

    def _send_init(self, session: DfuSession) -> None:
        self._enter(session, DfuState.SENDING_INIT)

        self._report_progress(session, PROGRESS_INIT, "Sending init packet...")
        self._emit_log(
            f"Sending init packet ({len(session.init_data)} bytes)...",
            LogLevel.INFO,
        )

        self.send_packet(session, build_init_payload(session.init_data))

        # Bootloader validates the init block before it accepts data
        self._sleep(self.timing.init_settle_delay)

    def _send_data(self, session: DfuSession) -> float:
        self._enter(session, DfuState.TRANSFERRING_DATA)
        total = session.total_chunks

        self._report_progress(session, PROGRESS_DATA_START, "Transferring firmware...")
        self._emit_log("Transferring firmware...", LogLevel.INFO)
        data_start = time.monotonic()

        for index, offset, chunk in session.chunks():
            if index:
                self._check_cancelled(session)

            try:
                self.send_packet(session, build_data_payload(chunk))
            except TransportWriteError as e:
                self._emit_log(f"Error at chunk {index + 1}/{total}: {e}", LogLevel.ERROR)
                raise
            session.chunks_sent = index + 1

            pct = data_progress(session.chunks_sent, total)
            self._report_progress(session, pct, f"Transferring... {session.chunks_sent}/{total} chunks")

            if pct - session.last_logged_pct >= LOG_INTERVAL_PCT:
                self._emit_log(f"Writing at 0x{offset:06X}... ({pct}%)", LogLevel.INFO)
                session.last_logged_pct = pct

            if session.chunks_sent % CHUNKS_PER_PAGE == 0 and session.chunks_sent < total:
                self._sleep(self.timing.page_write_delay)

        elapsed = time.monotonic() - data_start
        size = len(session.firmware)
        self._emit_log(
            f"Wrote {size} bytes ({size / 1024:.1f} KB) in {elapsed:.1f}s",
            LogLevel.SUCCESS,
        )
        return elapsed

    def _finalize(self, session: DfuSession) -> None:
        self._enter(session, DfuState.FINALIZING)

        self._report_progress(session, PROGRESS_FINALIZE, "Finalizing...")
        self._emit_log("Finalizing...", LogLevel.INFO)

        # The device reboots on Stop; a missing ack here is normal
        self.send_packet(session, build_stop_payload())

    # -------------------------------------------------------------------------
    # Packet I/O
    # -------------------------------------------------------------------------

    def send_packet(self, session: DfuSession, payload: bytes) -> None:
        """
        Send one DFU packet and drain its acknowledgment.

        The sequence counter is advanced before building the packet, so
        the first packet of a session carries sequence 1.

        The ack read is best-effort. Its content is never validated; it
        exists to keep the port drained. Any failure to read and decode
        it (timeout, read error, bad framing, short packet, or anything
        else the port raises) resets the session's sequence counter to 0
        and is otherwise ignored. A missing ack is logged as a warning,
        except after Stop where the device is expected to reboot.

        Raises:
            TransportWriteError: If the packet could not be written.
        """
        seq = session.next_sequence()
        frame = build_hci_packet(seq, payload)

        logger.debug("Sending packet seq=%d payload_len=%d", seq, len(payload))
        self.transport.write(frame)

        try:
            raw = self.transport.read_frame(self.timing.ack_timeout)
            ack = parse_ack(slip_decode(raw))
        except Exception as e:
            level = logging.DEBUG if session.state is DfuState.FINALIZING else logging.WARNING
            logger.log(level, "No usable ack for seq=%d (%s), resetting sequence", seq, e)
            session.reset_sequence()
            return

        logger.debug("Drained ack=%d for seq=%d", ack, seq)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _enter(self, session: DfuSession, state: DfuState) -> None:
        self._check_cancelled(session)
        logger.debug("DFU state: %s -> %s", session.state.value, state.value)
        session.state = state

    def _check_cancelled(self, session: DfuSession) -> None:
        if self._cancel.is_set():
            raise TransferCancelled(session.state.value, session.chunks_sent)

    def _report_progress(self, session: DfuSession, percent: int, message: str) -> None:
        session.last_progress = percent
        if self._progress:
            self._progress(percent, message)

    def _emit_log(self, message: str, level: LogLevel) -> None:
        logger.log(_LOG_LEVELS[level], "%s", message)
        if self._log:
            self._log(message, level.value)
