"""
ghostlink Error Hierarchy
=========================

This module defines the exception hierarchy for the whole package.
All exceptions inherit from GhostLinkError, allowing callers to catch
every ghostlink error with a single except clause if desired.

Exception Hierarchy
-------------------
GhostLinkError (base)
├── ConfigError - invalid configuration value
└── CommsError (serial communication)
    ├── ConnectionError - cannot open port / device gone
    ├── ProtocolError - malformed data on the wire
    │   ├── FramingError - bad SLIP escape sequence
    │   ├── MalformedAckError - acknowledgment too short
    │   └── ConsoleError - console replied with an error
    ├── TimeoutError - no complete frame/line before the deadline
    ├── TransportError - the byte stream itself failed
    │   ├── TransportWriteError - write failed (fatal for a transfer)
    │   └── TransportReadError - read failed
    └── TransferError - DFU transfer could not complete
        └── TransferCancelled - caller abandoned the transfer

Recovery Policy
---------------
During a DFU transfer only TransportWriteError is fatal. Read failures,
timeouts and malformed acknowledgments are drained and discarded by the
packet-send step of the orchestrator (see ghostlink.comms.dfu).
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class GhostLinkError(Exception):
    """
    Base exception for all ghostlink errors.

        try:
            transfer.perform(init_data, firmware)
        except GhostLinkError as e:
            print(f"Error: {e}")
    """
    pass


class ConfigError(GhostLinkError):
    """Invalid configuration value (bad baud rate, negative timeout, ...)."""
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(GhostLinkError):
    """Base exception for serial communication errors."""
    pass


class ConnectionError(CommsError):
    """
    Cannot connect to the device.

    Raised when:
    - Serial port not found
    - Permission denied
    - Port busy or device unplugged
    """
    pass


class ProtocolError(CommsError):
    """
    Wire protocol error.

    Raised when the device sends bytes that cannot be interpreted
    according to the framing or packet layout.
    """
    pass


class FramingError(ProtocolError):
    """
    Invalid SLIP escape sequence.

    Raised when an escape byte is followed by anything other than the
    two defined continuation bytes, or ends the frame.
    """
    pass


class MalformedAckError(ProtocolError):
    """
    Acknowledgment packet too short to carry a header.

    The bootloader's acknowledgment is never used for control flow, so
    this error is only ever observed by code that parses acks directly.
    """

    def __init__(self, length: int, message: str = ""):
        self.length = length
        if not message:
            message = f"Acknowledgment too short: {length} bytes, need at least 4"
        super().__init__(message)


class ConsoleError(ProtocolError):
    """
    Error reported by the device's text console.

    Raised when the device answers a command with "-err:<message>" or
    with a line that is not the expected reply.
    """
    pass


class TimeoutError(CommsError):
    """
    Communication timeout error.

    Raised when a read does not produce a complete frame or line before
    its deadline. During a DFU transfer this is the "ack timeout" case
    and is recovered locally.

    Note:
        This is distinct from the Python builtin TimeoutError. It
        inherits from CommsError for consistent error handling.
    """
    pass


class TransportError(CommsError):
    """Base exception for failures of the underlying byte stream."""
    pass


class TransportWriteError(TransportError):
    """
    Writing to the transport failed.

    This is the only error that aborts a DFU transfer. It is never
    retried and is always propagated to the caller.
    """
    pass


class TransportReadError(TransportError):
    """Reading from the transport failed for a reason other than timeout."""
    pass


class TransferError(CommsError):
    """
    Error during a firmware transfer.

    Raised when:
    - Input images are unusable
    - The transfer was cancelled
    """
    pass


class TransferCancelled(TransferError):
    """
    The caller cancelled the transfer.

    Attributes:
        phase: Name of the phase the transfer had reached
        chunks_sent: Number of data chunks written before stopping
    """

    def __init__(self, phase: str, chunks_sent: int = 0, message: Optional[str] = None):
        self.phase = phase
        self.chunks_sent = chunks_sent
        if message is None:
            message = f"Transfer cancelled during {phase} after {chunks_sent} chunk(s)"
        super().__init__(message)
