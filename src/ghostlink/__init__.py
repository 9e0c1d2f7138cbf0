"""
ghostlink - Serial Firmware Update Host for nRF52 Devices
=========================================================

This package flashes application firmware onto nRF52 boards over USB
serial using the legacy (SDK 11) serial DFU bootloader protocol, and
reads and changes device settings through the running application's
text console.

Main Components
---------------
- **comms**: Protocol stack and transfer
    CRC-16, SLIP framing, HCI packets, frame transport, DFU orchestrator,
    application console

- **config**: Link and timing settings (defaults, environment overrides)

- **cli**: Command-line tool (ghostlink)

Quick Start
-----------
Flash a firmware image:
    >>> from ghostlink import DfuTransfer, SerialFrameTransport, open_serial_port
    >>> port = open_serial_port("/dev/ttyACM0")
    >>> with SerialFrameTransport(port) as transport:
    ...     DfuTransfer(transport).perform(init_data, firmware)

Or use the command-line tool:
    $ ghostlink flash app.dat app.bin --enter-dfu
    $ ghostlink settings
    $ ghostlink set keyMin 3000
    $ ghostlink action save
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================
# comms must be imported before config: the DFU orchestrator imports the
# timing record from config, which in turn reads serial constants.

from ghostlink.comms import (
    ConsoleClient,
    DeviceSettings,
    DeviceStatus,
    DfuResult,
    DfuState,
    DfuTransfer,
    FrameTransport,
    PortInfo,
    SerialFrameTransport,
    close_serial_port,
    crc16,
    find_dfu_port,
    list_serial_ports,
    open_serial_port,
    slip_decode,
    slip_encode,
)
from ghostlink.config import DfuTiming, LinkConfig
from ghostlink.errors import (
    GhostLinkError,
    ConfigError,
    CommsError,
    ConnectionError as GhostLinkConnectionError,  # Avoid collision with builtin
    ProtocolError,
    FramingError,
    MalformedAckError,
    ConsoleError,
    TimeoutError as GhostLinkTimeoutError,  # Avoid collision with builtin
    TransportError,
    TransportWriteError,
    TransportReadError,
    TransferError,
    TransferCancelled,
)

__all__ = [
    # Version info
    "__version__",
    # Protocol stack
    "crc16",
    "slip_encode",
    "slip_decode",
    # Transfer
    "DfuTransfer",
    "DfuState",
    "DfuResult",
    "DfuTiming",
    "FrameTransport",
    "SerialFrameTransport",
    # Console
    "ConsoleClient",
    "DeviceSettings",
    "DeviceStatus",
    # Serial
    "PortInfo",
    "list_serial_ports",
    "find_dfu_port",
    "open_serial_port",
    "close_serial_port",
    # Configuration
    "LinkConfig",
    # Exception hierarchy
    "GhostLinkError",
    "ConfigError",
    "CommsError",
    "GhostLinkConnectionError",
    "ProtocolError",
    "FramingError",
    "MalformedAckError",
    "ConsoleError",
    "GhostLinkTimeoutError",
    "TransportError",
    "TransportWriteError",
    "TransportReadError",
    "TransferError",
    "TransferCancelled",
]
