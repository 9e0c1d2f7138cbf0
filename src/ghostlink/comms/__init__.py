"""
ghostlink Communication Module
==============================

This module pushes firmware to an nRF52 device over its USB serial port
using the legacy serial DFU protocol, and talks to the running
application's text console.

Protocol Stack
--------------
    DfuTransfer          five-phase transfer (start, erase, init, data, stop)
        │
    HCI packet           4-byte bit-packed header + payload + CRC-16
        │
    SLIP framing         0xC0 delimiters, 0xDB escapes
        │
    FrameTransport       write bytes / read one frame
        │
    pyserial

Module Structure
----------------
- **crc**: CRC-16 variant used by the bootloader
- **slip**: SLIP byte-stuffing encoder and decoder
- **hci**: HCI packet header and acknowledgment parsing
- **serial**: Serial port utilities (detection, configuration)
- **transport**: Frame transport over a serial port
- **dfu**: Transfer orchestrator
- **console**: Application console (settings, status, reboot to DFU)

Quick Start
-----------
**Flashing an application image** (device already in the bootloader):

    from ghostlink.comms import DfuTransfer, SerialFrameTransport, open_serial_port

    port = open_serial_port('/dev/ttyACM0')
    with SerialFrameTransport(port) as transport:
        transfer = DfuTransfer(transport, progress=lambda pct, msg: print(pct, msg))
        transfer.perform(init_data, firmware)

**Rebooting a running device into the bootloader**:

    port = open_serial_port('/dev/ttyACM0')
    ConsoleClient(port).request_serial_dfu()
    close_serial_port(port)

Error Handling
--------------
All communication errors inherit from `CommsError`:

- `ConnectionError`: Cannot open the port
- `TransportWriteError`: A write failed; this aborts a transfer
- `TransferCancelled`: The transfer was cancelled between chunks
- `ConsoleError`: The console answered with an error

These exceptions are defined in `ghostlink.errors`.

Thread Safety
-------------
A DfuTransfer runs on the calling thread. Only `DfuTransfer.cancel()`
may be called from another thread.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# CRC utilities
from ghostlink.comms.crc import (
    CRC_INITIAL,
    REFERENCE_CRC_VALUES,
    crc16,
    crc_from_bytes,
    crc_to_bytes,
    verify_packet_crc,
)

# SLIP framing
from ghostlink.comms.slip import (
    SLIP_END,
    SLIP_ESC,
    SLIP_ESC_END,
    SLIP_ESC_ESC,
    slip_decode,
    slip_encode,
)

# HCI packets
from ghostlink.comms.hci import (
    HCI_PACKET_TYPE,
    MAX_PAYLOAD_SIZE,
    HciHeader,
    HciPacket,
    build_header,
    build_hci_packet,
    parse_ack,
)

# Serial port utilities
from ghostlink.comms.serial import (
    DEFAULT_BAUD_RATE,
    VALID_BAUD_RATES,
    PortInfo,
    close_serial_port,
    find_dfu_port,
    format_port_list,
    list_serial_ports,
    open_serial_port,
)

# Frame transport
from ghostlink.comms.transport import (
    FrameTransport,
    SerialFrameTransport,
)

# DFU transfer
from ghostlink.comms.dfu import (
    # Constants
    DATA_CHUNK_SIZE,
    CHUNKS_PER_PAGE,
    FLASH_PAGE_SIZE,
    # Enums
    DfuOpcode,
    DfuState,
    LogLevel,
    # Classes
    DfuResult,
    DfuSession,
    DfuTransfer,
    # Type aliases
    LogCallback,
    ProgressCallback,
    # Functions
    build_data_payload,
    build_init_payload,
    build_start_payload,
    build_stop_payload,
)

# Application console
from ghostlink.comms.console import (
    ACTIONS,
    ConsoleClient,
    DeviceSettings,
    DeviceStatus,
    Response,
    build_action,
    build_query,
    build_set,
    parse_response,
)

__all__ = [
    # CRC
    "CRC_INITIAL",
    "REFERENCE_CRC_VALUES",
    "crc16",
    "crc_to_bytes",
    "crc_from_bytes",
    "verify_packet_crc",
    # SLIP
    "SLIP_END",
    "SLIP_ESC",
    "SLIP_ESC_END",
    "SLIP_ESC_ESC",
    "slip_encode",
    "slip_decode",
    # HCI
    "HCI_PACKET_TYPE",
    "MAX_PAYLOAD_SIZE",
    "HciHeader",
    "HciPacket",
    "build_header",
    "build_hci_packet",
    "parse_ack",
    # Serial
    "VALID_BAUD_RATES",
    "DEFAULT_BAUD_RATE",
    "PortInfo",
    "list_serial_ports",
    "find_dfu_port",
    "open_serial_port",
    "close_serial_port",
    "format_port_list",
    # Transport
    "FrameTransport",
    "SerialFrameTransport",
    # DFU Constants
    "DATA_CHUNK_SIZE",
    "CHUNKS_PER_PAGE",
    "FLASH_PAGE_SIZE",
    # DFU Enums
    "DfuOpcode",
    "DfuState",
    "LogLevel",
    # DFU Classes
    "DfuResult",
    "DfuSession",
    "DfuTransfer",
    "LogCallback",
    "ProgressCallback",
    # DFU Functions
    "build_start_payload",
    "build_init_payload",
    "build_data_payload",
    "build_stop_payload",
    # Console
    "ACTIONS",
    "ConsoleClient",
    "DeviceSettings",
    "DeviceStatus",
    "Response",
    "build_query",
    "build_set",
    "build_action",
    "parse_response",
]
