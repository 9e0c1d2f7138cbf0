"""
Serial Port Utilities
=====================

The running application (text console) and the serial DFU bootloader
both talk over the board's USB CDC port. This module finds that port,
opens it the way the bootloader expects and closes it again.

Bootloader Port Behaviour
-------------------------
After `!serialdfu` the board reboots and the bootloader enumerates on the
same USB CDC interface, often with a different product ID and device
path. Detection therefore ranks ports by vendor ID alone.

Many CDC stacks ignore input until the host raises DTR, so
``open_serial_port`` drops DTR briefly and raises it again before handing
the port back.

Line Settings
-------------
115200 baud 8N1 with no flow control. CDC ignores the baud rate, but
USB-UART bridges wired to a bare module do not.
"""

import logging
import time
from dataclasses import dataclass
from typing import Final, Optional

import serial
import serial.tools.list_ports

from ghostlink.errors import ConnectionError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

VALID_BAUD_RATES: Final[tuple[int, ...]] = (9600, 38400, 57600, 115200, 230400)

DEFAULT_BAUD_RATE: Final[int] = 115200

# Per-read timeout handed to pyserial (seconds)
DEFAULT_TIMEOUT: Final[float] = 1.0

# DTR low pulse, then settle time after raising it again (seconds)
DTR_LOW_TIME: Final[float] = 0.05
DTR_SETTLE_TIME: Final[float] = 0.1

# nRF52 board vendors; earlier entries win during detection
BOARD_VENDOR_IDS: Final[dict[int, str]] = {
    0x239A: "Adafruit",
    0x2886: "Seeed",
    0x1915: "Nordic",
}

# USB-UART bridges seen on bare nRF52 modules
BRIDGE_VENDOR_IDS: Final[dict[int, str]] = {
    0x0403: "FTDI",
    0x10C4: "Silicon Labs",
    0x1A86: "QinHeng",
}

# Substrings of pyserial's open error, mapped to a hint for the user
_OPEN_FAILURE_HINTS: Final[tuple[tuple[tuple[str, ...], str], ...]] = (
    (("permission denied",),
     "Permission denied accessing {device}. Add your user to the 'dialout' "
     "group (sudo usermod -a -G dialout $USER) and log in again."),
    (("no such file", "not found", "cannot find"),
     "Serial port not found: {device}. The board may still be rebooting; "
     "use 'ghostlink ports' to list available ports."),
    (("busy", "in use", "access is denied"),
     "Serial port {device} is busy. Close any serial monitor or dashboard "
     "using the port."),
)


# =============================================================================
# Port Information
# =============================================================================

@dataclass(frozen=True)
class PortInfo:
    """
    One serial port as reported by the operating system.

    Attributes:
        device: Device path ('/dev/ttyACM0', 'COM3', ...)
        description: Driver or product description
        vid: USB vendor ID, None for non-USB ports
        pid: USB product ID, None for non-USB ports
        manufacturer: USB manufacturer string, if reported
        serial_number: USB serial number, if reported
    """

    device: str
    description: str = ""
    vid: Optional[int] = None
    pid: Optional[int] = None
    manufacturer: Optional[str] = None
    serial_number: Optional[str] = None

    @classmethod
    def from_listing(cls, entry) -> "PortInfo":
        """Build from a ``serial.tools.list_ports`` entry."""
        return cls(
            device=entry.device,
            description=entry.description or "",
            vid=entry.vid,
            pid=entry.pid,
            manufacturer=entry.manufacturer,
            serial_number=entry.serial_number,
        )

    @property
    def is_usb(self) -> bool:
        return self.vid is not None

    @property
    def is_board(self) -> bool:
        """True for ports belonging to a known nRF52 board vendor."""
        return self.vid in BOARD_VENDOR_IDS

    @property
    def vendor_name(self) -> Optional[str]:
        if self.vid is None:
            return None
        return BOARD_VENDOR_IDS.get(self.vid) or BRIDGE_VENDOR_IDS.get(self.vid)

    @property
    def usb_id(self) -> Optional[str]:
        """'VVVV:PPPP' in hex, or None for non-USB ports."""
        if self.vid is None:
            return None
        return f"{self.vid:04X}:{self.pid or 0:04X}"

    def __str__(self) -> str:
        text = self.device
        if self.description:
            text += f" - {self.description}"
        if self.vendor_name:
            text += f" ({self.vendor_name})"
        return text


# =============================================================================
# Port Enumeration
# =============================================================================

def list_serial_ports() -> list[PortInfo]:
    """
    List all available serial ports on the system.

    Returns:
        List of PortInfo objects, in the order the OS reports them.
    """
    ports = [PortInfo.from_listing(entry) for entry in serial.tools.list_ports.comports()]
    for port in ports:
        logger.debug("Found port: %s (usb=%s)", port.device, port.usb_id or "N/A")
    return ports


def _detection_rank(port: PortInfo) -> int:
    """Lower is better: board vendors in table order, then other USB ports."""
    board_vids = list(BOARD_VENDOR_IDS)
    if port.vid in board_vids:
        return board_vids.index(port.vid)
    return len(board_vids)


def find_dfu_port() -> Optional[str]:
    """
    Pick the port most likely to be the board.

    Known board vendors come first (in BOARD_VENDOR_IDS order), then any
    other USB serial port in OS order. Non-USB ports are never chosen.

    Returns:
        Device path, or None if no USB serial port is present.
    """
    candidates = [port for port in list_serial_ports() if port.is_usb]
    if not candidates:
        logger.debug("No USB serial ports found")
        return None

    # min() keeps the first of equally ranked ports
    best = min(candidates, key=_detection_rank)
    if best.is_board:
        logger.info("Auto-detected port: %s (%s)", best.device, best.vendor_name)
    else:
        logger.info("Using first USB serial port: %s (%s)", best.device, best.description)
    return best.device


# =============================================================================
# Opening and Closing
# =============================================================================

def _connection_error(device: str, error: serial.SerialException) -> ConnectionError:
    """Translate a pyserial open failure into a ConnectionError with a hint."""
    text = str(error).lower()
    for needles, hint in _OPEN_FAILURE_HINTS:
        if any(needle in text for needle in needles):
            return ConnectionError(hint.format(device=device))
    return ConnectionError(f"Cannot open {device}: {error}")


def open_serial_port(
    device: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
    timeout: float = DEFAULT_TIMEOUT,
    toggle_dtr: bool = True,
) -> serial.Serial:
    """
    Open a port at 8N1 without flow control and clear its buffers.

    Args:
        device: Serial port device path.
        baud_rate: One of VALID_BAUD_RATES.
        timeout: Per-read timeout in seconds.
        toggle_dtr: Pulse DTR low then high after opening.

    Returns:
        The open serial.Serial object. The caller closes it.

    Raises:
        ConnectionError: If the port cannot be opened.
        ValueError: If baud_rate is not supported.
    """
    if baud_rate not in VALID_BAUD_RATES:
        raise ValueError(
            f"Invalid baud rate: {baud_rate}. "
            f"Valid rates: {', '.join(map(str, VALID_BAUD_RATES))}"
        )

    logger.info("Opening serial port: %s at %d baud", device, baud_rate)
    try:
        port = serial.Serial(
            port=device,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
            xonxoff=False,
            rtscts=False,
            dsrdtr=False,
        )
    except serial.SerialException as e:
        raise _connection_error(device, e) from e

    port.reset_input_buffer()
    port.reset_output_buffer()

    if toggle_dtr:
        port.dtr = False
        time.sleep(DTR_LOW_TIME)
        port.dtr = True
        time.sleep(DTR_SETTLE_TIME)

    logger.debug("Port opened: %s (timeout=%.1f)", device, timeout)
    return port


def close_serial_port(port: Optional[serial.Serial]) -> None:
    """
    Close a port if it is open.

    The board may already have rebooted off the bus, so close errors are
    logged rather than raised.
    """
    if port is None or not port.is_open:
        return
    try:
        port.close()
    except (OSError, ValueError) as e:
        logger.warning("Error closing serial port: %s", e)
    else:
        logger.debug("Serial port closed")


# =============================================================================
# Display
# =============================================================================

def _port_details(port: PortInfo) -> list[str]:
    details = []
    if port.description:
        details.append(f"Description: {port.description}")
    if port.manufacturer:
        details.append(f"Manufacturer: {port.manufacturer}")
    if port.usb_id:
        vendor = f" ({port.vendor_name})" if port.vendor_name else ""
        details.append(f"USB VID:PID: {port.usb_id}{vendor}")
    if port.serial_number:
        details.append(f"Serial: {port.serial_number}")
    return details


def format_port_list(ports: list[PortInfo], verbose: bool = False) -> str:
    """
    Format ports for the `ports` command, one per line.

    With verbose, each port is followed by indented detail lines.
    """
    if not ports:
        return "No serial ports found."

    lines = []
    for port in ports:
        if not verbose:
            lines.append(f"  {port}")
            continue
        lines.append(f"  {port.device}")
        lines.extend(f"    {detail}" for detail in _port_details(port))
    return "\n".join(lines)
