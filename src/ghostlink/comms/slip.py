"""
SLIP Framing
============

Byte-stuffing framer used by the legacy DFU serial transport.

Every packet travels between two END delimiters. Literal END and ESC
bytes inside the packet are replaced by two-byte escape sequences so the
receiver can always find frame boundaries:

    ┌─────┬───────────────────────────────┬─────┐
    │ C0  │  packet bytes (escaped)       │ C0  │
    └─────┴───────────────────────────────┴─────┘

    C0 (END) inside data  ->  DB DC
    DB (ESC) inside data  ->  DB DD
"""

import logging
from typing import Final

from ghostlink.errors import FramingError

logger = logging.getLogger(__name__)


# =============================================================================
# SLIP Special Bytes
# =============================================================================

SLIP_END: Final[int] = 0xC0
SLIP_ESC: Final[int] = 0xDB
SLIP_ESC_END: Final[int] = 0xDC
SLIP_ESC_ESC: Final[int] = 0xDD

# Escape continuation byte -> original byte
_UNESCAPE: Final[dict[int, int]] = {
    SLIP_ESC_END: SLIP_END,
    SLIP_ESC_ESC: SLIP_ESC,
}


# =============================================================================
# Encoding / Decoding
# =============================================================================

def slip_encode(data: bytes) -> bytes:
    """
    Frame a buffer between END delimiters, escaping special bytes.

    Args:
        data: Raw packet bytes.

    Returns:
        Framed bytes, always starting and ending with SLIP_END.
    """
    out = bytearray([SLIP_END])
    for byte in data:
        if byte == SLIP_END:
            out += bytes([SLIP_ESC, SLIP_ESC_END])
        elif byte == SLIP_ESC:
            out += bytes([SLIP_ESC, SLIP_ESC_ESC])
        else:
            out.append(byte)
    out.append(SLIP_END)
    return bytes(out)


def slip_decode(frame: bytes) -> bytes:
    """
    Strip delimiters and undo escaping.

    All END bytes are dropped wherever they appear, so a frame may be
    passed with or without its delimiters.

    Args:
        frame: Framed bytes as read from the wire.

    Returns:
        The original packet bytes.

    Raises:
        FramingError: If an ESC byte is followed by anything other than
                      ESC_END/ESC_ESC, or is the last byte of the frame.
    """
    out = bytearray()
    escaped = False

    for byte in frame:
        if escaped:
            original = _UNESCAPE.get(byte)
            if original is None:
                raise FramingError(f"Invalid escape sequence: DB {byte:02X}")
            out.append(original)
            escaped = False
        elif byte == SLIP_END:
            continue
        elif byte == SLIP_ESC:
            escaped = True
        else:
            out.append(byte)

    if escaped:
        raise FramingError("Escape byte at end of frame")

    return bytes(out)
