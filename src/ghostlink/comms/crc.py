"""
CRC-16 Implementation for the Legacy DFU Serial Transport
=========================================================

This module implements the 16-bit checksum appended to every HCI packet
sent to the bootloader. The receiving bootloader recomputes it over the
header and payload and silently drops any packet whose trailer does not
match, so this exact variant is required; there is no negotiation.

Technical Details
-----------------
- CRC-16/CCITT register arithmetic, initial value 0xFFFF
- Byte-wise update without a lookup table:

      crc  = swap_bytes(crc)
      crc ^= byte
      crc ^= (crc & 0xFF) >> 4
      crc ^= (crc << 12) & 0xFFFF
      crc ^= ((crc & 0xFF) << 5) & 0xFFFF

- The trailer is transmitted little-endian (low byte first)

Known Values
------------
    crc16(b"")          = 0xFFFF
    crc16(b"\\x00")      = 0xE1F0
    crc16(b"123456789") = 0x29B1

Usage
-----
    from ghostlink.comms.crc import crc16, crc_to_bytes

    body = header + payload
    packet = body + crc_to_bytes(crc16(body))
"""

from typing import Final

# =============================================================================
# CRC Constants
# =============================================================================

# Initial register value
CRC_INITIAL: Final[int] = 0xFFFF

# Mask for 16-bit values
CRC_MASK: Final[int] = 0xFFFF

# Reference values used by the test suite
REFERENCE_CRC_VALUES: Final[dict[bytes, int]] = {
    b"": 0xFFFF,
    b"\x00": 0xE1F0,
    b"123456789": 0x29B1,
}


# =============================================================================
# Checksum
# =============================================================================

def crc16(data: bytes, initial: int = CRC_INITIAL) -> int:
    """
    Calculate the HCI packet checksum.

    Args:
        data: Bytes to checksum (header + payload, before SLIP framing).
        initial: Starting register value. Default 0xFFFF. Passing the
                 result of a previous call continues the computation over
                 concatenated data.

    Returns:
        16-bit checksum (0x0000 to 0xFFFF).

    Example:
        >>> hex(crc16(b""))
        '0xffff'
        >>> hex(crc16(b"123456789"))
        '0x29b1'
    """
    crc = initial & CRC_MASK

    for byte in data:
        # Swap high and low bytes of the register
        crc = ((crc >> 8) & 0xFF) | ((crc << 8) & CRC_MASK)
        crc ^= byte
        crc ^= (crc & 0xFF) >> 4
        crc ^= (crc << 12) & CRC_MASK
        crc ^= ((crc & 0xFF) << 5) & CRC_MASK

    return crc & CRC_MASK


# =============================================================================
# Utility Functions
# =============================================================================

def crc_to_bytes(crc: int) -> bytes:
    """
    Convert a checksum to the 2-byte little-endian packet trailer.

    Example:
        >>> crc_to_bytes(0x29B1)
        b'\\xb1)'
    """
    return bytes([crc & 0xFF, (crc >> 8) & 0xFF])


def crc_from_bytes(data: bytes) -> int:
    """
    Convert a little-endian packet trailer back to a checksum value.

    Raises:
        ValueError: If data is less than 2 bytes.
    """
    if len(data) < 2:
        raise ValueError(f"CRC requires 2 bytes, got {len(data)}")
    return data[0] | (data[1] << 8)


def verify_packet_crc(packet_with_crc: bytes) -> bool:
    """
    Verify an unframed packet that has its checksum appended.

    Returns:
        True if the trailing 2 bytes match the checksum of the rest.
    """
    if len(packet_with_crc) < 2:
        return False
    body = packet_with_crc[:-2]
    return crc16(body) == crc_from_bytes(packet_with_crc[-2:])
