"""
HCI Packet Codec
================

This module builds the packets carried by the legacy DFU serial
transport and reads the sequence field of the bootloader's
acknowledgments. It handles:

- Bit-packing of the 4-byte reliable-packet header
- Header checksum
- CRC-16 trailer over header + payload
- SLIP framing of the finished packet

Packet Layout
-------------
    ┌──────────────────────────┬─────────────┬────────────┐
    │ Header (4 bytes)         │  Payload    │ CRC-16 (LE)│
    │                          │  0-4095 B   │  2 bytes   │
    └──────────────────────────┴─────────────┴────────────┘

Header bits:

    byte0:  seq (bits 0-2) | ack (bits 3-5) | integrity (bit 6) | reliable (bit 7)
    byte1:  packet type (bits 0-3, always 14) | length bits 0-3 (bits 4-7)
    byte2:  length bits 4-11
    byte3:  two's-complement of (byte0 + byte1 + byte2), truncated to 8 bits

The acknowledgment number written into outgoing packets is always
``(seq + 1) % 8``. Acknowledgments received from the bootloader are not
verified; only their header is ever inspected.
"""

import logging
from dataclasses import dataclass
from typing import Final

from ghostlink.comms.crc import crc16, crc_to_bytes
from ghostlink.comms.slip import slip_encode
from ghostlink.errors import MalformedAckError

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Packet type for DFU traffic
HCI_PACKET_TYPE: Final[int] = 14

# Header flag bits (byte 0)
DATA_INTEGRITY_CHECK_PRESENT: Final[int] = 1 << 6
RELIABLE_PACKET: Final[int] = 1 << 7

HEADER_SIZE: Final[int] = 4
CRC_SIZE: Final[int] = 2

# Length field is 12 bits wide
MAX_PAYLOAD_SIZE: Final[int] = 0x0FFF

# Sequence numbers are 3 bits wide
SEQUENCE_MODULUS: Final[int] = 8


# =============================================================================
# Header
# =============================================================================

@dataclass(frozen=True)
class HciHeader:
    """
    Decoded view of the 4-byte packet header.

    Attributes:
        sequence: Sequence number of this packet (0-7)
        ack: Acknowledgment number (0-7)
        integrity: Data-integrity (CRC trailer) flag
        reliable: Reliable-packet flag
        packet_type: Packet type nibble
        length: Payload length (0-4095)
        checksum: Header checksum byte
    """

    sequence: int
    ack: int
    integrity: bool
    reliable: bool
    packet_type: int
    length: int
    checksum: int

    @property
    def checksum_valid(self) -> bool:
        """True when the four header bytes sum to zero modulo 256."""
        return (sum(self.to_bytes()[:3]) + self.checksum) & 0xFF == 0

    def to_bytes(self) -> bytes:
        """Pack the fields back into 4 bytes."""
        b0 = (
            (self.sequence & 0x07)
            | ((self.ack & 0x07) << 3)
            | (DATA_INTEGRITY_CHECK_PRESENT if self.integrity else 0)
            | (RELIABLE_PACKET if self.reliable else 0)
        )
        b1 = (self.packet_type & 0x0F) | ((self.length & 0x0F) << 4)
        b2 = (self.length >> 4) & 0xFF
        return bytes([b0, b1, b2, self.checksum & 0xFF])

    @classmethod
    def from_bytes(cls, data: bytes) -> "HciHeader":
        """
        Unpack the first 4 bytes of an unframed packet.

        Raises:
            MalformedAckError: If fewer than 4 bytes are given.
        """
        if len(data) < HEADER_SIZE:
            raise MalformedAckError(len(data))
        b0, b1, b2, b3 = data[:HEADER_SIZE]
        return cls(
            sequence=b0 & 0x07,
            ack=(b0 >> 3) & 0x07,
            integrity=bool(b0 & DATA_INTEGRITY_CHECK_PRESENT),
            reliable=bool(b0 & RELIABLE_PACKET),
            packet_type=b1 & 0x0F,
            length=((b1 >> 4) & 0x0F) | (b2 << 4),
            checksum=b3,
        )


def build_header(sequence: int, length: int) -> bytes:
    """
    Build the 4-byte header for a DFU packet.

    Args:
        sequence: Sequence number (0-7).
        length: Payload length (0-4095).

    Returns:
        Header bytes, including the header checksum.
    """
    ack = (sequence + 1) % SEQUENCE_MODULUS

    b0 = (
        (sequence & 0x07)
        | ((ack & 0x07) << 3)
        | DATA_INTEGRITY_CHECK_PRESENT
        | RELIABLE_PACKET
    )
    b1 = (HCI_PACKET_TYPE & 0x0F) | ((length & 0x0F) << 4)
    b2 = (length >> 4) & 0xFF
    b3 = (-(b0 + b1 + b2)) & 0xFF

    return bytes([b0, b1, b2, b3])


# =============================================================================
# Packet Class
# =============================================================================

@dataclass
class HciPacket:
    """
    A single outgoing DFU packet.

    Attributes:
        sequence: Sequence number (0-7)
        payload: DFU command payload (0-4095 bytes)

    Example:
        packet = HciPacket(sequence=1, payload=b"\\x05\\x00\\x00\\x00")
        wire_bytes = packet.to_bytes()
    """

    sequence: int
    payload: bytes

    def __post_init__(self) -> None:
        """Validate packet fields after initialization."""
        if not 0 <= self.sequence <= 7:
            raise ValueError(f"Sequence must be 0-7, got {self.sequence}")

        if not isinstance(self.payload, (bytes, bytearray)):
            raise TypeError(
                f"Payload must be bytes, got {type(self.payload).__name__}"
            )

        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise ValueError(
                f"Payload too large: {len(self.payload)} bytes, max {MAX_PAYLOAD_SIZE}"
            )

    @property
    def ack(self) -> int:
        """Acknowledgment number carried in the header."""
        return (self.sequence + 1) % SEQUENCE_MODULUS

    def raw_bytes(self) -> bytes:
        """
        Assemble header + payload + CRC trailer, before framing.

        The trailer is computed last, over exactly the preceding bytes.
        """
        body = build_header(self.sequence, len(self.payload)) + bytes(self.payload)
        return body + crc_to_bytes(crc16(body))

    def to_bytes(self) -> bytes:
        """
        Serialize the packet for transmission.

        Returns:
            SLIP-framed packet ready to write to the transport.
        """
        raw = self.raw_bytes()
        framed = slip_encode(raw)

        logger.debug(
            "Encoded packet: seq=%d ack=%d payload_len=%d wire_len=%d",
            self.sequence, self.ack, len(self.payload), len(framed)
        )

        return framed

    def __repr__(self) -> str:
        """Return detailed string representation for debugging."""
        payload_repr = (
            bytes(self.payload[:20]).hex() + "..."
            if len(self.payload) > 20
            else bytes(self.payload).hex()
        )
        return (
            f"HciPacket(seq={self.sequence}, "
            f"payload[{len(self.payload)}]={payload_repr})"
        )


# =============================================================================
# Functional Interface
# =============================================================================

def build_hci_packet(sequence: int, payload: bytes) -> bytes:
    """
    Build a complete framed DFU packet.

    Args:
        sequence: Sequence number (0-7).
        payload: DFU command payload.

    Returns:
        SLIP-framed bytes.
    """
    return HciPacket(sequence=sequence, payload=payload).to_bytes()


def parse_ack(data: bytes) -> int:
    """
    Extract the acknowledged sequence number from a decoded ack packet.

    Only the header is inspected. No checksum or payload validation is
    performed, and the result is never compared against what was sent.

    Args:
        data: SLIP-decoded bytes of the acknowledgment.

    Returns:
        Acknowledged sequence number (bits 3-5 of the first byte).

    Raises:
        MalformedAckError: If fewer than 4 bytes are present.
    """
    if len(data) < HEADER_SIZE:
        raise MalformedAckError(len(data))
    return (data[0] >> 3) & 0x07
