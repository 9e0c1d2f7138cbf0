"""
ghostlink Configuration
=======================

Link and timing settings for talking to the device. Configuration can
come from:
- Default values (defined here)
- Environment variables
- Command-line options (applied by the CLI on top of the above)

The DFU timing defaults reproduce the reference host tool exactly. The
bootloader never confirms a flash erase, so the erase wait is the only
thing standing between the Start packet and the first data chunk; do
not shorten it for real hardware.
"""

import logging
import math
import os
from dataclasses import dataclass, replace
from typing import Optional

from ghostlink.comms.serial import DEFAULT_BAUD_RATE, VALID_BAUD_RATES
from ghostlink.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DfuTiming:
    """
    Timing used by the DFU orchestrator.

    Attributes:
        ack_timeout: Seconds to wait for each acknowledgment frame
        erase_ms_per_page: Erase estimate per 4096-byte flash page
        min_erase_ms: Lower bound of the erase estimate
        init_settle_delay: Seconds to wait after the init packet
        page_write_delay: Seconds to wait after every 8 data chunks
    """

    ack_timeout: float = 1.0
    erase_ms_per_page: int = 90
    min_erase_ms: int = 1000
    init_settle_delay: float = 0.3
    page_write_delay: float = 0.1

    def erase_wait_ms(self, pages: int) -> int:
        """Estimated erase time for the given number of flash pages."""
        return max(pages * self.erase_ms_per_page, self.min_erase_ms)


@dataclass
class LinkConfig:
    """
    Settings for a ghostlink session.

    Attributes:
        port: Serial device path, or None to auto-detect
        baud_rate: Serial baud rate
        ack_timeout: DFU acknowledgment read timeout (seconds)
        erase_ms_per_page: Erase estimate per 4096-byte page (ms)
        min_erase_ms: Minimum erase wait (ms)
        init_settle_delay: Delay after the init packet (seconds)
        page_write_delay: Delay after every 8 data chunks (seconds)
        reboot_wait: Wait for the device to re-enumerate in bootloader
                     mode after the !serialdfu action (seconds)
        console_timeout: Console reply timeout (seconds)
    """

    port: Optional[str] = None
    baud_rate: int = DEFAULT_BAUD_RATE

    # DFU timing
    ack_timeout: float = 1.0
    erase_ms_per_page: int = 90
    min_erase_ms: int = 1000
    init_settle_delay: float = 0.3
    page_write_delay: float = 0.1

    # Console
    reboot_wait: float = 3.0
    console_timeout: float = 3.0

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> "LinkConfig":
        """
        Create LinkConfig from environment variables.

        Environment variables (all optional):
            GHOSTLINK_PORT: Serial device path
            GHOSTLINK_BAUD: Baud rate (integer)
            GHOSTLINK_ACK_TIMEOUT: Ack timeout in seconds (float)
            GHOSTLINK_REBOOT_WAIT: Bootloader reboot wait in seconds (float)

        Invalid numeric values are ignored and the default is kept.
        """
        config = cls()

        if port := os.environ.get("GHOSTLINK_PORT"):
            config.port = port

        if baud := os.environ.get("GHOSTLINK_BAUD"):
            try:
                config.baud_rate = int(baud)
            except ValueError:
                logger.warning("Ignoring invalid GHOSTLINK_BAUD: %r", baud)

        if ack_timeout := os.environ.get("GHOSTLINK_ACK_TIMEOUT"):
            try:
                config.ack_timeout = float(ack_timeout)
            except ValueError:
                logger.warning("Ignoring invalid GHOSTLINK_ACK_TIMEOUT: %r", ack_timeout)

        if reboot_wait := os.environ.get("GHOSTLINK_REBOOT_WAIT"):
            try:
                config.reboot_wait = float(reboot_wait)
            except ValueError:
                logger.warning("Ignoring invalid GHOSTLINK_REBOOT_WAIT: %r", reboot_wait)

        return config

    def with_overrides(self, **changes) -> "LinkConfig":
        """Return a copy with the non-None keyword arguments applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check that every value is usable.

        Raises:
            ConfigError: On the first invalid value found.
        """
        if self.baud_rate not in VALID_BAUD_RATES:
            valid_str = ", ".join(str(b) for b in VALID_BAUD_RATES)
            raise ConfigError(
                f"Invalid baud rate: {self.baud_rate}. Valid rates: {valid_str}"
            )

        for name in ("ack_timeout", "console_timeout", "erase_ms_per_page", "min_erase_ms",
                     "init_settle_delay", "page_write_delay", "reboot_wait"):
            if not math.isfinite(getattr(self, name)):
                raise ConfigError(f"{name} must be a finite number, got {getattr(self, name)}")

        for name in ("ack_timeout", "console_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        for name in ("erase_ms_per_page", "min_erase_ms", "init_settle_delay",
                     "page_write_delay", "reboot_wait"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative, got {getattr(self, name)}")

    def dfu_timing(self) -> DfuTiming:
        """Return the orchestrator timing subset."""
        return DfuTiming(
            ack_timeout=self.ack_timeout,
            erase_ms_per_page=self.erase_ms_per_page,
            min_erase_ms=self.min_erase_ms,
            init_settle_delay=self.init_settle_delay,
            page_write_delay=self.page_write_delay,
        )
