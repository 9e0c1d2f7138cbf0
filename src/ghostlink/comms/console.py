"""
Device Console Protocol
=======================

The running application exposes a line-oriented text console on the
same USB serial port the bootloader later uses. Commands are single
lines terminated by a newline:

    ?status | ?settings | ?keys | ?decoys     query
    =key:value                                set (in RAM, not saved)
    !save | !defaults | !reboot | !dfu | !serialdfu   action

Replies:

    !type|k=v|k=v|...      query result
    !keys|F13|F14|...      list result (keys, decoys)
    +ok[:detail]           success
    -err:message           failure

The firmware also prints free-form debug lines on the same port; they
are skipped while waiting for a reply.

The only coupling to the DFU transfer is ``!serialdfu``: the device
acknowledges, then reboots into the serial bootloader. The console port
must be closed and reopened once the bootloader has enumerated.
"""

import logging
import time
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, ClassVar, Final, Optional, Union

from ghostlink.errors import ConsoleError, TimeoutError, TransportReadError, TransportWriteError

if TYPE_CHECKING:
    import serial

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

QUERY_KINDS: Final[tuple[str, ...]] = ("status", "settings", "keys", "decoys")
ACTIONS: Final[tuple[str, ...]] = ("save", "defaults", "reboot", "dfu", "serialdfu")

# Responses whose fields are bare values rather than key=value pairs
LIST_RESPONSES: Final[tuple[str, ...]] = ("keys", "decoys")

DEFAULT_REPLY_TIMEOUT: Final[float] = 3.0

PROFILE_NAMES: Final[tuple[str, ...]] = ("LAZY", "NORMAL", "BUSY")
MODE_NAMES: Final[tuple[str, ...]] = ("NORMAL", "MENU", "SLOTS", "NAME", "DECOY")
MOUSE_STATE_NAMES: Final[tuple[str, ...]] = ("IDLE", "MOVING", "RETURNING")


# =============================================================================
# Command Builders
# =============================================================================

def build_query(kind: str) -> str:
    """
    Build a query command, e.g. '?settings'.

    Raises:
        ValueError: If kind is not one of QUERY_KINDS.
    """
    if kind not in QUERY_KINDS:
        raise ValueError(f"Unknown query: {kind!r}. Valid queries: {', '.join(QUERY_KINDS)}")
    return f"?{kind}"


def build_set(key: str, value: Union[str, int]) -> str:
    """Build a set command, e.g. '=keyMin:2000'."""
    return f"={key}:{value}"


def build_action(action: str) -> str:
    """Build an action command, e.g. '!save'."""
    return f"!{action}"


# =============================================================================
# Response Parsing
# =============================================================================

@dataclass
class Response:
    """
    One parsed console reply.

    Attributes:
        type: 'ok', 'error', 'unknown', or the query type ('settings', ...)
        data: Dict of fields, or list of values for keys/decoys
    """

    type: str
    data: Union[dict[str, str], list[str]] = field(default_factory=dict)

    @property
    def is_reply(self) -> bool:
        """False for free-form firmware output."""
        return self.type != "unknown"


def parse_response(line: str) -> Response:
    """
    Parse a reply line from the device.

    Examples:
        "!settings|keyMin=2000|keyMax=6500" -> Response('settings', {'keyMin': '2000', ...})
        "!keys|F13|F14"                    -> Response('keys', ['F13', 'F14'])
        "+ok"                              -> Response('ok', {})
        "-err:unknown key"                 -> Response('error', {'message': 'unknown key'})
    """
    if line.startswith("+"):
        return Response("ok", {})

    if line.startswith("-err:"):
        return Response("error", {"message": line[5:]})

    if line.startswith("!"):
        parts = line[1:].split("|")
        kind = parts[0]

        if kind in LIST_RESPONSES:
            return Response(kind, parts[1:])

        data = {}
        for part in parts[1:]:
            key, sep, value = part.partition("=")
            if sep:
                data[key] = value
        return Response(kind, data)

    return Response("unknown", {"raw": line})


def _int(data: dict[str, str], key: str, default: int, zero_is_default: bool = True) -> int:
    """Parse an integer field, falling back to default when missing or invalid."""
    try:
        value = int(data[key])
    except (KeyError, ValueError):
        return default
    if zero_is_default and value == 0:
        return default
    return value


@dataclass
class DeviceSettings:
    """
    Device settings, one field per key the firmware reports.

    Field names match the wire keys so that set commands can be built
    directly from them.
    """

    keyMin: int = 2000
    keyMax: int = 6500
    mouseJig: int = 15000
    mouseIdle: int = 30000
    mouseAmp: int = 1
    mouseStyle: int = 0
    lazyPct: int = 0
    busyPct: int = 0
    dispBright: int = 80
    saverBright: int = 20
    saverTimeout: int = 5
    animStyle: int = 2
    name: str = "GhostOperator"
    btWhileUsb: int = 0
    scroll: int = 0
    dashboard: int = 0
    decoy: int = 0
    schedMode: int = 0
    schedStart: int = 108
    schedEnd: int = 204
    slots: list[int] = field(default_factory=lambda: [2, 28, 28, 28, 28, 28, 28, 28])

    # Fields where 0 is a legitimate reported value
    _ZERO_ALLOWED: ClassVar[tuple[str, ...]] = ("saverTimeout", "animStyle", "schedStart", "schedEnd")

    @classmethod
    def from_fields(cls, data: dict[str, str]) -> "DeviceSettings":
        """Build settings from a '!settings' reply; unknown keys are ignored."""
        settings = cls()
        for f in fields(cls):
            if f.name in ("name", "slots"):
                continue
            default = getattr(settings, f.name)
            setattr(settings, f.name, _int(data, f.name, default, f.name not in cls._ZERO_ALLOWED))

        if data.get("name"):
            settings.name = data["name"]
        if data.get("slots"):
            try:
                settings.slots = [int(s) for s in data["slots"].split(",")]
            except ValueError:
                logger.warning("Ignoring invalid slots value: %r", data["slots"])
        return settings

    def as_fields(self) -> dict[str, str]:
        """Return the settings as wire key/value strings."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = ",".join(str(v) for v in value) if f.name == "slots" else str(value)
        return out


@dataclass
class DeviceStatus:
    """Runtime status reported by '?status'."""

    connected: bool = False
    usb: bool = False
    kb: bool = False
    ms: bool = False
    bat: int = 0
    batMv: int = 0
    profile: int = 1
    mode: int = 0
    mouseState: int = 0
    uptime: int = 0
    kbNext: str = "---"
    timeSynced: bool = False
    daySecs: int = 0
    schedSleeping: bool = False

    @classmethod
    def from_fields(cls, data: dict[str, str]) -> "DeviceStatus":
        """Build status from a '!status' reply."""
        return cls(
            connected=data.get("connected") == "1",
            usb=data.get("usb") == "1",
            kb=data.get("kb") == "1",
            ms=data.get("ms") == "1",
            bat=_int(data, "bat", 0),
            batMv=_int(data, "batMv", 0),
            profile=_int(data, "profile", 1, zero_is_default=False),
            mode=_int(data, "mode", 0),
            mouseState=_int(data, "mouseState", 0),
            uptime=_int(data, "uptime", 0),
            kbNext=data.get("kbNext") or "---",
            timeSynced=data.get("timeSynced") == "1",
            daySecs=_int(data, "daySecs", 0),
            schedSleeping=data.get("schedSleeping") == "1",
        )

    @property
    def profile_name(self) -> str:
        if 0 <= self.profile < len(PROFILE_NAMES):
            return PROFILE_NAMES[self.profile]
        return str(self.profile)

    @property
    def mode_name(self) -> str:
        if 0 <= self.mode < len(MODE_NAMES):
            return MODE_NAMES[self.mode]
        return str(self.mode)

    @property
    def mouse_state_name(self) -> str:
        if 0 <= self.mouseState < len(MOUSE_STATE_NAMES):
            return MOUSE_STATE_NAMES[self.mouseState]
        return str(self.mouseState)


# =============================================================================
# Console Client
# =============================================================================

class ConsoleClient:
    """
    Request/reply client for the device console over a serial port.

    Usage:
        port = open_serial_port('/dev/ttyACM0')
        console = ConsoleClient(port)
        settings = console.query_settings()
        console.set_value("keyMin", 3000)
        console.action("save")
    """

    def __init__(self, port: "serial.Serial", timeout: float = DEFAULT_REPLY_TIMEOUT):
        self.port = port
        self.timeout = timeout
        self._rx_buffer = bytearray()

    # -------------------------------------------------------------------------
    # Line I/O
    # -------------------------------------------------------------------------

    def send(self, command: str) -> None:
        """Send one command line."""
        data = (command + "\n").encode("utf-8")
        try:
            self.port.write(data)
            self.port.flush()
        except (OSError, ValueError) as e:
            raise TransportWriteError(f"Serial write failed: {e}") from e
        logger.debug("Console TX: %s", command)

    def read_line(self, timeout: Optional[float] = None) -> str:
        """
        Read one non-empty line, with any trailing CR removed.

        Raises:
            TimeoutError: If no complete line arrives in time.
            TransportReadError: If the port read fails.
        """
        if timeout is None:
            timeout = self.timeout
        deadline = time.monotonic() + timeout

        while True:
            newline = self._rx_buffer.find(b"\n")
            while newline != -1:
                raw = bytes(self._rx_buffer[:newline])
                del self._rx_buffer[:newline + 1]
                line = raw.decode("utf-8", errors="replace").rstrip("\r")
                if line:
                    logger.debug("Console RX: %s", line)
                    return line
                newline = self._rx_buffer.find(b"\n")

            if time.monotonic() >= deadline:
                raise TimeoutError(f"No console reply within {timeout}s")

            try:
                chunk = self.port.read(self.port.in_waiting or 1)
            except (OSError, ValueError) as e:
                raise TransportReadError(f"Serial read failed: {e}") from e
            if chunk:
                self._rx_buffer.extend(chunk)

    def request(self, command: str, expect: tuple[str, ...]) -> Response:
        """
        Send a command and wait for a reply of one of the expected types.

        Non-protocol lines and replies of other types are skipped.

        Raises:
            ConsoleError: If the device answers '-err:'.
            TimeoutError: If no matching reply arrives in time.
        """
        self.send(command)
        deadline = time.monotonic() + self.timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"No reply to {command!r} within {self.timeout}s")

            response = parse_response(self.read_line(remaining))
            if response.type == "error":
                raise ConsoleError(f"{command}: {response.data['message']}")
            if response.type in expect:
                return response
            if not response.is_reply:
                logger.debug("Skipping console output: %s", response.data["raw"])
            else:
                logger.warning("Unexpected console reply while waiting for %s: %s",
                               "/".join(expect), response.type)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def query_settings(self) -> DeviceSettings:
        response = self.request(build_query("settings"), ("settings",))
        return DeviceSettings.from_fields(response.data)

    def query_status(self) -> DeviceStatus:
        response = self.request(build_query("status"), ("status",))
        return DeviceStatus.from_fields(response.data)

    def query_keys(self) -> list[str]:
        return list(self.request(build_query("keys"), ("keys",)).data)

    def query_decoys(self) -> list[str]:
        return list(self.request(build_query("decoys"), ("decoys",)).data)

    def set_value(self, key: str, value: Union[str, int]) -> None:
        """Change a setting in RAM. Use action('save') to persist it."""
        self.request(build_set(key, value), ("ok",))

    def action(self, name: str) -> None:
        """Run an action and wait for '+ok'."""
        if name not in ACTIONS:
            raise ValueError(f"Unknown action: {name!r}. Valid actions: {', '.join(ACTIONS)}")
        self.request(build_action(name), ("ok",))

    def request_serial_dfu(self) -> None:
        """
        Ask the application to reboot into the serial bootloader.

        The device may drop off the bus before or right after its '+ok',
        so a missing reply or a read failure here is not an error.

        Raises:
            TransportWriteError: If the command could not be sent.
        """
        try:
            self.request(build_action("serialdfu"), ("ok",))
        except (TimeoutError, TransportReadError) as e:
            logger.info("No reply to !serialdfu (device rebooting): %s", e)
