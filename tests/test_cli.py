"""
Tests for the ghostlink Command-Line Interface
==============================================

Commands are invoked through click's CliRunner with the serial port,
console client and transfer patched out.
"""

import logging

import pytest
from unittest.mock import Mock, patch
from click.testing import CliRunner

from ghostlink import __version__
from ghostlink.cli.errors import ExitCode
from ghostlink.cli.ghostlink import TransferDisplay, main, progress_bar, quiet_logger
from ghostlink.comms.console import DeviceSettings, DeviceStatus
from ghostlink.comms.dfu import DfuResult
from ghostlink.comms.serial import PortInfo
from ghostlink.errors import (
    ConnectionError,
    ConsoleError,
    TransferCancelled,
    TransportWriteError,
)

CLI = "ghostlink.cli.ghostlink"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the user's GHOSTLINK_* settings out of the tests."""
    for name in ("GHOSTLINK_PORT", "GHOSTLINK_BAUD", "GHOSTLINK_ACK_TIMEOUT", "GHOSTLINK_REBOOT_WAIT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def images(tmp_path):
    """An init packet and firmware image on disk."""
    dat = tmp_path / "app.dat"
    bin_ = tmp_path / "app.bin"
    dat.write_bytes(b"\x01\x02\x03\x04")
    bin_.write_bytes(bytes(1500))
    return str(dat), str(bin_)


@pytest.fixture
def serial_port():
    """Patch port opening; yields the mock port."""
    port = Mock()
    with patch(f"{CLI}.open_serial_port", return_value=port) as opener:
        port.opener = opener
        yield port


@pytest.fixture
def console():
    """Patch the console client; yields the mock client."""
    client = Mock()
    with patch(f"{CLI}.ConsoleClient", return_value=client):
        yield client


# =============================================================================
# Group Options
# =============================================================================

class TestMain:
    """Tests for global options."""

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("ports", "flash", "status", "settings", "keys", "set", "action"):
            assert command in result.output

    def test_invalid_baud_option(self, runner):
        """Baud rates outside the supported set are usage errors."""
        result = runner.invoke(main, ["-b", "1234", "ports"])
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_invalid_env_baud(self, runner, clean_env):
        """An unsupported GHOSTLINK_BAUD is a configuration error."""
        clean_env.setenv("GHOSTLINK_BAUD", "1234")
        with patch(f"{CLI}.list_serial_ports", return_value=[]):
            result = runner.invoke(main, ["ports"])
        assert result.exit_code == ExitCode.INVALID_ARGS
        assert "Configuration error" in result.output

    def test_infinite_env_ack_timeout(self, runner, clean_env):
        """GHOSTLINK_ACK_TIMEOUT=inf is a configuration error."""
        clean_env.setenv("GHOSTLINK_ACK_TIMEOUT", "inf")
        with patch(f"{CLI}.list_serial_ports", return_value=[]):
            result = runner.invoke(main, ["ports"])
        assert result.exit_code == ExitCode.INVALID_ARGS
        assert "ack_timeout must be a finite number" in result.output


# =============================================================================
# Ports Command
# =============================================================================

class TestPorts:
    """Tests for the ports command."""

    def test_no_ports(self, runner):
        with patch(f"{CLI}.list_serial_ports", return_value=[]):
            result = runner.invoke(main, ["ports"])
        assert result.exit_code == 0
        assert "No serial ports found." in result.output

    def test_lists_ports(self, runner):
        ports = [PortInfo("/dev/ttyACM0", "Feather nRF52840", 0x239A, 0x8029)]
        with patch(f"{CLI}.list_serial_ports", return_value=ports), \
                patch(f"{CLI}.find_dfu_port", return_value="/dev/ttyACM0"):
            result = runner.invoke(main, ["ports", "--detailed"])
        assert result.exit_code == 0
        assert "/dev/ttyACM0" in result.output
        assert "Suggested port: /dev/ttyACM0" in result.output


# =============================================================================
# Flash Command
# =============================================================================

class TestFlash:
    """Tests for the flash command."""

    def test_flash(self, runner, images, serial_port):
        """A successful transfer exits 0 with a summary."""
        with patch(f"{CLI}.DfuTransfer") as transfer_cls:
            transfer_cls.return_value.perform.return_value = DfuResult(3, 1500, 4.2)
            result = runner.invoke(main, ["-p", "/dev/ttyACM0", "flash", *images, "--yes"])

        assert result.exit_code == 0, result.output
        transfer_cls.return_value.perform.assert_called_once_with(b"\x01\x02\x03\x04", bytes(1500))
        assert "Sent 3 packets (1500 bytes)" in result.output
        serial_port.opener.assert_called_once_with("/dev/ttyACM0", baud_rate=115200)
        serial_port.close.assert_called()

    def test_flash_uses_configured_timing(self, runner, images, serial_port, clean_env):
        """GHOSTLINK_ACK_TIMEOUT reaches the transfer."""
        clean_env.setenv("GHOSTLINK_ACK_TIMEOUT", "2.0")
        with patch(f"{CLI}.DfuTransfer") as transfer_cls:
            transfer_cls.return_value.perform.return_value = DfuResult(3, 1500, 1.0)
            runner.invoke(main, ["-p", "/dev/ttyACM0", "flash", *images, "-y"])
        assert transfer_cls.call_args.kwargs["timing"].ack_timeout == 2.0

    def test_flash_confirmation_declined(self, runner, images, serial_port):
        """Answering no aborts before opening the port."""
        with patch(f"{CLI}.DfuTransfer") as transfer_cls:
            result = runner.invoke(main, ["-p", "/dev/ttyACM0", "flash", *images], input="n\n")
        assert result.exit_code == 1
        transfer_cls.assert_not_called()
        serial_port.opener.assert_not_called()

    def test_flash_missing_file(self, runner, tmp_path):
        """A missing input file is a usage error."""
        result = runner.invoke(main, ["flash", str(tmp_path / "a.dat"), str(tmp_path / "a.bin")])
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_flash_empty_firmware(self, runner, images):
        """An empty image is rejected."""
        with open(images[1], "wb"):
            pass
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "flash", *images, "-y"])
        assert result.exit_code == ExitCode.INVALID_ARGS
        assert "empty" in result.output

    def test_flash_no_port(self, runner, images):
        """Auto-detect failure exits 1."""
        with patch(f"{CLI}.find_dfu_port", return_value=None):
            result = runner.invoke(main, ["flash", *images, "-y"])
        assert result.exit_code == ExitCode.COMMS_ERROR
        assert "auto-detect failed" in result.output

    def test_flash_write_error(self, runner, images, serial_port):
        """A fatal write error exits 1 with the message."""
        with patch(f"{CLI}.DfuTransfer") as transfer_cls:
            transfer_cls.return_value.perform.side_effect = TransportWriteError("device unplugged")
            result = runner.invoke(main, ["-p", "/dev/ttyACM0", "flash", *images, "-y"])
        assert result.exit_code == ExitCode.COMMS_ERROR
        assert "device unplugged" in result.output

    def test_flash_cancelled(self, runner, images, serial_port):
        """A cancelled transfer exits 1."""
        with patch(f"{CLI}.DfuTransfer") as transfer_cls:
            transfer_cls.return_value.perform.side_effect = TransferCancelled("data", 4)
            result = runner.invoke(main, ["-p", "/dev/ttyACM0", "flash", *images, "-y"])
        assert result.exit_code == ExitCode.COMMS_ERROR
        assert "Transfer cancelled" in result.output

    def test_flash_port_open_error(self, runner, images):
        """A port that cannot be opened exits 1."""
        with patch(f"{CLI}.open_serial_port", side_effect=ConnectionError("Serial port not found")):
            result = runner.invoke(main, ["-p", "/dev/ttyACM9", "flash", *images, "-y"])
        assert result.exit_code == ExitCode.COMMS_ERROR
        assert "Serial port not found" in result.output

    def test_flash_enter_dfu(self, runner, images, serial_port, console):
        """--enter-dfu sends !serialdfu and waits for the reboot."""
        with patch(f"{CLI}.DfuTransfer") as transfer_cls, \
                patch(f"{CLI}.time.sleep") as sleep:
            transfer_cls.return_value.perform.return_value = DfuResult(3, 1500, 1.0)
            result = runner.invoke(
                main, ["-p", "/dev/ttyACM0", "flash", *images, "--enter-dfu", "-y"]
            )

        assert result.exit_code == 0, result.output
        console.request_serial_dfu.assert_called_once()
        sleep.assert_called_once_with(3.0)
        # Console port and bootloader port
        assert serial_port.opener.call_count == 2

    def test_flash_enter_dfu_redetects_port(self, runner, images, serial_port, console):
        """Without --port, the bootloader port is detected again."""
        detected = iter(["/dev/ttyACM0", "/dev/ttyACM1"])
        with patch(f"{CLI}.DfuTransfer") as transfer_cls, \
                patch(f"{CLI}.time.sleep"), \
                patch(f"{CLI}.find_dfu_port", side_effect=lambda: next(detected)):
            transfer_cls.return_value.perform.return_value = DfuResult(3, 1500, 1.0)
            result = runner.invoke(main, ["flash", *images, "--enter-dfu", "-y"])

        assert result.exit_code == 0, result.output
        assert serial_port.opener.call_args_list[-1].args[0] == "/dev/ttyACM1"


# =============================================================================
# Console Commands
# =============================================================================

class TestConsoleCommands:
    """Tests for status, settings, keys, set and action."""

    def test_settings(self, runner, serial_port, console):
        console.query_settings.return_value = DeviceSettings(keyMin=2500)
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "settings"])
        assert result.exit_code == 0, result.output
        assert "keyMin" in result.output
        assert "2500" in result.output
        serial_port.close.assert_called()

    def test_status(self, runner, serial_port, console):
        console.query_status.return_value = DeviceStatus(
            connected=True, ms=True, bat=77, batMv=3950, profile=0, mouseState=1,
        )
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "status"])
        assert result.exit_code == 0, result.output
        assert "77% (3950 mV)" in result.output
        assert "LAZY" in result.output
        assert "on (MOVING)" in result.output

    def test_keys(self, runner, serial_port, console):
        console.query_keys.return_value = ["F13", "F14"]
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "keys"])
        assert result.exit_code == 0
        assert "F13" in result.output
        console.query_decoys.assert_not_called()

    def test_keys_decoys(self, runner, serial_port, console):
        console.query_decoys.return_value = ["Logitech K380"]
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "keys", "--decoys"])
        assert "Logitech K380" in result.output

    def test_set(self, runner, serial_port, console):
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "set", "keyMin", "3000"])
        assert result.exit_code == 0
        console.set_value.assert_called_once_with("keyMin", "3000")
        console.action.assert_not_called()

    def test_set_and_save(self, runner, serial_port, console):
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "set", "keyMin", "3000", "--save"])
        assert result.exit_code == 0
        console.action.assert_called_once_with("save")
        assert "(saved)" in result.output

    def test_set_rejected(self, runner, serial_port, console):
        """-err: replies exit 1."""
        console.set_value.side_effect = ConsoleError("=nope:1: unknown key")
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "set", "nope", "1"])
        assert result.exit_code == ExitCode.COMMS_ERROR
        assert "unknown key" in result.output

    def test_action(self, runner, serial_port, console):
        result = runner.invoke(main, ["-p", "/dev/ttyACM0", "action", "reboot"])
        assert result.exit_code == 0
        console.action.assert_called_once_with("reboot")

    def test_action_serialdfu(self, runner, serial_port, console):
        runner.invoke(main, ["-p", "/dev/ttyACM0", "action", "serialdfu"])
        console.request_serial_dfu.assert_called_once()

    def test_action_invalid(self, runner):
        result = runner.invoke(main, ["action", "explode"])
        assert result.exit_code == ExitCode.INVALID_ARGS


# =============================================================================
# Display Helpers
# =============================================================================

class TestDisplay:
    """Tests for the progress display helpers."""

    def test_progress_bar(self, capsys):
        progress_bar(50, "Transferring...")
        out = capsys.readouterr().out
        assert " 50% Transferring..." in out
        assert "=" * 25 + "-" * 25 in out

    def test_progress_bar_complete_newline(self, capsys):
        progress_bar(100, "done")
        assert capsys.readouterr().out.endswith("\n")

    def test_display_log_redraws_bar(self, capsys):
        display = TransferDisplay()
        display.progress(40, "Transferring...")
        display.log("Writing at 0x001000... (40%)", "info")
        out = capsys.readouterr().out
        assert "Writing at 0x001000... (40%)\n" in out
        assert out.count(" 40% Transferring...") == 2

    def test_quiet_logger_restores_level(self):
        target = logging.getLogger("ghostlink.test.quiet")
        target.setLevel(logging.DEBUG)
        with quiet_logger("ghostlink.test.quiet"):
            assert target.level == logging.WARNING
        assert target.level == logging.DEBUG
