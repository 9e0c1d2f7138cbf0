"""
ghostlink Command-Line Interface
================================

This package provides the `ghostlink` command: serial port listing,
firmware flashing over the legacy serial DFU bootloader, and the
device console commands (status, settings, keys, set, action).

The tool is a Click-based CLI application with help for every command
and consistent exit codes (see ghostlink.cli.errors).
"""

__all__ = ["ghostlink"]
