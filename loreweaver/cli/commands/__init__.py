"""CLI command modules for loreweaver."""

from loreweaver.cli.commands.sync import cmd_sync

__all__ = ["cmd_sync"]
