"""Command-line interface."""

from stackwarden.cli.main import cli

__all__ = ["cli"]
