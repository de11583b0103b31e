"""Stackwarden: dependency-aware stack orchestration with drift reconciliation."""

__version__ = "0.1.0"
