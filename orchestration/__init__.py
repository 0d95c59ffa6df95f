"""Declarative contract deployment and upgrade orchestration."""

__version__ = "0.1.0"
