"""Configuration, logging and telemetry plumbing."""

from .config import LedgerSettings, get_settings

__all__ = ["LedgerSettings", "get_settings"]
