"""
Telemetry Module
================

Observability for the sync engine.

Components:
- sentry.py: Error tracking for failed account runs

Usage:
    from adsync.telemetry import init_observability

    # Scheduler / CLI entry points call this once at startup
    init_observability()
"""

import logging

from .sentry import capture_exception, capture_message, init_sentry

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Apply the default log format for entry points that have none."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def init_observability(level: int = logging.INFO) -> bool:
    """Configure logging and Sentry. Returns whether Sentry is active."""
    configure_logging(level)
    return init_sentry()


__all__ = [
    "capture_exception",
    "capture_message",
    "configure_logging",
    "init_observability",
    "init_sentry",
]
