"""Run logging for ingestion stages."""

from .logger import RunLogger, configure_logging

__all__ = ["RunLogger", "configure_logging"]
