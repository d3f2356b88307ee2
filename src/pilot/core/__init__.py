"""Core - process-wide setup shared by all pilot components."""

from pilot.core.logging_config import LogConfig, configure_logging

__all__ = ["LogConfig", "configure_logging"]
