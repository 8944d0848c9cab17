"""
Logging module for the supervisor.
This module provides functionality to set up console and rotating file logging.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
