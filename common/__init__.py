"""Common utilities for the GPTini client."""
from .config import Config, get_config, configure_logger

__all__ = ['Config', 'get_config', 'configure_logger']
