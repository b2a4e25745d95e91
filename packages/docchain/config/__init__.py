# docchain/config/__init__.py
"""
Configuration module for docchain processes.
Settings are read from the environment when a process starts, not on import.
"""

from .base import BaseConfig
from .worker import WorkerConfig

__all__ = ["BaseConfig", "WorkerConfig"]
