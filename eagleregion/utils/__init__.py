"""
Utility functions for eagleregion.

Shard discovery, process environment setup, and synthetic snapshot
generation for tests.
"""

from .file_discovery import find_shard_files, find_snapshot
from .environment import setup_environment
from .synthetic_data import write_synthetic_snapshot

__all__ = [
    'find_shard_files',
    'find_snapshot',
    'setup_environment',
    'write_synthetic_snapshot'
]
