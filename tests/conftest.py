#!/usr/bin/env python3
"""
Global pytest configuration for eagleregion tests.

Synthetic snapshots in the EAGLE layout are written once per session into a
temporary directory and shared read-only between tests. Tests that modify
files write their own copy.
"""

import pytest
import os
import sys
import logging
from pathlib import Path

# Add the package root and the tests directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from eagleregion import Snapshot
from eagleregion.utils.synthetic_data import write_synthetic_snapshot
from test_config import TEST_CONFIG, FALLBACK_CONFIG, snapshot_kwargs

# Check debug mode
DEBUG_MODE = os.environ.get('EAGLEREGION_DEBUG_MODE', 'false').lower() == 'true'

if not DEBUG_MODE:
    # Suppress verbose logging from other libraries
    logging.getLogger('h5py').setLevel(logging.WARNING)
    logging.getLogger('h5py._conv').setLevel(logging.WARNING)


@pytest.fixture(scope="session")
def snapshot_paths(tmp_path_factory):
    """Shard paths of the shared synthetic snapshot."""
    directory = tmp_path_factory.mktemp("snapshot")
    return write_synthetic_snapshot(directory, **snapshot_kwargs())


@pytest.fixture(scope="session")
def snapshot(snapshot_paths):
    """Open Snapshot over the shared synthetic data."""
    snap = Snapshot(snapshot_paths[0])
    yield snap
    snap.close()


@pytest.fixture(scope="session")
def fallback_paths(tmp_path_factory):
    """Snapshot whose dark matter has no records in the first shard."""
    directory = tmp_path_factory.mktemp("fallback")
    return write_synthetic_snapshot(directory, **snapshot_kwargs(
        prefix=FALLBACK_CONFIG['prefix'],
        shard_counts=FALLBACK_CONFIG['shard_counts'],
    ))


@pytest.fixture
def fresh_paths(tmp_path):
    """Private synthetic snapshot that a test may modify."""
    return write_synthetic_snapshot(tmp_path / "fresh", **snapshot_kwargs())


@pytest.fixture(scope="session")
def test_config():
    """Provide shared test configuration to tests."""
    return TEST_CONFIG
