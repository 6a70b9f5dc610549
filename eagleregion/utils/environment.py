"""
Environment configuration utilities for eagleregion.

Functions for setting up the process environment before many processes read
the same snapshot in parallel.
"""

import logging
import os
from typing import Optional


def setup_environment(num_threads: Optional[int] = None,
                      disable_file_locking: bool = True) -> None:
    """
    Configure HDF5 file locking and NumPy threading for parallel reads.

    Must run before h5py opens its first file, since HDF5 reads the locking
    variable once.

    Args:
        num_threads: Threads per process for NumPy operations.
                     If None, defaults to 1 (one reader process per core)
        disable_file_locking: Turn off HDF5 file locking, which fails or
                              serializes readers on many shared filesystems
    """
    if num_threads is None:
        num_threads = get_optimal_thread_count()

    os.environ.setdefault('OMP_NUM_THREADS', str(num_threads))
    os.environ.setdefault('OPENBLAS_NUM_THREADS', str(num_threads))
    os.environ.setdefault('MKL_NUM_THREADS', str(num_threads))

    if disable_file_locking:
        os.environ['HDF5_USE_FILE_LOCKING'] = 'FALSE'

    logging.getLogger(__name__).info(
        f"Environment configured: {num_threads} threads, "
        f"HDF5 file locking {'disabled' if disable_file_locking else 'unchanged'}")


def get_optimal_thread_count() -> int:
    """
    Threads per reader process.

    Region reads are I/O bound and parallelized across processes, so each
    process gets a single NumPy thread.
    """
    return 1
