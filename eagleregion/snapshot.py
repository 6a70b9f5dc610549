# -*- coding: utf-8 -*-
"""
EAGLE snapshot region interface.

REGION READ ARCHITECTURE
========================

A snapshot is split across N shard files (prefix.0.hdf5 ... prefix.<N-1>.hdf5).
Within each particle class, records are sorted by the Peano-Hilbert key of
their hash-grid cell, and that order runs across shard boundaries. Reading a
region therefore touches a few contiguous record ranges instead of the whole
output.

Components:
----------

1. SpatialHashIndex (hashindex.py)
   - Loads FirstKeyInFile/LastKeyInFile/NumKeysInFile from shard 0
   - Validates that shards tile the key space on first use per class
   - Loads per-cell counts only for shards a query touches

2. RegionSelector (selection.py)
   - Box (with periodic wraparound) -> set of cells -> Selection value
   - Selections are immutable; queries never share scratch state

3. ShardReader (reader.py)
   - Executes a Selection: one preallocated buffer, one scoped file open per shard
   - Recovers attribute metadata from the first shard holding the class

4. Unit normalization (units.py)
   - Applies a^aexp h^hexp [CGS] to raw values, on request

Lifecycle:
---------
A Snapshot is opened once, queried any number of times, and closed. No file
handle stays open between reads, so independent queries can run in separate
worker processes (see batch.py).
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

import h5py
import numpy as np

import eagleregion.dataspecs as eds
from eagleregion.config import SnapshotLayoutError, resolve_particle_type
from eagleregion.hashindex import SpatialHashIndex
from eagleregion.reader import ShardReader
from eagleregion.selection import RegionSelector, Selection
from eagleregion.units import AttributeUnits, to_physical
from eagleregion.utils.file_discovery import find_shard_files

logger = logging.getLogger(__name__)


def _is_master_process():
    """
    Check if this is the master process in a distributed environment.

    This helps suppress duplicate logging when many ranks open the same
    snapshot in a SLURM job.

    Returns:
        True if this is the master process or if environment can't be determined
    """
    try:
        slurm_procid = os.environ.get('SLURM_PROCID')
        if slurm_procid is not None:
            return int(slurm_procid) == 0

        jax_process_id = os.environ.get('JAX_PROCESS_ID')
        if jax_process_id is not None:
            return int(jax_process_id) == 0

        return True
    except ValueError:
        return True


def _log_info(message):
    """
    Log info message only from master process.

    Warning and error messages are still logged from all processes as they
    may indicate process-specific issues.
    """
    if _is_master_process():
        logger.info(message)


@dataclass(frozen=True)
class SnapshotHeader:
    """Global per-dataset metadata from the Header group."""
    expansion_factor: float
    hubble_param: float
    box_size: float
    redshift: float
    num_files: int
    npart_total: Tuple[int, ...]

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'SnapshotHeader':
        """Read the header of one shard.

        Raises:
            SnapshotLayoutError: If the file or a required attribute is missing
        """
        names = eds.header['attrs']
        try:
            with h5py.File(path, 'r') as f:
                attrs = f[eds.header['group']].attrs
                npart = np.asarray(attrs[names['npart_total']], dtype=np.int64)
                if names['npart_highword'] in attrs:
                    npart = npart + (np.asarray(attrs[names['npart_highword']], dtype=np.int64) << 32)
                return cls(
                    expansion_factor=float(attrs[names['expansion_factor']]),
                    hubble_param=float(attrs[names['hubble_param']]),
                    box_size=float(attrs[names['box_size']]),
                    redshift=float(attrs[names['redshift']]),
                    num_files=int(attrs[names['num_files']]),
                    npart_total=tuple(int(n) for n in npart),
                )
        except KeyError as e:
            raise SnapshotLayoutError(f"Header attribute missing from {path}: {e}") from e
        except OSError as e:
            raise SnapshotLayoutError(f"Failed to open {path}: {e}") from e


class Snapshot:
    """Region-indexed reader for one sharded snapshot."""

    def __init__(self, path: Union[str, Path], verbose: bool = False):
        """Open a snapshot.

        Args:
            path: Any shard of the snapshot (e.g. snap_028_z000p000.0.hdf5) or its prefix
            verbose: Enable verbose logging
        """
        self.verbose = verbose
        if verbose:
            logger.setLevel(logging.DEBUG)

        try:
            self.shard_paths = find_shard_files(path)
        except FileNotFoundError as e:
            raise SnapshotLayoutError(str(e)) from e

        self.header = SnapshotHeader.from_file(self.shard_paths[0])
        if self.header.num_files != len(self.shard_paths):
            logger.warning(f"Header lists {self.header.num_files} files but {len(self.shard_paths)} "
                           f"shards were found; using the shards found")

        self.index = SpatialHashIndex.from_shards(self.shard_paths, npart_total=self.header.npart_total)
        self.selector = RegionSelector(self.index, periodic_size=self.header.box_size)
        self.reader = ShardReader(self.index, verbose=verbose)
        self._closed = False

        _log_info(f"Opened snapshot {self.shard_paths[0].name} ({len(self.shard_paths)} shards, "
                  f"z={self.header.redshift:.3f}, box={self.header.box_size} cMpc/h, "
                  f"{self.index.cells_per_axis}^3 hash cells)")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    def __repr__(self):
        state = "closed" if self._closed else f"{len(self.shard_paths)} shards"
        return f"Snapshot({str(self.shard_paths[0])!r}, {state})"

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """Release cached index data; further queries raise ValueError."""
        if not self._closed:
            self.index.clear_cache()
            self._closed = True

    def _check_open(self):
        if self._closed:
            raise ValueError("I/O operation on closed snapshot")

    # --- Selection --------------------------------------------------------

    def select(self, min_xyz, max_xyz, ptypes: Optional[Iterable] = None) -> Selection:
        self._check_open()
        return self.selector.select(min_xyz, max_xyz, ptypes=ptypes)

    def select_sphere(self, centre, radius: float, ptypes: Optional[Iterable] = None) -> Selection:
        self._check_open()
        return self.selector.select_sphere(centre, radius, ptypes=ptypes)

    def select_all(self, ptypes: Optional[Iterable] = None) -> Selection:
        self._check_open()
        return self.selector.select_all(ptypes=ptypes)

    # --- Reading ----------------------------------------------------------

    def read(self, ptype, attribute: str, selection: Selection, promote: bool = False) -> np.ndarray:
        self._check_open()
        return self.reader.read(ptype, attribute, selection, promote=promote)

    def read_region(self, ptype, attribute: str, min_xyz, max_xyz, promote: bool = False) -> np.ndarray:
        """Select a box for one class and read one attribute from it."""
        selection = self.select(min_xyz, max_xyz, ptypes=[ptype])
        return self.reader.read(ptype, attribute, selection, promote=promote)

    def read_all(self, ptype, attribute: str, promote: bool = False) -> np.ndarray:
        self._check_open()
        return self.reader.read_all(ptype, attribute, promote=promote)

    def attribute_units(self, ptype, attribute: str) -> AttributeUnits:
        self._check_open()
        return self.reader.attribute_units(ptype, attribute)

    def read_physical(self, ptype, attribute: str, selection: Optional[Selection] = None,
                      cgs: bool = False) -> np.ndarray:
        """Read an attribute and convert it to physical (optionally CGS) units in float64."""
        values = (self.read_all(ptype, attribute, promote=True) if selection is None
                  else self.read(ptype, attribute, selection, promote=True))
        if values.size == 0:
            return values
        units = self.attribute_units(ptype, attribute)
        return to_physical(values, units, self.header.expansion_factor, self.header.hubble_param, cgs=cgs)

    def count(self, ptype) -> int:
        """Total records of a class in the snapshot."""
        self._check_open()
        return self.header.npart_total[resolve_particle_type(ptype)]
