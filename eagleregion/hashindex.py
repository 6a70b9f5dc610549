"""
Spatial hash index over a sharded snapshot.

Particles of each class are sorted on disk by the Peano-Hilbert key of the grid
cell they occupy, and that order runs across all shard files. The hash table in
every shard records which contiguous key range each shard holds
(FirstKeyInFile/LastKeyInFile/NumKeysInFile), and each shard stores the record
count of every key it holds (NumParticleInCell). From these two tables a set
of keys can be translated into contiguous record ranges per shard.

Key tables are loaded when the index is built; they are validated per class on
first use. Per-cell counts are loaded only for the shards a query touches and
cached as read-only offset arrays, so every lookup is a pure function of the
query and the immutable tables.

Example usage:
    index = SpatialHashIndex.from_shards(shard_paths)
    keys = index.cells_for_box([10, 10, 10], [12, 12, 12])
    ranges = index.shard_ranges_for_keys('gas', keys)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import h5py
import numpy as np

import eagleregion.dataspecs as eds
from eagleregion.config import (
    NTYPES,
    IndexCorruptError,
    InvalidRegionError,
    SnapshotLayoutError,
    resolve_particle_type,
)
from eagleregion.peano import peano_hilbert_keys, MAX_BITS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ReadRange:
    """Half-open record range [start, stop) of one particle class in one shard."""
    shard: int
    ptype: int
    start: int
    stop: int

    @property
    def count(self) -> int:
        return self.stop - self.start


@dataclass(frozen=True)
class KeyTable:
    """Per-shard key ranges of one particle class."""
    first_key: np.ndarray
    last_key: np.ndarray
    num_keys: np.ndarray

    def nonempty_shards(self) -> np.ndarray:
        return np.flatnonzero(self.num_keys > 0)


def _readonly(array):
    array = np.array(array, dtype=np.int64)
    array.setflags(write=False)
    return array


class SpatialHashIndex:
    """Peano-Hilbert hash table of one snapshot, for all particle classes."""

    def __init__(self, shard_paths: Sequence, box_size: float, hash_bits: int,
                 key_tables: Dict[int, KeyTable],
                 npart_total: Optional[Sequence[int]] = None):
        """
        Args:
            shard_paths: Paths of the shard files, ordered by shard number
            box_size: Periodic domain size in native (comoving h^-1) length units
            hash_bits: Refinement levels of the hash grid per axis
            key_tables: Per-class KeyTable, keyed by integer particle type
            npart_total: Total records per particle type, if known
        """
        if not 1 <= hash_bits <= MAX_BITS:
            raise SnapshotLayoutError(f"Unsupported HashBits value: {hash_bits}")
        if not box_size > 0:
            raise SnapshotLayoutError(f"Box size must be positive, got {box_size}")

        self.shard_paths = [Path(p) for p in shard_paths]
        self.box_size = float(box_size)
        self.hash_bits = int(hash_bits)
        self.cells_per_axis = 1 << self.hash_bits
        self.n_keys = self.cells_per_axis ** 3
        self.cell_size = self.box_size / self.cells_per_axis

        self._key_tables = dict(key_tables)
        self._npart_total = None if npart_total is None else np.asarray(npart_total, dtype=np.int64)
        self._validated = {}
        self._offsets = {}

    @classmethod
    def from_shards(cls, shard_paths: Sequence, npart_total: Optional[Sequence[int]] = None):
        """Build an index from the hash table stored in the first shard."""
        if not shard_paths:
            raise SnapshotLayoutError("No shard files given")
        first = Path(shard_paths[0])
        try:
            with h5py.File(first, 'r') as f:
                header = f[eds.header['group']].attrs
                box_size = float(header[eds.header['attrs']['box_size']])
                table_group = f[eds.hashtable['group']]
                hash_bits = int(table_group.attrs[eds.hashtable['bits']])

                key_tables = {}
                for itype in range(NTYPES):
                    name = eds.particle_group(itype)
                    if name not in table_group:
                        continue
                    group = table_group[name]
                    key_tables[itype] = KeyTable(
                        first_key=_readonly(group[eds.hashtable['first_key']][...]),
                        last_key=_readonly(group[eds.hashtable['last_key']][...]),
                        num_keys=_readonly(group[eds.hashtable['num_keys']][...]),
                    )
        except KeyError as e:
            raise SnapshotLayoutError(f"Hash table metadata missing from {first}: {e}") from e
        except OSError as e:
            raise SnapshotLayoutError(f"Failed to open {first}: {e}") from e

        logger.debug(f"Loaded hash table from {first}: HashBits={hash_bits}, "
                     f"classes={sorted(key_tables)}")
        return cls(shard_paths, box_size, hash_bits, key_tables, npart_total=npart_total)

    @property
    def n_shards(self) -> int:
        return len(self.shard_paths)

    @property
    def particle_types(self) -> List[int]:
        """Particle types that have a hash table."""
        return sorted(self._key_tables)

    # --- Geometry ---------------------------------------------------------

    def _axis_cells(self, lo, hi, cell_size):
        first = int(np.floor(lo / cell_size))
        last = int(np.ceil(hi / cell_size)) - 1
        last = max(first, last)
        if last - first + 1 >= self.cells_per_axis:
            return np.arange(self.cells_per_axis, dtype=np.int64)
        return np.arange(first, last + 1, dtype=np.int64) % self.cells_per_axis

    def cells_for_box(self, min_xyz, max_xyz, periodic_size: Optional[float] = None) -> np.ndarray:
        """
        Hash keys of every grid cell overlapping the box [min_xyz, max_xyz).

        Bounds outside [0, periodic_size) wrap around modulo the grid. The
        result is cell-granular, so it covers a superset of the box.

        Args:
            min_xyz: Lower box corner
            max_xyz: Upper box corner, >= min_xyz on every axis
            periodic_size: Domain size, defaults to the snapshot box size

        Returns:
            Sorted array of unique int64 keys
        """
        lower = np.asarray(min_xyz, dtype=np.float64)
        upper = np.asarray(max_xyz, dtype=np.float64)
        if lower.shape != (3,) or upper.shape != (3,):
            raise InvalidRegionError(f"Box corners must have 3 components, got {lower.shape} and {upper.shape}")
        if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper))):
            raise InvalidRegionError("Box corners must be finite")
        if np.any(upper < lower):
            raise InvalidRegionError(f"Box upper corner {upper} below lower corner {lower}")

        size = self.box_size if periodic_size is None else float(periodic_size)
        cell_size = size / self.cells_per_axis

        axes = [self._axis_cells(lower[i], upper[i], cell_size) for i in range(3)]
        ix, iy, iz = np.meshgrid(*axes, indexing='ij')
        keys = peano_hilbert_keys(ix.ravel(), iy.ravel(), iz.ravel(), self.hash_bits)
        return np.unique(keys)

    def key_of_position(self, positions) -> np.ndarray:
        """Hash keys of positions (N, 3), wrapped into the periodic domain."""
        positions = np.atleast_2d(np.asarray(positions, dtype=np.float64))
        cells = np.floor(positions / self.cell_size).astype(np.int64) % self.cells_per_axis
        return peano_hilbert_keys(cells[:, 0], cells[:, 1], cells[:, 2], self.hash_bits)

    # --- Key tables -------------------------------------------------------

    def key_table(self, ptype) -> Optional[KeyTable]:
        """Validated key table of a class, or None if the class has no hash table."""
        itype = resolve_particle_type(ptype)
        if itype in self._validated:
            return self._validated[itype]
        table = self._validate(itype, self._key_tables.get(itype))
        self._validated[itype] = table
        return table

    def _validate(self, itype, table):
        expected = 0 if self._npart_total is None else int(self._npart_total[itype])
        if table is None:
            if expected > 0:
                raise IndexCorruptError(f"PartType{itype} has {expected} records but no hash table")
            return None

        lengths = {len(table.first_key), len(table.last_key), len(table.num_keys)}
        if lengths != {self.n_shards}:
            raise IndexCorruptError(f"PartType{itype} hash table lengths {sorted(lengths)} "
                                    f"do not match {self.n_shards} shards")

        shards = table.nonempty_shards()
        if shards.size == 0:
            if expected > 0:
                raise IndexCorruptError(f"PartType{itype} has {expected} records but no keys in any shard")
            return table

        first = table.first_key[shards]
        last = table.last_key[shards]
        if np.any(table.num_keys[shards] != last - first + 1):
            bad = shards[table.num_keys[shards] != last - first + 1][0]
            raise IndexCorruptError(f"PartType{itype} shard {bad}: NumKeysInFile disagrees with key range "
                                    f"[{table.first_key[bad]}, {table.last_key[bad]}]")
        if first[0] != 0:
            raise IndexCorruptError(f"PartType{itype}: key range starts at {first[0]}, not 0")
        if last[-1] != self.n_keys - 1:
            raise IndexCorruptError(f"PartType{itype}: key range ends at {last[-1]}, not {self.n_keys - 1}")

        # consecutive shards may share a boundary key but must not leave a gap
        step = first[1:] - last[:-1]
        if np.any(step > 1):
            i = int(np.flatnonzero(step > 1)[0])
            raise IndexCorruptError(f"PartType{itype}: gap between keys {last[i]} (shard {shards[i]}) "
                                    f"and {first[i + 1]} (shard {shards[i + 1]})")
        if np.any(step < 0):
            i = int(np.flatnonzero(step < 0)[0])
            raise IndexCorruptError(f"PartType{itype}: shards {shards[i]} and {shards[i + 1]} overlap")

        logger.debug(f"PartType{itype}: hash table tiles {self.n_keys} keys over {shards.size} shards")
        return table

    def cell_offsets(self, ptype, shard: int) -> np.ndarray:
        """
        Record offsets of the keys held by a shard.

        Returns an array of length NumKeysInFile + 1 whose entries i and i + 1
        bound the records of key FirstKeyInFile + i within the shard.
        """
        itype = resolve_particle_type(ptype)
        cached = self._offsets.get((itype, shard))
        if cached is not None:
            return cached

        table = self.key_table(itype)
        if table is None:
            offsets = _readonly(np.zeros(1))
            self._offsets[(itype, shard)] = offsets
            return offsets

        path = self.shard_paths[shard]
        try:
            with h5py.File(path, 'r') as f:
                npart = int(f[eds.header['group']].attrs[eds.header['attrs']['npart_file']][itype])
                if table.num_keys[shard] == 0:
                    counts = None
                else:
                    counts = f[eds.hashtable_group(itype)][eds.hashtable['cell_count']][...]
        except KeyError as e:
            raise IndexCorruptError(f"Shard {shard} ({path}) lacks PartType{itype} cell counts: {e}") from e
        except OSError as e:
            raise SnapshotLayoutError(f"Failed to open shard {shard} ({path}): {e}") from e

        if counts is None:
            # records the hash table assigns no keys to would be unreachable
            if npart != 0:
                raise IndexCorruptError(f"Shard {shard} PartType{itype}: {npart} records but no keys "
                                        f"in the hash table")
            offsets = _readonly(np.zeros(1))
            self._offsets[(itype, shard)] = offsets
            return offsets

        if len(counts) != table.num_keys[shard]:
            raise IndexCorruptError(f"Shard {shard} PartType{itype}: {len(counts)} cell counts for "
                                    f"{table.num_keys[shard]} keys")
        if np.any(counts < 0) or int(counts.sum()) != npart:
            raise IndexCorruptError(f"Shard {shard} PartType{itype}: cell counts sum to {int(counts.sum())}, "
                                    f"header has {npart} records")

        offsets = np.zeros(len(counts) + 1, dtype=np.int64)
        np.cumsum(counts, out=offsets[1:])
        offsets.setflags(write=False)
        self._offsets[(itype, shard)] = offsets
        return offsets

    def shard_record_count(self, ptype, shard: int) -> int:
        return int(self.cell_offsets(ptype, shard)[-1])

    def total_records(self, ptype) -> int:
        """Records of a class across all shards, from the header if available."""
        itype = resolve_particle_type(ptype)
        if self._npart_total is not None:
            return int(self._npart_total[itype])
        return sum(self.shard_record_count(itype, shard) for shard in range(self.n_shards))

    # --- Lookups ----------------------------------------------------------

    def shard_ranges_for_keys(self, ptype, keys) -> List[ReadRange]:
        """
        Translate hash keys into contiguous record ranges per shard.

        Keys held by two consecutive shards produce a range in each. Runs of
        selected keys whose records touch are merged into one range, and
        cells without records are skipped.

        Args:
            ptype: Particle class name or type number
            keys: Hash keys in any order, duplicates allowed

        Returns:
            ReadRange list ordered by shard, then offset
        """
        itype = resolve_particle_type(ptype)
        keys = np.unique(np.asarray(keys, dtype=np.int64))
        if keys.size == 0:
            return []
        if keys[0] < 0 or keys[-1] >= self.n_keys:
            raise ValueError(f"Hash keys must lie in [0, {self.n_keys})")

        table = self.key_table(itype)
        if table is None:
            return []

        ranges = []
        for shard in table.nonempty_shards():
            first_key = table.first_key[shard]
            lo = np.searchsorted(keys, first_key, side='left')
            hi = np.searchsorted(keys, table.last_key[shard], side='right')
            if lo == hi:
                continue

            offsets = self.cell_offsets(itype, int(shard))
            local = keys[lo:hi] - first_key
            starts = offsets[local]
            stops = offsets[local + 1]
            occupied = stops > starts
            starts, stops = starts[occupied], stops[occupied]
            if starts.size == 0:
                continue

            breaks = np.flatnonzero(starts[1:] != stops[:-1]) + 1
            run_starts = starts[np.concatenate(([0], breaks))]
            run_stops = stops[np.concatenate((breaks - 1, [starts.size - 1]))]
            ranges.extend(ReadRange(int(shard), itype, int(a), int(b))
                          for a, b in zip(run_starts, run_stops))

        if keys.size == self.n_keys:
            self._check_total(itype, ranges)
        return ranges

    def full_ranges(self, ptype) -> List[ReadRange]:
        """
        One range per shard covering every record of a class.

        Shards without keys are checked to hold no records, so records the
        hash table cannot reach raise IndexCorruptError instead of being skipped.
        """
        itype = resolve_particle_type(ptype)
        table = self.key_table(itype)
        if table is None:
            return []
        ranges = []
        for shard in range(self.n_shards):
            count = self.shard_record_count(itype, shard)
            if count > 0:
                ranges.append(ReadRange(shard, itype, 0, count))
        self._check_total(itype, ranges)
        return ranges

    def _check_total(self, itype, ranges):
        if self._npart_total is None:
            return
        found = sum(r.count for r in ranges)
        expected = int(self._npart_total[itype])
        if found != expected:
            raise IndexCorruptError(f"PartType{itype}: hash table covers {found} records, "
                                    f"header has {expected}")

    def clear_cache(self):
        """Drop cached cell offsets and validation results."""
        self._offsets.clear()
        self._validated.clear()
