"""
Synthetic data generation utilities for eagleregion.

Writes small snapshots in the EAGLE layout (sharded HDF5 files, records sorted
by Peano-Hilbert key, hash tables in every shard) for testing and debugging.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import h5py
import numpy as np

import eagleregion.dataspecs as eds
from ..config import DEFAULT_HASH_BITS, NTYPES
from ..peano import peano_hilbert_keys

logger = logging.getLogger(__name__)

# name: (dtype, aexp-scale-exponent, h-scale-exponent, CGSConversionFactor, description)
ATTRIBUTE_SPECS = {
    'Coordinates': ('f8', 1.0, -1.0, 3.085678e24, "Co-moving coordinates. Physical position: r = ax = Coordinates h^-1 a U_L [cm]"),
    'Velocity':    ('f4', 0.5, 0.0, 1.0e5, "Co-moving velocities. Physical v_p = a dx/dt  = Velocities a^1/2 U_V [cm/s]"),
    'Mass':        ('f4', 0.0, -1.0, 1.989e43, "Particle mass. Physical m = Mass h^-1 U_M [g]"),
    'ParticleIDs': ('i8', 0.0, 0.0, 1.0, "Unique particle identifier"),
}

DEFAULT_PARTICLE_COUNTS = {0: 2000, 1: 2000, 4: 500}


def _key_ranges(keys, bounds, n_keys):
    """FirstKeyInFile/LastKeyInFile/NumKeysInFile and cell counts per shard."""
    n_shards = len(bounds) - 1
    first = np.full(n_shards, -1, dtype=np.int64)
    last = np.full(n_shards, -1, dtype=np.int64)
    num = np.zeros(n_shards, dtype=np.int64)
    cell_counts = [np.zeros(0, dtype=np.int32) for _ in range(n_shards)]

    occupied = [s for s in range(n_shards) if bounds[s + 1] > bounds[s]]
    prev_last = -1
    for s in occupied:
        shard_keys = keys[bounds[s]:bounds[s + 1]]
        # a shard starts on the previous shard's last key only if that key straddles both
        first[s] = shard_keys[0] if shard_keys[0] == prev_last else prev_last + 1
        last[s] = n_keys - 1 if s == occupied[-1] else shard_keys[-1]
        num[s] = last[s] - first[s] + 1
        cell_counts[s] = np.bincount(shard_keys - first[s], minlength=num[s]).astype(np.int32)
        prev_last = last[s]
    return first, last, num, cell_counts


def write_synthetic_snapshot(directory,
                             prefix: str = "snap_000_z000p000",
                             box_size: float = 25.0,
                             hash_bits: int = DEFAULT_HASH_BITS,
                             n_particles: Optional[Dict[int, int]] = None,
                             shard_counts: Optional[Dict[int, Sequence[int]]] = None,
                             n_shards: int = 4,
                             positions: Optional[Dict[int, np.ndarray]] = None,
                             expansion_factor: float = 1.0,
                             hubble_param: float = 0.6777,
                             redshift: float = 0.0,
                             seed: int = 42) -> List[Path]:
    """
    Write a synthetic EAGLE-layout snapshot.

    Args:
        directory: Output directory (created if missing)
        prefix: Shared shard prefix; files are named prefix.<N>.hdf5
        box_size: Periodic box size in h^-1 cMpc
        hash_bits: Hash grid refinement levels per axis
        n_particles: Total records per particle type, split evenly over shards
        shard_counts: Records per shard for each particle type; overrides
                      n_particles and fixes the number of shards
        n_shards: Number of shard files when shard_counts is not given
        positions: Explicit (N, 3) positions per particle type
        expansion_factor, hubble_param, redshift: Header values
        seed: Seed for positions and velocities

    Returns:
        Paths of the written shards, ordered by index
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(seed)
    positions = positions or {}

    if shard_counts is None:
        counts = DEFAULT_PARTICLE_COUNTS if n_particles is None else n_particles
        shard_counts = {itype: [len(a) for a in np.array_split(np.arange(total), n_shards)]
                        for itype, total in counts.items()}
    shard_counts = {itype: np.asarray(c, dtype=np.int64) for itype, c in shard_counts.items()}
    n_shards = len(next(iter(shard_counts.values())))
    if any(len(c) != n_shards for c in shard_counts.values()):
        raise ValueError("shard_counts must give the same number of shards for every particle type")

    cells_per_axis = 1 << hash_bits
    n_keys = cells_per_axis ** 3
    cell_size = box_size / cells_per_axis

    classes = {}
    for itype, counts in sorted(shard_counts.items()):
        total = int(counts.sum())
        pos = positions.get(itype)
        if pos is None:
            pos = rng.uniform(0.0, box_size, size=(total, 3))
        pos = np.asarray(pos, dtype=np.float64) % box_size
        if len(pos) != total:
            raise ValueError(f"PartType{itype}: {len(pos)} positions for {total} records")

        cells = np.floor(pos / cell_size).astype(np.int64) % cells_per_axis
        keys = peano_hilbert_keys(cells[:, 0], cells[:, 1], cells[:, 2], hash_bits)
        order = np.argsort(keys, kind='stable')

        bounds = np.concatenate(([0], np.cumsum(counts)))
        first, last, num, cell_counts = _key_ranges(keys[order], bounds, n_keys)
        classes[itype] = {
            'bounds': bounds,
            'first': first, 'last': last, 'num': num, 'cell_counts': cell_counts,
            'data': {
                'Coordinates': pos[order],
                'Velocity': rng.normal(0.0, 100.0, size=(total, 3))[order],
                'Mass': np.full(total, 1.0e-4),
                'ParticleIDs': (np.arange(total, dtype=np.int64) + 1)[order],
            },
        }

    npart_total = np.zeros(NTYPES, dtype=np.int64)
    for itype, counts in shard_counts.items():
        npart_total[itype] = counts.sum()

    paths = []
    for shard in range(n_shards):
        path = directory / f"{prefix}.{shard}.hdf5"
        with h5py.File(path, 'w') as f:
            npart_file = np.zeros(NTYPES, dtype=np.int32)
            for itype, counts in shard_counts.items():
                npart_file[itype] = counts[shard]

            header = f.create_group(eds.header['group'])
            names = eds.header['attrs']
            header.attrs[names['box_size']] = box_size
            header.attrs[names['expansion_factor']] = expansion_factor
            header.attrs[names['hubble_param']] = hubble_param
            header.attrs[names['redshift']] = redshift
            header.attrs[names['num_files']] = n_shards
            header.attrs[names['npart_file']] = npart_file
            header.attrs[names['npart_total']] = (npart_total & 0xFFFFFFFF).astype(np.uint32)
            header.attrs[names['npart_highword']] = (npart_total >> 32).astype(np.uint32)
            header.attrs[names['mass_table']] = np.zeros(NTYPES)

            table = f.create_group(eds.hashtable['group'])
            table.attrs[eds.hashtable['bits']] = hash_bits
            for itype, info in classes.items():
                group = table.create_group(eds.particle_group(itype))
                group.create_dataset(eds.hashtable['first_key'], data=info['first'])
                group.create_dataset(eds.hashtable['last_key'], data=info['last'])
                group.create_dataset(eds.hashtable['num_keys'], data=info['num'])
                group.create_dataset(eds.hashtable['cell_count'], data=info['cell_counts'][shard])

            for itype, info in classes.items():
                lo, hi = info['bounds'][shard], info['bounds'][shard + 1]
                if hi == lo:
                    continue
                group = f.create_group(eds.particle_group(itype))
                for name, (dtype, aexp, hexp, cgs, description) in ATTRIBUTE_SPECS.items():
                    values = np.asarray(info['data'][name][lo:hi], dtype=dtype)
                    dataset = group.create_dataset(name, data=values)
                    dataset.attrs[eds.units['aexp_exponent']] = aexp
                    dataset.attrs[eds.units['h_exponent']] = hexp
                    dataset.attrs[eds.units['cgs_factor']] = cgs
                    dataset.attrs[eds.units['description']] = description
        paths.append(path)

    logger.debug(f"Wrote {n_shards} synthetic shards to {directory} "
                 f"({', '.join(f'PartType{t}: {n}' for t, n in enumerate(npart_total) if n)})")
    return paths
