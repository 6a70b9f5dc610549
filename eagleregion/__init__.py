"""eagleregion: region-indexed reader for sharded EAGLE snapshots"""

__version__ = "0.1.0"

from .config import (
    RegionReadError,
    InvalidRegionError,
    RegionTooLargeError,
    IndexCorruptError,
    ShardReadError,
    SnapshotLayoutError,
    PARTICLE_TYPES,
    resolve_particle_type,
)
from .peano import peano_hilbert_key, peano_hilbert_keys
from .hashindex import SpatialHashIndex, ReadRange, KeyTable
from .selection import RegionSelector, Selection
from .reader import ShardReader, AttributeInfo
from .units import AttributeUnits, to_physical
from .snapshot import Snapshot, SnapshotHeader
from .aperture import aperture_mask, periodic_offsets, radial_distance
from .batch import RegionQuery, QueryBatch, QueryConfigError, read_regions
from .utils import find_shard_files, find_snapshot, setup_environment, write_synthetic_snapshot

__all__ = [
    'RegionReadError',
    'InvalidRegionError',
    'RegionTooLargeError',
    'IndexCorruptError',
    'ShardReadError',
    'SnapshotLayoutError',
    'PARTICLE_TYPES',
    'resolve_particle_type',
    'peano_hilbert_key',
    'peano_hilbert_keys',
    'SpatialHashIndex',
    'ReadRange',
    'KeyTable',
    'RegionSelector',
    'Selection',
    'ShardReader',
    'AttributeInfo',
    'AttributeUnits',
    'to_physical',
    'Snapshot',
    'SnapshotHeader',
    'aperture_mask',
    'periodic_offsets',
    'radial_distance',
    'RegionQuery',
    'QueryBatch',
    'QueryConfigError',
    'read_regions',
    'find_shard_files',
    'find_snapshot',
    'setup_environment',
    'write_synthetic_snapshot',
]
