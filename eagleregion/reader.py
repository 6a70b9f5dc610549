"""
Shard reader: executes Selections against the shard files.

Each read preallocates one output buffer for the whole selection and fills
it range by range, opening every shard once per read inside a `with` block so
the handle is released on any exit path. Ranges are visited in Selection
order, which is ascending shard and offset, so I/O within a shard is monotonic.

Failures raise ShardReadError carrying the shard and record range; the
partially filled buffer is discarded with the frame.
"""

import logging
import time
from dataclasses import dataclass
from itertools import groupby
from operator import attrgetter
from typing import Dict, Optional, Sequence, Tuple

import h5py
import numpy as np

import eagleregion.dataspecs as eds
from eagleregion.config import ShardReadError, SnapshotLayoutError, resolve_particle_type
from eagleregion.hashindex import ReadRange, SpatialHashIndex
from eagleregion.selection import Selection
from eagleregion.units import AttributeUnits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributeInfo:
    """Stored type, trailing shape and units of one attribute."""
    shard: int
    dtype: np.dtype
    shape: Tuple[int, ...]
    units: AttributeUnits


def _decode(value):
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    if isinstance(value, np.ndarray) and value.size == 1:
        return _decode(value.item())
    return str(value)


def promoted_dtype(dtype) -> np.dtype:
    """Widen floating types below double precision; leave everything else alone."""
    dtype = np.dtype(dtype)
    if dtype.kind == 'f' and dtype.itemsize < 8:
        return np.dtype(np.float64)
    return dtype


class ShardReader:
    """Reads particle attributes for record ranges planned by a RegionSelector."""

    def __init__(self, index: SpatialHashIndex, verbose: bool = False):
        self.index = index
        self.verbose = verbose
        self._info: Dict[Tuple[int, str], Optional[AttributeInfo]] = {}

    def metadata_shard(self, ptype) -> Optional[int]:
        """
        First shard holding records of a class.

        Shards whose key range for the class is empty are skipped. This only
        decides where attribute metadata is read from, never which records
        are read.
        """
        itype = resolve_particle_type(ptype)
        table = self.index.key_table(itype)
        if table is None:
            return None
        for shard in table.nonempty_shards():
            if self.index.shard_record_count(itype, int(shard)) > 0:
                if shard != 0:
                    logger.debug(f"PartType{itype} has no records in shard 0, "
                                 f"reading metadata from shard {shard}")
                return int(shard)
        return None

    def describe(self, ptype, attribute: str) -> Optional[AttributeInfo]:
        """Stored type and units of an attribute, or None if the class has no records."""
        itype = resolve_particle_type(ptype)
        key = (itype, attribute)
        if key in self._info:
            return self._info[key]

        shard = self.metadata_shard(itype)
        if shard is None:
            self._info[key] = None
            return None

        path = self.index.shard_paths[shard]
        name = f"{eds.particle_group(itype)}/{attribute}"
        try:
            with h5py.File(path, 'r') as f:
                if name not in f:
                    raise KeyError(f"Attribute '{attribute}' not found for PartType{itype} in {path}")
                dataset = f[name]
                attrs = dataset.attrs
                units = AttributeUnits(
                    aexp_exponent=float(attrs.get(eds.units['aexp_exponent'], 0.0)),
                    h_exponent=float(attrs.get(eds.units['h_exponent'], 0.0)),
                    cgs_factor=float(attrs.get(eds.units['cgs_factor'], 1.0)),
                    description=_decode(attrs.get(eds.units['description'], b'')),
                )
                info = AttributeInfo(shard=shard, dtype=dataset.dtype,
                                     shape=tuple(dataset.shape[1:]), units=units)
        except OSError as e:
            raise SnapshotLayoutError(f"Failed to open shard {shard} ({path}): {e}") from e

        self._info[key] = info
        return info

    def attribute_units(self, ptype, attribute: str) -> AttributeUnits:
        """Unit constants of an attribute, recovered from the first shard with records."""
        info = self.describe(ptype, attribute)
        if info is None:
            raise KeyError(f"No records of PartType{resolve_particle_type(ptype)} in any shard; "
                           f"units of '{attribute}' unavailable")
        return info.units

    def read(self, ptype, attribute: str, selection: Selection, promote: bool = False) -> np.ndarray:
        """
        Read one attribute of one class for every record in a selection.

        Args:
            ptype: Particle class name or type number
            attribute: Dataset name below PartType<N>, e.g. 'Coordinates'
            selection: Selection planned for this class
            promote: Widen single/half precision floats to float64

        Returns:
            Array of shape (n_records,) + stored trailing shape. A class with
            no records in any shard has no dataset to take a dtype or trailing
            shape from, and reads as a 1-d empty float64 array.

        Raises:
            ValueError: If the selection was not planned for this class
            KeyError: If the attribute does not exist
            ShardReadError: If reading any range fails
        """
        itype = resolve_particle_type(ptype)
        if itype not in selection.ptypes:
            raise ValueError(f"Selection was planned for PartTypes {list(selection.ptypes)}, not {itype}")
        return self._read_ranges(itype, attribute, selection.ranges_for(itype), promote)

    def read_all(self, ptype, attribute: str, promote: bool = False) -> np.ndarray:
        """Read an attribute for every record of a class, without a selection.

        Empty classes read as in read(): a 1-d empty float64 array.
        """
        itype = resolve_particle_type(ptype)
        return self._read_ranges(itype, attribute, self.index.full_ranges(itype), promote)

    def _read_ranges(self, itype: int, attribute: str, ranges: Sequence[ReadRange],
                     promote: bool) -> np.ndarray:
        info = self.describe(itype, attribute)
        if info is None:
            return np.empty(0, dtype=np.float64)

        dtype = promoted_dtype(info.dtype) if promote else info.dtype
        total = sum(r.count for r in ranges)
        out = np.empty((total,) + info.shape, dtype=dtype)

        start_time = time.time()
        name = f"{eds.particle_group(itype)}/{attribute}"
        position = 0
        for shard, group in groupby(ranges, key=attrgetter('shard')):
            path = self.index.shard_paths[shard]
            group = list(group)
            current = group[0]
            try:
                with h5py.File(path, 'r') as f:
                    dataset = f[name]
                    for current in group:
                        if current.stop > dataset.shape[0]:
                            raise ShardReadError(shard, current.start, current.stop,
                                                 f"dataset '{name}' holds only {dataset.shape[0]} records")
                        dataset.read_direct(out,
                                            source_sel=np.s_[current.start:current.stop],
                                            dest_sel=np.s_[position:position + current.count])
                        position += current.count
            except ShardReadError:
                raise
            except (OSError, KeyError, ValueError, TypeError) as e:
                raise ShardReadError(shard, current.start, current.stop, str(e)) from e

        if self.verbose:
            logger.info(f"Read {total:,} PartType{itype}/{attribute} records from "
                        f"{len({r.shard for r in ranges})} shards in {time.time() - start_time:.2f}s")
        return out
