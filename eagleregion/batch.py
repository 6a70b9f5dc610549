"""
Batches of independent region queries.

Analyses often read the same attributes around many objects (one box or
sphere per galaxy). Each query is independent, so a batch can be spread over
worker processes, each opening its own Snapshot and owning its own file
handles. Batches can be described in YAML:

    name: central-galaxies
    description: Stellar particles around the ten most massive centrals
    snapshot: /data/RefL0025N0376/snapshot_028_z000p000/snap_028_z000p000.0.hdf5
    ptype: stars
    attributes: [Coordinates, Mass]
    queries:
      - name: gal-0
        centre: [12.1, 3.4, 20.0]
        radius: 0.05
      - name: slab
        min_xyz: [0.0, 0.0, 10.0]
        max_xyz: [25.0, 25.0, 11.0]
"""

import logging
import multiprocessing as mp
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import yaml

from .aperture import aperture_mask
from .config import InvalidRegionError, RegionReadError, resolve_particle_type
from .snapshot import Snapshot, _log_info

logger = logging.getLogger(__name__)


class QueryConfigError(RegionReadError):
    """Exception raised for invalid query batch configuration."""
    pass


@dataclass
class RegionQuery:
    """
    One region to read.

    Exactly one geometry must be given:
        - centre + half_width: cube of side 2 * half_width
        - centre + radius: sphere, filtered exactly on Coordinates after reading
        - min_xyz + max_xyz: explicit box
    """
    name: str
    centre: Optional[List[float]] = None
    half_width: Optional[float] = None
    radius: Optional[float] = None
    min_xyz: Optional[List[float]] = None
    max_xyz: Optional[List[float]] = None

    def __post_init__(self):
        """Validate query geometry."""
        has_box = self.min_xyz is not None or self.max_xyz is not None
        has_centre = self.centre is not None
        if has_box and has_centre:
            raise ValueError(f"Query '{self.name}': give either centre or min_xyz/max_xyz, not both")
        if has_box:
            if self.min_xyz is None or self.max_xyz is None:
                raise ValueError(f"Query '{self.name}': min_xyz and max_xyz must both be given")
            if len(self.min_xyz) != 3 or len(self.max_xyz) != 3:
                raise ValueError(f"Query '{self.name}': box corners need 3 components")
            if self.radius is not None or self.half_width is not None:
                raise ValueError(f"Query '{self.name}': radius and half_width need a centre, not min_xyz/max_xyz")
        elif has_centre:
            if len(self.centre) != 3:
                raise ValueError(f"Query '{self.name}': centre needs 3 components")
            if (self.half_width is None) == (self.radius is None):
                raise ValueError(f"Query '{self.name}': give exactly one of half_width or radius")
            extent = self.half_width if self.radius is None else self.radius
            if extent < 0:
                raise ValueError(f"Query '{self.name}': extent must be non-negative")
        else:
            raise ValueError(f"Query '{self.name}': no geometry given")

    @property
    def is_sphere(self) -> bool:
        return self.radius is not None

    def bounds(self):
        """Query box as (min_xyz, max_xyz) arrays."""
        if self.centre is None:
            return np.asarray(self.min_xyz, dtype=np.float64), np.asarray(self.max_xyz, dtype=np.float64)
        centre = np.asarray(self.centre, dtype=np.float64)
        extent = self.radius if self.is_sphere else self.half_width
        return centre - extent, centre + extent


@dataclass
class QueryBatch:
    """
    A named list of region queries sharing a particle class and attributes.

    Attributes:
        name: Batch identifier
        queries: Regions to read
        ptype: Particle class name or type number
        attributes: Attributes to read for every region
        snapshot: Optional path of the snapshot to read
        description: Human-readable description
        nproc: Worker processes to use
    """
    name: str
    queries: List[RegionQuery]
    ptype: Union[str, int] = "dm"
    attributes: List[str] = field(default_factory=lambda: ["Coordinates"])
    snapshot: Optional[str] = None
    description: str = ""
    nproc: int = 1

    def __post_init__(self):
        """Validate batch configuration."""
        if not self.queries:
            raise ValueError("Query batch must have at least one query")
        names = [q.name for q in self.queries]
        if len(names) != len(set(names)):
            raise ValueError("Duplicate query names found")
        if not self.attributes:
            raise ValueError("Query batch must request at least one attribute")
        resolve_particle_type(self.ptype)
        if any(q.is_sphere for q in self.queries) and "Coordinates" not in self.attributes:
            self.attributes = list(self.attributes) + ["Coordinates"]

    @classmethod
    def from_yaml(cls, yaml_file: str) -> 'QueryBatch':
        """Load a query batch from a YAML file."""
        yaml_path = Path(yaml_file)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Query batch file not found: {yaml_file}")

        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise QueryConfigError(f"Query batch file {yaml_file} must contain a mapping")

        try:
            queries = [RegionQuery(**query) for query in data.pop('queries', [])]
            return cls(queries=queries, **data)
        except (TypeError, ValueError) as e:
            raise QueryConfigError(f"Invalid query batch {yaml_file}: {e}") from e

    def run(self, snapshot: Optional[str] = None, nproc: Optional[int] = None) -> Dict[str, Dict[str, np.ndarray]]:
        """Read every query of the batch."""
        path = snapshot or self.snapshot
        if path is None:
            raise QueryConfigError(f"Query batch '{self.name}' has no snapshot path")
        return read_regions(path, self.queries, self.ptype, self.attributes,
                            nproc=self.nproc if nproc is None else nproc)


def _read_query(snap: Snapshot, query: RegionQuery, ptype, attributes: Sequence[str],
                promote: bool) -> Dict[str, np.ndarray]:
    """Read all attributes of one query from an open snapshot."""
    lower, upper = query.bounds()
    try:
        selection = snap.select(lower, upper, ptypes=[ptype])
    except InvalidRegionError as e:
        raise type(e)(f"Query '{query.name}': {e}") from e

    result = {name: snap.read(ptype, name, selection, promote=promote) for name in attributes}

    if query.is_sphere and len(result["Coordinates"]):
        mask = aperture_mask(result["Coordinates"], query.centre, query.radius, snap.header.box_size)
        result = {name: values[mask] for name, values in result.items()}
    return result


def _read_query_worker(path: str, query: RegionQuery, ptype, attributes: Sequence[str],
                       promote: bool) -> Dict[str, np.ndarray]:
    """Worker entry point: opens a private Snapshot for one query."""
    with Snapshot(path) as snap:
        return _read_query(snap, query, ptype, attributes, promote)


def read_regions(path: Union[str, Path], queries: Sequence[RegionQuery], ptype,
                 attributes: Sequence[str], nproc: int = 1,
                 promote: bool = False) -> Dict[str, Dict[str, np.ndarray]]:
    """
    Read the same attributes for many independent regions.

    Args:
        path: Any shard of the snapshot
        queries: Regions to read
        ptype: Particle class name or type number
        attributes: Attributes to read per region
        nproc: Worker processes; 1 reads serially through one Snapshot
        promote: Widen single precision floats to float64

    Returns:
        {query name: {attribute: array}} in query order
    """
    queries = list(queries)
    attributes = list(attributes)
    if any(q.is_sphere for q in queries) and "Coordinates" not in attributes:
        attributes.append("Coordinates")

    start_time = time.time()
    nproc = max(1, min(nproc, len(queries)))
    if nproc > 1:
        args = [(str(path), query, ptype, attributes, promote) for query in queries]
        with mp.Pool(processes=nproc) as pool:
            results = pool.starmap(_read_query_worker, args)
    else:
        with Snapshot(path) as snap:
            results = [_read_query(snap, query, ptype, attributes, promote) for query in queries]

    _log_info(f"Read {len(queries)} regions with {nproc} process(es) in {time.time() - start_time:.2f}s")
    return {query.name: result for query, result in zip(queries, results)}
