"""
File discovery utilities for eagleregion.

Functions for finding the shard files of a snapshot and locating snapshots in
the directory structure EAGLE data releases use.
"""

import logging
import re
from pathlib import Path
from typing import List, Tuple, Union

from ..config import DEFAULT_DATA_ROOT, DEFAULT_SHARD_SUFFIX, MAX_SHARD_SEARCH

logger = logging.getLogger(__name__)

_SHARD_PATTERN = re.compile(r'^(?P<prefix>.+)\.(?P<index>\d+)\.(?P<suffix>[A-Za-z0-9]+)$')


def shard_prefix(path: Union[str, Path], suffix: str = DEFAULT_SHARD_SUFFIX) -> Tuple[Path, str]:
    """
    Split a shard path into its shared prefix and suffix.

    Accepts either one shard ('snap_028_z000p000.3.hdf5') or the bare prefix
    ('snap_028_z000p000').

    Returns:
        (prefix path, suffix)
    """
    path = Path(path)
    match = _SHARD_PATTERN.match(path.name)
    if match:
        return path.with_name(match.group('prefix')), match.group('suffix')
    return path, suffix


def shard_path(prefix: Union[str, Path], index: int, suffix: str = DEFAULT_SHARD_SUFFIX) -> Path:
    prefix = Path(prefix)
    return prefix.with_name(f"{prefix.name}.{index}.{suffix}")


def find_shard_files(path: Union[str, Path], suffix: str = DEFAULT_SHARD_SUFFIX,
                     max_search: int = MAX_SHARD_SEARCH) -> List[Path]:
    """
    Find all shards of a snapshot by probing prefix.0.suffix, prefix.1.suffix, ...

    Probing stops at the first missing index.

    Args:
        path: Any shard of the snapshot, or the shared prefix
        suffix: File suffix used when path is a bare prefix
        max_search: Maximum number of shards to probe

    Returns:
        Shard paths ordered by index

    Raises:
        FileNotFoundError: If shard 0 does not exist
    """
    prefix, suffix = shard_prefix(path, suffix)

    shards = []
    for index in range(max_search):
        candidate = shard_path(prefix, index, suffix)
        if not candidate.exists():
            break
        shards.append(candidate)

    if not shards:
        raise FileNotFoundError(f"No shard files found for {prefix}.<N>.{suffix}")

    logger.debug(f"Found {len(shards)} shards for {prefix.name}")
    return shards


def find_snapshot(snapnum: int, run_dir: Union[str, Path, None] = None, kind: str = "snap") -> Path:
    """
    Find shard 0 of a snapshot in an EAGLE-style run directory.

    Snapshots live in 'snapshot_NNN_zXXXpYYY/snap_NNN_zXXXpYYY.0.hdf5'
    (snipshots use 'snipshot'/'snip').

    Args:
        snapnum: Snapshot number
        run_dir: Run directory, defaults to DEFAULT_DATA_ROOT
        kind: 'snap' or 'snip'

    Returns:
        Path to shard 0

    Raises:
        FileNotFoundError: If no matching snapshot exists
    """
    if kind not in ("snap", "snip"):
        raise ValueError(f"Unknown snapshot kind: {kind}")
    run_dir = Path(DEFAULT_DATA_ROOT if run_dir is None else run_dir)
    directory = f"{kind}shot_{snapnum:03d}_z*"
    matches = sorted(run_dir.glob(f"{directory}/{kind}_{snapnum:03d}_z*.0.{DEFAULT_SHARD_SUFFIX}"))

    if not matches:
        raise FileNotFoundError(f"No {kind}shot {snapnum:03d} found in {run_dir}")
    if len(matches) > 1:
        logger.warning(f"Multiple matches for {kind}shot {snapnum:03d}, using {matches[0]}")
    return matches[0]
