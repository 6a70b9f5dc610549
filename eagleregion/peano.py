"""
Peano-Hilbert space-filling curve keys.

Maps integer cell coordinates on a 2**bits per side grid to their linear index
along the Peano-Hilbert curve used to sort particles in EAGLE/Gadget snapshots.
Consecutive keys are face-adjacent cells, so spatially compact regions map to
a small number of contiguous key runs.

Example usage:
    keys = peano_hilbert_keys(ix, iy, iz, bits=6)
"""

import numpy as np

# Octant visited at each of the 24 curve orientations, indexed [rotation][bx][by][bz]
_QUADRANTS = np.array([
    # rotx=0, roty=0-3
    [[[0, 7], [1, 6]], [[3, 4], [2, 5]]],
    [[[7, 4], [6, 5]], [[0, 3], [1, 2]]],
    [[[4, 3], [5, 2]], [[7, 0], [6, 1]]],
    [[[3, 0], [2, 1]], [[4, 7], [5, 6]]],
    # rotx=1, roty=0-3
    [[[1, 0], [6, 7]], [[2, 3], [5, 4]]],
    [[[0, 3], [7, 4]], [[1, 2], [6, 5]]],
    [[[3, 2], [4, 5]], [[0, 1], [7, 6]]],
    [[[2, 1], [5, 6]], [[3, 0], [4, 7]]],
    # rotx=2, roty=0-3
    [[[6, 1], [7, 0]], [[5, 2], [4, 3]]],
    [[[1, 2], [0, 3]], [[6, 5], [7, 4]]],
    [[[2, 5], [3, 4]], [[1, 6], [0, 7]]],
    [[[5, 6], [4, 7]], [[2, 1], [3, 0]]],
    # rotx=3, roty=0-3
    [[[7, 6], [0, 1]], [[4, 5], [3, 2]]],
    [[[6, 5], [1, 2]], [[7, 4], [0, 3]]],
    [[[5, 4], [2, 3]], [[6, 7], [1, 0]]],
    [[[4, 7], [3, 0]], [[5, 6], [2, 1]]],
    # rotx=4, roty=0-3
    [[[6, 7], [5, 4]], [[1, 0], [2, 3]]],
    [[[7, 0], [4, 3]], [[6, 1], [5, 2]]],
    [[[0, 1], [3, 2]], [[7, 6], [4, 5]]],
    [[[1, 6], [2, 5]], [[0, 7], [3, 4]]],
    # rotx=5, roty=0-3
    [[[2, 3], [1, 0]], [[5, 4], [6, 7]]],
    [[[3, 4], [0, 7]], [[2, 5], [1, 6]]],
    [[[4, 5], [7, 6]], [[3, 2], [0, 1]]],
    [[[5, 2], [6, 1]], [[4, 3], [7, 0]]],
], dtype=np.int64)

_ROTXMAP = [4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15, 0, 1, 2, 3, 17, 18, 19, 16, 23, 20, 21, 22]
_ROTYMAP = [1, 2, 3, 0, 16, 17, 18, 19, 11, 8, 9, 10, 22, 23, 20, 21, 14, 15, 12, 13, 4, 5, 6, 7]
_ROTX = [3, 0, 0, 2, 2, 0, 0, 1]
_ROTY = [0, 1, 1, 2, 2, 3, 3, 0]
_SENSE = np.array([-1, -1, -1, +1, +1, -1, -1, -1], dtype=np.int64)

MAX_BITS = 20  # 3 * 20 bits fits a signed 64-bit key


def _build_rotation_table():
    """Orientation reached after descending into each octant from each orientation."""
    table = np.zeros((24, 8), dtype=np.int64)
    for rotation in range(24):
        for quad in range(8):
            r = rotation
            for _ in range(_ROTX[quad]):
                r = _ROTXMAP[r]
            for _ in range(_ROTY[quad]):
                r = _ROTYMAP[r]
            table[rotation, quad] = r
    return table

_NEXT_ROTATION = _build_rotation_table()


def peano_hilbert_keys(ix, iy, iz, bits):
    """
    Compute Peano-Hilbert keys for integer cell coordinates.

    Args:
        ix, iy, iz: Integer cell coordinates (scalars or arrays of equal shape),
                    each in [0, 2**bits)
        bits: Number of refinement levels per axis

    Returns:
        int64 array of keys in [0, 8**bits)

    Raises:
        ValueError: If bits is out of range or coordinates fall outside the grid
    """
    if not 1 <= bits <= MAX_BITS:
        raise ValueError(f"bits must be in [1, {MAX_BITS}], got {bits}")

    ix, iy, iz = np.broadcast_arrays(np.asarray(ix, dtype=np.int64),
                                     np.asarray(iy, dtype=np.int64),
                                     np.asarray(iz, dtype=np.int64))
    ncell = 1 << bits
    for coord in (ix, iy, iz):
        if coord.size and (coord.min() < 0 or coord.max() >= ncell):
            raise ValueError(f"Cell coordinates must lie in [0, {ncell})")

    keys = np.zeros(ix.shape, dtype=np.int64)
    rotation = np.zeros(ix.shape, dtype=np.int64)
    sense = np.ones(ix.shape, dtype=np.int64)

    for level in range(bits - 1, -1, -1):
        bx = (ix >> level) & 1
        by = (iy >> level) & 1
        bz = (iz >> level) & 1

        quad = _QUADRANTS[rotation, bx, by, bz]
        keys = (keys << 3) + np.where(sense == 1, quad, 7 - quad)

        sense = sense * _SENSE[quad]
        rotation = _NEXT_ROTATION[rotation, quad]

    return keys


def peano_hilbert_key(x, y, z, bits):
    """Scalar convenience wrapper around peano_hilbert_keys."""
    return int(peano_hilbert_keys(x, y, z, bits))
