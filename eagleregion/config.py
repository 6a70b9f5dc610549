"""
Configuration management for eagleregion.

This module centralizes configuration settings, paths, default parameters,
particle class presets and the exception hierarchy for the eagleregion package.
"""
import os

# --- Environment Variable Dependent Paths ---
def get_env_variable(var_name: str, default: str | None = None) -> str:
    """Fetches an environment variable, raises error if not found and no default."""
    value = os.getenv(var_name)
    if value is None:
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided.")
    return value

DEFAULT_DATA_ROOT = get_env_variable("EAGLE_DATA", "/tmp/eagle")

# --- Default Layout Parameters ---
DEFAULT_HASH_BITS = 6          # 2**6 cells per axis in the EAGLE hash table
DEFAULT_SHARD_SUFFIX = "hdf5"
MAX_SHARD_SEARCH = 100000      # upper bound when probing prefix.<N>.hdf5

# --- Particle Class Presets ---
# Structure: 'name': PartType index in the snapshot files
PARTICLE_TYPES = {
    "gas": 0,
    "dm": 1,
    "stars": 4,
    "bh": 5,
}

PARTICLE_TYPE_ALIASES = {
    "darkmatter": "dm",
    "dark_matter": "dm",
    "star": "stars",
    "blackholes": "bh",
    "black_holes": "bh",
}

# Total number of PartType slots in a Gadget-style header
NTYPES = 6


def resolve_particle_type(ptype) -> int:
    """Return the integer PartType for a class name, alias or integer."""
    if isinstance(ptype, str):
        name = ptype.strip().lower()
        name = PARTICLE_TYPE_ALIASES.get(name, name)
        if name.startswith("parttype"):
            name = name[len("parttype"):]
        if name.isdigit():
            ptype = int(name)
        elif name in PARTICLE_TYPES:
            return PARTICLE_TYPES[name]
        else:
            raise ValueError(f"Unknown particle class: {ptype!r}")
    try:
        itype = int(ptype)
    except (TypeError, ValueError):
        raise ValueError(f"Unknown particle class: {ptype!r}")
    if not 0 <= itype < NTYPES:
        raise ValueError(f"Particle type {itype} outside [0, {NTYPES})")
    return itype


# --- Custom Exceptions ---
class RegionReadError(Exception):
    """Base exception for errors raised by eagleregion."""
    pass

class InvalidRegionError(RegionReadError):
    """Exception raised for query boxes with inconsistent or out-of-domain bounds."""
    pass

class RegionTooLargeError(InvalidRegionError):
    """Exception raised when a query box is wider than the periodic domain."""
    pass

class IndexCorruptError(RegionReadError):
    """Exception raised when the hash table does not tile the key space."""
    pass

class SnapshotLayoutError(RegionReadError):
    """Exception raised for missing shard files or header metadata."""
    pass

class ShardReadError(RegionReadError):
    """Exception raised when reading a record range from a shard fails."""

    def __init__(self, shard: int, start: int, stop: int, message: str = ""):
        self.shard = shard
        self.start = start
        self.stop = stop
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"Failed to read records [{start}, {stop}) from shard {shard}{detail}")

    def __reduce__(self):
        # keep the shard context when raised inside a worker process
        return (self.__class__, (self.shard, self.start, self.stop, self.message))
