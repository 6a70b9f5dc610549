"""
Unit conversion for snapshot attributes.

Every stored attribute carries the exponents of the expansion factor and the
dimensionless Hubble parameter that convert it from comoving h-scaled code
units to physical code units, plus the factor converting code units to CGS.
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class AttributeUnits:
    """Scaling constants stored alongside one attribute."""
    aexp_exponent: float
    h_exponent: float
    cgs_factor: float
    description: str = ""

    def factor(self, a: float, h: float, cgs: bool = False) -> float:
        """Multiplicative factor from stored values to physical units."""
        factor = a ** self.aexp_exponent * h ** self.h_exponent
        if cgs:
            factor *= self.cgs_factor
        return factor


def to_physical(values, units: AttributeUnits, a: float, h: float,
                cgs: bool = False, dtype=np.float64) -> np.ndarray:
    """
    Convert stored attribute values to physical units.

    Values are cast to dtype before scaling, since CGS factors overflow
    single precision for most attributes.

    Args:
        values: Array read from the snapshot
        units: Scaling constants of the attribute
        a: Expansion factor of the snapshot
        h: Dimensionless Hubble parameter
        cgs: Also convert code units to CGS
        dtype: Floating type of the result

    Returns:
        Scaled array of the requested dtype
    """
    dtype = np.dtype(dtype)
    return np.asarray(values, dtype=dtype) * dtype.type(units.factor(a, h, cgs=cgs))
