import numpy as np
from scipy import special
from .errors import NumericalError


def bessel_i0(x):
    """Modified Bessel function of the first kind, order 0."""
    x = np.asarray(x, dtype=np.float64)
    if not np.all(np.isfinite(x)):
        raise NumericalError("bessel_i0: argument must be finite.")
    return special.i0(x)


def bessel_k0(x):
    """
    Modified Bessel function of the second kind, order 0.

    K0 is singular at the origin, so the argument has to be strictly positive.
    """
    x = np.asarray(x, dtype=np.float64)
    bad = ~np.isfinite(x) | (x <= 0.0)
    if np.any(bad):
        raise NumericalError(
            f"bessel_k0: argument out of range (0, inf), got {np.atleast_1d(x)[np.atleast_1d(bad)][:5]}."
        )
    return special.k0(x)
