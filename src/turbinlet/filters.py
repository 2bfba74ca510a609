"""
Digital filter coefficients of the Digital Filter Method.

Reference:
    M. Klein, A. Sadiki, J. Janicka,
    "A digital filter based generation of inflow data for spatially developing direct
    numerical or large eddy simulations",
    Journal of Computational Physics, (2003) 186:652-665

    Zheng-Tong Xie, Ian P. Castro,
    "Efficient generation of inflow conditions for large eddy simulation of street-scale flows",
    Flow Turbulence Combust, (2008) 81:449-470

Length scales are expressed in units of the virtual grid spacing. A kernel of scale n spans
2N + 1 grid points with N = cutoff_ratio * n, and is normalised so that its squared
coefficients sum to one; filtering unit-variance white noise then keeps unit variance.
"""

import numpy as np
from .bessel import bessel_i0, bessel_k0
from .errors import ConfigurationError
from .utils import clamp_min


FILTER_TYPES = ('gaussian', 'exponential')

COEFF_FLOOR = np.finfo(np.float64).tiny

# shape parameter of the Kaiser taper applied to the exponential kernel
KAISER_BETA = 2.0


def length_scale_to_grid(L, delta: float) -> np.ndarray:
    """
    Integral length scale in grid units, rounded to the nearest integer and at least one.

    Parameters
    ----------
    L : array_like
        Integral length scales.
    delta : float
        Virtual grid spacing.
    """
    L = np.asarray(L, dtype=np.float64)
    if delta <= 0:
        raise ConfigurationError(f"length_scale_to_grid: grid spacing must be positive, got {delta}.")
    if np.any(L <= 0) or not np.all(np.isfinite(L)):
        raise ConfigurationError("L: integral length scales must be positive and finite.")
    return np.maximum(np.rint(L / delta), 1).astype(np.int64)


def _check_scale(n, cutoff_ratio):
    if n < 1 or int(n) != n:
        raise ConfigurationError(f"filter: length scale in grid units must be an integer >= 1, got {n}.")
    if cutoff_ratio < 1 or int(cutoff_ratio) != cutoff_ratio:
        raise ConfigurationError(f"filter_width_ratio: must be an integer >= 1, got {cutoff_ratio}.")


def _normalise(b: np.ndarray, what: str) -> np.ndarray:
    b = clamp_min(b, COEFF_FLOOR, what)
    return b / np.sqrt(np.sum(b**2))


def filter_coeffs_1d(n: int, cutoff_ratio: int = 2) -> np.ndarray:
    """
    Gaussian filter b_k = exp(-pi k^2 / (2 n^2)), k = -N..N, normalised to sum(b^2) = 1.

    The correlation of white noise filtered this way is exp(-pi k^2 / (4 n^2)), whose integral
    length scale is n grid spacings.
    """
    _check_scale(n, cutoff_ratio)
    N = int(cutoff_ratio * n)
    k = np.arange(-N, N + 1, dtype=np.float64)
    b = np.exp(-np.pi * k**2 / (2.0 * n**2))
    return _normalise(b, "filter_coeffs_1d")


def filter_coeffs_2d(ny: int, nz: int, filter_type: str = 'gaussian', cutoff_ratio: int = 2) -> np.ndarray:
    """
    Two-dimensional filter of shape (2Ny + 1, 2Nz + 1).

    'gaussian' is the outer product of the one-dimensional kernels along y and z.

    'exponential' is the non-separable kernel K0(r / l), with r the anisotropic distance and
    l = 2n / pi. Filtering white noise with it gives the correlation (r / l) K1(r / l), which
    decays exponentially and has an integral length scale of n grid spacings. The singular
    centre is evaluated half a grid spacing away from the origin and the kernel is tapered
    with a Kaiser window towards the cutoff.
    """
    if filter_type not in FILTER_TYPES:
        raise ConfigurationError(f"filter_type: unknown filter '{filter_type}'. Options are {FILTER_TYPES}.")

    if filter_type == 'gaussian':
        return np.outer(filter_coeffs_1d(ny, cutoff_ratio), filter_coeffs_1d(nz, cutoff_ratio))

    _check_scale(ny, cutoff_ratio)
    _check_scale(nz, cutoff_ratio)
    Ny, Nz = int(cutoff_ratio * ny), int(cutoff_ratio * nz)
    ly, lz = 2.0 * ny / np.pi, 2.0 * nz / np.pi

    j, k = np.meshgrid(np.arange(-Ny, Ny + 1), np.arange(-Nz, Nz + 1), indexing='ij')
    rho = np.sqrt((j / ly)**2 + (k / lz)**2)
    rho = np.maximum(rho, 0.5 * min(1.0 / ly, 1.0 / lz))

    r = np.sqrt((j / Ny)**2 + (k / Nz)**2)
    inside = r <= 1.0
    taper = bessel_i0(KAISER_BETA * np.sqrt(1.0 - r[inside]**2)) / bessel_i0(KAISER_BETA)

    # corners outside the elliptic window stay exactly zero
    b = np.zeros_like(rho)
    b[inside] = clamp_min(bessel_k0(rho[inside]) * taper, COEFF_FLOOR, "filter_coeffs_2d")
    return b / np.sqrt(np.sum(b**2))


class FilterBank:
    """
    Cache of filter kernels keyed by the (ny, nz) length scales in grid units.

    Parameters
    ----------
    filter_type : str
        'gaussian' or 'exponential'.
    cutoff_ratio : int
        Filter half width to length scale ratio.
    """

    def __init__(self, filter_type: str = 'gaussian', cutoff_ratio: int = 2):
        if filter_type not in FILTER_TYPES:
            raise ConfigurationError(f"filter_type: unknown filter '{filter_type}'. Options are {FILTER_TYPES}.")
        self.filter_type = filter_type
        self.cutoff_ratio = int(cutoff_ratio)
        self._kernels_1d = {}
        self._kernels_2d = {}

    @property
    def separable(self) -> bool:
        return self.filter_type == 'gaussian'

    def halo(self, n_max: int) -> int:
        """Grid points needed on each side of the virtual grid for scales up to n_max."""
        return int(self.cutoff_ratio * n_max)

    def kernel_1d(self, n: int) -> np.ndarray:
        n = int(n)
        if n not in self._kernels_1d:
            self._kernels_1d[n] = filter_coeffs_1d(n, self.cutoff_ratio)
        return self._kernels_1d[n]

    def kernel_2d(self, ny: int, nz: int) -> np.ndarray:
        key = (int(ny), int(nz))
        if key not in self._kernels_2d:
            self._kernels_2d[key] = filter_coeffs_2d(*key, self.filter_type, self.cutoff_ratio)
        return self._kernels_2d[key]
