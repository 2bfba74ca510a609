import numpy as np
import numba as nb
from scipy import ndimage
from .errors import ConfigurationError
from .filters import FilterBank
from .utils import distribute_indices
from turbinlet import logger


class VirtualGrid:
    """
    Grid of random numbers covering the inlet patch.

    The grid has My x Mz cells in the local (y, z) plane of the patch, padded with `halo`
    extra cells on both sides of every non-periodic axis. Periodic axes are not padded; the
    filter wraps around them instead, and their spacing is adjusted so that an integer number
    of cells spans the patch exactly.

    Parameters
    ----------
    patch : InletPatch
        Inlet patch.
    delta : float
        Target virtual grid spacing.
    halo : int
        Filter half width in grid points.
    rng : RandomSource
        Random stream of this process.
    reuse : bool, optional
        Draw the random field once and reuse it every step. Default is False.
    """

    def __init__(self, patch, delta: float, halo: int, rng, reuse: bool = False):
        if delta <= 0:
            raise ConfigurationError(f"grid_factor: virtual grid spacing must be positive, got {delta}.")

        self.comm = patch.comm
        self.rank = patch.comm.rank
        self.size = patch.comm.size
        self.rng = rng
        self.reuse = reuse

        self.origin = patch.bounds[0, 1:]
        span = patch.span[1:]
        self.periodic = patch.periodic[1:]

        self.M = np.empty(2, dtype=np.int64)
        self.spacing = np.empty(2)
        for d in range(2):
            if self.periodic[d]:
                self.M[d] = max(1, int(round(span[d] / delta)))
                self.spacing[d] = span[d] / self.M[d]
            else:
                self.M[d] = max(1, int(np.ceil(span[d] / delta - 1e-9)))
                self.spacing[d] = delta

        self.halo = np.where(self.periodic, 0, int(halo))
        self.shape = (3, *(int(m) for m in self.M + 2 * self.halo))

        self.cells = self.locate(patch.points)
        self._field = None

        if self.rank == 0:
            logger.info(
                f"VirtualGrid: My = {self.M[0]}, Mz = {self.M[1]}, spacing = {self.spacing.tolist()}, "
                f"halo = {self.halo.tolist()}, periodic = {self.periodic.tolist()}"
            )

    def locate(self, points: np.ndarray) -> np.ndarray:
        """Cell indices (j, k) of points given in the local patch frame."""
        idx = np.floor((points[:, 1:] - self.origin) / self.spacing).astype(np.int64)
        return np.clip(idx, 0, self.M - 1)

    def draw(self) -> np.ndarray:
        """
        Random field of shape (3, My + 2Hy, Mz + 2Hz).

        The rows along y are split over the processes; each process fills its rows from its
        own stream and the full field is assembled on every process.
        """
        if self.reuse and self._field is not None:
            return self._field

        n_rows = self.shape[1]
        start, stop = distribute_indices(n_rows, self.rank, self.size)
        local = self.rng.normal((3, stop - start, self.shape[2]))

        blocks = self.comm.allgather(local)
        field = np.concatenate(blocks, axis=1)
        if field.shape != self.shape:
            raise ConfigurationError(f"VirtualGrid.draw: assembled field {field.shape}, expected {self.shape}.")

        self._field = field
        return field

    @property
    def field(self):
        """Last random field, or None before the first draw."""
        return self._field

    @field.setter
    def field(self, value):
        self._field = None if value is None else np.asarray(value, dtype=np.float64)


class SpatialCorrelator:
    """
    Spatial filtering of the virtual grid at the cells of the patch faces.

    Parameters
    ----------
    grid : VirtualGrid
        Virtual grid of the patch.
    bank : FilterBank
        Filter kernels.
    ny, nz : ndarray
        Length scale in grid units along y and z per face and velocity component, shape (n, 3).
    separable : bool, optional
        Filter with two one-dimensional passes over the whole grid (gaussian kernels only).
        Otherwise the two-dimensional kernel is applied at every face. Default is True.
    """

    def __init__(self, grid: VirtualGrid, bank: FilterBank, ny: np.ndarray, nz: np.ndarray, separable: bool = True):
        self.grid = grid
        self.bank = bank
        self.ny = np.asarray(ny, dtype=np.int64).reshape(-1, 3)
        self.nz = np.asarray(nz, dtype=np.int64).reshape(-1, 3)
        self.separable = separable and bank.separable

        n_max = max(self.ny.max(initial=1), self.nz.max(initial=1))
        if np.any(self.grid.halo[~self.grid.periodic] < bank.halo(n_max)):
            raise ConfigurationError("SpatialCorrelator: virtual grid halo is narrower than the filter.")

        # unique (ny, nz) pairs and the kernel used by every face and component
        pairs = np.stack([self.ny.ravel(), self.nz.ravel()], axis=1)
        self.pairs, inverse = np.unique(pairs, axis=0, return_inverse=True)
        self.kernel_id = inverse.reshape(self.ny.shape)

        if not self.separable:
            self._pack_kernels()

    def _pack_kernels(self):
        kernels = [self.bank.kernel_2d(ny, nz) for ny, nz in self.pairs]
        self._kernel_data = np.concatenate([k.ravel() for k in kernels]) if kernels else np.empty(0)
        sizes = np.array([k.size for k in kernels], dtype=np.int64)
        self._kernel_offset = np.concatenate([[0], np.cumsum(sizes)[:-1]]).astype(np.int64)
        self._kernel_half = np.array([[(k.shape[0] - 1) // 2, (k.shape[1] - 1) // 2] for k in kernels], dtype=np.int64).reshape(-1, 2)

    def correlate(self, field: np.ndarray) -> np.ndarray:
        """Spatially correlated, unit-variance sample per face and component, shape (n, 3)."""
        out = np.zeros((len(self.grid.cells), 3))
        if len(out) == 0:
            return out

        if self.separable:
            self._correlate_separable(out, field)
        else:
            _correlate_direct(
                out,
                np.ascontiguousarray(field),
                self.grid.cells,
                self.kernel_id,
                self._kernel_data,
                self._kernel_offset,
                self._kernel_half,
                self.grid.halo,
                self.grid.M,
                self.grid.periodic,
            )
        return out

    def _correlate_separable(self, out: np.ndarray, field: np.ndarray):
        j = self.grid.cells[:, 0] + self.grid.halo[0]
        k = self.grid.cells[:, 1] + self.grid.halo[1]

        for pid, (ny, nz) in enumerate(self.pairs):
            by, bz = self.bank.kernel_1d(ny), self.bank.kernel_1d(nz)

            # periodic axes are extended by wrapping, by the filter half width
            wy = len(by) // 2 if self.grid.periodic[0] else 0
            wz = len(bz) // 2 if self.grid.periodic[1] else 0
            padded = np.pad(field, ((0, 0), (wy, wy), (wz, wz)), mode='wrap')

            for c in range(3):
                faces = np.flatnonzero(self.kernel_id[:, c] == pid)
                if faces.size == 0:
                    continue
                filtered = ndimage.correlate1d(padded[c], by, axis=0, mode='constant')
                filtered = ndimage.correlate1d(filtered, bz, axis=1, mode='constant')
                out[faces, c] = filtered[j[faces] + wy, k[faces] + wz]


@nb.njit
def _correlate_direct(out, field, cells, kernel_id, data, offset, half, halo, M, periodic):
    for f in range(cells.shape[0]):
        j0 = cells[f, 0] + halo[0]
        k0 = cells[f, 1] + halo[1]
        for c in range(3):
            kid = kernel_id[f, c]
            Ny = half[kid, 0]
            Nz = half[kid, 1]
            width = 2 * Nz + 1
            base = offset[kid]
            s = 0.0
            for a in range(-Ny, Ny + 1):
                jj = j0 + a
                if periodic[0]:
                    jj = jj % M[0]
                for b in range(-Nz, Nz + 1):
                    kk = k0 + b
                    if periodic[1]:
                        kk = kk % M[1]
                    s += data[base + (a + Ny) * width + (b + Nz)] * field[c, jj, kk]
            out[f, c] = s
