"""
Synthetic eddies of the Synthetic Eddy Method.

Eddies live in a box around the inlet plane, expressed in the local patch frame (x along the
inward patch normal, y and z tangential). Each eddy carries a position, a length scale per
direction and a random sign per velocity component; its contribution to the velocity at a
point is the product of compact shape functions along the three directions.

Reference:
    N. Jarrin, S. Benhamadouche, D. Laurence, R. Prosser,
    "A synthetic-eddy-method for generating inflow conditions for large-eddy simulations",
    International Journal of Heat and Fluid Flow, (2006) 27:585-593
"""

import numpy as np
import numba as nb
from .errors import ConfigurationError, NumericalError
from .lund import symm_to_full
from turbinlet import logger


EDDY_DTYPE = np.dtype([
    ('label', np.int64),
    ('position', np.float64, (3,)),
    ('scale', np.float64, (3,)),
    ('sign', np.float64, (3,)),
])

# maximum number of attempts when seeding a single eddy
SEED_ITER_MAX = 1000


def shape_function(xi):
    """
    Eddy shape along one direction: cos(pi xi / 2) for |xi| < 1, zero elsewhere.

    The profile vanishes smoothly at the eddy scale and its square integrates to one over
    [-1, 1].
    """
    xi = np.asarray(xi, dtype=np.float64)
    return np.where(np.abs(xi) < 1.0, np.cos(0.5 * np.pi * xi), 0.0)


def eddy_scales(sigma, R=None, axes=None, method: str = 'isotropic') -> np.ndarray:
    """
    Length scale vector per face.

    Parameters
    ----------
    sigma : ndarray
        Scalar length scale per face, shape (n,).
    R : ndarray, optional
        Reynolds stress per face in the global frame, required for method 'anisotropic'.
    axes : ndarray, optional
        Rows are the local (x, y, z) axes of the patch.
    method : str
        'isotropic' uses sigma along every direction. 'anisotropic' builds an ellipsoid on the
        principal axes of R with semi-axes sigma * sqrt(3 lambda_k / tr R), each factor clipped
        to [0.5, 2], and returns its extent along the local axes.
    """
    sigma = np.asarray(sigma, dtype=np.float64)

    if method == 'isotropic':
        return np.repeat(sigma[:, np.newaxis], 3, axis=1)

    if method != 'anisotropic':
        raise ConfigurationError(f"eddy_scale: unknown method '{method}'. Options are 'isotropic' or 'anisotropic'.")
    if R is None:
        raise ConfigurationError("eddy_scale: 'anisotropic' eddies need the Reynolds stress field R.")

    Q = np.eye(3) if axes is None else np.asarray(axes)
    R_local = np.einsum('ai,fij,bj->fab', Q, symm_to_full(R), Q)

    lam, vec = np.linalg.eigh(R_local)
    bad = np.flatnonzero(lam.min(axis=1) < -1e-12 * np.abs(lam).max(axis=1))
    if bad.size:
        raise NumericalError(f"eddy_scales: Reynolds stress has negative eigenvalues at face(s) {bad[:10].tolist()}.")

    lam = np.maximum(lam, 0.0)
    trace = lam.sum(axis=1, keepdims=True)
    factor = np.clip(np.sqrt(3.0 * lam / np.where(trace > 0, trace, 1.0)), 0.5, 2.0)

    # half extent of the principal ellipsoid along local axis d: sqrt(sum_k (v_k . e_d)^2 f_k^2)
    extent = np.sqrt(np.einsum('fdk,fk->fd', vec**2, factor**2))
    return sigma[:, np.newaxis] * extent


class EddyField:
    """
    Population of eddies owned by one process.

    Parameters
    ----------
    points : ndarray
        Local face centres in the patch frame, shape (n, 3).
    areas : ndarray
        Face areas, shape (n,).
    scales : ndarray
        Eddy length scale vector per face, shape (n, 3).
    box : ndarray
        Global eddy box [[xmin, ymin, zmin], [xmax, ymax, zmax]] in the patch frame.
    local_bounds : ndarray
        Lateral extent of the local partition, same layout as box; None if the process owns
        no faces.
    n_eddy : int
        Number of eddies owned by this process.
    rng : RandomSource
        Random stream of this process.
    periodic : array_like of bool
        Periodicity of the local (x, y, z) axes.
    rank, size : int
        Rank and size of the communicator, used to keep eddy labels unique.
    half_widths : ndarray, optional
        Half extent of every face along y and z, shape (n, 2). Default is half of sqrt(area)
        along both axes.
    """

    def __init__(
        self,
        points: np.ndarray,
        areas: np.ndarray,
        scales: np.ndarray,
        box: np.ndarray,
        local_bounds: np.ndarray,
        n_eddy: int,
        rng,
        periodic=(False, False, False),
        rank: int = 0,
        size: int = 1,
        half_widths=None
    ):
        self.points = np.asarray(points, dtype=np.float64)
        self.areas = np.asarray(areas, dtype=np.float64)
        self.scales = np.asarray(scales, dtype=np.float64)
        self.box = np.asarray(box, dtype=np.float64)
        self.periodic = np.asarray(periodic, dtype=bool)
        self.span = self.box[1] - self.box[0]
        self.rng = rng
        self.rank = rank
        self.size = size
        self.n_eddy = int(n_eddy)

        if self.n_eddy > 0 and len(self.points) == 0:
            raise ConfigurationError(f"[Rank {rank}] EddyField: {self.n_eddy} eddies requested on a partition without faces.")

        # eddy box of this process: global streamwise extent, local lateral extent
        self.bounds = self.box.copy()
        if local_bounds is not None:
            self.bounds[0, 1:] = np.maximum(self.box[0, 1:], local_bounds[0][1:])
            self.bounds[1, 1:] = np.minimum(self.box[1, 1:], local_bounds[1][1:])

        if half_widths is None:
            half_widths = np.repeat(0.5 * np.sqrt(self.areas)[:, np.newaxis], 2, axis=1)
        self._half_widths = np.asarray(half_widths, dtype=np.float64).reshape(-1, 2)
        area_sum = self.areas.sum()
        self._face_prob = self.areas / area_sum if area_sum > 0 else None

        self._label_counter = 0
        self.eddies = np.empty(self.n_eddy, dtype=EDDY_DTYPE)

    def __len__(self):
        return len(self.eddies)

    def __repr__(self):
        return f"<EddyField n_eddy={self.n_eddy} bounds={self.bounds.tolist()}>"

    def _next_label(self) -> int:
        label = self._label_counter * self.size + self.rank
        self._label_counter += 1
        return label

    def _lateral_position(self) -> tuple[int, np.ndarray]:
        """
        Random point on the local patch partition and the face it lies on. The face is drawn
        with probability proportional to its area and the point uniformly within it.
        """
        face = self.rng.choice(len(self.areas), p=self._face_prob)
        h = self._half_widths[face]
        return face, self.points[face, 1:] + self.rng.uniform(-h, h, 2)

    def _is_valid(self, position: np.ndarray, existing: np.ndarray) -> bool:
        if np.any(position < self.bounds[0]) or np.any(position > self.bounds[1]):
            return False
        if existing.size and np.any(np.all(np.abs(existing - position) < 1e-12, axis=1)):
            return False
        return True

    def _new_eddy(self, x: float = None, existing: np.ndarray = None):
        """
        Draw a new eddy. The streamwise position is uniform in the box unless `x` is given.
        """
        if existing is None:
            existing = np.empty((0, 3))

        for _ in range(SEED_ITER_MAX):
            position = np.empty(3)
            position[0] = self.rng.uniform(self.bounds[0, 0], self.bounds[1, 0]) if x is None else x
            face, position[1:] = self._lateral_position()
            if self._is_valid(position, existing):
                break
        else:
            raise ConfigurationError(
                f"[Rank {self.rank}] EddyField: failed to seed an eddy after {SEED_ITER_MAX} attempts; "
                "check the patch geometry and the eddy box."
            )

        eddy = np.zeros((), dtype=EDDY_DTYPE)
        eddy['label'] = self._next_label()
        eddy['position'] = position
        eddy['scale'] = self.scales[face]
        eddy['sign'] = self.rng.sign(3)
        return eddy

    def seed(self):
        """Populate the box with eddies at uniformly random positions."""
        for i in range(self.n_eddy):
            self.eddies[i] = self._new_eddy(existing=self.eddies['position'][:i])
        logger.debug(f"[Rank {self.rank}] EddyField: seeded {self.n_eddy} eddies in {self.bounds.tolist()}")

    def convect(self, velocity, dt: float) -> int:
        """
        Advance all eddies by velocity * dt.

        Periodic directions wrap around the global box. Eddies leaving the local eddy box are
        reseeded at its upstream face with a new lateral position, new signs and a new label, so
        the population size never changes. Eddies passing the downstream face re-enter shifted
        by the distance travelled beyond it.

        Returns
        -------
        int
            Number of reseeded eddies.
        """
        if self.n_eddy == 0:
            return 0

        pos = self.eddies['position'] + np.asarray(velocity, dtype=np.float64) * dt

        for d in np.flatnonzero(self.periodic):
            pos[:, d] = (pos[:, d] - self.box[0, d]) % self.span[d] + self.box[0, d]

        self.eddies['position'] = pos

        length = self.bounds[1, 0] - self.bounds[0, 0]
        exited = np.flatnonzero(np.any((pos < self.bounds[0]) | (pos > self.bounds[1]), axis=1))
        for i in exited:
            # the part of the step past the downstream face is carried over, which keeps the
            # streamwise eddy distribution uniform
            x = self.bounds[0, 0]
            overshoot = pos[i, 0] - self.bounds[1, 0]
            if overshoot > 0 and length > 0:
                x += overshoot % length
            self.eddies[i] = self._new_eddy(x=x, existing=self.eddies['position'])

        return len(exited)

    def state(self) -> dict:
        return {'eddies': self.eddies.copy(), 'label_counter': self._label_counter}

    def set_state(self, state: dict):
        eddies = np.asarray(state['eddies'], dtype=EDDY_DTYPE)
        if len(eddies) != self.n_eddy:
            raise ConfigurationError(
                f"[Rank {self.rank}] EddyField.set_state: restart holds {len(eddies)} eddies, expected {self.n_eddy}."
            )
        self.eddies = eddies.copy()
        self._label_counter = int(state['label_counter'])


def eddy_weights(scale: np.ndarray, v0: float, n_eddy_global: int) -> np.ndarray:
    """Amplitude sqrt(v0 / (N sigma_x sigma_y sigma_z)) giving unit variance per component."""
    return np.sqrt(v0 / (n_eddy_global * np.prod(scale, axis=-1)))


def with_periodic_images(eddies: np.ndarray, shifts: np.ndarray) -> np.ndarray:
    """Eddies together with their translated periodic images."""
    if len(shifts) <= 1 or len(eddies) == 0:
        return eddies
    images = []
    for shift in shifts:
        image = eddies.copy()
        image['position'] += shift
        images.append(image)
    return np.concatenate(images)


def u_dash(
    eddies: np.ndarray,
    points: np.ndarray,
    v0: float,
    n_eddy_global: int,
    shifts: np.ndarray = None,
    optimization: bool = True
) -> np.ndarray:
    """
    Unit-variance velocity fluctuation induced by the eddies at the given points.

    Parameters
    ----------
    eddies : ndarray
        Eddies of EDDY_DTYPE (local ones and remote copies).
    points : ndarray
        Query points in the patch frame, shape (m, 3).
    v0 : float
        Eddy box volume.
    n_eddy_global : int
        Global number of eddies.
    shifts : ndarray, optional
        Periodic image translations.
    optimization : bool, optional
        Use the numba kernel. Default is True.
    """
    points = np.ascontiguousarray(points, dtype=np.float64)
    u = np.zeros((len(points), 3))
    if len(points) == 0 or len(eddies) == 0:
        return u

    if shifts is not None:
        eddies = with_periodic_images(eddies, shifts)

    position = np.ascontiguousarray(eddies['position'])
    scale = np.ascontiguousarray(eddies['scale'])
    sign = np.ascontiguousarray(eddies['sign'])
    weight = eddy_weights(scale, v0, n_eddy_global)

    if optimization:
        _superpose_numba(u, points, position, scale, sign, weight)
    else:
        _superpose_numpy(u, points, position, scale, sign, weight)

    return u


def _superpose_numpy(u, points, position, scale, sign, weight, chunk: int = 256):
    for start in range(0, len(points), chunk):
        p = points[start:start + chunk]
        xi = (p[:, np.newaxis, :] - position[np.newaxis]) / scale[np.newaxis]
        f = weight[np.newaxis] * np.prod(shape_function(xi), axis=-1)
        u[start:start + chunk] = f @ sign


@nb.njit
def _superpose_numba(u, points, position, scale, sign, weight):
    half_pi = 0.5 * np.pi
    for i in range(points.shape[0]):
        for e in range(position.shape[0]):
            f = weight[e]
            for d in range(3):
                xi = (points[i, d] - position[e, d]) / scale[e, d]
                if abs(xi) >= 1.0:
                    f = 0.0
                    break
                f *= np.cos(half_pi * xi)
            if f != 0.0:
                for c in range(3):
                    u[i, c] += sign[e, c] * f
