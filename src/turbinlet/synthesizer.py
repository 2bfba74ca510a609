"""
Inflow generators and velocity synthesis.

A generator owns the random stream and all state of one inflow method on the local patch
partition, and exposes

    compute_fluctuation(time, dt) -> (n, 3) velocity fluctuation per face
    serialize_state() -> dict
    restore_state(state)

The fluctuation is computed once per time; repeated calls for the same time return the same
field. `VelocitySynthesizer` adds the fluctuation to the mean velocity.
"""

from abc import ABC, abstractmethod
import numpy as np
from .eddy import EddyField, eddy_scales, u_dash, EDDY_DTYPE
from .errors import ConfigurationError
from .filters import FilterBank, length_scale_to_grid
from .lund import as_symm_tensor, lund_coefficients, apply_lund
from .parallel import ProcessorEddyExchange, check_eddy_count, periodic_shifts
from .temporal import TemporalCorrelator
from .virtual_grid import VirtualGrid, SpatialCorrelator
from turbinlet import logger


DICT_GENERATORS = {}


def register_generator(name):
    def decorator(cls):
        DICT_GENERATORS[name] = cls
        return cls
    return decorator


def as_velocity(U, patch) -> np.ndarray:
    """Mean velocity per face as vectors; scalars are taken along the inward patch normal."""
    U = np.asarray(U, dtype=np.float64)
    if U.ndim == 0:
        U = np.full(patch.n_faces, float(U))
    if U.ndim == 1 and len(U) == patch.n_faces:
        return U[:, np.newaxis] * patch.normal
    if U.shape == (patch.n_faces, 3):
        return U.copy()
    raise ConfigurationError(f"U: unsupported mean velocity shape {U.shape} for {patch.n_faces} faces.")


def as_length_tensor(L, n: int) -> np.ndarray:
    """Length scales as tensors (n, 3, 3): component i along local direction d."""
    L = np.asarray(L, dtype=np.float64)
    if L.ndim == 0:
        L = np.full(n, float(L))
    if L.shape == (n,):
        L = np.repeat(L[:, np.newaxis, np.newaxis], 3, axis=1).repeat(3, axis=2)
    if L.shape != (n, 3, 3):
        raise ConfigurationError(f"L: unsupported length scale shape {L.shape} for {n} faces.")
    if np.any(L <= 0) or not np.all(np.isfinite(L)):
        raise ConfigurationError("L: length scales must be positive and finite.")
    return L


class InflowGenerator(ABC):
    """
    Base class of the inflow generators.

    Parameters
    ----------
    patch : InletPatch
        Local partition of the inlet patch.
    U : ndarray
        Mean velocity per face, (n, 3) or (n,) along the patch normal.
    R : ndarray
        Reynolds stress per face, (n, 6) or (n, 3, 3), or a single tensor.
    L : ndarray
        Integral length scale per face, (n,) or (n, 3, 3), or a single value.
    params : Params
        Run parameters.
    rng : RandomSource
        Random stream of this process.
    points : ndarray, optional
        Query points in the local patch frame. Default is patch.points.
    """

    name = None

    def __init__(self, patch, U, R, L, params, rng, points=None):
        self.patch = patch
        self.comm = patch.comm
        self.rank = patch.comm.rank
        self.size = patch.comm.size
        self.params = params
        self.rng = rng
        self.n_faces = patch.n_faces
        self.points = patch.points if points is None else np.asarray(points, dtype=np.float64)

        self.U = as_velocity(U, patch)
        self.set_reynolds_stress(R)

        self.time_index = 0
        self.time = None
        self._fluct = None

    def set_reynolds_stress(self, R):
        """Set the Reynolds stress and recompute the cached Lund coefficients."""
        if R is None:
            raise ConfigurationError("R: Reynolds stress data is missing.")
        R = as_symm_tensor(R)
        if len(R) == 1 and self.n_faces != 1:
            R = np.repeat(R, self.n_faces, axis=0)
        if len(R) != self.n_faces:
            raise ConfigurationError(f"R: {len(R)} tensors for {self.n_faces} faces.")
        self.R = R
        self.lund = lund_coefficients(R)

    def compute_fluctuation(self, time: float, dt: float) -> np.ndarray:
        """Velocity fluctuation per face at `time`, shape (n, 3)."""
        if self.time is not None and time == self.time:
            return self._fluct.copy()

        if dt <= 0:
            raise ConfigurationError(f"dt: time step must be positive, got {dt}.")

        self._fluct = self._compute(dt)
        self.time = float(time)
        self.time_index += 1
        return self._fluct.copy()

    @abstractmethod
    def _compute(self, dt: float) -> np.ndarray:
        ...

    def _state(self) -> dict:
        return {}

    def _set_state(self, state: dict):
        pass

    def serialize_state(self) -> dict:
        state = {
            'method': self.name,
            'time_index': self.time_index,
            'time': np.nan if self.time is None else self.time,
            'rng': self.rng.state,
            'fluct': self._fluct,
        }
        state.update(self._state())
        return state

    def restore_state(self, state: dict):
        if state.get('method') != self.name:
            raise ConfigurationError(
                f"[Rank {self.rank}] restore_state: restart data of method '{state.get('method')}' for '{self.name}'."
            )
        try:
            self.time_index = int(state['time_index'])
            self.time = None if np.isnan(state['time']) else float(state['time'])
            self.rng.set_state(state['rng'])
            self._fluct = None if state.get('fluct') is None else np.asarray(state['fluct'], dtype=np.float64)
            self._set_state(state)
        except KeyError as e:
            raise ConfigurationError(f"[Rank {self.rank}] restore_state: restart data misses {e}.") from e


@register_generator('mean')
class MeanGenerator(InflowGenerator):
    """Mean inflow without fluctuations."""

    name = 'mean'

    def set_reynolds_stress(self, R):
        self.R = None
        self.lund = None

    def _compute(self, dt: float) -> np.ndarray:
        return np.zeros((self.n_faces, 3))


@register_generator('dfm')
class DFMGenerator(InflowGenerator):
    """
    Digital Filter Method.

    White noise on the virtual grid is filtered in space, blended with the previous step in
    time and Lund transformed. The virtual grid spacing is grid_factor times the mean face
    size of the patch.
    """

    name = 'dfm'

    def __init__(self, patch, U, R, L, params, rng, points=None):
        super().__init__(patch, U, R, L, params, rng, points)

        if L is None:
            raise ConfigurationError("L: integral length scale data is required for the DFM.")
        self.L = as_length_tensor(L, self.n_faces)

        mesh_size = np.sqrt(patch.area / patch.n_faces_global)
        self.delta = params.grid_factor * mesh_size

        self.bank = FilterBank(params.filter_type, params.filter_width_ratio)
        ny = length_scale_to_grid(self.L[:, :, 1], self.delta).reshape(-1, 3)
        nz = length_scale_to_grid(self.L[:, :, 2], self.delta).reshape(-1, 3)

        n_local = int(max(ny.max(initial=1), nz.max(initial=1)))
        n_max = self.comm.allreduce(n_local, op='max')
        halo = self.bank.halo(n_max)

        self.grid = VirtualGrid(patch, self.delta, halo, rng, reuse=params.reuse_random_grid)
        self.grid.cells = self.grid.locate(self.points)
        self.correlator = SpatialCorrelator(self.grid, self.bank, ny, nz)
        self.temporal = TemporalCorrelator(self.L[:, :, 0], np.linalg.norm(self.U, axis=1))

        if self.rank == 0:
            logger.info(
                f"DFMGenerator: grid spacing = {self.delta:.4e}, largest filter scale = {n_max}, "
                f"filter = {params.filter_type}"
            )

    def _compute(self, dt: float) -> np.ndarray:
        field = self.grid.draw()
        sample = self.correlator.correlate(field)
        u = self.temporal.correlate(sample, dt)
        return apply_lund(self.lund, u)

    def _state(self) -> dict:
        temporal = self.temporal.state()
        state = {'initialised': temporal['initialised'], 'u_old': temporal['u_old']}
        if self.grid.reuse:
            state['grid_field'] = self.grid.field
        return state

    def _set_state(self, state: dict):
        self.temporal.set_state(state)
        if self.grid.reuse:
            self.grid.field = state.get('grid_field')


@register_generator('dfsem')
class DFSEMGenerator(InflowGenerator):
    """
    Synthetic Eddy Method.

    Eddies are convected through a box around the inlet plane with the area-averaged mean
    velocity; their superposed contributions give unit-variance fluctuations that are Lund
    transformed. The length scale of every face is limited from below by n_cell_per_eddy face
    sizes; without length scale data it defaults to kappa * delta.
    """

    name = 'dfsem'

    def __init__(self, patch, U, R, L, params, rng, points=None):
        super().__init__(patch, U, R, L, params, rng, points)

        if L is None:
            L = np.full(self.n_faces, params.kappa * params.delta)
        L = as_length_tensor(L, self.n_faces)
        sigma = np.trace(L, axis1=1, axis2=2) / 3.0
        self.sigma = np.maximum(sigma, params.n_cell_per_eddy * np.sqrt(patch.face_areas))
        self.scales = eddy_scales(self.sigma, self.R, patch.axes, params.eddy_scale)

        local_max = self.scales[:, 0].max(initial=0.0)
        self.sigma_max = self.comm.allreduce(float(local_max), op='max')

        self.box = patch.bounds.copy()
        self.box[0, 0] = -self.sigma_max
        self.box[1, 0] = self.sigma_max
        self.v0 = 2.0 * self.sigma_max * patch.area

        self.n_eddy_global = self._global_eddy_count()
        self.n_eddy_local = self._local_eddy_count()
        check_eddy_count(self.comm, self.n_eddy_local, self.n_eddy_global)

        U_area = self.comm.allreduce((self.U * patch.face_areas[:, np.newaxis]).sum(axis=0), op='sum')
        self.U_convect = patch.to_local_vector(U_area / patch.area)

        self.shifts = periodic_shifts(patch.span, patch.periodic)
        query_bounds = None
        if self.n_faces:
            query_bounds = np.array([self.points.min(axis=0), self.points.max(axis=0)])
        self.exchange = ProcessorEddyExchange(self.comm, query_bounds, self.shifts)

        self.field = EddyField(
            self.points,
            patch.face_areas,
            self.scales,
            self.box,
            patch.local_bounds,
            self.n_eddy_local,
            rng,
            periodic=patch.periodic,
            rank=self.rank,
            size=self.size,
            half_widths=patch.half_widths
        )
        self.field.seed()

        if self.rank == 0:
            logger.info(
                f"DFSEMGenerator: eddies = {self.n_eddy_global}, box volume = {self.v0:.4e}, "
                f"max length scale = {self.sigma_max:.4e}"
            )

    def _global_eddy_count(self) -> int:
        if self.params.n_eddy is not None:
            return int(self.params.n_eddy)

        eddy_volume = np.prod(2.0 * self.scales, axis=1)
        weighted = self.comm.allreduce(float((eddy_volume * self.patch.face_areas).sum()), op='sum')
        mean_volume = weighted / self.patch.area
        return max(self.size, int(round(self.params.density * self.v0 / mean_volume)))

    def _local_eddy_count(self) -> int:
        """Share of the global eddies proportional to the local patch area."""
        areas = np.array(self.comm.allgather(float(self.patch.face_areas.sum())))
        quota = self.n_eddy_global * areas / areas.sum()
        counts = np.floor(quota).astype(np.int64)
        rest = self.n_eddy_global - counts.sum()
        # remaining eddies go to the largest fractional parts, ties broken by rank
        order = np.lexsort((np.arange(len(areas)), -(quota - counts)))
        counts[order[:rest]] += 1
        counts[areas == 0] = 0
        if counts.sum() != self.n_eddy_global:
            counts[np.argmax(areas)] += self.n_eddy_global - counts.sum()
        return int(counts[self.rank])

    def _compute(self, dt: float) -> np.ndarray:
        self.field.convect(self.U_convect, dt)
        check_eddy_count(self.comm, len(self.field), self.n_eddy_global)

        remote = self.exchange.exchange(self.field.eddies)
        eddies = np.concatenate([self.field.eddies, remote]) if remote.size else self.field.eddies

        u = u_dash(eddies, self.points, self.v0, self.n_eddy_global, self.shifts, self.params.optimization)
        return apply_lund(self.lund, u)

    def _state(self) -> dict:
        state = self.field.state()
        return {'eddies': state['eddies'], 'label_counter': state['label_counter']}

    def _set_state(self, state: dict):
        eddies = np.asarray(state['eddies'], dtype=EDDY_DTYPE).reshape(-1)
        self.field.set_state({'eddies': eddies, 'label_counter': state['label_counter']})


class VelocitySynthesizer:
    """
    Inlet velocity: the mean velocity plus the fluctuation of an inflow generator.

    Parameters
    ----------
    generator : InflowGenerator
        Generator of the velocity fluctuations.
    """

    def __init__(self, generator: InflowGenerator):
        self.generator = generator

    @property
    def U_mean(self) -> np.ndarray:
        return self.generator.U

    def velocity(self, time: float, dt: float) -> np.ndarray:
        """Velocity per face at `time`, shape (n, 3)."""
        return self.generator.U + self.generator.compute_fluctuation(time, dt)


def build_generator(params, patch, U, R, L, rng, points=None) -> InflowGenerator:
    """Construct the generator selected by params.method."""
    if params.method not in DICT_GENERATORS:
        raise ConfigurationError(f"method: inflow method '{params.method}' not found.")
    return DICT_GENERATORS[params.method](patch, U, R, L, params, rng, points)
