import numpy as np
import traceback
from .errors import ConfigurationError, ParallelConsistencyError, TurbInletError
from .io import Params, RestartFile, FaceProbeWriter, read_boundary_data
from .mapping import BoundaryDataMapper
from .profiles import calculate_boundary_data
from .rng import RandomSource
from .synthesizer import VelocitySynthesizer, build_generator
from .utils import Timer
from . import logger


FIELDS = ('U', 'R', 'L')


class TurbulentInlet:
    """
    Turbulent inflow boundary condition of an inlet patch.

    Assembles the boundary data (tabulated and mapped, or calculated from profiles),
    builds the inflow generator selected by `params.method` and advances it in time.

    Parameters:
    ----------
    params: Params
        Run parameters, taken from rank 0.
    patch: InletPatch
        Local partition of the inlet patch; its communicator is used for all collectives.
    """

    def __init__(self, params: Params, patch):
        self.patch = patch
        self.comm = patch.comm
        self.mpi_rank = self.comm.rank
        self.mpi_size = self.comm.size

        self.params = None
        if self.mpi_rank == 0:
            self.params = params
        self.params = self.comm.bcast(self.params, root=0)

        self.step = 0
        self.t = 0.0
        self.probes = None

        try:
            self.rng = RandomSource(self.params.seed, self.mpi_rank)
            self.points = patch.jittered_points(self.rng.spawn(0), self.params.perturb)

            self._init_boundary_data()
            self._init_generator()
            self._init_restart()
            self._init_probes()
        except TurbInletError as e:
            self._abort("Failed to initialize the turbulent inlet", e)

        self._timer = Timer(self.comm, self.params.verbose)

    def __repr__(self):
        return f"<TurbulentInlet method={self.params.method} rank={self.mpi_rank} step={self.step} t={self.t}>"

    def _abort(self, message: str, error: Exception):
        logger.critical(f"[Rank {self.mpi_rank}] {message}: {error}\n{traceback.format_exc()}")
        self.comm.abort(1)
        raise error

    def _init_boundary_data(self):
        specs = dict(self.params.boundary_data)
        data = {}

        if self.params.boundary_data_file is not None:
            table = read_boundary_data(self.params.boundary_data_file)
            self.mapper = BoundaryDataMapper(table['points'], self.patch, self.params.map_method, self.points)
            for field in FIELDS:
                if field in table:
                    data[field] = self.mapper.map(table[field])

        for field in FIELDS:
            if field not in data and field in specs:
                data[field] = calculate_boundary_data(
                    field, specs[field], self.patch, self.params.delta, self.params.kappa
                )

        if 'U' not in data:
            raise ConfigurationError("U: mean velocity data is missing.")

        self.U = data['U']
        self.R = data.get('R')
        self.L = data.get('L')

    def _init_generator(self):
        self.generator = build_generator(
            self.params, self.patch, self.U, self.R, self.L, self.rng, self.points
        )
        self.synthesizer = VelocitySynthesizer(self.generator)

        if self.mpi_rank == 0:
            logger.info(
                f"TurbulentInlet: method = {self.params.method}, faces = {self.patch.n_faces_global}, "
                f"area = {self.patch.area:.4e}, processes = {self.mpi_size}"
            )

    def _init_restart(self):
        self.restart_file = RestartFile(self.params.restart_name, self.mpi_rank)
        if not self.params.restart or self.params.clean_restart:
            return

        n_found = self.comm.allreduce(int(self.restart_file.exists()), op='sum')
        if n_found == 0:
            if self.mpi_rank == 0:
                logger.info("TurbulentInlet: no restart files found, starting from the configured seed.")
            return
        if n_found != self.mpi_size:
            raise ParallelConsistencyError(
                f"Restart files found for {n_found} of {self.mpi_size} processes."
            )

        state, t, step = self.restart_file.read()
        self.generator.restore_state(state)
        self.t = t
        self.step = step

        if self.mpi_rank == 0:
            logger.info(f"TurbulentInlet: restarted at step {step}, time = {t:.4e}")

    def _init_probes(self):
        n_faces = self.comm.allgather(self.patch.n_faces)
        offset = int(np.sum(n_faces[:self.mpi_rank]))
        requested = sorted(set(int(i) for i in self.params.probe_faces))
        global_ids = [i for i in requested if offset <= i < offset + self.patch.n_faces]

        n_probed = self.comm.allreduce(len(global_ids), op='sum')
        if n_probed != len(requested):
            raise ConfigurationError(
                f"probe_faces: {len(requested)} faces requested, {n_probed} found on the patch."
            )
        if not global_ids:
            return

        faces = [i - offset for i in global_ids]
        header = {'method': self.params.method, 'seed': self.params.seed, 'dt': self.params.dt}
        self.probes = FaceProbeWriter(
            self.params.probe_name, faces, global_ids, header, self.patch.face_centres[faces]
        )

    @property
    def U_mean(self) -> np.ndarray:
        return self.synthesizer.U_mean

    def update(self, t: float, dt: float) -> np.ndarray:
        """
        Inlet velocity at time t, shape (n, 3).

        The generator advances once per new time; calling again with the same time returns
        the same velocity.
        """
        new_step = t != self.t or self.generator.time is None
        try:
            U = self.synthesizer.velocity(t, dt)
        except TurbInletError as e:
            self._abort(f"Failed to update the inflow at t = {t}", e)

        if not new_step:
            return U

        if t != self.t:
            self.step += 1
        self.t = t

        if self.probes is not None:
            self.probes.write(t, U)

        if self.params.write_restart and self.step % self.params.restart_interval == 0:
            self.write_restart()

        if self.step % self.params.check_interval == 0:
            self._timer(self.t, self.step)
            if self.probes is not None:
                self.probes.flush()

        return U

    def write_restart(self):
        self.restart_file.write(self.generator.serialize_state(), self.t, self.step)

    def run(self):
        """Advance the inflow from the current time to params.end_time."""
        self.comm.barrier()
        self._timer.start(self.step)

        dt = self.params.dt
        while self.t < self.params.end_time and not np.isclose(self.t, self.params.end_time, atol=1e-9):
            self.update(self.t + dt, dt)

        if self.params.write_restart:
            self.write_restart()

        self.close()
        self._timer.final()

    def close(self):
        if self.probes is not None:
            self.probes.close()
            self.probes = None
