"""
Message passing used by the inflow generators.

The generators only talk to a `Communicator`: collective reductions for global patch
quantities and a point-to-point style exchange of eddies between neighbouring patch
partitions. `MPICommunicator` wraps an mpi4py communicator, `SerialCommunicator` is the
single-process case.
"""

from abc import ABC, abstractmethod
import itertools
import numpy as np
from .eddy import EDDY_DTYPE
from .errors import ParallelConsistencyError
from . import logger


REDUCTIONS = ('sum', 'max', 'min')


class Communicator(ABC):
    rank: int = 0
    size: int = 1

    @abstractmethod
    def allreduce(self, value, op: str = 'sum'):
        ...

    @abstractmethod
    def allgather(self, obj) -> list:
        ...

    @abstractmethod
    def alltoall(self, objs: list) -> list:
        ...

    @abstractmethod
    def bcast(self, obj, root: int = 0):
        ...

    @abstractmethod
    def barrier(self):
        ...

    @abstractmethod
    def abort(self, code: int = 1):
        ...


class SerialCommunicator(Communicator):
    """Communicator of a single process; every collective is the identity."""

    def __init__(self):
        self.rank = 0
        self.size = 1

    def allreduce(self, value, op: str = 'sum'):
        _check_op(op)
        return np.copy(value) if isinstance(value, np.ndarray) else value

    def allgather(self, obj) -> list:
        return [obj]

    def alltoall(self, objs: list) -> list:
        if len(objs) != 1:
            raise ParallelConsistencyError(f"alltoall: expected 1 message, got {len(objs)}.")
        return list(objs)

    def bcast(self, obj, root: int = 0):
        return obj

    def barrier(self):
        pass

    def abort(self, code: int = 1):
        # nothing to tear down, the caller re-raises
        pass


class MPICommunicator(Communicator):
    """
    Communicator backed by mpi4py.

    Parameters
    ----------
    comm : mpi4py.MPI.Comm, optional
        Communicator to wrap. Default is MPI.COMM_WORLD.
    """

    def __init__(self, comm=None):
        import mpi4py.MPI as mpi

        self._mpi = mpi
        self.comm = comm if comm is not None else mpi.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        self._ops = {'sum': mpi.SUM, 'max': mpi.MAX, 'min': mpi.MIN}

    def allreduce(self, value, op: str = 'sum'):
        _check_op(op)
        if isinstance(value, np.ndarray):
            send = np.ascontiguousarray(value, dtype=np.float64)
            recv = np.empty_like(send)
            self.comm.Allreduce(send, recv, op=self._ops[op])
            return recv
        return self.comm.allreduce(value, op=self._ops[op])

    def allgather(self, obj) -> list:
        return self.comm.allgather(obj)

    def alltoall(self, objs: list) -> list:
        if len(objs) != self.size:
            raise ParallelConsistencyError(f"alltoall: expected {self.size} messages, got {len(objs)}.")
        return self.comm.alltoall(objs)

    def bcast(self, obj, root: int = 0):
        return self.comm.bcast(obj, root=root)

    def barrier(self):
        self.comm.Barrier()

    def abort(self, code: int = 1):
        self.comm.Abort(code)


def _check_op(op):
    if op not in REDUCTIONS:
        raise ValueError(f"Unsupported reduction '{op}'. Options are {REDUCTIONS}.")


def periodic_shifts(span, periodic) -> np.ndarray:
    """
    Translations to the periodic images of a point.

    Parameters
    ----------
    span : array_like
        Patch extent in the local (x, y, z) frame.
    periodic : array_like of bool
        Periodicity flag of the local (x, y, z) axes.

    Returns
    -------
    ndarray
        Shifts of shape (m, 3); the first row is the identity.
    """
    options = [(0.0, -s, s) if p else (0.0,) for s, p in zip(span, periodic)]
    return np.array(list(itertools.product(*options)), dtype=np.float64)


def influence_overlaps(position, scale, bounds, shifts=None) -> np.ndarray:
    """
    Mask of eddies whose influence box (position +/- scale), or one of its periodic images,
    intersects the box `bounds` = [[min], [max]]. The comparison is strict.
    """
    if shifts is None:
        shifts = np.zeros((1, 3))
    lo = np.asarray(bounds[0])
    hi = np.asarray(bounds[1])

    mask = np.zeros(len(position), dtype=bool)
    for shift in shifts:
        p = position + shift
        mask |= np.all((p + scale > lo) & (p - scale < hi), axis=1)
    return mask


def check_eddy_count(comm: Communicator, n_local: int, n_global: int):
    """Verify that the local eddy counts add up to the global count."""
    total = comm.allreduce(int(n_local), op='sum')
    if total != n_global:
        raise ParallelConsistencyError(
            f"Global eddy count mismatch: sum of local counts is {total}, expected {n_global}."
        )


class ProcessorEddyExchange:
    """
    Exchange of eddies whose influence region reaches into another patch partition.

    The partition bounds of all processes are gathered once. Every step, each process tests
    its eddies (periodic images included) against the bounds of every other partition, sends
    read-only copies of the overlapping ones, and receives the eddies it needs in return.

    Parameters
    ----------
    comm : Communicator
        Communicator of the patch.
    local_bounds : ndarray
        Local partition bounds [[xmin, ymin, zmin], [xmax, ymax, zmax]] in the patch frame.
        Processes without faces pass None.
    shifts : ndarray, optional
        Periodic image translations, see `periodic_shifts`.
    """

    def __init__(self, comm: Communicator, local_bounds, shifts=None):
        self.comm = comm
        self.rank = comm.rank
        self.size = comm.size
        self.shifts = np.zeros((1, 3)) if shifts is None else np.asarray(shifts)

        if local_bounds is None:
            local_bounds = np.array([[np.inf] * 3, [-np.inf] * 3])
        self.local_bounds = np.asarray(local_bounds, dtype=np.float64)

        self.all_bounds = [np.asarray(b, dtype=np.float64) for b in comm.allgather(self.local_bounds)]
        if len(self.all_bounds) != self.size:
            raise ParallelConsistencyError(
                f"[Rank {self.rank}] ProcessorEddyExchange: gathered {len(self.all_bounds)} partitions, expected {self.size}."
            )

        # processes owning faces; the others never need eddies
        self.candidates = [
            q for q, b in enumerate(self.all_bounds) if q != self.rank and np.all(np.isfinite(b))
        ]
        self.neighbours = []

    def select(self, eddies: np.ndarray, q: int) -> np.ndarray:
        """Copies of the eddies that overlap the partition of process q."""
        mask = influence_overlaps(eddies['position'], eddies['scale'], self.all_bounds[q], self.shifts)
        return eddies[mask].copy()

    def exchange(self, eddies: np.ndarray) -> np.ndarray:
        """
        Send overlapping local eddies to the other partitions and return the received ones.

        This is collective: every process of the communicator has to call it in the same step.
        The returned array is read-only.
        """
        outgoing = [np.empty(0, dtype=EDDY_DTYPE) for _ in range(self.size)]
        self.neighbours = []
        for q in self.candidates:
            outgoing[q] = self.select(eddies, q)
            if outgoing[q].size:
                self.neighbours.append(q)

        try:
            incoming = self.comm.alltoall(outgoing)
        except ParallelConsistencyError:
            raise
        except Exception as e:
            raise ParallelConsistencyError(f"[Rank {self.rank}] ProcessorEddyExchange.exchange: {e}") from e

        received = [np.asarray(incoming[q], dtype=EDDY_DTYPE) for q in range(self.size) if q != self.rank]
        remote = np.concatenate(received) if received else np.empty(0, dtype=EDDY_DTYPE)
        remote.setflags(write=False)

        logger.debug(f"[Rank {self.rank}] ProcessorEddyExchange: sent to {self.neighbours}, received {remote.size} eddies")
        return remote
