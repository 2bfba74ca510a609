import copy
import threading
import numpy as np
import pytest
from turbinlet.io import Params
from turbinlet.parallel import Communicator, SerialCommunicator, _check_op


class ThreadGroup:
    """Shared state of a group of in-memory communicators, one per thread."""

    def __init__(self, size: int):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=60)
        self.slots = [None] * size


class ThreadCommunicator(Communicator):
    """Communicator whose processes are threads of the test process."""

    def __init__(self, group: ThreadGroup, rank: int):
        self.group = group
        self.rank = rank
        self.size = group.size

    def _exchange(self, obj) -> list:
        self.group.slots[self.rank] = obj
        self.group.barrier.wait()
        out = copy.deepcopy(self.group.slots)
        self.group.barrier.wait()
        return out

    def allreduce(self, value, op: str = 'sum'):
        _check_op(op)
        values = self._exchange(value)
        if isinstance(value, np.ndarray):
            stacked = np.stack(values)
            return {'sum': np.sum, 'max': np.max, 'min': np.min}[op](stacked, axis=0)
        return {'sum': sum, 'max': max, 'min': min}[op](values)

    def allgather(self, obj) -> list:
        return self._exchange(obj)

    def alltoall(self, objs: list) -> list:
        assert len(objs) == self.size
        table = self._exchange(objs)
        return [table[q][self.rank] for q in range(self.size)]

    def bcast(self, obj, root: int = 0):
        return self._exchange(obj)[root]

    def barrier(self):
        self.group.barrier.wait()

    def abort(self, code: int = 1):
        pass


def run_parallel(size: int, func, *args):
    """Run func(comm, *args) on `size` threads and return the results ordered by rank."""
    group = ThreadGroup(size)
    results = [None] * size
    errors = [None] * size

    def target(rank):
        try:
            results[rank] = func(ThreadCommunicator(group, rank), *args)
        except BaseException as e:
            errors[rank] = e
            group.barrier.abort()

    threads = [threading.Thread(target=target, args=(rank,)) for rank in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for e in errors:
        if e is not None and not isinstance(e, threading.BrokenBarrierError):
            raise e
    for e in errors:
        if e is not None:
            raise e
    return results


@pytest.fixture
def serial_comm():
    return SerialCommunicator()


@pytest.fixture
def parallel():
    return run_parallel


# channel-like stresses with a positive definite shear component
R_TEST = [4.0, -0.5, 0.0, 1.0, 0.0, 0.25]


def make_params(**overrides) -> Params:
    data = {
        'method': 'dfm',
        'seed': 42,
        'perturb': 0.0,
        'dt': 0.02,
        'end_time': 0.2,
        'delta': 1.0,
        'boundary_data': {
            'U': 10.0,
            'R': R_TEST,
            'L': 0.1,
        },
    }
    data.update(overrides)
    return Params.from_dict(data)


@pytest.fixture
def params_factory():
    return make_params
