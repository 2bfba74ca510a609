import numpy as np
import time
from turbinlet import logger


def clamp_min(values, floor: float, what: str):
    """
    Clamp values to a minimum safe value.

    Underflowing coefficients or near-zero denominators do not invalidate the generated
    statistics, so they are clamped and reported as a warning instead of raising.
    """
    values = np.asarray(values, dtype=np.float64)
    small = values < floor
    if np.any(small):
        logger.warning(f"{what}: {np.count_nonzero(small)} value(s) below {floor:.3e} clamped.")
        values = np.where(small, floor, values)
    return values


def distribute_indices(n: int, rank: int, size: int) -> tuple[int, int]:
    """
    Contiguous block [start, stop) of n indices owned by a process.

    The first n % size processes take one extra index.
    """
    per_proc, rest = divmod(n, size)
    start = rank * per_proc + min(rank, rest)
    stop = start + per_proc + (1 if rank < rest else 0)
    return start, stop


class Timer:
    """
    Wall-clock bookkeeping of the inflow generation.

    Every check reports the rank-averaged wall time since the previous check and the
    resulting generation rate in steps per second.
    """

    def __init__(self, comm, verbose: bool = False):
        self.comm = comm
        self.mpi_rank = comm.rank
        self.mpi_size = comm.size
        self.verbose = verbose

        self.start_time = time.time()
        self._last_time = self.start_time
        self._last_step = 0
        self.n_steps = 0

    def _average(self, seconds: float) -> float:
        return self.comm.allreduce(seconds, op='sum') / self.mpi_size

    def __call__(self, simulation_time: float, step: int):
        now = time.time()
        elapsed = self._average(now - self._last_time)
        n_steps = step - self._last_step
        self._last_time = now
        self._last_step = step
        self.n_steps += max(n_steps, 0)

        if self.verbose and self.mpi_rank == 0:
            rate = n_steps / elapsed if elapsed > 0 else float('inf')
            logger.info(
                f"Step = {step:08d}, time = {simulation_time:.2e}, "
                f"wall time since last check = {format_time(elapsed, 'mm:ss')} ({rate:.1f} steps/s)"
            )

    def start(self, step: int = 0):
        self.start_time = self._last_time = time.time()
        self._last_step = step
        if self.mpi_rank == 0:
            logger.info(f"Inflow generation started at step {step}")

    def final(self):
        runtime = self._average(time.time() - self.start_time)
        if self.mpi_rank == 0:
            logger.info(f"Inflow generation completed. Total run time: {format_time(runtime, 'hh:mm:ss')}")


def format_time(seconds: float, format='dd-hh:mm:ss') -> str:
    """
    Format the time into various formats: 'dd-hh:mm:ss', 'hh:mm:ss', or 'mm:ss'.

    Parameters:
        seconds (float): Time in seconds.
        format (str): Desired format ('dd-hh:mm:ss', 'hh:mm:ss', 'mm:ss').

    Returns:
        str: Formatted time string.
    """
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    format = format.casefold()
    if format == 'mm:ss':
        return f"{int(minutes):02d}:{int(secs):02d}"
    elif format == 'hh:mm:ss':
        return f"{int(hours):02d}:{int(minutes):02d}:{int(secs):02d}"
    elif format == 'dd-hh:mm:ss':
        return f"{int(days):02d}-{int(hours):02d}:{int(minutes):02d}:{int(secs):02d}"
    else:
        raise ValueError("Invalid format. Choose 'dd-hh:mm:ss', 'hh:mm:ss', or 'mm:ss'.")
