import numpy as np
from .errors import ConfigurationError


class RandomSource:
    """
    Reproducible per-process stream of random numbers.

    The stream is seeded from the configured base seed and the process rank, so that two
    processes never share a stream while a fixed (seed, rank) pair always reproduces the
    same sequence.

    Parameters
    ----------
    seed : int
        Base seed from the configuration.
    rank : int, optional
        Rank of the owning process. Default is 0.
    key : tuple of int, optional
        Extra entropy words, e.g. an eddy or face index, for child streams.
    """

    def __init__(self, seed: int, rank: int = 0, key: tuple = ()):
        if seed < 0:
            raise ValueError(f"RandomSource: seed must be non-negative, got {seed}.")

        self.seed = int(seed)
        self.rank = int(rank)
        self.key = tuple(int(k) for k in key)

        self._seed_seq = np.random.SeedSequence([self.seed, self.rank, *self.key])
        self._gen = np.random.Generator(np.random.PCG64(self._seed_seq))

    def __repr__(self):
        return f"<RandomSource seed={self.seed} rank={self.rank} key={self.key}>"

    def normal(self, shape) -> np.ndarray:
        """Independent zero-mean, unit-variance Gaussian samples."""
        return self._gen.standard_normal(shape)

    def uniform(self, low=0.0, high=1.0, shape=None) -> np.ndarray:
        return self._gen.uniform(low, high, shape)

    def sign(self, shape) -> np.ndarray:
        """Random signs (+1 or -1) with equal probability."""
        return np.where(self._gen.random(shape) < 0.5, -1.0, 1.0)

    def integers(self, low, high=None, shape=None) -> np.ndarray:
        return self._gen.integers(low, high, shape)

    def choice(self, n: int, p: np.ndarray = None, shape=None) -> np.ndarray:
        return self._gen.choice(n, size=shape, p=p)

    def spawn(self, *key: int) -> "RandomSource":
        """Independent child stream keyed by e.g. a face or eddy index."""
        return RandomSource(self.seed, self.rank, self.key + key)

    @property
    def state(self) -> dict:
        return self._gen.bit_generator.state

    def set_state(self, state: dict):
        """Restore the bit generator state captured by `state`."""
        if not isinstance(state, dict) or state.get('bit_generator') != 'PCG64':
            name = state.get('bit_generator') if isinstance(state, dict) else state
            raise ConfigurationError(f"restart: unsupported random generator state '{name}'.")
        try:
            self._gen.bit_generator.state = state
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"restart: invalid random generator state: {e}") from e
