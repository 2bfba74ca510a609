import json
import numpy as np
import pytest
from turbinlet.errors import ConfigurationError
from turbinlet.rng import RandomSource


class TestRandomSource:
    def test_reproducible(self):
        a = RandomSource(7, rank=2)
        b = RandomSource(7, rank=2)
        assert np.array_equal(a.normal((4, 5)), b.normal((4, 5)))
        assert np.array_equal(a.uniform(-1, 1, 10), b.uniform(-1, 1, 10))

    def test_ranks_differ(self):
        a = RandomSource(7, rank=0).normal(100)
        b = RandomSource(7, rank=1).normal(100)
        assert not np.allclose(a, b)
        assert abs(np.corrcoef(a, b)[0, 1]) < 0.3

    def test_sign(self):
        s = RandomSource(1).sign(10000)
        assert set(np.unique(s)) == {-1.0, 1.0}
        assert abs(s.mean()) < 0.05

    def test_state_roundtrip(self):
        rng = RandomSource(3, rank=1)
        rng.normal(17)
        # the state survives a JSON round trip, as in the restart files
        state = json.loads(json.dumps(rng.state))
        expected = rng.normal(8)

        other = RandomSource(99)
        other.set_state(state)
        assert np.array_equal(other.normal(8), expected)

    def test_state_rejects_other_generator(self):
        with pytest.raises(ConfigurationError, match="MT19937"):
            RandomSource(0).set_state({'bit_generator': 'MT19937'})
        with pytest.raises(ConfigurationError):
            RandomSource(0).set_state({'bit_generator': 'PCG64'})
        with pytest.raises(ConfigurationError):
            RandomSource(0).set_state(None)

    def test_spawn_independent(self):
        parent = RandomSource(5, rank=3)
        child = parent.spawn(11)
        assert child.key == (11,)
        assert not np.allclose(child.normal(20), RandomSource(5, rank=3).normal(20))
        assert np.array_equal(parent.spawn(11).normal(5), RandomSource(5, 3, (11,)).normal(5))

    def test_negative_seed(self):
        with pytest.raises(ValueError):
            RandomSource(-1)
