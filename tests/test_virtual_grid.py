import numpy as np
import pytest
from turbinlet.errors import ConfigurationError
from turbinlet.filters import FilterBank
from turbinlet.patch import InletPatch
from turbinlet.rng import RandomSource
from turbinlet.virtual_grid import VirtualGrid, SpatialCorrelator


def make_grid(comm, periodic=(False, False), halo=4, delta=0.1, shape=(10, 10), reuse=False):
    patch = InletPatch.rectangle(comm, width=(1.0, 1.0), shape=shape, periodic=periodic)
    return patch, VirtualGrid(patch, delta, halo, RandomSource(3, comm.rank), reuse=reuse)


class TestVirtualGrid:
    def test_shape(self, serial_comm):
        _, grid = make_grid(serial_comm, halo=4)
        assert grid.M.tolist() == [10, 10]
        assert grid.shape == (3, 18, 18)
        assert grid.draw().shape == grid.shape

    def test_periodic_axes_not_padded(self, serial_comm):
        _, grid = make_grid(serial_comm, periodic=(True, False), halo=4, delta=0.3)
        assert grid.halo.tolist() == [0, 4]
        # three cells span the periodic axis exactly
        assert grid.M[0] == 3
        assert grid.spacing[0] == pytest.approx(1.0 / 3.0)
        assert grid.M[1] == 4
        assert grid.spacing[1] == pytest.approx(0.3)

    def test_locate(self, serial_comm):
        patch, grid = make_grid(serial_comm)
        cells = grid.locate(patch.points)
        assert cells.min() == 0
        assert cells.max() == 9
        assert np.array_equal(cells, grid.cells)

    def test_redraw_and_reuse(self, serial_comm):
        _, grid = make_grid(serial_comm)
        assert not np.array_equal(grid.draw(), grid.draw())

        _, grid = make_grid(serial_comm, reuse=True)
        first = grid.draw()
        assert np.array_equal(first, grid.draw())

    def test_parallel_draw_identical_on_all_ranks(self, parallel):
        def draw(comm):
            _, grid = make_grid(comm, shape=(10, 12))
            return grid.draw()

        fields = parallel(3, draw)
        assert fields[0].shape == (3, 18, 18)
        for field in fields[1:]:
            assert np.array_equal(field, fields[0])


class TestSpatialCorrelator:
    def test_separable_matches_direct(self, serial_comm):
        patch, grid = make_grid(serial_comm, halo=6)
        bank = FilterBank('gaussian', 2)
        rng = np.random.default_rng(0)
        ny = rng.integers(1, 4, (patch.n_faces, 3))
        nz = rng.integers(1, 4, (patch.n_faces, 3))

        field = grid.draw()
        fast = SpatialCorrelator(grid, bank, ny, nz, separable=True).correlate(field)
        direct = SpatialCorrelator(grid, bank, ny, nz, separable=False).correlate(field)
        assert np.allclose(fast, direct)

    def test_periodic_separable_matches_direct(self, serial_comm):
        patch, grid = make_grid(serial_comm, periodic=(True, True), halo=6)
        bank = FilterBank('gaussian', 2)
        ny = np.full((patch.n_faces, 3), 2)
        nz = np.full((patch.n_faces, 3), 3)

        field = grid.draw()
        fast = SpatialCorrelator(grid, bank, ny, nz, separable=True).correlate(field)
        direct = SpatialCorrelator(grid, bank, ny, nz, separable=False).correlate(field)
        assert np.allclose(fast, direct)

    @pytest.mark.parametrize("filter_type", ['gaussian', 'exponential'])
    def test_periodic_seam(self, serial_comm, filter_type):
        # shifting the random field along a periodic axis shifts the filtered field, across the seam
        patch, grid = make_grid(serial_comm, periodic=(True, False), halo=4)
        bank = FilterBank(filter_type, 2)
        n = np.full((patch.n_faces, 3), 2)
        correlator = SpatialCorrelator(grid, bank, n, n)

        field = grid.draw()
        base = correlator.correlate(field)
        shifted = correlator.correlate(np.roll(field, 1, axis=1))

        j, k = grid.cells.T
        index = {(a, b): f for f, (a, b) in enumerate(zip(j, k))}
        source = np.array([index[((a - 1) % grid.M[0], b)] for a, b in zip(j, k)])
        assert np.allclose(shifted, base[source])

    def test_unit_variance(self, serial_comm):
        patch, grid = make_grid(serial_comm, periodic=(True, True), halo=0, shape=(20, 20), delta=0.05)
        bank = FilterBank('gaussian', 2)
        n = np.full((patch.n_faces, 3), 2)
        correlator = SpatialCorrelator(grid, bank, n, n)

        samples = np.array([correlator.correlate(grid.draw()) for _ in range(200)])
        assert samples.var() == pytest.approx(1.0, abs=0.05)

    def test_halo_too_narrow(self, serial_comm):
        patch, grid = make_grid(serial_comm, halo=2)
        n = np.full((patch.n_faces, 3), 3)
        with pytest.raises(ConfigurationError):
            SpatialCorrelator(grid, FilterBank('gaussian', 2), n, n)
