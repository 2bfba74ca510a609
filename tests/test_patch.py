import numpy as np
import pytest
from turbinlet.errors import ConfigurationError
from turbinlet.patch import InletPatch
from turbinlet.rng import RandomSource


class TestInletPatch:
    def test_rectangle_geometry(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, width=(2.0, 1.0), shape=(8, 4))
        assert patch.n_faces == 32
        assert patch.area == pytest.approx(2.0)
        assert np.allclose(patch.bounds, [[0.0, 0.0, 0.0], [0.0, 2.0, 1.0]])
        assert np.allclose(patch.points[:, 0], 0.0)
        assert patch.diagonal == pytest.approx(np.sqrt(5.0))

    def test_local_frame(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, shape=(4, 4), origin=(1.0, 2.0, 3.0), normal=(0.0, 0.0, -2.0))
        assert np.allclose(patch.normal, [0.0, 0.0, -1.0])
        assert np.allclose(patch.axes @ patch.axes.T, np.eye(3))
        assert np.allclose(patch.face_centres[:, 2], 3.0)

        p = np.random.default_rng(0).standard_normal((5, 3))
        assert np.allclose(patch.to_global(patch.to_local(p)), p)
        v = np.array([[0.0, 0.0, -1.0]])
        assert np.allclose(patch.to_local_vector(v), [[1.0, 0.0, 0.0]])
        assert np.allclose(patch.to_global_vector(patch.to_local_vector(v)), v)

    def test_partitioned(self, parallel):
        def build(comm):
            patch = InletPatch.rectangle(comm, width=(1.0, 1.0), shape=(4, 10))
            return patch.n_faces, patch.n_faces_global, patch.area, patch.bounds, patch.local_bounds

        results = parallel(3, build)
        assert [r[0] for r in results] == [16, 12, 12]
        for _, n_global, area, bounds, local_bounds in results:
            assert n_global == 40
            assert area == pytest.approx(1.0)
            assert np.allclose(bounds, results[0][3])
            assert np.all(local_bounds[0, 1:] >= bounds[0, 1:] - 1e-12)
            assert np.all(local_bounds[1, 1:] <= bounds[1, 1:] + 1e-12)

        # the partitions tile the patch along z
        z_extent = [r[4][:, 2] for r in results]
        assert np.allclose(z_extent, [[0.0, 0.4], [0.4, 0.7], [0.7, 1.0]])
        assert all(np.allclose(r[4][:, 1], [0.0, 1.0]) for r in results)

    def test_partition_without_faces(self, parallel):
        def build(comm):
            patch = InletPatch.rectangle(comm, shape=(2, 2))
            return patch.n_faces, patch.local_bounds

        results = parallel(3, build)
        assert results[2] == (0, None)

    def test_jittered_points_lateral_only(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, shape=(4, 4))
        points = patch.jittered_points(RandomSource(1), 0.01)
        assert np.array_equal(points[:, 0], patch.points[:, 0])
        shift = np.abs(points - patch.points)
        assert np.all(shift[:, 1:] <= 0.01 * patch.diagonal)
        assert np.any(shift > 0)
        assert np.array_equal(patch.jittered_points(RandomSource(1), 0.0), patch.points)

    def test_stretched_faces(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, width=(1.0, 1.0), shape=(4, 64))
        assert np.allclose(patch.half_widths, [0.125, 1.0 / 128.0])
        assert np.allclose(patch.local_bounds[:, 1:], [[0.0, 0.0], [1.0, 1.0]])

    def test_default_square_faces(self, serial_comm):
        points = np.array([[0.0, 0.0, 0.0], [0.0, 0.5, 0.0]])
        patch = InletPatch(serial_comm, points, np.full(2, 0.25), (1, 0, 0), origin=(0.0, 0.0, 0.0))
        assert np.allclose(patch.half_widths, 0.25)
        assert np.allclose(patch.local_bounds[:, 1:], [[-0.25, -0.25], [0.75, 0.25]])

    def test_periodic_flags(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, periodic=(True, False))
        assert patch.periodic.tolist() == [False, True, False]

    def test_invalid(self, serial_comm):
        with pytest.raises(ConfigurationError):
            InletPatch(serial_comm, np.zeros((2, 3)), np.ones(3), (1, 0, 0))
        with pytest.raises(ConfigurationError):
            InletPatch(serial_comm, np.zeros((1, 3)), np.ones(1), (0, 0, 0))
        with pytest.raises(ConfigurationError):
            InletPatch.rectangle(serial_comm, shape=(0, 4))
        with pytest.raises(ConfigurationError, match="face widths"):
            InletPatch(serial_comm, np.zeros((2, 3)), np.ones(2), (1, 0, 0), face_widths=[[1.0, 0.0], [1.0, 1.0]])
