import numpy as np
import pytest
from turbinlet.eddy import u_dash
from turbinlet.errors import ConfigurationError
from turbinlet.io import RestartFile
from turbinlet.lund import apply_lund, symm_to_full
from turbinlet.patch import InletPatch
from turbinlet.rng import RandomSource
from turbinlet.synthesizer import (
    DICT_GENERATORS,
    DFMGenerator,
    DFSEMGenerator,
    MeanGenerator,
    VelocitySynthesizer,
    as_velocity,
    build_generator,
)
from conftest import R_TEST, make_params


def make_generator(comm, shape=(16, 16), width=(1.0, 1.0), **overrides):
    params = make_params(**overrides)
    patch = InletPatch.rectangle(
        comm, width=width, shape=shape, periodic=(params.periodic_y, params.periodic_z)
    )
    data = params.boundary_data
    rng = RandomSource(params.seed, comm.rank)
    return build_generator(params, patch, data['U'], data.get('R'), data.get('L'), rng)


def run(generator, steps, dt, t0=0.0):
    return np.array([generator.compute_fluctuation(t0 + (i + 1) * dt, dt) for i in range(steps)])


def assert_covariance(samples, rel):
    u = samples.reshape(-1, 3)
    R = symm_to_full(R_TEST)[0]
    cov = np.cov(u.T)
    for i in range(3):
        assert cov[i, i] == pytest.approx(R[i, i], rel=rel)
    assert cov[0, 1] == pytest.approx(R[0, 1], abs=rel * np.sqrt(R[0, 0] * R[1, 1]))
    assert np.all(np.abs(u.mean(axis=0)) < 0.1 * np.sqrt(np.diag(R)))


class TestMeanVelocity:
    def test_scalar_along_normal(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, shape=(2, 2), normal=(0.0, 0.0, 1.0))
        assert np.allclose(as_velocity(3.0, patch), [0.0, 0.0, 3.0])
        assert np.allclose(as_velocity(np.full(4, 3.0), patch), [0.0, 0.0, 3.0])

    def test_vectors(self, serial_comm):
        patch = InletPatch.rectangle(serial_comm, shape=(2, 2))
        U = np.arange(12.0).reshape(4, 3)
        assert np.array_equal(as_velocity(U, patch), U)
        with pytest.raises(ConfigurationError, match="U"):
            as_velocity(np.ones((4, 2)), patch)


class TestRegistry:
    def test_registered(self):
        assert DICT_GENERATORS == {'mean': MeanGenerator, 'dfm': DFMGenerator, 'dfsem': DFSEMGenerator}

    def test_selected_by_method(self, serial_comm):
        assert isinstance(make_generator(serial_comm, method='dfsem'), DFSEMGenerator)
        assert isinstance(make_generator(serial_comm), DFMGenerator)


class TestMeanGenerator:
    def test_velocity_is_mean(self, serial_comm):
        gen = make_generator(serial_comm, method='mean', boundary_data={'U': 5.0})
        synthesizer = VelocitySynthesizer(gen)
        U = synthesizer.velocity(0.1, 0.1)
        assert np.allclose(U, [5.0, 0.0, 0.0])
        assert np.allclose(synthesizer.U_mean, U)


class TestDFMGenerator:
    def test_layout(self, serial_comm):
        gen = make_generator(serial_comm)
        assert gen.delta == pytest.approx(1.0 / 16.0)
        # L = 0.1 is 1.6 grid spacings
        assert np.all(gen.correlator.ny == 2)
        assert gen.grid.shape == (3, 24, 24)

    def test_end_to_end_statistics(self, serial_comm):
        gen = make_generator(serial_comm)
        samples = run(gen, 1000, 0.02)
        assert_covariance(samples, rel=0.05)

    def test_exponential_filter_statistics(self, serial_comm):
        gen = make_generator(serial_comm, filter_type='exponential')
        assert not gen.correlator.separable
        samples = run(gen, 600, 0.02)
        assert_covariance(samples, rel=0.1)

    def test_same_time_is_cached(self, serial_comm):
        gen = make_generator(serial_comm)
        first = gen.compute_fluctuation(0.1, 0.1)
        state = gen.rng.state
        assert np.array_equal(gen.compute_fluctuation(0.1, 0.1), first)
        assert gen.rng.state == state
        assert gen.time_index == 1
        assert not np.array_equal(gen.compute_fluctuation(0.2, 0.1), first)

    def test_temporal_correlation(self, serial_comm):
        # dt much shorter than the temporal scale L / U
        gen = make_generator(serial_comm)
        u = run(gen, 800, 0.0005)
        a = np.exp(-0.5 * np.pi * 0.0005 * 10.0 / 0.1)
        x = u[:, :, 0] / 2.0
        lag1 = np.mean(x[1:] * x[:-1]) / np.mean(x**2)
        assert lag1 == pytest.approx(a, abs=0.05)

    @pytest.mark.parametrize("reuse", [False, True])
    def test_restart_fidelity(self, serial_comm, reuse):
        a = make_generator(serial_comm, reuse_random_grid=reuse)
        run(a, 3, 0.02)
        state = a.serialize_state()

        b = make_generator(serial_comm, reuse_random_grid=reuse)
        b.restore_state(state)
        assert np.array_equal(run(b, 4, 0.02, t0=0.06), run(a, 4, 0.02, t0=0.06))

    def test_missing_length_scale(self, serial_comm):
        with pytest.raises(ConfigurationError, match="L"):
            make_generator(serial_comm, boundary_data={'U': 1.0, 'R': R_TEST})

    def test_bad_dt(self, serial_comm):
        with pytest.raises(ConfigurationError):
            make_generator(serial_comm).compute_fluctuation(0.1, 0.0)


class TestDFSEMGenerator:
    def test_eddy_box(self, serial_comm):
        gen = make_generator(serial_comm, method='dfsem')
        assert gen.sigma_max == pytest.approx(0.1)
        assert gen.v0 == pytest.approx(0.2)
        # density 1: box volume over the volume of one eddy
        assert gen.n_eddy_global == 25
        assert len(gen.field) == 25
        assert np.allclose(gen.U_convect, [10.0, 0.0, 0.0])

    def test_minimum_eddy_size(self, serial_comm):
        gen = make_generator(serial_comm, method='dfsem', n_cell_per_eddy=3)
        assert np.allclose(gen.sigma, 3.0 / 16.0)

    def test_default_length_scale(self, serial_comm):
        gen = make_generator(serial_comm, method='dfsem', delta=0.5, boundary_data={'U': 10.0, 'R': R_TEST})
        assert np.allclose(gen.sigma, 0.41 * 0.5)

    def test_end_to_end_statistics(self, serial_comm):
        gen = make_generator(serial_comm, method='dfsem', n_eddy=400, periodic_y=True, periodic_z=True)
        samples = run(gen, 3000, 0.002)
        assert_covariance(samples, rel=0.06)

    def test_statistics_on_stretched_faces(self, serial_comm):
        # faces 16 times wider along y than along z
        gen = make_generator(
            serial_comm,
            shape=(4, 64),
            method='dfsem',
            n_eddy=400,
            periodic_y=True,
            periodic_z=True,
            boundary_data={'U': 10.0, 'R': R_TEST, 'L': 0.05},
        )
        assert np.allclose(gen.patch.half_widths, [0.125, 1.0 / 128.0])
        samples = run(gen, 3000, 0.002)
        assert_covariance(samples, rel=0.06)

    def test_restart_fidelity(self, serial_comm, tmp_path):
        a = make_generator(serial_comm, method='dfsem', n_eddy=50)
        run(a, 5, 0.005)
        RestartFile(tmp_path / "restart", 0).write(a.serialize_state(), a.time, 5)

        b = make_generator(serial_comm, method='dfsem', n_eddy=50, seed=1)
        state, t, step = RestartFile(tmp_path / "restart", 0).read()
        b.restore_state(state)
        assert (t, step) == (a.time, 5)
        assert b.time == a.time
        # the restored step is served from the saved field
        assert np.array_equal(b.compute_fluctuation(t, 0.005), a.compute_fluctuation(t, 0.005))
        assert np.array_equal(run(b, 5, 0.005, t0=t), run(a, 5, 0.005, t0=t))

    def test_restore_incomplete_state(self, serial_comm):
        state = make_generator(serial_comm, method='dfsem', n_eddy=10).serialize_state()
        del state['eddies']
        with pytest.raises(ConfigurationError, match="eddies"):
            make_generator(serial_comm, method='dfsem', n_eddy=10).restore_state(state)

    def test_restore_other_method(self, serial_comm):
        state = make_generator(serial_comm).serialize_state()
        with pytest.raises(ConfigurationError):
            make_generator(serial_comm, method='dfsem').restore_state(state)

    def test_eddy_count_invariant_parallel(self, parallel):
        def steps(comm):
            gen = make_generator(comm, method='dfsem', n_eddy=90)
            counts = []
            for i in range(20):
                gen.compute_fluctuation((i + 1) * 0.004, 0.004)
                pos = gen.field.eddies['position']
                assert np.all(pos >= gen.field.bounds[0]) and np.all(pos <= gen.field.bounds[1])
                counts.append(len(gen.field))
            return counts

        counts = np.array(parallel(3, steps))
        assert np.all(counts.sum(axis=0) == 90)
        assert counts[:, 0].tolist() == [34, 28, 28]

    def test_exchange_matches_gathered_eddies(self, parallel):
        def step(comm):
            gen = make_generator(comm, method='dfsem', n_eddy=120, periodic_z=True)
            for i in range(3):
                fluct = gen.compute_fluctuation((i + 1) * 0.005, 0.005)
            everything = np.concatenate(comm.allgather(gen.field.eddies))
            u = u_dash(everything, gen.points, gen.v0, gen.n_eddy_global, gen.shifts)
            return fluct, apply_lund(gen.lund, u)

        for fluct, reference in parallel(3, step):
            assert np.allclose(fluct, reference)
