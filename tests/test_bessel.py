import numpy as np
import pytest
from turbinlet.bessel import bessel_i0, bessel_k0
from turbinlet.errors import NumericalError


class TestBessel:
    def test_i0_values(self):
        assert bessel_i0(0.0) == pytest.approx(1.0)
        assert bessel_i0(1.0) == pytest.approx(1.2660658777520082)
        assert bessel_i0(-1.0) == pytest.approx(bessel_i0(1.0))

    def test_k0_values(self):
        assert bessel_k0(1.0) == pytest.approx(0.42102443824070834)
        assert bessel_k0(np.array([0.5, 2.0])) == pytest.approx([0.9244190712276659, 0.11389387274953344])

    def test_k0_decreasing(self):
        x = np.linspace(0.1, 10.0, 50)
        assert np.all(np.diff(bessel_k0(x)) < 0)

    @pytest.mark.parametrize("x", [0.0, -1.0, np.inf, np.nan])
    def test_k0_out_of_range(self, x):
        with pytest.raises(NumericalError):
            bessel_k0(x)

    def test_i0_not_finite(self):
        with pytest.raises(NumericalError):
            bessel_i0(np.nan)
