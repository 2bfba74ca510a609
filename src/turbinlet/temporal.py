import numpy as np
from .errors import ConfigurationError
from .utils import clamp_min


# smallest convective velocity magnitude used for the temporal scale
U_FLOOR = 1e-8


class TemporalCorrelator:
    """
    Recursive temporal filter of Xie & Castro (2008).

    The new field is u_new = a u_old + b r_new with a = exp(-pi dt / (2 T)) and
    b = sqrt(1 - a^2), where T = Lx / |U| is the temporal integral scale of every face and
    velocity component. Since a^2 + b^2 = 1, a unit-variance input stream stays unit variance.

    Parameters
    ----------
    Lx : ndarray
        Streamwise integral length scale per face and component, shape (n, 3).
    U : ndarray
        Mean convective velocity magnitude per face, shape (n,).
    """

    def __init__(self, Lx: np.ndarray, U: np.ndarray):
        self.Lx = np.asarray(Lx, dtype=np.float64).reshape(-1, 3)
        if np.any(self.Lx <= 0):
            raise ConfigurationError("L: streamwise integral length scales must be positive.")

        U = np.abs(np.asarray(U, dtype=np.float64).ravel())
        if len(U) != len(self.Lx):
            raise ConfigurationError(f"TemporalCorrelator: {len(U)} velocities for {len(self.Lx)} faces.")
        self.U = clamp_min(U, U_FLOOR, "TemporalCorrelator: mean velocity magnitude")

        self.T = self.Lx / self.U[:, np.newaxis]
        self.u_old = None

    def coefficients(self, dt: float) -> tuple[np.ndarray, np.ndarray]:
        if dt <= 0:
            raise ConfigurationError(f"dt: time step must be positive, got {dt}.")
        a = np.exp(-0.5 * np.pi * dt / self.T)
        b = np.sqrt(1.0 - a**2)
        return a, b

    def correlate(self, r_new: np.ndarray, dt: float) -> np.ndarray:
        """
        Blend the new spatially correlated sample with the previous field.

        On the first call there is no previous field; the sample itself becomes the state.
        """
        r_new = np.asarray(r_new, dtype=np.float64)

        if self.u_old is None:
            self.u_old = r_new.copy()
            return self.u_old.copy()

        a, b = self.coefficients(dt)
        self.u_old = a * self.u_old + b * r_new
        return self.u_old.copy()

    def state(self) -> dict:
        return {'initialised': self.u_old is not None, 'u_old': self.u_old}

    def set_state(self, state: dict):
        if not state.get('initialised', False):
            self.u_old = None
            return

        u_old = np.asarray(state['u_old'], dtype=np.float64)
        if u_old.shape != self.Lx.shape:
            raise ConfigurationError(
                f"TemporalCorrelator.set_state: restart field has shape {u_old.shape}, expected {self.Lx.shape}."
            )
        self.u_old = u_old.copy()
