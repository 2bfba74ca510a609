"""
Boundary data computed from a profile description instead of tabulated data.

Every field of `Params.boundary_data` is either a plain value (broadcast to all faces) or a
dictionary with a 'type':

    {"type": "uniform", "value": ...}
    {"type": "channel", "U_bulk": 10.0, "intensity": 0.05, "wall_axis": "z"}

The channel profiles assume walls at both ends of the patch along `wall_axis`: a 1/7th
power-law mean velocity along the patch normal, Reynolds stresses from a turbulence intensity
that grows towards the walls, and the mixing length min(kappa d, 0.09 delta) as length scale.
"""

import numpy as np
from .errors import ConfigurationError
from .utils import clamp_min


PROFILE_TYPES = ('uniform', 'channel')

# normal stress ratios (streamwise, wall-normal, spanwise) of a channel flow
CHANNEL_STRESS_RATIO = np.array([1.0, 0.6, 0.75])


def _wall_distance(patch, spec: dict) -> tuple[np.ndarray, np.ndarray, float]:
    axis = {'y': 1, 'z': 2}.get(spec.get('wall_axis', 'z'))
    if axis is None:
        raise ConfigurationError(f"wall_axis: must be 'y' or 'z', got {spec.get('wall_axis')}.")
    lo, hi = patch.bounds[0, axis], patch.bounds[1, axis]
    s = patch.points[:, axis]
    h = hi - lo
    d = np.minimum(s - lo, hi - s)
    # +1 below the channel centre, -1 above
    side = np.where(s - lo < hi - s, 1.0, -1.0)
    return np.clip(d, 0.0, None), side, h


def _broadcast(field: str, value, n: int) -> np.ndarray:
    value = np.asarray(value, dtype=np.float64)
    shapes = {
        'U': [(), (3,)],
        'R': [(6,), (3, 3)],
        'L': [(), (3, 3)],
    }
    if value.shape in shapes[field]:
        return np.broadcast_to(value, (n,) + value.shape).copy()
    if value.ndim >= 1 and len(value) == n and value.shape[1:] in shapes[field]:
        return value.copy()
    raise ConfigurationError(f"{field}: unsupported value of shape {value.shape} for {n} faces.")


def channel_profile(field: str, spec: dict, patch, delta: float, kappa: float) -> np.ndarray:
    """Channel flow profile of `field` ('U', 'R' or 'L') at the local faces."""
    if 'U_bulk' not in spec:
        raise ConfigurationError(f"{field}: channel profile needs 'U_bulk'.")
    U_bulk = float(spec['U_bulk'])
    d, side, h = _wall_distance(patch, spec)
    eta = np.clip(2.0 * d / h, 0.0, 1.0)

    if field == 'U':
        U = 8.0 / 7.0 * U_bulk * eta**(1.0 / 7.0)
        return U[:, np.newaxis] * patch.normal

    if field == 'L':
        L = np.minimum(kappa * d, 0.09 * delta)
        return clamp_min(L, 1e-3 * delta, "channel_profile: length scale")

    if field == 'R':
        intensity = float(spec.get('intensity', 0.05))
        if intensity <= 0:
            raise ConfigurationError(f"intensity: must be positive, got {intensity}.")
        axis = {'y': 1, 'z': 2}[spec.get('wall_axis', 'z')]

        rms = intensity * U_bulk * (1.5 - 0.5 * eta)
        ratio = np.empty(3)
        ratio[0], ratio[axis], ratio[3 - axis] = CHANNEL_STRESS_RATIO
        sigma = rms[:, np.newaxis] * np.sqrt(ratio)

        R_local = np.zeros((len(d), 3, 3))
        for i in range(3):
            R_local[:, i, i] = sigma[:, i]**2
        # shear stress between the streamwise and wall-normal components, zero at the centre
        uv = -0.4 * side * (1.0 - eta) * sigma[:, 0] * sigma[:, axis]
        R_local[:, 0, axis] = R_local[:, axis, 0] = uv

        R = np.einsum('ai,fab,bj->fij', patch.axes, R_local, patch.axes)
        return np.stack([R[:, 0, 0], R[:, 0, 1], R[:, 0, 2], R[:, 1, 1], R[:, 1, 2], R[:, 2, 2]], axis=1)

    raise ConfigurationError(f"channel_profile: unknown field '{field}'.")


def calculate_boundary_data(field: str, spec, patch, delta: float, kappa: float) -> np.ndarray:
    """
    Boundary data of `field` at the local faces from a value or a profile description.
    """
    n = patch.n_faces

    if not isinstance(spec, dict):
        return _broadcast(field, spec, n)

    kind = spec.get('type', 'uniform')
    if kind not in PROFILE_TYPES:
        raise ConfigurationError(f"{field}: unknown profile type '{kind}'. Options are {PROFILE_TYPES}.")

    if kind == 'uniform':
        if 'value' not in spec:
            raise ConfigurationError(f"{field}: uniform profile needs a 'value'.")
        return _broadcast(field, spec['value'], n)

    return channel_profile(field, spec, patch, delta, kappa)
