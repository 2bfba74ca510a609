"""
Lund transform: map isotropic unit-variance fluctuations onto fluctuations with a prescribed
Reynolds stress tensor.

Reference:
    T. S. Lund, X. Wu, K. D. Squires,
    "Generation of turbulent inflow data for spatially-developing boundary layer simulations",
    Journal of Computational Physics, (1998) 140:233-258

Symmetric tensors are stored in the (xx, xy, xz, yy, yz, zz) component order.
"""

import numpy as np
from .errors import NumericalError


SYMM_INDEX = ((0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2))

_ROUNDOFF = 1e-12


def as_symm_tensor(R) -> np.ndarray:
    """Return R as an array of shape (n, 6), accepting (6,), (n, 6), (3, 3) or (n, 3, 3)."""
    R = np.asarray(R, dtype=np.float64)

    if R.shape == (6,) or R.shape == (3, 3):
        R = R[np.newaxis]

    if R.ndim == 2 and R.shape[1] == 6:
        return R.copy()
    if R.ndim == 3 and R.shape[1:] == (3, 3):
        if not np.allclose(R, np.swapaxes(R, 1, 2)):
            raise NumericalError("as_symm_tensor: Reynolds stress tensor is not symmetric.")
        return np.stack([R[:, i, j] for i, j in SYMM_INDEX], axis=1)

    raise NumericalError(f"as_symm_tensor: unsupported Reynolds stress shape {R.shape}.")


def symm_to_full(R) -> np.ndarray:
    """Expand (n, 6) symmetric tensors into (n, 3, 3) arrays."""
    R = as_symm_tensor(R)
    full = np.empty((R.shape[0], 3, 3))
    for c, (i, j) in enumerate(SYMM_INDEX):
        full[:, i, j] = R[:, c]
        full[:, j, i] = R[:, c]
    return full


def check_stresses(R) -> bool:
    """Return True if every tensor admits a real Lund decomposition."""
    try:
        lund_coefficients(R)
    except NumericalError:
        return False
    return True


def lund_coefficients(R) -> np.ndarray:
    """
    Closed-form lower-triangular factor L of every tensor R, such that L L^T = R.

    Parameters
    ----------
    R : array_like
        Reynolds stress tensors, (n, 6) or (n, 3, 3).

    Returns
    -------
    ndarray
        Lund coefficient tensors of shape (n, 3, 3).

    Raises
    ------
    NumericalError
        If a diagonal component is non-positive or a tensor is not positive semi-definite.
        The offending face indices are reported.
    """
    R = as_symm_tensor(R)
    xx, xy, xz, yy, yz, zz = R.T

    tol = _ROUNDOFF * np.maximum(np.abs(R).max(axis=1), 1.0)

    bad = np.flatnonzero((xx <= 0) | (yy <= 0) | (zz <= 0))
    if bad.size:
        raise NumericalError(
            f"lund_coefficients: non-positive diagonal Reynolds stress at face(s) {bad[:10].tolist()}."
        )

    L = np.zeros((R.shape[0], 3, 3))

    L11 = np.sqrt(xx)
    L21 = xy / L11
    L31 = xz / L11

    r22 = yy - L21**2
    _check_radicand(r22, tol, "R_yy - L21^2")
    L22 = np.sqrt(np.maximum(r22, 0.0))

    num32 = yz - L21 * L31
    degenerate = L22 <= np.sqrt(tol)
    bad = np.flatnonzero(degenerate & (np.abs(num32) > np.sqrt(tol)))
    if bad.size:
        raise NumericalError(
            f"lund_coefficients: Reynolds stress is not positive semi-definite at face(s) {bad[:10].tolist()}."
        )
    L32 = np.where(degenerate, 0.0, num32 / np.where(degenerate, 1.0, L22))

    r33 = zz - L31**2 - L32**2
    _check_radicand(r33, tol, "R_zz - L31^2 - L32^2")
    L33 = np.sqrt(np.maximum(r33, 0.0))

    L[:, 0, 0] = L11
    L[:, 1, 0] = L21
    L[:, 1, 1] = L22
    L[:, 2, 0] = L31
    L[:, 2, 1] = L32
    L[:, 2, 2] = L33

    return L


def _check_radicand(value, tol, label):
    bad = np.flatnonzero(value < -tol)
    if bad.size:
        raise NumericalError(
            f"lund_coefficients: negative radicand ({label}) at face(s) {bad[:10].tolist()}, "
            "Reynolds stress is not positive semi-definite."
        )


def apply_lund(L: np.ndarray, u: np.ndarray) -> np.ndarray:
    """Per-face product L u, with L of shape (n, 3, 3) and u of shape (n, 3)."""
    return np.einsum('fij,fj->fi', L, u)
