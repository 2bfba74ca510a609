import numpy as np
from .errors import ConfigurationError, ParallelConsistencyError
from .utils import distribute_indices


class InletPatch:
    """
    Geometry of the local partition of an inlet patch.

    All generators work in the local patch frame: x along the inward patch normal, y and z
    tangential to the patch, with the origin on the patch plane.

    Parameters
    ----------
    comm : Communicator
        Communicator of the patch.
    face_centres : ndarray
        Centres of the local faces, shape (n, 3).
    face_areas : ndarray
        Areas of the local faces, shape (n,).
    normal : array_like
        Patch normal pointing into the domain.
    periodic : tuple of bool, optional
        Periodicity along the local y and z axes. Default is (False, False).
    bounds : array_like, optional
        Lateral extent of the whole patch [[ymin, zmin], [ymax, zmax]] in the local frame.
        By default it is estimated from the face centres grown by half a face width.
    origin : array_like, optional
        Origin of the local frame. Default is the area-weighted patch centroid.
    face_widths : ndarray, optional
        Extent of every local face along the local y and z axes, shape (n, 2). By default the
        faces are taken as squares, sqrt(area) wide.
    """

    def __init__(
        self,
        comm,
        face_centres: np.ndarray,
        face_areas: np.ndarray,
        normal,
        periodic: tuple = (False, False),
        bounds=None,
        origin=None,
        face_widths=None
    ):
        self.comm = comm
        self.rank = comm.rank
        self.size = comm.size

        self.face_centres = np.asarray(face_centres, dtype=np.float64).reshape(-1, 3)
        self.face_areas = np.asarray(face_areas, dtype=np.float64).ravel()
        self.n_faces = len(self.face_centres)

        if len(self.face_areas) != self.n_faces:
            raise ConfigurationError(
                f"[Rank {self.rank}] InletPatch: {self.n_faces} face centres but {len(self.face_areas)} face areas."
            )
        if np.any(self.face_areas <= 0):
            raise ConfigurationError(f"[Rank {self.rank}] InletPatch: face areas must be positive.")

        normal = np.asarray(normal, dtype=np.float64)
        if np.linalg.norm(normal) == 0:
            raise ConfigurationError("InletPatch: patch normal must be non-zero.")
        self.normal = normal / np.linalg.norm(normal)
        self.axes = self._local_axes(self.normal)

        self.n_faces_global = comm.allreduce(self.n_faces, op='sum')
        self.area = comm.allreduce(float(self.face_areas.sum()), op='sum')
        if self.n_faces_global == 0 or self.area <= 0:
            raise ConfigurationError("InletPatch: the patch has no faces.")

        if origin is None:
            weighted = comm.allreduce((self.face_centres * self.face_areas[:, np.newaxis]).sum(axis=0), op='sum')
            origin = weighted / self.area
        self.origin = np.asarray(origin, dtype=np.float64)

        self.points = self.to_local(self.face_centres)
        if face_widths is None:
            face_widths = np.repeat(np.sqrt(self.face_areas)[:, np.newaxis], 2, axis=1)
        face_widths = np.asarray(face_widths, dtype=np.float64).reshape(-1, 2)
        if len(face_widths) != self.n_faces or np.any(face_widths <= 0):
            raise ConfigurationError(
                f"[Rank {self.rank}] InletPatch: face widths must be positive, one (y, z) pair per face."
            )
        self.half_widths = 0.5 * face_widths

        # extent of the faces themselves, not only of their centres
        self.local_bounds = None
        if self.n_faces:
            extent = np.column_stack([np.zeros(self.n_faces), self.half_widths])
            self.local_bounds = np.array([
                (self.points - extent).min(axis=0),
                (self.points + extent).max(axis=0),
            ])

        self.bounds = self._global_bounds(bounds)
        self.span = self.bounds[1] - self.bounds[0]
        self.periodic = np.array([False, bool(periodic[0]), bool(periodic[1])])

        if np.any(self.span[self.periodic] <= 0):
            raise ConfigurationError("InletPatch: periodic directions need a positive patch span.")

    def __repr__(self):
        return f"<InletPatch rank={self.rank} n_faces={self.n_faces} area={self.area:.4e} bounds={self.bounds.tolist()}>"

    @staticmethod
    def _local_axes(normal: np.ndarray) -> np.ndarray:
        """Rows are the local x (normal), y and z axes."""
        ref = np.zeros(3)
        ref[np.argmin(np.abs(normal))] = 1.0
        ey = ref - np.dot(ref, normal) * normal
        ey /= np.linalg.norm(ey)
        ez = np.cross(normal, ey)
        return np.array([normal, ey, ez])

    def _global_bounds(self, bounds) -> np.ndarray:
        if self.local_bounds is not None:
            lo, hi = self.local_bounds
        else:
            lo, hi = np.full(3, np.inf), np.full(3, -np.inf)
        lo = self.comm.allreduce(lo, op='min')
        hi = self.comm.allreduce(hi, op='max')

        if bounds is not None:
            bounds = np.asarray(bounds, dtype=np.float64)
            if bounds.shape != (2, 2) or np.any(bounds[1] < bounds[0]):
                raise ConfigurationError(f"InletPatch: invalid lateral bounds {bounds.tolist()}.")
            lo[1:], hi[1:] = bounds[0], bounds[1]

        lo[0] = hi[0] = 0.0
        if not np.all(np.isfinite(lo)) or not np.all(np.isfinite(hi)):
            raise ParallelConsistencyError("InletPatch: inconsistent patch partition bounds.")
        return np.array([lo, hi])

    @property
    def diagonal(self) -> float:
        """Length of the diagonal of the patch bounding box."""
        return float(np.linalg.norm(self.span))

    def to_local(self, points: np.ndarray) -> np.ndarray:
        """Global coordinates to the local patch frame."""
        return (np.asarray(points, dtype=np.float64) - self.origin) @ self.axes.T

    def to_global(self, points: np.ndarray) -> np.ndarray:
        return np.asarray(points, dtype=np.float64) @ self.axes + self.origin

    def to_local_vector(self, v: np.ndarray) -> np.ndarray:
        return np.asarray(v, dtype=np.float64) @ self.axes.T

    def to_global_vector(self, v: np.ndarray) -> np.ndarray:
        return np.asarray(v, dtype=np.float64) @ self.axes

    def jittered_points(self, rng, perturb: float) -> np.ndarray:
        """
        Local face centres displaced laterally by up to perturb times the bounding-box
        diagonal, to break the symmetry of regular patches.
        """
        points = self.points.copy()
        if perturb > 0 and self.n_faces:
            points[:, 1:] += perturb * self.diagonal * rng.uniform(-1.0, 1.0, (self.n_faces, 2))
        return points

    @classmethod
    def rectangle(
        cls,
        comm,
        width: tuple = (1.0, 1.0),
        shape: tuple = (16, 16),
        origin=(0.0, 0.0, 0.0),
        normal=(1.0, 0.0, 0.0),
        periodic: tuple = (False, False)
    ):
        """
        Structured rectangular patch of shape[0] x shape[1] faces, with its corner at `origin`.

        The rows along z are split into contiguous blocks, one per process.
        """
        ly, lz = width
        ny, nz = shape
        if ny < 1 or nz < 1 or ly <= 0 or lz <= 0:
            raise ConfigurationError(f"InletPatch.rectangle: invalid width {width} or shape {shape}.")

        normal = np.asarray(normal, dtype=np.float64)
        normal /= np.linalg.norm(normal)
        ex, ey, ez = cls._local_axes(normal)

        start, stop = distribute_indices(nz, comm.rank, comm.size)
        dy, dz = ly / ny, lz / nz
        y = (np.arange(ny) + 0.5) * dy
        z = (np.arange(start, stop) + 0.5) * dz
        Y, Z = np.meshgrid(y, z, indexing='ij')

        corner = np.asarray(origin, dtype=np.float64)
        centres = corner + Y.reshape(-1, 1) * ey + Z.reshape(-1, 1) * ez
        areas = np.full(len(centres), dy * dz)
        widths = np.tile([dy, dz], (len(centres), 1))

        return cls(
            comm,
            centres,
            areas,
            normal,
            periodic=periodic,
            bounds=[[0.0, 0.0], [ly, lz]],
            origin=corner,
            face_widths=widths
        )
