import numpy as np
from scipy.spatial import cKDTree, Delaunay
from .errors import ConfigurationError
from .io import MAP_METHODS


class BoundaryDataMapper:
    """
    Mapping of tabulated boundary data onto the faces of the local patch partition.

    The interpolation stencil (three sample indices and weights per face) is built on first
    use and is immutable afterwards.

    Parameters
    ----------
    sample_points : ndarray
        Global coordinates of the tabulated data, shape (m, 3).
    patch : InletPatch
        Inlet patch.
    map_method : str
        'nearestCell' takes the value of the closest sample point. 'planarInterpolation'
        interpolates linearly on a Delaunay triangulation of the samples projected onto the
        patch plane, falling back to the closest sample outside the triangulation.
    face_points : ndarray, optional
        Local face centres to map onto (e.g. jittered). Default is patch.points.
    """

    def __init__(self, sample_points: np.ndarray, patch, map_method: str = 'nearestCell', face_points=None):
        if map_method not in MAP_METHODS:
            raise ConfigurationError(f"map_method: unknown mapping '{map_method}'. Options are {MAP_METHODS}.")

        self.sample_points = np.asarray(sample_points, dtype=np.float64).reshape(-1, 3)
        if len(self.sample_points) == 0:
            raise ConfigurationError("boundary_data_file: no sample points.")

        self.patch = patch
        self.map_method = map_method
        self.face_points = patch.points if face_points is None else np.asarray(face_points)
        self._stencil = None

    def _build(self):
        samples = self.patch.to_local(self.sample_points)[:, 1:]
        faces = self.face_points[:, 1:]
        n = len(faces)

        _, nearest = cKDTree(samples).query(faces) if n else (None, np.empty(0, dtype=np.int64))
        vertices = np.repeat(np.asarray(nearest, dtype=np.int64)[:, np.newaxis], 3, axis=1)
        weights = np.zeros((n, 3))
        weights[:, 0] = 1.0

        if self.map_method == 'planarInterpolation' and len(samples) >= 3 and n:
            tri = Delaunay(samples)
            simplex = tri.find_simplex(faces)
            inside = simplex >= 0

            T = tri.transform[simplex[inside]]
            b = np.einsum('fij,fj->fi', T[:, :2], faces[inside] - T[:, 2])
            weights[inside] = np.column_stack([b, 1.0 - b.sum(axis=1)])
            vertices[inside] = tri.simplices[simplex[inside]]

        vertices.setflags(write=False)
        weights.setflags(write=False)
        self._stencil = (vertices, weights)

    @property
    def stencil(self) -> tuple[np.ndarray, np.ndarray]:
        if self._stencil is None:
            self._build()
        return self._stencil

    def map(self, values: np.ndarray) -> np.ndarray:
        """Values at the sample points, shape (m, ...), mapped onto the faces, shape (n, ...)."""
        values = np.asarray(values, dtype=np.float64)
        if len(values) != len(self.sample_points):
            raise ConfigurationError(
                f"BoundaryDataMapper.map: {len(values)} values for {len(self.sample_points)} sample points."
            )
        vertices, weights = self.stencil
        flat = values.reshape(len(values), -1)
        mapped = np.einsum('fk,fkc->fc', weights, flat[vertices])
        return mapped.reshape((len(self.face_points),) + values.shape[1:])
