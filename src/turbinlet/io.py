from pathlib import Path
import numpy as np
import h5py
import json
from turbinlet import logger
from .errors import ConfigurationError


METHODS = ('dfm', 'dfsem', 'mean')
MAP_METHODS = ('nearestCell', 'planarInterpolation')


class Params:
    def __init__(self, json_file='input.json'):
        self._load_json(json_file)
        self._check_compatibility()

    def __repr__(self):
        return f"<Params {self.__dict__}>"

    @classmethod
    def from_dict(cls, data: dict):
        """Build parameters from a dictionary instead of a JSON file."""
        params = cls.__new__(cls)
        params._read_params(data)
        params._check_compatibility()
        return params

    def _load_json(self, json_file):
        """Load JSON file and set attributes."""
        try:
            with open(json_file, 'r') as file:
                data = json.load(file)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Error reading JSON file {json_file}: {e}")
        self._read_params(data)

    def _read_params(self, data):
        defaults = {
            'method': 'dfm',
            'map_method': 'nearestCell',
            'perturb': 1e-5,
            'seed': 1234,
            'dt': 1e-3,
            'end_time': 1.0,
            'delta': 1.0,
            'kappa': 0.41,
            'density': 1.0,
            'n_cell_per_eddy': 1,
            'n_eddy': None,
            'eddy_scale': 'isotropic',
            'grid_factor': 1.0,
            'filter_type': 'gaussian',
            'filter_width_ratio': 2,
            'reuse_random_grid': False,
            'periodic_y': False,
            'periodic_z': False,
            'optimization': True,
            'verbose': False,
            'check_interval': np.iinfo(np.int64).max,
            'boundary_data': {},
            'boundary_data_file': None,
            'restart': False,
            'clean_restart': False,
            'write_restart': False,
            'restart_name': 'restart',
            'restart_interval': np.iinfo(np.int64).max,
            'probe_faces': [],
            'probe_name': 'probes',
        }

        unknown = set(data) - set(defaults)
        if unknown:
            raise ConfigurationError(f"Invalid parameter(s): {sorted(unknown)}")

        for key, default in defaults.items():
            setattr(self, key, data.get(key, default))

    def _check_compatibility(self):
        """Check values and compatibility between related parameters."""
        if self.method not in METHODS:
            raise ConfigurationError(f"method: unknown inflow method '{self.method}'. Options are {METHODS}.")
        if self.map_method not in MAP_METHODS:
            raise ConfigurationError(f"map_method: unknown mapping '{self.map_method}'. Options are {MAP_METHODS}.")
        if not 0.0 <= self.perturb < 1.0:
            raise ConfigurationError(f"perturb: must be in [0, 1), got {self.perturb}.")
        if self.seed < 0:
            raise ConfigurationError(f"seed: must be non-negative, got {self.seed}.")

        for key in ('dt', 'end_time', 'delta', 'density', 'grid_factor', 'kappa'):
            if getattr(self, key) <= 0:
                raise ConfigurationError(f"{key}: must be positive, got {getattr(self, key)}.")

        if self.n_cell_per_eddy < 1:
            raise ConfigurationError(f"n_cell_per_eddy: must be >= 1, got {self.n_cell_per_eddy}.")
        if self.n_eddy is not None and self.n_eddy < 1:
            raise ConfigurationError(f"n_eddy: must be >= 1, got {self.n_eddy}.")
        if self.filter_width_ratio < 1:
            raise ConfigurationError(f"filter_width_ratio: must be >= 1, got {self.filter_width_ratio}.")

        if self.method != 'mean' and 'R' not in self.boundary_data and self.boundary_data_file is None:
            raise ConfigurationError("R: Reynolds stress data is required for the turbulent inflow methods.")

    def print(self):
        """Print the parameters in a human-readable format."""
        import pprint
        pprint.pprint(self.__dict__)

    def update(self, params):
        """Update parameters from a dictionary."""
        for key, value in params.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise ConfigurationError(f"Invalid parameter: {key}")
        self._check_compatibility()

    def docs(self):
        """Print documentation for all parameters."""
        docs = {
            "method": "Inflow method. Options: 'dfm', 'dfsem', 'mean'.",
            "map_method": "Mapping of tabulated boundary data onto faces. Options: 'nearestCell', 'planarInterpolation'.",
            "perturb": "Lateral jitter of the face centres as a fraction of the patch bounding-box diagonal.",
            "seed": "Base seed of the random streams; the process rank is added per process.",
            "dt": "Time step.",
            "end_time": "End time of the inflow generation.",
            "delta": "Characteristic length scale, e.g. half channel height.",
            "kappa": "Von Karman constant.",
            "density": "Ratio of the summed eddy volumes to the eddy box volume (DFSEM).",
            "n_cell_per_eddy": "Minimum number of faces across an eddy (DFSEM).",
            "n_eddy": "Global number of eddies; overrides 'density' when given (DFSEM).",
            "eddy_scale": "Eddy length scale vector. Options: 'isotropic', 'anisotropic' (DFSEM).",
            "grid_factor": "Ratio of virtual grid spacing to mesh size (DFM).",
            "filter_type": "Digital filter. Options: 'gaussian', 'exponential' (DFM).",
            "filter_width_ratio": "Filter half width to length scale ratio (DFM).",
            "reuse_random_grid": "Draw the virtual grid random field once and reuse it (DFM).",
            "periodic_y": "Patch is periodic along its local y axis.",
            "periodic_z": "Patch is periodic along its local z axis.",
            "optimization": "Enable or disable numba-jit kernels.",
            "verbose": "Enable or disable verbose output.",
            "check_interval": "Interval for printing timing information.",
            "boundary_data": "Mean velocity 'U', Reynolds stress 'R' and length scale 'L' values or profiles.",
            "boundary_data_file": "HDF5 file with tabulated 'points' and 'U', 'R', 'L' data.",
            "restart": "Resume from the restart files.",
            "clean_restart": "Ignore restart files and reseed from the configured seed.",
            "write_restart": "Write restart data to file.",
            "restart_name": "Name of the restart files.",
            "restart_interval": "Interval for writing restart data.",
            "probe_faces": "Global face indices whose velocity time series is written.",
            "probe_name": "Prefix of the probe files.",
        }
        for key, doc in docs.items():
            print(f"{key}: {doc}")


class RestartFile:
    """
    Restart state of one process.

    The state dictionary of a generator is stored in `<name>_p<rank>.h5`: arrays as datasets,
    scalars as attributes, nested dictionaries (random generator states) as JSON attributes.
    """

    def __init__(self, name: str, rank: int):
        name = str(name)
        if name.endswith('.h5'):
            name = name[:-3]
        self.path = Path(f"{name}_p{rank}.h5")
        self.rank = rank

    def exists(self) -> bool:
        return self.path.is_file()

    def write(self, state: dict, t: float, step: int):
        with h5py.File(self.path, 'w') as f:
            f.attrs['t'] = t
            f.attrs['step'] = step
            none_keys = []
            for key, value in state.items():
                if value is None:
                    none_keys.append(key)
                elif isinstance(value, dict):
                    f.attrs[f"json:{key}"] = json.dumps(value)
                elif isinstance(value, np.ndarray):
                    f.create_dataset(key, data=value)
                else:
                    f.attrs[key] = value
            f.attrs['none_keys'] = json.dumps(none_keys)

        logger.debug(f"[Rank {self.rank}] RestartFile: wrote {self.path} at step {step}")

    def read(self) -> tuple[dict, float, int]:
        if not self.exists():
            raise ConfigurationError(f"restart: restart file '{self.path}' does not exist.")

        try:
            return self._read()
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"restart: cannot read restart file '{self.path}': {e}") from e

    def _read(self) -> tuple[dict, float, int]:
        state = {}
        with h5py.File(self.path, 'r') as f:
            for attr in ('t', 'step', 'none_keys'):
                if attr not in f.attrs:
                    raise ConfigurationError(f"restart: missing required attribute '{attr}' in {self.path}.")
            t = float(f.attrs['t'])
            step = int(f.attrs['step'])

            for key in f:
                state[key] = f[key][()]
            for key, value in f.attrs.items():
                if key.startswith('json:'):
                    state[key[5:]] = json.loads(value)
                elif key not in ('t', 'step', 'none_keys'):
                    state[key] = value.item() if isinstance(value, np.generic) else value
            for key in json.loads(f.attrs['none_keys']):
                state[key] = None

        return state, t, step


def read_boundary_data(file_name) -> dict:
    """
    Tabulated boundary data: 'points' (m, 3) and any of 'U' (m, 3) or (m,), 'R' (m, 6) and
    'L' (m,) or (m, 3, 3).
    """
    path = Path(file_name)
    if not path.is_file():
        raise ConfigurationError(f"boundary_data_file: '{path}' does not exist.")

    try:
        with h5py.File(path, 'r') as f:
            if 'points' not in f:
                raise ConfigurationError(f"boundary_data_file: '{path}' has no 'points' dataset.")
            data = {key: f[key][()] for key in ('points', 'U', 'R', 'L') if key in f}
    except OSError as e:
        raise ConfigurationError(f"boundary_data_file: cannot read '{path}': {e}") from e

    n = len(data['points'])
    for key, value in data.items():
        if len(value) != n:
            raise ConfigurationError(f"boundary_data_file: '{key}' has {len(value)} entries, expected {n}.")
    return data


class FaceProbeWriter:
    """
    Velocity time series of selected faces, one text file per face.

    Each file starts with a commented header of tab-separated key/value lines, followed by
    tab-separated rows (time, Ux, Uy, Uz), one per update.

    Parameters
    ----------
    name : str
        File prefix; files are named `<name>_face<index>.dat`.
    faces : list of int
        Local indices of the probed faces.
    global_ids : list of int
        Global indices of the same faces, used in the file names.
    header : dict
        Run metadata written to the header.
    centres : ndarray
        Face centres of the probed faces.
    """

    def __init__(self, name: str, faces, global_ids, header: dict, centres: np.ndarray):
        self.faces = np.asarray(faces, dtype=np.int64)
        self.global_ids = list(global_ids)
        self.paths = [Path(f"{name}_face{gid}.dat") for gid in self.global_ids]
        self._files = []

        for path, gid, centre in zip(self.paths, self.global_ids, centres):
            path.parent.mkdir(parents=True, exist_ok=True)
            f = open(path, 'w')
            for key, value in header.items():
                f.write(f"# {key}\t{value}\n")
            f.write(f"# Face\t{gid}\n")
            f.write(f"# Centre\t({centre[0]:.6e} {centre[1]:.6e} {centre[2]:.6e})\n")
            f.write("# Time\tUx\tUy\tUz\n")
            self._files.append(f)

    def write(self, t: float, U: np.ndarray):
        for f, face in zip(self._files, self.faces):
            ux, uy, uz = U[face]
            f.write(f"{t:.9e}\t{ux:.9e}\t{uy:.9e}\t{uz:.9e}\n")

    def flush(self):
        for f in self._files:
            f.flush()

    def close(self):
        for f in self._files:
            f.close()
        self._files = []
