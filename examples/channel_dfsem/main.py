import argparse
import numpy as np
from turbinlet import simulation as sim
from turbinlet.io import Params
from turbinlet.parallel import MPICommunicator
from turbinlet.patch import InletPatch
from turbinlet import logger


def parser_args(comm):
    args = None
    try:
        if comm.rank == 0:
            logger.info("Parsing arguments.")
            parser = argparse.ArgumentParser()
            parser.add_argument("--ny", default=32, help="Faces across the channel width", type=int)
            parser.add_argument("--nz", default=32, help="Faces across the channel height", type=int)
            parser.add_argument("--input", default="input.json", help="Parameter file")
            args = parser.parse_args()
    except Exception as e:
        logger.error(f"[Rank {comm.rank}] Error parsing arguments: {e}")
        comm.abort(1)

    return comm.bcast(args, root=0)


if __name__ == '__main__':
    """
    Inflow of a channel of height 2 delta generated with the synthetic eddy method.

    To run the case, do
        ```bash
        mpirun -np <nprocs> python main.py --ny 32 --nz 32
        ```
    At the end, rank 0 reports the resolved Reynolds stresses of the last step against the
    prescribed ones, averaged over the patch.
    """
    comm = MPICommunicator()
    args = parser_args(comm)

    params = Params(args.input) if comm.rank == 0 else None
    params = comm.bcast(params, root=0)

    patch = InletPatch.rectangle(
        comm,
        width=(3.0 * params.delta, 2.0 * params.delta),
        shape=(args.ny, args.nz),
        periodic=(params.periodic_y, params.periodic_z)
    )

    inlet = sim.TurbulentInlet(params, patch)
    inlet.run()

    u = inlet.generator.compute_fluctuation(inlet.t, params.dt)
    resolved = comm.allreduce((u**2 * patch.face_areas[:, np.newaxis]).sum(axis=0), op='sum') / patch.area
    target = comm.allreduce((inlet.R[:, [0, 3, 5]] * patch.face_areas[:, np.newaxis]).sum(axis=0), op='sum') / patch.area
    if comm.rank == 0:
        logger.info(f"Resolved normal stresses {resolved}, prescribed {target}")
