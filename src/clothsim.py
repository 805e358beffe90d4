"""Entry point for the cloth simulation demo."""
from __future__ import annotations

import argparse
import logging
from typing import List, Optional

import numpy as np

from cloth3d import STANDARD_GRAVITY, Cloth3D, SimulationDivergedError
from logging_config import setup_logging
from mesh3d import Mesh3D
from scheduler3d import Scheduler

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mass-spring cloth simulation")
    parser.add_argument("--size", type=int, default=20, help="Particles along each side of the cloth")
    parser.add_argument("--extent", type=float, default=1.0, help="Side length of the undeformed cloth")
    parser.add_argument("--spring", type=float, default=30.0, help="Spring stiffness k")
    parser.add_argument("--damping", type=float, default=1.0, help="Spring damping coefficient")
    parser.add_argument("--mass", type=float, default=0.1, help="Mass of every particle")
    parser.add_argument("--gravity", type=float, default=STANDARD_GRAVITY, help="Gravitational acceleration")
    parser.add_argument("--timestep", type=float, default=0.001, help="Fixed physics time step")
    parser.add_argument(
        "--pin",
        type=int,
        nargs="+",
        default=None,
        help="Indices of pinned particles (default: both corners of the first row)",
    )
    parser.add_argument(
        "--max-substeps",
        type=int,
        default=None,
        help="Upper bound on substeps per frame; extra backlog is dropped",
    )
    parser.add_argument("--headless", action="store_true", help="Simulate without opening a window")
    parser.add_argument("--frames", type=int, default=600, help="Frames to simulate in headless mode")
    parser.add_argument(
        "--frame-time",
        type=float,
        default=1 / 60.0,
        help="Seconds per frame in headless mode",
    )
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        default="INFO",
    )
    parser.add_argument("--log-file", default=None, help="Optional file receiving a copy of the log")
    return parser.parse_args(argv)


def build_scheduler(args: argparse.Namespace) -> Scheduler:
    mesh = Mesh3D.build_lattice(size=args.size, extent=args.extent, pinned=args.pin)
    cloth = Cloth3D(
        mesh=mesh,
        spring_k=args.spring,
        time_step=args.timestep,
        mass=args.mass,
        damping=args.damping,
        gravity=np.array([0.0, -args.gravity, 0.0]),
    )
    return Scheduler(cloth, max_substeps_per_frame=args.max_substeps)


def run_headless(scheduler: Scheduler, frames: int, frame_time: float) -> int:
    try:
        for _ in range(frames):
            scheduler.advance(frame_time)
    except SimulationDivergedError as error:
        logger.error(f"Run aborted: {error}")
        return 1

    positions = scheduler.cloth.mesh.positions
    logger.info(
        f"Simulated {scheduler.cloth.simulated_time:.3f}s in {scheduler.frames} frames; "
        f"lowest point y={positions[:, 1].min():.4f}"
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(level=getattr(logging, args.log_level), log_file=args.log_file)

    scheduler = build_scheduler(args)
    if args.headless:
        return run_headless(scheduler, args.frames, args.frame_time)

    # OpenGL is only needed for the window.
    from draw3d import Draw3D

    viewer = Draw3D(scheduler=scheduler, source=scheduler.cloth.mesh)
    viewer.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
