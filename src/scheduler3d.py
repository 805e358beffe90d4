"""Fixed-step scheduling of the cloth simulation against variable frame times."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np

from cloth3d import Cloth3D

logger = logging.getLogger(__name__)

# Absorbs rounding when frame times are summed, e.g. ten frames of 0.1 s.
STEP_TOLERANCE = 1e-9


class ClothSource(Protocol):
    """What a renderer may read from the simulation."""

    def position_buffer(self) -> np.ndarray: ...

    def normal_buffer(self) -> np.ndarray: ...

    def index_buffer(self) -> np.ndarray: ...


@dataclass(frozen=True)
class Frame:
    """Snapshot handed to the renderer once a tick has completed."""

    positions: np.ndarray
    normals: np.ndarray
    time: float
    substeps: int


class Renderer(Protocol):
    def present(self, frame: Frame) -> None: ...


@dataclass
class SimulationClock:
    time_step: float
    wall_time: float = 0.0
    substeps: int = 0

    def __post_init__(self) -> None:
        if self.time_step <= 0:
            raise ValueError(f"time_step must be positive, got {self.time_step}")

    @property
    def simulated_time(self) -> float:
        return self.substeps * self.time_step

    @property
    def leftover(self) -> float:
        """Wall time received but not yet covered by a whole substep."""

        return max(self.wall_time - self.simulated_time, 0.0)

    def consume(self, elapsed: float) -> int:
        """Adds ``elapsed`` seconds of wall time and returns the substeps now due.

        The total number of substeps is ``floor(wall_time / time_step)``, so
        the result does not depend on how the wall time is split into frames.
        """

        if elapsed < 0:
            raise ValueError(f"elapsed must be >= 0, got {elapsed}")
        self.wall_time += elapsed
        due = int(math.floor(self.wall_time / self.time_step + STEP_TOLERANCE))
        count = max(due - self.substeps, 0)
        self.substeps += count
        return count

    def drop_backlog(self, substeps: int) -> None:
        """Forgets ``substeps`` that were due but will not be simulated."""

        self.substeps -= substeps
        self.wall_time -= substeps * self.time_step


class Scheduler:
    """Runs whole substeps of the cloth for each frame, then refreshes normals.

    ``time_source`` returns seconds as a float and is read once per
    :meth:`tick`.  The first tick only records the starting time.
    """

    def __init__(
        self,
        cloth: Cloth3D,
        renderer: Optional[Renderer] = None,
        time_source: Callable[[], float] = time.perf_counter,
        max_substeps_per_frame: Optional[int] = None,
        area_weighted_normals: bool = True,
    ) -> None:
        if max_substeps_per_frame is not None and max_substeps_per_frame < 1:
            raise ValueError(
                f"max_substeps_per_frame must be >= 1 or None, got {max_substeps_per_frame}"
            )
        self.cloth = cloth
        self.renderer = renderer
        self.time_source = time_source
        self.max_substeps_per_frame = max_substeps_per_frame
        self.area_weighted_normals = area_weighted_normals
        self.clock = SimulationClock(cloth.time_step)
        self.frames = 0
        self.running = False
        self.last_frame: Optional[Frame] = None
        self._last_time: Optional[float] = None

    @property
    def diverged(self) -> bool:
        return self.cloth.diverged

    def advance(self, elapsed: float) -> Frame:
        """Simulates ``elapsed`` seconds of wall time and publishes a frame."""

        substeps = self.clock.consume(elapsed)
        limit = self.max_substeps_per_frame
        if limit is not None and substeps > limit:
            dropped = substeps - limit
            self.clock.drop_backlog(dropped)
            logger.warning(f"Frame needed {substeps} substeps, dropping {dropped}.")
            substeps = limit

        self.cloth.advance(substeps)

        mesh = self.cloth.mesh
        with np.errstate(over="ignore", invalid="ignore"):
            mesh.update_normals(self.area_weighted_normals)
            positions = mesh.position_buffer()
            normals = mesh.normal_buffer()

        # Positions that are finite in float64 can still overflow the buffers.
        finite = (
            np.isfinite(positions.reshape(-1, 3)).all(axis=1)
            & np.isfinite(normals.reshape(-1, 3)).all(axis=1)
        )
        if not finite.all():
            self.cloth.mark_diverged(np.flatnonzero(~finite), self.cloth.substeps)

        frame = Frame(
            positions=positions,
            normals=normals,
            time=self.cloth.simulated_time,
            substeps=substeps,
        )
        self.frames += 1
        self.last_frame = frame
        logger.debug(f"Frame {self.frames}: {substeps} substeps, t={frame.time:.4f}s")

        if self.renderer is not None:
            self.renderer.present(frame)
        return frame

    def tick(self) -> Frame:
        now = self.time_source()
        elapsed = 0.0 if self._last_time is None else now - self._last_time
        self._last_time = now
        return self.advance(elapsed)

    def run(self, max_frames: Optional[int] = None) -> None:
        """Ticks until :meth:`stop` is called or ``max_frames`` frames ran.

        A divergence stops the loop and is raised to the caller.
        """

        self.running = True
        ticks = 0
        try:
            while self.running and (max_frames is None or ticks < max_frames):
                self.tick()
                ticks += 1
        finally:
            self.running = False
        logger.info(f"Stopped after {ticks} frames, t={self.cloth.simulated_time:.3f}s")

    def stop(self) -> None:
        self.running = False

    def reset(self) -> None:
        self.cloth.reset()
        self.clock = SimulationClock(self.cloth.time_step)
        self.frames = 0
        self.last_frame = None
        self._last_time = None
