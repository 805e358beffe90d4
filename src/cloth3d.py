"""Mass-spring cloth simulation."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from mesh3d import Mesh3D

logger = logging.getLogger(__name__)

STANDARD_GRAVITY = 9.80665

# Springs shorter than this have no defined direction and exert no force.
DEGENERATE_LENGTH = 1e-12


class SimulationDivergedError(RuntimeError):
    """Raised when a substep produces non-finite positions or velocities."""

    def __init__(self, substep: int, particles: np.ndarray) -> None:
        self.substep = substep
        self.particles = np.asarray(particles)
        super().__init__(
            f"simulation diverged at substep {substep}: "
            f"non-finite state for particles {self.particles[:10].tolist()}"
        )


@dataclass
class Cloth3D:
    mesh: Mesh3D
    spring_k: float = 30.0
    time_step: float = 0.001
    mass: float = 0.1
    damping: float = 1.0
    gravity: np.ndarray = field(
        default_factory=lambda: np.array([0.0, -STANDARD_GRAVITY, 0.0])
    )
    external_force: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if self.spring_k <= 0:
            raise ValueError(f"spring_k must be positive, got {self.spring_k}")
        if self.time_step <= 0:
            raise ValueError(f"time_step must be positive, got {self.time_step}")
        if self.mass <= 0:
            raise ValueError(f"mass must be positive, got {self.mass}")
        if self.damping < 0:
            raise ValueError(f"damping must be >= 0, got {self.damping}")

        self.gravity = np.asarray(self.gravity, dtype=np.float64)
        if self.gravity.shape != (3,):
            raise ValueError("gravity must be a 3D vector")
        if self.external_force is not None:
            self.external_force = np.asarray(self.external_force, dtype=np.float64)
            if self.external_force.shape not in ((3,), self.mesh.positions.shape):
                raise ValueError("external_force must be a 3D vector or an (N, 3) array")

        self.velocities = np.zeros_like(self.mesh.positions)
        self.substeps = 0
        self.diverged = False
        self._diverged_particles = np.empty(0, dtype=np.intp)

        limit = self.stable_time_step()
        if self.time_step > limit:
            logger.warning(
                f"time_step {self.time_step:g} exceeds the explicit stability "
                f"bound {limit:g} for spring_k={self.spring_k:g}, mass={self.mass:g}"
            )
        logger.info(
            f"Cloth ready: {self.mesh.n_vertices} particles, "
            f"{self.mesh.n_springs} springs, dt={self.time_step:g}"
        )

    def stable_time_step(self) -> float:
        """Largest time step the explicit scheme tolerates for this stiffness.

        Uses the bound ``2 / omega_max`` with ``omega_max^2 <= 2 k d_max / m``,
        where ``d_max`` is the highest spring count on a single particle.
        """

        d_max = int(self.mesh.incident_springs().max())
        return 2.0 / math.sqrt(2.0 * self.spring_k * d_max / self.mass)

    # ------------------------------------------------------------------

    def compute_forces(self) -> np.ndarray:
        """Net force on every particle for the current state."""

        positions = self.mesh.positions
        p = self.mesh.spring_start
        q = self.mesh.spring_end

        forces = np.empty_like(positions)
        forces[:] = self.mass * self.gravity
        if self.external_force is not None:
            forces += self.external_force

        with np.errstate(over="ignore", invalid="ignore"):
            delta = positions[q] - positions[p]
            length = np.linalg.norm(delta, axis=1)
            valid = length > DEGENERATE_LENGTH
            direction = np.zeros_like(delta)
            direction[valid] = delta[valid] / length[valid, None]

            stretch = np.where(valid, length - self.mesh.rest_lengths, 0.0)
            # Pinned particles do not move, whatever their stored velocity.
            velocities = np.where(self.mesh.pinned[:, None], 0.0, self.velocities)
            relative_velocity = velocities[q] - velocities[p]
            closing = np.einsum("ij,ij->i", relative_velocity, direction)
            magnitude = self.spring_k * stretch + self.damping * closing
            spring_forces = magnitude[:, None] * direction

            # Contributions are summed in spring order.
            np.add.at(forces, p, spring_forces)
            np.add.at(forces, q, -spring_forces)
        return forces

    def integrate(self, forces: np.ndarray) -> None:
        """Semi-implicit Euler update of every free particle.

        The new state is only written back when it is finite.
        """

        free = ~self.mesh.pinned
        with np.errstate(over="ignore", invalid="ignore"):
            velocities = self.velocities[free] + forces[free] * (self.time_step / self.mass)
            positions = self.mesh.positions[free] + velocities * self.time_step

        finite = np.isfinite(velocities).all(axis=1) & np.isfinite(positions).all(axis=1)
        if not finite.all():
            self.mark_diverged(np.flatnonzero(free)[~finite], self.substeps + 1)

        self.velocities[free] = velocities
        self.mesh.positions[free] = positions
        self.substeps += 1

    def mark_diverged(self, particles: np.ndarray, substep: int) -> None:
        """Halts the simulation and raises :class:`SimulationDivergedError`."""

        self.diverged = True
        self._diverged_particles = np.asarray(particles, dtype=np.intp)
        error = SimulationDivergedError(substep, self._diverged_particles)
        logger.error(str(error))
        raise error

    def pin(self, index: int) -> None:
        """Anchors a particle at its initial position, at rest."""

        self.mesh.pin_vertex(index)
        self.velocities[index] = 0.0

    def release(self, index: int) -> None:
        """Frees a pinned particle; it starts moving from rest."""

        self.mesh.release_vertex(index)
        self.velocities[index] = 0.0

    def step(self) -> None:
        """Advance the simulation by one time step."""

        if self.diverged:
            raise SimulationDivergedError(self.substeps, self._diverged_particles)
        self.integrate(self.compute_forces())

    def advance(self, substeps: int) -> None:
        for _ in range(substeps):
            self.step()

    @property
    def simulated_time(self) -> float:
        return self.substeps * self.time_step

    def reset(self) -> None:
        self.mesh.reset()
        self.velocities[:] = 0.0
        self.substeps = 0
        self.diverged = False
        self._diverged_particles = np.empty(0, dtype=np.intp)
        logger.info("Cloth reset to its initial state.")
