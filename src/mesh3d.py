"""Lattice, spring topology and triangulation for the cloth simulation."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_NORMAL = (0.0, 1.0, 0.0)


@dataclass
class Mesh3D:
    """Point masses connected by springs, plus the triangles used for shading.

    Positions are an ``(N, 3)`` array.  Every spring ``(p, q)`` keeps the rest
    length it was built with; the simulation never changes it.  Pinned vertices
    are excluded from integration and keep their initial position.
    """

    positions: np.ndarray
    springs: List[Tuple[int, int]]
    pinned: np.ndarray
    faces: List[Tuple[int, int, int]] = field(default_factory=list)
    rest_lengths: Optional[np.ndarray] = None
    initial_positions: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        self.positions = np.asarray(self.positions, dtype=np.float64)
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ValueError("positions must be an (N, 3) array")

        self.initial_positions = self.positions.copy()
        n_vertices = self.positions.shape[0]

        if len(self.springs) == 0:
            raise ValueError("At least one spring is required for the simulation")

        self.springs = [(int(p), int(q)) for p, q in self.springs]
        for p, q in self.springs:
            if p == q:
                raise ValueError(f"spring ({p}, {q}) connects a vertex to itself")
            if not (0 <= p < n_vertices and 0 <= q < n_vertices):
                raise ValueError(f"spring ({p}, {q}) references a vertex out of range")

        self.pinned = np.asarray(self.pinned, dtype=bool)
        if self.pinned.shape != (n_vertices,):
            raise ValueError("pinned must hold one flag per vertex")

        if self.rest_lengths is None:
            self.rest_lengths = np.array([
                np.linalg.norm(self.positions[q] - self.positions[p])
                for p, q in self.springs
            ])
        self.rest_lengths = np.asarray(self.rest_lengths, dtype=np.float64)
        if self.rest_lengths.shape != (len(self.springs),):
            raise ValueError("rest_lengths must hold one value per spring")
        if np.any(self.rest_lengths < 0.0):
            raise ValueError("rest_lengths must be >= 0")
        self.rest_lengths.setflags(write=False)

        self.faces = [tuple(int(i) for i in face) for face in self.faces]
        for face in self.faces:
            if len(face) != 3 or not all(0 <= i < n_vertices for i in face):
                raise ValueError(f"face {face} is not a valid vertex triple")

        springs = np.array(self.springs, dtype=np.intp).reshape(-1, 2)
        self.spring_start = springs[:, 0]
        self.spring_end = springs[:, 1]
        self._indices = np.array(self.faces, dtype=np.uint32).reshape(-1, 3)
        self.normals = self.compute_vertex_normals()

    @property
    def n_vertices(self) -> int:
        return self.positions.shape[0]

    @property
    def n_springs(self) -> int:
        return len(self.springs)

    def pin_vertex(self, index: int) -> None:
        """Anchors the vertex at its initial position."""

        self._check_index(index)
        self.pinned[index] = True
        self.positions[index] = self.initial_positions[index]

    def release_vertex(self, index: int) -> None:
        self._check_index(index)
        self.pinned[index] = False

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.n_vertices:
            raise ValueError(
                f"vertex index must be in [0, {self.n_vertices - 1}], got {index}"
            )

    def incident_springs(self) -> np.ndarray:
        """Number of springs attached to each vertex."""

        return np.bincount(
            np.concatenate([self.spring_start, self.spring_end]),
            minlength=self.n_vertices,
        )

    @staticmethod
    def build_lattice(
        size: int,
        extent: float = 1.0,
        pinned: Optional[Iterable[int]] = None,
    ) -> "Mesh3D":
        """Builds a square ``size x size`` cloth lattice on the XZ plane.

        Vertex ``i * size + j`` starts at ``(j * s, 0, i * s)`` with spacing
        ``s = extent / (size - 1)``.  Every unit cell contributes six springs:
        four along its sides (rest ``s``) and two across its diagonals
        (rest ``s * sqrt(2)``).  Sides shared by neighbouring cells are emitted
        by both of them.  Each cell is split in two triangles facing ``+y``.

        Parameters
        ----------
        size:
            Number of vertices along each side, at least 2.
        extent:
            Side length of the undeformed cloth.
        pinned:
            Indices of the anchored vertices.  Defaults to the two corners of
            the first row.
        """

        if size < 2:
            raise ValueError(f"size must be >= 2, got {size}")
        if extent <= 0:
            raise ValueError(f"extent must be positive, got {extent}")

        step = extent / (size - 1)
        diagonal = step * math.sqrt(2.0)

        positions: List[Tuple[float, float, float]] = []
        springs: List[Tuple[int, int]] = []
        rest_lengths: List[float] = []
        faces: List[Tuple[int, int, int]] = []

        for i in range(size):
            for j in range(size):
                positions.append((j * step, 0.0, i * step))

        for i in range(size - 1):
            for j in range(size - 1):
                top = i * size + j
                below = top + size
                springs += [
                    (top, below),
                    (top, top + 1),
                    (top + 1, below + 1),
                    (below, below + 1),
                ]
                rest_lengths += [step] * 4
                springs += [(top, below + 1), (top + 1, below)]
                rest_lengths += [diagonal] * 2

                faces.append((top, below, top + 1))
                faces.append((top + 1, below, below + 1))

        if pinned is None:
            pinned = (0, size - 1)
        pinned_mask = np.zeros(size * size, dtype=bool)
        for index in pinned:
            if not 0 <= index < size * size:
                raise ValueError(
                    f"pinned index must be in [0, {size * size - 1}], got {index}"
                )
            pinned_mask[index] = True

        mesh = Mesh3D(
            np.array(positions),
            springs,
            pinned_mask,
            faces,
            rest_lengths=np.array(rest_lengths),
        )
        logger.info(
            f"Built {size}x{size} lattice: {mesh.n_vertices} particles, "
            f"{mesh.n_springs} springs, {len(faces)} triangles, "
            f"{int(pinned_mask.sum())} pinned"
        )
        return mesh

    def reset(self) -> None:
        self.positions[:] = self.initial_positions
        self.normals = self.compute_vertex_normals()

    def compute_vertex_normals(self, area_weighted: bool = True) -> np.ndarray:
        """Compute per-vertex normals from the triangle faces.

        Face normals are the raw cross product of two edges, so larger
        triangles weigh more.  With ``area_weighted=False`` every face
        contributes a unit vector instead.
        """

        normals = np.zeros_like(self.positions)
        for face in self.faces:
            i0, i1, i2 = face
            p0, p1, p2 = self.positions[[i0, i1, i2]]
            face_normal = np.cross(p1 - p0, p2 - p0)
            norm = np.linalg.norm(face_normal)
            if norm == 0:
                continue
            if not area_weighted:
                face_normal /= norm
            normals[i0] += face_normal
            normals[i1] += face_normal
            normals[i2] += face_normal

        norms = np.linalg.norm(normals, axis=1)
        nonzero = norms > 0
        normals[nonzero] /= norms[nonzero][:, None]
        normals[~nonzero] = np.array(DEFAULT_NORMAL)
        return normals

    def update_normals(self, area_weighted: bool = True) -> np.ndarray:
        self.normals = self.compute_vertex_normals(area_weighted)
        return self.normals

    # -- Output buffers ---------------------------------------------------
    def position_buffer(self) -> np.ndarray:
        """Flat ``float32`` copy of the positions, three values per vertex."""

        return self.positions.astype(np.float32).ravel()

    def normal_buffer(self) -> np.ndarray:
        return self.normals.astype(np.float32).ravel()

    def index_buffer(self) -> np.ndarray:
        return self._indices.ravel().copy()
