"""OpenGL viewer that renders the frames published by the scheduler."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from OpenGL.GL import (
    glBegin,
    glClear,
    glClearColor,
    glDisable,
    glDisableClientState,
    glDrawElements,
    glEnable,
    glEnableClientState,
    glEnd,
    glLightfv,
    glLoadIdentity,
    glMaterialf,
    glMaterialfv,
    glMatrixMode,
    glNormal3f,
    glNormalPointer,
    glShadeModel,
    glVertex3f,
    glVertexPointer,
    glViewport,
    GL_AMBIENT,
    GL_COLOR_BUFFER_BIT,
    GL_CULL_FACE,
    GL_DEPTH_BUFFER_BIT,
    GL_DEPTH_TEST,
    GL_DIFFUSE,
    GL_FLOAT,
    GL_FRONT_AND_BACK,
    GL_LIGHT0,
    GL_LIGHT_MODEL_TWO_SIDE,
    GL_LIGHTING,
    GL_MODELVIEW,
    GL_NORMAL_ARRAY,
    GL_POSITION,
    GL_PROJECTION,
    GL_QUADS,
    GL_SHININESS,
    GL_SMOOTH,
    GL_SPECULAR,
    GL_TRIANGLES,
    GL_TRUE,
    GL_UNSIGNED_INT,
    GL_VERTEX_ARRAY,
    glLightModeli,
)
from OpenGL.GLU import gluLookAt, gluPerspective
from OpenGL.GLUT import (
    GLUT_DEPTH,
    GLUT_DOUBLE,
    GLUT_LEFT_BUTTON,
    GLUT_RGB,
    GLUT_UP,
    glutCreateWindow,
    glutDisplayFunc,
    glutIdleFunc,
    glutInit,
    glutInitDisplayMode,
    glutInitWindowPosition,
    glutInitWindowSize,
    glutKeyboardFunc,
    glutMainLoop,
    glutMotionFunc,
    glutMouseFunc,
    glutPostRedisplay,
    glutReshapeFunc,
    glutSetWindowTitle,
    glutSwapBuffers,
)

from cloth3d import SimulationDivergedError
from scheduler3d import ClothSource, Frame, Scheduler

logger = logging.getLogger(__name__)


@dataclass
class Draw3D:
    """Renderer for the scheduler's frames.

    Reads positions and normals only from the :class:`Frame` it is handed and
    the triangle indices once from the cloth source.
    """

    scheduler: Scheduler
    source: ClothSource
    window_size: Tuple[int, int] = (1024, 768)
    fov_y: float = 75.0
    floor_height: float = -1.5
    floor_half_size: float = 3.0

    theta: float = math.pi / 4.0
    phi: float = 0.4
    radius: float = 3.0
    light_rotation: float = math.pi / 4.0
    light_height: float = math.pi / 3.0
    center: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float64))

    _frame: Optional[Frame] = None
    _halted: bool = False
    _left_button_down: bool = False
    _last_mouse_pos: Optional[Tuple[int, int]] = None

    def __post_init__(self) -> None:
        center = np.asarray(self.center, dtype=np.float64)
        if not np.any(center):
            positions = self.source.position_buffer().reshape(-1, 3)
            center = positions.mean(axis=0) + np.array([0.0, -0.5, 0.0])
        self.center = center.astype(np.float64)
        self._indices = np.ascontiguousarray(self.source.index_buffer(), dtype=np.uint32)
        self.scheduler.renderer = self

    def present(self, frame: Frame) -> None:
        self._frame = frame

    # -- OpenGL setup -----------------------------------------------------
    def run(self) -> None:
        glutInit()
        glutInitDisplayMode(GLUT_DOUBLE | GLUT_RGB | GLUT_DEPTH)
        glutInitWindowSize(*self.window_size)
        glutInitWindowPosition(100, 100)
        glutCreateWindow(b"Cloth Simulation")

        glClearColor(0.0, 0.0, 0.0, 1.0)
        glEnable(GL_DEPTH_TEST)
        glEnable(GL_LIGHTING)
        glEnable(GL_LIGHT0)
        glShadeModel(GL_SMOOTH)
        glLightModeli(GL_LIGHT_MODEL_TWO_SIDE, GL_TRUE)

        glLightfv(GL_LIGHT0, GL_AMBIENT, (0.1, 0.1, 0.1, 1.0))
        glLightfv(GL_LIGHT0, GL_DIFFUSE, (0.8, 0.8, 0.8, 1.0))
        glLightfv(GL_LIGHT0, GL_SPECULAR, (0.9, 0.9, 0.9, 1.0))

        glutDisplayFunc(self.display)
        glutIdleFunc(self.idle)
        glutReshapeFunc(self.reshape)
        glutMouseFunc(self.mouse_button)
        glutKeyboardFunc(self.keyboard)
        glutMotionFunc(self.mouse_motion)

        self.scheduler.tick()
        glutMainLoop()

    # -- Camera handling --------------------------------------------------
    def _compute_eye(self) -> np.ndarray:
        phi = np.clip(self.phi, -math.pi / 2 + 1e-3, math.pi / 2 - 1e-3)
        r = max(self.radius, 0.1)
        cos_phi = math.cos(phi)
        return np.array(
            [
                self.center[0] + r * math.sin(self.theta) * cos_phi,
                self.center[1] + r * math.sin(phi),
                self.center[2] + r * math.cos(self.theta) * cos_phi,
            ],
            dtype=np.float64,
        )

    def mouse_button(self, button: int, state: int, x: int, y: int) -> None:
        if button == GLUT_LEFT_BUTTON:
            self._left_button_down = state != GLUT_UP
            self._last_mouse_pos = (x, y)
        elif state == GLUT_UP:
            self._last_mouse_pos = None

        # Scroll wheel (zoom) is encoded as buttons 3 (up) and 4 (down) in GLUT
        if button == 3 and state != GLUT_UP:
            self.radius = max(0.2, self.radius * 0.9)
        elif button == 4 and state != GLUT_UP:
            self.radius = min(100.0, self.radius * 1.1)

        glutPostRedisplay()

    def mouse_motion(self, x: int, y: int) -> None:
        if not self._left_button_down or self._last_mouse_pos is None:
            return

        dx = x - self._last_mouse_pos[0]
        dy = y - self._last_mouse_pos[1]
        self._last_mouse_pos = (x, y)

        sensitivity = 0.005
        self.theta -= dx * sensitivity
        self.phi += dy * sensitivity
        self.phi = np.clip(self.phi, -math.pi / 2 + 1e-3, math.pi / 2 - 1e-3)

        glutPostRedisplay()

    # -- Light handling ---------------------------------------------------
    def light_direction(self) -> np.ndarray:
        """Unit vector pointing towards the light, in world space."""

        r = math.cos(self.light_height)
        return np.array(
            [
                r * math.sin(self.light_rotation),
                math.sin(self.light_height),
                r * math.cos(self.light_rotation),
            ],
            dtype=np.float64,
        )

    def keyboard(self, key: bytes, x: int, y: int) -> None:
        """``a``/``d`` turn the light around the cloth, ``w``/``s`` raise or lower it.

        The idle callback redraws every frame, so no redisplay is posted here.
        """

        step = math.pi / 36.0
        key = key.lower()
        if key == b"a":
            self.light_rotation = (self.light_rotation - step) % (2.0 * math.pi)
        elif key == b"d":
            self.light_rotation = (self.light_rotation + step) % (2.0 * math.pi)
        elif key == b"w":
            self.light_height = min(self.light_height + step, math.pi / 2.0)
        elif key == b"s":
            self.light_height = max(self.light_height - step, -math.pi / 2.0)

    # -- GLUT callbacks ---------------------------------------------------
    def reshape(self, width: int, height: int) -> None:
        if height == 0:
            height = 1
        glViewport(0, 0, width, height)
        glMatrixMode(GL_PROJECTION)
        glLoadIdentity()
        aspect = width / float(height)
        gluPerspective(self.fov_y, aspect, 0.1, 100.0)
        glMatrixMode(GL_MODELVIEW)

    def idle(self) -> None:
        if not self._halted:
            try:
                self.scheduler.tick()
            except SimulationDivergedError as error:
                # Keep showing the last finite frame.
                self._halted = True
                logger.error(f"Simulation halted: {error}")
                glutSetWindowTitle(b"Cloth Simulation (diverged)")
        glutPostRedisplay()

    def display(self) -> None:
        glClear(GL_COLOR_BUFFER_BIT | GL_DEPTH_BUFFER_BIT)
        glLoadIdentity()

        eye = self._compute_eye()
        gluLookAt(
            eye[0], eye[1], eye[2],
            self.center[0], self.center[1], self.center[2],
            0.0, 1.0, 0.0,
        )
        light = self.light_direction()
        glLightfv(GL_LIGHT0, GL_POSITION, (light[0], light[1], light[2], 0.0))

        self._draw_floor()
        self._draw_cloth_surface()

        glutSwapBuffers()

    def _draw_floor(self) -> None:
        glMaterialfv(GL_FRONT_AND_BACK, GL_AMBIENT, (0.2, 0.2, 0.2, 1.0))
        glMaterialfv(GL_FRONT_AND_BACK, GL_DIFFUSE, (0.5, 0.5, 0.5, 1.0))
        glMaterialfv(GL_FRONT_AND_BACK, GL_SPECULAR, (0.1, 0.1, 0.1, 1.0))
        glMaterialf(GL_FRONT_AND_BACK, GL_SHININESS, 8.0)

        cx, cz = self.center[0], self.center[2]
        h = self.floor_half_size
        y = self.floor_height
        glBegin(GL_QUADS)
        glNormal3f(0.0, 1.0, 0.0)
        glVertex3f(cx - h, y, cz - h)
        glVertex3f(cx - h, y, cz + h)
        glVertex3f(cx + h, y, cz + h)
        glVertex3f(cx + h, y, cz - h)
        glEnd()

    def _draw_cloth_surface(self) -> None:
        if self._frame is None:
            return

        glMaterialfv(GL_FRONT_AND_BACK, GL_AMBIENT, (0.1, 0.3, 0.05, 1.0))
        glMaterialfv(GL_FRONT_AND_BACK, GL_DIFFUSE, (0.4, 0.9, 0.1, 1.0))
        glMaterialfv(GL_FRONT_AND_BACK, GL_SPECULAR, (0.7, 1.0, 0.6, 1.0))
        glMaterialf(GL_FRONT_AND_BACK, GL_SHININESS, 64.0)

        glDisable(GL_CULL_FACE)
        glEnableClientState(GL_VERTEX_ARRAY)
        glEnableClientState(GL_NORMAL_ARRAY)
        glVertexPointer(3, GL_FLOAT, 0, self._frame.positions)
        glNormalPointer(GL_FLOAT, 0, self._frame.normals)
        glDrawElements(GL_TRIANGLES, self._indices.size, GL_UNSIGNED_INT, self._indices)
        glDisableClientState(GL_NORMAL_ARRAY)
        glDisableClientState(GL_VERTEX_ARRAY)
