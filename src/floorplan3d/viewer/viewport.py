"""3D viewport for generated floorplan models.

Provides an OpenGL widget that draws a loaded GLB with an orbit/pan/zoom
camera and can hand back its current frame for ``ViewCapture``.
"""

import io
import math
import sys
from pathlib import Path

import numpy as np
from loguru import logger
from PIL import Image
from PySide6.QtCore import QBuffer, QIODevice, QPoint, Qt
from PySide6.QtGui import QColor, QKeySequence, QShortcut
from PySide6.QtOpenGLWidgets import QOpenGLWidget
from PySide6.QtWidgets import QApplication, QMainWindow

from OpenGL.GL import *  # noqa: F403, F401
from OpenGL.GLU import gluLookAt, gluPerspective

from floorplan3d.config.manager import ConfigManager
from floorplan3d.services.images import split_data_uri
from floorplan3d.viewer.capture import ViewCapture
from floorplan3d.viewer.geometry import MeshGeometry


class OrbitCamera:
    """Orbit camera with pan, zoom, and rotate around a target point."""

    def __init__(self):
        self.target = np.array([0.0, 0.0, 0.0])
        self.distance = 20.0
        self.yaw = 45.0     # degrees around Y axis
        self.pitch = 35.0   # degrees above horizon
        self.fov = 45.0

        # Limits
        self.min_distance = 1.0
        self.max_distance = 200.0
        self.min_pitch = -89.0
        self.max_pitch = 89.0

    def reset(self, radius: float = 0.0):
        """Frame a model of the given radius from a dollhouse angle."""
        self.target = np.array([0.0, 0.0, 0.0])
        self.yaw = 45.0
        self.pitch = 35.0
        if radius > 0:
            half_fov = math.radians(self.fov) / 2.0
            self.distance = min(self.max_distance, max(self.min_distance,
                                                       radius / math.sin(half_fov)))
        else:
            self.distance = 20.0

    def rotate(self, dx: float, dy: float):
        """Rotate camera by mouse delta (in pixels)."""
        self.yaw += dx * 0.3
        self.pitch = max(self.min_pitch, min(self.max_pitch, self.pitch - dy * 0.3))

    def pan(self, dx: float, dy: float):
        """Pan camera by mouse delta (in pixels)."""
        scale = self.distance * 0.002
        yaw_rad = math.radians(self.yaw)
        right = np.array([math.cos(yaw_rad), 0, -math.sin(yaw_rad)])
        up = np.array([0, 1, 0])
        self.target -= right * dx * scale
        self.target += up * dy * scale

    def zoom(self, delta: float):
        """Zoom by scroll delta."""
        factor = 1.0 - delta * 0.001
        self.distance = max(self.min_distance, min(self.max_distance, self.distance * factor))

    def eye_position(self) -> np.ndarray:
        yaw_rad = math.radians(self.yaw)
        pitch_rad = math.radians(self.pitch)
        x = self.target[0] + self.distance * math.cos(pitch_rad) * math.sin(yaw_rad)
        y = self.target[1] + self.distance * math.sin(pitch_rad)
        z = self.target[2] + self.distance * math.cos(pitch_rad) * math.cos(yaw_rad)
        return np.array([x, y, z])

    def apply(self, width: int, height: int):
        """Set up the OpenGL projection and modelview matrices."""
        glMatrixMode(GL_PROJECTION)
        glLoadIdentity()
        aspect = width / max(height, 1)
        gluPerspective(self.fov, aspect, 0.1, 1000.0)

        glMatrixMode(GL_MODELVIEW)
        glLoadIdentity()
        eye = self.eye_position()
        gluLookAt(
            eye[0], eye[1], eye[2],
            self.target[0], self.target[1], self.target[2],
            0, 1, 0,
        )


class MeshViewport(QOpenGLWidget):
    """OpenGL widget showing one generated model."""

    def __init__(self, config: ConfigManager, parent=None):
        super().__init__(parent)
        self._config = config
        self._camera = OrbitCamera()
        self._camera.fov = config.get("viewport", "camera_fov", 45.0)
        self._geometry: MeshGeometry | None = None
        self._last_mouse_pos = QPoint()

        self.setMinimumSize(480, 360)
        self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)

    @property
    def camera(self) -> OrbitCamera:
        return self._camera

    def set_geometry(self, geometry: MeshGeometry | None):
        self._geometry = geometry
        self._camera.reset(geometry.radius if geometry else 0.0)
        self.update()

    def render_frame(self) -> Image.Image | None:
        """Render the scene once and return it as a PIL image."""
        qimage = self.grabFramebuffer()
        if qimage.isNull():
            return None
        buffer = QBuffer()
        buffer.open(QIODevice.OpenModeFlag.WriteOnly)
        qimage.save(buffer, "PNG")
        buffer.close()
        return Image.open(io.BytesIO(bytes(buffer.data()))).convert("RGB")

    # -------------------------------------------------------------------
    # GL
    # -------------------------------------------------------------------

    def initializeGL(self):
        c = QColor(self._config.get("viewport", "background", "#f4f4f6"))
        glClearColor(c.redF(), c.greenF(), c.blueF(), 1.0)
        glEnable(GL_DEPTH_TEST)
        glEnable(GL_LIGHTING)
        glEnable(GL_LIGHT0)
        glEnable(GL_LIGHT1)
        glEnable(GL_COLOR_MATERIAL)
        glColorMaterial(GL_FRONT_AND_BACK, GL_AMBIENT_AND_DIFFUSE)
        glEnable(GL_NORMALIZE)
        glLightfv(GL_LIGHT0, GL_DIFFUSE, (0.8, 0.8, 0.8, 1.0))
        glLightfv(GL_LIGHT1, GL_DIFFUSE, (0.35, 0.35, 0.4, 1.0))
        glLightModelfv(GL_LIGHT_MODEL_AMBIENT, (0.35, 0.35, 0.35, 1.0))

    def resizeGL(self, w, h):
        glViewport(0, 0, w, h)

    def paintGL(self):
        glClear(GL_COLOR_BUFFER_BIT | GL_DEPTH_BUFFER_BIT)
        self._camera.apply(self.width(), self.height())
        # Key light above the camera, fill light from below the opposite side
        glLightfv(GL_LIGHT0, GL_POSITION, (10.0, 20.0, 10.0, 0.0))
        glLightfv(GL_LIGHT1, GL_POSITION, (-10.0, -5.0, -10.0, 0.0))
        if self._geometry is not None:
            self._draw_mesh(self._geometry)

    def _draw_mesh(self, geometry: MeshGeometry):
        glEnableClientState(GL_VERTEX_ARRAY)
        glEnableClientState(GL_NORMAL_ARRAY)
        glVertexPointer(3, GL_FLOAT, 0, geometry.vertices)
        glNormalPointer(GL_FLOAT, 0, geometry.normals)

        if geometry.colors is not None:
            glEnableClientState(GL_COLOR_ARRAY)
            glColorPointer(4, GL_FLOAT, 0, geometry.colors)
        else:
            c = QColor(self._config.get("viewport", "mesh_color", "#d9d4c7"))
            glColor3f(c.redF(), c.greenF(), c.blueF())

        glDrawElements(GL_TRIANGLES, geometry.faces.size, GL_UNSIGNED_INT, geometry.faces)

        glDisableClientState(GL_COLOR_ARRAY)
        glDisableClientState(GL_NORMAL_ARRAY)
        glDisableClientState(GL_VERTEX_ARRAY)

    # -------------------------------------------------------------------
    # Mouse interaction
    # -------------------------------------------------------------------

    def mousePressEvent(self, event):
        self._last_mouse_pos = event.position().toPoint()

    def mouseMoveEvent(self, event):
        pos = event.position().toPoint()
        dx = pos.x() - self._last_mouse_pos.x()
        dy = pos.y() - self._last_mouse_pos.y()

        if event.buttons() & Qt.MouseButton.LeftButton:
            orbit_sens = self._config.get("viewport", "orbit_sensitivity", 1.0)
            self._camera.rotate(dx * orbit_sens, dy * orbit_sens)
        elif event.buttons() & Qt.MouseButton.MiddleButton:
            self._camera.pan(dx, dy)
        elif event.buttons() & Qt.MouseButton.RightButton:
            self._camera.zoom(dy * 5)

        self._last_mouse_pos = pos
        self.update()

    def wheelEvent(self, event):
        zoom_sens = self._config.get("viewport", "zoom_sensitivity", 1.0)
        self._camera.zoom(-event.angleDelta().y() * zoom_sens)
        self.update()

    def keyPressEvent(self, event):
        if event.key() == Qt.Key.Key_Home:
            self._camera.reset(self._geometry.radius if self._geometry else 0.0)
            self.update()
        else:
            super().keyPressEvent(event)


def ensure_application() -> QApplication:
    """Return the running QApplication, creating one if needed."""
    app = QApplication.instance()
    if app is None:
        app = QApplication(sys.argv[:1])
        app.setApplicationName("floorplan3d")
    return app


def open_snapshot_viewport(config: ConfigManager, geometry: MeshGeometry,
                           size: tuple[int, int] = (1024, 768)) -> MeshViewport:
    """Show a bare viewport for programmatic captures (no window chrome)."""
    app = ensure_application()
    viewport = MeshViewport(config)
    viewport.resize(*size)
    viewport.set_geometry(geometry)
    viewport.show()
    app.processEvents()
    return viewport


class MeshViewerWindow(QMainWindow):
    """Stand-alone window around a ``MeshViewport``.

    Ctrl+S captures the current view to a PNG next to ``output_dir``.
    """

    def __init__(self, config: ConfigManager, geometry: MeshGeometry, title: str,
                 capture: ViewCapture | None = None, output_dir: Path | None = None):
        super().__init__()
        self.setWindowTitle(title)
        self._capture = capture or ViewCapture()
        self._output_dir = output_dir or Path.cwd()
        self._shots = 0

        self._viewport = MeshViewport(config)
        self._viewport.set_geometry(geometry)
        self.setCentralWidget(self._viewport)
        self.resize(1024, 768)

        self._capture.attach(self._viewport)
        QShortcut(QKeySequence("Ctrl+S"), self, activated=self.capture_to_file)
        self.statusBar().showMessage("Drag: orbit | Middle: pan | Wheel: zoom | "
                                     "Home: reset | Ctrl+S: capture view")

    @property
    def viewport(self) -> MeshViewport:
        return self._viewport

    def capture_to_file(self) -> Path | None:
        data_uri = self._capture.capture_current_view()
        if data_uri is None:
            self.statusBar().showMessage("Capture failed: 3D view not available")
            return None
        self._shots += 1
        path = self._output_dir / f"view_{self._shots:02d}.png"
        path.write_bytes(split_data_uri(data_uri)[1])
        logger.info(f"Saved view capture to {path}")
        self.statusBar().showMessage(f"Saved {path}")
        return path

    def closeEvent(self, event):
        self._capture.detach(self._viewport)
        super().closeEvent(event)
