"""Still-image capture of the live 3D view.

The pipeline does not know about Qt. It talks to a ``ViewCapture``, which
is attached to whatever renderer currently shows the mesh (normally the
``MeshViewport`` widget) and detached when that renderer goes away.
"""

from typing import Protocol

from loguru import logger
from PIL import Image

from floorplan3d.services.images import image_to_data_uri


class FrameRenderer(Protocol):
    """Anything that can render its scene once and hand back the pixels."""

    def render_frame(self) -> Image.Image | None:
        ...


class ViewCapture:
    """Captures the current view of the attached renderer."""

    def __init__(self, renderer: FrameRenderer | None = None):
        self._renderer = renderer

    @property
    def available(self) -> bool:
        return self._renderer is not None

    def attach(self, renderer: FrameRenderer):
        self._renderer = renderer

    def detach(self, renderer: FrameRenderer | None = None):
        """Forget the renderer (only if it is ``renderer``, when one is given)."""
        if renderer is None or renderer is self._renderer:
            self._renderer = None

    def capture_current_view(self) -> str | None:
        """Render once and return the frame as a PNG data URI.

        Returns None when no renderer is mounted or it produced no frame.
        """
        if self._renderer is None:
            logger.warning("Capture requested but no 3D view is mounted")
            return None

        frame = self._renderer.render_frame()
        if frame is None:
            logger.warning("3D view produced no frame")
            return None

        logger.info(f"Captured 3D view ({frame.width}x{frame.height})")
        return image_to_data_uri(frame.convert("RGB"), "PNG")
