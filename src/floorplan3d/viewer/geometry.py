"""GLB loading for the mesh viewer.

Turns the bytes of a generated model into flat numpy arrays that the
OpenGL viewport can hand straight to ``glDrawElements``.
"""

import io
from dataclasses import dataclass

import numpy as np
import trimesh
from loguru import logger

# Largest extent of a loaded model after normalization (scene units)
FIT_SIZE = 10.0


@dataclass
class MeshGeometry:
    """Triangle soup ready for drawing, centered on the origin."""

    vertices: np.ndarray  # (N, 3) float32
    normals: np.ndarray  # (N, 3) float32
    colors: np.ndarray | None  # (N, 4) float32 in 0..1, or None for a flat color
    faces: np.ndarray  # (M, 3) uint32

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def radius(self) -> float:
        if not len(self.vertices):
            return 0.0
        return float(np.linalg.norm(self.vertices, axis=1).max())


def _vertex_colors(mesh: trimesh.Trimesh) -> np.ndarray | None:
    visual = mesh.visual
    if visual is None:
        return None
    if visual.kind == "texture":
        # Bake the texture down to per-vertex colors; good enough for a preview
        visual = visual.to_color()
    if visual.kind != "vertex":
        return None
    colors = np.asarray(visual.vertex_colors, dtype=np.float32)
    if colors.shape != (len(mesh.vertices), 4):
        return None
    return colors / 255.0


def load_geometry(data: bytes, file_type: str = "glb") -> MeshGeometry:
    """Parse a model file and normalize it to fit a ``FIT_SIZE`` box at the origin."""
    mesh = trimesh.load(io.BytesIO(data), file_type=file_type, force="mesh")
    if not isinstance(mesh, trimesh.Trimesh) or mesh.is_empty:
        raise ValueError("Model file contains no triangles")

    center = mesh.bounds.mean(axis=0)
    extent = float(np.max(mesh.extents)) or 1.0
    scale = FIT_SIZE / extent

    vertices = ((mesh.vertices - center) * scale).astype(np.float32)
    geometry = MeshGeometry(
        vertices=vertices,
        normals=np.asarray(mesh.vertex_normals, dtype=np.float32),
        colors=_vertex_colors(mesh),
        faces=np.asarray(mesh.faces, dtype=np.uint32),
    )
    logger.info(
        f"Loaded model: {geometry.vertex_count} vertices, {geometry.face_count} faces"
        f"{'' if geometry.colors is not None else ' (no vertex colors)'}"
    )
    return geometry
