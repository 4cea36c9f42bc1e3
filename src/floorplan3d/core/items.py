"""Per-image pipeline records.

An ``ImageItem`` is created for every uploaded floorplan (or reopened
history entry) and holds the current stage, the artifacts produced so far
and a human-readable log. Only ``PipelineCoordinator`` mutates items.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class PipelineStage(Enum):
    """Stage an image is currently in."""

    IDLE = "idle"
    UPLOADING = "uploading"
    MASKING = "masking"
    DEPTH_ESTIMATING = "depth-estimating"
    ENHANCING = "enhancing"
    MODELING = "modeling"
    CAPTURED = "captured"
    STYLIZING = "stylizing"
    COMPLETE = "complete"
    ERROR = "error"


# Stages during which a remote call is in flight for the item
BUSY_STAGES = frozenset({
    PipelineStage.UPLOADING,
    PipelineStage.MASKING,
    PipelineStage.DEPTH_ESTIMATING,
    PipelineStage.ENHANCING,
    PipelineStage.MODELING,
    PipelineStage.STYLIZING,
})

# Stages in which a generated mesh is available to view
MESH_STAGES = frozenset({
    PipelineStage.CAPTURED,
    PipelineStage.STYLIZING,
    PipelineStage.COMPLETE,
})


class ArtifactKind(Enum):
    """Intermediate and final outputs kept on an item."""

    MASK = "mask"
    DEPTH_MAP = "depthMap"
    MESH = "mesh"
    SCREENSHOT = "screenshot"
    STYLIZED_IMAGE = "stylizedImage"
    ENHANCED_IMAGE = "enhancedImage"


# Artifacts that become stale when the key artifact is (re)produced
ARTIFACT_DEPENDENTS: dict[ArtifactKind, tuple[ArtifactKind, ...]] = {
    ArtifactKind.ENHANCED_IMAGE: (
        ArtifactKind.MASK,
        ArtifactKind.DEPTH_MAP,
        ArtifactKind.MESH,
        ArtifactKind.SCREENSHOT,
        ArtifactKind.STYLIZED_IMAGE,
    ),
    ArtifactKind.MASK: (ArtifactKind.MESH, ArtifactKind.SCREENSHOT, ArtifactKind.STYLIZED_IMAGE),
    ArtifactKind.DEPTH_MAP: (ArtifactKind.MESH, ArtifactKind.SCREENSHOT, ArtifactKind.STYLIZED_IMAGE),
    ArtifactKind.MESH: (ArtifactKind.SCREENSHOT, ArtifactKind.STYLIZED_IMAGE),
    ArtifactKind.SCREENSHOT: (ArtifactKind.STYLIZED_IMAGE,),
    ArtifactKind.STYLIZED_IMAGE: (),
}


class MeshEngine(Enum):
    """Which image-to-3D service builds the mesh."""

    MESHY = "meshy"  # submit a job, then poll it
    TRELLIS = "trellis"  # single synchronous call


@dataclass
class GenerationOptions:
    """Options for the next generation / stylization call of an item."""

    engine: MeshEngine = MeshEngine.MESHY
    target_polycount: int = 20000
    symmetry_mode: str = "off"
    enable_pbr: bool = True
    should_remesh: bool = True
    topology: str = "triangle"
    texture_size: int = 1024
    mesh_simplify: float = 0.95
    texture_prompt: str = ""
    stylize_prompt: str = ""

    @classmethod
    def from_config(cls, config) -> "GenerationOptions":
        """Build options from the ``generation`` and ``services`` config groups."""
        gen = config.get_group("generation")
        return cls(
            engine=MeshEngine(config.get("services", "mesh_engine", "meshy")),
            target_polycount=int(gen.get("target_polycount", 20000)),
            symmetry_mode=gen.get("symmetry_mode", "off"),
            enable_pbr=bool(gen.get("enable_pbr", True)),
            should_remesh=bool(gen.get("should_remesh", True)),
            topology=gen.get("topology", "triangle"),
            texture_size=int(gen.get("texture_size", 1024)),
            mesh_simplify=float(gen.get("mesh_simplify", 0.95)),
        )


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ImageItem:
    """One floorplan moving through the pipeline."""

    source_ref: str
    id: str = field(default_factory=_new_id)
    stage: PipelineStage = PipelineStage.IDLE
    artifacts: dict[ArtifactKind, str] = field(default_factory=dict)
    job_id: str | None = None
    log: list[str] = field(default_factory=list)
    user_prompt: str = ""
    options: GenerationOptions = field(default_factory=GenerationOptions)
    failed_stage: PipelineStage | None = None
    history_task_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def busy(self) -> bool:
        return self.stage in BUSY_STAGES

    @property
    def mesh_url(self) -> str | None:
        return self.artifacts.get(ArtifactKind.MESH)

    def artifact(self, kind: ArtifactKind) -> str | None:
        return self.artifacts.get(kind)

    def add_log(self, message: str):
        self.log.append(message)

    def set_artifact(self, kind: ArtifactKind, value: str):
        """Store an artifact and drop everything that was derived from the old one."""
        self.invalidate_dependents(kind)
        self.artifacts[kind] = value

    def invalidate(self, kind: ArtifactKind):
        """Remove an artifact together with its dependents."""
        self.invalidate_dependents(kind)
        self.artifacts.pop(kind, None)

    def invalidate_dependents(self, kind: ArtifactKind):
        for dependent in ARTIFACT_DEPENDENTS[kind]:
            self.artifacts.pop(dependent, None)

    def to_dict(self) -> dict[str, Any]:
        """Plain-data snapshot, used by the CLI's JSON output."""
        return {
            "id": self.id,
            "source": self.source_ref if not self.source_ref.startswith("data:") else "<inline>",
            "stage": self.stage.value,
            "artifacts": {
                kind.value: (value if not value.startswith("data:") else "<inline>")
                for kind, value in self.artifacts.items()
            },
            "job_id": self.job_id,
            "log": list(self.log),
            "history_task_id": self.history_task_id,
        }
