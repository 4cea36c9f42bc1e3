"""Pipeline coordinator for floorplan3d.

Drives each ``ImageItem`` through the remote calls that turn a floorplan
into a 3D model:

    idle -> uploading -> [masking] -> [depth-estimating] -> modeling -> captured
    captured --capture view--> captured (screenshot set)
    captured --stylize--> stylizing -> complete
    any failure -> error --retry--> idle -> the failed action again

plus the optional enhancement branch ``idle -> enhancing -> idle``.

All actions run on one asyncio event loop. Every action takes a fresh
epoch for its item; after each ``await`` the coordinator checks that the
item still exists and that the epoch is unchanged before writing anything,
so results for items that were removed or replaced are dropped.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from loguru import logger

from floorplan3d.config.manager import ConfigManager
from floorplan3d.core.errors import (
    CaptureUnavailable,
    InvalidTransition,
    ItemBusy,
    PipelineError,
    PollCancelled,
    UnknownItem,
)
from floorplan3d.core.items import (
    ArtifactKind,
    GenerationOptions,
    ImageItem,
    MeshEngine,
    PipelineStage,
)
from floorplan3d.services.adapter import (
    Service,
    ServiceAdapter,
    depth_request,
    meshy_request,
    segmentation_request,
    stylize_request,
    trellis_request,
)
from floorplan3d.services.history import HistoryEntry
from floorplan3d.services.images import bytes_to_data_uri, is_data_uri, is_remote, to_transferable
from floorplan3d.services.poller import JobPoller
from floorplan3d.viewer.capture import ViewCapture


class StagePolicy(Enum):
    """What a failed preprocessing stage does to the run."""

    SKIP = "skip"  # log it and continue without the artifact
    ABORT = "abort"  # fail the whole run


@dataclass(frozen=True)
class PreprocessStep:
    """A stage that runs before mesh generation."""

    name: str
    stage: PipelineStage
    service: Service
    artifact: ArtifactKind
    label: str
    build_request: Callable[[str], dict]


PREPROCESS_STEPS: dict[str, PreprocessStep] = {
    "mask": PreprocessStep(
        name="mask",
        stage=PipelineStage.MASKING,
        service=Service.SEGMENTATION,
        artifact=ArtifactKind.MASK,
        label="Segmenting floorplan",
        build_request=segmentation_request,
    ),
    "depth": PreprocessStep(
        name="depth",
        stage=PipelineStage.DEPTH_ESTIMATING,
        service=Service.DEPTH,
        artifact=ArtifactKind.DEPTH_MAP,
        label="Generating depth map",
        build_request=depth_request,
    ),
}

_STARTABLE = frozenset({
    PipelineStage.IDLE,
    PipelineStage.CAPTURED,
    PipelineStage.COMPLETE,
    PipelineStage.ERROR,
})
_REGENERABLE = frozenset({PipelineStage.CAPTURED, PipelineStage.COMPLETE, PipelineStage.ERROR})
_ENHANCEABLE = frozenset({PipelineStage.IDLE, PipelineStage.CAPTURED, PipelineStage.COMPLETE})
_VIEWABLE = frozenset({PipelineStage.CAPTURED, PipelineStage.COMPLETE})

ChangeListener = Callable[[ImageItem], None]
ErrorListener = Callable[[ImageItem, Exception], None]


class _Superseded(Exception):
    """The item was removed or re-actioned while a call was in flight."""


class PipelineCoordinator:
    """Owns the active pipeline items and every transition between stages."""

    def __init__(
        self,
        adapter: ServiceAdapter,
        poller: JobPoller,
        capture: ViewCapture | None = None,
        enhancer=None,
        preprocessing: list[str] | None = None,
        policies: dict[str, StagePolicy | str] | None = None,
        default_options: GenerationOptions | None = None,
        stylize_settings: dict | None = None,
        skip_enhancement: bool = False,
    ):
        self._adapter = adapter
        self._poller = poller
        self._capture = capture
        self._enhancer = enhancer
        self._default_options = default_options or GenerationOptions()
        self._stylize = stylize_settings or {}
        self._skip_enhancement = skip_enhancement

        policies = policies or {}
        self._preprocessing: list[tuple[PreprocessStep, StagePolicy]] = []
        for name in (["depth"] if preprocessing is None else preprocessing):
            if name not in PREPROCESS_STEPS:
                raise ValueError(f"Unknown preprocessing stage: {name}")
            policy = StagePolicy(policies.get(name, StagePolicy.SKIP))
            self._preprocessing.append((PREPROCESS_STEPS[name], policy))

        self._items: dict[str, ImageItem] = {}
        self._epochs: dict[str, int] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._listeners: list[ChangeListener] = []
        self._error_listeners: list[ErrorListener] = []

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        adapter: ServiceAdapter,
        poller: JobPoller,
        capture: ViewCapture | None = None,
        enhancer=None,
    ) -> "PipelineCoordinator":
        pipeline_cfg = config.get_group("pipeline")
        return cls(
            adapter,
            poller,
            capture=capture,
            enhancer=enhancer,
            preprocessing=list(pipeline_cfg.get("preprocessing", ["depth"])),
            policies=dict(pipeline_cfg.get("stage_policies", {})),
            default_options=GenerationOptions.from_config(config),
            stylize_settings=config.get_group("stylize"),
            skip_enhancement=bool(pipeline_cfg.get("skip_enhancement", False)),
        )

    # ---------------------------------------------------------------
    # Items
    # ---------------------------------------------------------------

    @property
    def items(self) -> list[ImageItem]:
        return list(self._items.values())

    @property
    def active(self) -> ImageItem | None:
        """The item being worked on (only one is kept at a time)."""
        return next(reversed(self._items.values()), None)

    def get(self, item_id: str) -> ImageItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise UnknownItem(item_id) from None

    def add_upload(self, source_ref: str, prompt: str = "",
                   options: GenerationOptions | None = None) -> ImageItem:
        """Start a new context for an uploaded floorplan (replaces current items)."""
        self.clear()
        item = ImageItem(
            source_ref=source_ref,
            user_prompt=prompt,
            options=options or replace(self._default_options),
        )
        item.add_log("Floorplan added")
        self._register(item)
        logger.info(f"New item {item.id} from {'inline image' if is_data_uri(source_ref) else source_ref}")
        self._notify(item)
        return item

    def load_history_entry(self, entry: HistoryEntry) -> ImageItem:
        """Reopen a past job as a finished item (replaces current items)."""
        if not entry.reopenable:
            raise InvalidTransition(f"History entry {entry.task_id} has no finished mesh")

        self.clear()
        item = ImageItem(
            source_ref=entry.preview_ref,
            stage=PipelineStage.COMPLETE,
            user_prompt=entry.prompt,
            options=replace(self._default_options),
            history_task_id=entry.task_id,
        )
        item.artifacts[ArtifactKind.MESH] = entry.mesh_url
        item.add_log(f"Reopened job {entry.task_id} from history")
        self._register(item)
        logger.info(f"Loaded history entry {entry.task_id} as item {item.id}")
        self._notify(item)
        return item

    def remove(self, item_id: str) -> bool:
        """Drop an item; its poll loop stops and in-flight results are ignored."""
        item = self._items.pop(item_id, None)
        if item is None:
            return False
        self._epochs.pop(item_id, None)
        event = self._cancel_events.pop(item_id, None)
        if event is not None:
            event.set()
        logger.info(f"Removed item {item_id} (stage {item.stage.value})")
        return True

    def clear(self):
        for item_id in list(self._items):
            self.remove(item_id)

    # ---------------------------------------------------------------
    # Listeners
    # ---------------------------------------------------------------

    def add_listener(self, callback: ChangeListener):
        """Register ``callback(item)``, called after every state change."""
        self._listeners.append(callback)

    def add_error_listener(self, callback: ErrorListener):
        """Register ``callback(item, error)`` for failures the user must see."""
        self._error_listeners.append(callback)

    def _notify(self, item: ImageItem):
        for listener in self._listeners:
            try:
                listener(item)
            except Exception as e:
                logger.error(f"Pipeline listener error: {e}")

    def _notify_error(self, item: ImageItem, error: Exception):
        for listener in self._error_listeners:
            try:
                listener(item, error)
            except Exception as e:
                logger.error(f"Pipeline error listener failed: {e}")

    # ---------------------------------------------------------------
    # Actions
    # ---------------------------------------------------------------

    async def start(self, item_id: str, skip_enhancement: bool | None = None) -> ImageItem | None:
        """Run preprocessing and mesh generation.

        Preprocessing stages whose artifact already exists are not re-run.
        Returns the item, or None if it was removed while running.
        """
        item = self._guard(item_id, _STARTABLE)
        epoch = self._next_epoch(item)
        body = self._generate(item, epoch, self._skip(skip_enhancement), preprocess=True)
        return await self._run(item, epoch, body)

    async def regenerate(self, item_id: str, skip_enhancement: bool | None = None) -> ImageItem | None:
        """Build the mesh again, reusing every upstream artifact as-is."""
        item = self._guard(item_id, _REGENERABLE)
        epoch = self._next_epoch(item)
        body = self._generate(item, epoch, self._skip(skip_enhancement), preprocess=False)
        return await self._run(item, epoch, body)

    async def enhance(self, item_id: str, prompt: str | None = None) -> ImageItem | None:
        """Produce an enhanced floorplan that the next generation will use."""
        item = self._guard(item_id, _ENHANCEABLE)
        if self._enhancer is None:
            raise InvalidTransition("Image enhancement is not configured")
        epoch = self._next_epoch(item)
        return await self._run(item, epoch, self._enhance(item, epoch, prompt))

    def capture_view(self, item_id: str) -> bool:
        """Store a screenshot of the current 3D view on the item.

        Returns False (and tells the error listeners) when no view is mounted.
        """
        item = self._guard(item_id, _VIEWABLE)
        if item.mesh_url is None:
            raise InvalidTransition("No 3D model to capture")

        screenshot = self._capture.capture_current_view() if self._capture else None
        if screenshot is None:
            error = CaptureUnavailable("Could not access the 3D viewer")
            item.add_log("Capture failed: 3D viewer not available")
            logger.warning(f"Item {item.id}: capture unavailable")
            self._notify(item)
            self._notify_error(item, error)
            return False

        # A new view makes the previous stylized render stale
        item.set_artifact(ArtifactKind.SCREENSHOT, screenshot)
        item.stage = PipelineStage.CAPTURED
        item.add_log("Captured current view")
        self._notify(item)
        return True

    async def stylize(self, item_id: str, prompt: str | None = None) -> ImageItem | None:
        """Turn the captured view into a stylized / photoreal render."""
        item = self._guard(item_id, _VIEWABLE)
        if item.artifact(ArtifactKind.SCREENSHOT) is None:
            raise InvalidTransition("No captured image to stylize")
        epoch = self._next_epoch(item)
        return await self._run(item, epoch, self._stylize_view(item, epoch, prompt))

    async def retry(self, item_id: str) -> ImageItem | None:
        """Go back to idle and re-run whatever action failed.

        Artifacts produced before the failure are kept and reused.
        """
        item = self._guard(item_id, {PipelineStage.ERROR})
        failed = item.failed_stage
        item.stage = PipelineStage.IDLE
        item.add_log(f"Retrying {failed.value if failed else 'pipeline'}")
        self._notify(item)

        epoch = self._next_epoch(item)
        if failed is PipelineStage.STYLIZING and item.artifact(ArtifactKind.SCREENSHOT):
            body = self._stylize_view(item, epoch, None)
        elif failed is PipelineStage.ENHANCING:
            body = self._enhance(item, epoch, None)
        else:
            body = self._generate(item, epoch, self._skip(None),
                                  preprocess=failed is not PipelineStage.MODELING)
        return await self._run(item, epoch, body)

    # ---------------------------------------------------------------
    # Action bodies
    # ---------------------------------------------------------------

    async def _generate(self, item: ImageItem, epoch: int, skip_enhancement: bool,
                        preprocess: bool):
        item.failed_stage = None
        item.invalidate(ArtifactKind.MESH)
        self._set_stage(item, PipelineStage.UPLOADING, "> Preparing image...")

        enhanced = item.artifact(ArtifactKind.ENHANCED_IMAGE)
        if enhanced and not skip_enhancement:
            item.add_log("Using enhanced floorplan")
            image_url = enhanced
        else:
            image_url = to_transferable(item.source_ref)

        if preprocess:
            for step, policy in self._preprocessing:
                await self._preprocess(item, epoch, step, policy, image_url)

        engine = item.options.engine
        self._set_stage(item, PipelineStage.MODELING, f"> Generating 3D model ({engine.value})...")

        if engine is MeshEngine.MESHY:
            mesh_url = await self._model_with_job(item, epoch, image_url)
        else:
            mesh_url = await self._adapter.invoke(
                Service.MESH_GENERATION, trellis_request(image_url, item.options)
            )
            self._check(item, epoch)

        item.set_artifact(ArtifactKind.MESH, mesh_url)
        self._set_stage(item, PipelineStage.CAPTURED, "3D model ready")
        logger.info(f"Item {item.id}: mesh ready at {mesh_url}")

    async def _preprocess(self, item: ImageItem, epoch: int, step: PreprocessStep,
                          policy: StagePolicy, image_url: str):
        if item.artifact(step.artifact) is not None:
            item.add_log(f"{step.label}: reusing previous result")
            return

        self._set_stage(item, step.stage, f"> {step.label}...")
        try:
            result = await self._adapter.invoke(step.service, step.build_request(image_url))
        except PipelineError as e:
            self._check(item, epoch)
            if policy is StagePolicy.ABORT:
                raise
            item.add_log(f"{step.label} failed, continuing without it: {e}")
            logger.warning(f"Item {item.id}: {step.name} skipped after failure: {e}")
            self._notify(item)
            return

        self._check(item, epoch)
        item.set_artifact(step.artifact, result)
        item.add_log(f"{step.label}: done")
        self._notify(item)

    async def _model_with_job(self, item: ImageItem, epoch: int, image_url: str) -> str:
        job_id = await self._adapter.submit_mesh_job(
            meshy_request(image_url, item.options, item.user_prompt)
        )
        self._check(item, epoch)
        item.job_id = job_id
        item.add_log(f"Job {job_id} submitted")
        self._notify(item)

        last_progress = -1

        def on_update(progress: int, status: str):
            nonlocal last_progress
            if not self._live(item, epoch) or progress == last_progress:
                return
            last_progress = progress
            item.add_log(f"Modeling: {status.lower()} {progress}%")
            self._notify(item)

        try:
            result = await self._poller.poll_until_terminal(
                job_id, on_update=on_update, cancel_event=self._cancel_events.get(item.id)
            )
        finally:
            if self._live(item, epoch):
                item.job_id = None
        self._check(item, epoch)
        return result.mesh_url

    async def _enhance(self, item: ImageItem, epoch: int, prompt: str | None):
        if self._enhancer is None:
            raise InvalidTransition("Image enhancement is not configured")
        item.failed_stage = None
        self._set_stage(item, PipelineStage.ENHANCING, "> Enhancing floorplan...")

        source = item.source_ref
        if is_remote(source):
            source = bytes_to_data_uri(await self._adapter.fetch_asset(source))
            self._check(item, epoch)
        else:
            source = to_transferable(source)

        enhanced = await self._enhancer.enhance(source, prompt or item.user_prompt or None)
        self._check(item, epoch)
        item.set_artifact(ArtifactKind.ENHANCED_IMAGE, enhanced)
        self._set_stage(item, PipelineStage.IDLE, "Enhanced floorplan ready")

    async def _stylize_view(self, item: ImageItem, epoch: int, prompt: str | None):
        item.failed_stage = None
        item.invalidate(ArtifactKind.STYLIZED_IMAGE)
        screenshot = item.artifact(ArtifactKind.SCREENSHOT)
        backend = self._stylize.get("backend", "flux")
        self._set_stage(item, PipelineStage.STYLIZING, f"> Stylizing view ({backend})...")

        if backend == "gemini":
            if self._enhancer is None:
                raise InvalidTransition("Gemini rendering is not configured")
            rendered = await self._enhancer.render_photoreal(screenshot)
        else:
            full_prompt = self.stylize_prompt(item, prompt)
            rendered = await self._adapter.invoke(
                Service.IMAGE_TO_IMAGE, stylize_request(screenshot, full_prompt, self._stylize)
            )

        self._check(item, epoch)
        item.set_artifact(ArtifactKind.STYLIZED_IMAGE, rendered)
        self._set_stage(item, PipelineStage.COMPLETE, "Stylized render ready")

    def stylize_prompt(self, item: ImageItem, prompt: str | None = None) -> str:
        """User (or default) style prompt followed by the fixed quality suffix."""
        base = prompt or item.options.stylize_prompt or self._stylize.get("default_prompt", "")
        suffix = self._stylize.get("prompt_suffix", "")
        return f"{base}, {suffix}" if suffix else base

    # ---------------------------------------------------------------
    # Plumbing
    # ---------------------------------------------------------------

    def _register(self, item: ImageItem):
        self._items[item.id] = item
        self._epochs[item.id] = 0

    def _guard(self, item_id: str, allowed) -> ImageItem:
        item = self.get(item_id)
        if item.busy:
            raise ItemBusy(f"Item {item_id} is {item.stage.value}")
        if item.stage not in allowed:
            raise InvalidTransition(f"Cannot do that while item is {item.stage.value}")
        return item

    def _next_epoch(self, item: ImageItem) -> int:
        epoch = self._epochs[item.id] + 1
        self._epochs[item.id] = epoch
        self._cancel_events[item.id] = asyncio.Event()
        return epoch

    def _live(self, item: ImageItem, epoch: int) -> bool:
        return self._items.get(item.id) is item and self._epochs.get(item.id) == epoch

    def _check(self, item: ImageItem, epoch: int):
        if not self._live(item, epoch):
            raise _Superseded(item.id)

    def _set_stage(self, item: ImageItem, stage: PipelineStage, message: str | None = None):
        item.stage = stage
        if message:
            item.add_log(message)
        self._notify(item)

    def _skip(self, skip_enhancement: bool | None) -> bool:
        return self._skip_enhancement if skip_enhancement is None else skip_enhancement

    async def _run(self, item: ImageItem, epoch: int, action) -> ImageItem | None:
        """Await an action body, turning failures into the error stage."""
        try:
            await action
        except _Superseded:
            logger.debug(f"Item {item.id} went away; dropping late result")
            return None
        except PollCancelled:
            logger.debug(f"Polling for item {item.id} cancelled")
            return None
        except (PipelineError, OSError, ValueError) as e:
            if not self._live(item, epoch):
                return None
            self._fail(item, e)
        except Exception as e:
            if not self._live(item, epoch):
                return None
            logger.exception(f"Unexpected failure on item {item.id}")
            self._fail(item, e)
        return item

    def _fail(self, item: ImageItem, error: Exception):
        item.failed_stage = item.stage
        item.job_id = None
        item.stage = PipelineStage.ERROR
        item.add_log(f"Error: {error}")
        logger.error(f"Item {item.id} failed during {item.failed_stage.value}: {error}")
        self._notify(item)
        self._notify_error(item, error)
