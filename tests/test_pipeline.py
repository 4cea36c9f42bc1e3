"""Tests for the pipeline coordinator."""

import asyncio
from types import SimpleNamespace

import httpx
import pytest
from conftest import MESH_URL, FakeAdapter, FakeRenderer, ScriptedStatus

from floorplan3d.core.errors import (
    CaptureUnavailable,
    InvalidTransition,
    ItemBusy,
    JobError,
    ServiceError,
    UnknownItem,
)
from floorplan3d.core.items import ArtifactKind, GenerationOptions, MeshEngine, PipelineStage
from floorplan3d.core.pipeline import PipelineCoordinator, StagePolicy
from floorplan3d.services.adapter import JobStatus, Service
from floorplan3d.services.gemini import GeminiImageEditor
from floorplan3d.services.history import HistoryEntry
from floorplan3d.services.poller import JobPoller
from floorplan3d.viewer.capture import ViewCapture

PLAN_URL = "https://uploads.example.com/plan.png"
DEPTH_URL = "https://fal.example.com/depth.png"
RUNNING = {"status": "IN_PROGRESS", "progress": 40}
SUCCEEDED = {"status": "SUCCEEDED", "progress": 100, "model_urls": {"glb": MESH_URL}}
TRELLIS = GenerationOptions(engine=MeshEngine.TRELLIS)


def make_coordinator(adapter, fetch=None, renderer=None, **kwargs):
    poller = JobPoller(fetch or ScriptedStatus([SUCCEEDED]), interval=0)
    return PipelineCoordinator(adapter, poller, capture=ViewCapture(renderer), **kwargs)


class GatedStatus:
    """Reports the job as running until ``release`` is set."""

    def __init__(self):
        self.release = asyncio.Event()

    async def __call__(self, job_id):
        payload = SUCCEEDED if self.release.is_set() else RUNNING
        return JobStatus.from_payload(job_id, payload)


class FakeEnhancer:
    def __init__(self):
        self.enhanced = []
        self.rendered = []

    async def enhance(self, image, prompt=None):
        self.enhanced.append((image, prompt))
        return "data:image/png;base64,RU5IQU5DRUQ="

    async def render_photoreal(self, image):
        self.rendered.append(image)
        return "data:image/png;base64,UkVOREVS"


async def wait_for_job(item):
    while item.job_id is None:
        await asyncio.sleep(0)


class TestGeneration:
    def test_meshy_run_reaches_captured(self):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, ScriptedStatus([RUNNING, SUCCEEDED]))
        seen_jobs = []
        coord.add_listener(lambda item: seen_jobs.append(item.job_id))

        item = coord.add_upload(PLAN_URL, prompt="oak floors")
        result = asyncio.run(coord.start(item.id))

        assert result is item
        assert item.stage is PipelineStage.CAPTURED
        assert item.mesh_url == MESH_URL
        assert item.artifact(ArtifactKind.DEPTH_MAP) == DEPTH_URL
        assert item.job_id is None
        assert "job-1" in seen_jobs
        assert adapter.count(Service.DEPTH) == 1
        assert adapter.count(Service.SEGMENTATION) == 0
        assert adapter.submitted[0]["image_url"] == PLAN_URL
        assert adapter.submitted[0]["texture_prompt"] == "oak floors"
        assert any("40%" in line for line in item.log)

    def test_trellis_is_a_single_call(self):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))

        assert item.stage is PipelineStage.CAPTURED
        assert adapter.count(Service.MESH_GENERATION) == 1
        assert adapter.submitted == []

    def test_local_file_is_sent_inline(self, floorplan_file):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(str(floorplan_file))

        asyncio.run(coord.start(item.id))

        image_url = adapter.calls[0][1]["image_url"]
        assert image_url.startswith("data:image/png;base64,")

    def test_preprocessing_order(self):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS, preprocessing=["mask", "depth"])
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))

        assert [s for s, _ in adapter.calls] == [
            Service.SEGMENTATION, Service.DEPTH, Service.MESH_GENERATION,
        ]
        assert item.artifact(ArtifactKind.MASK) is not None

    def test_unknown_preprocessing_stage(self):
        with pytest.raises(ValueError):
            make_coordinator(FakeAdapter(), preprocessing=["edges"])

    def test_job_failure_enters_error(self):
        adapter = FakeAdapter()
        failed = {"status": "FAILED", "task_error": {"message": "oom"}}
        coord = make_coordinator(adapter, ScriptedStatus([RUNNING, failed]))
        errors = []
        coord.add_error_listener(lambda item, e: errors.append(e))
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))

        assert item.stage is PipelineStage.ERROR
        assert item.failed_stage is PipelineStage.MODELING
        assert item.job_id is None
        assert isinstance(errors[0], JobError)
        assert errors[0].reason == JobError.JOB_FAILED
        assert "oom" in item.log[-1]


class TestSingleJobInFlight:
    def test_busy_item_rejects_actions(self):
        adapter = FakeAdapter()
        fetch = GatedStatus()
        coord = PipelineCoordinator(adapter, JobPoller(fetch, interval=0.001))
        item = coord.add_upload(PLAN_URL)
        job_ids = set()
        coord.add_listener(lambda i: job_ids.add(i.job_id))

        async def scenario():
            task = asyncio.create_task(coord.start(item.id))
            await wait_for_job(item)
            assert item.stage is PipelineStage.MODELING
            with pytest.raises(ItemBusy):
                await coord.start(item.id)
            with pytest.raises(ItemBusy):
                await coord.regenerate(item.id)
            fetch.release.set()
            return await task

        assert asyncio.run(scenario()) is item
        assert len(adapter.submitted) == 1
        assert job_ids - {None} == {"job-1"}
        assert item.stage is PipelineStage.CAPTURED


class TestStaleResults:
    def test_removal_mid_poll_leaves_item_untouched(self):
        adapter = FakeAdapter()
        fetch = GatedStatus()
        coord = PipelineCoordinator(adapter, JobPoller(fetch, interval=0.001))
        item = coord.add_upload(PLAN_URL)
        notified = []
        coord.add_listener(notified.append)

        async def scenario():
            task = asyncio.create_task(coord.start(item.id))
            await wait_for_job(item)
            snapshot = (item.stage, list(item.log), dict(item.artifacts), item.job_id)
            notified.clear()
            assert coord.remove(item.id)
            fetch.release.set()
            return await task, snapshot

        result, snapshot = asyncio.run(scenario())

        assert result is None
        assert (item.stage, item.log, item.artifacts, item.job_id) == snapshot
        assert notified == []
        assert coord.items == []

    def test_removal_during_sync_call_drops_mesh(self):
        adapter = FakeAdapter()
        gate = asyncio.Event()
        adapter.gates[Service.MESH_GENERATION] = gate
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(PLAN_URL)

        async def scenario():
            task = asyncio.create_task(coord.start(item.id))
            while adapter.count(Service.MESH_GENERATION) == 0:
                await asyncio.sleep(0)
            coord.remove(item.id)
            gate.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert item.mesh_url is None
        assert item.stage is PipelineStage.MODELING

    def test_new_upload_supersedes_running_item(self):
        adapter = FakeAdapter()
        gate = asyncio.Event()
        adapter.gates[Service.DEPTH] = gate
        coord = make_coordinator(adapter, default_options=TRELLIS)
        first = coord.add_upload(PLAN_URL)

        async def scenario():
            task = asyncio.create_task(coord.start(first.id))
            while adapter.count(Service.DEPTH) == 0:
                await asyncio.sleep(0)
            second = coord.add_upload("https://uploads.example.com/other.png")
            gate.set()
            await task
            return second

        second = asyncio.run(scenario())

        assert coord.items == [second]
        assert second.stage is PipelineStage.IDLE
        assert second.artifacts == {}
        assert first.artifact(ArtifactKind.DEPTH_MAP) is None
        assert adapter.count(Service.MESH_GENERATION) == 0

    def test_failure_after_removal_is_not_reported(self):
        adapter = FakeAdapter()
        gate = asyncio.Event()
        adapter.gates[Service.MESH_GENERATION] = gate
        adapter.results[Service.MESH_GENERATION] = ServiceError(ServiceError.NETWORK)
        coord = make_coordinator(adapter, default_options=TRELLIS)
        errors = []
        coord.add_error_listener(lambda i, e: errors.append(e))
        item = coord.add_upload(PLAN_URL)

        async def scenario():
            task = asyncio.create_task(coord.start(item.id))
            while adapter.count(Service.MESH_GENERATION) == 0:
                await asyncio.sleep(0)
            coord.remove(item.id)
            gate.set()
            return await task

        assert asyncio.run(scenario()) is None
        assert errors == []
        assert item.stage is PipelineStage.MODELING


class TestArtifactReuse:
    def test_regenerate_reuses_depth_map(self):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(PLAN_URL)
        asyncio.run(coord.start(item.id))

        adapter.results[Service.MESH_GENERATION] = "https://fal.example.com/v2.glb"
        asyncio.run(coord.regenerate(item.id))

        assert adapter.count(Service.DEPTH) == 1
        assert adapter.count(Service.MESH_GENERATION) == 2
        assert item.artifact(ArtifactKind.DEPTH_MAP) == DEPTH_URL
        assert item.mesh_url == "https://fal.example.com/v2.glb"

    def test_restart_skips_cached_preprocessing(self):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(PLAN_URL)
        asyncio.run(coord.start(item.id))
        asyncio.run(coord.start(item.id))

        assert adapter.count(Service.DEPTH) == 1
        assert any("reusing previous result" in line for line in item.log)

    def test_regenerate_requires_a_previous_run(self):
        coord = make_coordinator(FakeAdapter())
        item = coord.add_upload(PLAN_URL)
        with pytest.raises(InvalidTransition):
            asyncio.run(coord.regenerate(item.id))


class TestCaptureAndStylize:
    def _generated(self, renderer=None, **kwargs):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, renderer=renderer, default_options=TRELLIS, **kwargs)
        item = coord.add_upload(PLAN_URL)
        asyncio.run(coord.start(item.id))
        return adapter, coord, item

    def test_new_screenshot_clears_stylized_image(self):
        renderer = FakeRenderer()
        adapter, coord, item = self._generated(renderer)

        assert coord.capture_view(item.id)
        assert item.artifact(ArtifactKind.SCREENSHOT).startswith("data:image/png")
        asyncio.run(coord.stylize(item.id, "cozy cabin"))
        assert item.stage is PipelineStage.COMPLETE
        assert item.artifact(ArtifactKind.STYLIZED_IMAGE) == "https://fal.example.com/stylized.jpg"

        assert coord.capture_view(item.id)
        assert item.artifact(ArtifactKind.STYLIZED_IMAGE) is None
        assert item.stage is PipelineStage.CAPTURED
        assert item.mesh_url == MESH_URL
        assert renderer.frames == 2

    def test_stylize_prompt_gets_suffix(self):
        stylize = {"default_prompt": "dollhouse", "prompt_suffix": "photorealistic"}
        adapter, coord, item = self._generated(FakeRenderer(), stylize_settings=stylize)
        coord.capture_view(item.id)
        asyncio.run(coord.stylize(item.id))

        payload = [p for s, p in adapter.calls if s is Service.IMAGE_TO_IMAGE][0]
        assert payload["prompt"] == "dollhouse, photorealistic"
        assert payload["image_url"] == item.artifact(ArtifactKind.SCREENSHOT)

    def test_gemini_backend_renders_photoreal(self):
        enhancer = FakeEnhancer()
        adapter, coord, item = self._generated(
            FakeRenderer(), enhancer=enhancer, stylize_settings={"backend": "gemini"}
        )
        coord.capture_view(item.id)
        asyncio.run(coord.stylize(item.id))

        assert item.artifact(ArtifactKind.STYLIZED_IMAGE) == "data:image/png;base64,UkVOREVS"
        assert enhancer.rendered == [item.artifact(ArtifactKind.SCREENSHOT)]
        assert adapter.count(Service.IMAGE_TO_IMAGE) == 0

    def test_stylize_needs_a_screenshot(self):
        _, coord, item = self._generated(FakeRenderer())
        with pytest.raises(InvalidTransition):
            asyncio.run(coord.stylize(item.id))

    def test_capture_unavailable(self):
        _, coord, item = self._generated(renderer=None)
        errors = []
        coord.add_error_listener(lambda i, e: errors.append(e))

        assert coord.capture_view(item.id) is False
        assert isinstance(errors[0], CaptureUnavailable)
        assert item.stage is PipelineStage.CAPTURED
        assert item.artifact(ArtifactKind.SCREENSHOT) is None

    def test_capture_before_model(self):
        coord = make_coordinator(FakeAdapter(), renderer=FakeRenderer())
        item = coord.add_upload(PLAN_URL)
        with pytest.raises(InvalidTransition):
            coord.capture_view(item.id)

    def test_failed_stylize_keeps_mesh_and_retries(self):
        renderer = FakeRenderer()
        adapter, coord, item = self._generated(renderer)
        coord.capture_view(item.id)
        adapter.results[Service.IMAGE_TO_IMAGE] = [
            ServiceError(ServiceError.HTTP_ERROR, status_code=500),
            "https://fal.example.com/stylized-2.jpg",
        ]

        asyncio.run(coord.stylize(item.id))
        assert item.stage is PipelineStage.ERROR
        assert item.failed_stage is PipelineStage.STYLIZING
        assert item.mesh_url == MESH_URL

        asyncio.run(coord.retry(item.id))
        assert item.stage is PipelineStage.COMPLETE
        assert item.artifact(ArtifactKind.STYLIZED_IMAGE) == "https://fal.example.com/stylized-2.jpg"
        assert adapter.count(Service.MESH_GENERATION) == 1


class TestHistorySelection:
    ENTRY = {
        "id": "task-9",
        "status": "SUCCEEDED",
        "model_urls": {"glb": "https://assets.example.com/task-9.glb"},
        "image_url": "https://uploads.example.com/task-9.png",
        "texture_prompt": "marble",
    }

    def test_history_entry_replaces_current_item(self):
        coord = make_coordinator(FakeAdapter())
        first = coord.add_upload(PLAN_URL)

        loaded = coord.load_history_entry(HistoryEntry.from_payload(self.ENTRY))

        assert coord.items == [loaded]
        assert coord.active is loaded
        assert loaded.stage is PipelineStage.COMPLETE
        assert loaded.mesh_url == "https://assets.example.com/task-9.glb"
        assert loaded.source_ref == "https://uploads.example.com/task-9.png"
        assert loaded.user_prompt == "marble"
        with pytest.raises(UnknownItem):
            coord.get(first.id)

    def test_unfinished_entry_is_rejected(self):
        coord = make_coordinator(FakeAdapter())
        entry = HistoryEntry.from_payload({"id": "t", "status": "IN_PROGRESS"})
        with pytest.raises(InvalidTransition):
            coord.load_history_entry(entry)

    def test_reopened_item_can_be_captured(self):
        coord = make_coordinator(FakeAdapter(), renderer=FakeRenderer())
        item = coord.load_history_entry(HistoryEntry.from_payload(self.ENTRY))
        assert coord.capture_view(item.id)
        assert item.stage is PipelineStage.CAPTURED


class TestStagePolicies:
    def test_skip_continues_without_artifact(self):
        adapter = FakeAdapter()
        adapter.results[Service.DEPTH] = ServiceError(ServiceError.HTTP_ERROR, status_code=500)
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))

        assert item.stage is PipelineStage.CAPTURED
        assert item.artifact(ArtifactKind.DEPTH_MAP) is None
        assert item.mesh_url == MESH_URL
        assert any("continuing without it" in line for line in item.log)

    def test_abort_fails_the_run(self):
        adapter = FakeAdapter()
        adapter.results[Service.DEPTH] = ServiceError(ServiceError.NETWORK, "reset")
        coord = make_coordinator(adapter, default_options=TRELLIS,
                                 policies={"depth": StagePolicy.ABORT})
        errors = []
        coord.add_error_listener(lambda i, e: errors.append(e))
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))

        assert item.stage is PipelineStage.ERROR
        assert item.failed_stage is PipelineStage.DEPTH_ESTIMATING
        assert adapter.count(Service.MESH_GENERATION) == 0
        assert errors[0].reason == ServiceError.NETWORK

    def test_policies_from_config(self, config_manager):
        config_manager.set("pipeline", "stage_policies", {"depth": "abort"})
        config_manager.set("services", "mesh_engine", "trellis")
        adapter = FakeAdapter()
        adapter.results[Service.DEPTH] = ServiceError(ServiceError.NETWORK)
        poller = JobPoller(ScriptedStatus([SUCCEEDED]), interval=0)
        coord = PipelineCoordinator.from_config(config_manager, adapter, poller)
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))

        assert item.stage is PipelineStage.ERROR
        assert item.options.engine is MeshEngine.TRELLIS


class TestRetry:
    def test_retry_after_modeling_failure_reuses_depth(self):
        adapter = FakeAdapter()
        adapter.results[Service.MESH_GENERATION] = [
            ServiceError(ServiceError.HTTP_ERROR, status_code=503),
            MESH_URL,
        ]
        coord = make_coordinator(adapter, default_options=TRELLIS)
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))
        assert item.stage is PipelineStage.ERROR
        assert item.failed_stage is PipelineStage.MODELING

        asyncio.run(coord.retry(item.id))
        assert item.stage is PipelineStage.CAPTURED
        assert item.failed_stage is None
        assert adapter.count(Service.DEPTH) == 1
        assert adapter.count(Service.MESH_GENERATION) == 2

    def test_retry_after_job_failure_submits_again(self):
        adapter = FakeAdapter()
        failed = {"status": "FAILED", "task_error": {"message": "oom"}}
        coord = make_coordinator(adapter, ScriptedStatus([failed, SUCCEEDED]))
        item = coord.add_upload(PLAN_URL)

        asyncio.run(coord.start(item.id))
        asyncio.run(coord.retry(item.id))

        assert item.stage is PipelineStage.CAPTURED
        assert len(adapter.submitted) == 2

    def test_retry_requires_error_stage(self):
        coord = make_coordinator(FakeAdapter())
        item = coord.add_upload(PLAN_URL)
        with pytest.raises(InvalidTransition):
            asyncio.run(coord.retry(item.id))


class TestEnhancement:
    def test_enhanced_image_feeds_generation(self, floorplan_file):
        adapter = FakeAdapter()
        enhancer = FakeEnhancer()
        coord = make_coordinator(adapter, default_options=TRELLIS, enhancer=enhancer)
        item = coord.add_upload(str(floorplan_file), prompt="wood floors")

        asyncio.run(coord.enhance(item.id))
        assert item.stage is PipelineStage.IDLE
        assert enhancer.enhanced[0][1] == "wood floors"
        assert enhancer.enhanced[0][0].startswith("data:image/png;base64,")

        asyncio.run(coord.start(item.id))
        assert adapter.calls[0][1]["image_url"] == "data:image/png;base64,RU5IQU5DRUQ="

    def test_skip_enhancement_uses_original(self):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS, enhancer=FakeEnhancer())
        item = coord.add_upload(PLAN_URL)
        item.artifacts[ArtifactKind.ENHANCED_IMAGE] = "data:image/png;base64,RU5IQU5DRUQ="

        asyncio.run(coord.start(item.id, skip_enhancement=True))
        assert adapter.calls[0][1]["image_url"] == PLAN_URL

    def test_new_enhancement_invalidates_generated_artifacts(self, floorplan_file):
        adapter = FakeAdapter()
        coord = make_coordinator(adapter, default_options=TRELLIS, enhancer=FakeEnhancer())
        item = coord.add_upload(str(floorplan_file))
        asyncio.run(coord.start(item.id))

        asyncio.run(coord.enhance(item.id))

        assert item.mesh_url is None
        assert item.artifact(ArtifactKind.DEPTH_MAP) is None
        assert item.stage is PipelineStage.IDLE

    def test_enhance_without_enhancer(self):
        coord = make_coordinator(FakeAdapter())
        item = coord.add_upload(PLAN_URL)
        with pytest.raises(InvalidTransition):
            asyncio.run(coord.enhance(item.id))

    def test_unreachable_gemini_enters_error(self, floorplan_file):
        async def refuse(model, contents):
            raise httpx.ConnectError("connection refused")

        client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=refuse)))
        coord = make_coordinator(FakeAdapter(), enhancer=GeminiImageEditor(client=client))
        errors = []
        coord.add_error_listener(lambda item, error: errors.append(error))
        item = coord.add_upload(str(floorplan_file))

        asyncio.run(coord.enhance(item.id))

        assert item.stage is PipelineStage.ERROR
        assert not item.busy
        assert item.failed_stage is PipelineStage.ENHANCING
        assert errors[0].reason == ServiceError.NETWORK

    def test_unexpected_exception_does_not_strand_item(self, floorplan_file):
        class BrokenEnhancer(FakeEnhancer):
            async def enhance(self, image, prompt=None):
                raise RuntimeError("boom")

        coord = make_coordinator(FakeAdapter(), enhancer=BrokenEnhancer())
        errors = []
        coord.add_error_listener(lambda item, error: errors.append(error))
        item = coord.add_upload(str(floorplan_file))

        asyncio.run(coord.enhance(item.id))

        assert item.stage is PipelineStage.ERROR
        assert isinstance(errors[0], RuntimeError)
        asyncio.run(coord.retry(item.id))
        assert len(errors) == 2


def test_unknown_item():
    coord = make_coordinator(FakeAdapter())
    with pytest.raises(UnknownItem):
        asyncio.run(coord.start("missing"))
    assert coord.remove("missing") is False


def test_listener_errors_do_not_break_the_run():
    adapter = FakeAdapter()
    coord = make_coordinator(adapter, default_options=TRELLIS)

    def broken(item):
        raise RuntimeError("listener bug")

    coord.add_listener(broken)
    item = coord.add_upload(PLAN_URL)
    asyncio.run(coord.start(item.id))
    assert item.stage is PipelineStage.CAPTURED
