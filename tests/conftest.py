"""Shared test fixtures for floorplan3d."""

import asyncio
from pathlib import Path

import pytest
from PIL import Image

from floorplan3d.core.errors import PipelineError
from floorplan3d.services.adapter import JobStatus, Service
from floorplan3d.services.settings import ServiceSettings

MESH_URL = "https://assets.example.com/model.glb"


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Provide a temporary configuration directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def config_manager(tmp_config_dir):
    """Provide a ConfigManager with a temp directory."""
    from floorplan3d.config.manager import ConfigManager

    mgr = ConfigManager(config_dir=tmp_config_dir)
    mgr.load()
    return mgr


@pytest.fixture
def settings():
    """Direct (unproxied) settings with dummy keys."""
    return ServiceSettings(fal_key="fal-test", meshy_key="meshy-test", google_api_key="g-test")


@pytest.fixture
def floorplan_file(tmp_path):
    """A small PNG on disk standing in for an uploaded floorplan."""
    path = tmp_path / "plan.png"
    Image.new("RGB", (16, 12), "white").save(path)
    return path


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


class FakeAdapter:
    """In-memory stand-in for ``ServiceAdapter``.

    ``results`` maps a service to its return value or to an exception to
    raise; ``gates`` maps a service to an ``asyncio.Event`` the call waits on.
    """

    def __init__(self):
        self.calls: list[tuple[Service, dict]] = []
        self.results: dict[Service, object] = {
            Service.SEGMENTATION: "https://fal.example.com/mask.png",
            Service.DEPTH: "https://fal.example.com/depth.png",
            Service.MESH_GENERATION: MESH_URL,
            Service.IMAGE_TO_IMAGE: "https://fal.example.com/stylized.jpg",
        }
        self.gates: dict[Service, asyncio.Event] = {}
        self.submitted: list[dict] = []
        self.job_id = "job-1"

    def count(self, service: Service) -> int:
        return sum(1 for s, _ in self.calls if s is service)

    async def invoke(self, service, payload):
        service = Service(service)
        self.calls.append((service, payload))
        gate = self.gates.get(service)
        if gate is not None:
            await gate.wait()
        result = self.results[service]
        if isinstance(result, list):
            result = result.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def submit_mesh_job(self, payload):
        self.submitted.append(payload)
        return self.job_id

    async def fetch_asset(self, url):
        return b"asset:" + url.encode()


class ScriptedStatus:
    """Async status fetcher replaying a list of payloads (or exceptions)."""

    def __init__(self, payloads, on_call=None):
        self._payloads = list(payloads)
        self._on_call = on_call
        self.calls = 0

    async def __call__(self, job_id: str) -> JobStatus:
        self.calls += 1
        if self._on_call is not None:
            self._on_call(self.calls)
        payload = self._payloads.pop(0) if len(self._payloads) > 1 else self._payloads[0]
        if isinstance(payload, PipelineError):
            raise payload
        return JobStatus.from_payload(job_id, payload)


class FakeRenderer:
    """Frame renderer returning a solid image (or nothing)."""

    def __init__(self, color="gray", size=(32, 24), empty=False):
        self.color = color
        self.size = size
        self.empty = empty
        self.frames = 0

    def render_frame(self):
        self.frames += 1
        if self.empty:
            return None
        return Image.new("RGB", self.size, self.color)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def fake_renderer():
    return FakeRenderer()
