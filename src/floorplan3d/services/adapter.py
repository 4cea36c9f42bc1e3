"""Remote AI service adapter.

One ``ServiceAdapter`` per session wraps the HTTP calls to the hosted
inference services and turns their differently shaped responses into a
single URL (or data URI):

- segmentation, depth, synchronous mesh generation and image-to-image run
  on fal.ai's synchronous endpoints (``POST {fal}/{endpoint}``);
- the long-running mesh engine is Meshy's image-to-3D task API, which is
  submitted once and then polled (see ``floorplan3d.services.poller``).

When a proxy base URL is configured the adapter sends everything through
our proxy server instead and never sees the vendor keys.

The adapter never retries; every failure surfaces as ``ServiceError``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from loguru import logger

from floorplan3d.core.errors import ServiceError
from floorplan3d.core.items import GenerationOptions
from floorplan3d.services.extractors import (
    DEPTH_EXTRACTORS,
    IMAGE_EXTRACTORS,
    MASK_EXTRACTORS,
    MESH_EXTRACTORS,
    extract_first,
)
from floorplan3d.services.settings import ServiceSettings


class Service(Enum):
    """Services the adapter is allowed to call."""

    SEGMENTATION = "segmentation"
    DEPTH = "depth"
    MESH_GENERATION = "mesh-generation"
    IMAGE_TO_IMAGE = "image-to-image"


SERVICE_EXTRACTORS = {
    Service.SEGMENTATION: MASK_EXTRACTORS,
    Service.DEPTH: DEPTH_EXTRACTORS,
    Service.MESH_GENERATION: MESH_EXTRACTORS,
    Service.IMAGE_TO_IMAGE: IMAGE_EXTRACTORS,
}

# Meshy task states
TERMINAL_STATUSES = frozenset({"SUCCEEDED", "FAILED", "EXPIRED", "CANCELED"})


@dataclass
class JobStatus:
    """One observation of a mesh-generation job."""

    job_id: str
    status: str
    progress: int = 0
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"

    @property
    def mesh_url(self) -> str | None:
        return extract_first(self.payload, MESH_EXTRACTORS)

    @property
    def error_detail(self) -> str:
        error = self.payload.get("task_error") or self.payload.get("error") or {}
        if isinstance(error, dict):
            return str(error.get("message") or "")
        return str(error)

    @classmethod
    def from_payload(cls, job_id: str, payload: dict[str, Any]) -> "JobStatus":
        progress = payload.get("progress") or 0
        try:
            progress = int(progress)
        except (TypeError, ValueError):
            progress = 0
        return cls(
            job_id=str(payload.get("id") or job_id),
            status=str(payload.get("status", "")).upper(),
            progress=progress,
            payload=payload,
        )


# -------------------------------------------------------------------
# Request builders
# -------------------------------------------------------------------

def segmentation_request(image_url: str) -> dict[str, Any]:
    return {"image_url": image_url}


def depth_request(image_url: str) -> dict[str, Any]:
    return {"image_url": image_url}


def trellis_request(image_url: str, options: GenerationOptions) -> dict[str, Any]:
    return {
        "image_url": image_url,
        "texture_size": options.texture_size,
        "mesh_simplify": options.mesh_simplify,
    }


def meshy_request(image_url: str, options: GenerationOptions, prompt: str = "") -> dict[str, Any]:
    payload: dict[str, Any] = {
        "image_url": image_url,
        "enable_pbr": options.enable_pbr,
        "should_remesh": options.should_remesh,
        "topology": options.topology,
        "target_polycount": options.target_polycount,
        "symmetry_mode": options.symmetry_mode,
    }
    texture_prompt = options.texture_prompt or prompt
    if texture_prompt:
        payload["should_texture"] = True
        payload["texture_prompt"] = texture_prompt
    return payload


def stylize_request(image_url: str, prompt: str, stylize_cfg: dict[str, Any]) -> dict[str, Any]:
    return {
        "image_url": image_url,
        "prompt": prompt,
        "strength": stylize_cfg.get("strength", 0.75),
        "guidance_scale": stylize_cfg.get("guidance_scale", 2.5),
        "num_inference_steps": stylize_cfg.get("num_inference_steps", 40),
        "enable_safety_checker": stylize_cfg.get("enable_safety_checker", False),
        "output_format": stylize_cfg.get("output_format", "jpeg"),
    }


class ServiceAdapter:
    """Typed front for the remote inference endpoints."""

    def __init__(self, settings: ServiceSettings, client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.timeout, follow_redirects=True)

    @property
    def settings(self) -> ServiceSettings:
        return self._settings

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ServiceAdapter":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    # ---------------------------------------------------------------
    # Synchronous-result services
    # ---------------------------------------------------------------

    async def invoke(self, service: Service | str, payload: dict[str, Any]) -> str:
        """Run one service call and return its canonical result URL."""
        service = Service(service)
        endpoint = self._settings.endpoints[service.value]
        logger.info(f"Calling {service.value} ({endpoint})")

        data = await self._request_json(
            "POST", self._fal_url(endpoint), service.value,
            json=payload, headers=self._fal_headers(),
        )

        result = extract_first(data, SERVICE_EXTRACTORS[service])
        if result is None:
            keys = ", ".join(sorted(data)) if isinstance(data, dict) else type(data).__name__
            logger.warning(f"{service.value} response had no usable result field ({keys})")
            raise ServiceError(ServiceError.NO_RESULT_FIELD, detail=f"fields: {keys}",
                               service=service.value)

        logger.debug(f"{service.value} result: {result[:120]}")
        return result

    # ---------------------------------------------------------------
    # Mesh jobs (submit + poll)
    # ---------------------------------------------------------------

    async def submit_mesh_job(self, payload: dict[str, Any]) -> str:
        """Submit an image-to-3D job and return its job id."""
        if self._settings.proxied:
            url = f"{self._settings.proxy_base_url}/meshy"
        else:
            url = f"{self._settings.meshy_base_url}/image-to-3d"

        data = await self._request_json("POST", url, "mesh-generation",
                                        json=payload, headers=self._meshy_headers())
        job_id = None
        if isinstance(data, dict):
            job_id = data.get("result") or data.get("id") or data.get("task_id")
        if not job_id:
            raise ServiceError(ServiceError.NO_RESULT_FIELD, detail="no task id in submit response",
                               service="mesh-generation")

        logger.info(f"Mesh job submitted: {job_id}")
        return str(job_id)

    async def get_job_status(self, job_id: str) -> JobStatus:
        """Fetch the current state of a mesh job."""
        data = await self.get_job(job_id)
        return JobStatus.from_payload(job_id, data)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        """Raw vendor record for one job."""
        if self._settings.proxied:
            url = f"{self._settings.proxy_base_url}/history"
            params = {"taskId": job_id}
        else:
            url = f"{self._settings.meshy_base_url}/image-to-3d/{job_id}"
            params = None
        data = await self._request_json("GET", url, "mesh-status",
                                        params=params, headers=self._meshy_headers())
        if not isinstance(data, dict):
            raise ServiceError(ServiceError.NO_RESULT_FIELD, detail="job record is not an object",
                               service="mesh-status")
        return data

    async def list_jobs(self, page: int = 1, page_size: int = 10) -> list[dict[str, Any]]:
        """Raw vendor records of past jobs, newest first."""
        params = {"page_num": page, "page_size": page_size}
        if self._settings.proxied:
            url = f"{self._settings.proxy_base_url}/history"
        else:
            url = f"{self._settings.meshy_base_url}/image-to-3d"
            params["sort_by"] = "-created_at"

        data = await self._request_json("GET", url, "history",
                                        params=params, headers=self._meshy_headers())
        if isinstance(data, dict):
            # Some API versions wrap the list
            data = data.get("result") or data.get("data") or []
        if not isinstance(data, list):
            raise ServiceError(ServiceError.NO_RESULT_FIELD, detail="history is not a list",
                               service="history")
        return data

    # ---------------------------------------------------------------
    # Assets
    # ---------------------------------------------------------------

    async def fetch_asset(self, url: str) -> bytes:
        """Download a vendor-hosted file (through the proxy when configured)."""
        if self._settings.proxied:
            response = await self._send("GET", f"{self._settings.proxy_base_url}/proxy",
                                        "asset", params={"url": url})
        else:
            response = await self._send("GET", url, "asset")
        return response.content

    async def call_proxy(self, route: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to one of the proxy server's own routes (e.g. ``enhance-image``)."""
        if not self._settings.proxied:
            raise ServiceError(ServiceError.NETWORK, detail="no proxy configured", service=route)
        data = await self._request_json("POST", f"{self._settings.proxy_base_url}/{route}",
                                        route, json=payload)
        if not isinstance(data, dict):
            raise ServiceError(ServiceError.NO_RESULT_FIELD, detail="response is not an object",
                               service=route)
        return data

    # ---------------------------------------------------------------
    # Transport
    # ---------------------------------------------------------------

    def _fal_url(self, endpoint: str) -> str:
        if self._settings.proxied:
            return f"{self._settings.proxy_base_url}/fal/{endpoint}"
        return f"{self._settings.fal_base_url}/{endpoint}"

    def _fal_headers(self) -> dict[str, str]:
        if self._settings.proxied or not self._settings.fal_key:
            return {}
        return {"Authorization": f"Key {self._settings.fal_key}"}

    def _meshy_headers(self) -> dict[str, str]:
        if self._settings.proxied or not self._settings.meshy_key:
            return {}
        return {"Authorization": f"Bearer {self._settings.meshy_key}"}

    async def _send(self, method: str, url: str, service: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"{service}: network error calling {url}: {e}")
            raise ServiceError(ServiceError.NETWORK, detail=str(e), service=service) from e

        if response.status_code >= 400:
            detail = response.text[:300]
            logger.error(f"{service}: HTTP {response.status_code} from {url}: {detail}")
            raise ServiceError(ServiceError.HTTP_ERROR, detail=detail,
                               status_code=response.status_code, service=service)
        return response

    async def _request_json(self, method: str, url: str, service: str, **kwargs) -> Any:
        response = await self._send(method, url, service, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise ServiceError(ServiceError.NO_RESULT_FIELD, detail="response is not JSON",
                               service=service) from e
