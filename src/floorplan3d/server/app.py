"""Proxy server for the remote services.

Clients that should not hold vendor keys (a browser front end, or the CLI
with ``services.proxy_base_url`` set) talk to this app instead of the
vendors. It injects ``FAL_KEY``, ``MESHY_KEY`` and ``GOOGLE_API_KEY`` from
the server's environment and relays the vendor's answer unchanged:

    GET  /health              key presence and version
    GET  /proxy?url=          binary asset relay with open CORS headers
    POST /meshy               submit an image-to-3D task
    GET  /history             one task (?taskId=) or a page of past tasks
    POST /fal/{endpoint}      allow-listed fal.ai forwarder
    POST /enhance-image       Gemini floorplan enhancement
    POST /enhance-render      Gemini photoreal render of a captured view
"""

from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from loguru import logger
from pydantic import BaseModel

from floorplan3d.config.manager import ConfigManager
from floorplan3d.core.errors import ServiceError
from floorplan3d.services.gemini import GeminiImageEditor
from floorplan3d.services.images import is_data_uri
from floorplan3d.services.settings import ServiceSettings
from floorplan3d.version import __version__


class EnhanceImageRequest(BaseModel):
    image: str = ""
    prompt: str | None = None


class EnhanceRenderRequest(BaseModel):
    image: str = ""


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _relay_json(response: httpx.Response) -> Response:
    """Pass a vendor JSON answer (or its error) back with the vendor's status."""
    try:
        body: Any = response.json()
    except ValueError:
        return PlainTextResponse(response.text, status_code=response.status_code)
    return JSONResponse(body, status_code=response.status_code)


def _as_data_uri(image: str) -> str:
    return image if is_data_uri(image) else f"data:image/png;base64,{image}"


def create_app(
    settings: ServiceSettings,
    config: ConfigManager,
    upstream: httpx.AsyncClient | None = None,
    editor: GeminiImageEditor | None = None,
) -> FastAPI:
    """Build the proxy app.

    ``upstream`` is the client used to reach the vendors; one is created (and
    closed on shutdown) when not given.
    """
    owns_upstream = upstream is None
    client = upstream or httpx.AsyncClient(timeout=settings.timeout, follow_redirects=True)
    server_cfg = config.get_group("server")
    allowed_endpoints = set(server_cfg.get("allowed_fal_endpoints", []))
    cache_seconds = int(server_cfg.get("asset_cache_seconds", 3600))
    meshy_tasks_url = f"{settings.meshy_base_url}/image-to-3d"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Proxy server up ({len(allowed_endpoints)} fal endpoints allowed)")
        yield
        if owns_upstream:
            await client.aclose()

    app = FastAPI(
        title="floorplan3d proxy",
        description="Key-injecting relay for the floorplan3d remote services",
        version=__version__,
        lifespan=lifespan,
    )

    def get_editor() -> GeminiImageEditor | None:
        nonlocal editor
        if editor is None and settings.google_api_key:
            editor = GeminiImageEditor.from_config(settings, config)
        return editor

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        logger.error(f"{request.url.path}: {exc}")
        return _error(str(exc), exc.status_code or 502)

    @app.exception_handler(httpx.RequestError)
    async def transport_error_handler(request: Request, exc: httpx.RequestError):
        logger.error(f"{request.url.path}: upstream unreachable: {exc}")
        return _error(f"Upstream request failed: {exc}", 502)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "fal": bool(settings.fal_key),
            "meshy": bool(settings.meshy_key),
            "google": bool(settings.google_api_key),
        }

    @app.get("/proxy")
    async def proxy_asset(url: str | None = None):
        if not url:
            return PlainTextResponse("Missing URL param", status_code=400)

        upstream_response = await client.get(url)
        if upstream_response.status_code >= 400:
            logger.warning(f"Asset fetch failed ({upstream_response.status_code}): {url}")
            return PlainTextResponse(
                f"Failed to fetch remote asset: {upstream_response.status_code}",
                status_code=upstream_response.status_code,
            )

        return Response(
            content=upstream_response.content,
            media_type=upstream_response.headers.get("content-type", "model/gltf-binary"),
            headers={
                "Access-Control-Allow-Origin": "*",
                "Cache-Control": f"public, max-age={cache_seconds}",
            },
        )

    @app.post("/meshy")
    async def submit_mesh_task(request: Request):
        if not settings.meshy_key:
            return _error("Server Configuration Error: API Key missing", 500)
        try:
            body = await request.json()
        except ValueError:
            return _error("Invalid JSON body", 400)
        if not isinstance(body, dict) or not body.get("image_url"):
            return _error("Missing image_url", 400)

        logger.info("Relaying image-to-3D submit")
        upstream_response = await client.post(
            meshy_tasks_url, json=body,
            headers={"Authorization": f"Bearer {settings.meshy_key}"},
        )
        return _relay_json(upstream_response)

    @app.get("/history")
    async def mesh_history(taskId: str | None = None, page_num: int = 1, page_size: int = 10):
        if not settings.meshy_key:
            return _error("Server Configuration Error: API Key missing", 500)

        headers = {"Authorization": f"Bearer {settings.meshy_key}"}
        if taskId:
            upstream_response = await client.get(f"{meshy_tasks_url}/{taskId}", headers=headers)
        else:
            upstream_response = await client.get(
                meshy_tasks_url, headers=headers,
                params={"page_num": page_num, "page_size": page_size, "sort_by": "-created_at"},
            )
        return _relay_json(upstream_response)

    @app.post("/fal/{endpoint:path}")
    async def fal_forward(endpoint: str, request: Request):
        if endpoint not in allowed_endpoints:
            logger.warning(f"Rejected fal endpoint: {endpoint}")
            return _error(f"Endpoint not allowed: {endpoint}", 403)
        if not settings.fal_key:
            return _error("Server Configuration Error: FAL_KEY missing", 500)

        logger.info(f"Relaying fal call: {endpoint}")
        upstream_response = await client.post(
            f"{settings.fal_base_url}/{endpoint}",
            content=await request.body(),
            headers={
                "Authorization": f"Key {settings.fal_key}",
                "Content-Type": request.headers.get("content-type", "application/json"),
            },
        )
        return _relay_json(upstream_response)

    @app.post("/enhance-image")
    async def enhance_image(payload: EnhanceImageRequest):
        gemini = get_editor()
        if gemini is None:
            return _error("Server Config Error: GOOGLE_API_KEY missing", 500)
        if not payload.image:
            return _error("Missing image data", 400)

        enhanced = await gemini.enhance(_as_data_uri(payload.image), payload.prompt)
        return {"enhanced_image": enhanced, "note": "Enhanced by AI"}

    @app.post("/enhance-render")
    async def enhance_render(payload: EnhanceRenderRequest):
        gemini = get_editor()
        if gemini is None:
            return _error("Server Config Error: GOOGLE_API_KEY missing", 500)
        if not payload.image:
            return _error("Missing image data", 400)

        rendered = await gemini.render_photoreal(_as_data_uri(payload.image))
        return {"rendered_image": rendered, "message": "Photorealistic render generated"}

    return app


def run_server(settings: ServiceSettings, config: ConfigManager,
               host: str | None = None, port: int | None = None):
    """Serve the proxy with uvicorn (blocking)."""
    import uvicorn

    host = host or config.get("server", "host", "127.0.0.1")
    port = port or int(config.get("server", "port", 8787))
    logger.info(f"Starting proxy server on http://{host}:{port}")
    uvicorn.run(create_app(settings, config), host=host, port=port, log_level="warning")
