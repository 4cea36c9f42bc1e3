"""Gemini image editing: floorplan enhancement and photoreal rendering.

Both operations send one image plus an instruction to a Gemini image model
and expect an image back. A response without an inline image is a
``ServiceError(no-result-field)``.
"""

import asyncio
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from loguru import logger

from floorplan3d.core.errors import ServiceError
from floorplan3d.services.images import bytes_to_data_uri, split_data_uri

DEFAULT_MODEL = "nano-banana-pro-preview"

_FLOORPLAN_NOTES = (
    "The original image is a floorplan diagram, not a photograph, doors to the outside are "
    "represented as with an angle and a swing arc line, closet doors are represented as a W "
    "as if it's an accordian door. Make the walls realistically seem like 10 foot walls with "
    "wall space above the windows and doors, do not represent only half the walls, show at "
    "least 2 feet of wall above the windows and doors as well. Remove all text from the image. "
    "Add the appropriate colors for the rooms and furniture, and give it a 3D birdseye view "
    "from above. Return ONLY the image."
)

RENDER_PROMPT = (
    "Generate a photorealistic version of this 3D model screenshot. Make it look like a real "
    "photograph of an interior space. Improve lighting, textures, and shadows to be highly "
    "realistic. Maintain the perspective and layout exactly. Return ONLY the image."
)


def build_enhance_prompt(user_prompt: str | None = None) -> str:
    """Instruction for the floorplan enhancement call."""
    if user_prompt:
        return (
            "Generate a high-quality image of this floorplan based on these instructions: "
            f"{user_prompt}. {_FLOORPLAN_NOTES}"
        )
    return (
        "Generate a high-quality, enhanced version of this floorplan image. Increase contrast, "
        "sharpen lines, remove noise, and define walls clearly. " + _FLOORPLAN_NOTES
    )


class GeminiImageEditor:
    """Image-in, image-out calls against a Gemini image model."""

    def __init__(self, api_key: str = "", model: str = DEFAULT_MODEL, timeout: float = 120.0,
                 client: Any = None):
        if client is None:
            if not api_key:
                raise ValueError("GOOGLE_API_KEY is not set")
            client = genai.Client(api_key=api_key)
        self._client = client
        self._model = model
        self._timeout = timeout

    @classmethod
    def from_config(cls, settings, config) -> "GeminiImageEditor":
        return cls(
            api_key=settings.google_api_key,
            model=config.get("enhance", "model", DEFAULT_MODEL),
            timeout=float(config.get("enhance", "timeout_seconds", 120.0)),
        )

    async def enhance(self, image_data_uri: str, prompt: str | None = None) -> str:
        """Return an enhanced floorplan as a data URI."""
        return await self._edit(image_data_uri, build_enhance_prompt(prompt), "enhance")

    async def render_photoreal(self, image_data_uri: str) -> str:
        """Return a photorealistic rendering of a captured 3D view as a data URI."""
        return await self._edit(image_data_uri, RENDER_PROMPT, "photoreal-render")

    async def _edit(self, image_data_uri: str, instruction: str, operation: str) -> str:
        mime_type, raw = split_data_uri(image_data_uri)
        logger.info(f"Gemini {operation} ({self._model}, {len(raw)} bytes in)")

        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._model,
                    contents=[instruction, types.Part.from_bytes(data=raw, mime_type=mime_type)],
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ServiceError(ServiceError.NETWORK, detail=f"timed out after {self._timeout}s",
                               service=operation) from e
        except genai_errors.APIError as e:
            raise ServiceError(ServiceError.HTTP_ERROR, detail=str(e.message or e),
                               status_code=e.code, service=operation) from e
        except httpx.HTTPError as e:
            logger.error(f"Gemini {operation}: network error: {e}")
            raise ServiceError(ServiceError.NETWORK, detail=str(e), service=operation) from e

        for candidate in response.candidates or []:
            content = candidate.content
            for part in (content.parts if content else None) or []:
                if part.inline_data is not None and part.inline_data.data:
                    out_mime = part.inline_data.mime_type or "image/png"
                    logger.info(f"Gemini {operation} returned {len(part.inline_data.data)} bytes")
                    return bytes_to_data_uri(part.inline_data.data, out_mime)

        text = response.text or ""
        logger.warning(f"Gemini {operation} returned no image: {text[:200]}")
        raise ServiceError(ServiceError.NO_RESULT_FIELD, detail=text[:200] or "no image returned",
                           service=operation)


class ProxyImageEditor:
    """Same operations as ``GeminiImageEditor``, run by the proxy server."""

    def __init__(self, adapter):
        self._adapter = adapter

    async def enhance(self, image_data_uri: str, prompt: str | None = None) -> str:
        data = await self._adapter.call_proxy("enhance-image",
                                              {"image": image_data_uri, "prompt": prompt})
        return _image_field(data, "enhanced_image", "enhance-image")

    async def render_photoreal(self, image_data_uri: str) -> str:
        data = await self._adapter.call_proxy("enhance-render", {"image": image_data_uri})
        return _image_field(data, "rendered_image", "enhance-render")


def _image_field(data: dict, key: str, service: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ServiceError(ServiceError.NO_RESULT_FIELD, detail=f"missing {key}", service=service)
    return value


def make_image_editor(settings, config, adapter):
    """Pick the editor for this session, or None when enhancement is unavailable."""
    if settings.proxied:
        return ProxyImageEditor(adapter)
    if settings.google_api_key:
        return GeminiImageEditor.from_config(settings, config)
    logger.info("GOOGLE_API_KEY is not set - enhancement and photoreal rendering disabled")
    return None
