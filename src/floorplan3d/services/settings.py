"""Connection settings for the remote services.

``ServiceSettings`` is built once per session and handed to the adapter,
the history client and the proxy server. API keys come from the
environment (a ``.env`` file in the working directory is honored), never
from the JSON config file.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv
from loguru import logger

from floorplan3d.config.manager import ConfigManager


def _mask(token: str) -> str:
    if not token:
        return ""
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


@dataclass(frozen=True)
class ServiceSettings:
    """Endpoints, credentials and timeouts for every vendor we talk to."""

    fal_key: str = ""
    meshy_key: str = ""
    google_api_key: str = ""
    fal_base_url: str = "https://fal.run"
    meshy_base_url: str = "https://api.meshy.ai/openapi/v1"
    proxy_base_url: str = ""
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "segmentation": "fal-ai/sam2/auto-segment",
        "depth": "fal-ai/image-preprocessors/zoe",
        "mesh-generation": "fal-ai/trellis",
        "image-to-image": "fal-ai/flux/dev/image-to-image",
    })
    timeout: float = 120.0

    @property
    def proxied(self) -> bool:
        """True when vendor calls go through our proxy server."""
        return bool(self.proxy_base_url)

    @classmethod
    def from_config(cls, config: ConfigManager, load_env: bool = True) -> "ServiceSettings":
        """Combine the ``services`` config group with keys from the environment."""
        if load_env:
            load_dotenv()

        svc = config.get_group("services")
        settings = cls(
            fal_key=os.getenv("FAL_KEY", ""),
            meshy_key=os.getenv("MESHY_KEY") or os.getenv("MESHY_API_KEY", ""),
            google_api_key=os.getenv("GOOGLE_API_KEY", ""),
            fal_base_url=svc.get("fal_base_url", cls.fal_base_url).rstrip("/"),
            meshy_base_url=svc.get("meshy_base_url", cls.meshy_base_url).rstrip("/"),
            proxy_base_url=(svc.get("proxy_base_url") or "").rstrip("/"),
            endpoints={
                "segmentation": svc.get("segmentation_endpoint", "fal-ai/sam2/auto-segment"),
                "depth": svc.get("depth_endpoint", "fal-ai/image-preprocessors/zoe"),
                "mesh-generation": svc.get("trellis_endpoint", "fal-ai/trellis"),
                "image-to-image": svc.get("image_to_image_endpoint", "fal-ai/flux/dev/image-to-image"),
            },
            timeout=float(svc.get("request_timeout_seconds", 120.0)),
        )

        logger.debug(
            f"Service settings: fal={settings.fal_base_url} key={_mask(settings.fal_key)} "
            f"meshy={settings.meshy_base_url} key={_mask(settings.meshy_key)} "
            f"proxy={settings.proxy_base_url or 'off'}"
        )
        if not settings.proxied and not settings.fal_key:
            logger.warning("FAL_KEY is not set - segmentation/depth/stylize calls will fail")
        return settings
