"""Default configuration values for floorplan3d.

Configuration is organized into groups. Each group carries a ``_label``
used when the settings are listed (``floorplan3d config``) and is merged
key-by-key with the user's config file on load.

API keys are never stored here; they are read from the environment
(see ``floorplan3d.services.settings``).
"""

DEFAULT_CONFIG = {
    # --- General ---
    "general": {
        "_label": "General",
        "language": "en",
        "download_dir": "",  # empty = current working directory
    },
    # --- Remote services ---
    "services": {
        "_label": "Remote Services",
        "fal_base_url": "https://fal.run",
        "meshy_base_url": "https://api.meshy.ai/openapi/v1",
        # When set, mesh jobs, history and asset downloads go through our own
        # proxy server (which injects the vendor keys) instead of the vendor.
        "proxy_base_url": "",
        "segmentation_endpoint": "fal-ai/sam2/auto-segment",
        "depth_endpoint": "fal-ai/image-preprocessors/zoe",
        "trellis_endpoint": "fal-ai/trellis",
        "image_to_image_endpoint": "fal-ai/flux/dev/image-to-image",
        "mesh_engine": "meshy",  # meshy (submit + poll), trellis (single call)
        "request_timeout_seconds": 120.0,
    },
    # --- Mesh generation ---
    "generation": {
        "_label": "Mesh Generation",
        "target_polycount": 20000,  # 20000, 30000, 50000
        "symmetry_mode": "off",  # off, auto, on ("off" keeps rooms from being mirrored)
        "enable_pbr": True,
        "should_remesh": True,
        "topology": "triangle",
        "texture_size": 1024,  # 1024, 2048 (trellis)
        "mesh_simplify": 0.95,  # trellis
    },
    # --- Pipeline ---
    "pipeline": {
        "_label": "Pipeline",
        # Preprocessing stages run before generation, in order: mask, depth
        "preprocessing": ["depth"],
        # skip = log and continue without the artifact, abort = fail the run
        "stage_policies": {"mask": "skip", "depth": "skip"},
        "skip_enhancement": False,
    },
    # --- Job polling ---
    "polling": {
        "_label": "Job Polling",
        "interval_seconds": 2.0,
        "max_attempts": 0,  # 0 = unlimited
        "max_duration_seconds": 1200.0,  # 0 = unlimited
    },
    # --- Stylization ---
    "stylize": {
        "_label": "Stylization",
        "backend": "flux",  # flux (fal image-to-image), gemini (photoreal render)
        "strength": 0.75,
        "guidance_scale": 2.5,
        "num_inference_steps": 40,
        "enable_safety_checker": False,
        "output_format": "jpeg",
        "default_prompt": (
            "Take this dollhouse view and create a hyper-realistic architectural "
            "photography, interior design masterpiece, 8k, highly detailed, "
            "soft lighting, ray tracing"
        ),
        "prompt_suffix": (
            "soft lighting, ray tracing, photorealistic, professional, award-winning, "
            "natural lighting, sharp focus. Add realistic lighting, and even out the "
            "tops of the walls to be more uniform, finally clean up the textures to "
            "look more realistic"
        ),
        "presets": {
            "Modern Minimalist": (
                "Modern minimalist interior, clean lines, white walls, light oak wood, "
                "large windows, natural light, decluttered, airy, architectural "
                "photography, 8k"
            ),
            "Warm Scandinavian": (
                "Scandinavian interior design, hygge, warm lighting, cozy atmosphere, "
                "beige tones, textured fabrics, soft shadows, wooden accents, inviting, "
                "photorealistic"
            ),
            "Industrial Loft": (
                "Industrial loft style, exposed brick walls, concrete floors, black "
                "metal accents, high ceilings, dramatic lighting, leather furniture, "
                "raw materials, 8k render"
            ),
            "Luxury Classic": (
                "Luxury classic interior, elegant molding, crystal chandeliers, velvet "
                "furniture, gold accents, rich colors, sophisticated, magazine quality, "
                "high detail"
            ),
            "Biophilic Oasis": (
                "Biophilic interior design, abundant indoor plants, green walls, "
                "natural materials, sunlight, organic shapes, peaceful, zen atmosphere, "
                "architectural digest style"
            ),
        },
    },
    # --- Gemini enhancement ---
    "enhance": {
        "_label": "Image Enhancement",
        "model": "nano-banana-pro-preview",
        "timeout_seconds": 120.0,
    },
    # --- History ---
    "history": {
        "_label": "History",
        "page_size": 10,
        "max_entries": 10,
    },
    # --- 3D Viewport ---
    "viewport": {
        "_label": "3D Viewport",
        "background": "#f4f4f6",
        "camera_fov": 45.0,
        "orbit_sensitivity": 1.0,
        "zoom_sensitivity": 1.0,
        "mesh_color": "#d9d4c7",
    },
    # --- Proxy server ---
    "server": {
        "_label": "Proxy Server",
        "host": "127.0.0.1",
        "port": 8787,
        "allowed_fal_endpoints": [
            "fal-ai/sam2/auto-segment",
            "fal-ai/image-preprocessors/zoe",
            "fal-ai/trellis",
            "fal-ai/flux/dev/image-to-image",
        ],
        "asset_cache_seconds": 3600,
    },
    # --- Logging ---
    "logging": {
        "_label": "Logging",
        "log_level": "INFO",  # DEBUG, INFO, WARNING, ERROR, CRITICAL
        "log_to_file": True,
        "log_retention_days": 30,
        "log_max_size_mb": 50,
        "log_console_output": True,
    },
}
