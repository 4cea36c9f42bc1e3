"""Result extraction for vendor responses.

Vendors (and model versions of the same vendor) disagree on where the
output URL lives: some return it at the top level, some wrap everything in
``data``, image models return a list of images. Each result kind therefore
has an ordered tuple of extractors; the first one that yields a value wins.

A field resolves when it holds a non-empty string, or a mapping with a
non-empty ``url`` string (``{"url": "..."}`` is how fal describes files).
"""

from collections.abc import Mapping, Sequence
from typing import Any, Callable

VendorResponse = Mapping[str, Any]
Extractor = Callable[[VendorResponse], str | None]


def _as_url(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        url = value.get("url")
        if isinstance(url, str) and url:
            return url
    return None


def field_path(*path: str | int) -> Extractor:
    """Build an extractor that follows ``path`` (keys and list indices)."""

    def extract(payload: VendorResponse) -> str | None:
        node: Any = payload
        for step in path:
            if isinstance(step, int):
                if not isinstance(node, Sequence) or isinstance(node, str) or len(node) <= step:
                    return None
                node = node[step]
            else:
                if not isinstance(node, Mapping) or step not in node:
                    return None
                node = node[step]
        return _as_url(node)

    extract.__name__ = "field_" + "_".join(str(p) for p in path)
    return extract


MESH_EXTRACTORS: tuple[Extractor, ...] = (
    field_path("model_mesh"),
    field_path("model_urls", "glb"),
    field_path("model_glb"),
    field_path("data", "model_mesh"),
    field_path("data", "model_urls", "glb"),
    field_path("data", "model_glb"),
    field_path("images", 0),
    field_path("mesh"),
)

IMAGE_EXTRACTORS: tuple[Extractor, ...] = (
    field_path("images", 0),
    field_path("data", "images", 0),
    field_path("image"),
    field_path("url"),
)

DEPTH_EXTRACTORS: tuple[Extractor, ...] = (
    field_path("image"),
    field_path("depth_map"),
    field_path("images", 0),
    field_path("data", "image"),
)

MASK_EXTRACTORS: tuple[Extractor, ...] = (
    field_path("combined_mask"),
    field_path("image"),
    field_path("images", 0),
    field_path("data", "combined_mask"),
)


def extract_first(payload: Any, extractors: Sequence[Extractor]) -> str | None:
    """Return the first value produced by ``extractors``, or None."""
    if not isinstance(payload, Mapping):
        return None
    for extractor in extractors:
        value = extractor(payload)
        if value is not None:
            return value
    return None
