"""Image references passed between the pipeline and the remote services.

Services accept either a public URL or an inline ``data:`` URI. Local files
are turned into data URIs before they are sent; nothing here alters pixels.
"""

import base64
import io
from pathlib import Path

from PIL import Image

SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}

_FORMAT_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
}


def is_remote(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


def is_data_uri(ref: str) -> bool:
    return ref.startswith("data:")


def can_upload(path: Path) -> bool:
    """Check if the file is a floorplan image format the services accept."""
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


def bytes_to_data_uri(data: bytes, mime_type: str | None = None) -> str:
    """Encode raw image bytes; the MIME type is sniffed with Pillow if not given."""
    if mime_type is None:
        with Image.open(io.BytesIO(data)) as img:
            mime_type = _FORMAT_MIME.get(img.format or "", "image/png")
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def file_to_data_uri(path: str | Path) -> str:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    return bytes_to_data_uri(path.read_bytes())


def to_transferable(ref: str) -> str:
    """Return a reference a remote service can fetch: URL or data URI."""
    if is_remote(ref) or is_data_uri(ref):
        return ref
    return file_to_data_uri(ref)


def split_data_uri(uri: str) -> tuple[str, bytes]:
    """Return ``(mime_type, raw_bytes)`` of a base64 data URI."""
    if not is_data_uri(uri):
        raise ValueError("Not a data URI")
    header, _, payload = uri.partition(",")
    mime_type = header[len("data:"):].split(";")[0] or "image/png"
    return mime_type, base64.b64decode(payload)


def image_to_data_uri(img: Image.Image, fmt: str = "PNG") -> str:
    """Encode a PIL image (e.g. a captured frame) as a data URI."""
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return bytes_to_data_uri(buf.getvalue(), _FORMAT_MIME.get(fmt.upper(), "image/png"))
