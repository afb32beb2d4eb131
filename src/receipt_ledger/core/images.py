from __future__ import annotations

import time
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import httpx
from PIL import Image, UnidentifiedImageError

from receipt_ledger.core.config import settings
from receipt_ledger.core.errors import ExtractionTransportError
from receipt_ledger.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)

LOCAL_SCHEME = "local://"
DEFAULT_MIME_TYPE = "image/png"

_PIL_FORMAT_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


@dataclass(frozen=True)
class LoadedImage:
    body: bytes
    mime_type: str


def put_local_image(*, key: str, body: bytes, root: Path | None = None) -> str:
    """Write bytes under the local image root and return a stable `local://` URL."""
    base = root or settings.local_image_root
    path = base / key
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(body)
    return f"{LOCAL_SCHEME}{key}"


def load_image(image_url: str, *, timeout: float | None = None) -> LoadedImage:
    start = time.monotonic()
    if image_url.startswith(LOCAL_SCHEME):
        body, header_mime = _read_local(image_url[len(LOCAL_SCHEME) :]), None
        backend = "local"
    else:
        body, header_mime = _download(image_url, timeout=timeout)
        backend = "http"

    detected = _detect_mime_type(body)
    mime_type = header_mime if header_mime and header_mime.startswith("image/") else detected
    log_event(
        logger,
        "image.load.success",
        backend=backend,
        byte_size=len(body),
        mime_type=mime_type,
        duration_ms=monotonic_ms(start),
    )
    return LoadedImage(body=body, mime_type=mime_type or DEFAULT_MIME_TYPE)


def _read_local(key: str) -> bytes:
    root = settings.local_image_root.resolve()
    path = (root / key).resolve()
    if root not in path.parents or not path.is_file():
        raise ExtractionTransportError(f"Failed to download image: {key} not found")
    return path.read_bytes()


def _download(url: str, *, timeout: float | None) -> tuple[bytes, str | None]:
    try:
        resp = httpx.get(
            url,
            timeout=timeout or settings.extraction_timeout_seconds,
            follow_redirects=True,
        )
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise ExtractionTransportError(
            f"Failed to download image: {e.response.reason_phrase or e.response.status_code}",
            status=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        raise ExtractionTransportError(f"Failed to download image: {e}") from e
    content_type = (resp.headers.get("content-type") or "").split(";")[0].strip().lower()
    return resp.content, content_type or None


def _detect_mime_type(body: bytes) -> str:
    try:
        with Image.open(BytesIO(body)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ExtractionTransportError("Stored file is not a decodable image") from e
    return _PIL_FORMAT_MIME.get(fmt or "", DEFAULT_MIME_TYPE)
