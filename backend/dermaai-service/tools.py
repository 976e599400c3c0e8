"""
DermaAI Analysis Service - Tools

Helpers shared by the provider adapters and the orchestrator:
- Structured output parsing
- Image payload loading (inline base64, data URI, file:// and http(s))
- Case numbers and elapsed-time descriptors
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import mimetypes
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

import httpx

from models import ImageInput

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/jpeg"
MAX_IMAGE_BYTES = 20 * 1024 * 1024


@dataclass(frozen=True)
class LoadedImage:
    data: str
    mime_type: str

    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


def parse_json_payload(raw_text: str) -> Dict[str, Any]:
    """
    Parse JSON text safely, allowing fenced markdown wrappers.
    """
    cleaned = (raw_text or "").strip()
    cleaned = cleaned.replace("```json", "").replace("```", "").strip()
    payload = json.loads(cleaned)
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object.")
    return payload


def _checked_base64(data: str) -> str:
    compact = "".join(data.split())
    try:
        raw = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image data is not valid base64.") from exc
    if not raw:
        raise ValueError("Image data is empty.")
    if len(raw) > MAX_IMAGE_BYTES:
        raise ValueError("Image exceeds the 20 MB limit.")
    return compact


def _split_data_uri(value: str) -> tuple[Optional[str], str]:
    header, _, body = value.partition(",")
    if not body or ";base64" not in header:
        raise ValueError("Only base64 data URIs are supported.")
    mime = header[len("data:"):].split(";", 1)[0].strip() or None
    return mime, body


def _guess_mime(name: str) -> Optional[str]:
    guessed, _ = mimetypes.guess_type(name)
    return guessed if guessed and guessed.startswith("image/") else None


def _local_image_path(raw_path: str, local_root: Optional[Path]) -> Path:
    if local_root is None:
        raise ValueError("Local file images are not accepted.")
    root = local_root.expanduser().resolve()
    path = Path(raw_path).expanduser().resolve()
    if not path.is_relative_to(root) or not path.is_file():
        raise ValueError("Image file is not available.")
    return path


async def load_image(
    image: ImageInput,
    client: httpx.AsyncClient,
    timeout_seconds: float = 15.0,
    local_root: Optional[Path] = None,
) -> LoadedImage:
    """
    Resolves an image reference to base64 bytes plus a MIME type.
    `file://` references are served only from inside `local_root`.
    Raises ValueError when the image cannot be read.
    """
    if (image.data or "").strip():
        data = image.data.strip()
        mime = image.mime_type
        if data.startswith("data:"):
            uri_mime, data = _split_data_uri(data)
            mime = mime or uri_mime
        return LoadedImage(_checked_base64(data), mime or DEFAULT_IMAGE_MIME)

    url = (image.url or "").strip()
    if url.startswith("data:"):
        uri_mime, data = _split_data_uri(url)
        return LoadedImage(_checked_base64(data), image.mime_type or uri_mime or DEFAULT_IMAGE_MIME)

    parsed = urlparse(url)
    if parsed.scheme == "file":
        try:
            path = _local_image_path(unquote(parsed.path), local_root)
            raw = path.read_bytes()
        except OSError as exc:
            raise ValueError("Image file is not available.") from exc
        if len(raw) > MAX_IMAGE_BYTES:
            raise ValueError("Image exceeds the 20 MB limit.")
        mime = image.mime_type or _guess_mime(path.name) or DEFAULT_IMAGE_MIME
        return LoadedImage(base64.b64encode(raw).decode("ascii"), mime)

    if parsed.scheme in {"http", "https"}:
        try:
            resp = await client.get(url, timeout=timeout_seconds, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ValueError(f"Image download failed: {exc}") from exc
        raw = resp.content
        if not raw:
            raise ValueError("Image download returned no content.")
        if len(raw) > MAX_IMAGE_BYTES:
            raise ValueError("Image exceeds the 20 MB limit.")
        header_mime = (resp.headers.get("content-type") or "").split(";", 1)[0].strip()
        mime = (
            image.mime_type
            or (header_mime if header_mime.startswith("image/") else None)
            or _guess_mime(parsed.path)
            or DEFAULT_IMAGE_MIME
        )
        return LoadedImage(base64.b64encode(raw).decode("ascii"), mime)

    raise ValueError(f"Unsupported image URL scheme: {parsed.scheme or 'none'}")


def generate_case_number(now: Optional[datetime] = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    return f"DR-{year}-{secrets.token_hex(3).upper()}"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def describe_elapsed(earlier: datetime, later: datetime) -> str:
    """
    Human-readable gap between two snapshots ("3 weeks", "2 months").
    """
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    if later.tzinfo is None:
        later = later.replace(tzinfo=timezone.utc)
    seconds = max(0.0, (later - earlier).total_seconds())
    days = int(seconds // 86400)
    if days >= 365:
        return _plural(days // 365, "year")
    if days >= 60:
        return _plural(days // 30, "month")
    if days >= 14:
        return _plural(days // 7, "week")
    if days >= 1:
        return _plural(days, "day")
    hours = int(seconds // 3600)
    if hours >= 1:
        return _plural(hours, "hour")
    return "less than an hour"
