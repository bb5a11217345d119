from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import requests
from werkzeug.utils import secure_filename

from path_utils import resolve_path, timestamped_name


_DATA_URL_RE = re.compile(r"^data:(image/[A-Za-z0-9.+-]+);base64,(.*)$", re.DOTALL)
_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


@dataclass
class ImageStoreConfig:
    upload_dir: str = "uploads/stock"
    # Optional object-storage endpoint; photos are PUT to {remote_url}/{filename}.
    remote_url: Optional[str] = None
    remote_token: Optional[str] = None
    public_base_url: str = "/api/uploads/stock"
    timeout_seconds: int = 15


def decode_image(image_base64: str) -> Tuple[bytes, str]:
    """Decode a base64 photo (raw or data URL). Returns (bytes, content_type)."""
    text = (image_base64 or "").strip()
    if not text:
        raise ValueError("Image data is empty")

    content_type = "image/jpeg"
    match = _DATA_URL_RE.match(text)
    if match:
        content_type = match.group(1).lower()
        text = match.group(2)
    if content_type not in _EXTENSIONS:
        raise ValueError(f"Unsupported image type: {content_type}")

    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Image data is not valid base64") from e
    if not data:
        raise ValueError("Image data is empty")
    return data, content_type


class StockImageStore:
    """
    Proof-of-shipment photo storage.
    - Always keeps a local copy under upload_dir.
    - When remote_url is set, also uploads to object storage with a Bearer token
      and returns the remote URL instead of the local one.
    """

    def __init__(self, cfg: ImageStoreConfig):
        self.cfg = cfg
        self.upload_dir = resolve_path(cfg.upload_dir)
        self.remote_url = (cfg.remote_url or "").rstrip("/")
        self.timeout = max(1, int(cfg.timeout_seconds or 15))
        self.session = requests.Session() if self.remote_url else None

    def _headers(self, content_type: str) -> Dict[str, str]:
        headers = {"Content-Type": content_type}
        if self.cfg.remote_token:
            headers["Authorization"] = f"Bearer {self.cfg.remote_token}"
        return headers

    def _upload_remote(self, filename: str, data: bytes, content_type: str) -> str:
        url = f"{self.remote_url}/{filename}"
        resp = self.session.put(url, headers=self._headers(content_type), data=data, timeout=self.timeout)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise RuntimeError(f"Image upload rejected: HTTP {resp.status_code}")
        return url

    def save(self, image_base64: str, prefix: str = "stock") -> str:
        """Store a photo and return the URL to record on the stock movement."""
        data, content_type = decode_image(image_base64)
        filename = timestamped_name(secure_filename(prefix or "") or "stock", _EXTENSIONS[content_type])

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        local_path = self.upload_dir / filename
        local_path.write_bytes(data)
        logging.info("Stored stock photo %s (%s bytes)", local_path, len(data))

        if self.remote_url:
            try:
                return self._upload_remote(filename, data, content_type)
            except requests.RequestException as e:
                logging.error("Stock photo upload failed: %s", e)
                raise RuntimeError("Failed to upload image") from e

        return f"{self.cfg.public_base_url.rstrip('/')}/{filename}"

    def discard(self, url: Optional[str]) -> bool:
        """Remove a photo stored by save() whose movement was never written."""
        if not url:
            return False
        filename = url.rstrip("/").rsplit("/", 1)[-1]
        removed = False
        path = self.local_path(filename)
        if path is not None:
            path.unlink()
            removed = True
        if self.remote_url and url.startswith(f"{self.remote_url}/"):
            try:
                resp = self.session.delete(url, headers=self._headers("application/json"), timeout=self.timeout)
                removed = removed or 200 <= resp.status_code < 300
            except requests.RequestException as e:
                logging.warning("Could not remove uploaded photo %s: %s", url, e)
        if removed:
            logging.info("Discarded stock photo %s", filename)
        return removed

    def local_path(self, filename: str) -> Optional[Path]:
        """Resolve a stored filename, refusing anything outside upload_dir."""
        candidate = (self.upload_dir / filename).resolve()
        root = self.upload_dir.resolve()
        if root not in candidate.parents or not candidate.is_file():
            return None
        return candidate


def encode_image_file(path) -> str:
    """Read a photo from disk as a data URL (used by the scanner CLI)."""
    p = Path(path).expanduser()
    suffix = p.suffix.lower()
    content_type = {".png": "image/png", ".webp": "image/webp"}.get(suffix, "image/jpeg")
    return f"data:{content_type};base64," + base64.b64encode(p.read_bytes()).decode("ascii")
