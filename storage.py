"""Storage uploader: persist generated images and hand back a public URL.

Images are written under GENERATIONS_DIR/<owner>/ and served by app.py at
/static/generations/<owner>/<file>.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
import time
from pathlib import Path
from typing import Optional

import config
from materials import is_url, strip_data_url

log = logging.getLogger(__name__)

_SAFE = re.compile(r"[^A-Za-z0-9_.-]+")

_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"

_EXT_BY_MIME = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def _safe(part: str) -> str:
    return _SAFE.sub("_", part).strip("._") or "anon"


class Uploader:
    def __init__(
        self,
        root: Optional[Path] = None,
        base_url: Optional[str] = None,
        retries: Optional[int] = None,
        backoff: float = 1.0,
    ) -> None:
        self.root = Path(root) if root is not None else config.GENERATIONS_DIR
        self.base_url = (base_url or f"{config.PUBLIC_BASE_URL}/static/generations").rstrip("/")
        self.retries = config.UPLOAD_RETRIES if retries is None else retries
        self.backoff = backoff

    def upload(self, image: str, owner_id: str, logical_name: str) -> Optional[str]:
        """Store a base64 image (or data URL) and return its URL.

        URLs are returned unchanged. Returns None once every attempt failed.
        """
        if not image:
            return None
        if is_url(image):
            return image

        payload, mime = strip_data_url(image)
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as exc:
            log.error("[Storage] Undecodable image for %s: %s", logical_name, exc)
            return None

        ext = "png" if data.startswith(_PNG_MAGIC) else _EXT_BY_MIME.get(mime, "png")
        owner = _safe(owner_id)
        file_name = f"{_safe(logical_name)}_{int(time.time() * 1000)}_{secrets.token_hex(4)}.{ext}"

        for attempt in range(1, self.retries + 1):
            try:
                folder = self.root / owner
                folder.mkdir(parents=True, exist_ok=True)
                with open(folder / file_name, "wb") as fh:
                    fh.write(data)
                url = f"{self.base_url}/{owner}/{file_name}"
                log.info("[Storage] Saved %s (%d KB)", url, len(data) // 1024)
                return url
            except OSError as exc:
                log.warning("[Storage] Attempt %d/%d failed for %s: %s", attempt, self.retries, file_name, exc)
                if attempt < self.retries:
                    time.sleep(self.backoff * attempt)

        log.error("[Storage] Giving up on %s after %d attempts", file_name, self.retries)
        return None
