"""Image material resolution: turn a logical image reference into base64 bytes.

A reference arriving at the API can be raw base64, a data URL, an http(s) URL,
the "random" sentinel (pick a preset from a category), a preset id, or nothing.
parse_ref() is the only place that interprets those sentinels; everything
downstream works with the MaterialRef variants below.
"""

from __future__ import annotations

import base64
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

import requests

import config

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")
PRESET_ID_EXTENSIONS = (".jpg", ".png")


# ---------------------------------------------------------------------------
# Material references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Concrete:
    """User-supplied image: base64, data URL or http(s) URL."""
    value: str


@dataclass(frozen=True)
class PresetRandom:
    """Any preset from a catalog folder."""
    category: str


@dataclass(frozen=True)
class PresetId:
    """A specific catalog preset, addressed by file name without extension."""
    category: str
    preset_id: str


@dataclass(frozen=True)
class Unspecified:
    pass


MaterialRef = Union[Concrete, PresetRandom, PresetId, Unspecified]

UNSPECIFIED = Unspecified()


@dataclass
class Material:
    data: str                      # base64, no data-URL prefix
    url: Optional[str] = None      # where it came from, when it has a durable URL
    name: Optional[str] = None     # preset file name, when picked from a catalog


def parse_ref(value, category: Optional[str] = None, is_random: bool = False) -> MaterialRef:
    """Map a raw request value onto a MaterialRef.

    ``"random"`` / ``True`` / ``is_random`` select a random preset from *category*;
    ``"auto"``, empty values and non-strings mean the caller did not specify one.
    """
    if is_random or value is True or value == "random":
        if not category:
            return UNSPECIFIED
        return PresetRandom(category)
    if not value or not isinstance(value, str) or value == "auto":
        return UNSPECIFIED
    return Concrete(value.strip())


def preset_ref(category: str, preset_id: Optional[str]) -> MaterialRef:
    if not preset_id or preset_id in ("custom", "null", "None"):
        return UNSPECIFIED
    return PresetId(category, str(preset_id))


# ---------------------------------------------------------------------------
# base64 helpers
# ---------------------------------------------------------------------------

def is_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def strip_data_url(value: str) -> Tuple[str, str]:
    """Return (base64_payload, mime_type) for a data URL or bare base64 string."""
    mime = "image/jpeg"
    if value.startswith("data:"):
        header, _, payload = value.partition(",")
        if ";" in header:
            mime = header[5:].split(";", 1)[0] or mime
        return payload, mime
    return value, mime


def looks_like_base64_image(value: str) -> bool:
    if not value:
        return False
    if value.startswith("data:image/"):
        return True
    if is_url(value) or len(value) < 100:
        return False
    try:
        base64.b64decode(value[:100] + "=" * (-len(value[:100]) % 4), validate=True)
        return True
    except (ValueError, TypeError):
        return False


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

Fetcher = Callable[[str], Optional[str]]


def fetch_base64(url: str, timeout: Optional[int] = None) -> Optional[str]:
    """GET *url* and return the body base64-encoded, or None on any failure."""
    try:
        resp = requests.get(url, timeout=timeout or config.FETCH_TIMEOUT)
        if resp.status_code != 200:
            log.warning("[Materials] HTTP %s for %s", resp.status_code, url[:120])
            return None
        if not resp.content:
            return None
        return base64.b64encode(resp.content).decode("ascii")
    except requests.RequestException as exc:
        log.warning("[Materials] Fetch failed for %s: %s", url[:120], exc)
        return None


# ---------------------------------------------------------------------------
# Preset catalog
# ---------------------------------------------------------------------------

class PresetCatalog:
    """Lists preset files per category folder, with a short-lived cache.

    Files live under PRESETS_DIR/<category>/ and are served at
    PRESETS_BASE_URL/<category>/<file>.
    """

    def __init__(self, root=None, base_url: Optional[str] = None, ttl: Optional[int] = None) -> None:
        self.root = root if root is not None else config.PRESETS_DIR
        self.base_url = (base_url or config.PRESETS_BASE_URL).rstrip("/")
        self.ttl = config.PRESET_LIST_TTL if ttl is None else ttl
        self._cache: Dict[str, Tuple[List[str], float]] = {}
        self._lock = threading.Lock()

    def list_files(self, category: str) -> List[str]:
        with self._lock:
            cached = self._cache.get(category)
            if cached and time.time() - cached[1] < self.ttl:
                return list(cached[0])

        folder = self.root / category
        try:
            files = sorted(
                p.name for p in folder.iterdir()
                if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
            )
        except OSError as exc:
            log.error("[Presets] Cannot list %s: %s", folder, exc)
            # A stale listing beats none at all
            return list(cached[0]) if cached else []

        with self._lock:
            self._cache[category] = (files, time.time())
        log.debug("[Presets] Listed %s: %d files", category, len(files))
        return list(files)

    def evict(self, category: str, file_name: str) -> None:
        with self._lock:
            cached = self._cache.get(category)
            if cached:
                self._cache[category] = ([f for f in cached[0] if f != file_name], cached[1])

    def clear(self, category: Optional[str] = None) -> None:
        with self._lock:
            if category:
                self._cache.pop(category, None)
            else:
                self._cache.clear()

    def url_for(self, category: str, file_name: str) -> str:
        return f"{self.base_url}/{category}/{file_name}"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class MaterialResolver:
    """Resolves MaterialRefs to base64 image data. Never raises."""

    def __init__(
        self,
        fetch: Optional[Fetcher] = None,
        catalog: Optional[PresetCatalog] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.fetch = fetch or fetch_base64
        self.catalog = catalog or PresetCatalog()
        self.max_attempts = config.RANDOM_PRESET_ATTEMPTS if max_attempts is None else max_attempts

    def resolve(self, ref: MaterialRef, cancel=None) -> Optional[str]:
        material = self.resolve_material(ref, cancel=cancel)
        return material.data if material else None

    def resolve_material(self, ref: MaterialRef, cancel=None) -> Optional[Material]:
        try:
            if isinstance(ref, Unspecified):
                return None
            if isinstance(ref, Concrete):
                return self._concrete(ref.value, cancel)
            if isinstance(ref, PresetRandom):
                return self._random(ref.category, cancel)
            if isinstance(ref, PresetId):
                return self._by_id(ref.category, ref.preset_id, cancel)
            log.error("[Materials] Unknown reference type: %r", ref)
            return None
        except Exception as exc:
            log.error("[Materials] Failed to resolve %r: %s", ref, exc, exc_info=True)
            return None

    def _get(self, url: str, cancel) -> Optional[str]:
        if cancel is not None and cancel.is_set():
            log.info("[Materials] Skipping fetch, request cancelled: %s", url[:120])
            return None
        return self.fetch(url)

    def _concrete(self, value: str, cancel) -> Optional[Material]:
        if is_url(value):
            data = self._get(value, cancel)
            return Material(data=data, url=value) if data else None
        payload, _ = strip_data_url(value)
        payload = payload.strip()
        return Material(data=payload) if payload else None

    def _random(self, category: str, cancel) -> Optional[Material]:
        files = self.catalog.list_files(category)
        if not files:
            log.error("[Materials] No presets in %s", category)
            return None

        candidates = random.sample(files, min(self.max_attempts, len(files)))
        for name in candidates:
            url = self.catalog.url_for(category, name)
            data = self._get(url, cancel)
            if data:
                log.debug("[Materials] Random preset %s/%s", category, name)
                return Material(data=data, url=url, name=name)
            log.warning("[Materials] Preset %s/%s unavailable, trying next", category, name)
            self.catalog.evict(category, name)

        log.error("[Materials] All %d random attempts failed for %s", len(candidates), category)
        return None

    def _by_id(self, category: str, preset_id: str, cancel) -> Optional[Material]:
        for ext in PRESET_ID_EXTENSIONS:
            name = f"{preset_id}{ext}"
            url = self.catalog.url_for(category, name)
            data = self._get(url, cancel)
            if data:
                return Material(data=data, url=url, name=name)
        log.warning("[Materials] Preset not found: %s/%s", category, preset_id)
        return None
