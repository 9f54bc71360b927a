"""Runtime configuration, read from the environment (and .env via python-dotenv).

Every value has a working default so the app and CLI start without a .env file;
only the provider API keys are genuinely required to generate images.
"""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).parent


def _int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

PRIMARY_IMAGE_MODEL = os.environ.get("PRIMARY_IMAGE_MODEL", "gemini-3-pro-image-preview")
FALLBACK_IMAGE_MODEL = os.environ.get("FALLBACK_IMAGE_MODEL", "gemini-2.5-flash-image")
VLM_MODEL = os.environ.get("VLM_MODEL", "gemini-3-flash-preview")
INSTRUCT_MODEL = os.environ.get("INSTRUCT_MODEL", "gemini-3-pro-preview")

# Replicate slugs used when IMAGE_PROVIDER=replicate
REPLICATE_PRIMARY_MODEL = os.environ.get("REPLICATE_PRIMARY_MODEL", "google/nano-banana-pro")
REPLICATE_FALLBACK_MODEL = os.environ.get("REPLICATE_FALLBACK_MODEL", "google/nano-banana")

IMAGE_PROVIDER = os.environ.get("IMAGE_PROVIDER", "gemini")      # gemini | replicate
TEXT_PROVIDER = os.environ.get("TEXT_PROVIDER", "gemini")        # gemini | openai | anthropic
OPENAI_TEXT_MODEL = os.environ.get("OPENAI_TEXT_MODEL", "gpt-4o-mini")
ANTHROPIC_TEXT_MODEL = os.environ.get("ANTHROPIC_TEXT_MODEL", "claude-sonnet-4-6")

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/")
PRESETS_BASE_URL = os.environ.get("PRESETS_BASE_URL", f"{PUBLIC_BASE_URL}/presets").rstrip("/")
PRESETS_DIR = Path(os.environ.get("PRESETS_DIR", BASE_DIR / "static" / "presets"))
GENERATIONS_DIR = Path(os.environ.get("GENERATIONS_DIR", BASE_DIR / "static" / "generations"))
DB_PATH = Path(os.environ.get("CAMERA_DB_PATH", BASE_DIR / "camera.db"))

# Preset folders (one per material category)
ALL_MODELS_CATEGORY = "all_models"
LIFESTYLE_SCENE_CATEGORY = "lifestyle_scene"
STUDIO_MODELS_CATEGORY = "studio-models"
STUDIO_BACKGROUNDS_CATEGORY = "studio-backgrounds"

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

FETCH_TIMEOUT = _int("FETCH_TIMEOUT", 30)                 # seconds per image fetch
RANDOM_PRESET_ATTEMPTS = _int("RANDOM_PRESET_ATTEMPTS", 5)
PRESET_LIST_TTL = _int("PRESET_LIST_TTL", 60)             # seconds
NUM_LIFESTYLE_IMAGES = _int("NUM_LIFESTYLE_IMAGES", 4)
MAX_DURATION = _int("MAX_DURATION", 300)                  # seconds per streaming request
UPLOAD_RETRIES = _int("UPLOAD_RETRIES", 3)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_DIR = Path(os.environ.get("LOG_DIR", BASE_DIR / "logs"))
LOG_TO_FILE = os.environ.get("LOG_TO_FILE", "1").lower() not in ("0", "false", "no")
