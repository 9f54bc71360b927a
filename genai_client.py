"""Generative model client: image generation with primary → fallback failover,
plus single-shot vision-language text calls.

Provider SDKs are imported lazily inside the backends, so importing this module
never requires credentials or network access.
"""

from __future__ import annotations

import base64
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Union

import requests

import config

log = logging.getLogger(__name__)

MODEL_PRO = "pro"
MODEL_FLASH = "flash"


@dataclass(frozen=True)
class InlineImage:
    data: str                     # base64, no data-URL prefix
    mime_type: str = "image/jpeg"


Part = Union[str, InlineImage]


@dataclass
class ImageResult:
    image: bytes
    model: str                    # MODEL_PRO | MODEL_FLASH

    @property
    def base64(self) -> str:
        return base64.b64encode(self.image).decode("ascii")


def image_part(data: str, mime_type: str = "image/jpeg") -> InlineImage:
    return InlineImage(data=data, mime_type=mime_type)


def _text_of(parts: List[Part]) -> str:
    return "\n".join(p for p in parts if isinstance(p, str))


def _images_of(parts: List[Part]) -> List[InlineImage]:
    return [p for p in parts if isinstance(p, InlineImage)]


# ---------------------------------------------------------------------------
# Response extraction (google-genai response shape)
# ---------------------------------------------------------------------------

def _is_safety_block(candidate) -> bool:
    reason = getattr(candidate, "finish_reason", None)
    return str(getattr(reason, "name", reason)) == "SAFETY"


def extract_image(response) -> Optional[bytes]:
    """Return the first inline image of the first candidate, or None.

    Raises RuntimeError when the candidate was stopped by the safety filter, so
    the caller treats it like any other failed attempt.
    """
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    candidate = candidates[0]
    if _is_safety_block(candidate):
        raise RuntimeError("Content blocked by safety filter")
    content = getattr(candidate, "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        data = getattr(inline, "data", None) if inline else None
        if data:
            return base64.b64decode(data) if isinstance(data, str) else data
    return None


def extract_text(response) -> Optional[str]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    candidate = candidates[0]
    if _is_safety_block(candidate):
        log.warning("Text response blocked by safety filter")
        return None
    content = getattr(candidate, "content", None)
    texts = [
        part.text for part in getattr(content, "parts", None) or []
        if isinstance(getattr(part, "text", None), str)
    ]
    return "\n".join(texts) if texts else None


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class GeminiBackend:
    """Google GenAI (Gemini) backend for both images and text."""

    def __init__(self, api_key: Optional[str] = None, timeout: int = 300) -> None:
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        self.timeout = timeout
        self._client = None
        self._lock = threading.Lock()

    def _get_client(self):
        with self._lock:
            if self._client is None:
                if not self.api_key:
                    raise RuntimeError("GEMINI_API_KEY not set")
                from google import genai
                self._client = genai.Client(
                    api_key=self.api_key,
                    http_options={"timeout": self.timeout * 1000},
                )
            return self._client

    @staticmethod
    def _contents(parts: List[Part]):
        from google.genai import types

        sdk_parts = []
        for p in parts:
            if isinstance(p, InlineImage):
                sdk_parts.append(types.Part.from_bytes(data=base64.b64decode(p.data), mime_type=p.mime_type))
            else:
                sdk_parts.append(types.Part.from_text(text=p))
        return [types.Content(role="user", parts=sdk_parts)]

    @staticmethod
    def _safety_settings():
        from google.genai import types

        # Garment photography trips the default filters far too often
        return [
            types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
            for category in (
                types.HarmCategory.HARM_CATEGORY_HARASSMENT,
                types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
                types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
                types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
            )
        ]

    def generate_image(self, model: str, parts: List[Part]) -> Optional[bytes]:
        from google.genai import types

        response = self._get_client().models.generate_content(
            model=model,
            contents=self._contents(parts),
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                safety_settings=self._safety_settings(),
            ),
        )
        return extract_image(response)

    def generate_text(self, model: str, parts: List[Part]) -> Optional[str]:
        from google.genai import types

        response = self._get_client().models.generate_content(
            model=model,
            contents=self._contents(parts),
            config=types.GenerateContentConfig(safety_settings=self._safety_settings()),
        )
        return extract_text(response)


class ReplicateBackend:
    """Nano Banana image models hosted on Replicate."""

    def __init__(self, api_token: Optional[str] = None) -> None:
        self.api_token = api_token or os.environ.get("REPLICATE_API_TOKEN", "")

    def generate_image(self, model: str, parts: List[Part]) -> Optional[bytes]:
        if not self.api_token:
            raise RuntimeError("REPLICATE_API_TOKEN not set")

        import replicate as rep

        payload = {
            "prompt": _text_of(parts),
            "image_input": [f"data:{img.mime_type};base64,{img.data}" for img in _images_of(parts)],
            "output_format": "png",
        }
        client = rep.Client(api_token=self.api_token)
        raw_output = client.run(model, input=payload)

        # Normalise output to URL string
        raw = raw_output[0] if isinstance(raw_output, list) and raw_output else raw_output
        if not raw:
            return None
        url = getattr(raw, "url", None) or str(raw)
        resp = requests.get(url, timeout=90)
        resp.raise_for_status()
        return resp.content


class OpenAITextBackend:
    """Vision-language text calls through OpenAI chat completions."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")

    def generate_text(self, model: str, parts: List[Part]) -> Optional[str]:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY not set")
        from openai import OpenAI

        content = []
        for p in parts:
            if isinstance(p, InlineImage):
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{p.mime_type};base64,{p.data}"},
                })
            else:
                content.append({"type": "text", "text": p})

        client = OpenAI(api_key=self.api_key)
        resp = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": content}],
        )
        text = resp.choices[0].message.content
        return text.strip() if text else None


class AnthropicTextBackend:
    """Vision-language text calls through the Anthropic messages API."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")

    def generate_text(self, model: str, parts: List[Part]) -> Optional[str]:
        if not self.api_key:
            raise RuntimeError("ANTHROPIC_API_KEY not set")
        import anthropic

        content = []
        for p in parts:
            if isinstance(p, InlineImage):
                content.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": p.mime_type, "data": p.data},
                })
            else:
                content.append({"type": "text", "text": p})

        client = anthropic.Anthropic(api_key=self.api_key)
        msg = client.messages.create(
            model=model,
            max_tokens=2048,
            messages=[{"role": "user", "content": content}],
        )
        texts = [block.text for block in msg.content if getattr(block, "type", "") == "text"]
        return "\n".join(texts).strip() or None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ModelClient:
    """Image generation with failover, and text generation without it.

    The primary image model gets exactly one attempt; any exception or an
    image-less response moves straight on to the fallback model with the same
    parts. Text calls have no fallback: callers decide what a None means.
    """

    def __init__(
        self,
        image_backend,
        text_backend,
        primary_model: str = config.PRIMARY_IMAGE_MODEL,
        fallback_model: str = config.FALLBACK_IMAGE_MODEL,
        vlm_model: str = config.VLM_MODEL,
        instruct_model: str = config.INSTRUCT_MODEL,
    ) -> None:
        self.image_backend = image_backend
        self.text_backend = text_backend
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.vlm_model = vlm_model
        self.instruct_model = instruct_model

    def generate_image(self, parts: List[Part], label: str = "Image") -> Optional[ImageResult]:
        t0 = time.time()
        for tier, model in ((MODEL_PRO, self.primary_model), (MODEL_FLASH, self.fallback_model)):
            try:
                log.debug("[%s] Trying %s…", label, model)
                data = self.image_backend.generate_image(model, parts)
            except Exception as exc:
                log.warning("[%s] %s failed: %s", label, model, exc)
                continue
            if data:
                log.info("[%s] Success with %s in %.1fs", label, model, time.time() - t0)
                return ImageResult(image=data, model=tier)
            log.warning("[%s] %s returned no image", label, model)

        log.error("[%s] Primary and fallback models both failed after %.1fs", label, time.time() - t0)
        return None

    def generate_text(self, parts: List[Part], label: str = "Text", model: Optional[str] = None) -> Optional[str]:
        model = model or self.vlm_model
        t0 = time.time()
        try:
            text = self.text_backend.generate_text(model, parts)
        except Exception as exc:
            log.warning("[%s] Text call to %s failed: %s", label, model, exc)
            return None
        if not text:
            log.warning("[%s] %s returned empty text", label, model)
            return None
        log.info("[%s] Text from %s in %.1fs (%d chars)", label, model, time.time() - t0, len(text))
        return text


_default_client: Optional[ModelClient] = None
_default_lock = threading.Lock()


def build_client(
    image_provider: str = config.IMAGE_PROVIDER,
    text_provider: str = config.TEXT_PROVIDER,
) -> ModelClient:
    gemini = None
    if image_provider == "replicate":
        image_backend = ReplicateBackend()
        primary, fallback = config.REPLICATE_PRIMARY_MODEL, config.REPLICATE_FALLBACK_MODEL
    else:
        gemini = GeminiBackend()
        image_backend = gemini
        primary, fallback = config.PRIMARY_IMAGE_MODEL, config.FALLBACK_IMAGE_MODEL

    if text_provider == "openai":
        text_backend = OpenAITextBackend()
        vlm = instruct = config.OPENAI_TEXT_MODEL
    elif text_provider == "anthropic":
        text_backend = AnthropicTextBackend()
        vlm = instruct = config.ANTHROPIC_TEXT_MODEL
    else:
        text_backend = gemini or GeminiBackend()
        vlm, instruct = config.VLM_MODEL, config.INSTRUCT_MODEL

    log.info(
        "Model client: images=%s (%s → %s)  text=%s (%s)",
        image_provider, primary, fallback, text_provider, vlm,
    )
    return ModelClient(
        image_backend,
        text_backend,
        primary_model=primary,
        fallback_model=fallback,
        vlm_model=vlm,
        instruct_model=instruct,
    )


def default_client() -> ModelClient:
    """Process-wide client built from config on first use."""
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = build_client()
        return _default_client
