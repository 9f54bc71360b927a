"""Per-slot generation: pro studio and single (product / model) images.

Each call produces exactly one image for one slot index and either returns the
response payload or raises a GenerationError subclass that app.py turns into
an HTTP error.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import config
import db
import prompts
from genai_client import ImageResult, ModelClient, Part, image_part
from materials import (
    Material,
    MaterialRef,
    MaterialResolver,
    Unspecified,
    is_url,
    parse_ref,
)
from prompts import ShotInstructions
from storage import Uploader

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GenerationError(Exception):
    status = 500
    code: Optional[str] = None

    def __init__(self, message: str = "", index: Optional[int] = None) -> None:
        super().__init__(message or self.code or "Generation failed")
        self.index = index

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.code or str(self), "index": self.index}
        if self.code:
            body["message"] = str(self)
        return body


class InputError(GenerationError):
    status = 400


class MaterialError(GenerationError):
    status = 400
    code = "MATERIAL_UNAVAILABLE"


class ResourceBusy(GenerationError):
    status = 503
    code = "RESOURCE_BUSY"


class PersistenceError(GenerationError):
    status = 500
    code = "UPLOAD_FAILED"


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def parse_index(body: Dict) -> int:
    raw = body.get("index", 0)
    try:
        index = int(raw or 0)
    except (TypeError, ValueError):
        raise InputError(f"index must be an integer, got {raw!r}")
    if index < 0:
        raise InputError("index must be >= 0", index)
    return index


def _item_value(item) -> Optional[str]:
    if isinstance(item, dict):
        return item.get("imageUrl") or item.get("image")
    return item if isinstance(item, str) else None


def product_refs(body: Dict) -> List[Tuple[str, MaterialRef]]:
    """(label, ref) for every product image in the request, outfit slots first.

    Accepts ``outfitItems`` ({top, pants, inner, hat, shoes}), ``productImages``
    (list) or a single ``productImage``.
    """
    refs: List[Tuple[str, MaterialRef]] = []
    outfit = body.get("outfitItems")
    if isinstance(outfit, dict):
        for slot in prompts.OUTFIT_SLOT_ORDER:
            ref = parse_ref(_item_value(outfit.get(slot)))
            if not isinstance(ref, Unspecified):
                refs.append((prompts.OUTFIT_SLOT_LABELS[slot], ref))
    if not refs and isinstance(body.get("productImages"), list):
        for n, item in enumerate(body["productImages"], 1):
            ref = parse_ref(_item_value(item))
            if not isinstance(ref, Unspecified):
                refs.append((f"Product {n}", ref))
    if not refs:
        ref = parse_ref(body.get("productImage"))
        if not isinstance(ref, Unspecified):
            refs.append(("Product", ref))
    return refs


def _url_of(ref: MaterialRef, material: Optional[Material]) -> Optional[str]:
    if material is not None and material.url:
        return material.url
    value = getattr(ref, "value", None)
    return value if value and is_url(value) else None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class StudioService:
    """Runs pro-studio and single-image generation for one slot at a time."""

    def __init__(self, client: ModelClient, resolver: MaterialResolver, uploader: Uploader) -> None:
        self.client = client
        self.resolver = resolver
        self.uploader = uploader

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _resolve(self, ref: MaterialRef, what: str, index: int, label: str) -> Material:
        material = self.resolver.resolve_material(ref)
        if material is None:
            log.error("[%s] Could not resolve %s", label, what)
            raise MaterialError(f"Could not load {what}", index)
        return material

    def _instructions(self, parts: List[Part], label: str) -> ShotInstructions:
        text = self.client.generate_text(parts, label=f"{label} instruct", model=self.client.instruct_model)
        if not text:
            log.warning("[%s] Instruction step failed, using default instructions", label)
            return prompts.default_shot_instructions()
        return ShotInstructions(text=text.strip())

    def _finish(
        self,
        *,
        user_id: str,
        task_id: Optional[str],
        task_type: str,
        index: int,
        result: Optional[ImageResult],
        gen_mode: str,
        prompt: str,
        label: str,
        started: float,
        input_image_url: Optional[str] = None,
        input_params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        if result is None:
            self._mark_failed(task_id, user_id, index, "RESOURCE_BUSY", task_type)
            raise ResourceBusy("Image models are busy, please try again", index)

        url = self.uploader.upload(result.base64, user_id, f"{task_type}-{task_id or 'adhoc'}-{index}")
        if not url:
            log.error("[%s] Image generated but not saved", label)
            self._mark_failed(task_id, user_id, index, "UPLOAD_FAILED", task_type)
            raise PersistenceError("Image generated but could not be saved", index)

        response: Dict[str, Any] = {
            "success": True,
            "image": url,
            "index": index,
            "modelType": result.model,
            "genMode": gen_mode,
            "prompt": prompt,
            "duration": int((time.time() - started) * 1000),
        }

        if task_id:
            saved = db.append_image(
                task_id=task_id,
                user_id=user_id,
                image_index=index,
                image_url=url,
                model_type=result.model,
                gen_mode=gen_mode,
                prompt=prompt,
                task_type=task_type,
                input_image_url=input_image_url if index == 0 else None,
                input_params=input_params if index == 0 else None,
            )
            if saved.get("success"):
                response["dbId"] = saved["db_id"]
            else:
                log.warning("[%s] Image shown to user but record not written: %s", label, saved.get("error"))

        log.info("[%s] Done in %dms (%s, %s)", label, response["duration"], result.model, gen_mode)
        return response

    @staticmethod
    def _mark_failed(task_id: Optional[str], user_id: str, index: int, error: str, task_type: str) -> None:
        if task_id:
            db.mark_failed(task_id, user_id, index, error, task_type)

    def _guarded(self, body: Dict, user_id: str, task_type: str, index: int, fn):
        try:
            return fn()
        except MaterialError as exc:
            self._mark_failed(body.get("taskId"), user_id, index, str(exc), task_type)
            raise

    # ------------------------------------------------------------------
    # Pro studio
    # ------------------------------------------------------------------

    def pro_studio(self, body: Dict, user_id: str) -> Dict[str, Any]:
        index = parse_index(body)
        mode = body.get("mode") or prompts.MODE_SIMPLE
        if mode not in prompts.GEN_MODES:
            raise InputError("mode must be 'simple' or 'extended'", index)
        products = product_refs(body)
        if not products:
            raise InputError("productImage is required", index)
        model_ref = parse_ref(
            body.get("modelImage"), config.STUDIO_MODELS_CATEGORY, is_random=bool(body.get("modelIsRandom"))
        )
        if isinstance(model_ref, Unspecified):
            raise InputError("modelImage is required", index)
        bg_ref = parse_ref(
            body.get("backgroundImage"), config.STUDIO_BACKGROUNDS_CATEGORY, is_random=bool(body.get("bgIsRandom"))
        )

        return self._guarded(
            body, user_id, db.PRO_STUDIO, index,
            lambda: self._pro_studio(body, user_id, index, mode, products, model_ref, bg_ref),
        )

    def _pro_studio(self, body, user_id, index, mode, products, model_ref, bg_ref) -> Dict[str, Any]:
        label = f"ProStudio {index + 1}"
        started = time.time()
        task_id = body.get("taskId")
        has_bg = not isinstance(bg_ref, Unspecified)
        log.info("[%s] mode=%s products=%d bg=%s task=%s", label, mode, len(products), has_bg, task_id)

        product_materials = [
            (name, self._resolve(ref, f"product image ({name})", index, label)) for name, ref in products
        ]
        model = self._resolve(model_ref, "model image", index, label)
        background = self._resolve(bg_ref, "background image", index, label) if has_bg else None

        image_parts: List[Part] = ["[Model]", image_part(model.data)]
        for name, material in product_materials:
            image_parts += [f"[Product] {name}", image_part(material.data)]
        if background is not None:
            image_parts += ["[Background]", image_part(background.data)]

        instructions: Optional[ShotInstructions] = None
        if mode == prompts.MODE_EXTENDED:
            instruct_prompt = prompts.build_pro_studio_instruct_prompt(has_bg, len(product_materials))
            instructions = self._instructions([instruct_prompt] + image_parts, label)

        labels = [name for name, _ in product_materials]
        prompt = prompts.build_pro_studio_prompt(mode, has_bg, instructions, labels)
        result = self.client.generate_image([prompt] + image_parts, label=label)

        recorded = prompts.combined_prompt(instructions, prompt) if instructions else prompt
        input_params = {
            "productImages": [_url_of(ref, m) for (_, ref), (_, m) in zip(products, product_materials)],
            "modelUrl": _url_of(model_ref, model),
            "backgroundUrl": _url_of(bg_ref, background) if has_bg else None,
            "hasBg": has_bg,
            "modelIsRandom": bool(body.get("modelIsRandom")),
            "bgIsRandom": bool(body.get("bgIsRandom")),
            "mode": mode,
            "outfitSlots": labels,
        }
        if instructions is not None:
            input_params["shotInstructions"] = instructions.text
            input_params["defaultInstructions"] = instructions.is_default

        return self._finish(
            user_id=user_id,
            task_id=task_id,
            task_type=db.PRO_STUDIO,
            index=index,
            result=result,
            gen_mode=mode,
            prompt=recorded,
            label=label,
            started=started,
            input_image_url=input_params["productImages"][0],
            input_params=input_params,
        )

    # ------------------------------------------------------------------
    # Single (product / model)
    # ------------------------------------------------------------------

    def single(self, body: Dict, user_id: str) -> Dict[str, Any]:
        index = parse_index(body)
        kind = body.get("type")
        if kind not in ("product", "model"):
            raise InputError("type must be 'product' or 'model'", index)
        products = product_refs(body)
        if not products:
            raise InputError("productImage is required", index)
        task_type = db.normalize_task_type(body.get("taskType") or kind)

        return self._guarded(
            body, user_id, task_type, index,
            lambda: self._single(body, user_id, index, kind, task_type, products),
        )

    def _single(self, body, user_id, index, kind, task_type, products) -> Dict[str, Any]:
        simple = bool(body.get("simpleMode"))
        label = f"{kind.title()} {index + 1}{' (Simple)' if simple else ''}"
        started = time.time()
        task_id = body.get("taskId")

        product_data = [self._resolve(ref, "product image", index, label) for _, ref in products]
        second = parse_ref(body.get("productImage2"))
        if not isinstance(second, Unspecified):
            product_data.append(self._resolve(second, "second product image", index, label))
        product_parts = [image_part(m.data) for m in product_data]

        instructions: Optional[ShotInstructions] = None
        if kind == "product":
            gen_mode = prompts.MODE_SIMPLE
            prompt = prompts.PRODUCT_PROMPT
            parts: List[Part] = [prompt] + product_parts
        else:
            model_ref = parse_ref(
                body.get("modelImage"), config.STUDIO_MODELS_CATEGORY, is_random=bool(body.get("modelIsRandom"))
            )
            bg_ref = parse_ref(
                body.get("backgroundImage"), config.STUDIO_BACKGROUNDS_CATEGORY, is_random=bool(body.get("bgIsRandom"))
            )
            model = None if isinstance(model_ref, Unspecified) else self._resolve(model_ref, "model image", index, label)
            background = None if isinstance(bg_ref, Unspecified) else self._resolve(bg_ref, "background image", index, label)

            if simple and model is not None and background is not None:
                gen_mode = prompts.MODE_SIMPLE
                prompt = prompts.SIMPLE_MODEL_PROMPT
                parts = [prompt] + product_parts + [image_part(background.data), image_part(model.data)]
            else:
                if simple:
                    log.info("[%s] Simple mode needs model and background, using extended", label)
                gen_mode = prompts.MODE_EXTENDED
                style = body.get("modelStyle")
                instruct_prompt = prompts.build_instruct_prompt(
                    has_model=model is not None,
                    has_background=background is not None,
                    model_style=style,
                    product_count=len(product_parts),
                )
                refs: List[Part] = list(product_parts)
                if model is not None:
                    refs.append(image_part(model.data))
                if background is not None:
                    refs.append(image_part(background.data))
                instructions = self._instructions([instruct_prompt] + refs, label)

                prompt = prompts.build_model_prompt(
                    has_model=model is not None,
                    has_background=background is not None,
                    model_style=style,
                    model_gender=body.get("modelGender"),
                    instructions=instructions,
                )
                parts = []
                if model is not None:
                    parts.append(image_part(model.data))
                parts.append(prompt)
                parts += product_parts
                if background is not None:
                    parts.append(image_part(background.data))

        log.info("[%s] Generating (%s)", label, gen_mode)
        result = self.client.generate_image(parts, label=label)
        recorded = prompts.combined_prompt(instructions, prompt) if instructions else prompt

        return self._finish(
            user_id=user_id,
            task_id=task_id,
            task_type=task_type,
            index=index,
            result=result,
            gen_mode=gen_mode,
            prompt=recorded,
            label=label,
            started=started,
            input_image_url=_url_of(products[0][1], product_data[0]),
            input_params=body.get("inputParams"),
        )
