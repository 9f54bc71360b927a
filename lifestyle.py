"""Lifestyle street-style pipeline.

Five strictly ordered stages, reported as progress events:

  1. analyse the product image into a garment tag          (fatal on failure)
  2. narrow the scene catalog with the tag                 (fatal if empty)
  3. let the vision model pick models and scenes           (fatal on failure)
  4. fetch the chosen model / scene images in parallel     (per-slot failures)
  5. generate every slot in parallel                       (per-slot failures)

The pipeline always finishes with exactly one terminal event: ``error`` when a
stage 1-3 failure aborts the request, ``complete`` otherwise.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Tuple

import config
import db
import prompts
from genai_client import ModelClient, Part, image_part
from materials import (
    Concrete,
    Material,
    MaterialRef,
    MaterialResolver,
    Unspecified,
    UNSPECIFIED,
    parse_ref,
    preset_ref,
)
from storage import Uploader

log = logging.getLogger(__name__)

CUSTOM = "custom"
MAX_FETCH_WORKERS = 8
GENERIC_ERROR = "Generation failed, please retry"

Event = Dict[str, Any]


class CancelToken:
    """Set by an explicit cancel or once the request deadline has passed."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self.deadline = time.time() + (config.MAX_DURATION if timeout is None else timeout)

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set() or time.time() >= self.deadline

    @property
    def reason(self) -> str:
        return "Cancelled" if self._event.is_set() else "Timed out"


class StageError(Exception):
    """A stage 1-3 failure; the message is what the client sees."""


def parse_json(text: str) -> Dict:
    """Parse a model's JSON answer, tolerating code fences and surrounding prose."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            return json.loads(text[start : end + 1])
        raise


class LifestylePipeline:
    def __init__(
        self,
        task_id: str,
        user_id: str,
        body: Dict,
        client: ModelClient,
        resolver: MaterialResolver,
        uploader: Uploader,
        progress_cb: Callable[[Event], None],
        cancel: Optional[CancelToken] = None,
        num_images: Optional[int] = None,
    ) -> None:
        self.task_id = task_id
        self.user_id = user_id
        self.body = body
        self.client = client
        self.resolver = resolver
        self.uploader = uploader
        self.progress_cb = progress_cb
        self.cancel = cancel or CancelToken()
        self.num_images = num_images or config.NUM_LIFESTYLE_IMAGES

        self.model_ref: MaterialRef = self._user_ref(body.get("modelImage"), body.get("modelId"), config.ALL_MODELS_CATEGORY)
        self.scene_ref: MaterialRef = self._user_ref(body.get("sceneImage"), body.get("sceneId"), config.LIFESTYLE_SCENE_CATEGORY)

    @staticmethod
    def _user_ref(image, preset_id, category: str) -> MaterialRef:
        ref = parse_ref(image)
        if not isinstance(ref, Unspecified):
            return ref
        return preset_ref(category, preset_id)

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, **data: Any) -> None:
        event: Event = {"type": event_type}
        event.update(data)
        try:
            self.progress_cb(event)
        except Exception as exc:
            log.warning("[Lifestyle] progress callback failed on %s: %s", event_type, exc)
        lvl = logging.WARNING if event_type in ("error", "image_error") else logging.DEBUG
        log.log(lvl, "[Lifestyle %s] %s %s", self.task_id, event_type, data.get("error") or data.get("message") or "")

    def _status(self, message: str) -> None:
        self._emit("status", message=message)

    def _check_cancel(self) -> None:
        if self.cancel.is_set():
            raise StageError(self.cancel.reason)

    # ------------------------------------------------------------------
    # Stage 0: product images
    # ------------------------------------------------------------------

    def _load_products(self) -> List[Tuple[str, Material]]:
        outfit = self.body.get("outfitItems")
        products: List[Tuple[str, Material]] = []
        if isinstance(outfit, dict) and outfit:
            for slot in prompts.OUTFIT_SLOT_ORDER:
                item = outfit.get(slot)
                if isinstance(item, dict):
                    item = item.get("imageUrl")
                ref = parse_ref(item)
                if isinstance(ref, Unspecified):
                    continue
                material = self.resolver.resolve_material(ref, cancel=self.cancel)
                if material is not None:
                    products.append((slot, material))
                else:
                    log.warning("[Lifestyle] Outfit item %s could not be loaded, skipping", slot)
            if products:
                log.info("[Lifestyle] Outfit mode: %s", ", ".join(s for s, _ in products))
                return products

        ref = parse_ref(self.body.get("productImage"))
        if isinstance(ref, Unspecified):
            raise StageError("Missing product image")
        material = self.resolver.resolve_material(ref, cancel=self.cancel)
        if material is None:
            raise StageError("Failed to process product image")
        return [("product", material)]

    # ------------------------------------------------------------------
    # Stage 1: analysis
    # ------------------------------------------------------------------

    def analyze_product(self, product: Material) -> Dict:
        self._check_cancel()
        text = self.client.generate_text(
            [prompts.LIFESTYLE_VLM_PROMPT, image_part(product.data)], label="Lifestyle analyze"
        )
        if not text:
            raise StageError("Clothing analysis failed, please retry")
        try:
            tag = parse_json(text)
        except (json.JSONDecodeError, ValueError) as exc:
            log.error("[Lifestyle] Unparseable product tag: %s | %.200s", exc, text)
            raise StageError("Clothing analysis failed, please retry")
        if not isinstance(tag, dict) or not tag.get("outfit_type"):
            log.error("[Lifestyle] Product tag without outfit_type: %.200s", text)
            raise StageError("Clothing analysis failed, please retry")
        return tag

    # ------------------------------------------------------------------
    # Stages 2-3: filter and match
    # ------------------------------------------------------------------

    def match(self, product: Material, tag: Dict) -> Dict[str, str]:
        self._status("Filtering matching scenes...")
        scene_ids = db.scene_ids_matching(tag)
        if not scene_ids:
            raise StageError("No matching scenes found")

        self._check_cancel()
        self._status("AI matching models and scenes...")
        scene_tags = db.get_scene_tags(scene_ids)
        models = db.list_models()
        if not scene_tags or not models:
            log.error("[Lifestyle] Catalog empty: scenes=%d models=%d", len(scene_tags), len(models))
            raise StageError("Model and scene matching failed")

        model_summaries = [
            {
                "model_id": m["model_id"],
                "gender": m.get("model_gender"),
                "age_group": m.get("model_age_group"),
                "style": m.get("model_style_primary"),
                "height": m.get("height_range"),
                "body": m.get("body_shape"),
                "desc": (m.get("model_desc") or "")[:150],
            }
            for m in models
        ]
        prompt = prompts.build_lifestyle_match_prompt(
            json.dumps(tag, indent=2, ensure_ascii=False),
            json.dumps(scene_tags, indent=2, ensure_ascii=False),
            json.dumps(model_summaries, indent=2, ensure_ascii=False),
        )
        log.info("[Lifestyle] Matching from %d scenes and %d models", len(scene_tags), len(models))

        text = self.client.generate_text([prompt, image_part(product.data)], label="Lifestyle match")
        if not text:
            raise StageError("Model and scene matching failed")
        try:
            result = parse_json(text)
        except (json.JSONDecodeError, ValueError) as exc:
            log.error("[Lifestyle] Unparseable match result: %s | %.200s", exc, text)
            raise StageError("Model and scene matching failed")
        if not isinstance(result, dict):
            raise StageError("Model and scene matching failed")
        return {k: str(v) for k, v in result.items() if v is not None}

    def _slot_ids(self, result: Dict[str, str], kind: str, user_ref: MaterialRef) -> List[str]:
        if isinstance(user_ref, Concrete):
            return [CUSTOM] * self.num_images
        user_id = getattr(user_ref, "preset_id", None)
        if user_id:
            return [user_id] * self.num_images
        return [result.get(f"{kind}_id_{i + 1}", "") for i in range(self.num_images)]

    # ------------------------------------------------------------------
    # Stage 4: materials
    # ------------------------------------------------------------------

    def fetch_materials(self, model_refs: List[MaterialRef], scene_refs: List[MaterialRef]) -> Dict[MaterialRef, Optional[str]]:
        """Resolve every distinct reference once, up to 8 at a time."""
        unique = [r for r in dict.fromkeys(model_refs + scene_refs) if not isinstance(r, Unspecified)]
        resolved: Dict[MaterialRef, Optional[str]] = {UNSPECIFIED: None}
        if not unique:
            return resolved

        with ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(unique))) as pool:
            futures = {pool.submit(self.resolver.resolve, ref, self.cancel): ref for ref in unique}
            for fut in as_completed(futures):
                ref = futures[fut]
                resolved[ref] = fut.result()
                if resolved[ref] is None:
                    log.warning("[Lifestyle] Material unavailable: %r", ref)
        return resolved

    # ------------------------------------------------------------------
    # Stage 5: generation
    # ------------------------------------------------------------------

    def _slot(
        self,
        index: int,
        products: List[Tuple[str, Material]],
        model_data: Optional[str],
        scene_data: Optional[str],
        model_id: str,
        scene_id: str,
        input_image_url: Optional[str],
        tag: Dict,
    ) -> bool:
        label = f"Lifestyle-{index}"
        self._emit("progress", index=index)

        if self.cancel.is_set():
            return self._slot_failed(index, self.cancel.reason)
        if not model_data or not scene_data:
            log.error("[%s] Missing material: model=%s scene=%s", label, bool(model_data), bool(scene_data))
            return self._slot_failed(index, "Failed to fetch assets")

        prompt = prompts.lifestyle_final_prompt()
        parts: List[Part] = [prompt]
        if len(products) > 1:
            parts.append("Outfit mode: dress the model in ALL of the following items at once.")
            for slot, material in products:
                parts += [f"[Product] {prompts.OUTFIT_SLOT_LABELS.get(slot, slot)}:", image_part(material.data)]
        else:
            parts += ["[Product]:", image_part(products[0][1].data)]
        parts += ["[Model]:", image_part(model_data), "[Scene]:", image_part(scene_data)]

        result = self.client.generate_image(parts, label=label)
        if result is None:
            return self._slot_failed(index, "Image generation failed")

        url = self.uploader.upload(result.base64, self.user_id, f"lifestyle_{self.task_id}_{index}")
        if not url:
            log.error("[%s] Image generated but not saved", label)
            return self._slot_failed(index, "Image upload failed")

        input_params = None
        if index == 0:
            input_params = {
                "type": db.LIFESTYLE,
                "productImage": input_image_url,
                "modelId": model_id,
                "sceneId": scene_id,
                "productTag": tag,
                "isOutfitMode": len(products) > 1,
                "outfitSlots": [s for s, _ in products] if len(products) > 1 else None,
            }
        saved = db.append_image(
            task_id=self.task_id,
            user_id=self.user_id,
            image_index=index,
            image_url=url,
            model_type=result.model,
            gen_mode=prompts.MODE_SIMPLE,
            prompt=prompt,
            task_type=db.LIFESTYLE,
            input_image_url=input_image_url if index == 0 else None,
            input_params=input_params,
        )
        if not saved.get("success"):
            log.warning("[%s] Image shown to user but record not written", label)

        event: Dict[str, Any] = {
            "index": index,
            "image": url,
            "modelType": result.model,
            "modelId": model_id,
            "sceneId": scene_id,
        }
        if saved.get("db_id"):
            event["dbId"] = saved["db_id"]
        self._emit("image", **event)
        return True

    def _slot_failed(self, index: int, error: str) -> bool:
        db.mark_failed(self.task_id, self.user_id, index, error, db.LIFESTYLE)
        self._emit("image_error", index=index, error=error)
        return False

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Execute all stages. Returns the number of completed slots; never raises."""
        start = time.time()
        log.info("[Lifestyle] Start task=%s user=%s", self.task_id, self.user_id)
        try:
            if not self.task_id:
                raise StageError("Missing task ID")

            self._status("Processing product image...")
            products = self._load_products()
            primary = products[0][1]

            self._status("Analyzing clothing style...")
            tag = self.analyze_product(primary)
            self._emit("analysis_complete", productTag=tag)

            user_model = not isinstance(self.model_ref, Unspecified)
            user_scene = not isinstance(self.scene_ref, Unspecified)
            if user_model and user_scene:
                log.info("[Lifestyle] Model and scene both chosen by user, skipping AI match")
                result: Dict[str, str] = {}
            else:
                result = self.match(primary, tag)
            self._check_cancel()

            model_ids = self._slot_ids(result, "model", self.model_ref)
            scene_ids = self._slot_ids(result, "scene", self.scene_ref)

            self._status("Fetching model and scene assets...")
            model_refs = [
                self.model_ref if user_model else preset_ref(config.ALL_MODELS_CATEGORY, mid) for mid in model_ids
            ]
            scene_refs = [
                self.scene_ref if user_scene else preset_ref(config.LIFESTYLE_SCENE_CATEGORY, sid) for sid in scene_ids
            ]
            materials = self.fetch_materials(model_refs, scene_refs)
            self._emit("materials_ready", models=model_ids, scenes=scene_ids)
        except StageError as exc:
            if self.task_id:
                db.fail_generation(self.task_id, self.user_id)
            self._emit("error", error=str(exc))
            return 0
        except Exception as exc:
            log.error("[Lifestyle] Unexpected failure: %s", exc, exc_info=True)
            if self.task_id:
                db.fail_generation(self.task_id, self.user_id)
            self._emit("error", error=GENERIC_ERROR)
            return 0

        self._status("Generating street style photos...")
        input_image_url = primary.url or self.uploader.upload(
            primary.data, self.user_id, f"lifestyle_{self.task_id}_input"
        )

        done = 0
        with ThreadPoolExecutor(max_workers=self.num_images) as pool:
            futures = {
                pool.submit(
                    self._slot,
                    i,
                    products,
                    materials.get(model_refs[i]),
                    materials.get(scene_refs[i]),
                    model_ids[i],
                    scene_ids[i],
                    input_image_url,
                    tag,
                ): i
                for i in range(self.num_images)
            }
            for fut in as_completed(futures):
                i = futures[fut]
                try:
                    done += 1 if fut.result() else 0
                except Exception as exc:
                    log.error("[Lifestyle-%d] Crashed: %s", i, exc, exc_info=True)
                    self._slot_failed(i, "Image generation failed")

        self._emit("complete", successCount=done, total=self.num_images)
        log.info("[Lifestyle] Done task=%s %d/%d in %.1fs", self.task_id, done, self.num_images, time.time() - start)
        return done
