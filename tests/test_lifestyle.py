import json
import sqlite3

import pytest

import db
import prompts
from conftest import FILES_URL, MODEL, PNG, PRESETS_URL, PRODUCT, b64, images_in
from lifestyle import CancelToken, LifestylePipeline, parse_json
from task_store import COMPLETED, FAILED, TaskStore

MODELS = ["m1", "m2", "m3", "m4"]
SCENES = ["s1", "s2", "s3", "s4"]

DRESS_TAG = {
    "outfit_type": "one_piece",
    "upper": None,
    "lower": None,
    "onepiece": {"category": "dress", "onepiece_length": "midi", "fit": "regular", "design_intent": "soft_draped"},
}

MATCH = dict(
    [(f"model_id_{i + 1}", m) for i, m in enumerate(MODELS)]
    + [(f"scene_id_{i + 1}", s) for i, s in enumerate(SCENES)]
)


@pytest.fixture
def catalog_rows():
    db.upsert_models([
        {"model_id": m, "model_gender": "female", "model_age_group": "20s", "model_style_primary": "street"}
        for m in MODELS
    ])
    db.upsert_scene_tags(
        [{"scene_id": s, "outfit_type": "one_piece", "onepiece_category": "dress"} for s in SCENES]
        + [{"scene_id": "t1", "outfit_type": "two_piece", "upper_category": "tshirt", "lower_category": "jeans"}]
    )


@pytest.fixture
def presets(fetcher, catalog_rows):
    for m in MODELS:
        fetcher.available[f"{PRESETS_URL}/all_models/{m}.jpg"] = b64(m)
    for s in SCENES + ["t1"]:
        fetcher.available[f"{PRESETS_URL}/lifestyle_scene/{s}.jpg"] = b64(s)


def vlm(tag=None, match=None):
    """Text backend answering the analysis call with *tag* and the match call with *match*."""
    def text(model, parts):
        if parts[0] == prompts.LIFESTYLE_VLM_PROMPT:
            return "```json\n" + json.dumps(tag or DRESS_TAG) + "\n```"
        return "Here is my selection:\n" + json.dumps(match or MATCH)
    return text


def run(model_client, resolver, uploader, body, cancel=None, task_id="life-1"):
    events = []
    pipeline = LifestylePipeline(
        task_id=task_id,
        user_id="u1",
        body=body,
        client=model_client,
        resolver=resolver,
        uploader=uploader,
        progress_cb=events.append,
        cancel=cancel,
        num_images=4,
    )
    return pipeline.run(), events


def of_type(events, kind):
    return [e for e in events if e["type"] == kind]


def kinds(events):
    return [e["type"] for e in events]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

def test_dress_runs_every_stage_in_order(backend, model_client, resolver, uploader, presets):
    backend.text = vlm()

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})

    order = kinds(events)
    assert done == 4
    assert order[-1] == "complete"
    assert order.count("complete") == 1 and "error" not in order
    assert order.index("analysis_complete") < order.index("materials_ready") < order.index("image")

    assert of_type(events, "analysis_complete")[0]["productTag"]["onepiece"]["category"] == "dress"
    ready = of_type(events, "materials_ready")[0]
    assert ready["models"] == MODELS
    assert ready["scenes"] == SCENES

    images = sorted(of_type(events, "image"), key=lambda e: e["index"])
    assert [e["index"] for e in images] == [0, 1, 2, 3]
    assert [e["modelId"] for e in images] == MODELS
    assert [e["sceneId"] for e in images] == SCENES
    assert all(e["image"].startswith(FILES_URL) for e in images)
    assert events[-1]["successCount"] == 4 and events[-1]["total"] == 4


def test_match_only_sees_filtered_scenes(backend, model_client, resolver, uploader, presets):
    backend.text = vlm()
    run(model_client, resolver, uploader, {"productImage": PRODUCT})

    texts = [parts for kind, _, parts in backend.calls if kind == "text"]
    assert len(texts) == 2
    match_prompt = texts[1][0]
    assert '"s1"' in match_prompt
    assert '"t1"' not in match_prompt


def test_each_slot_gets_its_own_model_and_scene(backend, model_client, resolver, uploader, presets):
    backend.text = vlm()
    run(model_client, resolver, uploader, {"productImage": PRODUCT})

    pairs = set()
    for kind, _, parts in backend.calls:
        if kind != "image":
            continue
        data = images_in(parts)
        assert data[0] == PRODUCT
        model = next(m for m in MODELS if b64(m) in data)
        scene = next(s for s in SCENES if b64(s) in data)
        pairs.add((model, scene))
    assert pairs == set(zip(MODELS, SCENES))


def test_records_every_image(backend, model_client, resolver, uploader, presets):
    backend.text = vlm()
    run(model_client, resolver, uploader, {"productImage": PRODUCT})

    gen = db.get_generation("life-1", "u1")
    assert gen["task_type"] == db.LIFESTYLE
    assert gen["status"] == "completed"
    assert [img["image_index"] for img in gen["images"]] == [0, 1, 2, 3]
    assert {img["gen_mode"] for img in gen["images"]} == {"simple"}
    assert gen["input_params"]["modelId"] == "m1"
    assert gen["input_params"]["productTag"] == DRESS_TAG
    assert "_input_" in gen["input_image_url"]

    inputs = [p for p in (uploader.root / "u1").iterdir() if "_input_" in p.name]
    assert len(inputs) == 1


# ---------------------------------------------------------------------------
# Per-slot failures
# ---------------------------------------------------------------------------

def test_failed_slots_do_not_stop_the_others(backend, model_client, resolver, uploader, presets):
    backend.text = vlm()
    broken = {b64("m2"), b64("m4")}
    backend.image = lambda model, parts: None if broken & set(images_in(parts)) else PNG

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})

    assert done == 2
    assert kinds(events)[-1] == "complete"
    assert sorted(e["index"] for e in of_type(events, "image")) == [0, 2]
    assert sorted(e["index"] for e in of_type(events, "image_error")) == [1, 3]

    store = TaskStore()
    task_id = store.add_task("lifestyle", 4, task_id="life-1")
    for event in events:
        store.apply_event(task_id, event)
    task = store.get_task(task_id)
    assert [s.status for s in task.image_slots] == [COMPLETED, FAILED, COMPLETED, FAILED]
    assert task.status == COMPLETED

    statuses = {img["image_index"]: img["status"] for img in db.get_generation("life-1", "u1")["images"]}
    assert statuses == {0: "completed", 1: "failed", 2: "completed", 3: "failed"}


def test_missing_scene_fails_only_its_slot(backend, model_client, resolver, uploader, presets, fetcher):
    del fetcher.available[f"{PRESETS_URL}/lifestyle_scene/s3.jpg"]
    backend.text = vlm()

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})

    assert done == 3
    (error,) = of_type(events, "image_error")
    assert error == {"type": "image_error", "index": 2, "error": "Failed to fetch assets"}


# ---------------------------------------------------------------------------
# Stage failures
# ---------------------------------------------------------------------------

def test_unreadable_analysis_aborts(backend, model_client, resolver, uploader, presets):
    backend.text = lambda model, parts: "I am not sure what this garment is."

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})

    assert done == 0
    assert events[-1] == {"type": "error", "error": "Clothing analysis failed, please retry"}
    assert "complete" not in kinds(events)
    assert "materials_ready" not in kinds(events)
    assert not [c for c in backend.calls if c[0] == "image"]


def test_no_matching_scenes_aborts_and_fails_the_record(backend, model_client, resolver, uploader):
    db.create_generation("life-1", "u1", db.LIFESTYLE, 4)
    backend.text = vlm()

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})

    assert done == 0
    assert events[-1] == {"type": "error", "error": "No matching scenes found"}
    assert db.get_generation("life-1", "u1")["status"] == "failed"


def test_unparseable_match_aborts(backend, model_client, resolver, uploader, presets):
    def text(model, parts):
        if parts[0] == prompts.LIFESTYLE_VLM_PROMPT:
            return json.dumps(DRESS_TAG)
        return "no idea"

    backend.text = text
    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})
    assert events[-1] == {"type": "error", "error": "Model and scene matching failed"}


def test_catalog_failure_aborts_with_a_generic_error(backend, model_client, resolver, uploader, monkeypatch):
    db.create_generation("life-1", "u1", db.LIFESTYLE, 4)
    backend.text = vlm()

    def broken(tag):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "scene_ids_matching", broken)
    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT})

    assert done == 0
    assert events[-1] == {"type": "error", "error": "Generation failed, please retry"}
    assert db.get_generation("life-1", "u1")["status"] == "failed"


def test_missing_task_id_aborts(model_client, resolver, uploader):
    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT}, task_id="")
    assert events == [{"type": "error", "error": "Missing task ID"}]


# ---------------------------------------------------------------------------
# User choices
# ---------------------------------------------------------------------------

def test_custom_model_and_scene_skip_matching(backend, model_client, resolver, uploader, fetcher):
    backend.text = vlm()
    body = {"productImage": PRODUCT, "modelImage": MODEL, "sceneImage": b64("my-street")}

    done, events = run(model_client, resolver, uploader, body)

    assert done == 4
    assert [kind for kind, _, _ in backend.calls].count("text") == 1
    ready = of_type(events, "materials_ready")[0]
    assert ready["models"] == ["custom"] * 4
    assert ready["scenes"] == ["custom"] * 4
    assert fetcher.calls == []


def test_chosen_preset_model_is_used_for_every_slot(backend, model_client, resolver, uploader, presets, fetcher):
    backend.text = vlm()

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT, "modelId": "m3"})

    assert done == 4
    ready = of_type(events, "materials_ready")[0]
    assert ready["models"] == ["m3"] * 4
    assert ready["scenes"] == SCENES
    assert fetcher.calls.count(f"{PRESETS_URL}/all_models/m3.jpg") == 1


def test_outfit_items_are_all_sent(backend, model_client, resolver, uploader):
    backend.text = vlm()
    body = {
        "outfitItems": {"shoes": {"imageUrl": b64("shoes")}, "top": PRODUCT},
        "modelImage": MODEL,
        "sceneImage": b64("my-street"),
    }

    done, _ = run(model_client, resolver, uploader, body)

    assert done == 4
    image_parts = next(parts for kind, _, parts in backend.calls if kind == "image")
    assert "Outfit mode: dress the model in ALL of the following items at once." in image_parts
    assert images_in(image_parts)[:2] == [PRODUCT, b64("shoes")]
    params = db.get_generation("life-1", "u1")["input_params"]
    assert params["isOutfitMode"] is True
    assert params["outfitSlots"] == ["top", "shoes"]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def test_cancelled_before_analysis(backend, model_client, resolver, uploader):
    token = CancelToken()
    token.cancel()

    done, events = run(model_client, resolver, uploader, {"productImage": PRODUCT}, cancel=token)

    assert done == 0
    assert events[-1] == {"type": "error", "error": "Cancelled"}
    assert backend.calls == []


def test_deadline_counts_as_cancel():
    token = CancelToken(timeout=0)
    assert token.is_set()
    assert token.reason == "Timed out"


# ---------------------------------------------------------------------------
# JSON answers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", [
    '{"outfit_type": "two_piece"}',
    '```json\n{"outfit_type": "two_piece"}\n```',
    'Sure! {"outfit_type": "two_piece"} Hope that helps.',
])
def test_parse_json_tolerates_wrapping(text):
    assert parse_json(text) == {"outfit_type": "two_piece"}


def test_parse_json_rejects_prose():
    with pytest.raises(ValueError):
        parse_json("no json here")
