import base64
from types import SimpleNamespace

import pytest

from conftest import PNG
from genai_client import MODEL_FLASH, MODEL_PRO, ImageResult, extract_image, extract_text


def _response(parts, finish_reason="STOP"):
    candidate = SimpleNamespace(finish_reason=finish_reason, content=SimpleNamespace(parts=parts))
    return SimpleNamespace(candidates=[candidate])


# ---------------------------------------------------------------------------
# Image failover
# ---------------------------------------------------------------------------

def test_primary_success_uses_one_call(model_client, backend):
    result = model_client.generate_image(["prompt"])
    assert result.model == MODEL_PRO
    assert result.image == PNG
    assert backend.kinds() == [("image", "primary")]


def test_primary_error_falls_back_once(model_client, backend):
    def image(model, parts):
        if model == "primary":
            raise RuntimeError("quota exceeded")
        return PNG

    backend.image = image
    result = model_client.generate_image(["prompt"])

    assert result.model == MODEL_FLASH
    assert backend.kinds() == [("image", "primary"), ("image", "fallback")]


def test_fallback_gets_the_same_parts(model_client, backend):
    backend.image = lambda model, parts: None if model == "primary" else PNG
    parts = ["prompt", "[Model]"]
    model_client.generate_image(parts)
    assert backend.calls[0][2] == backend.calls[1][2] == parts


def test_both_models_failing_returns_none(model_client, backend):
    def image(model, parts):
        raise TimeoutError("deadline exceeded")

    backend.image = image
    assert model_client.generate_image(["prompt"]) is None
    assert len(backend.calls) == 2


def test_image_result_base64():
    assert ImageResult(image=b"abc", model=MODEL_PRO).base64 == base64.b64encode(b"abc").decode()


# ---------------------------------------------------------------------------
# Text calls
# ---------------------------------------------------------------------------

def test_text_uses_vlm_model_by_default(model_client, backend):
    assert model_client.generate_text(["describe"]) == "- composition: centered"
    assert backend.kinds() == [("text", "vlm")]


def test_text_with_explicit_model(model_client, backend):
    model_client.generate_text(["describe"], model=model_client.instruct_model)
    assert backend.kinds() == [("text", "instruct")]


@pytest.mark.parametrize("outcome", ["", None, RuntimeError("boom")])
def test_text_failure_returns_none(model_client, backend, outcome):
    def text(model, parts):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    backend.text = text
    assert model_client.generate_text(["describe"]) is None
    assert len(backend.calls) == 1


# ---------------------------------------------------------------------------
# Response extraction
# ---------------------------------------------------------------------------

def test_extract_image_bytes_and_base64():
    raw = _response([SimpleNamespace(text="here you go", inline_data=None),
                     SimpleNamespace(inline_data=SimpleNamespace(data=PNG))])
    assert extract_image(raw) == PNG

    encoded = _response([SimpleNamespace(inline_data=SimpleNamespace(data=base64.b64encode(PNG).decode()))])
    assert extract_image(encoded) == PNG


def test_extract_image_without_image_part():
    assert extract_image(_response([SimpleNamespace(text="sorry", inline_data=None)])) is None
    assert extract_image(SimpleNamespace(candidates=[])) is None


def test_extract_image_safety_block_raises():
    reason = SimpleNamespace(name="SAFETY")
    with pytest.raises(RuntimeError):
        extract_image(_response([], finish_reason=reason))


def test_extract_text_joins_parts_and_respects_safety():
    resp = _response([SimpleNamespace(text="line one"), SimpleNamespace(text="line two")])
    assert extract_text(resp) == "line one\nline two"
    assert extract_text(_response([SimpleNamespace(text="x")], finish_reason="SAFETY")) is None
