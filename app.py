"""Brand Camera — Flask API for model / lifestyle photo generation."""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
from typing import Callable, Dict, Generator, Tuple

from dotenv import load_dotenv
from flask import Flask, Response, g, jsonify, request, send_from_directory
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import config
import db
import genai_client
import quota
from auth import require_auth
from lifestyle import CancelToken, LifestylePipeline
from materials import MaterialResolver
from storage import Uploader
from studio import GenerationError, StudioService

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__, static_folder=None)
CORS(app)

db.init_db()

# Running lifestyle pipelines: (user_id, task_id) -> CancelToken
_cancel_tokens: Dict[Tuple[str, str], CancelToken] = {}
_cancel_tokens_lock = threading.Lock()


def _dependency(key: str, factory: Callable):
    """Collaborators live in app.config so tests can swap them for fakes."""
    value = app.config.get(key)
    if value is None:
        value = factory()
        app.config[key] = value
    return value


def _client() -> genai_client.ModelClient:
    return _dependency("MODEL_CLIENT", genai_client.default_client)


def _resolver() -> MaterialResolver:
    return _dependency("RESOLVER", MaterialResolver)


def _uploader() -> Uploader:
    return _dependency("UPLOADER", Uploader)


def _studio() -> StudioService:
    return StudioService(_client(), _resolver(), _uploader())


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _register_token(user_id: str, task_id: str) -> CancelToken:
    token = CancelToken()
    with _cancel_tokens_lock:
        _cancel_tokens[(user_id, task_id)] = token
    return token


def _release_token(user_id: str, task_id: str, token: CancelToken) -> None:
    with _cancel_tokens_lock:
        if _cancel_tokens.get((user_id, task_id)) is token:
            del _cancel_tokens[(user_id, task_id)]


# ---------------------------------------------------------------------------
# Pipeline thread
# ---------------------------------------------------------------------------

def _run_lifestyle_thread(pipeline: LifestylePipeline, q: queue.Queue) -> None:
    try:
        pipeline.run()
    except Exception as exc:
        log.error("Lifestyle thread crashed: task=%s  error=%s", pipeline.task_id, exc, exc_info=True)
        try:
            q.put_nowait({"type": "error", "error": str(exc)})
        except queue.Full:
            pass
    finally:
        _release_token(pipeline.user_id, pipeline.task_id, pipeline.cancel)
        # Signal SSE stream to close
        try:
            q.put_nowait(None)
        except queue.Full:
            pass


# ---------------------------------------------------------------------------
# Routes — Generation
# ---------------------------------------------------------------------------

@app.post("/api/generate-lifestyle")
@require_auth
def api_generate_lifestyle():
    """Server-Sent Events stream for one lifestyle batch.

    The pipeline runs on its own thread; a client that disconnects stops
    receiving events but does not stop generation.
    """
    body = request.get_json(silent=True) or {}
    user_id = g.user_id
    task_id = str(body.get("taskId") or "")
    q: queue.Queue = queue.Queue(maxsize=500)

    def progress_cb(event: Dict) -> None:
        try:
            q.put_nowait(event)
        except queue.Full:
            pass

    token = _register_token(user_id, task_id) if task_id else CancelToken()
    pipeline = LifestylePipeline(
        task_id=task_id,
        user_id=user_id,
        body=body,
        client=_client(),
        resolver=_resolver(),
        uploader=_uploader(),
        progress_cb=progress_cb,
        cancel=token,
    )
    threading.Thread(target=_run_lifestyle_thread, args=(pipeline, q), daemon=True).start()

    def generate() -> Generator[str, None, None]:
        while True:
            try:
                event = q.get(timeout=25)
            except queue.Empty:
                yield _sse_event({"type": "heartbeat"})
                continue

            if event is None:
                break
            yield _sse_event(event)
            if event.get("type") in ("complete", "error"):
                break

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@app.delete("/api/generate-lifestyle/<task_id>")
@require_auth
def api_cancel_lifestyle(task_id: str):
    with _cancel_tokens_lock:
        token = _cancel_tokens.get((g.user_id, task_id))
    if token is None:
        return jsonify({"success": False, "error": "No running task"}), 404
    token.cancel()
    log.info("Lifestyle cancel requested: task=%s", task_id)
    return jsonify({"success": True})


def _slot_route(run) -> Tuple[Response, int]:
    body = request.get_json(silent=True) or {}
    try:
        return jsonify(run(body, g.user_id)), 200
    except GenerationError as exc:
        return jsonify(exc.to_response()), exc.status
    except Exception as exc:
        log.error("Generation crashed: %s", exc, exc_info=True)
        return jsonify({"success": False, "error": str(exc) or "Generation failed", "index": body.get("index")}), 500


@app.post("/api/generate-pro-studio")
@require_auth
def api_generate_pro_studio():
    return _slot_route(_studio().pro_studio)


@app.post("/api/generate-single")
@require_auth
def api_generate_single():
    return _slot_route(_studio().single)


@app.get("/api/generations/<task_id>")
@require_auth
def api_get_generation(task_id: str):
    gen = db.get_generation(task_id, g.user_id)
    if not gen:
        return jsonify({"success": False, "error": "Not found"}), 404
    return jsonify({"success": True, "generation": gen})


# ---------------------------------------------------------------------------
# Routes — Quota
# ---------------------------------------------------------------------------

@app.get("/api/quota")
@require_auth
def api_quota():
    return jsonify({"success": True, "credits": quota.get_credits(g.user_id)})


@app.post("/api/quota/reserve")
@require_auth
def api_quota_reserve():
    body = request.get_json(silent=True) or {}
    task_id = body.get("taskId")
    try:
        image_count = int(body.get("imageCount") or 0)
    except (TypeError, ValueError):
        image_count = 0
    if not task_id or image_count <= 0:
        return jsonify({"success": False, "error": "taskId and imageCount are required"}), 400

    try:
        return jsonify(quota.reserve(g.user_id, task_id, image_count, body.get("taskType")))
    except quota.InsufficientCredits as exc:
        return jsonify({
            "success": False,
            "error": "INSUFFICIENT_CREDITS",
            "needed": exc.needed,
            "available": exc.available,
        }), 402


@app.put("/api/quota/reserve")
@require_auth
def api_quota_settle():
    body = request.get_json(silent=True) or {}
    task_id = body.get("taskId")
    try:
        actual = int(body["actualImageCount"])
    except (KeyError, TypeError, ValueError):
        actual = None
    if not task_id or actual is None:
        return jsonify({"success": False, "error": "taskId and actualImageCount are required"}), 400
    result = quota.settle(g.user_id, task_id, actual)
    return jsonify(result), 200 if result["success"] else 404


@app.delete("/api/quota/reserve")
@require_auth
def api_quota_release():
    task_id = request.args.get("taskId")
    if not task_id:
        return jsonify({"success": False, "error": "taskId is required"}), 400
    result = quota.release(g.user_id, task_id)
    return jsonify(result), 200 if result["success"] else 404


@app.post("/api/quota/daily-reward")
@require_auth
def api_daily_reward():
    return jsonify(quota.claim_daily_reward(g.user_id))


# ---------------------------------------------------------------------------
# Routes — Files
# ---------------------------------------------------------------------------

@app.get("/presets/<path:filename>")
def serve_preset(filename: str):
    return send_from_directory(str(config.PRESETS_DIR), filename)


@app.get("/static/generations/<path:filename>")
def serve_generation(filename: str):
    return send_from_directory(str(config.GENERATIONS_DIR), filename)


@app.get("/api/health")
def api_health():
    return jsonify({
        "ok": True,
        "image_provider": config.IMAGE_PROVIDER,
        "text_provider": config.TEXT_PROVIDER,
        "primary_model": config.PRIMARY_IMAGE_MODEL,
        "fallback_model": config.FALLBACK_IMAGE_MODEL,
    })


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def serve(host: str = "0.0.0.0", port: int = 0) -> None:
    port = port or int(os.environ.get("PORT", 5000))
    print(f"\n  Brand Camera → http://localhost:{port}\n")
    app.run(host=host, port=port, debug=False, threaded=True)


if __name__ == "__main__":
    serve()
