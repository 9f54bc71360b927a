#!/usr/bin/env python3
"""Command-line entry point for Brand Camera.

Usage:
    brand-camera serve --port 5000
    brand-camera create-token --user alice
    brand-camera import-catalog --models models.json --scenes scenes.json
    brand-camera lifestyle --product dress.jpg
    brand-camera pro-studio --product shirt.jpg --model random --mode extended
    brand-camera single --type model --product shirt.jpg --model m.jpg --background bg.jpg --simple
    brand-camera sync <task-id>
"""

from __future__ import annotations

import argparse
import base64
import json
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure()

import config
from task_store import COMPLETED, FAILED, GENERATING, GenerationTask, TaskStore

STORE_PATH = Path(os.environ.get("CAMERA_TASKS_FILE", Path.home() / ".brand_camera" / "tasks.json"))

_MIME_BY_EXT = {".png": "image/png", ".webp": "image/webp", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}


def _echo(msg: str) -> None:
    print(msg, flush=True)


def _image_arg(value: Optional[str]) -> Optional[str]:
    """Local files become data URLs; URLs, sentinels and preset ids pass through."""
    if not value:
        return None
    path = Path(value).expanduser()
    if path.is_file():
        mime = _MIME_BY_EXT.get(path.suffix.lower(), "image/jpeg")
        return f"data:{mime};base64,{base64.b64encode(path.read_bytes()).decode('ascii')}"
    return value


def _load_rows(path: str, key: str) -> List[Dict]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get(key) or []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list (or {{'{key}': [...]}})")
    return data


# ---------------------------------------------------------------------------
# Progress output
# ---------------------------------------------------------------------------

def _progress_printer():
    seen: Dict[tuple, str] = {}

    def listener(task: GenerationTask) -> None:
        for slot in task.image_slots:
            key = (task.id, slot.index)
            if seen.get(key) == slot.status:
                continue
            seen[key] = slot.status
            if slot.status == GENERATING:
                _echo(f"  ◌ Image {slot.index + 1}/{task.total_slots} generating…")
            elif slot.status == COMPLETED:
                _echo(f"  ✓ Image {slot.index + 1}/{task.total_slots} ({slot.model_type}) {slot.image_url}")
            elif slot.status == FAILED:
                _echo(f"  ✗ Image {slot.index + 1}/{task.total_slots}: {slot.error}")

    return listener


def _summary(task: GenerationTask) -> None:
    _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Task    : {task.id}")
    _echo(f"  Type    : {task.type}")
    _echo(f"  Status  : {task.status}")
    _echo(f"  Images  : {task.completed_count}/{task.total_slots} generated\n")


def _client(args):
    from client import CameraClient

    token = args.token or os.environ.get("CAMERA_TOKEN", "")
    if not token:
        print("✗  No API token (use --token or CAMERA_TOKEN; create one with `create-token`)", file=sys.stderr)
        raise SystemExit(2)
    store = TaskStore(STORE_PATH)
    store.subscribe(_progress_printer())
    return CameraClient(base_url=args.server, token=token, store=store)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args) -> int:
    import app

    app.serve(host=args.host, port=args.port)
    return 0


def cmd_create_token(args) -> int:
    import auth
    import db

    db.init_db()
    token = auth.create_token(args.user)
    _echo(token)
    return 0


def cmd_import_catalog(args) -> int:
    import db

    if not args.models and not args.scenes:
        print("✗  Nothing to import: pass --models and/or --scenes", file=sys.stderr)
        return 2
    db.init_db()
    if args.models:
        n = db.upsert_models(_load_rows(args.models, "models"))
        _echo(f"  ✓ {n} models imported")
    if args.scenes:
        n = db.upsert_scene_tags(_load_rows(args.scenes, "scenes"))
        _echo(f"  ✓ {n} scenes imported")
    return 0


def _run(fn, body: Dict) -> int:
    from client import ApiError

    try:
        task = fn(body)
    except ApiError as exc:
        print(f"\n✗  {exc} (HTTP {exc.status})", file=sys.stderr)
        return 1
    _summary(task)
    return 0 if task.completed_count else 1


def cmd_lifestyle(args) -> int:
    client = _client(args)
    body = {
        "productImage": _image_arg(args.product),
        "modelImage": _image_arg(args.model_image),
        "sceneImage": _image_arg(args.scene_image),
        "modelId": args.model_id,
        "sceneId": args.scene_id,
    }
    _echo(f"\n  ✦ Lifestyle  ({config.NUM_LIFESTYLE_IMAGES} images)\n")
    return _run(client.lifestyle, {k: v for k, v in body.items() if v})


def cmd_pro_studio(args) -> int:
    client = _client(args)
    body = {
        "productImage": _image_arg(args.product),
        "modelImage": _image_arg(args.model),
        "modelIsRandom": args.model == "random",
        "backgroundImage": _image_arg(args.background),
        "bgIsRandom": args.background == "random",
        "mode": args.mode,
    }
    _echo(f"\n  ✦ Pro studio  ({args.count} images, {args.mode})\n")
    return _run(lambda b: client.pro_studio(b, count=args.count), body)


def cmd_single(args) -> int:
    client = _client(args)
    body = {
        "type": args.type,
        "productImage": _image_arg(args.product),
        "modelImage": _image_arg(args.model),
        "backgroundImage": _image_arg(args.background),
        "simpleMode": args.simple,
        "modelStyle": args.style,
        "modelGender": args.gender,
    }
    _echo(f"\n  ✦ Single {args.type}  ({args.count} images)\n")
    return _run(lambda b: client.single(b, count=args.count), {k: v for k, v in body.items() if v is not None})


def cmd_sync(args) -> int:
    client = _client(args)
    task = client.sync_task(args.task_id)
    if task is None:
        print(f"✗  Unknown task {args.task_id}", file=sys.stderr)
        return 1
    _summary(task)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="brand-camera",
        description="Generate model and lifestyle photos from product images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the API server")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=int(os.environ.get("PORT", 5000)))
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("create-token", help="Issue an API token for a user")
    p.add_argument("--user", required=True, help="User id")
    p.set_defaults(func=cmd_create_token)

    p = sub.add_parser("import-catalog", help="Load lifestyle model/scene catalogs from JSON")
    p.add_argument("--models", help="JSON list of models_analysis rows")
    p.add_argument("--scenes", help="JSON list of lifestyle_scene_tags rows")
    p.set_defaults(func=cmd_import_catalog)

    def client_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--server", default=config.PUBLIC_BASE_URL, help=f"API base URL (default: {config.PUBLIC_BASE_URL})")
        p.add_argument("--token", default=None, help="API token (default: $CAMERA_TOKEN)")

    p = sub.add_parser("lifestyle", help="Street-style photos, models and scenes matched by AI")
    p.add_argument("--product", required=True, help="Product image: file, URL or base64")
    p.add_argument("--model-id", help="Preset model id (overrides the AI choice)")
    p.add_argument("--scene-id", help="Preset scene id (overrides the AI choice)")
    p.add_argument("--model-image", help="Custom model image")
    p.add_argument("--scene-image", help="Custom scene image")
    client_args(p)
    p.set_defaults(func=cmd_lifestyle)

    p = sub.add_parser("pro-studio", help="Studio photos on a chosen or random model")
    p.add_argument("--product", required=True)
    p.add_argument("--model", default="random", help="Model image, or 'random' (default)")
    p.add_argument("--background", help="Backdrop image, or 'random'; omitted means AI-invented backdrop")
    p.add_argument("--mode", choices=["simple", "extended"], default="simple")
    p.add_argument("--count", type=int, default=4)
    client_args(p)
    p.set_defaults(func=cmd_pro_studio)

    p = sub.add_parser("single", help="Product shot or on-model photo")
    p.add_argument("--type", choices=["product", "model"], default="model")
    p.add_argument("--product", required=True)
    p.add_argument("--model")
    p.add_argument("--background")
    p.add_argument("--simple", action="store_true", help="One-step prompt (needs --model and --background)")
    p.add_argument("--style", choices=["korean", "western", "auto"], default=None)
    p.add_argument("--gender", default=None)
    p.add_argument("--count", type=int, default=2)
    client_args(p)
    p.set_defaults(func=cmd_single)

    p = sub.add_parser("sync", help="Reconcile a task with its server-side record")
    p.add_argument("task_id")
    client_args(p)
    p.set_defaults(func=cmd_sync)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
