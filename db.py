"""SQLite persistence: generation records, lifestyle catalogs and credit balances."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Dict, Iterable, List, Optional

import config

log = logging.getLogger(__name__)

DB_PATH = config.DB_PATH

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _conn() -> sqlite3.Connection:
    con = sqlite3.connect(str(DB_PATH), timeout=30)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS generations (
                id                  TEXT PRIMARY KEY,
                task_id             TEXT NOT NULL,
                user_id             TEXT NOT NULL,
                task_type           TEXT NOT NULL,
                status              TEXT DEFAULT 'pending',
                total_images_count  INTEGER,
                input_image_url     TEXT,
                input_params        TEXT,   -- JSON
                created_at          DATETIME DEFAULT (datetime('now')),
                updated_at          DATETIME DEFAULT (datetime('now')),
                UNIQUE (user_id, task_id)
            );

            CREATE TABLE IF NOT EXISTS generation_images (
                generation_id  TEXT NOT NULL REFERENCES generations(id),
                image_index    INTEGER NOT NULL,
                status         TEXT NOT NULL,      -- completed | failed
                image_url      TEXT,
                model_type     TEXT,               -- pro | flash
                gen_mode       TEXT,               -- simple | extended
                prompt         TEXT,
                error          TEXT,
                created_at     DATETIME DEFAULT (datetime('now')),
                PRIMARY KEY (generation_id, image_index)
            );

            CREATE TABLE IF NOT EXISTS models_analysis (
                model_id             TEXT PRIMARY KEY,
                model_gender         TEXT,
                model_age_group      TEXT,
                model_style_primary  TEXT,
                model_style_all      TEXT,   -- JSON list
                height_range         TEXT,
                body_shape           TEXT,
                model_desc           TEXT
            );

            CREATE TABLE IF NOT EXISTS lifestyle_scene_tags (
                scene_id           TEXT PRIMARY KEY,
                outfit_type        TEXT,
                upper_category     TEXT,
                lower_category     TEXT,
                onepiece_category  TEXT,
                tags               TEXT    -- JSON, everything else the tagger produced
            );

            CREATE TABLE IF NOT EXISTS user_quotas (
                user_id               TEXT PRIMARY KEY,
                daily_credits         INTEGER DEFAULT 0,
                daily_credits_date    TEXT,
                subscription_credits  INTEGER DEFAULT 0,
                signup_credits        INTEGER,
                admin_give_credits    INTEGER DEFAULT 0,
                purchased_credits     INTEGER DEFAULT 0,
                updated_at            DATETIME DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS credit_reservations (
                user_id     TEXT NOT NULL,
                task_id     TEXT NOT NULL,
                reserved    INTEGER NOT NULL,
                refunded    INTEGER DEFAULT 0,
                status      TEXT DEFAULT 'reserved',   -- reserved | confirmed | refunded
                created_at  DATETIME DEFAULT (datetime('now')),
                PRIMARY KEY (user_id, task_id)
            );

            CREATE TABLE IF NOT EXISTS api_tokens (
                token_hash  TEXT PRIMARY KEY,
                user_id     TEXT NOT NULL,
                created_at  DATETIME DEFAULT (datetime('now'))
            );
            """
        )


# ---------------------------------------------------------------------------
# Task types
# ---------------------------------------------------------------------------

MODEL_STUDIO = "model_studio"
PRODUCT_STUDIO = "product_studio"
PRO_STUDIO = "pro_studio"
GROUP_SHOOT = "group_shoot"
EDIT = "edit"
CREATE_MODEL = "create_model"
REFERENCE_SHOT = "reference_shot"
LIFESTYLE = "lifestyle"
TRY_ON = "try_on"
BRAND_STYLE = "brand_style"

_TASK_TYPE_ALIASES = {
    "camera": MODEL_STUDIO,
    "camera_model": MODEL_STUDIO,
    "model": MODEL_STUDIO,
    "model_studio": MODEL_STUDIO,
    "studio": PRODUCT_STUDIO,
    "camera_product": PRODUCT_STUDIO,
    "product": PRODUCT_STUDIO,
    "product_studio": PRODUCT_STUDIO,
    "pro_studio": PRO_STUDIO,
    "prostudio": PRO_STUDIO,
    "group_shoot": GROUP_SHOOT,
    "edit": EDIT,
    "editing": EDIT,
    "create_model": CREATE_MODEL,
    "reference_shot": REFERENCE_SHOT,
    "lifestyle": LIFESTYLE,
    "try_on": TRY_ON,
    "tryon": TRY_ON,
    "brand_style": BRAND_STYLE,
    "brandstyle": BRAND_STYLE,
    "brand": BRAND_STYLE,
}


def normalize_task_type(task_type: Optional[str], default: str = MODEL_STUDIO) -> str:
    """Map legacy aliases onto canonical task types; unknown values fall back to *default*."""
    if not task_type:
        return default
    return _TASK_TYPE_ALIASES.get(str(task_type).lower(), default)


# ---------------------------------------------------------------------------
# Generation records
# ---------------------------------------------------------------------------

def _get_or_create_generation(
    con: sqlite3.Connection,
    task_id: str,
    user_id: str,
    task_type: str,
    total_images_count: Optional[int] = None,
) -> str:
    row = con.execute(
        "SELECT id FROM generations WHERE user_id=? AND task_id=?", (user_id, task_id)
    ).fetchone()
    if row:
        return row["id"]
    gen_id = str(uuid.uuid4())
    con.execute(
        "INSERT INTO generations (id, task_id, user_id, task_type, status, total_images_count) "
        "VALUES (?, ?, ?, ?, 'pending', ?)",
        (gen_id, task_id, user_id, normalize_task_type(task_type), total_images_count),
    )
    return gen_id


def create_generation(task_id: str, user_id: str, task_type: str, total_images_count: int) -> str:
    """Create (or return) the pending generation row a reservation refers to."""
    with _conn() as con:
        gen_id = _get_or_create_generation(con, task_id, user_id, task_type, total_images_count)
        con.execute(
            "UPDATE generations SET total_images_count=?, updated_at=datetime('now') WHERE id=?",
            (total_images_count, gen_id),
        )
    return gen_id


def _finalize(con: sqlite3.Connection, gen_id: str) -> None:
    """Mark a generation completed/failed once every expected image is terminal."""
    gen = con.execute(
        "SELECT total_images_count FROM generations WHERE id=?", (gen_id,)
    ).fetchone()
    total = gen["total_images_count"] if gen else None
    counts = con.execute(
        "SELECT SUM(status='completed') AS ok, COUNT(*) AS done "
        "FROM generation_images WHERE generation_id=?",
        (gen_id,),
    ).fetchone()
    ok, done = counts["ok"] or 0, counts["done"] or 0

    if total and done >= total:
        status = STATUS_COMPLETED if ok > 0 else STATUS_FAILED
    elif not total and ok > 0:
        # No reservation told us the batch size; any success completes it
        status = STATUS_COMPLETED
    else:
        return
    con.execute(
        "UPDATE generations SET status=?, updated_at=datetime('now') WHERE id=?",
        (status, gen_id),
    )


def append_image(
    task_id: str,
    user_id: str,
    image_index: int,
    image_url: str,
    model_type: Optional[str],
    gen_mode: Optional[str],
    prompt: Optional[str],
    task_type: str,
    input_image_url: Optional[str] = None,
    input_params: Optional[Dict] = None,
) -> Dict[str, Any]:
    """Upsert one completed image of a task. Never raises."""
    try:
        with _conn() as con:
            gen_id = _get_or_create_generation(con, task_id, user_id, task_type)
            if image_index == 0 and (input_image_url or input_params):
                con.execute(
                    "UPDATE generations SET input_image_url=COALESCE(?, input_image_url), "
                    "input_params=COALESCE(?, input_params) WHERE id=?",
                    (
                        input_image_url,
                        json.dumps(input_params) if input_params is not None else None,
                        gen_id,
                    ),
                )
            con.execute(
                """
                INSERT INTO generation_images
                    (generation_id, image_index, status, image_url, model_type, gen_mode, prompt, error)
                VALUES (?, ?, 'completed', ?, ?, ?, ?, NULL)
                ON CONFLICT (generation_id, image_index) DO UPDATE SET
                    status     = 'completed',
                    image_url  = excluded.image_url,
                    model_type = excluded.model_type,
                    gen_mode   = excluded.gen_mode,
                    prompt     = excluded.prompt,
                    error      = NULL
                """,
                (gen_id, image_index, image_url, model_type, gen_mode, prompt),
            )
            _finalize(con, gen_id)
        log.debug("[DB] Saved image %s #%d → %s", task_id, image_index, gen_id)
        return {"success": True, "db_id": gen_id}
    except sqlite3.Error as exc:
        log.warning("[DB] append_image failed for %s #%d: %s", task_id, image_index, exc)
        return {"success": False, "error": str(exc)}


def mark_failed(task_id: str, user_id: str, image_index: int, error: str, task_type: str = MODEL_STUDIO) -> None:
    """Record a failed slot. A slot that already completed is left alone."""
    try:
        with _conn() as con:
            gen_id = _get_or_create_generation(con, task_id, user_id, task_type)
            con.execute(
                """
                INSERT INTO generation_images (generation_id, image_index, status, error)
                VALUES (?, ?, 'failed', ?)
                ON CONFLICT (generation_id, image_index) DO UPDATE SET
                    error = excluded.error
                WHERE generation_images.status != 'completed'
                """,
                (gen_id, image_index, error),
            )
            _finalize(con, gen_id)
        log.debug("[DB] Marked %s #%d failed: %s", task_id, image_index, error)
    except sqlite3.Error as exc:
        log.warning("[DB] mark_failed failed for %s #%d: %s", task_id, image_index, exc)


def fail_generation(task_id: str, user_id: str) -> None:
    """Mark a whole generation failed unless some image already completed. Never raises."""
    try:
        with _conn() as con:
            con.execute(
                """
                UPDATE generations SET status='failed', updated_at=datetime('now')
                WHERE user_id=? AND task_id=? AND NOT EXISTS (
                    SELECT 1 FROM generation_images
                    WHERE generation_id=generations.id AND status='completed'
                )
                """,
                (user_id, task_id),
            )
    except sqlite3.Error as exc:
        log.warning("[DB] fail_generation failed for %s: %s", task_id, exc)


def set_total_images(task_id: str, user_id: str, total: int) -> None:
    with _conn() as con:
        row = con.execute(
            "SELECT id FROM generations WHERE user_id=? AND task_id=?", (user_id, task_id)
        ).fetchone()
        if not row:
            return
        con.execute(
            "UPDATE generations SET total_images_count=?, updated_at=datetime('now') WHERE id=?",
            (total, row["id"]),
        )
        _finalize(con, row["id"])


def delete_pending_generation(task_id: str, user_id: str) -> int:
    with _conn() as con:
        cur = con.execute(
            "DELETE FROM generations WHERE user_id=? AND task_id=? AND status='pending' "
            "AND NOT EXISTS (SELECT 1 FROM generation_images WHERE generation_id=generations.id)",
            (user_id, task_id),
        )
        return cur.rowcount


def get_generation(task_id: str, user_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute(
            "SELECT * FROM generations WHERE user_id=? AND task_id=?", (user_id, task_id)
        ).fetchone()
        if not row:
            return None
        images = con.execute(
            "SELECT image_index, status, image_url, model_type, gen_mode, prompt, error "
            "FROM generation_images WHERE generation_id=? ORDER BY image_index",
            (row["id"],),
        ).fetchall()
    gen = _deserialise(dict(row))
    gen["images"] = [dict(r) for r in images]
    return gen


def _deserialise(row: Dict) -> Dict:
    for key in ("input_params", "tags", "model_style_all"):
        val = row.get(key)
        if val:
            try:
                row[key] = json.loads(val)
            except (json.JSONDecodeError, TypeError):
                row[key] = {}
    return row


# ---------------------------------------------------------------------------
# Lifestyle catalogs
# ---------------------------------------------------------------------------

def _scene_ids(con: sqlite3.Connection, **where: str) -> List[str]:
    clause = " AND ".join(f"{col}=?" for col in where)
    rows = con.execute(
        f"SELECT scene_id FROM lifestyle_scene_tags WHERE {clause} ORDER BY scene_id",
        tuple(where.values()),
    ).fetchall()
    return [r["scene_id"] for r in rows]


def scene_ids_matching(product_tag: Dict) -> List[str]:
    """Candidate scene ids for a product tag, relaxing the match until something fits.

    two_piece: upper+lower, then upper only; one_piece: onepiece category;
    finally outfit_type alone.
    """
    outfit_type = product_tag.get("outfit_type")
    if not outfit_type:
        return []
    upper = (product_tag.get("upper") or {}).get("category")
    lower = (product_tag.get("lower") or {}).get("category")
    onepiece = (product_tag.get("onepiece") or {}).get("category")

    with _conn() as con:
        if outfit_type == "two_piece" and upper and lower:
            ids = _scene_ids(con, outfit_type=outfit_type, upper_category=upper, lower_category=lower)
            if ids:
                log.info("[DB] Exact scene match: %d", len(ids))
                return ids
            ids = _scene_ids(con, outfit_type=outfit_type, upper_category=upper)
            if ids:
                log.info("[DB] Upper-category scene match: %d", len(ids))
                return ids

        if outfit_type == "one_piece" and onepiece:
            ids = _scene_ids(con, outfit_type=outfit_type, onepiece_category=onepiece)
            if ids:
                log.info("[DB] One-piece scene match: %d", len(ids))
                return ids

        ids = _scene_ids(con, outfit_type=outfit_type)
    log.info("[DB] Outfit-type fallback scene match: %d", len(ids))
    return ids


def get_scene_tags(scene_ids: Iterable[str]) -> List[Dict]:
    ids = list(scene_ids)
    if not ids:
        return []
    marks = ",".join("?" for _ in ids)
    with _conn() as con:
        rows = con.execute(
            f"SELECT * FROM lifestyle_scene_tags WHERE scene_id IN ({marks}) ORDER BY scene_id", ids
        ).fetchall()
    return [_deserialise(dict(r)) for r in rows]


def list_models() -> List[Dict]:
    with _conn() as con:
        rows = con.execute("SELECT * FROM models_analysis ORDER BY model_id").fetchall()
    return [_deserialise(dict(r)) for r in rows]


def upsert_models(models: List[Dict]) -> int:
    with _conn() as con:
        for m in models:
            con.execute(
                """
                INSERT OR REPLACE INTO models_analysis
                    (model_id, model_gender, model_age_group, model_style_primary,
                     model_style_all, height_range, body_shape, model_desc)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(m["model_id"]),
                    m.get("model_gender"),
                    m.get("model_age_group"),
                    m.get("model_style_primary"),
                    json.dumps(m.get("model_style_all") or []),
                    m.get("height_range"),
                    m.get("body_shape"),
                    m.get("model_desc"),
                ),
            )
    return len(models)


_SCENE_COLUMNS = ("scene_id", "outfit_type", "upper_category", "lower_category", "onepiece_category")


def upsert_scene_tags(scenes: List[Dict]) -> int:
    with _conn() as con:
        for s in scenes:
            extra = {k: v for k, v in s.items() if k not in _SCENE_COLUMNS}
            con.execute(
                """
                INSERT OR REPLACE INTO lifestyle_scene_tags
                    (scene_id, outfit_type, upper_category, lower_category, onepiece_category, tags)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(s["scene_id"]),
                    s.get("outfit_type"),
                    s.get("upper_category"),
                    s.get("lower_category"),
                    s.get("onepiece_category"),
                    json.dumps(extra),
                ),
            )
    return len(scenes)


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------

_QUOTA_FIELDS = (
    "daily_credits", "daily_credits_date", "subscription_credits",
    "signup_credits", "admin_give_credits", "purchased_credits",
)


def get_quota(con: sqlite3.Connection, user_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM user_quotas WHERE user_id=?", (user_id,)).fetchone()
    return dict(row) if row else None


def save_quota(con: sqlite3.Connection, user_id: str, values: Dict) -> None:
    fields = [f for f in _QUOTA_FIELDS if f in values]
    con.execute(
        f"INSERT INTO user_quotas (user_id, {', '.join(fields)}) VALUES (?, {', '.join('?' for _ in fields)}) "
        f"ON CONFLICT (user_id) DO UPDATE SET "
        + ", ".join(f"{f}=excluded.{f}" for f in fields)
        + ", updated_at=datetime('now')",
        (user_id, *[values[f] for f in fields]),
    )


def get_reservation(con: sqlite3.Connection, user_id: str, task_id: str) -> Optional[Dict]:
    row = con.execute(
        "SELECT * FROM credit_reservations WHERE user_id=? AND task_id=?", (user_id, task_id)
    ).fetchone()
    return dict(row) if row else None


def save_reservation(con: sqlite3.Connection, user_id: str, task_id: str, reserved: int, refunded: int, status: str) -> None:
    con.execute(
        """
        INSERT INTO credit_reservations (user_id, task_id, reserved, refunded, status)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (user_id, task_id) DO UPDATE SET
            reserved = excluded.reserved,
            refunded = excluded.refunded,
            status   = excluded.status
        """,
        (user_id, task_id, reserved, refunded, status),
    )


class _Txn:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def __enter__(self) -> sqlite3.Connection:
        self.con.execute("BEGIN IMMEDIATE")
        return self.con

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.con.execute("ROLLBACK" if exc_type else "COMMIT")
        finally:
            self.con.close()


def transaction() -> _Txn:
    """Connection for a read-modify-write; use as ``with db.transaction() as con``."""
    con = _conn()
    con.isolation_level = None
    return _Txn(con)


# ---------------------------------------------------------------------------
# API tokens
# ---------------------------------------------------------------------------

def save_token(token_hash: str, user_id: str) -> None:
    with _conn() as con:
        con.execute(
            "INSERT OR REPLACE INTO api_tokens (token_hash, user_id) VALUES (?, ?)",
            (token_hash, user_id),
        )


def user_for_token(token_hash: str) -> Optional[str]:
    with _conn() as con:
        row = con.execute(
            "SELECT user_id FROM api_tokens WHERE token_hash=?", (token_hash,)
        ).fetchone()
    return row["user_id"] if row else None
