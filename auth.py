"""Bearer-token / session-cookie authentication for the API routes."""

from __future__ import annotations

import hashlib
import logging
import secrets
from functools import wraps
from typing import Optional

from flask import g, jsonify, request

import db

log = logging.getLogger(__name__)

SESSION_COOKIE = "camera_session"


def _hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_token(user_id: str) -> str:
    """Issue a new opaque token for *user_id*. Only its hash is stored."""
    token = secrets.token_urlsafe(32)
    db.save_token(_hash(token), user_id)
    log.info("[Auth] Issued token for %s", user_id)
    return token


def user_from_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return db.user_for_token(_hash(token))


def _request_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


def require_auth(view_func):
    """Resolve the caller to ``g.user_id`` or answer 401."""
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user_id = user_from_token(_request_token())
        if not user_id:
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        g.user_id = user_id
        return view_func(*args, **kwargs)

    return wrapper
