import auth
import db


def test_tokens_are_stored_hashed(user_id):
    token = auth.create_token(user_id)
    assert auth.user_from_token(token) == user_id
    assert db.user_for_token(token) is None
    assert auth.user_from_token("forged") is None
    assert auth.user_from_token(None) is None


def test_routes_require_a_token(http):
    for method, path in (
        ("post", "/api/generate-lifestyle"),
        ("post", "/api/generate-pro-studio"),
        ("post", "/api/generate-single"),
        ("get", "/api/generations/t1"),
        ("get", "/api/quota"),
    ):
        resp = getattr(http, method)(path, json={})
        assert resp.status_code == 401, path
        assert resp.get_json() == {"success": False, "error": "Unauthorized"}


def test_bearer_header_and_session_cookie(http, token):
    assert http.get("/api/quota", headers={"Authorization": f"Bearer {token}"}).status_code == 200
    http.set_cookie(auth.SESSION_COOKIE, token)
    assert http.get("/api/quota").status_code == 200
    assert http.get("/api/quota", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_health_is_public(http):
    assert http.get("/api/health").get_json()["ok"] is True
