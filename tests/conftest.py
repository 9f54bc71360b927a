import base64
import os
import tempfile
import threading

import pytest

# Point every path-like setting at a scratch directory before config is imported
_SCRATCH = tempfile.mkdtemp(prefix="brand-camera-tests-")
os.environ["CAMERA_DB_PATH"] = os.path.join(_SCRATCH, "camera.db")
os.environ["GENERATIONS_DIR"] = os.path.join(_SCRATCH, "generations")
os.environ["PRESETS_DIR"] = os.path.join(_SCRATCH, "presets")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_TO_FILE"] = "0"

import db  # noqa: E402
from genai_client import InlineImage, ModelClient  # noqa: E402
from materials import MaterialResolver, PresetCatalog  # noqa: E402
from storage import Uploader  # noqa: E402

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PRESETS_URL = "http://presets.test"
FILES_URL = "http://files.test/static/generations"


def b64(text: str) -> str:
    """Deterministic base64 'image' whose decoded content is *text* padded out."""
    return base64.b64encode((text + "|").encode() * 20).decode()


PRODUCT = b64("product")
MODEL = b64("model")
BACKGROUND = b64("background")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeBackend:
    """Stands in for both the image and the text backend of a ModelClient.

    ``image`` / ``text`` are callables ``(model, parts) -> result``; raising
    inside them simulates a provider error.
    """

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()
        self.image = lambda model, parts: PNG
        self.text = lambda model, parts: "- composition: centered"

    def _record(self, kind, model, parts):
        with self._lock:
            self.calls.append((kind, model, parts))

    def generate_image(self, model, parts):
        self._record("image", model, parts)
        return self.image(model, parts)

    def generate_text(self, model, parts):
        self._record("text", model, parts)
        return self.text(model, parts)

    def kinds(self):
        return [(kind, model) for kind, model, _ in self.calls]


class FakeFetcher:
    """URL → base64 map; unknown URLs fail like a 404."""

    def __init__(self, available=None):
        self.available = dict(available or {})
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, url):
        with self._lock:
            self.calls.append(url)
        return self.available.get(url)


def images_in(parts):
    return [p.data for p in parts if isinstance(p, InlineImage)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "camera.db")
    db.init_db()
    return db.DB_PATH


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def model_client(backend):
    return ModelClient(
        backend,
        backend,
        primary_model="primary",
        fallback_model="fallback",
        vlm_model="vlm",
        instruct_model="instruct",
    )


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def catalog(tmp_path):
    return PresetCatalog(root=tmp_path / "presets", base_url=PRESETS_URL, ttl=60)


@pytest.fixture
def resolver(fetcher, catalog):
    return MaterialResolver(fetch=fetcher, catalog=catalog, max_attempts=5)


@pytest.fixture
def uploader(tmp_path):
    return Uploader(root=tmp_path / "generations", base_url=FILES_URL, retries=2, backoff=0)


@pytest.fixture
def flask_app(model_client, resolver, uploader):
    import app as app_module

    app = app_module.app
    app.config.update(TESTING=True, MODEL_CLIENT=model_client, RESOLVER=resolver, UPLOADER=uploader)
    yield app
    for key in ("MODEL_CLIENT", "RESOLVER", "UPLOADER"):
        app.config.pop(key, None)


@pytest.fixture
def http(flask_app):
    return flask_app.test_client()


@pytest.fixture
def user_id():
    return "user-1"


@pytest.fixture
def token(user_id):
    import auth

    return auth.create_token(user_id)


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
