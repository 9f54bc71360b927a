import json

import auth
import camera_cli
import db


def test_create_token(capsys):
    assert camera_cli.main(["create-token", "--user", "alice"]) == 0
    token = capsys.readouterr().out.strip()
    assert auth.user_from_token(token) == "alice"


def test_import_catalog(tmp_path, capsys):
    models = tmp_path / "models.json"
    models.write_text(json.dumps({"models": [{"model_id": "m1", "model_gender": "male"}]}))
    scenes = tmp_path / "scenes.json"
    scenes.write_text(json.dumps([{"scene_id": "s1", "outfit_type": "two_piece", "upper_category": "shirt"}]))

    assert camera_cli.main(["import-catalog", "--models", str(models), "--scenes", str(scenes)]) == 0

    assert [m["model_id"] for m in db.list_models()] == ["m1"]
    assert db.scene_ids_matching({"outfit_type": "two_piece"}) == ["s1"]
    assert "1 scenes imported" in capsys.readouterr().out


def test_import_catalog_needs_a_file():
    assert camera_cli.main(["import-catalog"]) == 2


def test_image_arg(tmp_path):
    image = tmp_path / "shirt.png"
    image.write_bytes(b"png-bytes")

    assert camera_cli._image_arg(str(image)) == "data:image/png;base64,cG5nLWJ5dGVz"
    assert camera_cli._image_arg("random") == "random"
    assert camera_cli._image_arg("https://cdn.test/a.jpg") == "https://cdn.test/a.jpg"
    assert camera_cli._image_arg(None) is None
