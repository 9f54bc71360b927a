import threading

import pytest

from task_store import COMPLETED, FAILED, GENERATING, PENDING, TaskStore


@pytest.fixture
def store():
    return TaskStore()


def _image(index, url=None):
    return {"type": "image", "index": index, "image": url or f"https://files.test/{index}.png", "modelType": "pro"}


def test_add_task_creates_pending_slots(store):
    task_id = store.add_task("pro_studio", 4, input_image="https://files.test/in.png")
    task = store.get_task(task_id)
    assert task.status == PENDING
    assert [s.index for s in task.image_slots] == [0, 1, 2, 3]
    assert all(s.status == PENDING for s in task.image_slots)


def test_add_task_rejects_bad_input(store):
    with pytest.raises(ValueError):
        store.add_task("pro_studio", 0)
    store.add_task("pro_studio", 1, task_id="t1")
    with pytest.raises(ValueError):
        store.add_task("pro_studio", 1, task_id="t1")


def test_slot_count_never_changes(store):
    task_id = store.add_task("lifestyle", 4)
    for event in (_image(0), _image(9), {"type": "image_error", "index": -1, "error": "x"}, _image(3)):
        store.apply_event(task_id, event)
    assert len(store.get_task(task_id).image_slots) == 4


def test_completed_slot_is_write_once(store):
    task_id = store.add_task("lifestyle", 2)
    store.apply_event(task_id, _image(0, "https://files.test/first.png"))

    assert not store.apply_event(task_id, _image(0, "https://files.test/second.png"))
    assert not store.update_image_slot(task_id, 0, FAILED, error="late failure")

    slot = store.get_task(task_id).image_slots[0]
    assert slot.status == COMPLETED
    assert slot.image_url == "https://files.test/first.png"


def test_out_of_order_results_land_at_their_index(store):
    task_id = store.add_task("pro_studio", 3)
    store.apply_result(task_id, 2, {"success": True, "image": "https://files.test/c.png", "modelType": "flash"})
    store.apply_result(task_id, 0, {"success": True, "image": "https://files.test/a.png", "modelType": "pro"})

    slots = store.get_task(task_id).image_slots
    assert slots[0].image_url == "https://files.test/a.png"
    assert slots[1].status == PENDING
    assert slots[2].image_url == "https://files.test/c.png"
    assert slots[2].model_type == "flash"


def test_task_status_follows_slots(store):
    task_id = store.add_task("lifestyle", 2)
    store.apply_event(task_id, {"type": "progress", "index": 0})
    assert store.get_task(task_id).status == GENERATING

    store.apply_event(task_id, _image(0))
    store.apply_event(task_id, {"type": "image_error", "index": 1, "error": "Failed to fetch assets"})
    task = store.get_task(task_id)
    assert task.status == COMPLETED
    assert task.completed_count == 1
    assert task.image_slots[1].error == "Failed to fetch assets"


def test_all_failed_task_is_failed(store):
    task_id = store.add_task("pro_studio", 2)
    store.apply_result(task_id, 0, {"success": False, "error": "RESOURCE_BUSY"})
    store.apply_result(task_id, 1, {"success": False, "error": "UPLOAD_FAILED"})
    assert store.get_task(task_id).status == FAILED


def test_error_event_fails_every_slot(store):
    task_id = store.add_task("lifestyle", 4)
    store.start_task(task_id)
    store.apply_event(task_id, {"type": "error", "error": "No matching scenes found"})

    task = store.get_task(task_id)
    assert task.status == FAILED
    assert {s.error for s in task.image_slots} == {"No matching scenes found"}


def test_complete_event_fails_leftover_slots(store):
    task_id = store.add_task("lifestyle", 3)
    store.apply_event(task_id, _image(1))
    store.apply_event(task_id, {"type": "complete", "successCount": 1, "total": 3})

    task = store.get_task(task_id)
    assert task.status == COMPLETED
    assert [s.status for s in task.image_slots] == [FAILED, COMPLETED, FAILED]


def test_stage_events_are_kept_as_params(store):
    task_id = store.add_task("lifestyle", 4)
    store.apply_event(task_id, {"type": "analysis_complete", "productTag": {"outfit_type": "one_piece"}})
    store.apply_event(task_id, {"type": "materials_ready", "models": ["m1"] * 4, "scenes": ["s1"] * 4})

    params = store.get_task(task_id).params
    assert params["productTag"] == {"outfit_type": "one_piece"}
    assert params["materials"]["models"] == ["m1"] * 4


def test_subscribers_get_snapshots(store):
    seen = []
    unsubscribe = store.subscribe(lambda task: seen.append(task))
    task_id = store.add_task("pro_studio", 1)
    store.update_image_slot(task_id, 0, GENERATING)

    assert [t.image_slots[0].status for t in seen] == [PENDING, GENERATING]
    seen[0].image_slots[0].status = "tampered"
    assert store.get_task(task_id).image_slots[0].status == GENERATING

    unsubscribe()
    store.apply_result(task_id, 0, {"success": True, "image": "https://files.test/a.png"})
    assert len(seen) == 2


def test_failing_subscriber_does_not_break_updates(store):
    def broken(task):
        raise RuntimeError("ui gone")

    store.subscribe(broken)
    task_id = store.add_task("pro_studio", 1)
    assert store.apply_result(task_id, 0, {"success": True, "image": "https://files.test/a.png"})
    assert store.get_task(task_id).status == COMPLETED


def test_concurrent_slot_updates(store):
    task_id = store.add_task("pro_studio", 16)
    threads = [
        threading.Thread(target=store.apply_result, args=(task_id, i, {"success": True, "image": f"https://files.test/{i}.png"}))
        for i in range(16)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    task = store.get_task(task_id)
    assert task.completed_count == 16
    assert [s.image_url for s in task.image_slots] == [f"https://files.test/{i}.png" for i in range(16)]


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def test_reconcile_recovers_images_lost_with_the_stream(store):
    task_id = store.add_task("lifestyle", 2)
    store.fail_task(task_id, "connection lost")

    record = {
        "id": "gen-1",
        "status": "completed",
        "images": [
            {"image_index": 0, "status": "completed", "image_url": "https://files.test/0.png", "model_type": "pro", "gen_mode": "simple"},
            {"image_index": 1, "status": "failed", "error": "Image upload failed"},
        ],
    }
    assert store.reconcile_from_record(task_id, record)

    task = store.get_task(task_id)
    assert task.status == COMPLETED
    assert task.image_slots[0].image_url == "https://files.test/0.png"
    assert task.image_slots[0].db_id == "gen-1"
    assert task.image_slots[1].status == FAILED


def test_reconcile_final_record_fails_unseen_slots(store):
    task_id = store.add_task("pro_studio", 3)
    store.start_task(task_id)
    record = {
        "id": "gen-2",
        "status": "completed",
        "images": [{"image_index": 1, "status": "completed", "image_url": "https://files.test/1.png"}],
    }
    store.reconcile_from_record(task_id, record)
    assert [s.status for s in store.get_task(task_id).image_slots] == [FAILED, COMPLETED, FAILED]


def test_reconcile_pending_record_leaves_unseen_slots(store):
    task_id = store.add_task("pro_studio", 2)
    store.start_task(task_id)
    record = {
        "id": "gen-3",
        "status": "pending",
        "images": [{"image_index": 0, "status": "completed", "image_url": "https://files.test/0.png"}],
    }
    store.reconcile_from_record(task_id, record)
    task = store.get_task(task_id)
    assert task.status == GENERATING
    assert task.image_slots[1].status == PENDING


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def test_tasks_survive_a_restart(tmp_path):
    path = tmp_path / "tasks.json"
    store = TaskStore(path)
    task_id = store.add_task("lifestyle", 2, params={"modelId": "m1"})
    store.apply_event(task_id, {**_image(0), "modelId": "m1", "sceneId": "s1"})

    reloaded = TaskStore(path).get_task(task_id)
    assert reloaded.params == {"modelId": "m1"}
    assert reloaded.status == GENERATING
    assert reloaded.image_slots[0].status == COMPLETED
    assert reloaded.image_slots[0].extra == {"modelId": "m1", "sceneId": "s1"}
    assert reloaded.image_slots[1].status == PENDING


def test_concurrent_updates_persist_the_final_state(tmp_path):
    path = tmp_path / "tasks.json"
    store = TaskStore(path)
    task_id = store.add_task("pro_studio", 16)
    threads = [
        threading.Thread(target=store.apply_result, args=(task_id, i, {"success": True, "image": f"https://files.test/{i}.png"}))
        for i in range(16)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    reloaded = TaskStore(path).get_task(task_id)
    assert reloaded.completed_count == 16
    assert reloaded.status == COMPLETED
    assert not path.with_suffix(".json.tmp").exists()
