"""Client-side registry of generation tasks and their per-image slots.

Slots are always addressed by index, never by arrival order, and a slot that
reached ``completed`` is never rewritten. Subscribers are called with a
snapshot of the changed task after the store's lock has been released.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

PENDING = "pending"
GENERATING = "generating"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL = (COMPLETED, FAILED)


@dataclass
class ImageSlot:
    index: int
    status: str = PENDING
    image_url: Optional[str] = None
    model_type: Optional[str] = None
    gen_mode: Optional[str] = None
    db_id: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL


@dataclass
class GenerationTask:
    id: str
    type: str
    total_slots: int
    input_image: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING
    image_slots: List[ImageSlot] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.image_slots if s.status == COMPLETED)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.image_slots if s.status == FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationTask":
        data = dict(data)
        slots = [ImageSlot(**s) for s in data.pop("image_slots", [])]
        task = cls(**data)
        task.image_slots = slots
        return task


Listener = Callable[[GenerationTask], None]


class TaskStore:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self._tasks: Dict[str, GenerationTask] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        # Serializes snapshot and file write
        self._save_lock = threading.Lock()
        if self.path and self.path.exists():
            self.load()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, snapshot: Optional[GenerationTask]) -> None:
        if snapshot is None:
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                log.warning("[TaskStore] Listener failed for %s: %s", snapshot.id, exc)
        self._persist()

    def _mutate(self, task_id: str, fn: Callable[[GenerationTask], bool]) -> bool:
        """Run *fn* on the task under the lock; notify if it reported a change."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                log.warning("[TaskStore] Unknown task %s", task_id)
                return False
            changed = fn(task)
            if changed:
                self._refresh_status(task)
            snapshot = copy.deepcopy(task) if changed else None
        self._notify(snapshot)
        return bool(changed)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def add_task(
        self,
        task_type: str,
        total_slots: int,
        input_image: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """Create a pending task with *total_slots* pending slots; returns its id."""
        if total_slots < 1:
            raise ValueError("total_slots must be at least 1")
        task = GenerationTask(
            id=task_id or str(uuid.uuid4()),
            type=task_type,
            total_slots=total_slots,
            input_image=input_image,
            params=dict(params or {}),
            image_slots=[ImageSlot(index=i) for i in range(total_slots)],
        )
        with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task {task.id} already exists")
            self._tasks[task.id] = task
            snapshot = copy.deepcopy(task)
        log.debug("[TaskStore] Added %s (%s, %d slots)", task.id, task_type, total_slots)
        self._notify(snapshot)
        return task.id

    def start_task(self, task_id: str) -> bool:
        def fn(task: GenerationTask) -> bool:
            if task.status != PENDING:
                return False
            task.status = GENERATING
            return True

        return self._mutate(task_id, fn)

    def get_task(self, task_id: str) -> Optional[GenerationTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def tasks(self) -> List[GenerationTask]:
        with self._lock:
            return [copy.deepcopy(t) for t in sorted(self._tasks.values(), key=lambda t: t.created_at)]

    def active_tasks(self) -> List[GenerationTask]:
        return [t for t in self.tasks() if not t.is_terminal]

    def remove_task(self, task_id: str) -> bool:
        with self._lock:
            removed = self._tasks.pop(task_id, None) is not None
        if removed:
            self._persist()
        return removed

    @staticmethod
    def _refresh_status(task: GenerationTask) -> None:
        if task.status == PENDING and any(s.status != PENDING for s in task.image_slots):
            task.status = GENERATING
        if all(s.is_terminal for s in task.image_slots):
            task.status = COMPLETED if task.completed_count else FAILED

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_slot(task: GenerationTask, index: int, status: str, fields: Dict[str, Any]) -> bool:
        if not 0 <= index < len(task.image_slots):
            log.warning("[TaskStore] %s: slot %d out of range (%d slots)", task.id, index, len(task.image_slots))
            return False
        slot = task.image_slots[index]
        if slot.is_terminal:
            if slot.status == COMPLETED:
                log.debug("[TaskStore] %s: slot %d already completed, ignoring %s", task.id, index, status)
            return False

        if status == GENERATING:
            if slot.status == GENERATING:
                return False
            slot.status = GENERATING
        elif status == COMPLETED:
            if not fields.get("image_url"):
                log.warning("[TaskStore] %s: completion for slot %d without image", task.id, index)
                return False
            slot.status = COMPLETED
            slot.image_url = fields["image_url"]
            slot.model_type = fields.get("model_type")
            slot.gen_mode = fields.get("gen_mode")
            slot.db_id = fields.get("db_id")
            slot.error = None
            slot.extra.update(fields.get("extra") or {})
        elif status == FAILED:
            slot.status = FAILED
            slot.error = fields.get("error") or "Generation failed"
        else:
            raise ValueError(f"Unknown slot status {status!r}")
        return True

    def update_image_slot(self, task_id: str, index: int, status: str, **fields: Any) -> bool:
        """Move slot *index* to *status*. Returns False when nothing changed."""
        return self._mutate(task_id, lambda task: self._apply_slot(task, index, status, fields))

    def fail_task(self, task_id: str, error: str) -> bool:
        """Abort: every slot that has not finished becomes failed."""
        def fn(task: GenerationTask) -> bool:
            changed = False
            for slot in task.image_slots:
                changed = self._apply_slot(task, slot.index, FAILED, {"error": error}) or changed
            return changed

        return self._mutate(task_id, fn)

    # ------------------------------------------------------------------
    # Server input
    # ------------------------------------------------------------------

    def apply_event(self, task_id: str, event: Dict[str, Any]) -> bool:
        """Feed one lifestyle stream event into the store."""
        kind = event.get("type")
        if kind == "progress":
            return self.update_image_slot(task_id, int(event["index"]), GENERATING)
        if kind == "image":
            return self.update_image_slot(
                task_id,
                int(event["index"]),
                COMPLETED,
                image_url=event.get("image"),
                model_type=event.get("modelType"),
                gen_mode=event.get("genMode", "simple"),
                db_id=event.get("dbId"),
                extra={k: event[k] for k in ("modelId", "sceneId") if k in event},
            )
        if kind == "image_error":
            return self.update_image_slot(task_id, int(event["index"]), FAILED, error=event.get("error"))
        if kind == "error":
            return self.fail_task(task_id, event.get("error") or "Generation failed")
        if kind == "complete":
            return self.fail_task(task_id, "No result")
        if kind == "analysis_complete":
            return self._mutate(task_id, lambda t: self._set_param(t, "productTag", event.get("productTag")))
        if kind == "materials_ready":
            return self._mutate(
                task_id,
                lambda t: self._set_param(t, "materials", {"models": event.get("models"), "scenes": event.get("scenes")}),
            )
        return False

    @staticmethod
    def _set_param(task: GenerationTask, key: str, value: Any) -> bool:
        task.params[key] = value
        return True

    def apply_result(self, task_id: str, index: int, response: Dict[str, Any]) -> bool:
        """Feed one per-index JSON response (pro studio / single)."""
        if response.get("success"):
            return self.update_image_slot(
                task_id,
                index,
                COMPLETED,
                image_url=response.get("image"),
                model_type=response.get("modelType"),
                gen_mode=response.get("genMode"),
                db_id=response.get("dbId"),
            )
        return self.update_image_slot(task_id, index, FAILED, error=response.get("error"))

    def reconcile_from_record(self, task_id: str, record: Dict[str, Any]) -> bool:
        """Bring a task in line with its durable generation record.

        Completed images in the record complete their slots, including slots
        that were failed locally because the connection dropped. Once the record
        is final, slots it never mentions are failed.
        """
        def fn(task: GenerationTask) -> bool:
            changed = False
            seen = set()
            for img in record.get("images") or []:
                index = int(img.get("image_index", -1))
                if not 0 <= index < len(task.image_slots):
                    continue
                seen.add(index)
                slot = task.image_slots[index]
                if img.get("status") == COMPLETED and img.get("image_url") and slot.status != COMPLETED:
                    slot.status = PENDING
                    changed = self._apply_slot(task, index, COMPLETED, {
                        "image_url": img["image_url"],
                        "model_type": img.get("model_type"),
                        "gen_mode": img.get("gen_mode"),
                        "db_id": record.get("id"),
                    }) or changed
                elif img.get("status") == FAILED:
                    changed = self._apply_slot(task, index, FAILED, {"error": img.get("error")}) or changed

            if record.get("status") in TERMINAL:
                for slot in task.image_slots:
                    if slot.index not in seen:
                        changed = self._apply_slot(task, slot.index, FAILED, {"error": "No result"}) or changed
            return changed

        return self._mutate(task_id, fn)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self.path:
            try:
                self.save()
            except OSError as exc:
                log.warning("[TaskStore] Could not save %s: %s", self.path, exc)

    def save(self) -> None:
        if not self.path:
            return
        with self._save_lock:
            with self._lock:
                data = [t.to_dict() for t in self._tasks.values()]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(self.path)

    def load(self) -> int:
        """Read saved tasks. In-flight tasks come back as they were; nothing is resumed."""
        if not self.path or not self.path.exists():
            return 0
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("[TaskStore] Could not load %s: %s", self.path, exc)
            return 0
        tasks = [GenerationTask.from_dict(d) for d in data]
        with self._lock:
            for task in tasks:
                self._tasks[task.id] = task
        return len(tasks)
