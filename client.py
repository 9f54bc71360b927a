"""HTTP client for the Brand Camera API.

Drives a generation end to end: reserve credits, call the generation route,
feed every result into a TaskStore, then settle the reservation with the
number of images that actually came back.
"""

from __future__ import annotations

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterator, Optional

import requests

import config
from task_store import GENERATING, GenerationTask, TaskStore

log = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status: int, payload: Dict[str, Any]) -> None:
        super().__init__(payload.get("error") or f"HTTP {status}")
        self.status = status
        self.payload = payload


def iter_sse(resp: requests.Response) -> Iterator[Dict[str, Any]]:
    """Yield the JSON payload of every ``data:`` line of an event stream."""
    for line in resp.iter_lines(decode_unicode=True):
        if not line or not line.startswith("data:"):
            continue
        try:
            yield json.loads(line[5:].strip())
        except json.JSONDecodeError:
            log.warning("[Client] Bad SSE line: %.120s", line)


class CameraClient:
    def __init__(
        self,
        base_url: str = config.PUBLIC_BASE_URL,
        token: str = "",
        store: Optional[TaskStore] = None,
        session: Optional[requests.Session] = None,
        timeout: int = config.MAX_DURATION,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.store = store or TaskStore()
        self.session = session or requests.Session()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        kwargs.setdefault("timeout", self.timeout)
        resp = self.session.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        try:
            payload = resp.json()
        except ValueError:
            payload = {"success": False, "error": resp.text[:200] or f"HTTP {resp.status_code}"}
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, payload)
        return payload

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def credits(self) -> Dict[str, Any]:
        return self._request("GET", "/api/quota")["credits"]

    def claim_daily_reward(self) -> Dict[str, Any]:
        return self._request("POST", "/api/quota/daily-reward")

    def reserve(self, task_id: str, image_count: int, task_type: str) -> Dict[str, Any]:
        return self._request(
            "POST", "/api/quota/reserve",
            json={"taskId": task_id, "imageCount": image_count, "taskType": task_type},
        )

    def settle(self, task_id: str, actual_image_count: int) -> Optional[Dict[str, Any]]:
        try:
            return self._request(
                "PUT", "/api/quota/reserve",
                json={"taskId": task_id, "actualImageCount": actual_image_count},
            )
        except (ApiError, requests.RequestException) as exc:
            log.warning("[Client] Settling %s failed: %s", task_id, exc)
            return None

    def release(self, task_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request("DELETE", "/api/quota/reserve", params={"taskId": task_id})
        except (ApiError, requests.RequestException) as exc:
            log.warning("[Client] Releasing %s failed: %s", task_id, exc)
            return None

    def _begin(self, task_type: str, count: int, input_image: Optional[str], params: Dict) -> str:
        task_id = self.store.add_task(task_type, count, input_image=input_image, params=params, task_id=str(uuid.uuid4()))
        try:
            self.reserve(task_id, count, task_type)
        except ApiError as exc:
            self.store.fail_task(task_id, str(exc))
            raise
        self.store.start_task(task_id)
        return task_id

    def _settle_if_done(self, task_id: str) -> GenerationTask:
        task = self.store.get_task(task_id)
        if task.is_terminal:
            self.settle(task_id, task.completed_count)
        else:
            log.info("[Client] %s still running server-side; sync it later", task_id)
        return task

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def lifestyle(self, body: Dict[str, Any]) -> GenerationTask:
        count = config.NUM_LIFESTYLE_IMAGES
        task_id = self._begin("lifestyle", count, body.get("productImage"), {k: v for k, v in body.items() if k != "productImage"})
        try:
            resp = self.session.post(
                f"{self.base_url}/api/generate-lifestyle",
                json=dict(body, taskId=task_id),
                headers=self._headers(),
                stream=True,
                timeout=self.timeout,
            )
            if resp.status_code >= 400:
                try:
                    error = resp.json().get("error")
                except ValueError:
                    error = None
                self.store.fail_task(task_id, error or f"HTTP {resp.status_code}")
            else:
                with resp:
                    for event in iter_sse(resp):
                        self.store.apply_event(task_id, event)
                        if event.get("type") in ("complete", "error"):
                            break
        except requests.RequestException as exc:
            # The server keeps generating; sync_task() picks the results up later
            log.warning("[Client] Lifestyle stream for %s dropped: %s", task_id, exc)
        return self._settle_if_done(task_id)

    def _slot(self, task_id: str, path: str, body: Dict[str, Any], index: int) -> None:
        self.store.update_image_slot(task_id, index, GENERATING)
        try:
            resp = self.session.post(
                f"{self.base_url}{path}",
                json=dict(body, taskId=task_id, index=index),
                headers=self._headers(),
                timeout=self.timeout,
            )
            try:
                payload = resp.json()
            except ValueError:
                payload = {"success": False, "error": f"HTTP {resp.status_code}"}
        except requests.RequestException as exc:
            payload = {"success": False, "error": str(exc)}
        self.store.apply_result(task_id, index, payload)

    def _per_index(self, task_type: str, path: str, body: Dict[str, Any], count: int) -> GenerationTask:
        input_image = body.get("productImage")
        task_id = self._begin(task_type, count, input_image, {k: v for k, v in body.items() if k != "productImage"})
        with ThreadPoolExecutor(max_workers=count) as pool:
            for fut in [pool.submit(self._slot, task_id, path, body, i) for i in range(count)]:
                fut.result()
        return self._settle_if_done(task_id)

    def pro_studio(self, body: Dict[str, Any], count: int = 4) -> GenerationTask:
        return self._per_index("pro_studio", "/api/generate-pro-studio", body, count)

    def single(self, body: Dict[str, Any], count: int = 2) -> GenerationTask:
        task_type = "product_studio" if body.get("type") == "product" else "model_studio"
        return self._per_index(task_type, "/api/generate-single", body, count)

    def cancel_lifestyle(self, task_id: str) -> bool:
        try:
            self._request("DELETE", f"/api/generate-lifestyle/{task_id}")
            return True
        except ApiError:
            return False

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def sync_task(self, task_id: str) -> Optional[GenerationTask]:
        """Reconcile a task with its durable record, settling credits once it is final."""
        before = self.store.get_task(task_id)
        if before is None:
            return None
        try:
            record = self._request("GET", f"/api/generations/{task_id}")["generation"]
        except ApiError as exc:
            if exc.status != 404:
                raise
            log.info("[Client] No record yet for %s", task_id)
            return before
        self.store.reconcile_from_record(task_id, record)
        task = self.store.get_task(task_id)
        if task.is_terminal and not before.is_terminal:
            self.settle(task_id, task.completed_count)
        return task
