"""JSON-file backed task store.

Beginner terms:
- Write-through: every mutation immediately rewrites the snapshot file.
- Retention: after a task finishes, only the most recently created tasks are kept.
- Terminal status: succeeded, failed, or cancelled; such tasks never change again.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from imagegen_api.errors import PersistenceError
from imagegen_api.models import (
    ACTIVE_STATUSES,
    DEFAULT_OWNER,
    TERMINAL_STATUSES,
    GenerationParams,
    ImageRecord,
    ProviderName,
    Task,
    TaskStatus,
)
from imagegen_api.storage.files import read_json_list, write_json_atomic

logger = logging.getLogger(__name__)

RESTART_REASON = "Service restarted; task was interrupted"
DEFAULT_RETENTION_LIMIT = 50

# Sentinel so `error=None` can explicitly clear a stored error.
_UNSET: Any = object()


class JsonTaskStore:
    """Thread-safe in-memory task map mirrored to a JSON snapshot file.

    Memory is authoritative while the process runs; the file is a durable copy
    used only at startup.
    """

    def __init__(self, path: Path, *, retention_limit: int = DEFAULT_RETENTION_LIMIT) -> None:
        self.path = path
        self.retention_limit = retention_limit
        # Lock serializes mutate+persist sequences across pipelines and request handlers.
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._load()

    def create_task(
        self,
        task_id: str,
        params: GenerationParams,
        *,
        owner: str = DEFAULT_OWNER,
    ) -> Task:
        """Insert a new pending task and return a snapshot of it."""
        now = datetime.now(tz=UTC)
        task = Task(
            id=task_id,
            owner=owner or DEFAULT_OWNER,
            prompt=params.prompt,
            aspect_ratio=params.aspect_ratio,
            image_size=params.image_size,
            reference_urls=list(params.reference_urls),
            status="pending",
            progress=0,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if task_id in self._tasks:
                raise KeyError(f"Task {task_id} already exists")
            self._tasks[task_id] = task
            self._persist_locked()
            return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self) -> list[Task]:
        """All tasks, newest first."""
        with self._lock:
            ordered = self._newest_first_locked()
            return [task.model_copy(deep=True) for task in ordered]

    def list_active_tasks(self) -> list[Task]:
        return [task for task in self.list_tasks() if task.status in ACTIVE_STATUSES]

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        progress: int | None = None,
        error: str | None = _UNSET,
        provider: ProviderName | None = None,
        result: list[ImageRecord] | None = None,
    ) -> Task | None:
        """Merge selected fields into a task and return the updated snapshot.

        Returns None when the task does not exist. Updates to a task that already
        reached a terminal status are ignored and the stored snapshot is returned.
        """
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return None
            if current.is_terminal:
                logger.debug(
                    "task_store event=update_ignored task_id=%s status=%s",
                    task_id,
                    current.status,
                )
                return current.model_copy(deep=True)

            changes: dict[str, Any] = {"updated_at": datetime.now(tz=UTC)}
            next_status = status if status is not None else current.status
            if status is not None:
                changes["status"] = status
            if provider is not None:
                changes["provider"] = provider
            if result is not None:
                changes["result"] = [record.model_copy(deep=True) for record in result]
            if error is not _UNSET:
                changes["error"] = error

            if next_status in ("failed", "cancelled"):
                changes["progress"] = 0
            elif next_status == "succeeded":
                changes["progress"] = 100
            elif progress is not None:
                # Progress never moves backwards while a task is in flight.
                changes["progress"] = max(current.progress, min(100, max(0, progress)))

            updated = current.model_copy(update=changes)
            self._tasks[task_id] = updated
            self._persist_locked()
            if updated.status in TERMINAL_STATUSES:
                self._enforce_retention_locked()
            return updated.model_copy(deep=True)

    def cancel_task(self, task_id: str) -> bool:
        """Flip an in-flight task to cancelled; False when missing or already terminal."""
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.status not in ACTIVE_STATUSES:
                return False
            self._tasks[task_id] = current.model_copy(
                update={
                    "status": "cancelled",
                    "progress": 0,
                    "error": None,
                    "updated_at": datetime.now(tz=UTC),
                }
            )
            self._persist_locked()
            self._enforce_retention_locked()
        logger.info("task_store event=cancelled task_id=%s", task_id)
        return True

    def is_task_cancelled(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            return task is not None and task.status == "cancelled"

    def has_task(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            self._persist_locked()
        return True

    def enforce_retention(self) -> int:
        """Drop the oldest tasks beyond the retention limit; returns how many were dropped."""
        with self._lock:
            return self._enforce_retention_locked()

    def _enforce_retention_locked(self) -> int:
        if len(self._tasks) <= self.retention_limit:
            return 0
        ordered = self._newest_first_locked()
        keep_ids = {task.id for task in ordered[: self.retention_limit]}
        dropped = [task_id for task_id in self._tasks if task_id not in keep_ids]
        for task_id in dropped:
            del self._tasks[task_id]
        self._persist_locked()
        logger.info(
            "task_store event=retention dropped=%d kept=%d",
            len(dropped),
            len(self._tasks),
        )
        return len(dropped)

    def _newest_first_locked(self) -> list[Task]:
        # Ties on created_at fall back to insertion order, later first.
        indexed = list(enumerate(self._tasks.values()))
        indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [task for _, task in indexed]

    def _load(self) -> None:
        """Read the snapshot and fail any task a previous process left in flight."""
        interrupted = 0
        for raw in read_json_list(self.path):
            raw.setdefault("owner", DEFAULT_OWNER)
            try:
                task = Task.model_validate(raw)
            except ValidationError as exc:
                logger.warning("task_store event=skip_invalid_record reason=%s", exc)
                continue
            if task.status in ACTIVE_STATUSES:
                task = task.model_copy(
                    update={
                        "status": "failed",
                        "error": RESTART_REASON,
                        "progress": 0,
                        "updated_at": datetime.now(tz=UTC),
                    }
                )
                interrupted += 1
            self._tasks[task.id] = task
        logger.info(
            "task_store event=loaded path=%s tasks=%d interrupted=%d",
            self.path,
            len(self._tasks),
            interrupted,
        )
        if interrupted:
            with self._lock:
                self._persist_locked()

    def _persist_locked(self) -> None:
        payload = [task.model_dump(mode="json", by_alias=True) for task in self._tasks.values()]
        try:
            write_json_atomic(self.path, payload)
        except PersistenceError:
            # Memory stays authoritative; the next successful write catches the file up.
            logger.exception("task_store event=persist_failed path=%s", self.path)
