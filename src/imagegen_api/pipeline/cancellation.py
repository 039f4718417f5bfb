"""Cooperative cancellation checked at pipeline suspension points."""

from __future__ import annotations

import threading
from collections.abc import Callable

from imagegen_api.errors import PipelineCancelled


class CancellationToken:
    """Combines a local flag with an external check (usually the task store).

    Cancellation is observed, never forced: the pipeline calls
    `raise_if_cancelled()` before sleeping, after waking, and before downloads.
    """

    def __init__(self, task_id: str, is_cancelled: Callable[[], bool] | None = None) -> None:
        self.task_id = task_id
        self._is_cancelled = is_cancelled
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._is_cancelled is not None and self._is_cancelled():
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled(self.task_id)
