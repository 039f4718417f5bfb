"""Generation pipeline: submit, poll, optional fallback, ingest, finalize.

Beginner terms used in this file:
- Attempt budget: the maximum number of polls before a job counts as timed out.
- Progress band: provider progress 0..100 is rescaled into 15..95 so that the last
  step to 100 happens only after images are safely stored.
- Checkpoint: a point where the pipeline looks for a cancel request.

State machine (one pipeline per task):
    pending -> running (primary)
    running -> succeeded | failed | running_fallback (moderation only) | cancelled
    running_fallback -> succeeded | failed | cancelled
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable

from imagegen_api.errors import (
    FailureCategory,
    GenerationError,
    ModerationRejectedError,
    PipelineCancelled,
    PollTimeoutError,
    ProviderFailedError,
    ProviderRequestError,
    UnrecognizedResponseError,
)
from imagegen_api.models import GenerationParams, ImageRecord, TaskStatus
from imagegen_api.pipeline.cancellation import CancellationToken
from imagegen_api.pipeline.ingest import ImageIngest
from imagegen_api.providers.base import (
    Failed,
    GeneratedImage,
    ProviderClient,
    Running,
    Succeeded,
)
from imagegen_api.storage.tasks import JsonTaskStore

logger = logging.getLogger(__name__)

PROGRESS_ACCEPTED = 10
PROGRESS_SUBMITTED = 15
PROGRESS_BAND_END = 95
PROGRESS_DONE = 100


def map_provider_progress(progress: float) -> int:
    """Rescale provider progress 0..100 into the 15..95 band (half rounds up)."""
    clamped = min(100.0, max(0.0, float(progress)))
    span = PROGRESS_BAND_END - PROGRESS_SUBMITTED
    return PROGRESS_SUBMITTED + math.floor(clamped / 100 * span + 0.5)


class GenerationPipeline:
    """Drive one task from pending to a terminal status.

    The pipeline never mutates a Task directly; every change goes through
    `JsonTaskStore.update_task`, which also keeps progress monotonic.
    """

    def __init__(
        self,
        *,
        task_store: JsonTaskStore,
        primary: ProviderClient,
        ingest: ImageIngest,
        fallback: ProviderClient | None = None,
        poll_interval_s: float = 2.0,
        max_poll_attempts: int = 150,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.task_store = task_store
        self.primary = primary
        self.fallback = fallback
        self.ingest = ingest
        self.poll_interval_s = poll_interval_s
        self.max_poll_attempts = max(1, max_poll_attempts)
        self._sleep = sleep

    def run(self, task_id: str) -> None:
        """Execute the task; failures are recorded on the task and never raised."""
        task = self.task_store.get_task(task_id)
        if task is None:
            logger.warning("task_run event=missing task_id=%s", task_id)
            return
        params = task.params()
        # Deleting the task stops the pipeline the same way cancelling does.
        token = CancellationToken(
            task_id,
            is_cancelled=lambda: (
                self.task_store.is_task_cancelled(task_id) or not self.task_store.has_task(task_id)
            ),
        )

        try:
            token.raise_if_cancelled()
            logger.info("task_run event=start task_id=%s provider=%s", task_id, self.primary.name)
            self.task_store.update_task(task_id, status="running", progress=PROGRESS_ACCEPTED)

            provider, images = self._generate(task_id, params, token)

            token.raise_if_cancelled()
            records: list[ImageRecord] = self.ingest.ingest(
                images,
                params=params,
                owner=task.owner,
                provider=provider.name,
                token=token,
            )
            if not records:
                raise UnrecognizedResponseError(provider.name, "result had no downloadable images")
            self.task_store.update_task(
                task_id,
                status="succeeded",
                progress=PROGRESS_DONE,
                provider=provider.name,
                result=records,
                error=None,
            )
            logger.info(
                "task_run event=completed task_id=%s status=succeeded provider=%s images=%d",
                task_id,
                provider.name,
                len(records),
            )
        except PipelineCancelled:
            reason = "cancelled" if self.task_store.get_task(task_id) else "removed"
            logger.info("task_run event=stopped task_id=%s reason=%s", task_id, reason)
        except GenerationError as exc:
            logger.warning(
                "task_run event=completed task_id=%s status=failed category=%s reason=%s",
                task_id,
                exc.category,
                exc,
            )
            self.task_store.update_task(task_id, status="failed", progress=0, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_run event=crashed task_id=%s", task_id)
            self.task_store.update_task(
                task_id, status="failed", progress=0, error=f"unexpected error: {exc}"
            )

    def _generate(
        self,
        task_id: str,
        params: GenerationParams,
        token: CancellationToken,
    ) -> tuple[ProviderClient, list[GeneratedImage]]:
        try:
            return self.primary, self._run_provider(
                self.primary, task_id, params, token, status="running"
            )
        except ModerationRejectedError as exc:
            if self.fallback is None:
                logger.warning(
                    "task_run event=fallback_unavailable task_id=%s reason=%s", task_id, exc.reason
                )
                raise
            logger.warning(
                "task_run event=fallback task_id=%s from=%s to=%s reason=%s",
                task_id,
                self.primary.name,
                self.fallback.name,
                exc.reason,
            )

        token.raise_if_cancelled()
        self.task_store.update_task(task_id, status="running_fallback", provider=self.fallback.name)
        # Any fallback failure propagates with the fallback's own reason.
        images = self._run_provider(
            self.fallback, task_id, params, token, status="running_fallback"
        )
        return self.fallback, images

    def _run_provider(
        self,
        provider: ProviderClient,
        task_id: str,
        params: GenerationParams,
        token: CancellationToken,
        *,
        status: TaskStatus,
    ) -> list[GeneratedImage]:
        provider_task_id = provider.submit(params)
        logger.info(
            "task_run event=submitted task_id=%s provider=%s provider_task_id=%s",
            task_id,
            provider.name,
            provider_task_id,
        )
        self.task_store.update_task(task_id, status=status, progress=PROGRESS_SUBMITTED)

        last_error: str | None = None
        for attempt in range(1, self.max_poll_attempts + 1):
            token.raise_if_cancelled()
            self._sleep(self.poll_interval_s)
            token.raise_if_cancelled()

            try:
                result = provider.poll(provider_task_id)
            except ProviderRequestError as exc:
                last_error = str(exc)
                logger.warning(
                    "task_run event=poll_error task_id=%s provider=%s attempt=%d/%d reason=%s",
                    task_id,
                    provider.name,
                    attempt,
                    self.max_poll_attempts,
                    exc,
                )
                continue

            if isinstance(result, Running):
                self.task_store.update_task(
                    task_id, status=status, progress=map_provider_progress(result.progress)
                )
                continue
            if isinstance(result, Succeeded):
                self.task_store.update_task(task_id, status=status, progress=PROGRESS_BAND_END)
                return list(result.images)
            if isinstance(result, Failed):
                if result.category is FailureCategory.TRANSIENT:
                    last_error = result.reason
                    logger.warning(
                        "task_run event=poll_retry task_id=%s provider=%s attempt=%d/%d reason=%s",
                        task_id,
                        provider.name,
                        attempt,
                        self.max_poll_attempts,
                        result.reason,
                    )
                    continue
                if result.category is FailureCategory.MODERATION:
                    raise ModerationRejectedError(provider.name, result.reason)
                raise ProviderFailedError(provider.name, result.reason)
            raise TypeError(f"Unsupported poll result: {result!r}")

        raise PollTimeoutError(provider.name, self.max_poll_attempts, last_error)


class ThreadPipelineLauncher:
    """Start each task's pipeline on its own thread so tasks never wait on each other."""

    def __init__(self, pipeline: GenerationPipeline) -> None:
        self.pipeline = pipeline

    def launch(self, task_id: str) -> threading.Thread:
        thread = threading.Thread(
            target=self.pipeline.run,
            args=(task_id,),
            name=f"pipeline-{task_id}",
            daemon=True,
        )
        thread.start()
        return thread
