"""Offline stand-in used when no primary API key is configured (development only)."""

from __future__ import annotations

import threading
from uuid import uuid4

from imagegen_api.models import GenerationParams, ProviderName
from imagegen_api.providers.base import GeneratedImage, PollResult, Running, Succeeded

PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/512"


class MockProvider:
    """Reports progress in fixed steps, then one placeholder image."""

    name: ProviderName = "mock"

    def __init__(self, *, steps: int = 10, image_url: str = PLACEHOLDER_IMAGE_URL) -> None:
        self.steps = max(1, steps)
        self.image_url = image_url
        self._lock = threading.Lock()
        self._jobs: dict[str, tuple[int, str]] = {}

    def submit(self, params: GenerationParams) -> str:
        job_id = f"mock_{uuid4().hex}"
        with self._lock:
            self._jobs[job_id] = (0, params.prompt)
        return job_id

    def poll(self, provider_task_id: str) -> PollResult:
        with self._lock:
            step, prompt = self._jobs.get(provider_task_id, (self.steps, ""))
            step += 1
            if step > self.steps:
                self._jobs.pop(provider_task_id, None)
                return Succeeded(images=[GeneratedImage(url=self.image_url, content=prompt)])
            self._jobs[provider_task_id] = (step, prompt)
        return Running(progress=round(step / self.steps * 100))
