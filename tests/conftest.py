from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from imagegen_api.config.settings import Settings
from imagegen_api.main import create_app
from imagegen_api.models import GenerationParams, Task
from imagegen_api.pipeline.ingest import ImageIngest
from imagegen_api.pipeline.runner import GenerationPipeline
from imagegen_api.providers.base import PollResult
from imagegen_api.storage.gallery import GalleryStore
from imagegen_api.storage.tasks import JsonTaskStore

TEST_TOKEN = "token-alice"


class RecordingTaskStore(JsonTaskStore):
    """Task store that keeps every snapshot returned by update_task."""

    def __init__(self, path: Path, **kwargs: Any) -> None:
        self.history: list[Task] = []
        super().__init__(path, **kwargs)

    def update_task(self, task_id: str, **kwargs: Any) -> Task | None:
        updated = super().update_task(task_id, **kwargs)
        if updated is not None:
            self.history.append(updated)
        return updated

    def history_for(self, task_id: str) -> list[Task]:
        return [task for task in self.history if task.id == task_id]


class ScriptedProvider:
    """Provider double that replays poll results; the last one repeats."""

    def __init__(
        self,
        name: str,
        polls: list[PollResult | Exception],
        *,
        submit_error: Exception | None = None,
    ) -> None:
        self.name = name
        self._polls = list(polls)
        self.submit_error = submit_error
        self.submit_calls: list[GenerationParams] = []
        self.poll_calls = 0

    def submit(self, params: GenerationParams) -> str:
        self.submit_calls.append(params)
        if self.submit_error is not None:
            raise self.submit_error
        return f"{self.name}-job-{len(self.submit_calls)}"

    def poll(self, provider_task_id: str) -> PollResult:
        self.poll_calls += 1
        item = self._polls.pop(0) if len(self._polls) > 1 else self._polls[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeDownloader:
    """Maps URLs to bytes; unknown URLs fail like a network error."""

    def __init__(self, responses: dict[str, bytes | Exception] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[str] = []

    def __call__(self, url: str) -> bytes:
        self.calls.append(url)
        response = self.responses.get(url, b"\x89PNG fake image bytes")
        if isinstance(response, Exception):
            raise response
        return response


class InlineLauncher:
    """Runs the pipeline synchronously so tests can assert on final state."""

    def __init__(self, pipeline: GenerationPipeline) -> None:
        self.pipeline = pipeline
        self.launched: list[str] = []

    def launch(self, task_id: str) -> None:
        self.launched.append(task_id)
        self.pipeline.run(task_id)


class StaticIdentityResolver:
    def __init__(self, tokens: dict[str, str]) -> None:
        self.tokens = tokens

    def resolve(self, token: str) -> str | None:
        return self.tokens.get(token)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_dir=tmp_path / "storage",
        primary_api_key="primary-key",
        fallback_api_key="fallback-key",
        poll_interval_s=0.0,
        max_poll_attempts=5,
    )


@pytest.fixture
def task_store(settings: Settings) -> RecordingTaskStore:
    return RecordingTaskStore(settings.tasks_file)


@pytest.fixture
def gallery(settings: Settings) -> GalleryStore:
    return GalleryStore(settings.metadata_file, settings.images_dir)


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def make_pipeline(
    settings: Settings,
    task_store: RecordingTaskStore,
    gallery: GalleryStore,
    downloader: FakeDownloader,
) -> Callable[..., GenerationPipeline]:
    def _make(
        primary: ScriptedProvider,
        fallback: ScriptedProvider | None = None,
        *,
        max_poll_attempts: int = 5,
        sleep: Callable[[float], None] = lambda _seconds: None,
        ingest: ImageIngest | None = None,
    ) -> GenerationPipeline:
        return GenerationPipeline(
            task_store=task_store,
            primary=primary,
            fallback=fallback,
            ingest=ingest
            or ImageIngest(
                gallery=gallery,
                images_dir=settings.images_dir,
                downloader=downloader,
            ),
            poll_interval_s=0.0,
            max_poll_attempts=max_poll_attempts,
            sleep=sleep,
        )

    return _make


@pytest.fixture
def make_client(
    settings: Settings,
    task_store: RecordingTaskStore,
    gallery: GalleryStore,
) -> Iterator[Callable[[GenerationPipeline], TestClient]]:
    clients: list[TestClient] = []

    def _make(pipeline: GenerationPipeline) -> TestClient:
        app = create_app(
            settings_override=settings,
            task_store=task_store,
            gallery=gallery,
            pipeline=pipeline,
            launcher=InlineLauncher(pipeline),
            identity_resolver=StaticIdentityResolver({TEST_TOKEN: "alice"}),
        )
        client = TestClient(app)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}
