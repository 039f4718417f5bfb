"""FastAPI application wiring for the image generation service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Background task: work FastAPI runs after the response has been sent.
- app.state: a place to store shared runtime objects (stores, pipeline, launcher).
- Lifespan: startup/shutdown hook; runtime objects are built there unless injected.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Protocol
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles

from imagegen_api.auth import IdentityResolver, SessionFileIdentityResolver
from imagegen_api.config.settings import Settings, get_settings
from imagegen_api.models import (
    CancelTaskResponse,
    DeleteImageResponse,
    DeleteTaskResponse,
    GenerateRequest,
    GenerateResponse,
    ImageListResponse,
    ImageRecord,
    Task,
    TaskListResponse,
)
from imagegen_api.pipeline.ingest import ImageIngest
from imagegen_api.pipeline.runner import GenerationPipeline, ThreadPipelineLauncher
from imagegen_api.providers.base import ProviderClient
from imagegen_api.providers.fallback import FallbackProvider
from imagegen_api.providers.mock import MockProvider
from imagegen_api.providers.primary import PrimaryProvider
from imagegen_api.storage.gallery import GalleryStore
from imagegen_api.storage.tasks import JsonTaskStore

logger = logging.getLogger(__name__)


class PipelineLauncher(Protocol):
    def launch(self, task_id: str) -> Any: ...


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def build_primary_provider(settings: Settings) -> ProviderClient:
    if not settings.primary_api_key:
        logger.warning("provider_config event=primary_key_missing using=mock")
        return MockProvider()
    return PrimaryProvider(
        host=settings.primary_api_host,
        api_key=settings.primary_api_key,
        model=settings.primary_model,
        max_reference_images=settings.primary_max_reference_images,
        submit_timeout_s=settings.primary_submit_timeout_s,
        poll_timeout_s=settings.primary_poll_timeout_s,
    )


def build_fallback_provider(settings: Settings) -> ProviderClient | None:
    if not settings.fallback_api_key:
        logger.warning("provider_config event=fallback_key_missing fallback=disabled")
        return None
    return FallbackProvider(
        host=settings.fallback_api_host,
        api_key=settings.fallback_api_key,
        model=settings.fallback_model,
        max_reference_images=settings.fallback_max_reference_images,
        submit_timeout_s=settings.fallback_submit_timeout_s,
        poll_timeout_s=settings.fallback_poll_timeout_s,
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    task_store: JsonTaskStore | None,
    gallery: GalleryStore | None,
    pipeline: GenerationPipeline | None,
    launcher: PipelineLauncher | None,
    identity_resolver: IdentityResolver | None,
) -> None:
    settings.images_dir.mkdir(parents=True, exist_ok=True)

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "task_store"):
        app.state.task_store = task_store or JsonTaskStore(
            settings.tasks_file, retention_limit=settings.task_retention_limit
        )

    if not hasattr(app.state, "gallery"):
        if gallery is None:
            gallery = GalleryStore(settings.metadata_file, settings.images_dir)
            # Image files written just before a crash have no gallery record yet.
            gallery.reconcile_orphans()
        app.state.gallery = gallery

    if not hasattr(app.state, "pipeline"):
        app.state.pipeline = pipeline or GenerationPipeline(
            task_store=app.state.task_store,
            primary=build_primary_provider(settings),
            fallback=build_fallback_provider(settings),
            ingest=ImageIngest(
                gallery=app.state.gallery,
                images_dir=settings.images_dir,
                timeout_s=settings.download_timeout_s,
                user_agent=settings.download_user_agent,
            ),
            poll_interval_s=settings.poll_interval_s,
            max_poll_attempts=settings.max_poll_attempts,
        )

    if not hasattr(app.state, "launcher"):
        app.state.launcher = launcher or ThreadPipelineLauncher(app.state.pipeline)

    if not hasattr(app.state, "identity_resolver"):
        app.state.identity_resolver = identity_resolver or SessionFileIdentityResolver(
            settings.sessions_file
        )


def create_app(
    *,
    settings_override: Settings | None = None,
    task_store: JsonTaskStore | None = None,
    gallery: GalleryStore | None = None,
    pipeline: GenerationPipeline | None = None,
    launcher: PipelineLauncher | None = None,
    identity_resolver: IdentityResolver | None = None,
) -> FastAPI:
    """Application factory.

    Injected collaborators are used as-is; anything missing is built from settings.
    """
    settings = settings_override or get_settings()

    def _init(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            task_store=task_store,
            gallery=gallery,
            pipeline=pipeline,
            launcher=launcher,
            identity_resolver=identity_resolver,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _init(app)
        yield

    app_lifespan = lifespan if task_store is None else None
    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if task_store is not None:
        _init(app)

    app.mount(
        "/storage",
        StaticFiles(directory=settings.storage_dir, check_dir=False),
        name="storage",
    )
    bearer = HTTPBearer(auto_error=False)

    def _state(request: Request) -> Any:
        if not hasattr(request.app.state, "task_store"):
            _init(request.app)
        return request.app.state

    def require_owner(
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> str:
        if credentials is None or not credentials.credentials:
            raise HTTPException(status_code=401, detail="Not authenticated")
        owner = _state(request).identity_resolver.resolve(credentials.credentials)
        if not owner:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return owner

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    # The task is stored before the response is sent; the pipeline starts after.
    @app.post("/generate", response_model=GenerateResponse)
    def generate(
        payload: GenerateRequest,
        background_tasks: BackgroundTasks,
        request: Request,
        owner: str = Depends(require_owner),
    ) -> GenerateResponse:
        state = _state(request)
        task_id = new_task_id()
        params = payload.to_params()
        task = state.task_store.create_task(task_id, params, owner=owner)
        logger.info(
            "task_run event=created task_id=%s owner=%s aspect_ratio=%s image_size=%s "
            "reference_images=%d",
            task_id,
            owner,
            params.aspect_ratio,
            params.image_size,
            len(params.reference_urls),
        )
        background_tasks.add_task(state.launcher.launch, task_id)
        return GenerateResponse(task_id=task_id, task=task)

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(request: Request) -> TaskListResponse:
        return TaskListResponse(tasks=_state(request).task_store.list_tasks())

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request) -> Task:
        task = _state(request).task_store.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.post("/tasks/{task_id}/cancel", response_model=CancelTaskResponse)
    def cancel_task(task_id: str, request: Request) -> CancelTaskResponse:
        if not _state(request).task_store.cancel_task(task_id):
            raise HTTPException(
                status_code=400,
                detail="Task cannot be cancelled (already finished or not found)",
            )
        return CancelTaskResponse(task_id=task_id, status="cancelled")

    @app.delete("/tasks/{task_id}", response_model=DeleteTaskResponse)
    def delete_task(task_id: str, request: Request) -> DeleteTaskResponse:
        deleted = _state(request).task_store.delete_task(task_id)
        return DeleteTaskResponse(task_id=task_id, deleted=deleted)

    @app.get("/images", response_model=ImageListResponse)
    def list_images(request: Request) -> ImageListResponse:
        images = _state(request).gallery.list_images()
        return ImageListResponse(images=images, total=len(images))

    @app.get("/images/{image_id}", response_model=ImageRecord)
    def get_image(image_id: str, request: Request) -> ImageRecord:
        image = _state(request).gallery.get_image(image_id)
        if image is None:
            raise HTTPException(status_code=404, detail="Image not found")
        return image

    @app.delete("/images/{image_id}", response_model=DeleteImageResponse)
    def delete_image(image_id: str, request: Request) -> DeleteImageResponse:
        removed = _state(request).gallery.delete_image(image_id)
        if removed is None:
            raise HTTPException(status_code=404, detail="Image not found")
        return DeleteImageResponse(image_id=image_id, deleted=True)

    return app


# Module-level app for `uvicorn imagegen_api.main:app`.
app = create_app()
