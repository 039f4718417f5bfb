from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from imagegen_api.auth import SessionFileIdentityResolver
from imagegen_api.config.settings import Settings
from imagegen_api.main import build_fallback_provider, build_primary_provider, create_app
from imagegen_api.pipeline.runner import GenerationPipeline, ThreadPipelineLauncher
from imagegen_api.providers.fallback import FallbackProvider
from imagegen_api.providers.mock import MockProvider
from imagegen_api.providers.primary import PrimaryProvider
from imagegen_api.storage.tasks import RESTART_REASON


def test_missing_primary_key_selects_mock_provider(tmp_path: Path) -> None:
    settings = Settings(storage_dir=tmp_path, primary_api_key="")

    assert isinstance(build_primary_provider(settings), MockProvider)


def test_configured_providers_use_settings(settings: Settings) -> None:
    primary = build_primary_provider(settings)
    fallback = build_fallback_provider(settings)

    assert isinstance(primary, PrimaryProvider)
    assert primary.max_reference_images == 20
    assert isinstance(fallback, FallbackProvider)
    assert fallback.max_reference_images == 14


def test_missing_fallback_key_disables_fallback(tmp_path: Path) -> None:
    settings = Settings(storage_dir=tmp_path, fallback_api_key="")

    assert build_fallback_provider(settings) is None


def test_settings_read_prefixed_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("IMAGEGEN_STORAGE_DIR", str(tmp_path))
    monkeypatch.setenv("IMAGEGEN_MAX_POLL_ATTEMPTS", "7")

    settings = Settings()

    assert settings.max_poll_attempts == 7
    assert settings.tasks_file == tmp_path / "tasks.json"
    assert settings.images_dir == tmp_path / "images"


def test_lifespan_builds_runtime_and_recovers_tasks(settings: Settings) -> None:
    settings.storage_dir.mkdir(parents=True)
    settings.tasks_file.write_text(
        json.dumps(
            [
                {
                    "id": "task_old",
                    "owner": "alice",
                    "prompt": "cat",
                    "status": "running",
                    "progress": 40,
                    "createdAt": "2026-01-01T00:00:00+00:00",
                    "updatedAt": "2026-01-01T00:00:00+00:00",
                }
            ]
        ),
        encoding="utf-8",
    )

    with TestClient(create_app(settings_override=settings)) as client:
        state = client.app.state
        assert isinstance(state.pipeline, GenerationPipeline)
        assert isinstance(state.launcher, ThreadPipelineLauncher)
        assert isinstance(state.identity_resolver, SessionFileIdentityResolver)
        task = client.get("/tasks/task_old").json()

    assert task["status"] == "failed"
    assert task["error"] == RESTART_REASON
    assert settings.images_dir.is_dir()


def test_session_file_resolves_bearer_tokens(tmp_path: Path) -> None:
    sessions = tmp_path / "sessions.json"
    resolver = SessionFileIdentityResolver(sessions)
    assert resolver.resolve("abc") is None

    sessions.write_text(
        json.dumps({"abc": {"username": "alice"}, "broken": {"username": ""}}),
        encoding="utf-8",
    )

    assert resolver.resolve("abc") == "alice"
    assert resolver.resolve("broken") is None
    assert resolver.resolve("unknown") is None
    assert resolver.resolve("") is None


def test_unreadable_session_file_rejects(tmp_path: Path) -> None:
    sessions = tmp_path / "sessions.json"
    sessions.write_text("{not json", encoding="utf-8")

    assert SessionFileIdentityResolver(sessions).resolve("abc") is None


def test_lifespan_recovers_orphan_images(settings: Settings) -> None:
    settings.images_dir.mkdir(parents=True)
    (settings.images_dir / "1700000000000_0_abc123.png").write_bytes(b"png")

    with TestClient(create_app(settings_override=settings)) as client:
        listing = client.get("/images").json()

    assert listing["total"] == 1
    assert listing["images"][0]["id"] == "1700000000000_0_abc123"
    assert listing["images"][0]["url"] == "/storage/images/1700000000000_0_abc123.png"
