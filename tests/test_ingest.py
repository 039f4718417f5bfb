from __future__ import annotations

from http import client as http_client
from pathlib import Path
from urllib import request

import pytest

from imagegen_api.errors import DownloadFailedError, PipelineCancelled
from imagegen_api.models import GenerationParams
from imagegen_api.pipeline import ingest as ingest_module
from imagegen_api.pipeline.cancellation import CancellationToken
from imagegen_api.pipeline.ingest import ImageIngest
from imagegen_api.providers.base import GeneratedImage
from imagegen_api.storage.gallery import GalleryStore


class _FakeHTTPResponse:
    def __init__(self, *chunks: bytes | Exception) -> None:
        self._chunks = list(chunks)

    def read(self, size: int = -1) -> bytes:
        if not self._chunks:
            return b""
        chunk = self._chunks.pop(0)
        if isinstance(chunk, Exception):
            raise chunk
        return chunk

    def __enter__(self) -> _FakeHTTPResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


PARAMS = GenerationParams(prompt="cat", aspect_ratio="1:1", image_size="1K")


def _ingest(tmp_path: Path, **kwargs) -> tuple[ImageIngest, GalleryStore]:
    gallery = GalleryStore(tmp_path / "metadata.json", tmp_path / "images")
    return ImageIngest(gallery=gallery, images_dir=tmp_path / "images", **kwargs), gallery


def test_ingest_downloads_with_user_agent_and_timeout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    captured: list[dict[str, object]] = []

    def fake_urlopen(req: request.Request, timeout: float):
        captured.append(
            {"url": req.full_url, "agent": req.get_header("User-agent"), "timeout": timeout}
        )
        return _FakeHTTPResponse(b"png-bytes")

    monkeypatch.setattr(ingest_module.request, "urlopen", fake_urlopen)
    ingest, gallery = _ingest(tmp_path, timeout_s=60.0, user_agent="imagegen-test/1.0")

    records = ingest.ingest(
        [GeneratedImage(url="https://cdn.example/1.png")],
        params=PARAMS,
        owner="alice",
        provider="primary",
    )

    assert captured == [
        {"url": "https://cdn.example/1.png", "agent": "imagegen-test/1.0", "timeout": 60.0}
    ]
    assert len(records) == 1
    record = records[0]
    assert record.owner == "alice"
    assert record.provider == "primary"
    assert record.remote_url == "https://cdn.example/1.png"
    assert record.url == f"/storage/images/{record.filename}"
    assert Path(record.path).read_bytes() == b"png-bytes"
    assert [image.id for image in gallery.list_images()] == [record.id]


def test_download_timeout_aborts_batch_but_keeps_earlier_images(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fake_urlopen(req: request.Request, timeout: float):
        if req.full_url.endswith("/2.png"):
            raise TimeoutError("timed out")
        return _FakeHTTPResponse(b"first")

    monkeypatch.setattr(ingest_module.request, "urlopen", fake_urlopen)
    ingest, gallery = _ingest(tmp_path)

    with pytest.raises(DownloadFailedError, match="timed out"):
        ingest.ingest(
            [
                GeneratedImage(url="https://cdn.example/1.png"),
                GeneratedImage(url="https://cdn.example/2.png"),
                GeneratedImage(url="https://cdn.example/3.png"),
            ],
            params=PARAMS,
            owner="alice",
            provider="primary",
        )

    images = gallery.list_images()
    assert len(images) == 1
    assert images[0].remote_url == "https://cdn.example/1.png"
    assert sorted(path.name for path in (tmp_path / "images").iterdir()) == [images[0].filename]


def test_image_ids_are_unique_within_a_batch(tmp_path: Path) -> None:
    ingest, _ = _ingest(tmp_path, downloader=lambda url: b"x")

    records = ingest.ingest(
        [GeneratedImage(url=f"https://cdn.example/{index}.png") for index in range(3)],
        params=PARAMS,
        owner="alice",
        provider="fallback",
    )

    assert len({record.id for record in records}) == 3
    assert [record.id.split("_")[1] for record in records] == ["0", "1", "2"]


def test_ingest_stops_when_cancelled(tmp_path: Path) -> None:
    downloads: list[str] = []

    def downloader(url: str) -> bytes:
        downloads.append(url)
        token.cancel()
        return b"x"

    token = CancellationToken("task_1")
    ingest, gallery = _ingest(tmp_path, downloader=downloader)

    with pytest.raises(PipelineCancelled):
        ingest.ingest(
            [
                GeneratedImage(url="https://cdn.example/1.png"),
                GeneratedImage(url="https://cdn.example/2.png"),
            ],
            params=PARAMS,
            owner="alice",
            provider="primary",
            token=token,
        )

    assert downloads == ["https://cdn.example/1.png"]
    assert len(gallery) == 1


@pytest.mark.parametrize(
    ("response", "message"),
    [
        (_FakeHTTPResponse(b"part", http_client.IncompleteRead(b"part")), "IncompleteRead"),
        (_FakeHTTPResponse(ConnectionResetError("reset by peer")), "reset by peer"),
    ],
)
def test_broken_transfer_is_a_download_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, response: _FakeHTTPResponse, message: str
) -> None:
    monkeypatch.setattr(ingest_module.request, "urlopen", lambda req, timeout: response)
    ingest, _ = _ingest(tmp_path)

    with pytest.raises(DownloadFailedError, match=message):
        ingest.download("https://cdn.example/1.png")


def test_relative_url_is_a_download_failure(tmp_path: Path) -> None:
    ingest, gallery = _ingest(tmp_path)

    with pytest.raises(DownloadFailedError, match="invalid url"):
        ingest.ingest(
            [GeneratedImage(url="/relative/img.png")],
            params=PARAMS,
            owner="alice",
            provider="primary",
        )
    assert len(gallery) == 0


def test_slow_transfer_hits_overall_deadline(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    ticks = iter([0.0, 25.0, 50.0, 75.0, 100.0])
    monkeypatch.setattr(
        ingest_module.request,
        "urlopen",
        lambda req, timeout: _FakeHTTPResponse(b"a", b"b", b"c", b"d"),
    )
    ingest, _ = _ingest(tmp_path, timeout_s=60.0, clock=lambda: next(ticks))

    with pytest.raises(DownloadFailedError, match="timed out after 60s"):
        ingest.download("https://cdn.example/1.png")


def test_chunked_transfer_is_joined(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        ingest_module.request,
        "urlopen",
        lambda req, timeout: _FakeHTTPResponse(b"\x89PNG", b"rest"),
    )
    ingest, _ = _ingest(tmp_path)

    assert ingest.download("https://cdn.example/1.png") == b"\x89PNGrest"
