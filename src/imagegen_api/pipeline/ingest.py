"""Download produced images and append gallery records one at a time."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime
from http import client as http_client
from pathlib import Path
from urllib import error, request
from uuid import uuid4

from imagegen_api.errors import DownloadFailedError
from imagegen_api.models import GenerationParams, ImageRecord, ProviderName
from imagegen_api.pipeline.cancellation import CancellationToken
from imagegen_api.providers.base import GeneratedImage
from imagegen_api.storage.gallery import GalleryStore

logger = logging.getLogger(__name__)

Downloader = Callable[[str], bytes]

DOWNLOAD_CHUNK_BYTES = 64 * 1024


class ImageIngest:
    """Persist a provider's images in order, flushing the gallery after each one.

    A failed download aborts the rest of the batch; images stored before the
    failure stay on disk and in the gallery.
    """

    def __init__(
        self,
        *,
        gallery: GalleryStore,
        images_dir: Path,
        timeout_s: float = 60.0,
        user_agent: str = "Mozilla/5.0 (compatible; imagegen-api/0.1)",
        public_prefix: str = "/storage/images",
        downloader: Downloader | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gallery = gallery
        self.images_dir = images_dir
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self.public_prefix = public_prefix.rstrip("/")
        self._download = downloader or self.download
        self._clock = clock

    def ingest(
        self,
        images: list[GeneratedImage],
        *,
        params: GenerationParams,
        owner: str,
        provider: ProviderName,
        token: CancellationToken | None = None,
    ) -> list[ImageRecord]:
        batch_ms = int(time.time() * 1000)
        # Suffix keeps ids unique when two batches start in the same millisecond.
        batch_tag = uuid4().hex[:6]
        records: list[ImageRecord] = []

        for index, image in enumerate(images):
            if token is not None:
                token.raise_if_cancelled()
            if not image.url:
                logger.warning(
                    "ingest event=skip_missing_url index=%d provider=%s", index, provider
                )
                continue

            image_id = f"{batch_ms}_{index}_{batch_tag}"
            filename = f"{image_id}.png"
            file_path = self.images_dir / filename

            content = self._download(image.url)
            self._write_file(file_path, content, url=image.url)

            record = ImageRecord(
                id=image_id,
                owner=owner,
                prompt=params.prompt,
                aspect_ratio=params.aspect_ratio,
                image_size=params.image_size,
                reference_urls=list(params.reference_urls),
                provider=provider,
                filename=filename,
                path=str(file_path),
                url=f"{self.public_prefix}/{filename}",
                remote_url=image.url,
                created_at=datetime.now(tz=UTC),
            )
            self.gallery.append(record)
            records.append(record)
            logger.info(
                "ingest event=image_saved image_id=%s bytes=%d provider=%s",
                image_id,
                len(content),
                provider,
            )
        return records

    def download(self, url: str) -> bytes:
        """Fetch image bytes within `timeout_s` for the whole transfer.

        The socket timeout only bounds each blocking call, so the body is read in
        chunks against an overall deadline.

        Raises:
            DownloadFailedError: on malformed URLs, network errors, truncated bodies,
                HTTP error statuses, or when the deadline passes.
        """
        deadline = self._clock() + self.timeout_s
        chunks: list[bytes] = []
        try:
            req = request.Request(url=url, method="GET", headers={"User-Agent": self.user_agent})
            with request.urlopen(req, timeout=self.timeout_s) as response:
                while True:
                    chunk = response.read(DOWNLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    chunks.append(chunk)
                    if self._clock() > deadline:
                        raise DownloadFailedError(url, f"timed out after {self.timeout_s:g}s")
        except error.HTTPError as exc:
            raise DownloadFailedError(url, f"status {exc.code}") from exc
        except error.URLError as exc:
            raise DownloadFailedError(url, str(exc.reason)) from exc
        except (TimeoutError, OSError, http_client.HTTPException) as exc:
            raise DownloadFailedError(url, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            # urllib rejects relative or malformed URLs with ValueError.
            raise DownloadFailedError(url, f"invalid url: {exc}") from exc
        return b"".join(chunks)

    @staticmethod
    def _write_file(path: Path, content: bytes, *, url: str) -> None:
        tmp = path.with_name(f"{path.name}.part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(content)
            os.replace(tmp, path)
        except OSError as exc:
            raise DownloadFailedError(url, f"could not store file: {exc}") from exc
