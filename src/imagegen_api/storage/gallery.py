"""Gallery log of downloaded images, newest first."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from imagegen_api.errors import PersistenceError
from imagegen_api.models import DEFAULT_OWNER, ImageRecord
from imagegen_api.storage.files import read_json_list, write_json_atomic

logger = logging.getLogger(__name__)

RECOVERED_PROMPT = "(recovered from storage)"


class GalleryStore:
    """Thread-safe image metadata log mirrored to a JSON snapshot file.

    Records outlive the task that produced them.
    """

    def __init__(self, path: Path, images_dir: Path) -> None:
        self.path = path
        self.images_dir = images_dir
        self._lock = threading.Lock()
        self._records: list[ImageRecord] = []
        self._load()

    def append(self, record: ImageRecord) -> None:
        """Record one image and flush the snapshot before returning."""
        with self._lock:
            self._records.insert(0, record.model_copy(deep=True))
            self._persist_locked()

    def list_images(self) -> list[ImageRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records]

    def get_image(self, image_id: str) -> ImageRecord | None:
        with self._lock:
            for record in self._records:
                if record.id == image_id:
                    return record.model_copy(deep=True)
        return None

    def delete_image(self, image_id: str) -> ImageRecord | None:
        """Remove a record and its backing file; returns the removed record."""
        with self._lock:
            for index, record in enumerate(self._records):
                if record.id == image_id:
                    removed = self._records.pop(index)
                    break
            else:
                return None
            self._persist_locked()

        file_path = self.images_dir / removed.filename
        try:
            file_path.unlink(missing_ok=True)
        except OSError:
            logger.exception("gallery event=file_delete_failed path=%s", file_path)
        return removed

    def reconcile_orphans(self, *, public_prefix: str = "/storage/images") -> list[ImageRecord]:
        """Add records for stored images the log does not know about.

        A crash between writing an image file and appending its record leaves such
        a file behind. Recovered records take the file mtime as `createdAt`, and the
        log is re-sorted newest first. Returns the recovered records.
        """
        if not self.images_dir.is_dir():
            return []
        prefix = public_prefix.rstrip("/")
        recovered: list[ImageRecord] = []
        with self._lock:
            known = {record.id for record in self._records}
            known.update(Path(record.filename).stem for record in self._records)
            for file_path in sorted(self.images_dir.glob("*.png")):
                if file_path.stem in known:
                    continue
                try:
                    mtime = file_path.stat().st_mtime
                except OSError:
                    logger.warning("gallery event=orphan_unreadable path=%s", file_path)
                    continue
                recovered.append(
                    ImageRecord(
                        id=file_path.stem,
                        prompt=RECOVERED_PROMPT,
                        filename=file_path.name,
                        path=str(file_path),
                        url=f"{prefix}/{file_path.name}",
                        remote_url="",
                        created_at=datetime.fromtimestamp(mtime, tz=UTC),
                    )
                )
            if not recovered:
                return []
            self._records.extend(recovered)
            self._records.sort(key=lambda record: record.created_at, reverse=True)
            self._persist_locked()
            total = len(self._records)
        logger.info("gallery event=orphans_recovered count=%d total=%d", len(recovered), total)
        return [record.model_copy(deep=True) for record in recovered]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _load(self) -> None:
        for raw in read_json_list(self.path):
            raw.setdefault("owner", DEFAULT_OWNER)
            try:
                self._records.append(ImageRecord.model_validate(raw))
            except ValidationError as exc:
                logger.warning("gallery event=skip_invalid_record reason=%s", exc)
        logger.info("gallery event=loaded path=%s images=%d", self.path, len(self._records))

    def _persist_locked(self) -> None:
        payload = [record.model_dump(mode="json", by_alias=True) for record in self._records]
        try:
            write_json_atomic(self.path, payload)
        except PersistenceError:
            logger.exception("gallery event=persist_failed path=%s", self.path)
