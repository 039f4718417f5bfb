"""JSON snapshot helpers shared by the task store and the gallery log."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from imagegen_api.errors import PersistenceError

logger = logging.getLogger(__name__)


def read_json_list(path: Path) -> list[dict[str, Any]]:
    """Load a JSON array of objects; missing or unreadable files yield an empty list."""
    if not path.exists():
        return []
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.exception("snapshot_load event=read_failed path=%s", path)
        return []
    if not isinstance(parsed, list):
        logger.warning("snapshot_load event=unexpected_shape path=%s type=%s", path, type(parsed))
        return []
    return [item for item in parsed if isinstance(item, dict)]


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to `<path>.tmp` and atomically replace `path`.

    Raises:
        PersistenceError: when the temp file cannot be written or renamed.
    """
    tmp = path.with_name(f"{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}") from exc
