"""Task and gallery persistence."""

from imagegen_api.storage.gallery import GalleryStore
from imagegen_api.storage.tasks import RESTART_REASON, JsonTaskStore

__all__ = [
    "GalleryStore",
    "JsonTaskStore",
    "RESTART_REASON",
]
