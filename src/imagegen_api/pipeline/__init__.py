"""Task execution: provider orchestration, cancellation, and image ingest."""

from imagegen_api.pipeline.cancellation import CancellationToken
from imagegen_api.pipeline.ingest import ImageIngest
from imagegen_api.pipeline.runner import (
    GenerationPipeline,
    ThreadPipelineLauncher,
    map_provider_progress,
)

__all__ = [
    "CancellationToken",
    "GenerationPipeline",
    "ImageIngest",
    "ThreadPipelineLauncher",
    "map_provider_progress",
]
