"""Fallback generation provider (APImart images API).

The success payload has been observed in several shapes, so image URLs are
extracted by trying each known shape in a fixed order:

1. a list under `output`, `images`, or `results` whose items are URL strings or
   objects carrying the URL under `url` or `image_url`;
2. a single URL string under one of those same keys;
3. a top-level `url` field.

A succeeded payload matching none of them raises `UnrecognizedResponseError`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from imagegen_api.errors import (
    FailureCategory,
    ProviderRequestError,
    SubmissionError,
    UnrecognizedResponseError,
)
from imagegen_api.models import GenerationParams, ProviderName
from imagegen_api.providers.base import (
    Failed,
    GeneratedImage,
    PollResult,
    Running,
    Succeeded,
    clamp_progress,
    request_json,
    unwrap_data,
)

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"succeeded", "completed", "success"})
FAILURE_STATUSES = frozenset({"failed", "error"})
OUTPUT_KEYS = ("output", "images", "results")
URL_KEYS = ("url", "image_url")


def _urls_from_list(data: dict[str, Any]) -> list[str]:
    for key in OUTPUT_KEYS:
        value = data.get(key)
        if not isinstance(value, list):
            continue
        urls: list[str] = []
        for item in value:
            if isinstance(item, str) and item:
                urls.append(item)
            elif isinstance(item, dict):
                url = next(
                    (item[k] for k in URL_KEYS if isinstance(item.get(k), str) and item[k]), None
                )
                if url:
                    urls.append(url)
        if urls:
            return urls
    return []


def _url_from_output_string(data: dict[str, Any]) -> list[str]:
    for key in OUTPUT_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return [value]
    return []


def _url_from_top_level(data: dict[str, Any]) -> list[str]:
    value = data.get("url")
    if isinstance(value, str) and value:
        return [value]
    return []


URL_EXTRACTORS: tuple[Callable[[dict[str, Any]], list[str]], ...] = (
    _urls_from_list,
    _url_from_output_string,
    _url_from_top_level,
)


def extract_image_urls(data: dict[str, Any]) -> list[str]:
    """Return URLs from the first payload shape that yields any."""
    for extractor in URL_EXTRACTORS:
        urls = extractor(data)
        if urls:
            return urls
    return []


class FallbackProvider:
    """Adapter for the fallback images API.

    Submission answers `{"code": 200, "data": [{"task_id": ...}]}`; jobs are polled
    with `GET /v1/tasks/{id}`.
    """

    name: ProviderName = "fallback"

    def __init__(
        self,
        *,
        host: str,
        api_key: str,
        model: str = "gemini-3-pro-image-preview",
        max_reference_images: int = 14,
        submit_timeout_s: float = 120.0,
        poll_timeout_s: float = 10.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_reference_images = max(0, max_reference_images)
        self.submit_timeout_s = submit_timeout_s
        self.poll_timeout_s = poll_timeout_s

    def build_payload(self, params: GenerationParams) -> dict[str, Any]:
        aspect_ratio = params.aspect_ratio or "auto"
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": params.prompt,
            # This API has no "auto" size.
            "size": "1:1" if aspect_ratio == "auto" else aspect_ratio,
            "resolution": params.image_size or "1K",
            "n": 1,
        }
        urls = params.reference_urls[: self.max_reference_images]
        if urls:
            payload["image_urls"] = [{"url": url} for url in urls]
        return payload

    def submit(self, params: GenerationParams) -> str:
        payload = self.build_payload(params)
        logger.info(
            "provider_submit provider=%s model=%s reference_images=%d",
            self.name,
            self.model,
            len(payload.get("image_urls", [])),
        )
        try:
            body = request_json(
                provider=self.name,
                method="POST",
                url=f"{self.host}/v1/images/generations",
                api_key=self.api_key,
                timeout_s=self.submit_timeout_s,
                payload=payload,
            )
        except ProviderRequestError as exc:
            raise SubmissionError(self.name, str(exc)) from exc

        if body.get("code") != 200:
            raise SubmissionError(
                self.name, str(body.get("message") or "generation request rejected")
            )
        data = body.get("data")
        first = data[0] if isinstance(data, list) and data else None
        task_id = first.get("task_id") if isinstance(first, dict) else None
        if not task_id:
            raise SubmissionError(self.name, "response did not include a task id")
        return str(task_id)

    def poll(self, provider_task_id: str) -> PollResult:
        body = request_json(
            provider=self.name,
            method="GET",
            url=f"{self.host}/v1/tasks/{provider_task_id}",
            api_key=self.api_key,
            timeout_s=self.poll_timeout_s,
        )
        return self.parse_result(body)

    def parse_result(self, body: dict[str, Any]) -> PollResult:
        data = unwrap_data(body)
        status = str(data.get("status") or "").lower()

        if status in SUCCESS_STATUSES:
            urls = extract_image_urls(data)
            if not urls:
                raise UnrecognizedResponseError(
                    self.name, f"no image URL in payload keys {sorted(data.keys())}"
                )
            return Succeeded(images=[GeneratedImage(url=url) for url in urls])

        if status in FAILURE_STATUSES:
            reason = str(
                data.get("failure_reason")
                or data.get("error")
                or data.get("message")
                or "generation failed"
            )
            return Failed(FailureCategory.GENERIC, reason)

        return Running(progress=clamp_progress(data.get("progress")))
