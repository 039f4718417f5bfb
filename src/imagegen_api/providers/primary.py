"""Primary generation provider (Nano Banana draw API)."""

from __future__ import annotations

import logging
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

MODERATION_REASONS = frozenset({"input_moderation", "output_moderation"})
# The draw API reports some recoverable hiccups as a bare "error" reason.
TRANSIENT_REASONS = frozenset({"error"})


class PrimaryProvider:
    """Adapter for the primary draw API.

    Submission returns `{"code": 0, "data": {"id": ...}}`; results are polled via
    `POST /v1/draw/result` and report `status` in {running, succeeded, failed}
    with an integer `progress` in 0..100.
    """

    name: ProviderName = "primary"

    def __init__(
        self,
        *,
        host: str,
        api_key: str,
        model: str = "nano-banana-pro",
        max_reference_images: int = 20,
        submit_timeout_s: float = 120.0,
        poll_timeout_s: float = 30.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_reference_images = max(0, max_reference_images)
        self.submit_timeout_s = submit_timeout_s
        self.poll_timeout_s = poll_timeout_s

    def build_payload(self, params: GenerationParams) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": params.prompt,
            "aspectRatio": params.aspect_ratio or "auto",
            "imageSize": params.image_size or "1K",
            # "-1" asks the API to skip webhooks; results are polled instead.
            "webHook": "-1",
        }
        urls = params.reference_urls[: self.max_reference_images]
        if urls:
            payload["urls"] = urls
        return payload

    def submit(self, params: GenerationParams) -> str:
        payload = self.build_payload(params)
        logger.info(
            "provider_submit provider=%s model=%s reference_images=%d",
            self.name,
            self.model,
            len(payload.get("urls", [])),
        )
        try:
            body = request_json(
                provider=self.name,
                method="POST",
                url=f"{self.host}/v1/draw/nano-banana",
                api_key=self.api_key,
                timeout_s=self.submit_timeout_s,
                payload=payload,
            )
        except ProviderRequestError as exc:
            raise SubmissionError(self.name, str(exc)) from exc

        if body.get("code") != 0:
            raise SubmissionError(self.name, str(body.get("msg") or "generation request rejected"))
        data = body.get("data")
        task_id = data.get("id") if isinstance(data, dict) else None
        if not task_id:
            raise SubmissionError(self.name, "response did not include a task id")
        return str(task_id)

    def poll(self, provider_task_id: str) -> PollResult:
        body = request_json(
            provider=self.name,
            method="POST",
            url=f"{self.host}/v1/draw/result",
            api_key=self.api_key,
            timeout_s=self.poll_timeout_s,
            payload={"id": provider_task_id},
        )
        return self.parse_result(body)

    def parse_result(self, body: dict[str, Any]) -> PollResult:
        data = unwrap_data(body)
        status = str(data.get("status") or "").lower()

        if status == "succeeded":
            images = [
                GeneratedImage(url=str(item["url"]), content=item.get("content"))
                for item in data.get("results") or []
                if isinstance(item, dict) and item.get("url")
            ]
            if not images:
                raise UnrecognizedResponseError(self.name, "succeeded without result URLs")
            return Succeeded(images=images)

        if status == "failed":
            reason = str(data.get("failure_reason") or data.get("error") or "generation failed")
            if reason in MODERATION_REASONS:
                return Failed(FailureCategory.MODERATION, reason)
            if reason in TRANSIENT_REASONS:
                return Failed(FailureCategory.TRANSIENT, reason)
            return Failed(FailureCategory.GENERIC, reason)

        return Running(progress=clamp_progress(data.get("progress")))
