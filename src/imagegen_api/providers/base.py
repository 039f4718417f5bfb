"""Provider interface, normalized poll results, and the shared JSON transport."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from http import client as http_client
from typing import Any, Protocol, Union
from urllib import error, request

from imagegen_api.errors import FailureCategory, ProviderRequestError
from imagegen_api.models import GenerationParams, ProviderName

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedImage:
    url: str
    content: str | None = None


@dataclass(frozen=True)
class Running:
    progress: int = 0


@dataclass(frozen=True)
class Succeeded:
    images: list[GeneratedImage] = field(default_factory=list)


@dataclass(frozen=True)
class Failed:
    category: FailureCategory
    reason: str


PollResult = Union[Running, Succeeded, Failed]


class ProviderClient(Protocol):
    """Capability set every generation backend exposes to the pipeline."""

    name: ProviderName

    def submit(self, params: GenerationParams) -> str: ...

    def poll(self, provider_task_id: str) -> PollResult: ...


def clamp_progress(raw: Any) -> int:
    """Coerce a provider progress value into an int in [0, 100]."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    if value != value:  # NaN
        return 0
    return int(min(100.0, max(0.0, value)))


def unwrap_data(body: dict[str, Any]) -> dict[str, Any]:
    """Both providers nest the job under `data`, but not on every response."""
    data = body.get("data")
    if isinstance(data, dict):
        return data
    return body


def request_json(
    *,
    provider: str,
    method: str,
    url: str,
    api_key: str,
    timeout_s: float,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Send one JSON request and return the decoded object body.

    Raises:
        ProviderRequestError: on network failures, truncated or undecodable bodies,
            HTTP error statuses, or bodies that are not a JSON object.
    """
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    data: bytes | None = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    try:
        req = request.Request(url=url, data=data, method=method, headers=headers)
        with request.urlopen(req, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raw_error = exc.read().decode("utf-8", errors="replace")
        raise ProviderRequestError(
            provider,
            f"request failed with status {exc.code}: {raw_error[:300]}",
            status_code=exc.code,
        ) from exc
    except error.URLError as exc:
        raise ProviderRequestError(provider, f"request failed: {exc.reason}") from exc
    except (TimeoutError, OSError, http_client.HTTPException) as exc:
        reason = f"{type(exc).__name__}: {exc}"
        raise ProviderRequestError(provider, f"request failed: {reason}") from exc
    except UnicodeDecodeError as exc:
        raise ProviderRequestError(provider, "returned a body that is not UTF-8") from exc
    except ValueError as exc:
        # urllib rejects malformed URLs with ValueError.
        raise ProviderRequestError(provider, f"invalid request: {exc}") from exc

    try:
        parsed = json.loads(body) if body else {}
    except json.JSONDecodeError as exc:
        raise ProviderRequestError(provider, "returned non-JSON response") from exc
    if not isinstance(parsed, dict):
        raise ProviderRequestError(
            provider, f"returned unsupported JSON shape: {type(parsed).__name__}"
        )
    return parsed
