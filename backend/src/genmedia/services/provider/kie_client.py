"""kie.ai API client for image and video generation with error classification."""

import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from genmedia.core.config import Settings
from genmedia.models.params import JobDescriptor, VideoParams
from genmedia.services.exceptions import (
    ProviderApplicationError,
    ProviderConfigError,
    ProviderHTTPError,
    ProviderNetworkError,
    ProviderResponseError,
)

logger = structlog.get_logger(__name__)

SUCCESS_CODE = 200
IMAGE_QUALITY = "basic"


@dataclass(frozen=True)
class ProviderSubmission:
    """Accepted submission: the provider's task id and its initial state."""

    provider_job_id: str
    state: str = "pending"


@dataclass(frozen=True)
class ProviderTaskStatus:
    """Snapshot of a task as reported by the status endpoint."""

    provider_job_id: str
    status: str
    result_url: Optional[str] = None
    error: Optional[str] = None


def build_input(descriptor: JobDescriptor) -> dict[str, Any]:
    """Build the mode-specific ``input`` object.

    Image mode always sends the fixed minimal set. Video mode sends the prompt
    plus only the optional fields that are present (never nulls).
    """
    params = descriptor.params

    if isinstance(params, VideoParams):
        payload: dict[str, Any] = {"prompt": descriptor.prompt}
        if params.input_image_urls:
            payload["input_urls"] = list(params.input_image_urls)
        if params.aspect_ratio:
            payload["aspect_ratio"] = params.aspect_ratio
        if params.resolution:
            payload["resolution"] = params.resolution
        if params.duration is not None:
            payload["duration"] = str(params.duration)
        if params.fixed_lens is not None:
            payload["fixed_lens"] = params.fixed_lens
        if params.generate_audio is not None:
            payload["generate_audio"] = params.generate_audio
        return payload

    return {
        "prompt": descriptor.prompt,
        "aspect_ratio": params.aspect_ratio or "1:1",
        "quality": IMAGE_QUALITY,
    }


def build_request_body(descriptor: JobDescriptor, callback_url: str) -> dict[str, Any]:
    """Build the createTask request body."""
    return {
        "model": descriptor.model,
        "callBackUrl": callback_url,
        "input": build_input(descriptor),
    }


class KieClient:
    """Request/response wrapper around the kie.ai task API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai/api/v1",
        webhook_url: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize kie.ai client.

        Args:
            api_key: kie.ai API key (from KIE_API_KEY env var)
            base_url: API base URL (from KIE_API_BASE_URL env var)
            webhook_url: Default callback URL for task completion notifications
            timeout: Per-request network timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "KieClient":
        return cls(
            api_key=settings.kie_api_key,
            base_url=settings.kie_api_base_url,
            webhook_url=settings.webhook_url,
            timeout=settings.provider_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def submit(
        self, descriptor: JobDescriptor, callback_url: Optional[str] = None
    ) -> ProviderSubmission:
        """Submit a generation task to kie.ai.

        Args:
            descriptor: Job descriptor taken from the queue
            callback_url: Override for the webhook URL (defaults to configured one)

        Returns:
            ProviderSubmission with the provider's taskId (initial state is always pending)

        Raises:
            ProviderConfigError: API key or callback URL missing
            ProviderNetworkError: Timeout or connection failure (transient)
            ProviderHTTPError: Non-2xx response (429/5xx transient, others permanent)
            ProviderResponseError: Body is not the expected JSON envelope
            ProviderApplicationError: Envelope carries a non-success code
        """
        if not self.api_key:
            raise ProviderConfigError("KIE_API_KEY is not configured")

        webhook_url = callback_url or self.webhook_url
        if not webhook_url:
            raise ProviderConfigError("Callback URL is not configured (set PUBLIC_BASE_URL)")

        body = build_request_body(descriptor, webhook_url)
        logger.info(
            "provider.submit.request",
            generation_id=str(descriptor.generation_id),
            model=descriptor.model,
            mode=descriptor.mode.value,
        )
        logger.debug("provider.submit.body", body=body)

        response = await self._request("POST", "/jobs/createTask", json=body)
        data = self._decode_json(response)

        if not isinstance(data, dict):
            raise ProviderResponseError(
                f"kie.ai API error: Invalid response format - {json.dumps(data)}"
            )

        code = data.get("code")
        if code != SUCCESS_CODE:
            message = data.get("msg") or data.get("message") or "unknown error"
            raise ProviderApplicationError(code, f"kie.ai API error: {code} {message}")

        task = data.get("data") or {}
        task_id = task.get("taskId") if isinstance(task, dict) else None
        if not task_id:
            raise ProviderResponseError(
                f"kie.ai API error: Invalid response format - {json.dumps(data)}"
            )

        return ProviderSubmission(provider_job_id=str(task_id))

    async def fetch_status(self, provider_job_id: str) -> ProviderTaskStatus:
        """Get the current status of a kie.ai task.

        Raises:
            Same error family as ``submit``
        """
        if not self.api_key:
            raise ProviderConfigError("KIE_API_KEY is not configured")

        response = await self._request("GET", f"/generate/{provider_job_id}")
        data = self._decode_json(response)
        if not isinstance(data, dict) or "status" not in data:
            raise ProviderResponseError(
                f"kie.ai API error: Invalid status response - {json.dumps(data)}"
            )

        return ProviderTaskStatus(
            provider_job_id=str(data.get("id") or provider_job_id),
            status=str(data["status"]),
            result_url=data.get("result_url"),
            error=data.get("error"),
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, **kwargs
                )
        except httpx.TimeoutException as e:
            raise ProviderNetworkError(f"Request timeout after {self.timeout}s: {str(e)}") from e
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"Network error: {str(e)}") from e

        if not response.is_success:
            raise ProviderHTTPError(response.status_code, response.text)

        return response

    @staticmethod
    def _decode_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderResponseError(
                f"kie.ai API error: Response is not JSON - {response.text[:200]}"
            ) from e
