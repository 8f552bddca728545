"""
Asynchronous prediction service client.

Submits generation jobs to a Replicate-style HTTP API and polls them.
All calls go through the retry executor with the inference policy: network
failures, 5xx and 429 are retried; other 4xx are not.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from ..core.errors import InferenceServiceError, ProcessingFailed
from ..core.prompt_builder import PromptResult
from ..core.retry import RetryPolicy, inference_policy, retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.replicate.com/v1"
DEFAULT_MODEL = "google/gemini-2.5-flash-image"


class PredictionStatus(Enum):
    """Prediction lifecycle as reported by the service."""
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (PredictionStatus.SUCCEEDED, PredictionStatus.FAILED, PredictionStatus.CANCELED)


@dataclass(frozen=True)
class Prediction:
    """Snapshot of a prediction."""
    id: str
    status: PredictionStatus
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Prediction":
        if not data.get("id"):
            raise ProcessingFailed("Prediction response missing id")
        try:
            status = PredictionStatus(data.get("status") or "starting")
        except ValueError:
            raise ProcessingFailed(f"Unknown prediction status: {data.get('status')}")
        return cls(
            id=data["id"],
            status=status,
            output=data.get("output"),
            error=data.get("error"),
        )


def extract_output_url(output: Any) -> str:
    """Extract the result reference from a prediction output.

    The service returns either a single URL or a list of URLs; the first
    element of a list is used.

    Raises:
        ProcessingFailed: If the output holds no usable reference
    """
    if isinstance(output, str) and output:
        return output
    if isinstance(output, list) and output and isinstance(output[0], str) and output[0]:
        return output[0]
    raise ProcessingFailed("Prediction returned no output")


class PredictionClient:
    """Client for the inference service.

    Wraps prediction create/get/cancel. Failures are loud: non-2xx
    responses raise InferenceServiceError once retries are exhausted.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        wait_seconds: int = 60,
        request_timeout: float = 90.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the prediction client.

        Args:
            api_key: Service API token (required)
            model: Model identifier, "owner/name" (required)
            base_url: Service base URL
            wait_seconds: Synchronous wait hint sent with submissions
            request_timeout: Per-request HTTP timeout in seconds
            retry_policy: Retry parameters (defaults to inference_policy())
            transport: Optional httpx transport, used by tests

        Raises:
            ValueError: If api_key or model is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.wait_seconds = wait_seconds
        self.request_timeout = request_timeout
        self.retry_policy = retry_policy or inference_policy()
        self.transport = transport

    async def submit(self, prompt: PromptResult, image_urls: List[str]) -> Prediction:
        """Create a prediction.

        Args:
            prompt: Instruction text and generation parameters
            image_urls: Publicly reachable input images, person first

        Returns:
            Prediction; may already be terminal if the service finished
            within the wait window
        """
        payload = {
            "input": {
                "prompt": prompt.prompt,
                "negative_prompt": prompt.negative_prompt,
                "image_input": image_urls,
                "num_inference_steps": prompt.num_inference_steps,
                "guidance_scale": prompt.guidance_scale,
            }
        }
        data = await self._request(
            "POST",
            f"/models/{self.model}/predictions",
            json=payload,
            headers={"Prefer": f"wait={self.wait_seconds}"},
        )
        prediction = Prediction.from_json(data)
        logger.info("Submitted prediction %s (%s)", prediction.id, prediction.status.value)
        return prediction

    async def poll(self, prediction_id: str) -> Prediction:
        """Fetch the current state of a prediction."""
        data = await self._request("GET", f"/predictions/{prediction_id}")
        return Prediction.from_json(data)

    async def cancel(self, prediction_id: str) -> None:
        """Ask the service to stop a running prediction."""
        await self._request("POST", f"/predictions/{prediction_id}/cancel")
        logger.info("Canceled prediction %s", prediction_id)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        async def send() -> Dict[str, Any]:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.request_timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=request_headers)
            if not response.is_success:
                raise InferenceServiceError(response.status_code, response.text)
            return response.json()

        return await retry(send, self.retry_policy)
