"""
Unit tests for the prediction service client.

HTTP is served by httpx.MockTransport; retries use zero delays.
"""

import asyncio
import json

import httpx
import pytest

from tryon_ledger.core.errors import InferenceServiceError, ProcessingFailed
from tryon_ledger.core.prompt_builder import PromptResult
from tryon_ledger.core.retry import inference_policy
from tryon_ledger.sdk.inference_client import (
    DEFAULT_BASE_URL,
    Prediction,
    PredictionClient,
    PredictionStatus,
    extract_output_url,
)

PROMPT = PromptResult(
    prompt="dress the person",
    negative_prompt="blurry",
    num_inference_steps=50,
    guidance_scale=7.5,
)


class Recorder:
    """Mock transport handler that replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(handler, **kwargs) -> PredictionClient:
    return PredictionClient(
        api_key="r8_test",
        model="google/gemini-2.5-flash-image",
        retry_policy=inference_policy(3, 0.0, 0.0),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestInit:
    """Test constructor validation."""

    @pytest.mark.parametrize("api_key", ["", "  ", None])
    def test_missing_api_key(self, api_key):
        with pytest.raises(ValueError, match="api_key is required"):
            PredictionClient(api_key=api_key)

    def test_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            PredictionClient(api_key="key", model="")

    def test_defaults(self):
        client = PredictionClient(api_key="key")
        assert client.base_url == DEFAULT_BASE_URL
        assert client.wait_seconds == 60


class TestSubmit:
    """Test prediction creation."""

    def test_submit_request_shape(self):
        handler = Recorder(httpx.Response(201, json={"id": "pred-1", "status": "starting"}))

        prediction = asyncio.run(_client(handler, wait_seconds=30).submit(PROMPT, ["https://a/m.jpg", "https://a/c.jpg"]))

        assert prediction == Prediction(id="pred-1", status=PredictionStatus.STARTING)
        [request] = handler.requests
        assert request.method == "POST"
        assert request.url == "https://api.replicate.com/v1/models/google/gemini-2.5-flash-image/predictions"
        assert request.headers["Authorization"] == "Bearer r8_test"
        assert request.headers["Prefer"] == "wait=30"
        body = json.loads(request.content)
        assert body["input"]["prompt"] == "dress the person"
        assert body["input"]["image_input"] == ["https://a/m.jpg", "https://a/c.jpg"]
        assert body["input"]["num_inference_steps"] == 50

    def test_submit_may_finish_synchronously(self):
        handler = Recorder(httpx.Response(201, json={"id": "pred-1", "status": "succeeded", "output": "https://r/out.png"}))

        prediction = asyncio.run(_client(handler).submit(PROMPT, ["https://a/m.jpg"]))

        assert prediction.status.is_terminal
        assert prediction.output == "https://r/out.png"

    def test_server_error_retried(self):
        handler = Recorder(
            httpx.Response(503, text="overloaded"),
            httpx.ConnectError("connection refused"),
            httpx.Response(201, json={"id": "pred-1", "status": "processing"}),
        )

        prediction = asyncio.run(_client(handler).submit(PROMPT, ["https://a/m.jpg"]))

        assert prediction.id == "pred-1"
        assert len(handler.requests) == 3

    def test_client_error_not_retried(self):
        handler = Recorder(httpx.Response(422, text="invalid input"))

        with pytest.raises(InferenceServiceError) as exc_info:
            asyncio.run(_client(handler).submit(PROMPT, ["https://a/m.jpg"]))

        assert exc_info.value.status_code == 422
        assert len(handler.requests) == 1

    def test_retries_exhausted(self):
        handler = Recorder(*[httpx.Response(500, text="down") for _ in range(3)])

        with pytest.raises(InferenceServiceError):
            asyncio.run(_client(handler).submit(PROMPT, ["https://a/m.jpg"]))
        assert len(handler.requests) == 3

    def test_missing_id_is_processing_failure(self):
        handler = Recorder(httpx.Response(201, json={"status": "starting"}))

        with pytest.raises(ProcessingFailed):
            asyncio.run(_client(handler).submit(PROMPT, ["https://a/m.jpg"]))


class TestPollAndCancel:
    """Test prediction lookups."""

    def test_poll(self):
        handler = Recorder(httpx.Response(200, json={"id": "pred-1", "status": "failed", "error": "NSFW"}))

        prediction = asyncio.run(_client(handler).poll("pred-1"))

        assert prediction.status is PredictionStatus.FAILED
        assert prediction.error == "NSFW"
        assert handler.requests[0].method == "GET"
        assert handler.requests[0].url.path == "/v1/predictions/pred-1"

    def test_unknown_status(self):
        handler = Recorder(httpx.Response(200, json={"id": "pred-1", "status": "exploded"}))

        with pytest.raises(ProcessingFailed):
            asyncio.run(_client(handler).poll("pred-1"))

    def test_cancel(self):
        handler = Recorder(httpx.Response(200, json={"id": "pred-1", "status": "canceled"}))

        asyncio.run(_client(handler).cancel("pred-1"))

        assert handler.requests[0].method == "POST"
        assert handler.requests[0].url.path == "/v1/predictions/pred-1/cancel"


class TestStatus:
    """Test terminal status detection."""

    @pytest.mark.parametrize("status,terminal", [
        (PredictionStatus.STARTING, False),
        (PredictionStatus.PROCESSING, False),
        (PredictionStatus.SUCCEEDED, True),
        (PredictionStatus.FAILED, True),
        (PredictionStatus.CANCELED, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert status.is_terminal is terminal


class TestExtractOutputUrl:
    """Test result reference extraction."""

    def test_single_url(self):
        assert extract_output_url("https://r/out.png") == "https://r/out.png"

    def test_first_of_list(self):
        assert extract_output_url(["https://r/1.png", "https://r/2.png"]) == "https://r/1.png"

    @pytest.mark.parametrize("output", [None, "", [], [None], {"url": "x"}])
    def test_no_output(self, output):
        with pytest.raises(ProcessingFailed):
            extract_output_url(output)
