"""
Try-on job orchestrator.

Drives one job from request to result:

    validating -> rate_checked -> cache_checked -> reserved -> uploading
    -> submitted -> polling -> completed | failed

Nothing is charged before ``reserved``. Every failure after it marks the job
failed and goes through the ErrorClassifier, which refunds the reserved gems
exactly once before the error reaches the caller.
"""

import asyncio
import hashlib
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .cache_key import derive_cache_key
from .error_handler import ErrorClassifier, ErrorContext
from .errors import (
    InvalidRequest,
    ProcessingFailed,
    RateLimitExceeded,
    StorageError,
    Timeout,
    TooManyItems,
    TryOnError,
    UploadFailed,
)
from .image_validator import ValidatedImage, is_remote_reference, validate_image
from .ledger import GemLedger
from .pricing import DEFAULT_PRICING, GemPricing, QualityTier, gem_cost
from .prompt_builder import (
    MAX_CLOTHING_ITEMS,
    ClothingCategory,
    ClothingItem,
    PromptResult,
    build_edit_prompt,
    build_tryon_prompt,
    sort_clothing_by_priority,
    validate_clothing_items,
)
from .rate_limiter import DEFAULT_LIMIT, DEFAULT_WINDOW_SECONDS, RateLimiter
from .retry import RetryPolicy, is_transport_error, retry
from ..sdk.identity import IdentityProvider
from ..sdk.inference_client import Prediction, PredictionClient, PredictionStatus, extract_output_url
from ..sdk.object_store import ObjectStore, input_path, result_path
from ..storage.models import JobRecord, JobStatus
from ..storage.repository import JobRepository

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_POLL_TIMEOUT = 180.0


class JobState(Enum):
    """Pipeline stages, in order."""
    VALIDATING = "validating"
    RATE_CHECKED = "rate_checked"
    CACHE_CHECKED = "cache_checked"
    RESERVED = "reserved"
    UPLOADING = "uploading"
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"


def is_upload_retryable(error: BaseException) -> bool:
    """Uploads retry on network failures and on object store errors."""
    return isinstance(error, StorageError) or is_transport_error(error)


def inline_reference(data: bytes) -> str:
    """Short stand-in for an inline image until it has been uploaded."""
    return "inline:sha256:" + hashlib.sha256(data).hexdigest()[:16]


def _parse_item(raw: Any) -> ClothingItem:
    if not isinstance(raw, dict):
        raise InvalidRequest("Each clothing item must be an object")
    try:
        category = ClothingCategory(raw.get("category"))
    except ValueError:
        raise InvalidRequest(f"Invalid category: {raw.get('category')}")
    image = raw.get("image")
    if not isinstance(image, str) or not image:
        raise InvalidRequest("All clothing items must have an image")
    return ClothingItem(
        category=category,
        image=image,
        name=raw.get("name"),
        description=raw.get("description"),
        image_type=raw.get("image_type"),
        color=raw.get("color"),
        material=raw.get("material"),
    )


@dataclass(frozen=True)
class TryOnRequest:
    """A try-on or edit request."""
    model_image: str
    clothing_items: List[ClothingItem] = field(default_factory=list)
    quality: QualityTier = QualityTier.STANDARD
    edit_mode: bool = False
    edit_prompt: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TryOnRequest":
        """Build a request from its wire form.

        Raises:
            InvalidRequest: If required fields are missing or malformed
            TooManyItems: If more than MAX_CLOTHING_ITEMS are given
        """
        if not isinstance(payload, dict):
            raise InvalidRequest("Request body must be an object")

        model_image = payload.get("model_image")
        if not isinstance(model_image, str) or not model_image:
            raise InvalidRequest("model_image is required")

        edit_mode = payload.get("edit_mode")
        if edit_mode is None:
            edit_mode = False
        if not isinstance(edit_mode, bool):
            raise InvalidRequest("edit_mode must be a boolean")

        edit_prompt = payload.get("edit_prompt")
        if edit_prompt is not None and not isinstance(edit_prompt, str):
            raise InvalidRequest("edit_prompt must be a string")

        # Edits only touch the model image
        items: List[ClothingItem] = []
        if not edit_mode:
            raw_items = payload.get("clothing_images") or []
            if not isinstance(raw_items, list):
                raise InvalidRequest("clothing_images must be an array")
            if len(raw_items) > MAX_CLOTHING_ITEMS:
                raise TooManyItems(f"Maximum {MAX_CLOTHING_ITEMS} clothing items allowed, got {len(raw_items)}")
            items = [_parse_item(raw) for raw in raw_items]

        return cls(
            model_image=model_image,
            clothing_items=items,
            quality=QualityTier.parse(payload.get("quality")),
            edit_mode=edit_mode,
            edit_prompt=edit_prompt,
        )

    @property
    def clothing_images(self) -> List[str]:
        return [item.image for item in self.clothing_items]


@dataclass(frozen=True)
class TryOnResult:
    """Successful outcome of a job (or a cache hit)."""
    job_id: str
    result_url: str
    gems_charged: int
    gems_remaining: int
    cached: bool
    processing_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "result_url": self.result_url,
            "gems_charged": self.gems_charged,
            "gems_remaining": self.gems_remaining,
            "cached": self.cached,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass(frozen=True)
class JobStatusView:
    """A job as seen by its owner."""
    job_id: str
    status: JobStatus
    result_url: Optional[str]
    gems_charged: int
    gems_balance: int
    error_kind: Optional[str]
    processing_time_ms: Optional[int]
    created_at: datetime
    completed_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "result_url": self.result_url,
            "gems_charged": self.gems_charged,
            "gems_balance": self.gems_balance,
            "error": self.error_kind,
            "processing_time_ms": self.processing_time_ms,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class TryOnOrchestrator:
    """Runs try-on jobs end to end.

    Collaborators are injected. One call to process() handles exactly one
    job; concurrent calls are independent apart from the shared ledger,
    whose operations are atomic in the data store. The prediction client
    is only needed to run jobs, not to look them up.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        ledger: GemLedger,
        jobs: JobRepository,
        object_store: ObjectStore,
        client: Optional[PredictionClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classifier: Optional[ErrorClassifier] = None,
        pricing: GemPricing = DEFAULT_PRICING,
        rate_limit: int = DEFAULT_LIMIT,
        rate_window_seconds: float = DEFAULT_WINDOW_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        upload_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if poll_timeout < poll_interval:
            raise ValueError("poll_timeout must be at least poll_interval")

        self.identity_provider = identity_provider
        self.ledger = ledger
        self.jobs = jobs
        self.object_store = object_store
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.classifier = classifier or ErrorClassifier(ledger)
        self.pricing = pricing
        self.rate_limit = rate_limit
        self.rate_window_seconds = rate_window_seconds
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.upload_policy = upload_policy or RetryPolicy(is_retryable=is_upload_retryable)
        self.sleep = sleep
        self.clock = clock

    async def handle(self, token: Optional[str], payload: Any) -> Tuple[int, Dict[str, Any]]:
        """Request/response entry point.

        Returns:
            (status_code, body). The body is TryOnResult.to_dict() on success,
            otherwise {"error": kind, "message": user message}.
        """
        try:
            identity = await self.identity_provider.resolve(token)
            request = TryOnRequest.from_payload(payload)
            result = await self._run(identity, request)
        except Exception as error:
            response = self.classifier.classify(error)
            if not isinstance(error, TryOnError):
                logger.exception("Unexpected error handling try-on request")
            elif not response.should_refund:
                logger.info("Rejected try-on request: %s (%s)", response.kind.value, response.message)
            return response.status_code, response.to_body()
        return 200, result.to_dict()

    async def process(self, token: Optional[str], request: TryOnRequest) -> TryOnResult:
        """Authenticate and run one job.

        Raises:
            TryOnError: Classified failure. Post-reservation failures have
                already been refunded when this is raised.
        """
        identity = await self.identity_provider.resolve(token)
        return await self._run(identity, request)

    async def job_status(self, token: Optional[str], job_id: str) -> JobStatusView:
        """Look up one of the caller's own jobs.

        Raises:
            Unauthorized: If the token is invalid
            InvalidRequest: If the job does not exist or belongs to someone else
        """
        identity = await self.identity_provider.resolve(token)
        job = self.jobs.get_job(job_id)
        if job is None or job.identity != identity:
            raise InvalidRequest(f"Job not found: {job_id}")
        return JobStatusView(
            job_id=job.job_id,
            status=job.status,
            result_url=job.result_url,
            gems_charged=job.gems_charged,
            gems_balance=self.ledger.balance(identity),
            error_kind=job.error_kind,
            processing_time_ms=job.processing_time_ms,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )

    async def balance(self, token: Optional[str]) -> int:
        """The caller's current gem balance."""
        identity = await self.identity_provider.resolve(token)
        return self.ledger.balance(identity)

    async def _run(self, identity: str, request: TryOnRequest) -> TryOnResult:
        if self.client is None:
            raise RuntimeError("No prediction client configured")
        self._enter(JobState.VALIDATING, identity)
        inline = self._validate(request)

        limit = self.rate_limiter.check(identity, self.rate_limit, self.rate_window_seconds)
        if not limit.allowed:
            raise RateLimitExceeded(
                f"{identity} exceeded {self.rate_limit} requests per {self.rate_window_seconds:g}s",
                retry_after=limit.retry_after,
            )
        self._enter(JobState.RATE_CHECKED, identity)

        cache_key = None
        if not request.edit_mode:
            cache_key = derive_cache_key(
                request.model_image, request.clothing_images, request.quality.value
            )
            cached = self.jobs.find_cached(identity, cache_key, request.quality.value)
            if cached is not None:
                logger.info("Cache hit for %s: job %s", identity, cached.job_id)
                return TryOnResult(
                    job_id=cached.job_id,
                    result_url=cached.result_url,
                    gems_charged=0,
                    gems_remaining=self.ledger.balance(identity),
                    cached=True,
                    processing_time_ms=0,
                )
            self._enter(JobState.CACHE_CHECKED, identity)

        job_id = str(uuid.uuid4())
        cost = gem_cost(request.quality, request.edit_mode, self.pricing)
        remaining = self.ledger.reserve(identity, cost, job_id)
        self._enter(JobState.RESERVED, identity, job_id)

        started = self.clock()
        state = JobState.RESERVED
        prediction_id = None
        try:
            self.jobs.insert_job(self._new_record(job_id, identity, request, inline, cost, cache_key))

            state = self._enter(JobState.UPLOADING, identity, job_id)
            request = await self._upload_inputs(identity, job_id, request, inline)

            state = self._enter(JobState.SUBMITTED, identity, job_id)
            prediction = await self._submit(request)
            prediction_id = prediction.id

            state = self._enter(JobState.POLLING, identity, job_id)
            prediction = await self._wait_for(prediction)

            output_url = extract_output_url(prediction.output)
            result_url = await self._persist_result(identity, output_url)
            elapsed_ms = self._elapsed_ms(started)
            self.jobs.mark_completed(job_id, result_url, prediction_id, elapsed_ms)
        except BaseException as error:
            # BaseException so a cancelled or interrupted job is refunded as well
            self._mark_failed(job_id, error, prediction_id, self._elapsed_ms(started))
            self.classifier.handle(
                error,
                ErrorContext(identity=identity, job_id=job_id, gems_charged=cost, operation=state.value),
            )
            self._enter(JobState.FAILED, identity, job_id)
            raise

        self._enter(JobState.COMPLETED, identity, job_id)
        return TryOnResult(
            job_id=job_id,
            result_url=result_url,
            gems_charged=cost,
            gems_remaining=remaining,
            cached=False,
            processing_time_ms=elapsed_ms,
        )

    def _enter(self, state: JobState, identity: str, job_id: Optional[str] = None) -> JobState:
        logger.debug("Job %s for %s -> %s", job_id or "-", identity, state.value)
        return state

    def _validate(self, request: TryOnRequest) -> Dict[str, ValidatedImage]:
        """Check the request shape and decode every inline image.

        Returns:
            Validated inline images keyed by their original reference
        """
        if not request.model_image:
            raise InvalidRequest("model_image is required")

        references = [request.model_image]
        if request.edit_mode:
            if not (request.edit_prompt or "").strip():
                raise InvalidRequest("edit_prompt is required in edit mode")
        else:
            validate_clothing_items(request.clothing_items)
            references.extend(request.clothing_images)

        inline: Dict[str, ValidatedImage] = {}
        for reference in references:
            if not is_remote_reference(reference) and reference not in inline:
                inline[reference] = validate_image(reference)
        return inline

    def _new_record(
        self,
        job_id: str,
        identity: str,
        request: TryOnRequest,
        inline: Dict[str, ValidatedImage],
        cost: int,
        cache_key: Optional[str],
    ) -> JobRecord:
        def stored(reference: str) -> str:
            image = inline.get(reference)
            return inline_reference(image.data) if image is not None else reference

        return JobRecord(
            job_id=job_id,
            identity=identity,
            model_image=stored(request.model_image),
            clothing_images=[] if request.edit_mode else [stored(r) for r in request.clothing_images],
            quality=request.quality.value,
            edit_mode=request.edit_mode,
            edit_prompt=request.edit_prompt if request.edit_mode else None,
            cache_key=cache_key,
            gems_charged=cost,
            created_at=datetime.now(timezone.utc),
        )

    async def _upload_inputs(
        self,
        identity: str,
        job_id: str,
        request: TryOnRequest,
        inline: Dict[str, ValidatedImage],
    ) -> TryOnRequest:
        """Upload inline images and return the request with URLs in their place."""
        if not inline:
            return request

        urls: Dict[str, str] = {}
        try:
            for reference, image in inline.items():
                path = input_path(identity, image.image_format.extension)
                urls[reference] = await retry(
                    lambda: self.object_store.put(image.data, path, image.image_format.mime_type),
                    self.upload_policy,
                    self.sleep,
                )
        except Exception as e:
            raise UploadFailed(f"Failed to upload input image: {e}") from e

        logger.info("Uploaded %d inline image(s) for job %s", len(urls), job_id)
        request = replace(
            request,
            model_image=urls.get(request.model_image, request.model_image),
            clothing_items=[
                replace(item, image=urls.get(item.image, item.image)) for item in request.clothing_items
            ],
        )
        self.jobs.update_inputs(
            job_id,
            request.model_image,
            [] if request.edit_mode else request.clothing_images,
        )
        return request

    async def _submit(self, request: TryOnRequest) -> Prediction:
        if request.edit_mode:
            prompt: PromptResult = build_edit_prompt(request.edit_prompt or "")
            image_urls = [request.model_image]
        else:
            items = sort_clothing_by_priority(request.clothing_items)
            prompt = build_tryon_prompt(items, request.quality)
            image_urls = [request.model_image] + [item.image for item in items]

        try:
            return await self.client.submit(prompt, image_urls)
        except TryOnError:
            raise
        except Exception as e:
            raise ProcessingFailed(f"Failed to submit prediction: {e}") from e

    async def _wait_for(self, prediction: Prediction) -> Prediction:
        """Poll until the prediction is terminal or the ceiling is reached."""
        max_polls = max(1, int(self.poll_timeout // self.poll_interval))

        polls = 0
        while not prediction.status.is_terminal:
            if polls >= max_polls:
                await self._cancel_quietly(prediction.id)
                raise Timeout(f"Prediction {prediction.id} not finished after {self.poll_timeout:g}s")
            await self.sleep(self.poll_interval)
            polls += 1
            try:
                prediction = await self.client.poll(prediction.id)
            except TryOnError:
                raise
            except Exception as e:
                raise ProcessingFailed(f"Failed to poll prediction {prediction.id}: {e}") from e

        if prediction.status is not PredictionStatus.SUCCEEDED:
            raise ProcessingFailed(
                f"Prediction {prediction.id} {prediction.status.value}: {prediction.error or 'unknown error'}"
            )
        return prediction

    async def _cancel_quietly(self, prediction_id: str) -> None:
        try:
            await self.client.cancel(prediction_id)
        except Exception as e:
            logger.warning("Failed to cancel prediction %s: %s", prediction_id, e)

    async def _persist_result(self, identity: str, output_url: str) -> str:
        """Copy the generated image into the object store.

        Falls back to the service's own URL if the copy fails; the job still
        counts as completed.
        """
        try:
            return await self.object_store.put_from_url(output_url, result_path(identity))
        except StorageError as e:
            logger.warning("Failed to persist result, using service URL: %s", e)
            return output_url

    def _mark_failed(
        self,
        job_id: str,
        error: BaseException,
        prediction_id: Optional[str],
        elapsed_ms: int,
    ) -> None:
        kind = self.classifier.classify(error).kind.value
        try:
            self.jobs.mark_failed(job_id, kind, prediction_id, elapsed_ms)
        except sqlite3.Error as e:
            logger.error("Failed to mark job %s as failed: %s", job_id, e)

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock() - started) * 1000)
