"""Try-on generation orchestrator.

Drives one generation request through the priority-ranked candidate list,
applies the retry/backoff/fallback policy per failure classification, and
charges exactly one credit once a genuine image is in hand.

Policy per candidate (attempt budget N, default 3; attempt k waits
``base * (k - 1)`` seconds first, so 2s then 4s):
    - TRANSIENT, NO_RESULT, SAFETY_BLOCKED: retry the same candidate, then
      fall through to the next one
    - RATE_LIMITED: abort the request (RateLimited)
    - QUOTA_EXHAUSTED: abort the request (QuotaExhausted)
All candidates exhausted raises ExhaustedAllProviders with the last
classification attached.

Examples:
    >>> orchestrator = GenerationOrchestrator.from_settings(ledger)
    >>> outcome = await orchestrator.generate(
    ...     GenerationRequest(store_id="s1", subject=photo, garment=garment)
    ... )
    >>> outcome.consumed, outcome.credits_remaining
    (True, 41)

Tests:
    - tests/unit/test_orchestrator.py
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from tryon.config import Candidate, Locale, Settings, get_settings
from tryon.core.providers import (
    FailureKind,
    ProviderFailure,
    ProviderImage,
    ProviderType,
    TryOnProvider,
    build_providers,
)
from tryon.credits.eligibility import BlockReason
from tryon.credits.ledger import LedgerStore
from tryon.errors import (
    DEFAULT_CAPTIONS,
    Blocked,
    ExhaustedAllProviders,
    LedgerUnavailable,
    QuotaExhausted,
    RateLimited,
)
from tryon.images import ImagePayload, decode_image
from tryon.prompts import MIN_CAPTION_LENGTH

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 2.0


@dataclass
class AttemptRecord:
    """One provider call made on behalf of a request.

    Attributes:
        candidate: The (provider, model) pair called
        attempt: 1-based attempt index within the candidate's budget
        success: Whether an image came back
        failure: Classification when the attempt failed
        status_code: Raw provider status, when known
        latency_ms: Call duration
        detail: Diagnostic message (logs only)
    """

    candidate: Candidate
    attempt: int
    success: bool
    failure: FailureKind | None = None
    status_code: int | None = None
    latency_ms: int = 0
    detail: str | None = None


@dataclass
class GenerationRequest:
    """A single user try-on request, owned by the orchestrator while it runs.

    ``subject`` and ``garment`` accept raw bytes, base64, or data URLs.
    ``candidates`` overrides the orchestrator's default order when set.
    """

    store_id: str
    subject: bytes | str | None
    garment: bytes | str | None
    idempotency_key: str = field(default_factory=lambda: str(uuid.uuid4()))
    candidates: list[Candidate] | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def last_failure(self) -> FailureKind | None:
        for record in reversed(self.attempts):
            if record.failure is not None:
                return record.failure
        return None


@dataclass
class GenerationOutcome:
    """Successful result of a generation request.

    ``consumed`` is False when the credit could not be charged; the image
    is still delivered and the gap is left for reconciliation.
    """

    image: ImagePayload
    description: str
    candidate: Candidate
    idempotency_key: str
    attempts: list[AttemptRecord]
    consumed: bool
    credits_remaining: int | None = None
    note: str | None = None


@dataclass
class AttemptBudget:
    """Attempt counter for one candidate.

    Tracks how many attempts were used and the delay owed before the next.
    """

    candidate: Candidate
    max_attempts: int
    backoff_base: float
    used: int = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.max_attempts

    def next_attempt(self) -> tuple[int, float]:
        """Claim the next attempt.

        Returns:
            (attempt index, seconds to wait before making it)
        """
        self.used += 1
        return self.used, self.backoff_base * (self.used - 1)


def _drain(task: asyncio.Future) -> None:
    # Retrieve results of calls whose caller went away
    if not task.cancelled():
        task.exception()


class GenerationOrchestrator:
    """Runs try-on requests against providers and charges credits on success.

    Attributes:
        providers: Configured provider adapters by type
        ledger: Credit ledger used for eligibility and consumption
        candidates: Default priority-ranked candidates
    """

    def __init__(
        self,
        providers: dict[ProviderType, TryOnProvider],
        ledger: LedgerStore,
        candidates: list[Candidate],
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        caption_model: str = "gemini-2.5-flash",
        locale: Locale = Locale.PT_BR,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.ledger = ledger
        self.candidates = list(candidates)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.caption_model = caption_model
        self.locale = locale
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        ledger: LedgerStore,
        settings: Settings | None = None,
        providers: dict[ProviderType, TryOnProvider] | None = None,
    ) -> "GenerationOrchestrator":
        """Build an orchestrator from application settings."""
        settings = settings or get_settings()
        return cls(
            providers=providers if providers is not None else build_providers(settings),
            ledger=ledger,
            candidates=settings.get_candidates(),
            max_attempts=settings.MAX_ATTEMPTS_PER_CANDIDATE,
            backoff_base=settings.BACKOFF_BASE_SECONDS,
            caption_model=settings.CAPTION_MODEL,
            locale=settings.LOCALE,
        )

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        """Run a request to a terminal outcome.

        Args:
            request: The try-on request.

        Returns:
            GenerationOutcome on success.

        Raises:
            InvalidInput: Missing or undecodable images.
            Blocked: Store is not eligible (trial expired, no credits, unknown).
            LedgerUnavailable: Eligibility could not be determined.
            RateLimited: A provider rate-limited the request.
            QuotaExhausted: A provider reported billing/capacity exhaustion.
            ExhaustedAllProviders: Every candidate failed.
        """
        subject = decode_image(request.subject, "client image")
        garment = decode_image(request.garment, "garment image")

        # Re-check right before spending provider calls; consume is still the real gate
        eligibility = await self.ledger.check_eligibility(request.store_id)
        if not eligibility.allowed:
            if eligibility.reason == BlockReason.ERROR:
                raise LedgerUnavailable(f"Eligibility unknown for store {request.store_id}")
            reason = eligibility.reason or BlockReason.NO_CREDITS
            logger.info(f"Store {request.store_id} blocked: {reason.value}")
            raise Blocked(reason.value)

        candidates = request.candidates or self.candidates
        logger.info(
            f"Try-on request {request.idempotency_key} for store {request.store_id}: "
            f"{len(candidates)} candidate(s)"
        )

        for candidate in candidates:
            provider = self.providers.get(candidate.provider)
            if provider is None:
                logger.warning(f"Skipping {candidate}: provider not configured")
                continue

            image = await self._run_candidate(request, provider, candidate, subject, garment)
            if image is not None:
                return await self._complete(request, provider, candidate, image, garment)

        last_reason = request.last_failure
        logger.error(
            f"Try-on request {request.idempotency_key} exhausted all candidates "
            f"(last: {last_reason.value if last_reason else None}, "
            f"attempts: {len(request.attempts)})"
        )
        raise ExhaustedAllProviders(last_reason.value if last_reason else None)

    async def _run_candidate(
        self,
        request: GenerationRequest,
        provider: TryOnProvider,
        candidate: Candidate,
        subject: ImagePayload,
        garment: ImagePayload,
    ) -> ProviderImage | None:
        """Spend one candidate's attempt budget.

        Returns:
            The image, or None when the budget ran out.

        Raises:
            RateLimited, QuotaExhausted: On aborting classifications.
        """
        budget = AttemptBudget(candidate, self.max_attempts, self.backoff_base)

        while not budget.exhausted:
            attempt, delay = budget.next_attempt()
            if delay > 0:
                logger.info(f"Waiting {delay:.1f}s before attempt {attempt}/{self.max_attempts} on {candidate}")
                await self._sleep(delay)

            start_time = time.perf_counter()
            # Once sent, a call runs to completion even if the caller goes away
            call = asyncio.ensure_future(
                provider.generate_tryon(subject, garment, candidate.model)
            )
            call.add_done_callback(_drain)
            try:
                image = await asyncio.shield(call)
            except ProviderFailure as failure:
                latency_ms = int((time.perf_counter() - start_time) * 1000)
                request.attempts.append(
                    AttemptRecord(
                        candidate=candidate,
                        attempt=attempt,
                        success=False,
                        failure=failure.kind,
                        status_code=failure.status_code,
                        latency_ms=latency_ms,
                        detail=str(failure),
                    )
                )
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} on {candidate} failed "
                    f"({failure.kind.value}, status={failure.status_code}): {failure}"
                )

                if failure.kind.aborts_request:
                    if failure.kind == FailureKind.RATE_LIMITED:
                        raise RateLimited(str(failure)) from failure
                    raise QuotaExhausted(str(failure)) from failure
                continue

            latency_ms = int((time.perf_counter() - start_time) * 1000)
            request.attempts.append(
                AttemptRecord(
                    candidate=candidate,
                    attempt=attempt,
                    success=True,
                    latency_ms=latency_ms,
                )
            )
            logger.info(f"Attempt {attempt} on {candidate} succeeded in {latency_ms}ms")
            return image

        logger.warning(f"Candidate {candidate} exhausted after {budget.used} attempts")
        return None

    async def _complete(
        self,
        request: GenerationRequest,
        provider: TryOnProvider,
        candidate: Candidate,
        image: ProviderImage,
        garment: ImagePayload,
    ) -> GenerationOutcome:
        """Caption the result and charge the credit."""
        description = await self._describe(provider, garment)

        consumed = False
        credits_remaining: int | None = None
        try:
            result = await asyncio.shield(
                self.ledger.consume(request.store_id, request.idempotency_key)
            )
        except Exception as e:
            # Delivery wins; reconciliation picks up the missed deduction
            logger.error(
                f"Credit not consumed for store {request.store_id} "
                f"(key={request.idempotency_key}), needs reconciliation: {e}"
            )
        else:
            if result.success:
                consumed = True
                credits_remaining = result.credits_remaining
            else:
                logger.error(
                    f"Consume refused for store {request.store_id} "
                    f"(key={request.idempotency_key}, error={result.error}) after "
                    "image was generated, needs reconciliation"
                )

        return GenerationOutcome(
            image=ImagePayload(data=image.data, mime_type=image.mime_type),
            description=description,
            candidate=candidate,
            idempotency_key=request.idempotency_key,
            attempts=request.attempts,
            consumed=consumed,
            credits_remaining=credits_remaining,
            note=image.note,
        )

    async def _describe(self, provider: TryOnProvider, garment: ImagePayload) -> str:
        """Best-effort caption; never fails the request."""
        default = DEFAULT_CAPTIONS[self.locale]
        if not provider.supports_description:
            return default

        try:
            text = await provider.describe_garment(garment, self.caption_model)
        except Exception as e:
            logger.warning(f"Caption generation failed, using default: {e}")
            return default

        text = (text or "").strip().strip('"')
        if len(text) > MIN_CAPTION_LENGTH:
            return text
        return default
