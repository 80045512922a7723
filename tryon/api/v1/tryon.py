"""Try-on generation endpoint.

Endpoints:
    POST /api/v1/tryon - Generate a try-on image and charge one credit

Examples:
    >>> POST /api/v1/tryon
    >>> Idempotency-Key: 5f0c...
    >>> {"store_id": "s1", "client_image": "data:image/jpeg;base64,...",
    ...  "clothing_image": "data:image/png;base64,..."}
    >>> # -> {"result_image": "data:image/png;base64,...", "description": "...",
    >>> #     "credits_remaining": 41, "consumed": true, ...}

Tests:
    - tests/integration/test_api.py::TestTryOnEndpoint
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from tryon.api.deps import get_orchestrator
from tryon.core.orchestrator import GenerationOrchestrator, GenerationRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tryon"])


class TryOnRequest(BaseModel):
    """Request model for try-on generation.

    Images may be base64 strings or data URLs. Missing images are reported
    as INVALID_INPUT rather than a validation error.
    """

    store_id: str = Field(..., min_length=1, description="Store being charged")
    client_image: str | None = Field(default=None, description="Photo of the person")
    clothing_image: str | None = Field(default=None, description="Photo of the garment")


class AttemptResponse(BaseModel):
    """One provider attempt, for client diagnostics."""

    candidate: str
    attempt: int
    success: bool
    failure: str | None = None
    latency_ms: int


class TryOnResponse(BaseModel):
    """Response model for a successful try-on."""

    result_image: str
    description: str
    credits_remaining: int | None = None
    consumed: bool
    idempotency_key: str
    provider: str
    model: str
    attempts: list[AttemptResponse] = Field(default_factory=list)


@router.post("/tryon", response_model=TryOnResponse)
async def create_tryon(
    request: TryOnRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> TryOnResponse:
    """Generate the client wearing the garment.

    Terminal errors (blocked store, rate limit, provider quota, all
    candidates failed) are mapped to HTTP responses by the application's
    exception handler.
    """
    key = idempotency_key or str(uuid.uuid4())
    logger.info(f"Try-on request for store {request.store_id} (key={key})")

    outcome = await orchestrator.generate(
        GenerationRequest(
            store_id=request.store_id,
            subject=request.client_image,
            garment=request.clothing_image,
            idempotency_key=key,
        )
    )

    return TryOnResponse(
        result_image=outcome.image.to_data_url(),
        description=outcome.description,
        credits_remaining=outcome.credits_remaining,
        consumed=outcome.consumed,
        idempotency_key=outcome.idempotency_key,
        provider=outcome.candidate.provider.value,
        model=outcome.candidate.model,
        attempts=[
            AttemptResponse(
                candidate=str(record.candidate),
                attempt=record.attempt,
                success=record.success,
                failure=record.failure.value if record.failure else None,
                latency_ms=record.latency_ms,
            )
            for record in outcome.attempts
        ],
    )
