"""FastAPI dependencies for the shared service objects.

The ledger, change feed and orchestrator are created once in the
application lifespan and kept on ``app.state``. Tests replace them through
``app.dependency_overrides``.
"""

from fastapi import Request

from tryon.core.orchestrator import GenerationOrchestrator
from tryon.credits import ChangeFeed, LedgerStore


def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator
