"""
Pytest configuration and fixtures for the try-on service tests.

Every test gets its own file-backed SQLite database (WAL mode, like
production SQLite) so concurrent ledger writes are exercised for real.
Providers are replaced by scripted fakes; no network access is needed.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from dotenv import load_dotenv

# Settings are read at import time by tryon.main; configure before importing
load_dotenv(".env.test")
os.environ.setdefault("GOOGLE_API_KEY", "test-google-key")
os.environ.setdefault("OPENROUTER_API_KEY", "test-openrouter-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from httpx import ASGITransport, AsyncClient

from tryon.api.deps import get_feed, get_ledger, get_orchestrator
from tryon.config import Candidate, Plan, ProviderType, Settings
from tryon.core.orchestrator import GenerationOrchestrator
from tryon.core.providers import (
    FailureKind,
    ProviderFailure,
    ProviderImage,
    TryOnProvider,
)
from tryon.credits import ChangeFeed, LedgerStore
from tryon.database import create_engine_for, create_session_factory, init_db
from tryon.images import ImagePayload
from tryon.main import app

logger = logging.getLogger(__name__)

# Minimal byte strings that pass signature sniffing
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
RESULT_BYTES = b"\x89PNG\r\n\x1a\n" + b"result" * 8

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(TryOnProvider):
    """Provider that plays back a script of results.

    Each script entry is a ``FailureKind`` (raised as a ProviderFailure) or
    a ``ProviderImage`` (returned). The last entry repeats once the script
    runs out. Every call is appended to ``journal`` so tests can check the
    order of provider calls against ledger calls.
    """

    def __init__(
        self,
        provider_type: ProviderType,
        script: list,
        journal: list | None = None,
        caption: str | Exception | None = None,
    ) -> None:
        super().__init__(api_key="fake")
        self.provider_type = provider_type
        self.script = list(script)
        self.journal = journal if journal is not None else []
        self.caption = caption
        self.calls: list[str] = []
        self.closed = False

    @property
    def supports_description(self) -> bool:
        return self.caption is not None

    async def generate_tryon(self, subject: ImagePayload, garment: ImagePayload, model: str) -> ProviderImage:
        self.calls.append(model)
        self.journal.append(("generate", self.provider_type.value, model))
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, FailureKind):
            raise ProviderFailure(
                kind=step,
                message=f"scripted {step.value}",
                provider=self.provider_type,
                model=model,
                status_code=429 if step == FailureKind.RATE_LIMITED else 500,
            )
        return step

    async def describe_garment(self, garment: ImagePayload, model: str) -> str:
        self.journal.append(("describe", self.provider_type.value, model))
        if isinstance(self.caption, Exception):
            raise self.caption
        return self.caption

    async def close(self) -> None:
        self.closed = True


class RecordingLedger:
    """Wraps a LedgerStore and journals consume calls."""

    def __init__(self, ledger: LedgerStore, journal: list) -> None:
        self._ledger = ledger
        self.journal = journal

    async def check_eligibility(self, store_id):
        return await self._ledger.check_eligibility(store_id)

    async def consume(self, store_id, idempotency_key):
        self.journal.append(("consume", store_id, idempotency_key))
        return await self._ledger.consume(store_id, idempotency_key)


# ============================================
# Core fixtures
# ============================================

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'tryon-test.db'}",
        GOOGLE_API_KEY="test-google-key",
        OPENROUTER_API_KEY="test-openrouter-key",
        TRIAL_DAYS=7,
        TRIAL_CREDITS=10,
        LOW_CREDITS_THRESHOLD=20,
    )


@pytest.fixture
async def db_engine(test_settings: Settings):
    """Create a file-backed SQLite engine with all tables."""
    engine = create_engine_for(test_settings.DATABASE_URL)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def feed() -> ChangeFeed:
    feed = ChangeFeed()
    yield feed
    feed.close()


@pytest.fixture
def ledger(session_factory, feed, test_settings, clock) -> LedgerStore:
    return LedgerStore(session_factory, feed=feed, settings=test_settings, clock=clock)


@pytest.fixture
async def store(ledger):
    """A starter store with 100 plan credits."""
    return await ledger.create_store(name="Loja Teste", store_id="store-1", plan=Plan.STARTER)


# ============================================
# Provider and orchestrator fixtures
# ============================================

@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def jpeg_bytes() -> bytes:
    return JPEG_BYTES


@pytest.fixture
def result_image() -> ProviderImage:
    return ProviderImage(data=RESULT_BYTES, mime_type="image/png")


@pytest.fixture
def journal() -> list:
    return []


@pytest.fixture
def make_provider(journal):
    """Factory for scripted providers sharing the test journal."""

    def factory(provider_type: ProviderType, script: list, caption=None) -> FakeProvider:
        return FakeProvider(provider_type, script, journal=journal, caption=caption)

    return factory


@pytest.fixture
def candidates() -> list[Candidate]:
    return [
        Candidate(provider=ProviderType.GOOGLE, model="model-a"),
        Candidate(provider=ProviderType.OPENROUTER, model="model-b"),
    ]


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep


@pytest.fixture
def make_orchestrator(ledger, journal, candidates, fake_sleep):
    """Build an orchestrator over fake providers and a journaling ledger."""

    def factory(providers: dict, ledger_override=None, **kwargs) -> GenerationOrchestrator:
        return GenerationOrchestrator(
            providers=providers,
            ledger=ledger_override or RecordingLedger(ledger, journal),
            candidates=kwargs.pop("candidates", candidates),
            sleep=fake_sleep,
            **kwargs,
        )

    return factory


# ============================================
# API fixtures
# ============================================

@pytest.fixture
async def api_client(ledger, feed, make_provider, make_orchestrator, result_image) -> AsyncGenerator[AsyncClient, None]:
    """Async client with the app's services replaced by test instances.

    The default orchestrator succeeds on the first candidate with a caption.
    Tests may replace ``app.state``-style services by overriding
    ``get_orchestrator`` again.
    """
    orchestrator = make_orchestrator(
        {
            ProviderType.GOOGLE: make_provider(
                ProviderType.GOOGLE,
                [result_image],
                caption="Top azul royal transferido com precisão e bom caimento.",
            ),
        }
    )

    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_feed] = lambda: feed
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Plain async client against the application, no overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
