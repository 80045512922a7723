"""Unit tests for terminal errors and localized messages.

Run with:
    pytest tests/unit/test_errors.py -v
"""

import pytest

from tryon.config import Locale
from tryon.errors import (
    DEFAULT_CAPTIONS,
    Blocked,
    ExhaustedAllProviders,
    InvalidInput,
    LedgerUnavailable,
    QuotaExhausted,
    RateLimited,
    TryOnError,
    localized_message,
)


@pytest.mark.fast
class TestErrorMapping:
    """Each terminal error carries its status and code."""

    @pytest.mark.parametrize(
        "error, status, code",
        [
            (InvalidInput("missing"), 400, "INVALID_INPUT"),
            (Blocked("NO_CREDITS"), 403, "NO_CREDITS"),
            (Blocked("TRIAL_EXPIRED"), 403, "TRIAL_EXPIRED"),
            (RateLimited(), 429, "RATE_LIMITED"),
            (QuotaExhausted(), 402, "QUOTA_EXHAUSTED"),
            (ExhaustedAllProviders("TRANSIENT"), 500, "EXHAUSTED_ALL_PROVIDERS"),
            (LedgerUnavailable(), 503, "LEDGER_UNAVAILABLE"),
        ],
    )
    def test_status_and_code(self, error: TryOnError, status: int, code: str):
        assert error.http_status == status
        assert error.code == code

    def test_exhausted_keeps_last_reason(self):
        error = ExhaustedAllProviders("SAFETY_BLOCKED")
        assert error.last_reason == "SAFETY_BLOCKED"
        assert "SAFETY_BLOCKED" in str(error)

    def test_detail_defaults_to_code(self):
        assert str(RateLimited()) == "RATE_LIMITED"
        assert RateLimited().detail is None


@pytest.mark.fast
class TestLocalizedMessages:
    """Tests for user-facing messages."""

    def test_portuguese_default(self):
        assert RateLimited().message() == (
            "Limite de requisições excedido. Tente novamente em alguns segundos."
        )

    def test_english(self):
        assert Blocked("NO_CREDITS").message(Locale.EN).startswith("You have no credits")

    def test_unknown_code_falls_back(self):
        assert localized_message("SOMETHING_NEW", Locale.EN) == "Unexpected error"

    def test_default_captions_cover_locales(self):
        assert set(DEFAULT_CAPTIONS) == set(Locale)
        assert all(len(caption) > 10 for caption in DEFAULT_CAPTIONS.values())
