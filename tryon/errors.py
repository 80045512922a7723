"""Terminal errors surfaced to callers of the try-on service.

Only these escape the orchestrator. Each carries an HTTP status, a stable
machine-readable code, and a short localized message. Diagnostic detail
(provider, model, raw status) is kept on the exception for logging and
never needed by the caller.

Tests:
    - tests/unit/test_errors.py
"""

from __future__ import annotations

from tryon.config import Locale

# code -> locale -> message
MESSAGES: dict[str, dict[Locale, str]] = {
    "INVALID_INPUT": {
        Locale.PT_BR: "Imagens do cliente e da roupa são obrigatórias",
        Locale.EN: "Client and garment images are required",
    },
    "TRIAL_EXPIRED": {
        Locale.PT_BR: "Seu período de teste terminou. Escolha um plano para continuar.",
        Locale.EN: "Your trial has ended. Choose a plan to continue.",
    },
    "NO_CREDITS": {
        Locale.PT_BR: "Você não tem créditos disponíveis. Compre créditos para continuar.",
        Locale.EN: "You have no credits left. Buy credits to continue.",
    },
    "STORE_NOT_FOUND": {
        Locale.PT_BR: "Loja não encontrada",
        Locale.EN: "Store not found",
    },
    "RATE_LIMITED": {
        Locale.PT_BR: "Limite de requisições excedido. Tente novamente em alguns segundos.",
        Locale.EN: "Too many requests. Try again in a few seconds.",
    },
    "QUOTA_EXHAUSTED": {
        Locale.PT_BR: "Quota da API excedida. Verifique a conta do provedor de IA.",
        Locale.EN: "Provider quota exceeded. Check the AI provider account.",
    },
    "EXHAUSTED_ALL_PROVIDERS": {
        Locale.PT_BR: "As imagens não puderam ser processadas. Tente com imagens diferentes.",
        Locale.EN: "The images could not be processed. Try different images.",
    },
    "LEDGER_UNAVAILABLE": {
        Locale.PT_BR: "Erro ao registrar consumo de crédito",
        Locale.EN: "Could not record credit consumption",
    },
    "ERROR": {
        Locale.PT_BR: "Erro inesperado",
        Locale.EN: "Unexpected error",
    },
}

DEFAULT_CAPTIONS: dict[Locale, str] = {
    Locale.PT_BR: (
        "As estampas e cores foram transferidas com precisão cromática, "
        "adaptando-se às dobras e luz do corpo."
    ),
    Locale.EN: (
        "Prints and colors were transferred with color accuracy, "
        "following the folds and lighting of the body."
    ),
}


def localized_message(code: str, locale: Locale = Locale.PT_BR) -> str:
    """Look up the user-facing message for an error code.

    Falls back to the generic message for unknown codes.
    """
    messages = MESSAGES.get(code, MESSAGES["ERROR"])
    return messages.get(locale) or messages[Locale.PT_BR]


class TryOnError(Exception):
    """Base class for terminal try-on errors.

    Attributes:
        code: Stable machine-readable code
        http_status: Status code the API responds with
        detail: Diagnostic text for logs only
    """

    code: str = "ERROR"
    http_status: int = 500

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail

    def message(self, locale: Locale = Locale.PT_BR) -> str:
        """Short localized message for the end user."""
        return localized_message(self.code, locale)


class InvalidInput(TryOnError):
    """Missing or undecodable input images."""

    code = "INVALID_INPUT"
    http_status = 400


class Blocked(TryOnError):
    """Store may not generate: trial expired or no credits. No retry."""

    http_status = 403

    def __init__(self, reason: str, detail: str | None = None) -> None:
        super().__init__(detail or f"Store blocked: {reason}")
        self.reason = reason

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.reason


class RateLimited(TryOnError):
    """A provider rate-limited the request. The user should retry later."""

    code = "RATE_LIMITED"
    http_status = 429


class QuotaExhausted(TryOnError):
    """Provider-side billing or capacity failure. Operator-actionable."""

    code = "QUOTA_EXHAUSTED"
    http_status = 402


class ExhaustedAllProviders(TryOnError):
    """Every candidate failed; ``last_reason`` keeps the final classification."""

    code = "EXHAUSTED_ALL_PROVIDERS"
    http_status = 500

    def __init__(self, last_reason: str | None, detail: str | None = None) -> None:
        super().__init__(detail or f"All candidates exhausted (last: {last_reason})")
        self.last_reason = last_reason


class LedgerUnavailable(TryOnError):
    """The ledger could not be reached or failed mid-operation."""

    code = "LEDGER_UNAVAILABLE"
    http_status = 503
