"""Tests for pipeline/selfheal.py -- error classification and fallback chains."""

import pytest

from catalog.models import ModelCatalog
from models.schemas import ErrorCategory
from pipeline.selfheal import FALLBACK_PRIORITY, classify_error, fallback_chain

CATALOG = ModelCatalog()
ALL_MODELS = [option.id for option in CATALOG]


class TestClassifyError:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Groq API 401: invalid api key", ErrorCategory.AUTH),
            ("403 Forbidden", ErrorCategory.AUTH),
            ("Blocked by CORS policy", ErrorCategory.AUTH),
            ("OpenAI API 429: Rate limit reached", ErrorCategory.RATE_LIMIT),
            ("Too Many Requests", ErrorCategory.RATE_LIMIT),
            ("Anthropic API 503: overloaded", ErrorCategory.SERVER_ERROR),
            ("Internal Server Error", ErrorCategory.SERVER_ERROR),
            ("Gemini API timeout after 120s", ErrorCategory.TIMEOUT),
            ("request timed out", ErrorCategory.TIMEOUT),
            ("connect ECONNREFUSED 127.0.0.1:11434", ErrorCategory.UNAVAILABLE),
            ("Failed to fetch", ErrorCategory.UNAVAILABLE),
            ("something odd happened", ErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(self, message: str, expected: ErrorCategory) -> None:
        assert classify_error(message) == expected

    def test_case_insensitive(self) -> None:
        assert classify_error("UNAUTHORIZED") == ErrorCategory.AUTH

    def test_first_category_wins(self) -> None:
        # Mentions both an auth code and a timeout
        assert classify_error("401 after timeout") == ErrorCategory.AUTH

    def test_empty_and_none(self) -> None:
        assert classify_error("") == ErrorCategory.UNKNOWN
        assert classify_error(None) == ErrorCategory.UNKNOWN


class TestFallbackChain:
    def test_never_contains_failed_model(self) -> None:
        chain = fallback_chain("llama-70b", ErrorCategory.TIMEOUT, ALL_MODELS, catalog=CATALOG)
        assert "llama-70b" not in chain

    def test_priority_order_first(self) -> None:
        chain = fallback_chain("claude-opus", ErrorCategory.UNKNOWN, ALL_MODELS, catalog=CATALOG)
        expected_head = [m for m in FALLBACK_PRIORITY if m != "claude-opus"]
        assert chain[: len(expected_head)] == expected_head

    def test_models_missing_from_priority_appended(self) -> None:
        chain = fallback_chain("claude-opus", ErrorCategory.UNKNOWN, ALL_MODELS, catalog=CATALOG)
        assert chain[-1] == "llama-8b"

    def test_only_available_models(self) -> None:
        available = ["llama-70b", "llama-8b", "ollama-llama"]
        chain = fallback_chain("claude-sonnet", ErrorCategory.TIMEOUT, available, catalog=CATALOG)
        assert chain == ["llama-70b", "ollama-llama", "llama-8b"]

    @pytest.mark.parametrize("category", [ErrorCategory.AUTH, ErrorCategory.RATE_LIMIT])
    def test_provider_wide_failures_drop_provider(self, category: ErrorCategory) -> None:
        chain = fallback_chain("llama-70b", category, ALL_MODELS, catalog=CATALOG)
        assert "llama-8b" not in chain
        assert all(CATALOG.provider_of(m) != "groq" for m in chain)

    def test_other_failures_keep_same_provider(self) -> None:
        chain = fallback_chain("llama-70b", ErrorCategory.SERVER_ERROR, ALL_MODELS, catalog=CATALOG)
        assert "llama-8b" in chain

    def test_may_be_empty(self) -> None:
        assert fallback_chain("llama-70b", ErrorCategory.AUTH, ["llama-70b", "llama-8b"], catalog=CATALOG) == []

    def test_unknown_failed_id_keeps_everything(self) -> None:
        chain = fallback_chain("my-agent", ErrorCategory.AUTH, ALL_MODELS, catalog=CATALOG)
        assert len(chain) == len(ALL_MODELS)
