from datetime import date
from unittest.mock import patch

import pytest

from invoice_intake.services.llm_extractor import LLMExtractor
from invoice_intake.services.orchestrator import (
    MOCK_MODEL,
    MOCK_WARNING,
    ExtractionOrchestrator,
    is_mock,
    mock_invoice,
)
from invoice_intake.services.providers import ProviderError, RateLimitedError
from invoice_intake.services.validator import InvoiceSanitizer, is_valid_candidate
from tests.utils import StubProvider, sample_json


def _orchestrator(
    gemini: StubProvider, groq: StubProvider, sanitizer: InvoiceSanitizer | None = None
) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(LLMExtractor({"gemini": gemini, "groq": groq}, sanitizer))


async def test_preferred_provider_result_is_used() -> None:
    gemini = StubProvider("gemini", [sample_json()])
    groq = StubProvider("groq", [sample_json()])

    outcome = await _orchestrator(gemini, groq).run("invoice text", "gemini")

    assert outcome.model == "gemini"
    assert outcome.warning is None
    assert outcome.invoice.invoice.number == "INV-1001"
    assert groq.calls == []


async def test_malformed_json_from_primary_falls_back_to_secondary() -> None:
    gemini = StubProvider("gemini", ["this is not json"])
    groq = StubProvider("groq", [sample_json()])

    outcome = await _orchestrator(gemini, groq).run("invoice text", "gemini")

    assert outcome.model == "groq"
    assert outcome.warning is None
    assert len(gemini.calls) == 1


async def test_preferred_groq_falls_back_to_gemini() -> None:
    gemini = StubProvider("gemini", [sample_json()])
    groq = StubProvider("groq", [ProviderError("Auth", "bad key", "groq")])

    outcome = await _orchestrator(gemini, groq).run("invoice text", "groq")

    assert outcome.model == "gemini"


async def test_candidate_failing_validation_triggers_fallback() -> None:
    class BlankVendorSanitizer(InvoiceSanitizer):
        def sanitize(self, raw):  # type: ignore[no-untyped-def]
            candidate = super().sanitize(raw)
            if raw.get("vendor", {}).get("name") == "blank":
                candidate.vendor.name = ""
            return candidate

    gemini = StubProvider("gemini", ['{"vendor": {"name": "blank"}}'])
    groq = StubProvider("groq", [sample_json()])

    outcome = await _orchestrator(gemini, groq, BlankVendorSanitizer()).run("text", "gemini")

    assert outcome.model == "groq"


async def test_both_providers_failing_returns_mock_candidate() -> None:
    gemini = StubProvider("gemini", [RateLimitedError("quota")] * 3)
    groq = StubProvider("groq", ["[]"])

    outcome = await _orchestrator(gemini, groq).run("invoice text", "gemini")

    assert outcome.model == MOCK_MODEL
    assert outcome.warning == MOCK_WARNING
    assert is_mock(outcome.invoice.vendor.name)
    assert is_valid_candidate(outcome.invoice)
    assert len(gemini.calls) == 3


async def test_unexpected_exception_does_not_escape() -> None:
    gemini = StubProvider("gemini", [RuntimeError("sdk blew up")])
    groq = StubProvider("groq", [KeyError("choices")])

    outcome = await _orchestrator(gemini, groq).run("", "gemini")

    assert outcome.model == MOCK_MODEL


@pytest.mark.parametrize("text", ["", " ", "\x00\x01", "x" * 50000, "{not json}"])
@pytest.mark.parametrize("preferred", ["gemini", "groq", "unknown"])
async def test_run_never_raises_when_all_providers_fail(text: str, preferred: str) -> None:
    gemini = StubProvider("gemini", api_key="")
    groq = StubProvider("groq")

    outcome = await _orchestrator(gemini, groq).run(text, preferred)

    assert outcome.model == MOCK_MODEL
    assert outcome.warning is not None
    assert is_valid_candidate(outcome.invoice)


async def test_unknown_preferred_provider_still_tries_configured_ones() -> None:
    gemini = StubProvider("gemini", [sample_json()])
    groq = StubProvider("groq", [sample_json()])

    outcome = await _orchestrator(gemini, groq).run("text", "openai")

    assert outcome.model == "gemini"


def test_mock_invoice_is_deterministic() -> None:
    with patch("invoice_intake.services.orchestrator._today", return_value=date(2024, 2, 29)):
        first = mock_invoice()
        second = mock_invoice()

    assert first == second
    assert first.invoice.number == "MOCK-20240229"
    assert first.invoice.date == "2024-02-29"
    assert "AI Extraction Failed" in first.vendor.name
    assert first.invoice.total == 110.0
    assert len(first.invoice.lineItems) == 1
