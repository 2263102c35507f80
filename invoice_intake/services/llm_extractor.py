import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from invoice_intake.api.v1.schemas import ExtractedInvoice
from invoice_intake.services.providers import CompletionProvider, ProviderError
from invoice_intake.services.validator import InvoiceSanitizer

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """\
You are an expert at extracting structured data from invoice text.
Extract the following information from the invoice text and return it as a JSON object.

Required fields:
- vendor.name (string, required)
- vendor.address (string, optional)
- vendor.taxId (string, optional)
- invoice.number (string, required)
- invoice.date (string, required, format: YYYY-MM-DD)
- invoice.currency (string, default: "USD")
- invoice.subtotal (number, optional)
- invoice.taxPercent (number, optional)
- invoice.total (number, optional)
- invoice.poNumber (string, optional)
- invoice.poDate (string, optional, format: YYYY-MM-DD)
- invoice.lineItems (array of objects with description, unitPrice, quantity, total)

IMPORTANT RULES:
1. Always provide valid values for required fields (vendor.name, invoice.number, invoice.date)
2. If a required field cannot be found, use a reasonable placeholder like "Unknown Vendor" or "INV-UNKNOWN"
3. For dates, always use YYYY-MM-DD format
4. Return ONLY valid JSON, no markdown formatting or extra text
5. Ensure all numbers are valid (not NaN or null)

Invoice text to extract from:
"""

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


def build_prompt(text: str, max_chars: int) -> str:
    if len(text) > max_chars:
        text = text[:max_chars] + "..."
    return PROMPT_TEMPLATE + text


def strip_code_fences(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", cleaned, count=1))
    return cleaned.strip()


def _extract_json_object(raw: str) -> str | None:
    """Return the first balanced {...} substring in raw, handling nested objects."""
    start = raw.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(raw)):
        ch = raw[i]
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return raw[start : i + 1]
    return None


def parse_response(raw: str, provider: str = "") -> dict[str, Any]:
    cleaned = strip_code_fences(raw)
    data: Any
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        # Models sometimes wrap the object in prose despite the instructions.
        extracted = _extract_json_object(cleaned)
        if extracted is None:
            raise ProviderError(
                "InvalidJSON", f"Response is not valid JSON: {exc}", provider
            ) from exc
        try:
            data = json.loads(extracted)
        except json.JSONDecodeError as inner:
            raise ProviderError(
                "InvalidJSON", f"Response is not valid JSON: {inner}", provider
            ) from inner
    if not isinstance(data, dict):
        raise ProviderError(
            "InvalidShape", f"Expected a JSON object, got {type(data).__name__}", provider
        )
    return data


class LLMExtractor:
    def __init__(
        self,
        providers: Mapping[str, CompletionProvider],
        sanitizer: InvoiceSanitizer | None = None,
    ) -> None:
        self._providers = dict(providers)
        self._sanitizer = sanitizer or InvoiceSanitizer()

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    async def extract(self, text: str, provider: str) -> ExtractedInvoice:
        client = self._providers.get(provider)
        if client is None:
            raise ProviderError("NotConfigured", f"Unknown provider {provider!r}", provider)
        prompt = build_prompt(text, client.max_input_chars)
        logger.info(
            "Requesting extraction",
            extra={"provider": provider, "model": client.model, "chars": len(text)},
        )
        raw = await client.complete(prompt)
        return self._sanitizer.sanitize(parse_response(raw, provider))

    async def aclose(self) -> None:
        for client in self._providers.values():
            await client.aclose()
