import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from invoice_intake.api.v1.schemas import ExtractedInvoice, InvoiceData, LineItem, Vendor
from invoice_intake.services.llm_extractor import LLMExtractor
from invoice_intake.services.validator import is_valid_candidate

logger = logging.getLogger(__name__)

MOCK_MODEL = "mock"
MOCK_VENDOR_NAME = "AI Extraction Failed - Mock Vendor"
MOCK_WARNING = "AI extraction failed, mock data used"
_MOCK_MARKERS = ("Mock", "AI Extraction Failed")


def _today() -> date:
    return date.today()


def mock_invoice() -> ExtractedInvoice:
    today = _today()
    return ExtractedInvoice(
        vendor=Vendor(name=MOCK_VENDOR_NAME, address="Extraction unavailable"),
        invoice=InvoiceData(
            number=f"MOCK-{today:%Y%m%d}",
            date=today.isoformat(),
            currency="USD",
            subtotal=100.0,
            taxPercent=10.0,
            total=110.0,
            lineItems=[
                LineItem(
                    description="Mock item - please edit manually",
                    unitPrice=100.0,
                    quantity=1,
                    total=100.0,
                )
            ],
        ),
    )


def is_mock(vendor_name: str | None) -> bool:
    return any(marker in (vendor_name or "") for marker in _MOCK_MARKERS)


@dataclass
class ExtractionOutcome:
    invoice: ExtractedInvoice
    model: str
    warning: str | None = None


class ExtractionOrchestrator:
    """Runs the preferred provider, then the others, then falls back to mock data."""

    def __init__(
        self,
        extractor: LLMExtractor,
        providers: Sequence[str] = ("gemini", "groq"),
    ) -> None:
        self._extractor = extractor
        self._providers = list(providers)

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    def _attempt_order(self, preferred: str) -> list[str]:
        others = [name for name in self._providers if name != preferred]
        return [preferred, *others] if preferred in self._providers else others

    async def run(self, text: str, preferred: str) -> ExtractionOutcome:
        for provider in self._attempt_order(preferred):
            try:
                candidate = await self._extractor.extract(text, provider)
            except Exception as exc:
                logger.warning(
                    "Provider extraction failed",
                    extra={
                        "provider": provider,
                        "error_kind": getattr(exc, "kind", type(exc).__name__),
                        "error": str(exc),
                    },
                )
                continue
            if not is_valid_candidate(candidate):
                logger.warning(
                    "Provider candidate rejected by validation",
                    extra={"provider": provider},
                )
                continue
            if provider != preferred:
                logger.info(
                    "Fallback provider succeeded",
                    extra={"provider": provider, "preferred": preferred},
                )
            return ExtractionOutcome(invoice=candidate, model=provider)

        logger.error(
            "All providers failed, using mock data",
            extra={"preferred": preferred, "providers": self._providers},
        )
        return ExtractionOutcome(invoice=mock_invoice(), model=MOCK_MODEL, warning=MOCK_WARNING)
