import json
from typing import Any

from invoice_intake.services.providers import CompletionProvider, ProviderError


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_pdf_bytes(*pages: str) -> bytes:
    """Create a minimal valid PDF with one page per argument.

    Each line of a page's text is drawn as its own text object. With no
    arguments a single page reading "test" is produced.
    """
    if not pages:
        pages = ("test",)

    font_num = 3
    page_nums = [4 + 2 * i for i in range(len(pages))]
    kids = " ".join(f"{n} 0 R" for n in page_nums)

    objects: list[bytes] = [
        b"<</Type /Catalog /Pages 2 0 R>>",
        f"<</Type /Pages /Kids [{kids}] /Count {len(pages)}>>".encode(),
        b"<</Type /Font /Subtype /Type1 /BaseFont /Helvetica>>",
    ]
    for page_num, text in zip(page_nums, pages, strict=True):
        content = "".join(
            f"BT /F1 12 Tf 50 {700 - 20 * i} Td ({_escape(line)}) Tj ET\n"
            for i, line in enumerate(text.splitlines() or [""])
        ).encode("latin-1")
        objects.append(
            f"<</Type /Page /Parent 2 0 R /MediaBox [0 0 612 792]"
            f" /Contents {page_num + 1} 0 R"
            f" /Resources <</Font <</F1 {font_num} 0 R>>>>>>".encode()
        )
        objects.append(
            f"<</Length {len(content)}>>\nstream\n".encode() + content + b"endstream"
        )

    header = b"%PDF-1.4\n"
    body = b""
    offsets: list[int] = []
    for number, obj in enumerate(objects, start=1):
        offsets.append(len(header) + len(body))
        body += f"{number} 0 obj\n".encode() + obj + b"\nendobj\n"

    xref_offset = len(header) + len(body)
    xref = f"xref\n0 {len(objects) + 1}\n0000000000 65535 f \n"
    for off in offsets:
        xref += f"{off:010d} 00000 n \n"
    trailer = (
        f"trailer\n<</Size {len(objects) + 1} /Root 1 0 R>>\n"
        f"startxref\n{xref_offset}\n%%EOF\n"
    )
    return header + body + xref.encode() + trailer.encode()


SAMPLE_RESPONSE: dict[str, Any] = {
    "vendor": {"name": "Acme Supplies Ltd", "address": "1 Main St", "taxId": "GB123"},
    "invoice": {
        "number": "INV-1001",
        "date": "2024-03-15",
        "currency": "EUR",
        "subtotal": 150,
        "taxPercent": 20,
        "total": 180,
        "lineItems": [
            {"description": "Widgets", "unitPrice": 10, "quantity": 5, "total": 50},
            {"description": "Gadgets", "unitPrice": 25, "quantity": 4, "total": 100},
        ],
    },
}


def sample_json(**invoice_overrides: Any) -> str:
    data = json.loads(json.dumps(SAMPLE_RESPONSE))
    data["invoice"].update(invoice_overrides)
    return json.dumps(data)


async def no_sleep(_: float) -> None:
    return None


class StubProvider(CompletionProvider):
    """Provider that replays scripted responses; exceptions are raised."""

    def __init__(
        self,
        name: str,
        responses: list[str | Exception] | None = None,
        api_key: str = "test-key",
        max_input_chars: int = 10000,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("rate_limit_delay", 0)
        kwargs.setdefault("sleep", no_sleep)
        super().__init__(
            api_key,
            model=f"{name}-primary",
            fallback_model=f"{name}-fallback",
            **kwargs,
        )
        self.name = name
        self.max_input_chars = max_input_chars
        self._responses = list(responses or [])
        self.calls: list[tuple[str, str]] = []

    async def _generate(self, prompt: str, model: str) -> str:
        self.calls.append((model, prompt))
        if not self._responses:
            raise ProviderError("Upstream", "no scripted response left", self.name)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response
