import asyncio
import io
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx
import pdfplumber
from pdfminer.high_level import extract_text as pdfminer_extract_text

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"
_REMOTE_MIN_CHARS = 10

_PAREN_RUN = re.compile(rb"\(((?:\\.|[^\\()])*)\)", re.DOTALL)
_TEXT_BLOCK = re.compile(rb"\bBT\b(.*?)\bET\b", re.DOTALL)
_SHOWN_STRING = re.compile(rb"\(((?:\\.|[^\\()])*)\)\s*(?:Tj|TJ|'|\")")
_SHOWN_ARRAY = re.compile(rb"\[((?:[^\[\]]|\\.)*)\]\s*TJ", re.DOTALL)
_PRINTABLE_RUN = re.compile(rb"[\x20-\x7e]{20,}")
_ALNUM = re.compile(r"[A-Za-z0-9]")
_NON_PRINTABLE = re.compile(r"[^\x20-\x7e\n]")
_WHITESPACE = re.compile(r"\s+")
_PDF_ESCAPES = {b"n": b"\n", b"r": b"\r", b"t": b"\t", b"(": b"(", b")": b")", b"\\": b"\\"}

StrategyName = Literal["layout", "single_call", "remote", "binary_scan"]


class PDFValidationError(Exception):
    pass


class InvalidContentTypeError(PDFValidationError):
    pass


class FileTooLargeError(PDFValidationError):
    pass


class InvalidMagicBytesError(PDFValidationError):
    pass


class TextExtractionError(Exception):
    pass


class FetchError(TextExtractionError):
    pass


class NoTextFoundError(TextExtractionError):
    pass


def validate_pdf(
    content_type: str | None,
    file_bytes: bytes,
    max_size_mb: int,
) -> None:
    if content_type != "application/pdf":
        raise InvalidContentTypeError("Only PDF files are allowed")
    if len(file_bytes) > max_size_mb * 1024 * 1024:
        raise FileTooLargeError(f"File exceeds maximum size of {max_size_mb} MB")
    if file_bytes[:4] != _PDF_MAGIC:
        raise InvalidMagicBytesError("File does not appear to be a PDF")


class Strategy(Protocol):
    name: StrategyName

    async def extract_text(self, file_bytes: bytes, source_url: str | None) -> str: ...


class PlumberLayoutExtractor:
    """Walks every page and joins its words in content-stream order."""

    name: StrategyName = "layout"

    async def extract_text(self, file_bytes: bytes, source_url: str | None) -> str:
        return await asyncio.to_thread(self.extract_pages, file_bytes)

    def extract_pages(self, file_bytes: bytes) -> str:
        if not file_bytes:
            raise ValueError("file_bytes must not be empty")
        pages: list[str] = []
        with pdfplumber.open(io.BytesIO(file_bytes)) as pdf:
            for number, page in enumerate(pdf.pages, start=1):
                try:
                    words = page.extract_words(use_text_flow=True)
                except Exception:
                    logger.warning("Skipping unreadable page %d", number, exc_info=True)
                    continue
                pages.append(" ".join(word["text"] for word in words))
        return "\n\n".join(page for page in pages if page)


class PdfMinerExtractor:
    name: StrategyName = "single_call"

    async def extract_text(self, file_bytes: bytes, source_url: str | None) -> str:
        if not file_bytes:
            raise ValueError("file_bytes must not be empty")
        return await asyncio.to_thread(pdfminer_extract_text, io.BytesIO(file_bytes))


class RemoteServiceExtractor:
    """Delegates to an out-of-process extraction service by URL."""

    name: StrategyName = "remote"

    def __init__(
        self,
        base_url: str,
        timeout: float = 45.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def extract_text(self, file_bytes: bytes, source_url: str | None) -> str:
        if not source_url:
            raise TextExtractionError("Remote extraction needs a source URL")
        response = await self._get_client().post(
            f"{self._base_url}/extract",
            json={"url": source_url},
            timeout=self._timeout,
        )
        response.raise_for_status()
        body = response.json()
        text = str(body.get("text") or "")
        if not body.get("success") or len(text.strip()) <= _REMOTE_MIN_CHARS:
            raise TextExtractionError("Remote extraction returned no usable text")
        logger.info(
            "Remote extraction succeeded",
            extra={"method": body.get("method"), "confidence": body.get("confidence")},
        )
        return text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _unescape(raw: bytes) -> bytes:
    return re.sub(
        rb"\\(.)",
        lambda m: _PDF_ESCAPES.get(m.group(1), m.group(1)),
        raw,
        flags=re.DOTALL,
    )


def _clean(text: str) -> str:
    return _WHITESPACE.sub(" ", _NON_PRINTABLE.sub(" ", text)).strip()


def _decode_runs(runs: Sequence[bytes]) -> str:
    return _clean(" ".join(_unescape(run).decode("latin-1") for run in runs))


class BinaryScanExtractor:
    """Recovers text runs straight from the raw byte stream."""

    name: StrategyName = "binary_scan"

    async def extract_text(self, file_bytes: bytes, source_url: str | None) -> str:
        return self.scan(file_bytes)

    def scan(self, file_bytes: bytes) -> str:
        text = self._parenthesised(file_bytes)
        if len(text) < 50:
            shown = self._text_blocks(file_bytes)
            if len(shown) > len(text):
                text = shown
        if len(text) < 20:
            runs = self._printable_runs(file_bytes)
            if len(runs) > len(text):
                text = runs
        return text

    def _parenthesised(self, data: bytes) -> str:
        runs = [
            run
            for run in _PAREN_RUN.findall(data)
            if len(run) > 1 and _ALNUM.search(run.decode("latin-1"))
        ]
        return _decode_runs(runs)

    def _text_blocks(self, data: bytes) -> str:
        runs: list[bytes] = []
        for block in _TEXT_BLOCK.findall(data):
            runs.extend(_SHOWN_STRING.findall(block))
            for array in _SHOWN_ARRAY.findall(block):
                runs.extend(_PAREN_RUN.findall(array))
        return _decode_runs(runs)

    def _printable_runs(self, data: bytes) -> str:
        kept: list[str] = []
        for raw in _PRINTABLE_RUN.findall(data):
            run = raw.decode("latin-1")
            letters = sum(ch.isalpha() for ch in run)
            alnum = len(_ALNUM.findall(run))
            if letters > 5 and alnum >= 0.3 * len(run):
                kept.append(run)
        return _clean(" ".join(kept))


@dataclass
class ExtractionResult:
    text: str
    method: StrategyName


class TextExtractor:
    def __init__(
        self,
        strategies: Sequence[Strategy],
        client: httpx.AsyncClient | None = None,
        fetch_timeout: float = 45.0,
    ) -> None:
        self._strategies = list(strategies)
        self._client = client
        self._fetch_timeout = fetch_timeout

    @classmethod
    def default(
        cls,
        remote_url: str | None = None,
        remote_timeout: float = 45.0,
        prefer_single_call: bool = False,
    ) -> "TextExtractor":
        parsers: list[Strategy] = [PlumberLayoutExtractor(), PdfMinerExtractor()]
        if prefer_single_call:
            parsers.reverse()
        strategies: list[Strategy] = list(parsers)
        if remote_url:
            strategies.append(RemoteServiceExtractor(remote_url, timeout=remote_timeout))
        strategies.append(BinaryScanExtractor())
        return cls(strategies, fetch_timeout=remote_timeout)

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._fetch_timeout)
        return self._client

    async def fetch(self, url: str) -> bytes:
        try:
            response = await self._get_client().get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch PDF: {exc}") from exc
        if not response.is_success:
            raise FetchError(
                f"Failed to fetch PDF: {response.status_code} {response.reason_phrase}"
            )
        return response.content

    async def extract(
        self, source: bytes | str, source_url: str | None = None
    ) -> ExtractionResult:
        if isinstance(source, str):
            source_url = source_url or source
            file_bytes = await self.fetch(source)
            logger.info("Downloaded PDF", extra={"size_bytes": len(file_bytes)})
        else:
            file_bytes = source

        for strategy in self._strategies:
            try:
                text = await strategy.extract_text(file_bytes, source_url)
            except Exception as exc:
                logger.warning(
                    "Text extraction strategy failed",
                    extra={"strategy": strategy.name, "error": str(exc)},
                )
                continue
            if text and text.strip():
                logger.info(
                    "Text extracted",
                    extra={"strategy": strategy.name, "chars": len(text)},
                )
                return ExtractionResult(text=text, method=strategy.name)
            logger.info("Strategy produced no text", extra={"strategy": strategy.name})

        raise NoTextFoundError("No text content found in PDF")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        for strategy in self._strategies:
            if isinstance(strategy, RemoteServiceExtractor):
                await strategy.aclose()
