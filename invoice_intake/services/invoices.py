import asyncio
import logging
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from invoice_intake.api.v1.schemas import (
    ExtractedInvoice,
    InvoiceCreateRequest,
    InvoiceDataUpdate,
    InvoiceUpdateRequest,
    LineItem,
    VendorUpdate,
)
from invoice_intake.db.models import InvoiceRecord
from invoice_intake.db.repository import InvoiceRepository, RecordExistsError, SortField
from invoice_intake.services.blob_store import BlobStore, BlobStoreError
from invoice_intake.services.orchestrator import ExtractionOrchestrator, is_mock
from invoice_intake.services.text_extractor import NoTextFoundError, TextExtractor
from invoice_intake.services.validator import (
    PLACEHOLDER_LINE_ITEM,
    invoice_total,
    line_total,
    recompute_totals,
    reprice_line_items,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANUAL_MODEL = "manual"
_REPLACE_IF_NON_EMPTY = ("number", "date", "currency")
_REPLACE_IF_PRESENT = ("subtotal", "taxPercent", "total", "poNumber", "poDate")


class InvoiceServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequestError(InvoiceServiceError):
    status_code = 400


class UnsupportedModelError(InvalidRequestError):
    pass


class EmptyTextError(InvalidRequestError):
    pass


class InvalidRecordIdError(InvalidRequestError):
    pass


class InvoiceNotFoundError(InvoiceServiceError):
    status_code = 404


class DuplicateFileIdError(InvoiceServiceError):
    status_code = 409


class StorageError(InvoiceServiceError):
    status_code = 500


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


@dataclass
class ExtractionReport:
    record: InvoiceRecord
    text_method: str
    warning: str | None = None

    @property
    def is_mock(self) -> bool:
        return is_mock(self.record.vendor_name)


def _apply_vendor(current: dict[str, Any], update: VendorUpdate) -> dict[str, Any]:
    vendor = dict(current)
    if update.name and update.name.strip():
        vendor["name"] = update.name.strip()
    for key in ("address", "taxId"):
        if key in update.model_fields_set:
            value = getattr(update, key)
            if value is None:
                vendor.pop(key, None)
            else:
                vendor[key] = value
    return vendor


def _apply_invoice(current: dict[str, Any], update: InvoiceDataUpdate) -> dict[str, Any]:
    invoice = dict(current)
    fields = update.model_fields_set
    for key in _REPLACE_IF_NON_EMPTY:
        value = getattr(update, key)
        if isinstance(value, str) and value.strip():
            invoice[key] = value.strip()
    for key in _REPLACE_IF_PRESENT:
        if key in fields:
            value = getattr(update, key)
            if value is None:
                invoice.pop(key, None)
            else:
                invoice[key] = value

    if update.lineItems is not None:
        previous = [LineItem.model_validate(item) for item in invoice.get("lineItems", [])]
        submitted = [
            LineItem(
                description=item.description,
                unitPrice=item.unitPrice,
                quantity=item.quantity,
                total=(
                    item.total
                    if item.total is not None
                    else line_total(item.unitPrice, item.quantity)
                ),
            )
            for item in update.lineItems
        ]
        items = reprice_line_items(submitted, previous) or [
            PLACEHOLDER_LINE_ITEM.model_copy()
        ]
        subtotal = sum(item.total for item in items)
        invoice["lineItems"] = [item.model_dump() for item in items]
        invoice["subtotal"] = subtotal
        if update.total is None:
            invoice["total"] = invoice_total(subtotal, invoice.get("taxPercent"))
    return invoice


class InvoiceService:
    """Owns the InvoiceRecord lifecycle around uploads, extraction and edits."""

    def __init__(
        self,
        repository: InvoiceRepository,
        blobs: BlobStore,
        text_extractor: TextExtractor,
        orchestrator: ExtractionOrchestrator,
        default_model: str = "gemini",
        new_file_id: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._repo = repository
        self._blobs = blobs
        self._text_extractor = text_extractor
        self._orchestrator = orchestrator
        self._default_model = default_model
        self._new_file_id = new_file_id
        self._locks = KeyedLocks()

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    @property
    def supported_models(self) -> list[str]:
        return self._orchestrator.providers

    async def _db(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Record store failure")
            raise StorageError("Database operation failed", details=str(exc)) from exc

    async def _discard_blob(self, url: str) -> None:
        try:
            await self._blobs.delete(url)
        except BlobStoreError:
            logger.warning("Failed to delete blob", extra={"url": url}, exc_info=True)

    async def upload(self, file_name: str, data: bytes) -> InvoiceRecord:
        file_id = self._new_file_id()
        blob_name = f"pdfs/{file_id}.pdf"
        try:
            url = await self._blobs.put(blob_name, data, "application/pdf")
        except BlobStoreError as exc:
            raise StorageError("Failed to store uploaded PDF", details=str(exc)) from exc

        record = InvoiceRecord(
            file_id=file_id,
            file_name=file_name,
            file_url=url,
            blob_name=blob_name,
            file_size=len(data),
            extraction_status="pending",
        )
        record.set_payload({}, {})
        try:
            record = await asyncio.to_thread(self._repo.add, record)
        except (RecordExistsError, SQLAlchemyError) as exc:
            logger.error(
                "Failed to create invoice record, removing blob",
                extra={"file_id": file_id, "error": str(exc)},
            )
            await self._discard_blob(url)
            raise StorageError("Failed to save invoice record", details=str(exc)) from exc

        logger.info(
            "Upload stored",
            extra={"file_id": file_id, "invoice_id": record.id, "size_bytes": len(data)},
        )
        return record

    def _resolve_model(self, model: str | None) -> str:
        chosen = model or self._default_model
        if chosen not in self.supported_models:
            supported = " or ".join(f'"{name}"' for name in self.supported_models)
            raise UnsupportedModelError(f"model must be either {supported}")
        return chosen

    async def _record_for_file(self, file_id: str) -> InvoiceRecord:
        record = await self._db(self._repo.get_by_file_id, file_id)
        if record is None:
            raise InvoiceNotFoundError(
                "Invoice record not found. Please upload the PDF first."
            )
        return record

    async def extract(self, file_id: str | None, model: str | None = None) -> ExtractionReport:
        if not file_id or not file_id.strip():
            raise InvalidRequestError("fileId is required")
        provider = self._resolve_model(model)

        async with self._locks.hold(file_id):
            record = await self._record_for_file(file_id)
            try:
                file_bytes = await self._blobs.get(record.file_url)
            except BlobStoreError as exc:
                raise StorageError("Failed to read stored PDF", details=str(exc)) from exc

            try:
                extraction = await self._text_extractor.extract(file_bytes, record.file_url)
            except NoTextFoundError as exc:
                record.extraction_status = "failed"
                record.extraction_model = None
                await self._db(self._repo.save, record)
                raise EmptyTextError(
                    "Could not extract text from PDF. "
                    "The file might be corrupted or contain only images.",
                    details=str(exc),
                ) from exc

            outcome = await self._orchestrator.run(extraction.text, provider)
            extracted = ExtractedInvoice(
                vendor=outcome.invoice.vendor,
                invoice=recompute_totals(outcome.invoice.invoice),
            )
            payload = extracted.to_payload()
            record.set_payload(payload["vendor"], payload["invoice"])
            record.extraction_status = "completed"
            record.extraction_model = outcome.model
            record = await self._db(self._repo.save, record)

        return ExtractionReport(
            record=record, text_method=extraction.method, warning=outcome.warning
        )

    async def retry(self, file_id: str, model: str | None = None) -> ExtractionReport:
        logger.info("Retrying extraction", extra={"file_id": file_id, "model": model})
        return await self.extract(file_id, model)

    async def status(self, file_id: str) -> InvoiceRecord:
        return await self._record_for_file(file_id)

    async def read_file(self, file_id: str) -> tuple[InvoiceRecord, bytes]:
        record = await self._record_for_file(file_id)
        try:
            data = await self._blobs.get(record.file_url)
        except BlobStoreError as exc:
            raise InvoiceNotFoundError("PDF file not found", details=str(exc)) from exc
        return record, data

    async def list_invoices(
        self,
        page: int = 1,
        limit: int = 10,
        q: str | None = None,
        status: str | None = None,
        sort_by: SortField = "createdAt",
        sort_order: str = "desc",
    ) -> tuple[list[InvoiceRecord], int]:
        return await self._db(
            self._repo.search,
            page=page,
            limit=limit,
            q=q,
            status=status,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    async def get(self, record_id: str) -> InvoiceRecord:
        try:
            uuid.UUID(record_id)
        except ValueError as exc:
            raise InvalidRecordIdError("Invalid invoice ID") from exc
        record = await self._db(self._repo.get, record_id)
        if record is None:
            raise InvoiceNotFoundError("Invoice not found")
        return record

    async def update(self, record_id: str, changes: InvoiceUpdateRequest) -> InvoiceRecord:
        record = await self.get(record_id)
        vendor = record.vendor or {}
        invoice = record.invoice or {}
        if changes.vendor is not None:
            vendor = _apply_vendor(vendor, changes.vendor)
        if changes.invoice is not None:
            invoice = _apply_invoice(invoice, changes.invoice)
        record.set_payload(vendor, invoice)
        record = await self._db(self._repo.save, record)
        logger.info("Invoice updated", extra={"invoice_id": record.id})
        return record

    async def create(self, request: InvoiceCreateRequest) -> InvoiceRecord:
        record = InvoiceRecord(
            file_id=request.fileId,
            file_name=request.fileName,
            file_url=request.fileUrl,
            blob_name=request.blobName,
            file_size=request.fileSize,
        )
        vendor = request.vendor.model_dump(exclude_none=True) if request.vendor else {}
        invoice: dict[str, Any] = {}
        if request.invoice is not None:
            # Same rules as an edit applied to an empty record.
            fields = request.invoice.model_dump(exclude_none=True)
            invoice = _apply_invoice({}, InvoiceDataUpdate.model_validate(fields))
            invoice.setdefault("currency", "USD")
        record.set_payload(vendor, invoice)
        if request.vendor is not None and request.invoice is not None:
            record.extraction_status = "completed"
            record.extraction_model = MANUAL_MODEL
        else:
            record.extraction_status = "pending"
        try:
            return await self._db(self._repo.add, record)
        except RecordExistsError as exc:
            raise DuplicateFileIdError(
                "Invoice with this fileId already exists", details=str(exc)
            ) from exc

    async def delete(self, record_id: str) -> InvoiceRecord:
        record = await self.get(record_id)
        if record.blob_name:
            await self._discard_blob(record.file_url)
        await self._db(self._repo.delete, record.id)
        logger.info(
            "Invoice deleted", extra={"invoice_id": record.id, "file_id": record.file_id}
        )
        return record
