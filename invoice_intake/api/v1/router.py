import logging
import math
import time
import uuid
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from invoice_intake.api.v1.schemas import (
    ExtractRequest,
    InvoiceCreateRequest,
    InvoiceUpdateRequest,
    RetryRequest,
)
from invoice_intake.core.config import get_settings
from invoice_intake.db.models import InvoiceRecord
from invoice_intake.services.invoices import ExtractionReport, InvoiceService
from invoice_intake.services.text_extractor import (
    FileTooLargeError,
    InvalidContentTypeError,
    InvalidMagicBytesError,
    validate_pdf,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ExtractionStatus = Literal["pending", "processing", "completed", "failed"]
SortBy = Literal["createdAt", "updatedAt", "vendorName", "invoiceNumber", "fileName"]


def get_invoice_service(request: Request) -> InvoiceService:
    service: InvoiceService = request.app.state.invoice_service
    return service


Service = Annotated[InvoiceService, Depends(get_invoice_service)]


def _ok(
    data: Any,
    message: str | None = None,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    return JSONResponse(body, status_code=status_code, headers=headers)


@router.post("/upload")
async def upload(pdf: UploadFile, service: Service) -> JSONResponse:
    settings = get_settings()
    file_bytes = await pdf.read()
    try:
        validate_pdf(pdf.content_type, file_bytes, settings.max_file_size_mb)
    except InvalidContentTypeError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e)) from e
    except InvalidMagicBytesError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    record = await service.upload(pdf.filename or "invoice.pdf", file_bytes)
    return _ok(
        {
            "fileId": record.file_id,
            "fileName": record.file_name,
            "fileUrl": record.file_url,
            "fileSize": record.file_size,
            "invoiceId": record.id,
        },
        message="File uploaded successfully",
        status_code=201,
    )


@router.get("/files/{file_id}")
async def download(file_id: str, service: Service) -> Response:
    record, data = await service.read_file(file_id)
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{record.file_name}"'},
    )


def _extraction_data(report: ExtractionReport) -> dict[str, Any]:
    record = report.record
    return {
        "fileId": record.file_id,
        "fileName": record.file_name,
        "fileUrl": record.file_url,
        "extractionModel": record.extraction_model,
        "extractedData": {"vendor": record.vendor, "invoice": record.invoice},
        "invoiceId": record.id,
        "status": record.extraction_status,
        "warning": report.warning,
    }


async def _run_extraction(
    request: Request,
    service: InvoiceService,
    file_id: str | None,
    model: str | None,
    retry: bool,
) -> JSONResponse:
    request_id = str(uuid.uuid4())
    start = time.monotonic()
    status_code = 500
    report: ExtractionReport | None = None

    try:
        if retry:
            report = await service.retry(file_id or "", model)
        else:
            report = await service.extract(file_id, model)
        status_code = 200
        if report.is_mock:
            prefix = "Retry completed" if retry else "PDF processed"
            message = f"{prefix} but AI extraction failed - using fallback data"
        else:
            message = "Retry extraction successful" if retry else "Data extracted successfully"
        return _ok(
            _extraction_data(report),
            message=message,
            headers={"X-Request-Id": request_id},
        )
    except Exception as e:
        status_code = getattr(e, "status_code", 500)
        raise
    finally:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "extract complete",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": str(request.url.path),
                "status_code": status_code,
                "file_id": file_id,
                "model": model,
                "extraction_model": report.record.extraction_model if report else None,
                "text_method": report.text_method if report else None,
                "duration_ms": duration_ms,
            },
        )


@router.post("/extract")
async def extract(body: ExtractRequest, request: Request, service: Service) -> JSONResponse:
    return await _run_extraction(request, service, body.fileId, body.model, retry=False)


@router.post("/extract/retry/{file_id}")
async def retry_extract(
    file_id: str,
    request: Request,
    service: Service,
    body: RetryRequest | None = None,
) -> JSONResponse:
    model = body.model if body else None
    return await _run_extraction(request, service, file_id, model, retry=True)


@router.get("/extract/{file_id}")
async def extraction_status(file_id: str, service: Service) -> JSONResponse:
    record = await service.status(file_id)
    completed = record.extraction_status == "completed"
    payload = record.to_dict()
    return _ok(
        {
            "fileId": record.file_id,
            "fileName": record.file_name,
            "fileUrl": record.file_url,
            "status": record.extraction_status,
            "model": record.extraction_model,
            "extractedData": (
                {"vendor": record.vendor, "invoice": record.invoice} if completed else None
            ),
            "invoiceId": record.id,
            "createdAt": payload["createdAt"],
            "updatedAt": payload["updatedAt"],
        }
    )


@router.get("/invoices")
async def list_invoices(
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    q: str | None = None,
    status: ExtractionStatus | None = None,
    sortBy: SortBy = "createdAt",
    sortOrder: Literal["asc", "desc"] = "desc",
) -> JSONResponse:
    records, total = await service.list_invoices(
        page=page,
        limit=limit,
        q=q.strip() if q else None,
        status=status,
        sort_by=sortBy,
        sort_order=sortOrder,
    )
    total_pages = math.ceil(total / limit) if total else 0
    return _ok(
        {
            "invoices": [record.to_dict() for record in records],
            "pagination": {
                "currentPage": page,
                "totalPages": total_pages,
                "totalRecords": total,
                "limit": limit,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        }
    )


@router.post("/invoices")
async def create_invoice(body: InvoiceCreateRequest, service: Service) -> JSONResponse:
    record = await service.create(body)
    return _ok(record.to_dict(), message="Invoice created successfully", status_code=201)


@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, service: Service) -> JSONResponse:
    record = await service.get(invoice_id)
    return _ok(record.to_dict())


@router.put("/invoices/{invoice_id}")
async def update_invoice(
    invoice_id: str, body: InvoiceUpdateRequest, service: Service
) -> JSONResponse:
    record = await service.update(invoice_id, body)
    return _ok(record.to_dict(), message="Invoice updated successfully")


def _deletion_data(record: InvoiceRecord) -> dict[str, Any]:
    return {
        "invoiceId": record.id,
        "fileId": record.file_id,
        "fileName": record.file_name,
        "blobName": record.blob_name,
    }


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(invoice_id: str, service: Service) -> JSONResponse:
    record = await service.delete(invoice_id)
    return _ok(_deletion_data(record), message="Invoice deleted successfully")
