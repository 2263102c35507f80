import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class InvoiceRecord(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    file_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    blob_name: Mapped[str | None] = mapped_column(String(255))
    file_size: Mapped[int | None] = mapped_column(Integer)

    vendor: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    invoice: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # Copies of vendor.name and invoice.number for search and sort.
    vendor_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    invoice_number: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    extraction_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", index=True
    )
    extraction_model: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def set_payload(self, vendor: dict[str, Any], invoice: dict[str, Any]) -> None:
        self.vendor = vendor
        self.invoice = invoice
        self.vendor_name = str(vendor.get("name") or "")
        self.invoice_number = str(invoice.get("number") or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fileId": self.file_id,
            "fileName": self.file_name,
            "fileUrl": self.file_url,
            "blobName": self.blob_name,
            "fileSize": self.file_size,
            "vendor": self.vendor,
            "invoice": self.invoice,
            "extractionStatus": self.extraction_status,
            "extractionModel": self.extraction_model,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


Index("ix_invoices_created_at_desc", InvoiceRecord.created_at.desc())
