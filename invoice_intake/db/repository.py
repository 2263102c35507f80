from datetime import UTC, datetime
from typing import Literal

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from invoice_intake.db.models import InvoiceRecord

SortField = Literal["createdAt", "updatedAt", "vendorName", "invoiceNumber", "fileName"]

_SORT_COLUMNS = {
    "createdAt": InvoiceRecord.created_at,
    "updatedAt": InvoiceRecord.updated_at,
    "vendorName": InvoiceRecord.vendor_name,
    "invoiceNumber": InvoiceRecord.invoice_number,
    "fileName": InvoiceRecord.file_name,
}


class RecordExistsError(Exception):
    pass


class InvoiceRepository:
    """Synchronous record store; callers run it off the event loop."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def add(self, record: InvoiceRecord) -> InvoiceRecord:
        with self._session_factory() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise RecordExistsError(
                    f"Record with fileId {record.file_id} already exists"
                ) from exc
            return record

    def get(self, record_id: str) -> InvoiceRecord | None:
        with self._session_factory() as session:
            return session.get(InvoiceRecord, record_id)

    def get_by_file_id(self, file_id: str) -> InvoiceRecord | None:
        with self._session_factory() as session:
            return session.scalars(
                select(InvoiceRecord).where(InvoiceRecord.file_id == file_id)
            ).one_or_none()

    def search(
        self,
        page: int = 1,
        limit: int = 10,
        q: str | None = None,
        status: str | None = None,
        sort_by: SortField = "createdAt",
        sort_order: Literal["asc", "desc"] = "desc",
    ) -> tuple[list[InvoiceRecord], int]:
        query = select(InvoiceRecord)
        if q:
            query = query.where(
                or_(
                    InvoiceRecord.vendor_name.icontains(q, autoescape=True),
                    InvoiceRecord.invoice_number.icontains(q, autoescape=True),
                )
            )
        if status:
            query = query.where(InvoiceRecord.extraction_status == status)

        column = _SORT_COLUMNS[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()
        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(query.subquery()))
            items = session.scalars(
                query.order_by(order, InvoiceRecord.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
        return list(items), total or 0

    def save(self, record: InvoiceRecord) -> InvoiceRecord:
        record.updated_at = datetime.now(UTC)
        with self._session_factory() as session:
            merged = session.merge(record)
            session.commit()
            return merged

    def delete(self, record_id: str) -> bool:
        with self._session_factory() as session:
            record = session.get(InvoiceRecord, record_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True
