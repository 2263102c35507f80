from datetime import date
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field

Amount = Annotated[float, Field(ge=0, allow_inf_nan=False)]


def _check_iso_date(value: str) -> str:
    date.fromisoformat(value)
    return value


IsoDate = Annotated[str, AfterValidator(_check_iso_date)]


def _check_not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value.strip()


RequiredStr = Annotated[str, AfterValidator(_check_not_blank)]


class LineItem(BaseModel):
    description: str
    unitPrice: Amount
    quantity: Amount
    total: Amount


class Vendor(BaseModel):
    name: str
    address: str | None = None
    taxId: str | None = None


class InvoiceData(BaseModel):
    number: str
    date: str
    currency: str = "USD"
    subtotal: Amount | None = None
    taxPercent: Amount | None = None
    total: Amount | None = None
    poNumber: str | None = None
    poDate: str | None = None
    lineItems: list[LineItem] = Field(default_factory=list)


class ExtractedInvoice(BaseModel):
    vendor: Vendor
    invoice: InvoiceData

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ExtractRequest(BaseModel):
    fileId: str | None = None
    model: str | None = None


class RetryRequest(BaseModel):
    model: str | None = None


class VendorUpdate(BaseModel):
    name: str | None = None
    address: str | None = None
    taxId: str | None = None


class LineItemUpdate(BaseModel):
    description: str
    unitPrice: Amount
    quantity: Amount
    total: Amount | None = None


class InvoiceDataUpdate(BaseModel):
    number: str | None = None
    date: IsoDate | None = None
    currency: str | None = None
    subtotal: Amount | None = None
    taxPercent: Amount | None = None
    total: Amount | None = None
    poNumber: str | None = None
    poDate: IsoDate | None = None
    lineItems: list[LineItemUpdate] | None = None


class InvoiceUpdateRequest(BaseModel):
    vendor: VendorUpdate | None = None
    invoice: InvoiceDataUpdate | None = None


class VendorCreate(BaseModel):
    name: RequiredStr
    address: str | None = None
    taxId: str | None = None


class InvoiceDataCreate(BaseModel):
    number: RequiredStr
    date: IsoDate
    currency: str = "USD"
    subtotal: Amount | None = None
    taxPercent: Amount | None = None
    total: Amount | None = None
    poNumber: str | None = None
    poDate: IsoDate | None = None
    lineItems: list[LineItemUpdate] = Field(default_factory=list)


class InvoiceCreateRequest(BaseModel):
    fileId: str
    fileName: str
    fileUrl: str
    blobName: str | None = None
    fileSize: int | None = Field(default=None, ge=0)
    vendor: VendorCreate | None = None
    invoice: InvoiceDataCreate | None = None
