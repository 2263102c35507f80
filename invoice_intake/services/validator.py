import logging
import math
import re
import time
from collections.abc import Callable, Sequence
from datetime import date
from typing import Any

from dateutil import parser as dateutil_parser

from invoice_intake.api.v1.schemas import (
    ExtractedInvoice,
    InvoiceData,
    LineItem,
    Vendor,
)

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR = "Unknown Vendor"
UNKNOWN_ITEM = "Unknown Item"
DEFAULT_CURRENCY = "USD"
PLACEHOLDER_LINE_ITEM = LineItem(
    description="Unable to extract line items", unitPrice=0, quantity=1, total=0
)

# Mapping from European month names to English for dateutil compatibility.
# Only months that differ from English are included.
_EUROPEAN_MONTHS: dict[str, str] = {
    # German / Austrian
    "januar": "January",
    "februar": "February",
    "märz": "March",
    "mär": "March",
    "mai": "May",
    "juni": "June",
    "juli": "July",
    "oktober": "October",
    "dezember": "December",
    # Norwegian / Danish / Swedish
    "mars": "March",
    "desember": "December",
    # Dutch
    "januari": "January",
    "februari": "February",
    "maart": "March",
    "mei": "May",
    # French
    "janvier": "January",
    "février": "February",
    "avril": "April",
    "juin": "June",
    "juillet": "July",
    "août": "August",
    "octobre": "October",
    "novembre": "November",
    "décembre": "December",
    # Italian
    "gennaio": "January",
    "febbraio": "February",
    "marzo": "March",
    "aprile": "April",
    "maggio": "May",
    "giugno": "June",
    "luglio": "July",
    "settembre": "September",
    "ottobre": "October",
    "dicembre": "December",
    # Spanish
    "enero": "January",
    "febrero": "February",
    "junio": "June",
    "julio": "July",
    "agosto": "August",
    "septiembre": "September",
    "octubre": "October",
    "noviembre": "November",
    "diciembre": "December",
}

_MONTH_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b" + re.escape(local) + r"\b", re.IGNORECASE), english)
    for local, english in _EUROPEAN_MONTHS.items()
]

_AMOUNT_NOISE = re.compile(r"[,\s$€£¥]")


def _normalize_european_months(s: str) -> str:
    for pattern, english in _MONTH_PATTERNS:
        s = pattern.sub(english, s)
    return s


def _today() -> date:
    return date.today()


def _clean_str(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        value = str(value)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_date(value: Any) -> str | None:
    """Return value as an ISO ``YYYY-MM-DD`` string, or None if unparseable."""
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    try:
        return date.fromisoformat(candidate).isoformat()
    except ValueError:
        pass
    try:
        parsed = dateutil_parser.parse(_normalize_european_months(candidate))
    except (ValueError, OverflowError):
        return None
    return parsed.date().isoformat()


def parse_amount(value: Any) -> float | None:
    """Parse value as a finite float; None when it is not a number at all."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(_AMOUNT_NOISE.sub("", value))
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _optional_amount(value: Any) -> float | None:
    number = parse_amount(value)
    if number is None or number < 0:
        return None
    return number


def _item_amount(value: Any, default: float) -> float:
    number = parse_amount(value)
    if number is None:
        return default
    return max(number, 0.0)


class InvoiceSanitizer:
    def __init__(
        self,
        today: Callable[[], date] = _today,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._today = today
        self._clock = clock

    def sanitize(self, raw: Any) -> ExtractedInvoice:
        data = raw if isinstance(raw, dict) else {}
        vendor = data.get("vendor") if isinstance(data.get("vendor"), dict) else {}
        invoice = data.get("invoice") if isinstance(data.get("invoice"), dict) else {}
        return ExtractedInvoice(
            vendor=Vendor(
                name=_clean_str(vendor.get("name")) or UNKNOWN_VENDOR,
                address=_clean_str(vendor.get("address")),
                taxId=_clean_str(vendor.get("taxId")),
            ),
            invoice=InvoiceData(
                number=_clean_str(invoice.get("number"))
                or f"INV-{int(self._clock() * 1000)}",
                date=parse_date(invoice.get("date")) or self._today().isoformat(),
                currency=_clean_str(invoice.get("currency")) or DEFAULT_CURRENCY,
                subtotal=_optional_amount(invoice.get("subtotal")),
                taxPercent=_optional_amount(invoice.get("taxPercent")),
                total=_optional_amount(invoice.get("total")),
                poNumber=_clean_str(invoice.get("poNumber")),
                poDate=parse_date(invoice.get("poDate")),
                lineItems=self.sanitize_line_items(invoice.get("lineItems")),
            ),
        )

    def sanitize_line_items(self, raw: Any) -> list[LineItem]:
        items: list[LineItem] = []
        for entry in raw if isinstance(raw, list) else []:
            if not isinstance(entry, dict):
                continue
            description = _clean_str(entry.get("description")) or UNKNOWN_ITEM
            if description == UNKNOWN_ITEM:
                continue
            items.append(
                LineItem(
                    description=description,
                    unitPrice=_item_amount(entry.get("unitPrice"), 0.0),
                    quantity=_item_amount(entry.get("quantity"), 1.0),
                    total=_item_amount(entry.get("total"), 0.0),
                )
            )
        return items or [PLACEHOLDER_LINE_ITEM.model_copy()]


def is_valid_candidate(candidate: ExtractedInvoice) -> bool:
    return bool(
        candidate.vendor.name.strip()
        and candidate.invoice.number.strip()
        and candidate.invoice.date.strip()
        and isinstance(candidate.invoice.lineItems, list)
    )


def line_total(unit_price: float, quantity: float) -> float:
    return unit_price * quantity


def invoice_total(subtotal: float, tax_percent: float | None) -> float:
    return subtotal * (1 + (tax_percent or 0) / 100)


def reprice_line_items(
    items: Sequence[LineItem], previous: Sequence[LineItem] = ()
) -> list[LineItem]:
    """Recompute totals for items whose unit price or quantity changed.

    Items are matched to ``previous`` by position. New items are always
    recomputed; description-only edits keep their total.
    """
    repriced: list[LineItem] = []
    for index, item in enumerate(items):
        old = previous[index] if index < len(previous) else None
        if (
            old is None
            or old.unitPrice != item.unitPrice
            or old.quantity != item.quantity
        ):
            item = item.model_copy(
                update={"total": line_total(item.unitPrice, item.quantity)}
            )
        repriced.append(item)
    return repriced


def recompute_totals(invoice: InvoiceData) -> InvoiceData:
    items: list[LineItem] = []
    for item in invoice.lineItems:
        unit_price = item.unitPrice
        if unit_price == 0 and item.total > 0 and item.quantity > 0:
            unit_price = item.total / item.quantity
        items.append(
            item.model_copy(
                update={
                    "unitPrice": unit_price,
                    "total": line_total(unit_price, item.quantity),
                }
            )
        )
    subtotal = sum(item.total for item in items)
    total = invoice_total(subtotal, invoice.taxPercent)
    _check_totals(invoice.total, total)
    return invoice.model_copy(
        update={"lineItems": items, "subtotal": subtotal, "total": total}
    )


def _check_totals(reported: float | None, computed: float) -> None:
    if reported is None or reported == 0:
        return
    if abs(reported - computed) / abs(reported) > 0.01:
        logger.warning(
            "Totals inconsistency: reported=%s computed=%s", reported, computed
        )
