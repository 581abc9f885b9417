"""Pydantic models for billing data."""
from __future__ import annotations

import datetime as dt
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from .money import ZERO, parse_decimal

STATUS_CREATED = "Erstellt"
STATUS_SENT = "Verschickt"
STATUS_PAID = "Bezahlt"
STATUS_CANCELLED = "Storniert"
# Statuses a user may set by hand; "Storniert" only comes from a cancellation.
MANUAL_STATUSES = (STATUS_CREATED, STATUS_SENT, STATUS_PAID)

IntervalKey = Literal[
    "weekly",
    "every_2_weeks",
    "monthly",
    "every_2_months",
    "quarterly",
    "every_6_months",
    "yearly",
]
INTERVAL_KEYS: tuple[str, ...] = (
    "weekly",
    "every_2_weeks",
    "monthly",
    "every_2_months",
    "quarterly",
    "every_6_months",
    "yearly",
)
DEFAULT_INTERVAL = "monthly"

_GERMAN_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$")


def coerce_date(value: object) -> date | None:
    """Parse ``YYYY-MM-DD`` or ``DD.MM.YYYY`` (also ISO timestamps) into a date."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    match = _GERMAN_DATE.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        return date(year, month, day)
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"invalid date: {text!r}") from exc


def _decimal_or_zero(value: object) -> Decimal:
    return parse_decimal(value, strict=True)


DecimalValue = Annotated[Decimal, BeforeValidator(_decimal_or_zero)]


_STRICT = ConfigDict(
    str_strip_whitespace=True,
    validate_assignment=True,
    extra="forbid",
)
_LOOSE = ConfigDict(
    str_strip_whitespace=True,
    populate_by_name=True,
    extra="ignore",
)


# --------------------------------------------------------------------------
# Positions
# --------------------------------------------------------------------------


class ItemLine(BaseModel):
    model_config = _STRICT

    kind: Literal["item"] = "item"
    description: str = Field(default="", max_length=2000)
    quantity: DecimalValue = ZERO
    unit_price: DecimalValue = ZERO
    unit: str = Field(default="C62", max_length=32)

    @property
    def net(self) -> Decimal:
        return self.quantity * self.unit_price


class HeadingLine(BaseModel):
    model_config = _STRICT

    kind: Literal["heading"] = "heading"
    description: str = Field(default="", max_length=2000)


class DescriptionLine(BaseModel):
    model_config = _STRICT

    kind: Literal["description"] = "description"
    description: str = Field(default="", max_length=4000)


class SubtotalLine(BaseModel):
    model_config = _STRICT

    kind: Literal["subtotal"] = "subtotal"
    description: str = Field(default="", max_length=2000)


class SeparatorLine(BaseModel):
    model_config = _STRICT

    kind: Literal["separator"] = "separator"
    description: str = ""


_ALIASES = {
    "type": "kind",
    "unitPrice": "unit_price",
    "qty": "quantity",
    "unit_code": "unit",
}
_FIELDS_BY_KIND = {
    "item": {"kind", "description", "quantity", "unit_price", "unit"},
    "heading": {"kind", "description"},
    "description": {"kind", "description"},
    "subtotal": {"kind", "description"},
    "separator": {"kind", "description"},
}


def _normalize_position(value: Any) -> Any:
    """Map loosely shaped wire payloads onto the tagged position models."""

    if isinstance(value, BaseModel) or not isinstance(value, dict):
        return value

    normalized: dict[str, Any] = {}
    for key, item in value.items():
        target = _ALIASES.get(key, key)
        if target in normalized and key != target:
            continue
        normalized[target] = item

    kind = normalized.get("kind") or "item"
    normalized["kind"] = kind
    allowed = _FIELDS_BY_KIND.get(kind)
    if allowed is None:
        return normalized  # unknown kind -> discriminator error
    if normalized.get("description") is None:
        normalized["description"] = ""
    if kind == "item" and not normalized.get("unit"):
        normalized["unit"] = "C62"
    return {key: item for key, item in normalized.items() if key in allowed}


LineItem = Annotated[
    Annotated[
        Union[ItemLine, HeadingLine, DescriptionLine, SubtotalLine, SeparatorLine],
        Field(discriminator="kind"),
    ],
    BeforeValidator(_normalize_position),
]

POSITIONS_ADAPTER: TypeAdapter[list[LineItem]] = TypeAdapter(list[LineItem])


def parse_positions(raw: Any) -> list[LineItem]:
    """Validate a raw list of positions into tagged line models."""

    return POSITIONS_ADAPTER.validate_python(raw or [])


# --------------------------------------------------------------------------
# Discount and totals
# --------------------------------------------------------------------------


class Discount(BaseModel):
    model_config = _LOOSE

    enabled: bool = False
    label: str = Field(default="Rabatt", max_length=256)
    type: Literal["percent", "amount"] = "percent"
    base: Literal["net", "gross"] = "net"
    value: Decimal = ZERO

    @field_validator("label", mode="before")
    def _default_label(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "Rabatt"
        return value

    @field_validator("type", mode="before")
    def _normalize_type(cls, value: object) -> object:
        if value is None:
            return "percent"
        if isinstance(value, str) and value.strip().lower() == "absolute":
            return "amount"
        return value

    @field_validator("base", mode="before")
    def _normalize_base(cls, value: object) -> object:
        return "net" if value is None else value

    @field_validator("value", mode="before")
    def _parse_value(cls, value: object) -> Decimal:
        parsed = parse_decimal(value, strict=True)
        if parsed < ZERO:
            raise ValueError("discount value must not be negative")
        return parsed

    @model_validator(mode="after")
    def _percent_in_range(self) -> "Discount":
        if self.type == "percent" and self.value > Decimal("100"):
            raise ValueError("percent discount must be between 0 and 100")
        return self

    @property
    def active(self) -> bool:
        return self.enabled and self.value > ZERO

    def disabled_copy(self) -> "Discount":
        return self.model_copy(update={"enabled": False})


class InvoiceTotals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    net_subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    net_after_discount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    gross_total: Decimal = ZERO


# --------------------------------------------------------------------------
# Parties and settings
# --------------------------------------------------------------------------


class Customer(BaseModel):
    model_config = _LOOSE

    id: str
    user_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    email: str | None = None
    phone: str | None = None
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    country: str | None = None
    address: str | None = None
    customer_number: str | None = None
    auto_send_invoices: bool | None = None
    e_invoice_leitweg_id: str | None = None
    e_invoice_buyer_reference: str | None = None
    e_invoice_order_reference: str | None = None

    @field_validator("id", mode="before")
    def _stringify_id(cls, value: object) -> object:
        return str(value) if isinstance(value, int) else value

    @property
    def display_name(self) -> str:
        if self.company:
            return self.company
        full_name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full_name or "Kundin / Kunde"


class Profile(BaseModel):
    """Issuing user's company profile."""

    model_config = _LOOSE

    id: str
    company_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    country: str | None = None
    vat_number: str | None = None
    email: str | None = None
    website: str | None = None

    @property
    def display_name(self) -> str:
        if self.company_name:
            return self.company_name
        full_name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full_name or "GLENO-Partner"


class BillingSettings(BaseModel):
    model_config = _LOOSE

    user_id: str | None = None
    template: str | None = None
    account_holder: str | None = None
    iban: str | None = None
    bic: str | None = None
    billing_email: str | None = None
    billing_phone: str | None = None
    invoice_prefix: str = ""
    invoice_suffix: str = ""
    invoice_start: int = Field(default=1, ge=0)

    @field_validator("invoice_prefix", "invoice_suffix", mode="before")
    def _none_to_blank(cls, value: object) -> object:
        return "" if value is None else value


class Supplier(BaseModel):
    """Seller data required on an e-invoice."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    company_name: str = ""
    street: str = ""
    house_number: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = "DE"
    vat_number: str = ""
    iban: str = ""
    bic: str = ""
    email: str | None = None
    phone: str | None = None

    @classmethod
    def from_profile(cls, profile: Profile, settings: BillingSettings) -> "Supplier":
        company_name = profile.company_name or " ".join(
            part for part in (profile.first_name, profile.last_name) if part
        )
        return cls(
            company_name=company_name or "",
            street=profile.street or "",
            house_number=profile.house_number or "",
            postal_code=profile.postal_code or "",
            city=profile.city or "",
            country=(profile.country or "DE").upper(),
            vat_number=(profile.vat_number or "").upper(),
            iban=re.sub(r"\s+", "", settings.iban or ""),
            bic=re.sub(r"\s+", "", settings.bic or "").upper(),
            email=settings.billing_email or profile.email or None,
            phone=settings.billing_phone or None,
        )


# --------------------------------------------------------------------------
# Invoices
# --------------------------------------------------------------------------


class Invoice(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="forbid",
    )

    id: str
    user_id: str
    customer_id: str | None = None
    invoice_number: str = Field(min_length=1, max_length=128)
    date: dt.date
    due_date: dt.date | None = None
    title: str | None = Field(default=None, max_length=500)
    intro: str | None = Field(default=None, max_length=8000)
    status: str | None = STATUS_CREATED
    status_changed_at: datetime | None = None

    positions: list[LineItem] = Field(default_factory=list)
    discount: Discount = Field(default_factory=Discount)
    tax_rate: DecimalValue = ZERO
    currency: str = "EUR"
    totals: InvoiceTotals = Field(default_factory=InvoiceTotals)

    pdf_path: str | None = None
    idempotency_key: str | None = None

    is_cancellation: bool = False
    cancels_invoice_number: str | None = None
    cancelled_by_invoice_number: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None

    created_at: datetime | None = None

    @field_validator("currency", mode="before")
    def _upper_currency(cls, value: object) -> object:
        if value is None:
            return "EUR"
        return str(value).strip().upper() or "EUR"

    @property
    def is_cancelled(self) -> bool:
        return (self.status or "").strip().lower() == STATUS_CANCELLED.lower()

    def item_lines(self) -> list[ItemLine]:
        return [line for line in self.positions if isinstance(line, ItemLine)]

    def to_index_entry(self) -> dict[str, object]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "date": self.date.isoformat(),
            "status": self.status,
            "gross_total": str(self.totals.gross_total),
            "currency": self.currency,
            "idempotency_key": self.idempotency_key,
            "is_cancellation": self.is_cancellation,
            "cancels_invoice_number": self.cancels_invoice_number,
            "cancelled_by_invoice_number": self.cancelled_by_invoice_number,
        }


class BillingTemplateRef(BaseModel):
    model_config = _LOOSE

    template: str | None = None


class GenerationMeta(BaseModel):
    """``meta`` block of an invoice generation request."""

    model_config = _LOOSE

    date: dt.date | None = None
    title: str | None = None
    intro: str | None = None
    tax_rate: DecimalValue = Field(default=ZERO, alias="taxRate")
    currency: str = "EUR"
    billing_settings: BillingTemplateRef = Field(
        default_factory=BillingTemplateRef, alias="billingSettings"
    )
    discount: Discount = Field(default_factory=Discount)
    commit: bool = False
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    is_cancellation: bool = Field(default=False, alias="isCancellation")
    cancels_invoice_number: str | None = Field(default=None, alias="cancelsInvoiceNumber")
    cancellation_reason: str | None = Field(default=None, alias="cancellationReason")

    @field_validator("date", mode="before")
    def _parse_date(cls, value: object) -> dt.date | None:
        return coerce_date(value)

    @field_validator("discount", mode="before")
    def _none_discount(cls, value: object) -> object:
        return {} if value is None else value

    @field_validator("billing_settings", mode="before")
    def _none_settings(cls, value: object) -> object:
        return {} if value is None else value


class GenerationRequest(BaseModel):
    model_config = _LOOSE

    customer: Customer | None = None
    positions: list[LineItem] = Field(default_factory=list)
    meta: GenerationMeta = Field(default_factory=GenerationMeta)

    @field_validator("positions", mode="before")
    def _none_positions(cls, value: object) -> object:
        return [] if value is None else value


# --------------------------------------------------------------------------
# Automations and cancellation step log
# --------------------------------------------------------------------------


class Automation(BaseModel):
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="ignore",
    )

    id: str
    user_id: str
    source_invoice_id: str
    source_invoice_number: str | None = None
    interval: IntervalKey = DEFAULT_INTERVAL
    start_date: date | None = None
    next_run_date: date | None = None
    end_date: date | None = None
    active: bool = True
    last_run_date: date | None = None
    label: str | None = Field(default=None, max_length=256)
    processing_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("interval", mode="before")
    def _fallback_interval(cls, value: object) -> object:
        if isinstance(value, str) and value.strip() in INTERVAL_KEYS:
            return value.strip()
        return DEFAULT_INTERVAL


class CancellationStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    completed_at: datetime


class CancellationLog(BaseModel):
    """Persisted progress of one cancellation; lets a crashed run resume."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    user_id: str
    original_invoice_number: str
    reason: str | None = None
    steps: list[CancellationStep] = Field(default_factory=list)
    current: int = 0
    cancellation_invoice_number: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has_completed(self, step: str) -> bool:
        return any(entry.name == step for entry in self.steps)


__all__ = [
    "Automation",
    "BillingSettings",
    "CancellationLog",
    "CancellationStep",
    "Customer",
    "DEFAULT_INTERVAL",
    "DescriptionLine",
    "Discount",
    "GenerationMeta",
    "GenerationRequest",
    "HeadingLine",
    "INTERVAL_KEYS",
    "IntervalKey",
    "Invoice",
    "InvoiceTotals",
    "ItemLine",
    "LineItem",
    "MANUAL_STATUSES",
    "Profile",
    "STATUS_CANCELLED",
    "STATUS_CREATED",
    "STATUS_PAID",
    "STATUS_SENT",
    "SeparatorLine",
    "SubtotalLine",
    "Supplier",
    "coerce_date",
    "parse_positions",
]
