"""Invoice generation: numbering, totals and idempotent persistence."""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from ..utils.logging import record_write_attempt
from .billing_models import (
    MANUAL_STATUSES,
    STATUS_CREATED,
    BillingSettings,
    GenerationRequest,
    Invoice,
    ItemLine,
)
from .errors import (
    Conflict,
    NotFound,
    ValidationFailed,
    describe_validation_error,
    require_writes_enabled,
)
from .pricing import compute_totals
from .storage import (
    find_invoice_by_idempotency_key,
    find_invoice_by_number,
    load_billing_settings,
    load_customer,
    next_invoice_number,
    peek_invoice_number,
    save_customer,
    save_invoice,
    storage_lock,
)

_LOGGER = logging.getLogger("rechnung.backends.generation")

DUE_DAYS = 14
PREVIEW_NUMBER = "Vorschau"


@dataclass(frozen=True)
class GenerationResult:
    invoice_number: str | None
    invoice: Invoice
    created: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "invoiceNumber": self.invoice_number,
            "created": self.created,
            "invoice": self.invoice.model_dump(mode="json"),
        }


def parse_generation_request(payload: Any) -> GenerationRequest:
    """Validate a ``{customer, positions, meta}`` payload.

    Discount problems are reported as ``invalid_discount`` so callers can tell
    them apart from other malformed input.
    """

    if isinstance(payload, GenerationRequest):
        return payload
    try:
        return GenerationRequest.model_validate(payload or {})
    except ValidationError as exc:
        reason = "invalid_payload"
        if any("discount" in error.get("loc", ()) for error in exc.errors()):
            reason = "invalid_discount"
        raise ValidationFailed(describe_validation_error(exc), reason=reason) from exc


def get_invoice(user_id: str, invoice_number: str, root: Optional[Path] = None) -> Invoice:
    """Load an invoice by number with consistent error handling."""

    normalized = str(invoice_number).strip() if invoice_number is not None else ""
    if not normalized:
        raise ValidationFailed("invoiceNumber is required", reason="missing_invoice_number")

    try:
        invoice = find_invoice_by_number(user_id, normalized, root)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise NotFound(f"Invoice {normalized} is invalid", reason="invoice_invalid") from exc
    if invoice is None:
        raise NotFound(f"Invoice {normalized} not found", reason="invoice_not_found")
    return invoice


def get_billing_settings(user_id: str, root: Optional[Path] = None) -> BillingSettings:
    try:
        return load_billing_settings(user_id, root)
    except FileNotFoundError:
        return BillingSettings(user_id=user_id)


def generate_invoice(
    user_id: str,
    request: Any,
    *,
    root: Optional[Path] = None,
    today: date | None = None,
) -> GenerationResult:
    """Create an invoice from ``{customer, positions, meta}``.

    With ``meta.commit`` unset the invoice is only previewed: totals are
    computed but nothing is numbered or persisted. Committed requests are
    idempotent per ``(user_id, meta.idempotencyKey)``.
    """

    req = parse_generation_request(request)
    if req.customer is None:
        raise ValidationFailed("Kunde fehlt", reason="missing_customer")
    if not req.positions:
        raise ValidationFailed("Positionen fehlen", reason="missing_positions")

    meta = req.meta
    if not meta.billing_settings.template:
        raise ValidationFailed(
            "Kein Rechnungs-Template hinterlegt", reason="billing_template_missing"
        )

    invoice_date = meta.date or today or date.today()
    totals = compute_totals(req.positions, meta.discount, meta.tax_rate)
    fields: Dict[str, Any] = {
        "user_id": user_id,
        "customer_id": req.customer.id,
        "date": invoice_date,
        "due_date": invoice_date + timedelta(days=DUE_DAYS),
        "title": meta.title,
        "intro": meta.intro,
        "status": STATUS_CREATED,
        "positions": req.positions,
        "discount": meta.discount,
        "tax_rate": meta.tax_rate,
        "currency": meta.currency,
        "totals": totals,
        "is_cancellation": meta.is_cancellation,
        "cancels_invoice_number": meta.cancels_invoice_number,
        "cancellation_reason": meta.cancellation_reason,
    }

    if not meta.commit:
        preview = Invoice(id="preview", invoice_number=PREVIEW_NUMBER, **fields)
        return GenerationResult(invoice_number=None, invoice=preview, created=False)

    key = (meta.idempotency_key or "").strip()
    if not key:
        raise ValidationFailed("idempotencyKey fehlt", reason="missing_idempotency_key")

    with storage_lock(root):
        existing = find_invoice_by_idempotency_key(user_id, key, root)
        if existing is not None:
            _LOGGER.info(
                "invoice.idempotent_hit",
                extra={"user_id": user_id, "invoice_number": existing.invoice_number},
            )
            return GenerationResult(
                invoice_number=existing.invoice_number, invoice=existing, created=False
            )

        settings = get_billing_settings(user_id, root)
        number = next_invoice_number(user_id, settings, root)
        if find_invoice_by_number(user_id, number, root) is not None:
            raise Conflict(
                f"Invoice number {number} is already taken", reason="duplicate_invoice_number"
            )

        now = datetime.now(timezone.utc)
        invoice = Invoice(
            id=uuid.uuid4().hex,
            invoice_number=number,
            idempotency_key=key,
            created_at=now,
            status_changed_at=now,
            **fields,
        )
        save_invoice(invoice, root)
        try:
            load_customer(user_id, req.customer.id, root)
        except FileNotFoundError:
            save_customer(req.customer, user_id, root)

    record_write_attempt("generate_invoice", user_id=user_id, invoice_number=number)
    _LOGGER.info(
        "invoice.created",
        extra={
            "user_id": user_id,
            "invoice_number": number,
            "items": sum(1 for line in invoice.positions if isinstance(line, ItemLine)),
            "gross_total": str(totals.gross_total),
        },
    )
    return GenerationResult(invoice_number=number, invoice=invoice, created=True)


def generate_invoice_impl(user_id: str, payload: Any) -> Dict[str, Any]:
    """Tool/route entry point: previews are free, commits need writes enabled."""

    req = parse_generation_request(payload)
    if req.meta.commit:
        require_writes_enabled()
    return generate_invoice(user_id, req).to_payload()


def set_invoice_status(
    user_id: str,
    invoice_number: str,
    status: str | None,
    *,
    root: Optional[Path] = None,
    now: datetime | None = None,
) -> Invoice:
    """Set a manual status (Erstellt, Verschickt, Bezahlt) on an invoice.

    Cancelled invoices and cancellation invoices keep the status the
    cancellation workflow gave them.
    """

    normalized = (status or "").strip()
    if normalized not in MANUAL_STATUSES:
        raise ValidationFailed(f"Ungültiger Status: {status!r}", reason="invalid_status")

    with storage_lock(root):
        invoice = get_invoice(user_id, invoice_number, root)
        if invoice.is_cancelled:
            raise Conflict(
                f"Rechnung {invoice.invoice_number} ist storniert.", reason="already_cancelled"
            )
        if invoice.is_cancellation:
            raise Conflict(
                "Der Status einer Stornorechnung kann nicht geändert werden.",
                reason="cancellation_status_locked",
            )
        updated = invoice.model_copy(
            update={
                "status": normalized,
                "status_changed_at": now or datetime.now(timezone.utc),
            }
        )
        save_invoice(updated, root)

    _LOGGER.info(
        "invoice.status_changed",
        extra={"user_id": user_id, "invoice_number": invoice.invoice_number, "status": normalized},
    )
    return updated


def set_invoice_status_impl(user_id: str, invoice_number: str, status: str | None) -> Dict[str, Any]:
    require_writes_enabled()
    record_write_attempt(
        "set_invoice_status", user_id=user_id, invoice_number=invoice_number, status=status
    )
    invoice = set_invoice_status(user_id, invoice_number, status)
    return {"ok": True, "invoiceNumber": invoice.invoice_number, "status": invoice.status}


def preview_next_invoice_number(user_id: str, root: Optional[Path] = None) -> Dict[str, str]:
    settings = get_billing_settings(user_id, root)
    return {"nextNumber": peek_invoice_number(user_id, settings, root)}


def register(server: FastMCP) -> None:
    """Register invoice generation tools."""

    @server.tool(name="generate_invoice")
    def generate_invoice_tool(
        user_id: str,
        customer: Dict[str, Any],
        positions: list[Dict[str, Any]],
        meta: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Preview or create an invoice.

        - positions: list of {type: item|heading|description|subtotal|separator,
          description, quantity, unitPrice, unit}. Only items are priced.
        - meta.taxRate is a percentage (19 = 19 %); meta.discount is
          {enabled, type: percent|amount, base: net|gross, value}.
        - meta.commit=false (default) previews totals without numbering.
        - meta.commit=true persists the invoice and requires meta.idempotencyKey;
          repeating a key returns the invoice created the first time.
        """

        return generate_invoice_impl(
            user_id, {"customer": customer, "positions": positions, "meta": meta or {}}
        )

    @server.tool(name="get_invoice")
    def get_invoice_tool(user_id: str, invoice_number: str) -> Dict[str, Any]:
        """Read a full invoice JSON payload by invoice number (read-only)."""

        return get_invoice(user_id, invoice_number).model_dump(mode="json")

    @server.tool(name="set_invoice_status")
    def set_invoice_status_tool(user_id: str, invoice_number: str, status: str) -> Dict[str, Any]:
        """Set an invoice to Erstellt, Verschickt or Bezahlt.

        Storniert is reserved for cancel_invoice; cancelled invoices and
        cancellation invoices cannot be changed here.
        """

        return set_invoice_status_impl(user_id, invoice_number, status)

    @server.tool(name="get_next_invoice_number")
    def get_next_invoice_number_tool(user_id: str) -> Dict[str, str]:
        """Preview the next invoice number without reserving it (read-only)."""

        return preview_next_invoice_number(user_id)


__all__ = [
    "DUE_DAYS",
    "GenerationResult",
    "generate_invoice",
    "generate_invoice_impl",
    "get_billing_settings",
    "get_invoice",
    "parse_generation_request",
    "preview_next_invoice_number",
    "register",
    "set_invoice_status",
    "set_invoice_status_impl",
]
