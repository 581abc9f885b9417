"""Cancellation ("Storno") workflow.

A cancellation is a new invoice whose item prices are the negated,
discount-allocated prices of the original, so its totals exactly reverse the
original's. The workflow spans several writes; progress is kept in a
:class:`CancellationLog` so a failed run resumes at the first unfinished step
instead of starting over.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from mcp.server.fastmcp import FastMCP

from ..utils.logging import record_write_attempt
from .billing_models import (
    STATUS_CANCELLED,
    STATUS_CREATED,
    CancellationLog,
    CancellationStep,
    Customer,
    Invoice,
)
from .errors import Conflict, ValidationFailed, WorkflowFailed, require_writes_enabled
from .generation import generate_invoice, get_billing_settings, get_invoice
from .pricing import allocate_discount, negate_items
from .storage import (
    find_cancellations_of,
    find_invoice_by_number,
    load_cancellation_log,
    load_customer,
    save_cancellation_log,
    save_invoice,
    storage_lock,
)

_LOGGER = logging.getLogger("rechnung.backends.cancellation")

STEP_LOAD_CONTEXT = "load_context"
STEP_GENERATE = "generate"
STEP_LOCATE = "locate"
STEP_MARK_ORIGINAL = "mark_original"
STEP_MARK_CANCELLATION = "mark_cancellation"
STEP_DONE = "done"
STEPS = (
    STEP_LOAD_CONTEXT,
    STEP_GENERATE,
    STEP_LOCATE,
    STEP_MARK_ORIGINAL,
    STEP_MARK_CANCELLATION,
    STEP_DONE,
)


@dataclass(frozen=True)
class CancellationResult:
    cancellation_invoice_number: str
    existing: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ok": True,
            "cancellationInvoiceNumber": self.cancellation_invoice_number,
        }
        if self.existing:
            payload["message"] = "Stornorechnung existiert bereits."
        return payload


@dataclass
class _Context:
    original: Invoice
    customer: Customer
    template: str
    reason: str | None
    today: date


def cancellation_key(invoice_number: str) -> str:
    return f"cancel:{invoice_number}"


def cancellation_intro(invoice_number: str, reason: str | None, intro: str | None) -> str:
    text = f"STORNO zu Rechnung {invoice_number}. "
    if reason:
        text += f"Grund: {reason}. "
    if intro:
        text += f"\n\n{intro}"
    return text


def _existing_cancellation(user_id: str, original: Invoice, root: Optional[Path]) -> Invoice | None:
    for candidate in find_cancellations_of(user_id, original.invoice_number, root):
        if candidate.is_cancellation:
            return candidate
    if original.cancelled_by_invoice_number:
        return find_invoice_by_number(user_id, original.cancelled_by_invoice_number, root)
    return None


def _load_context(
    user_id: str, original: Invoice, reason: str | None, today: date, root: Optional[Path]
) -> _Context:
    settings = get_billing_settings(user_id, root)
    if not settings.template:
        raise ValidationFailed(
            "Kein Rechnungstemplate gesetzt (billing_settings.template).",
            reason="billing_template_missing",
        )
    if not original.customer_id:
        raise ValidationFailed(
            f"Rechnung {original.invoice_number} hat keinen Kunden", reason="missing_customer"
        )
    try:
        customer = load_customer(user_id, original.customer_id, root)
    except FileNotFoundError:
        customer = Customer(id=original.customer_id)
    return _Context(
        original=original, customer=customer, template=settings.template, reason=reason, today=today
    )


def build_cancellation_request(context: _Context) -> Dict[str, Any]:
    """Generation request for the reversing invoice of ``context.original``."""

    original = context.original
    allocated = allocate_discount(original.positions, original.discount, original.tax_rate)
    positions = negate_items(allocated)
    return {
        "customer": context.customer,
        "positions": positions,
        "meta": {
            "date": context.today,
            "title": f"Stornorechnung zu {original.invoice_number}",
            "intro": cancellation_intro(original.invoice_number, context.reason, original.intro),
            "taxRate": original.tax_rate,
            "currency": original.currency,
            "billingSettings": {"template": context.template},
            "discount": original.discount.disabled_copy(),
            "commit": True,
            "idempotencyKey": cancellation_key(original.invoice_number),
            "isCancellation": True,
            "cancelsInvoiceNumber": original.invoice_number,
            "cancellationReason": context.reason,
        },
    }


def _complete(log: CancellationLog, step: str, root: Optional[Path]) -> None:
    now = datetime.now(timezone.utc)
    log.steps = [*log.steps, CancellationStep(name=step, completed_at=now)]
    log.current = STEPS.index(step) + 1
    log.updated_at = now
    save_cancellation_log(log, root)
    _LOGGER.debug(
        "cancellation.step",
        extra={"invoice_number": log.original_invoice_number, "step": step},
    )


def _mark_original(user_id: str, invoice_number: str, cancel_number: str, root: Optional[Path]) -> None:
    now = datetime.now(timezone.utc)
    with storage_lock(root):
        original = get_invoice(user_id, invoice_number, root)
        updated = original.model_copy(
            update={
                "status": STATUS_CANCELLED,
                "status_changed_at": now,
                "cancelled_by_invoice_number": cancel_number,
                "cancelled_at": now,
            }
        )
        save_invoice(updated, root)


def _mark_cancellation(
    user_id: str, invoice_number: str, cancel_number: str, reason: str | None, root: Optional[Path]
) -> None:
    with storage_lock(root):
        cancellation = find_invoice_by_number(user_id, cancel_number, root)
        if cancellation is None:
            raise WorkflowFailed(
                f"Stornorechnung {cancel_number} wurde nicht gefunden.",
                reason="cancellation_not_found",
            )
        updated = cancellation.model_copy(
            update={
                "is_cancellation": True,
                "cancels_invoice_number": invoice_number,
                "cancellation_reason": reason,
                "status": STATUS_CREATED,
                "status_changed_at": datetime.now(timezone.utc),
            }
        )
        save_invoice(updated, root)

    stored = find_invoice_by_number(user_id, cancel_number, root)
    if stored is None or stored.status != STATUS_CREATED:
        raise WorkflowFailed(
            "Stornorechnung Status konnte nicht gesetzt werden "
            f"(aktuell: {stored.status if stored else None}).",
            reason="cancellation_status_mismatch",
        )


def cancel_invoice(
    user_id: str,
    invoice_number: str,
    reason: str | None = None,
    *,
    root: Optional[Path] = None,
    today: date | None = None,
    before_step: Callable[[str], None] | None = None,
) -> CancellationResult:
    """Cancel ``invoice_number`` by issuing a reversing invoice.

    Repeating the call after success returns the existing cancellation. If an
    earlier call stopped half way, the persisted step log is resumed.
    ``before_step`` is invoked with each step name before it runs.
    """

    original = get_invoice(user_id, invoice_number, root)
    number = original.invoice_number
    reason = (reason or "").strip() or None

    if original.is_cancellation:
        raise Conflict(
            "Eine Stornorechnung kann nicht erneut storniert werden.",
            reason="cannot_cancel_a_cancellation",
        )

    log = load_cancellation_log(user_id, number, root)
    if log is not None and not log.has_completed(STEP_DONE):
        _LOGGER.info(
            "cancellation.resume",
            extra={"invoice_number": number, "completed": [step.name for step in log.steps]},
        )
        reason = log.reason
    else:
        existing = _existing_cancellation(user_id, original, root)
        if existing is not None:
            _LOGGER.info(
                "cancellation.exists",
                extra={"invoice_number": number, "cancellation": existing.invoice_number},
            )
            return CancellationResult(existing.invoice_number, existing=True)
        if original.is_cancelled:
            raise Conflict("Diese Rechnung ist bereits storniert.", reason="already_cancelled")
        log = None

    def _enter(step: str) -> bool:
        if log.has_completed(step):
            return False
        if before_step is not None:
            before_step(step)
        return True

    # Context is pure reads; it is rebuilt on every run and only the
    # generate step consumes it.
    context = _load_context(user_id, original, reason, today or date.today(), root)
    if log is None:
        now = datetime.now(timezone.utc)
        log = CancellationLog(
            user_id=user_id,
            original_invoice_number=number,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        save_cancellation_log(log, root)
    if _enter(STEP_LOAD_CONTEXT):
        _complete(log, STEP_LOAD_CONTEXT, root)

    if _enter(STEP_GENERATE):
        result = generate_invoice(user_id, build_cancellation_request(context), root=root)
        log.cancellation_invoice_number = result.invoice_number
        _complete(log, STEP_GENERATE, root)

    cancel_number = log.cancellation_invoice_number
    if not cancel_number:
        raise WorkflowFailed(
            "Keine Storno-Rechnungsnummer erhalten", reason="cancellation_not_found"
        )

    if _enter(STEP_LOCATE):
        if find_invoice_by_number(user_id, cancel_number, root) is None:
            raise WorkflowFailed(
                f"Stornorechnung wurde nicht gefunden (invoice_number: {cancel_number}).",
                reason="cancellation_not_found",
            )
        _complete(log, STEP_LOCATE, root)

    if _enter(STEP_MARK_ORIGINAL):
        _mark_original(user_id, number, cancel_number, root)
        _complete(log, STEP_MARK_ORIGINAL, root)

    if _enter(STEP_MARK_CANCELLATION):
        _mark_cancellation(user_id, number, cancel_number, reason, root)
        _complete(log, STEP_MARK_CANCELLATION, root)

    if _enter(STEP_DONE):
        _complete(log, STEP_DONE, root)

    _LOGGER.info(
        "cancellation.completed",
        extra={"invoice_number": number, "cancellation": cancel_number},
    )
    return CancellationResult(cancel_number, existing=False)


def cancel_invoice_impl(user_id: str, invoice_number: str, reason: str | None = None) -> Dict[str, Any]:
    require_writes_enabled()
    record_write_attempt("cancel_invoice", user_id=user_id, invoice_number=invoice_number)
    return cancel_invoice(user_id, invoice_number, reason).to_payload()


def register(server: FastMCP) -> None:
    """Register cancellation tools."""

    @server.tool(name="cancel_invoice")
    def cancel_invoice_tool(
        user_id: str, invoice_number: str, reason: str | None = None
    ) -> Dict[str, Any]:
        """Cancel an invoice by issuing a reversing cancellation invoice (Stornorechnung).

        - The original keeps its number and is marked 'Storniert'.
        - Calling again for the same invoice returns the existing cancellation.
        - Cancellation invoices themselves cannot be cancelled.
        """

        return cancel_invoice_impl(user_id, invoice_number, reason)


__all__ = [
    "CancellationResult",
    "STEPS",
    "build_cancellation_request",
    "cancel_invoice",
    "cancel_invoice_impl",
    "cancellation_intro",
    "cancellation_key",
    "register",
]
