"""Recurring invoices: schedule arithmetic, the due-automation runner and
automation management."""
from __future__ import annotations

import calendar
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from ..utils import config
from ..utils.logging import record_write_attempt
from .billing_models import (
    DEFAULT_INTERVAL,
    INTERVAL_KEYS,
    Automation,
    Customer,
    Invoice,
    Profile,
    coerce_date,
)
from .errors import (
    NotFound,
    Unauthorized,
    ValidationFailed,
    WorkflowFailed,
    require_writes_enabled,
)
from .generation import generate_invoice, get_billing_settings, get_invoice
from .notifications import (
    BrevoMailer,
    InvoiceMail,
    NotificationFailed,
    invoice_mail_subject,
    load_invoice_pdf_base64,
    render_invoice_mail,
)
from .storage import (
    claim_automation,
    find_automation_for_invoice,
    find_invoice_by_idempotency_key,
    list_due_automations,
    load_customer,
    load_invoice,
    load_profile,
    release_automation,
    save_automation,
    storage_lock,
)

_LOGGER = logging.getLogger("rechnung.backends.automations")

# interval key -> (unit, amount)
INTERVALS: dict[str, tuple[str, int]] = {
    "weekly": ("days", 7),
    "every_2_weeks": ("days", 14),
    "monthly": ("months", 1),
    "every_2_months": ("months", 2),
    "quarterly": ("months", 3),
    "every_6_months": ("months", 6),
    "yearly": ("months", 12),
}

INTERVAL_LABELS: dict[str, str] = {
    "weekly": "wöchentlich",
    "every_2_weeks": "alle 2 Wochen",
    "monthly": "monatlich",
    "every_2_months": "alle 2 Monate",
    "quarterly": "vierteljährlich",
    "every_6_months": "halbjährlich",
    "yearly": "jährlich",
}


def normalize_interval(interval: str | None) -> str:
    key = (interval or "").strip()
    return key if key in INTERVAL_KEYS else DEFAULT_INTERVAL


def interval_label(interval: str | None) -> str:
    return INTERVAL_LABELS[normalize_interval(interval)]


def add_months(value: date, months: int) -> date:
    """Shift by whole months, clamping to the target month's last day."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(run_date: date, interval: str | None) -> date:
    unit, amount = INTERVALS[normalize_interval(interval)]
    if unit == "days":
        return run_date + timedelta(days=amount)
    return add_months(run_date, amount)


def next_state(automation: Automation, run_date: date) -> dict[str, Any]:
    """Fields to persist after a successful run on ``run_date``."""

    if automation.end_date is not None and run_date >= automation.end_date:
        return {"last_run_date": run_date, "next_run_date": None, "active": False}
    return {
        "last_run_date": run_date,
        "next_run_date": advance(run_date, automation.interval),
        "active": automation.active,
    }


@dataclass
class RunSummary:
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "skippedCount": self.skipped_count,
        }


def check_runner_token(token: str | None) -> None:
    secret = config.automation_secret()
    if not secret:
        raise Unauthorized(
            "INVOICE_AUTOMATION_SECRET is not configured", reason="automation_secret_missing"
        )
    if not hmac.compare_digest((token or "").encode("utf-8"), secret.encode("utf-8")):
        raise Unauthorized("Unauthorized", reason="unauthorized")


def _load_source(automation: Automation, root: Optional[Path]) -> tuple[Invoice, Customer]:
    user_id = automation.user_id
    try:
        source = load_invoice(user_id, automation.source_invoice_id, root)
    except FileNotFoundError as exc:
        raise NotFound(
            f"Source invoice {automation.source_invoice_id} not found",
            reason="invoice_not_found",
        ) from exc
    if not source.customer_id:
        raise ValidationFailed(
            f"Invoice {source.invoice_number} has no customer", reason="invoice_without_customer"
        )
    try:
        customer = load_customer(user_id, source.customer_id, root)
    except FileNotFoundError as exc:
        raise NotFound(
            f"Customer {source.customer_id} not found", reason="customer_not_found"
        ) from exc
    return source, customer


def _partner_name(user_id: str, root: Optional[Path]) -> str:
    try:
        return load_profile(user_id, root).display_name
    except FileNotFoundError:
        return Profile(id=user_id).display_name


def _notify(
    automation: Automation,
    customer: Customer,
    invoice: Invoice,
    mailer: BrevoMailer,
    root: Optional[Path],
) -> bool:
    """Send the invoice mail; ``False`` when sending was attempted and failed."""

    if not customer.email:
        _LOGGER.info(
            "automation.notify_skipped",
            extra={"automation_id": automation.id, "reason": "no_email"},
        )
        return True
    if customer.auto_send_invoices is False:
        _LOGGER.info(
            "automation.notify_skipped",
            extra={"automation_id": automation.id, "reason": "opt_out"},
        )
        return True

    try:
        partner = _partner_name(automation.user_id, root)
        html = render_invoice_mail(
            customer_name=customer.display_name,
            partner_name=partner,
            invoice_number=invoice.invoice_number,
            amount_gross=invoice.totals.gross_total,
            interval_label=interval_label(automation.interval),
            run_date=invoice.date,
        )
        mail = InvoiceMail(
            to=customer.email,
            subject=invoice_mail_subject(partner),
            html=html,
            invoice_number=invoice.invoice_number,
            pdf_base64=load_invoice_pdf_base64(invoice.pdf_path, root),
        )
        mailer.send(mail)
    except NotificationFailed as exc:
        _LOGGER.error(
            "automation.notify_failed",
            extra={"automation_id": automation.id, "error": exc.message},
        )
        return False
    except Exception:
        _LOGGER.exception("automation.notify_failed", extra={"automation_id": automation.id})
        return False
    return True


def run_automation(
    automation: Automation,
    today: date,
    *,
    mailer: BrevoMailer,
    root: Optional[Path] = None,
) -> tuple[dict[str, Any], bool]:
    """Generate, notify and compute the next schedule for one automation.

    Returns the schedule updates and whether the notification went through.
    A failed mail does not stop the schedule from advancing.
    """

    source, customer = _load_source(automation, root)
    settings = get_billing_settings(automation.user_id, root)

    run_date = automation.next_run_date or today
    key = f"{automation.id}_{run_date.isoformat()}"
    generate_invoice(
        automation.user_id,
        {
            "customer": customer,
            "positions": source.positions,
            "meta": {
                "date": run_date,
                "title": source.title,
                "intro": source.intro,
                "taxRate": source.tax_rate,
                "currency": source.currency,
                "billingSettings": {"template": settings.template},
                "discount": source.discount,
                "commit": True,
                "idempotencyKey": key,
            },
        },
        root=root,
    )

    generated = find_invoice_by_idempotency_key(automation.user_id, key, root)
    if generated is None:
        raise WorkflowFailed(
            f"generated invoice for {key} not found", reason="generated_invoice_not_found"
        )

    notified = _notify(automation, customer, generated, mailer, root)
    return next_state(automation, run_date), notified


def _clear_lease(automation_id: str, root: Optional[Path]) -> None:
    try:
        release_automation(automation_id, root)
    except Exception:
        _LOGGER.exception("automation.release_failed", extra={"automation_id": automation_id})


def run_due_automations(
    token: str | None,
    today: date | None = None,
    *,
    root: Optional[Path] = None,
    mailer: BrevoMailer | None = None,
    now: datetime | None = None,
) -> RunSummary:
    """Process every active automation due on or before ``today``.

    Each automation is claimed with a lease first, so overlapping runs never
    process the same one twice. A failure is counted and the batch moves on;
    a failed notification counts as an error even though the schedule advanced.
    """

    check_runner_token(token)
    today = today or date.today()
    mailer = mailer or BrevoMailer()
    lease = config.automation_lease_seconds()

    try:
        due = list_due_automations(today, root)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise WorkflowFailed(
            f"Automations could not be listed: {exc}", reason="automation_listing_failed"
        ) from exc

    summary = RunSummary()
    for automation in due:
        claimed: Automation | None = None
        try:
            claimed = claim_automation(
                automation.id,
                lease_seconds=lease,
                now=now or datetime.now(timezone.utc),
                root=root,
            )
            if claimed is None:
                _LOGGER.info("automation.skipped", extra={"automation_id": automation.id})
                summary.skipped_count += 1
                continue
            updates, notified = run_automation(claimed, today, mailer=mailer, root=root)
            release_automation(claimed.id, root, **updates)
        except Exception:
            _LOGGER.exception("automation.failed", extra={"automation_id": automation.id})
            summary.error_count += 1
            if claimed is not None:
                _clear_lease(claimed.id, root)
            continue
        if notified:
            summary.success_count += 1
        else:
            summary.error_count += 1

    _LOGGER.info(
        "automation.run_finished",
        extra={
            "success": summary.success_count,
            "errors": summary.error_count,
            "skipped": summary.skipped_count,
        },
    )
    return summary


# --------------------------------------------------------------------------
# Automation management
# --------------------------------------------------------------------------


def _parse_date_field(value: object, *, reason: str, label: str) -> date | None:
    try:
        return coerce_date(value)
    except ValueError as exc:
        raise ValidationFailed(f"Ungültiges {label}", reason=reason) from exc


def upsert_automation(
    user_id: str,
    invoice_number: str,
    *,
    start_date: object = None,
    end_date: object = None,
    interval: str | None = None,
    unlimited: bool = False,
    label: str | None = None,
    root: Optional[Path] = None,
) -> Automation:
    """Create or reschedule the automation that repeats ``invoice_number``.

    Rescheduling always restarts from ``start_date`` (default: the invoice
    date). ``unlimited`` or a blank ``end_date`` removes the end.
    """

    invoice = get_invoice(user_id, invoice_number, root)
    start = _parse_date_field(start_date, reason="invalid_start_date", label="Startdatum")
    start = start or invoice.date
    end = None
    if not unlimited and end_date not in (None, ""):
        end = _parse_date_field(end_date, reason="invalid_end_date", label="Enddatum")

    now = datetime.now(timezone.utc)
    with storage_lock(root):
        existing = find_automation_for_invoice(user_id, invoice.id, root)
        if existing is not None:
            automation = existing.model_copy(
                update={
                    "start_date": start,
                    "end_date": end,
                    "interval": normalize_interval(interval),
                    "active": True,
                    "next_run_date": start,
                    "label": label if label is not None else existing.label,
                    "updated_at": now,
                }
            )
        else:
            automation = Automation(
                id=uuid.uuid4().hex,
                user_id=user_id,
                source_invoice_id=invoice.id,
                source_invoice_number=invoice.invoice_number,
                interval=normalize_interval(interval),
                start_date=start,
                next_run_date=start,
                end_date=end,
                active=True,
                label=label,
                created_at=now,
                updated_at=now,
            )
        save_automation(automation, root)

    _LOGGER.info(
        "automation.saved",
        extra={"automation_id": automation.id, "invoice_number": invoice.invoice_number},
    )
    return automation


def get_automation(
    user_id: str, invoice_number: str, root: Optional[Path] = None
) -> Dict[str, Any]:
    invoice = get_invoice(user_id, invoice_number, root)
    automation = find_automation_for_invoice(user_id, invoice.id, root)
    return {
        "invoice": {
            "id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "date": invoice.date.isoformat(),
            "title": invoice.title,
            "gross_total": str(invoice.totals.gross_total),
            "customer_id": invoice.customer_id,
        },
        "automation": automation.model_dump(mode="json") if automation else None,
    }


def deactivate_automation(
    user_id: str, invoice_number: str, root: Optional[Path] = None
) -> Dict[str, Any]:
    invoice = get_invoice(user_id, invoice_number, root)
    with storage_lock(root):
        automation = find_automation_for_invoice(user_id, invoice.id, root)
        if automation is not None and automation.active:
            save_automation(
                automation.model_copy(
                    update={"active": False, "updated_at": datetime.now(timezone.utc)}
                ),
                root,
            )
    return {"ok": True}


def run_due_automations_impl(token: str | None) -> Dict[str, Any]:
    summary = run_due_automations(token)
    record_write_attempt(
        "run_invoice_automations",
        success=summary.success_count,
        errors=summary.error_count,
    )
    return summary.to_payload()


def save_automation_impl(user_id: str, invoice_number: str, **options: Any) -> Dict[str, Any]:
    require_writes_enabled()
    record_write_attempt("save_invoice_automation", user_id=user_id, invoice_number=invoice_number)
    automation = upsert_automation(user_id, invoice_number, **options)
    return {"automation": automation.model_dump(mode="json")}


def deactivate_automation_impl(user_id: str, invoice_number: str) -> Dict[str, Any]:
    require_writes_enabled()
    record_write_attempt(
        "deactivate_invoice_automation", user_id=user_id, invoice_number=invoice_number
    )
    return deactivate_automation(user_id, invoice_number)


def register(server: FastMCP) -> None:
    """Register recurring-invoice tools."""

    @server.tool()
    def run_invoice_automations(token: str) -> Dict[str, Any]:
        """Generate all due recurring invoices (needs INVOICE_AUTOMATION_SECRET as token).

        Returns successCount, errorCount and skippedCount. Automations already
        being processed by another run are skipped.
        """

        return run_due_automations_impl(token)

    @server.tool()
    def get_invoice_automation(user_id: str, invoice_number: str) -> Dict[str, Any]:
        """Read an invoice summary and its recurring automation, if any (read-only)."""

        return get_automation(user_id, invoice_number)

    @server.tool()
    def save_invoice_automation(
        user_id: str,
        invoice_number: str,
        start_date: str | None = None,
        end_date: str | None = None,
        interval: str = DEFAULT_INTERVAL,
        unlimited: bool = False,
        label: str | None = None,
    ) -> Dict[str, Any]:
        """Create or reschedule a recurring invoice based on an existing invoice.

        - interval: weekly | every_2_weeks | monthly | every_2_months | quarterly |
          every_6_months | yearly (unknown values fall back to monthly).
        - start_date / end_date: YYYY-MM-DD or DD.MM.YYYY; the first run is on
          start_date (default: the invoice date).
        - unlimited=True clears the end date.
        """

        return save_automation_impl(
            user_id,
            invoice_number,
            start_date=start_date,
            end_date=end_date,
            interval=interval,
            unlimited=unlimited,
            label=label,
        )

    @server.tool()
    def deactivate_invoice_automation(user_id: str, invoice_number: str) -> Dict[str, Any]:
        """Stop the recurring automation of an invoice (sets active=false)."""

        return deactivate_automation_impl(user_id, invoice_number)


__all__ = [
    "INTERVALS",
    "INTERVAL_LABELS",
    "RunSummary",
    "add_months",
    "advance",
    "check_runner_token",
    "deactivate_automation",
    "deactivate_automation_impl",
    "get_automation",
    "interval_label",
    "next_state",
    "normalize_interval",
    "register",
    "run_automation",
    "run_due_automations",
    "run_due_automations_impl",
    "save_automation_impl",
    "upsert_automation",
]
