"""Invoice notification mails sent through the Brevo transactional API."""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..utils import config
from .errors import WorkflowFailed
from .money import round_money
from .storage import get_document

_LOGGER = logging.getLogger("rechnung.backends.notifications")

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"
MAIL_TEMPLATE = "invoice_automation_mail.html"

_TEMPLATES = Environment(
    loader=FileSystemLoader(str(Path(__file__).resolve().parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


class NotificationFailed(WorkflowFailed):
    default_reason = "notification_failed"


def format_eur(value: Decimal | None) -> str:
    """German currency rendering: ``Decimal("1234.5")`` -> ``"1.234,50 €"``."""

    if value is None:
        return "–"
    grouped = f"{round_money(value):,.2f}"
    return grouped.replace(",", "\0").replace(".", ",").replace("\0", ".") + " €"


def format_german_date(value: date) -> str:
    return f"{value.day}.{value.month}.{value.year}"


def render_invoice_mail(
    *,
    customer_name: str,
    partner_name: str,
    invoice_number: str,
    amount_gross: Decimal | None,
    interval_label: str | None,
    run_date: date | None,
) -> str:
    template = _TEMPLATES.get_template(MAIL_TEMPLATE)
    return template.render(
        customer_name=customer_name or "Kundin / Kunde",
        partner_name=partner_name,
        invoice_number=invoice_number,
        amount=format_eur(amount_gross),
        interval_label=interval_label or "wiederkehrend",
        run_date=format_german_date(run_date) if run_date else "",
    )


def invoice_mail_subject(partner_name: str) -> str:
    return f"Neue Rechnung von {partner_name} über GLENO"


def _document_key(pdf_path: str) -> str:
    path = pdf_path.lstrip("/")
    prefix = config.INVOICE_PREFIX.strip("/")
    if not path.startswith(prefix + "/"):
        path = f"{prefix}/{path}"
    return path


def load_invoice_pdf_base64(pdf_path: str | None, root: Optional[Path] = None) -> str | None:
    """Read a stored invoice PDF as base64; ``None`` when it is unavailable.

    ``pdf_path`` may be given with or without the ``rechnung/`` prefix.
    """

    if not pdf_path:
        return None
    key = _document_key(pdf_path)
    try:
        data = get_document(config.INVOICE_BUCKET, key, root)
    except (OSError, ValueError) as exc:
        _LOGGER.warning(
            "notification.pdf_unavailable",
            extra={"path": key, "error": str(exc)},
        )
        return None
    return base64.b64encode(data).decode("ascii")


@dataclass
class InvoiceMail:
    to: str
    subject: str
    html: str
    invoice_number: str
    pdf_base64: str | None = None

    def to_brevo_payload(self, sender_email: str, sender_name: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sender": {"email": sender_email, "name": sender_name},
            "to": [{"email": self.to}],
            "subject": self.subject,
            "htmlContent": self.html,
            "textContent": f"Neue Rechnung {self.invoice_number} von GLENO",
        }
        if self.pdf_base64:
            payload["attachment"] = [
                {"name": f"Rechnung-{self.invoice_number}.pdf", "content": self.pdf_base64}
            ]
        return payload


class BrevoMailer:
    """Minimal client for Brevo's ``/v3/smtp/email`` endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        sender_email: str | None = None,
        sender_name: str | None = None,
        *,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = config.brevo_settings()
        self.api_key = api_key if api_key is not None else settings["api_key"]
        self.sender_email = sender_email or settings["sender_email"]
        self.sender_name = sender_name or settings["sender_name"]
        self._client = client
        self._timeout = timeout if timeout is not None else config.http_timeout_seconds()

    def send(self, mail: InvoiceMail) -> None:
        if not self.api_key:
            raise NotificationFailed("BREVO_API_KEY fehlt: Mailversand abgebrochen")

        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "api-key": self.api_key,
        }
        payload = mail.to_brevo_payload(self.sender_email, self.sender_name)
        try:
            if self._client is not None:
                response = self._client.post(BREVO_SEND_URL, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(BREVO_SEND_URL, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationFailed(f"Brevo request failed: {exc}") from exc

        if response.is_error:
            raise NotificationFailed(
                f"Brevo-Send fehlgeschlagen ({response.status_code}): {response.text[:500]}"
            )
        _LOGGER.info(
            "notification.sent",
            extra={"invoice_number": mail.invoice_number, "attachment": bool(mail.pdf_base64)},
        )


__all__ = [
    "BREVO_SEND_URL",
    "BrevoMailer",
    "InvoiceMail",
    "NotificationFailed",
    "format_eur",
    "format_german_date",
    "invoice_mail_subject",
    "load_invoice_pdf_base64",
    "render_invoice_mail",
]
