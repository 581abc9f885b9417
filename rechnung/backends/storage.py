"""Filesystem persistence for invoices, automations and documents.

Layout below the storage root::

    users/<user_id>/invoices/<invoice_id>.json
    users/<user_id>/customers/<customer_id>.json
    users/<user_id>/profile.json
    users/<user_id>/billing_settings.json
    users/<user_id>/sequence.json
    users/<user_id>/index.json
    users/<user_id>/cancellations/<key>.json
    automations/<automation_id>.json
    documents/<bucket>/<path>
"""
from __future__ import annotations

import hashlib
import hmac
import json
import os
import re
import time
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.parse import quote, urlencode

import portalocker

from ..utils import config
from .billing_models import (
    Automation,
    BillingSettings,
    CancellationLog,
    Customer,
    Invoice,
    Profile,
)
from .errors import WorkflowFailed

STORAGE_ROOT_NAME = ".rechnung"
USERS_DIRNAME = "users"
INVOICES_DIRNAME = "invoices"
CUSTOMERS_DIRNAME = "customers"
CANCELLATIONS_DIRNAME = "cancellations"
AUTOMATIONS_DIRNAME = "automations"
DOCUMENTS_DIRNAME = "documents"
INDEX_FILENAME = "index.json"
SEQUENCE_FILENAME = "sequence.json"
PROFILE_FILENAME = "profile.json"
SETTINGS_FILENAME = "billing_settings.json"
LOCK_FILENAME = ".storage.lock"
LOCK_TIMEOUT_SECONDS = 5

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._@+-]")


def get_storage_root(base_path: Optional[Path] = None) -> Path:
    """
    Resolve the storage root.

    Priority:
    1) RECHNUNG_ROOT env var (absolute or relative to cwd)
    2) explicit base_path (caller-provided)
    3) repository root (parent of rechnung/)
    """

    env_root = os.getenv("RECHNUNG_ROOT", "").strip()
    if env_root:
        return Path(env_root).expanduser().resolve()

    if base_path is not None:
        return (base_path / STORAGE_ROOT_NAME).resolve()

    repo_root = Path(__file__).resolve().parents[2]
    return (repo_root / STORAGE_ROOT_NAME).resolve()


def _ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def ensure_structure(root: Optional[Path] = None) -> None:
    """Create required directories if they do not exist."""

    storage_root = get_storage_root(root)
    _ensure_directory(storage_root)
    _ensure_directory(storage_root / USERS_DIRNAME)
    _ensure_directory(storage_root / AUTOMATIONS_DIRNAME)
    _ensure_directory(storage_root / DOCUMENTS_DIRNAME)


def _segment(value: str) -> str:
    """Map an identifier onto a single safe path component."""

    text = str(value).strip()
    if not text or text in {".", ".."}:
        raise ValueError(f"invalid identifier: {value!r}")
    return _UNSAFE_SEGMENT.sub("_", text)


def _user_dir(user_id: str, root: Optional[Path]) -> Path:
    return get_storage_root(root) / USERS_DIRNAME / _segment(user_id)


def _invoice_path(user_id: str, invoice_id: str, root: Optional[Path]) -> Path:
    return _user_dir(user_id, root) / INVOICES_DIRNAME / f"{_segment(invoice_id)}.json"


def _read_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, payload: dict) -> None:
    _ensure_directory(path.parent)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
        handle.write("\n")
    os.replace(tmp_path, path)


def _iter_json(directory: Path) -> Iterator[Path]:
    if not directory.exists():
        return iter(())

    paths = [p for p in directory.iterdir() if p.is_file() and p.suffix == ".json"]
    paths.sort()
    return iter(paths)


# --------------------------------------------------------------------------
# Locking
# --------------------------------------------------------------------------


class StorageLock:
    """Exclusive, process-spanning lock on the storage root."""

    def __init__(self, root: Optional[Path] = None, timeout: float = LOCK_TIMEOUT_SECONDS):
        self.base = root
        self.timeout = timeout
        self._handle: portalocker.Lock | None = None

    def __enter__(self) -> Path:
        ensure_structure(self.base)
        lock_file = get_storage_root(self.base) / LOCK_FILENAME
        lock_file.touch(exist_ok=True)
        self._handle = portalocker.Lock(
            lock_file, mode="a", timeout=self.timeout, flags=portalocker.LOCK_EX
        )
        self._handle.acquire()
        return lock_file

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._handle:
            self._handle.release()
            self._handle = None


def storage_lock(root: Optional[Path] = None) -> StorageLock:
    return StorageLock(root)


# --------------------------------------------------------------------------
# Invoices
# --------------------------------------------------------------------------


def iter_invoices(user_id: str, root: Optional[Path] = None) -> Iterator[Invoice]:
    for path in _iter_json(_user_dir(user_id, root) / INVOICES_DIRNAME):
        yield Invoice.model_validate(_read_json(path))


def load_invoice(user_id: str, invoice_id: str, root: Optional[Path] = None) -> Invoice:
    return Invoice.model_validate(_read_json(_invoice_path(user_id, invoice_id, root)))


def save_invoice(invoice: Invoice, root: Optional[Path] = None) -> None:
    path = _invoice_path(invoice.user_id, invoice.id, root)
    _write_json(path, invoice.model_dump(mode="json"))
    save_index(invoice.user_id, build_index(invoice.user_id, root), root)


def find_invoice_by_number(
    user_id: str, invoice_number: str, root: Optional[Path] = None
) -> Invoice | None:
    for invoice in iter_invoices(user_id, root):
        if invoice.invoice_number == invoice_number:
            return invoice
    return None


def find_invoice_by_idempotency_key(
    user_id: str, idempotency_key: str, root: Optional[Path] = None
) -> Invoice | None:
    for invoice in iter_invoices(user_id, root):
        if invoice.idempotency_key == idempotency_key:
            return invoice
    return None


def find_cancellations_of(
    user_id: str, invoice_number: str, root: Optional[Path] = None
) -> list[Invoice]:
    return [
        invoice
        for invoice in iter_invoices(user_id, root)
        if invoice.cancels_invoice_number == invoice_number
    ]


def build_index(user_id: str, root: Optional[Path] = None) -> dict[str, object]:
    entries = [invoice.to_index_entry() for invoice in iter_invoices(user_id, root)]
    entries.sort(key=lambda entry: str(entry["invoice_number"]))
    return {"count": len(entries), "invoices": entries}


def save_index(user_id: str, index: dict[str, object], root: Optional[Path] = None) -> None:
    _write_json(_user_dir(user_id, root) / INDEX_FILENAME, index)


def _format_number(settings: BillingSettings, value: int) -> str:
    return f"{settings.invoice_prefix}{value:03d}{settings.invoice_suffix}"


def _sequence_value(seq_path: Path, settings: BillingSettings) -> tuple[dict, int]:
    try:
        data = _read_json(seq_path)
    except FileNotFoundError:
        data = {}
    return data, int(data.get("next", settings.invoice_start))


def next_invoice_number(
    user_id: str, settings: BillingSettings, root: Optional[Path] = None
) -> str:
    """Allocate the next number for ``user_id`` as ``<prefix><NNN><suffix>``.

    The counter lives in the user's sequence.json and starts at the settings'
    ``invoice_start``. Callers must hold :func:`storage_lock`.
    """

    seq_path = _user_dir(user_id, root) / SEQUENCE_FILENAME
    data, current = _sequence_value(seq_path, settings)
    data["next"] = current + 1
    _write_json(seq_path, data)

    return _format_number(settings, current)


def peek_invoice_number(
    user_id: str, settings: BillingSettings, root: Optional[Path] = None
) -> str:
    """The number :func:`next_invoice_number` would hand out, without taking it."""

    _, current = _sequence_value(_user_dir(user_id, root) / SEQUENCE_FILENAME, settings)
    return _format_number(settings, current)


# --------------------------------------------------------------------------
# Customers, profile, billing settings
# --------------------------------------------------------------------------


def load_customer(user_id: str, customer_id: str, root: Optional[Path] = None) -> Customer:
    path = _user_dir(user_id, root) / CUSTOMERS_DIRNAME / f"{_segment(customer_id)}.json"
    return Customer.model_validate(_read_json(path))


def save_customer(customer: Customer, user_id: str, root: Optional[Path] = None) -> None:
    path = _user_dir(user_id, root) / CUSTOMERS_DIRNAME / f"{_segment(customer.id)}.json"
    payload = customer.model_dump(mode="json")
    payload["user_id"] = user_id
    _write_json(path, payload)


def load_profile(user_id: str, root: Optional[Path] = None) -> Profile:
    return Profile.model_validate(_read_json(_user_dir(user_id, root) / PROFILE_FILENAME))


def save_profile(profile: Profile, root: Optional[Path] = None) -> None:
    _write_json(_user_dir(profile.id, root) / PROFILE_FILENAME, profile.model_dump(mode="json"))


def load_billing_settings(user_id: str, root: Optional[Path] = None) -> BillingSettings:
    path = _user_dir(user_id, root) / SETTINGS_FILENAME
    return BillingSettings.model_validate(_read_json(path))


def save_billing_settings(
    settings: BillingSettings, user_id: str, root: Optional[Path] = None
) -> None:
    payload = settings.model_dump(mode="json")
    payload["user_id"] = user_id
    _write_json(_user_dir(user_id, root) / SETTINGS_FILENAME, payload)


# --------------------------------------------------------------------------
# Cancellation step logs
# --------------------------------------------------------------------------


def _cancellation_log_path(user_id: str, invoice_number: str, root: Optional[Path]) -> Path:
    digest = hashlib.sha256(invoice_number.encode("utf-8")).hexdigest()[:16]
    name = f"{_segment(invoice_number)}-{digest}.json"
    return _user_dir(user_id, root) / CANCELLATIONS_DIRNAME / name


def load_cancellation_log(
    user_id: str, invoice_number: str, root: Optional[Path] = None
) -> CancellationLog | None:
    path = _cancellation_log_path(user_id, invoice_number, root)
    try:
        return CancellationLog.model_validate(_read_json(path))
    except FileNotFoundError:
        return None


def save_cancellation_log(log: CancellationLog, root: Optional[Path] = None) -> None:
    path = _cancellation_log_path(log.user_id, log.original_invoice_number, root)
    _write_json(path, log.model_dump(mode="json"))


# --------------------------------------------------------------------------
# Automations
# --------------------------------------------------------------------------


def _automation_path(automation_id: str, root: Optional[Path]) -> Path:
    return get_storage_root(root) / AUTOMATIONS_DIRNAME / f"{_segment(automation_id)}.json"


def iter_automations(root: Optional[Path] = None) -> Iterator[Automation]:
    for path in _iter_json(get_storage_root(root) / AUTOMATIONS_DIRNAME):
        yield Automation.model_validate(_read_json(path))


def load_automation(automation_id: str, root: Optional[Path] = None) -> Automation:
    return Automation.model_validate(_read_json(_automation_path(automation_id, root)))


def save_automation(automation: Automation, root: Optional[Path] = None) -> None:
    _write_json(_automation_path(automation.id, root), automation.model_dump(mode="json"))


def find_automation_for_invoice(
    user_id: str, source_invoice_id: str, root: Optional[Path] = None
) -> Automation | None:
    for automation in iter_automations(root):
        if automation.user_id == user_id and automation.source_invoice_id == source_invoice_id:
            return automation
    return None


def list_due_automations(today: date, root: Optional[Path] = None) -> list[Automation]:
    """Active automations whose next run is on or before ``today``."""

    due = [
        automation
        for automation in iter_automations(root)
        if automation.active
        and automation.next_run_date is not None
        and automation.next_run_date <= today
    ]
    due.sort(key=lambda item: (item.next_run_date, item.id))
    return due


def claim_automation(
    automation_id: str,
    *,
    lease_seconds: int,
    now: datetime | None = None,
    root: Optional[Path] = None,
) -> Automation | None:
    """Take a processing lease on an automation.

    Returns the claimed record, or ``None`` when another run holds a live
    lease or the automation is no longer active.
    """

    now = now or datetime.now(timezone.utc)
    with storage_lock(root):
        automation = load_automation(automation_id, root)
        if not automation.active:
            return None
        if automation.processing_until is not None and automation.processing_until > now:
            return None
        automation.processing_until = now + timedelta(seconds=lease_seconds)
        save_automation(automation, root)
        return automation


def release_automation(
    automation_id: str, root: Optional[Path] = None, **updates: Any
) -> Automation:
    """Clear the lease and apply ``updates`` in one locked write."""

    with storage_lock(root):
        automation = load_automation(automation_id, root)
        for field, value in updates.items():
            setattr(automation, field, value)
        automation.processing_until = None
        automation.updated_at = datetime.now(timezone.utc)
        save_automation(automation, root)
        return automation


# --------------------------------------------------------------------------
# Documents and signed links
# --------------------------------------------------------------------------


def _document_path(bucket: str, path: str, root: Optional[Path]) -> Path:
    parts = [part for part in str(path).split("/") if part]
    if not parts or any(part in {".", ".."} for part in parts):
        raise ValueError(f"invalid document path: {path!r}")
    base = get_storage_root(root) / DOCUMENTS_DIRNAME / _segment(bucket)
    return base.joinpath(*parts)


def put_document(bucket: str, path: str, data: bytes, root: Optional[Path] = None) -> Path:
    target = _document_path(bucket, path, root)
    _ensure_directory(target.parent)
    target.write_bytes(data)
    return target


def get_document(bucket: str, path: str, root: Optional[Path] = None) -> bytes:
    return _document_path(bucket, path, root).read_bytes()


def _signing_secret() -> bytes:
    secret = config.signed_url_secret()
    if not secret:
        raise WorkflowFailed(
            "SIGNED_URL_SECRET is not configured", reason="signing_secret_missing"
        )
    return secret.encode("utf-8")


def _signature(bucket: str, path: str, expires: int) -> str:
    message = f"{bucket}/{path}:{expires}".encode("utf-8")
    secret = _signing_secret()
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def signed_document_url(
    bucket: str, path: str, *, ttl_seconds: int | None = None, now: float | None = None
) -> str:
    """Download URL for a stored document that stops working after the TTL."""

    ttl = ttl_seconds if ttl_seconds is not None else config.signed_url_ttl_seconds()
    expires = int((now if now is not None else time.time()) + ttl)
    query = urlencode({"expires": expires, "signature": _signature(bucket, path, expires)})
    return f"{config.public_base_url()}/api/documents/{quote(bucket)}/{quote(path)}?{query}"


def verify_document_signature(
    bucket: str, path: str, expires: str | int, signature: str, *, now: float | None = None
) -> bool:
    """Check a download link; raises when no signing secret is configured."""

    _signing_secret()
    try:
        expires_at = int(expires)
    except (TypeError, ValueError):
        return False
    if expires_at < (now if now is not None else time.time()):
        return False
    return hmac.compare_digest(_signature(bucket, path, expires_at), signature or "")


__all__ = [
    "StorageLock",
    "build_index",
    "claim_automation",
    "ensure_structure",
    "find_automation_for_invoice",
    "find_cancellations_of",
    "find_invoice_by_idempotency_key",
    "find_invoice_by_number",
    "get_document",
    "get_storage_root",
    "iter_automations",
    "iter_invoices",
    "list_due_automations",
    "load_automation",
    "load_billing_settings",
    "load_cancellation_log",
    "load_customer",
    "load_invoice",
    "load_profile",
    "next_invoice_number",
    "peek_invoice_number",
    "put_document",
    "release_automation",
    "save_automation",
    "save_billing_settings",
    "save_cancellation_log",
    "save_customer",
    "save_index",
    "save_invoice",
    "save_profile",
    "signed_document_url",
    "storage_lock",
    "verify_document_signature",
]
