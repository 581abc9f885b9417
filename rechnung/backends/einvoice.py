"""
UBL 2.1 e-invoice (XRechnung / EN 16931) export.

Builds the XML from an invoice's positions, discount and tax rate, stores it
in the document store and hands back a time-limited download link.

By default the discount travels on each line as a price allowance (net price,
price discount and gross base price), so the line nets add up to the
document's net total. ``allowance_mode="document"`` keeps raw line prices and
emits one document-level allowance instead.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from lxml import etree
from mcp.server.fastmcp import FastMCP

from ..utils import config
from ..utils.logging import record_write_attempt
from .billing_models import (
    Customer,
    Discount,
    Invoice,
    InvoiceTotals,
    ItemLine,
    LineItem,
    Supplier,
    coerce_date,
)
from .errors import ValidationFailed, require_writes_enabled
from .generation import get_invoice, parse_generation_request
from .money import ZERO, format_amount, round_money
from .pricing import allocate_discount, compute_totals
from .storage import (
    load_billing_settings,
    load_customer,
    load_profile,
    put_document,
    signed_document_url,
)

_LOGGER = logging.getLogger("rechnung.backends.einvoice")

NAMESPACES = {
    "ubl": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
}

XRECHNUNG_CUSTOMIZATION_ID = "urn:cen.eu:en16931:2017#compliant#urn:fdc:gov.xrechnung.de:2017"
PEPPOL_PROFILE_ID = "urn:fdc:peppol.eu:poacc:billing:3.0"

INVOICE_TYPE_COMMERCIAL = "380"
PAYMENT_MEANS_CREDIT_TRANSFER = "31"
TAX_CATEGORY_STANDARD = "S"
ENDPOINT_SCHEME_LEITWEG = "0204"
UNIT_CODE_PIECE = "C62"
DISCOUNT_REASON_CODE = "95"

EINVOICE_FOLDER = "e-rechnung"

REQUIRED_SUPPLIER_FIELDS = (
    "company_name",
    "street",
    "house_number",
    "postal_code",
    "city",
    "country",
    "vat_number",
    "iban",
    "bic",
)

AllowanceMode = Literal["price", "document"]


@dataclass
class EInvoiceData:
    """Document-level data the serializer needs."""

    invoice_number: str
    issue_date: date
    tax_rate: Decimal
    currency: str = "EUR"
    due_date: date | None = None
    positions: list[LineItem] = field(default_factory=list)
    discount: Discount = field(default_factory=Discount)

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "EInvoiceData":
        return cls(
            invoice_number=invoice.invoice_number,
            issue_date=invoice.date,
            due_date=invoice.due_date,
            tax_rate=invoice.tax_rate,
            currency=invoice.currency,
            positions=list(invoice.positions),
            discount=invoice.discount,
        )


@dataclass
class _Line:
    description: str
    quantity: Decimal
    unit: str
    price: Decimal
    gross_price: Decimal
    net: Decimal


def validate_supplier(supplier: Supplier) -> None:
    for name in REQUIRED_SUPPLIER_FIELDS:
        if not getattr(supplier, name):
            raise ValidationFailed(
                f'Pflichtangabe "{name}" fehlt. Bitte im Onboarding/Profil ergänzen (E-Rechnung).',
                reason="missing_supplier_field",
            )


def _distribute_rounding(nets: list[Decimal], target: Decimal) -> list[Decimal]:
    """Round each net to cents; the last non-zero line absorbs the difference."""

    rounded = [round_money(value) for value in nets]
    difference = target - sum(rounded, ZERO)
    if difference:
        for index in range(len(rounded) - 1, -1, -1):
            if rounded[index] != ZERO:
                rounded[index] += difference
                break
    return rounded


def _build_lines(
    data: EInvoiceData, totals: InvoiceTotals, allowance_mode: AllowanceMode
) -> list[_Line]:
    if allowance_mode == "price":
        priced = allocate_discount(data.positions, data.discount, data.tax_rate)
        target = totals.net_after_discount
    else:
        priced = list(data.positions)
        target = totals.net_subtotal

    pairs = [
        (raw, line)
        for raw, line in zip(data.positions, priced)
        if isinstance(raw, ItemLine) and isinstance(line, ItemLine) and raw.quantity != ZERO
    ]
    nets = _distribute_rounding([line.net for _, line in pairs], target)

    lines = []
    for (raw, line), net in zip(pairs, nets):
        quantity, price, gross_price = line.quantity, line.unit_price, raw.unit_price
        if price < ZERO:
            # credit lines: negative quantity, non-negative price
            quantity, price, gross_price = -quantity, -price, -gross_price
        lines.append(
            _Line(
                description=raw.description or "Position",
                quantity=quantity,
                unit=raw.unit or UNIT_CODE_PIECE,
                price=price,
                gross_price=gross_price,
                net=net,
            )
        )
    return lines


class UBLInvoiceBuilder:
    """
    Build a UBL 2.1 Invoice for XRechnung.

    Usage:
        builder = UBLInvoiceBuilder(data, customer, supplier)
        xml_bytes = builder.build()
    """

    def __init__(
        self,
        data: EInvoiceData,
        customer: Customer,
        supplier: Supplier,
        *,
        allowance_mode: AllowanceMode = "price",
    ) -> None:
        self.data = data
        self.customer = customer
        self.supplier = supplier
        self.allowance_mode = allowance_mode
        self.totals = compute_totals(data.positions, data.discount, data.tax_rate)
        self.lines = _build_lines(data, self.totals, allowance_mode)
        self.root: etree._Element | None = None

    def _cbc(self, tag: str) -> str:
        return f"{{{NAMESPACES['cbc']}}}{tag}"

    def _cac(self, tag: str) -> str:
        return f"{{{NAMESPACES['cac']}}}{tag}"

    def _add_cbc(self, parent: etree._Element, tag: str, text: str | None = None, **attribs: str) -> etree._Element:
        elem = etree.SubElement(parent, self._cbc(tag))
        if text is not None:
            elem.text = str(text)
        for key, value in attribs.items():
            elem.set(key, value)
        return elem

    def _add_cac(self, parent: etree._Element, tag: str) -> etree._Element:
        return etree.SubElement(parent, self._cac(tag))

    def _add_amount(self, parent: etree._Element, tag: str, amount: Decimal) -> etree._Element:
        return self._add_cbc(parent, tag, format_amount(amount), currencyID=self.data.currency)

    @staticmethod
    def _format_quantity(quantity: Decimal) -> str:
        return f"{quantity:.6f}".rstrip("0").rstrip(".")

    def build(self) -> bytes:
        validate_supplier(self.supplier)
        self._create_root()
        self._add_document_metadata()
        self._add_supplier_party()
        self._add_customer_party()
        self._add_payment_means()
        self._add_document_allowance()
        self._add_tax_total()
        self._add_legal_monetary_total()
        self._add_invoice_lines()
        return etree.tostring(
            self.root, pretty_print=True, xml_declaration=True, encoding="UTF-8"
        )

    def _create_root(self) -> None:
        nsmap = {
            None: NAMESPACES["ubl"],
            "cac": NAMESPACES["cac"],
            "cbc": NAMESPACES["cbc"],
        }
        self.root = etree.Element(f"{{{NAMESPACES['ubl']}}}Invoice", nsmap=nsmap)

    def _add_document_metadata(self) -> None:
        root = self.root
        self._add_cbc(root, "CustomizationID", XRECHNUNG_CUSTOMIZATION_ID)
        self._add_cbc(root, "ProfileID", PEPPOL_PROFILE_ID)
        self._add_cbc(root, "ID", self.data.invoice_number)
        self._add_cbc(root, "IssueDate", self.data.issue_date.isoformat())
        if self.data.due_date:
            self._add_cbc(root, "DueDate", self.data.due_date.isoformat())
        self._add_cbc(root, "InvoiceTypeCode", INVOICE_TYPE_COMMERCIAL)
        self._add_cbc(root, "DocumentCurrencyCode", self.data.currency)

        buyer_reference = (self.customer.e_invoice_buyer_reference or "").strip()
        if buyer_reference:
            self._add_cbc(root, "BuyerReference", buyer_reference)

        order_reference = (self.customer.e_invoice_order_reference or "").strip()
        if order_reference:
            order = self._add_cac(root, "OrderReference")
            self._add_cbc(order, "ID", order_reference)

    def _add_address(
        self, parent: etree._Element, street: str, city: str, postal_code: str, country: str
    ) -> None:
        address = self._add_cac(parent, "PostalAddress")
        if street:
            self._add_cbc(address, "StreetName", street)
        if city:
            self._add_cbc(address, "CityName", city)
        if postal_code:
            self._add_cbc(address, "PostalZone", postal_code)
        country_elem = self._add_cac(address, "Country")
        self._add_cbc(country_elem, "IdentificationCode", country)

    def _add_supplier_party(self) -> None:
        supplier = self.supplier
        party = self._add_cac(self._add_cac(self.root, "AccountingSupplierParty"), "Party")

        name = self._add_cac(party, "PartyName")
        self._add_cbc(name, "Name", supplier.company_name)
        self._add_address(
            party,
            f"{supplier.street} {supplier.house_number}".strip(),
            supplier.city,
            supplier.postal_code,
            supplier.country,
        )

        tax_scheme = self._add_cac(party, "PartyTaxScheme")
        self._add_cbc(tax_scheme, "CompanyID", supplier.vat_number)
        self._add_cbc(self._add_cac(tax_scheme, "TaxScheme"), "ID", "VAT")

        legal = self._add_cac(party, "PartyLegalEntity")
        self._add_cbc(legal, "RegistrationName", supplier.company_name)

        if supplier.email or supplier.phone:
            contact = self._add_cac(party, "Contact")
            if supplier.phone:
                self._add_cbc(contact, "Telephone", supplier.phone)
            if supplier.email:
                self._add_cbc(contact, "ElectronicMail", supplier.email)

    def _add_customer_party(self) -> None:
        customer = self.customer
        party = self._add_cac(self._add_cac(self.root, "AccountingCustomerParty"), "Party")

        endpoint = (customer.e_invoice_leitweg_id or "").strip() or (
            customer.e_invoice_buyer_reference or ""
        ).strip()
        if endpoint:
            self._add_cbc(party, "EndpointID", endpoint, schemeID=ENDPOINT_SCHEME_LEITWEG)

        name = self._add_cac(party, "PartyName")
        self._add_cbc(name, "Name", customer.display_name)

        street = " ".join(part for part in (customer.street, customer.house_number) if part)
        self._add_address(
            party,
            street,
            customer.city or "",
            customer.postal_code or "",
            (customer.country or "DE").upper(),
        )

        legal = self._add_cac(party, "PartyLegalEntity")
        self._add_cbc(legal, "RegistrationName", customer.display_name)

    def _add_payment_means(self) -> None:
        means = self._add_cac(self.root, "PaymentMeans")
        self._add_cbc(means, "PaymentMeansCode", PAYMENT_MEANS_CREDIT_TRANSFER)
        account = self._add_cac(means, "PayeeFinancialAccount")
        self._add_cbc(account, "ID", self.supplier.iban)
        branch = self._add_cac(account, "FinancialInstitutionBranch")
        self._add_cbc(branch, "ID", self.supplier.bic)

    def _add_tax_category(self, parent: etree._Element, tag: str) -> None:
        category = self._add_cac(parent, tag)
        self._add_cbc(category, "ID", TAX_CATEGORY_STANDARD)
        self._add_cbc(category, "Percent", format_amount(self.data.tax_rate))
        self._add_cbc(self._add_cac(category, "TaxScheme"), "ID", "VAT")

    def _add_document_allowance(self) -> None:
        if self.allowance_mode != "document" or self.totals.discount_amount <= ZERO:
            return
        allowance = self._add_cac(self.root, "AllowanceCharge")
        self._add_cbc(allowance, "ChargeIndicator", "false")
        self._add_cbc(allowance, "AllowanceChargeReasonCode", DISCOUNT_REASON_CODE)
        self._add_cbc(allowance, "AllowanceChargeReason", self.data.discount.label)
        self._add_amount(allowance, "Amount", self.totals.discount_amount)
        self._add_amount(allowance, "BaseAmount", self.totals.net_subtotal)
        self._add_tax_category(allowance, "TaxCategory")

    def _add_tax_total(self) -> None:
        tax_total = self._add_cac(self.root, "TaxTotal")
        self._add_amount(tax_total, "TaxAmount", self.totals.tax_amount)
        subtotal = self._add_cac(tax_total, "TaxSubtotal")
        self._add_amount(subtotal, "TaxableAmount", self.totals.net_after_discount)
        self._add_amount(subtotal, "TaxAmount", self.totals.tax_amount)
        self._add_tax_category(subtotal, "TaxCategory")

    def _add_legal_monetary_total(self) -> None:
        totals = self.totals
        monetary = self._add_cac(self.root, "LegalMonetaryTotal")
        self._add_amount(monetary, "LineExtensionAmount", sum((line.net for line in self.lines), ZERO))
        self._add_amount(monetary, "TaxExclusiveAmount", totals.net_after_discount)
        self._add_amount(monetary, "TaxInclusiveAmount", totals.gross_total)
        if self.allowance_mode == "document" and totals.discount_amount > ZERO:
            self._add_amount(monetary, "AllowanceTotalAmount", totals.discount_amount)
        self._add_amount(monetary, "PayableAmount", totals.gross_total)

    def _add_invoice_lines(self) -> None:
        for number, line in enumerate(self.lines, start=1):
            elem = self._add_cac(self.root, "InvoiceLine")
            self._add_cbc(elem, "ID", str(number))
            self._add_cbc(
                elem, "InvoicedQuantity", self._format_quantity(line.quantity), unitCode=line.unit
            )
            self._add_amount(elem, "LineExtensionAmount", line.net)

            item = self._add_cac(elem, "Item")
            self._add_cbc(item, "Name", line.description)
            self._add_tax_category(item, "ClassifiedTaxCategory")

            price = self._add_cac(elem, "Price")
            self._add_amount(price, "PriceAmount", line.price)
            self._add_cbc(price, "BaseQuantity", "1", unitCode=line.unit)
            reduction = round_money(line.gross_price) - round_money(line.price)
            if reduction > ZERO:
                allowance = self._add_cac(price, "AllowanceCharge")
                self._add_cbc(allowance, "ChargeIndicator", "false")
                self._add_amount(allowance, "Amount", reduction)
                self._add_amount(allowance, "BaseAmount", line.gross_price)


def build_einvoice_xml(
    invoice_data: EInvoiceData,
    customer: Customer,
    supplier: Supplier,
    *,
    allowance_mode: AllowanceMode = "price",
) -> bytes:
    """Serialize one invoice as UBL XML (UTF-8 bytes with declaration)."""

    builder = UBLInvoiceBuilder(invoice_data, customer, supplier, allowance_mode=allowance_mode)
    return builder.build()


def _resolve_from_invoice(
    user_id: str, invoice_number: str, root: Optional[Path]
) -> tuple[EInvoiceData, Customer]:
    invoice = get_invoice(user_id, invoice_number, root)
    if not invoice.customer_id:
        raise ValidationFailed(
            "Rechnung hat keinen Kunden zugeordnet.", reason="invoice_without_customer"
        )
    try:
        customer = load_customer(user_id, invoice.customer_id, root)
    except FileNotFoundError as exc:
        raise ValidationFailed(
            "Kunde zur Rechnung nicht gefunden.", reason="customer_not_found"
        ) from exc
    return EInvoiceData.from_invoice(invoice), customer


def _resolve_from_payload(payload: Dict[str, Any]) -> tuple[EInvoiceData, Customer]:
    request = parse_generation_request(payload)
    if request.customer is None:
        raise ValidationFailed(
            "Kunde fehlt. (Weder im Body noch über invoiceNumber gefunden.)",
            reason="missing_customer",
        )
    if not request.positions:
        raise ValidationFailed("Keine Positionen vorhanden.", reason="missing_positions")

    raw_meta = payload.get("meta") or {}
    issue_date = request.meta.date or date.today()
    try:
        due_date = coerce_date(raw_meta.get("validUntil"))
    except ValueError as exc:
        raise ValidationFailed(str(exc), reason="invalid_payload") from exc
    invoice_number = str(raw_meta.get("invoiceNumber") or payload.get("invoiceNumber") or "").strip()
    if not invoice_number:
        invoice_number = f"RE-{issue_date.isoformat()}-{secrets.token_hex(3).upper()}"
    return (
        EInvoiceData(
            invoice_number=invoice_number,
            issue_date=issue_date,
            due_date=due_date,
            tax_rate=request.meta.tax_rate,
            currency=request.meta.currency.upper() or "EUR",
            positions=request.positions,
            discount=request.meta.discount,
        ),
        request.customer,
    )


def load_supplier(user_id: str, root: Optional[Path] = None) -> Supplier:
    try:
        profile = load_profile(user_id, root)
    except FileNotFoundError as exc:
        raise ValidationFailed("Profil nicht gefunden.", reason="profile_not_found") from exc
    try:
        settings = load_billing_settings(user_id, root)
    except FileNotFoundError as exc:
        raise ValidationFailed("Billing-Settings fehlen.", reason="billing_settings_missing") from exc
    return Supplier.from_profile(profile, settings)


def einvoice_storage_path(user_id: str, invoice_number: str) -> str:
    return f"{config.INVOICE_PREFIX}/{EINVOICE_FOLDER}/{user_id}/{invoice_number}.xml"


def export_einvoice(
    user_id: str,
    invoice_number: str | None = None,
    payload: Dict[str, Any] | None = None,
    *,
    root: Optional[Path] = None,
    allowance_mode: AllowanceMode = "price",
) -> Dict[str, str]:
    """Render, store and link the e-invoice for a stored invoice or a raw payload.

    A payload that carries a customer id wins; otherwise ``invoice_number``
    selects a stored invoice.
    """

    payload = dict(payload or {})
    customer_payload = payload.get("customer") or {}
    has_customer = bool(customer_payload.get("id")) if isinstance(customer_payload, dict) else True
    invoice_number = (invoice_number or payload.get("invoiceNumber") or "").strip() or None

    if not has_customer and invoice_number:
        data, customer = _resolve_from_invoice(user_id, invoice_number, root)
    else:
        if invoice_number:
            payload.setdefault("invoiceNumber", invoice_number)
        data, customer = _resolve_from_payload(payload)

    supplier = load_supplier(user_id, root)
    xml = build_einvoice_xml(data, customer, supplier, allowance_mode=allowance_mode)

    storage_path = einvoice_storage_path(user_id, data.invoice_number)
    download_url = signed_document_url(config.INVOICE_BUCKET, storage_path)
    try:
        put_document(config.INVOICE_BUCKET, storage_path, xml, root)
    except ValueError as exc:
        raise ValidationFailed(str(exc), reason="invalid_invoice_number") from exc

    _LOGGER.info(
        "einvoice.exported",
        extra={"user_id": user_id, "invoice_number": data.invoice_number, "bytes": len(xml)},
    )
    return {
        "filename": f"{data.invoice_number}.xml",
        "storagePath": storage_path,
        "downloadUrl": download_url,
    }


def export_einvoice_impl(
    user_id: str,
    invoice_number: str | None = None,
    payload: Dict[str, Any] | None = None,
    allowance_mode: AllowanceMode = "price",
) -> Dict[str, str]:
    require_writes_enabled()
    record_write_attempt("export_e_invoice", user_id=user_id, invoice_number=invoice_number)
    return export_einvoice(user_id, invoice_number, payload, allowance_mode=allowance_mode)


def register(server: FastMCP) -> None:
    """Register e-invoice tools."""

    @server.tool()
    def export_e_invoice(
        user_id: str,
        invoice_number: str | None = None,
        customer: Dict[str, Any] | None = None,
        positions: list[Dict[str, Any]] | None = None,
        meta: Dict[str, Any] | None = None,
        allowance_mode: AllowanceMode = "price",
    ) -> Dict[str, str]:
        """Export an XRechnung (UBL 2.1) XML and return a signed download link.

        Pass invoice_number to export a stored invoice, or customer/positions/meta
        for an ad-hoc document. The issuing profile must carry company name,
        address, VAT id, IBAN and BIC.
        """

        payload: Dict[str, Any] = {}
        if customer is not None:
            payload = {"customer": customer, "positions": positions or [], "meta": meta or {}}
        return export_einvoice_impl(user_id, invoice_number, payload, allowance_mode)


__all__ = [
    "EInvoiceData",
    "NAMESPACES",
    "UBLInvoiceBuilder",
    "build_einvoice_xml",
    "einvoice_storage_path",
    "export_einvoice",
    "export_einvoice_impl",
    "load_supplier",
    "register",
    "validate_supplier",
]
