import re
import sys
import unittest
from decimal import Decimal
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lxml import etree

from billing_fixtures import USER, StorageTestCase, customer_payload, sample_meta, ten_percent_off
from rechnung.backends.billing_models import Customer
from rechnung.backends.cancellation import cancel_invoice
from rechnung.backends.einvoice import NAMESPACES, export_einvoice, export_einvoice_impl
from rechnung.backends.errors import NotFound, ValidationFailed, WritesDisabled
from rechnung.backends.generation import generate_invoice
from rechnung.backends.storage import get_document, save_customer, verify_document_signature

NS = {"cbc": NAMESPACES["cbc"], "cac": NAMESPACES["cac"]}


def _amounts(root, path):
    return [Decimal(element.text) for element in root.findall(path, NS)]


class EInvoiceExportTests(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.seed_settings()
        self.seed_profile()

    def _export(self, invoice_number, **kwargs):
        result = export_einvoice(USER, invoice_number, **kwargs)
        xml = get_document("dokumente", result["storagePath"])
        return result, etree.fromstring(xml)

    def test_export_stores_xml_and_returns_signed_link(self):
        self.create_invoice(discount=ten_percent_off())

        result, root = self._export("RE-001")

        self.assertEqual(result["filename"], "RE-001.xml")
        self.assertEqual(result["storagePath"], "rechnung/e-rechnung/user-1/RE-001.xml")
        url = urlsplit(result["downloadUrl"])
        self.assertEqual(url.netloc, "127.0.0.1:8081")
        self.assertEqual(url.path, "/api/documents/dokumente/rechnung/e-rechnung/user-1/RE-001.xml")
        query = parse_qs(url.query)
        self.assertTrue(
            verify_document_signature(
                "dokumente", result["storagePath"], query["expires"][0], query["signature"][0]
            )
        )
        self.assertEqual(root.tag, f"{{{NAMESPACES['ubl']}}}Invoice")

    def test_header_and_parties(self):
        self.create_invoice(discount=ten_percent_off())

        _, root = self._export("RE-001")

        self.assertEqual(
            root.findtext("cbc:CustomizationID", namespaces=NS),
            "urn:cen.eu:en16931:2017#compliant#urn:fdc:gov.xrechnung.de:2017",
        )
        self.assertEqual(root.findtext("cbc:ProfileID", namespaces=NS), "urn:fdc:peppol.eu:poacc:billing:3.0")
        self.assertEqual(root.findtext("cbc:ID", namespaces=NS), "RE-001")
        self.assertEqual(root.findtext("cbc:IssueDate", namespaces=NS), "2025-03-01")
        self.assertEqual(root.findtext("cbc:InvoiceTypeCode", namespaces=NS), "380")
        self.assertEqual(root.findtext("cbc:DocumentCurrencyCode", namespaces=NS), "EUR")
        self.assertIsNone(root.find("cbc:BuyerReference", NS))
        self.assertIsNone(root.find("cac:OrderReference", NS))

        supplier = root.find("cac:AccountingSupplierParty/cac:Party", NS)
        self.assertEqual(supplier.findtext("cac:PartyName/cbc:Name", namespaces=NS), "Alice Consulting")
        self.assertEqual(supplier.findtext("cac:PostalAddress/cbc:StreetName", namespaces=NS), "Musterweg 12a")
        self.assertEqual(supplier.findtext("cac:PostalAddress/cbc:PostalZone", namespaces=NS), "20095")
        self.assertEqual(
            supplier.findtext("cac:PostalAddress/cac:Country/cbc:IdentificationCode", namespaces=NS), "DE"
        )
        self.assertEqual(supplier.findtext("cac:PartyTaxScheme/cbc:CompanyID", namespaces=NS), "DE123456789")
        self.assertEqual(supplier.findtext("cac:Contact/cbc:ElectronicMail", namespaces=NS), "rechnung@alice.example")

        customer = root.find("cac:AccountingCustomerParty/cac:Party", NS)
        self.assertIsNone(customer.find("cbc:EndpointID", NS))
        self.assertEqual(customer.findtext("cac:PartyName/cbc:Name", namespaces=NS), "Bob GmbH")
        self.assertEqual(customer.findtext("cac:PostalAddress/cbc:StreetName", namespaces=NS), "Hauptstraße 5")
        self.assertEqual(
            customer.findtext("cac:PostalAddress/cac:Country/cbc:IdentificationCode", namespaces=NS), "DE"
        )

        means = root.find("cac:PaymentMeans", NS)
        self.assertEqual(means.findtext("cbc:PaymentMeansCode", namespaces=NS), "31")
        self.assertEqual(
            means.findtext("cac:PayeeFinancialAccount/cbc:ID", namespaces=NS), "DE89370400440532013000"
        )
        self.assertEqual(
            means.findtext("cac:PayeeFinancialAccount/cac:FinancialInstitutionBranch/cbc:ID", namespaces=NS),
            "COBADEFFXXX",
        )

    def test_line_nets_add_up_to_tax_exclusive_amount(self):
        self.create_invoice(discount=ten_percent_off())

        _, root = self._export("RE-001")

        line_nets = _amounts(root, "cac:InvoiceLine/cbc:LineExtensionAmount")
        self.assertEqual(line_nets, [Decimal("180.00"), Decimal("45.00")])
        totals = root.find("cac:LegalMonetaryTotal", NS)
        self.assertEqual(sum(line_nets), Decimal(totals.findtext("cbc:TaxExclusiveAmount", namespaces=NS)))
        self.assertEqual(totals.findtext("cbc:LineExtensionAmount", namespaces=NS), "225.00")
        self.assertEqual(totals.findtext("cbc:TaxInclusiveAmount", namespaces=NS), "267.75")
        self.assertEqual(totals.findtext("cbc:PayableAmount", namespaces=NS), "267.75")
        self.assertIsNone(totals.find("cbc:AllowanceTotalAmount", NS))
        self.assertEqual(root.findtext("cac:TaxTotal/cbc:TaxAmount", namespaces=NS), "42.75")
        self.assertEqual(
            root.findtext("cac:TaxTotal/cac:TaxSubtotal/cbc:TaxableAmount", namespaces=NS), "225.00"
        )
        self.assertEqual(
            root.findtext("cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:Percent", namespaces=NS), "19.00"
        )

        first = root.find("cac:InvoiceLine", NS)
        quantity = first.find("cbc:InvoicedQuantity", NS)
        self.assertEqual(quantity.text, "2")
        self.assertEqual(quantity.get("unitCode"), "HUR")
        self.assertEqual(first.findtext("cac:Item/cbc:Name", namespaces=NS), "Beratung")
        self.assertEqual(first.findtext("cac:Price/cbc:PriceAmount", namespaces=NS), "90.00")
        self.assertEqual(first.findtext("cac:Price/cac:AllowanceCharge/cbc:ChargeIndicator", namespaces=NS), "false")
        self.assertEqual(first.findtext("cac:Price/cac:AllowanceCharge/cbc:Amount", namespaces=NS), "10.00")
        self.assertEqual(first.findtext("cac:Price/cac:AllowanceCharge/cbc:BaseAmount", namespaces=NS), "100.00")
        amount = first.find("cbc:LineExtensionAmount", NS)
        self.assertEqual(amount.get("currencyID"), "EUR")

    def test_rounding_remainder_keeps_lines_and_totals_in_step(self):
        payload = {
            "customer": customer_payload(),
            "positions": [{"description": f"Paket {n}", "quantity": 1, "unitPrice": "33.33"} for n in range(3)],
            "meta": sample_meta(discount={"enabled": True, "type": "percent", "value": 7}),
        }
        generate_invoice(USER, payload)

        _, root = self._export("RE-001")

        line_nets = _amounts(root, "cac:InvoiceLine/cbc:LineExtensionAmount")
        tax_exclusive = Decimal(root.findtext("cac:LegalMonetaryTotal/cbc:TaxExclusiveAmount", namespaces=NS))
        self.assertEqual(tax_exclusive, Decimal("92.99"))
        self.assertEqual(sum(line_nets), tax_exclusive)

    def test_line_nets_match_tax_exclusive_amount_for_every_discount_shape(self):
        half_cent = {"enabled": True, "type": "percent", "base": "net", "value": 15}
        gross_amount = {"enabled": True, "type": "amount", "base": "gross", "value": "50,00"}
        licence = [{"type": "item", "description": "Lizenz", "quantity": 1, "unitPrice": "33.30"}]
        mixed = licence + [{"type": "item", "description": "Support", "quantity": 3, "unitPrice": "19.99"}]

        def create(positions, key, discount):
            payload = {
                "customer": customer_payload(),
                "positions": positions,
                "meta": sample_meta(idempotencyKey=key, discount=discount),
            }
            return generate_invoice(USER, payload).invoice_number

        percent_number = create(licence, "p", half_cent)
        gross_number = create(mixed, "g", gross_amount)
        cancellation_number = cancel_invoice(USER, percent_number).cancellation_invoice_number

        cases = {
            "percent": (percent_number, Decimal("28.30")),
            "gross amount": (gross_number, None),
            "cancellation": (cancellation_number, Decimal("-28.30")),
        }
        for label, (number, expected_net) in cases.items():
            with self.subTest(label):
                _, root = self._export(number)
                line_nets = _amounts(root, "cac:InvoiceLine/cbc:LineExtensionAmount")
                totals = root.find("cac:LegalMonetaryTotal", NS)
                tax_exclusive = Decimal(totals.findtext("cbc:TaxExclusiveAmount", namespaces=NS))
                tax_inclusive = Decimal(totals.findtext("cbc:TaxInclusiveAmount", namespaces=NS))
                tax = Decimal(root.findtext("cac:TaxTotal/cbc:TaxAmount", namespaces=NS))

                self.assertEqual(sum(line_nets), tax_exclusive)
                self.assertEqual(tax_exclusive + tax, tax_inclusive)
                if expected_net is not None:
                    self.assertEqual(tax_exclusive, expected_net)

    def test_document_level_allowance_mode(self):
        self.create_invoice(discount=ten_percent_off())

        _, root = self._export("RE-001", allowance_mode="document")

        allowance = root.find("cac:AllowanceCharge", NS)
        self.assertEqual(allowance.findtext("cbc:ChargeIndicator", namespaces=NS), "false")
        self.assertEqual(allowance.findtext("cbc:Amount", namespaces=NS), "25.00")
        self.assertEqual(allowance.findtext("cbc:AllowanceChargeReason", namespaces=NS), "Treuerabatt")
        totals = root.find("cac:LegalMonetaryTotal", NS)
        self.assertEqual(totals.findtext("cbc:LineExtensionAmount", namespaces=NS), "250.00")
        self.assertEqual(totals.findtext("cbc:AllowanceTotalAmount", namespaces=NS), "25.00")
        self.assertEqual(totals.findtext("cbc:TaxExclusiveAmount", namespaces=NS), "225.00")
        self.assertEqual(_amounts(root, "cac:InvoiceLine/cac:Price/cbc:PriceAmount"), [Decimal("100.00"), Decimal("50.00")])

    def test_routing_and_order_references(self):
        save_customer(
            Customer(
                **customer_payload(
                    e_invoice_leitweg_id="991-12345-67",
                    e_invoice_buyer_reference="BR-1",
                    e_invoice_order_reference="PO-7",
                )
            ),
            USER,
        )
        self.create_invoice()

        _, root = self._export("RE-001")

        self.assertEqual(root.findtext("cbc:BuyerReference", namespaces=NS), "BR-1")
        self.assertEqual(root.findtext("cac:OrderReference/cbc:ID", namespaces=NS), "PO-7")
        endpoint = root.find("cac:AccountingCustomerParty/cac:Party/cbc:EndpointID", NS)
        self.assertEqual(endpoint.text, "991-12345-67")
        self.assertEqual(endpoint.get("schemeID"), "0204")

    def test_cancellation_invoice_uses_negative_quantities(self):
        self.create_invoice(discount=ten_percent_off())
        cancel_invoice(USER, "RE-001")

        _, root = self._export("RE-002")

        self.assertEqual(
            [element.text for element in root.findall("cac:InvoiceLine/cbc:InvoicedQuantity", NS)],
            ["-2", "-1"],
        )
        self.assertEqual(_amounts(root, "cac:InvoiceLine/cac:Price/cbc:PriceAmount"), [Decimal("90.00"), Decimal("45.00")])
        self.assertIsNone(root.find("cac:InvoiceLine/cac:Price/cac:AllowanceCharge", NS))
        self.assertEqual(root.findtext("cac:LegalMonetaryTotal/cbc:PayableAmount", namespaces=NS), "-267.75")
        self.assertEqual(sum(_amounts(root, "cac:InvoiceLine/cbc:LineExtensionAmount")), Decimal("-225.00"))

    def test_payload_without_stored_invoice(self):
        payload = {
            "customer": {"id": "c-9", "first_name": "Eva", "last_name": "Muster"},
            "positions": [{"description": "", "quantity": 1, "unitPrice": 100}],
            "meta": {"invoiceNumber": "AD-1", "taxRate": 7, "date": "2025-05-05"},
        }

        result, root = self._export(None, payload=payload)

        self.assertEqual(result["filename"], "AD-1.xml")
        self.assertEqual(
            root.findtext("cac:AccountingCustomerParty/cac:Party/cac:PartyName/cbc:Name", namespaces=NS),
            "Eva Muster",
        )
        self.assertEqual(root.findtext("cac:InvoiceLine/cac:Item/cbc:Name", namespaces=NS), "Position")
        self.assertEqual(root.findtext("cac:LegalMonetaryTotal/cbc:PayableAmount", namespaces=NS), "107.00")

        del payload["meta"]["invoiceNumber"]
        generated, _ = self._export(None, payload=payload)
        self.assertRegex(generated["filename"], re.compile(r"^RE-2025-05-05-[0-9A-F]{6}\.xml$"))

    def test_missing_inputs(self):
        with self.assertRaises(ValidationFailed) as ctx:
            export_einvoice(USER, payload={})
        self.assertEqual(ctx.exception.reason, "missing_customer")

        with self.assertRaises(ValidationFailed) as ctx:
            export_einvoice(USER, payload={"customer": {"id": "c-1"}, "positions": []})
        self.assertEqual(ctx.exception.reason, "missing_positions")

        with self.assertRaises(NotFound) as ctx:
            export_einvoice(USER, "RE-404")
        self.assertEqual(ctx.exception.reason, "invoice_not_found")

    def test_missing_supplier_field_is_named(self):
        self.seed_profile(vat_number=None)
        self.seed_settings(iban=None)
        self.create_invoice()

        with self.assertRaises(ValidationFailed) as ctx:
            export_einvoice(USER, "RE-001")
        self.assertEqual(ctx.exception.reason, "missing_supplier_field")
        self.assertIn('"vat_number"', ctx.exception.message)
        self.assertFalse((self.root / "documents" / "dokumente" / "rechnung" / "e-rechnung").exists())


class EInvoiceWritesGateTests(StorageTestCase):
    extra_env = {"MCP_ENABLE_WRITES": "0"}

    def test_export_requires_writes(self):
        with self.assertRaises(WritesDisabled):
            export_einvoice_impl(USER, "RE-001")


if __name__ == "__main__":
    unittest.main()
