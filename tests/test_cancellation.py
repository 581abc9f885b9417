import sys
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing_fixtures import (
    USER,
    StorageTestCase,
    customer_payload,
    sample_meta,
    ten_percent_off,
)
from rechnung.backends.billing_models import ItemLine
from rechnung.backends.cancellation import (
    STEPS,
    cancel_invoice,
    cancel_invoice_impl,
    cancellation_intro,
)
from rechnung.backends.errors import Conflict, NotFound, ValidationFailed, WritesDisabled
from rechnung.backends.generation import generate_invoice, get_invoice
from rechnung.backends.storage import (
    find_cancellations_of,
    iter_invoices,
    load_cancellation_log,
    save_invoice,
)

TODAY = date(2025, 4, 2)


class CancelInvoiceTests(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.seed_settings()
        self.original = self.create_invoice(discount=ten_percent_off()).invoice

    def test_cancellation_reverses_the_original(self):
        result = cancel_invoice(USER, "RE-001", "Doppelt berechnet", today=TODAY)

        self.assertFalse(result.existing)
        self.assertEqual(result.cancellation_invoice_number, "RE-002")
        self.assertEqual(
            result.to_payload(), {"ok": True, "cancellationInvoiceNumber": "RE-002"}
        )

        cancellation = get_invoice(USER, "RE-002")
        self.assertTrue(cancellation.is_cancellation)
        self.assertEqual(cancellation.cancels_invoice_number, "RE-001")
        self.assertEqual(cancellation.cancellation_reason, "Doppelt berechnet")
        self.assertEqual(cancellation.status, "Erstellt")
        self.assertEqual(cancellation.date, TODAY)
        self.assertEqual(cancellation.title, "Stornorechnung zu RE-001")
        self.assertTrue(
            cancellation.intro.startswith("STORNO zu Rechnung RE-001. Grund: Doppelt berechnet.")
        )
        self.assertFalse(cancellation.discount.enabled)
        self.assertEqual(cancellation.customer_id, self.original.customer_id)

        prices = [line.unit_price for line in cancellation.positions if isinstance(line, ItemLine)]
        self.assertEqual(prices, [Decimal("-90"), Decimal("-45")])
        self.assertEqual(cancellation.totals.net_after_discount, Decimal("-225.00"))
        self.assertEqual(cancellation.totals.tax_amount, Decimal("-42.75"))
        self.assertEqual(cancellation.totals.gross_total, Decimal("-267.75"))
        self.assertEqual(
            cancellation.totals.gross_total, -self.original.totals.gross_total
        )

        original = get_invoice(USER, "RE-001")
        self.assertTrue(original.is_cancelled)
        self.assertEqual(original.cancelled_by_invoice_number, "RE-002")
        self.assertIsNotNone(original.cancelled_at)

        log = load_cancellation_log(USER, "RE-001")
        self.assertEqual([step.name for step in log.steps], list(STEPS))

    def test_cancelling_twice_returns_the_same_cancellation(self):
        first = cancel_invoice(USER, "RE-001", today=TODAY)
        second = cancel_invoice(USER, "RE-001", today=TODAY)

        self.assertEqual(first.cancellation_invoice_number, second.cancellation_invoice_number)
        self.assertTrue(second.existing)
        self.assertEqual(second.to_payload()["message"], "Stornorechnung existiert bereits.")
        self.assertEqual(len(find_cancellations_of(USER, "RE-001")), 1)
        self.assertEqual(len(list(iter_invoices(USER))), 2)

    def test_cancellation_cannot_be_cancelled(self):
        cancel_invoice(USER, "RE-001", today=TODAY)

        with self.assertRaises(Conflict) as ctx:
            cancel_invoice(USER, "RE-002", today=TODAY)
        self.assertEqual(ctx.exception.reason, "cannot_cancel_a_cancellation")

    def test_cancelled_invoice_without_cancellation_is_rejected(self):
        save_invoice(self.original.model_copy(update={"status": "Storniert"}))

        with self.assertRaises(Conflict) as ctx:
            cancel_invoice(USER, "RE-001", today=TODAY)
        self.assertEqual(ctx.exception.reason, "already_cancelled")

    def test_unknown_invoice(self):
        with self.assertRaises(NotFound) as ctx:
            cancel_invoice(USER, "RE-404")
        self.assertEqual(ctx.exception.reason, "invoice_not_found")

    def test_missing_template_leaves_no_trace(self):
        self.seed_settings(template=None)

        with self.assertRaises(ValidationFailed) as ctx:
            cancel_invoice(USER, "RE-001", today=TODAY)
        self.assertEqual(ctx.exception.reason, "billing_template_missing")
        self.assertIsNone(load_cancellation_log(USER, "RE-001"))
        self.assertEqual(len(list(iter_invoices(USER))), 1)
        self.assertFalse(get_invoice(USER, "RE-001").is_cancelled)

    def test_interrupted_run_resumes_without_a_second_invoice(self):
        def crash(step):
            if step == "mark_original":
                raise RuntimeError("storage went away")

        with self.assertRaises(RuntimeError):
            cancel_invoice(USER, "RE-001", "Fehler", today=TODAY, before_step=crash)

        self.assertFalse(get_invoice(USER, "RE-001").is_cancelled)
        log = load_cancellation_log(USER, "RE-001")
        self.assertEqual(log.cancellation_invoice_number, "RE-002")
        self.assertFalse(log.has_completed("mark_original"))

        seen = []
        result = cancel_invoice(USER, "RE-001", today=TODAY, before_step=seen.append)

        self.assertEqual(result.cancellation_invoice_number, "RE-002")
        self.assertEqual(seen, ["mark_original", "mark_cancellation", "done"])
        self.assertEqual(len(find_cancellations_of(USER, "RE-001")), 1)
        self.assertTrue(get_invoice(USER, "RE-001").is_cancelled)
        self.assertEqual(get_invoice(USER, "RE-002").cancellation_reason, "Fehler")


class HalfCentCancellationTests(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.seed_settings()

    def test_percent_discount_with_half_cent_is_reversed_exactly(self):
        payload = {
            "customer": customer_payload(),
            "positions": [{"type": "item", "description": "Lizenz", "quantity": 1, "unitPrice": "33.30"}],
            "meta": sample_meta(
                discount={"enabled": True, "type": "percent", "base": "net", "value": 15}
            ),
        }
        original = generate_invoice(USER, payload).invoice
        self.assertEqual(original.totals.gross_total, Decimal("33.68"))

        result = cancel_invoice(USER, "RE-001", today=TODAY)

        cancellation = get_invoice(USER, result.cancellation_invoice_number)
        self.assertEqual(cancellation.totals.net_after_discount, Decimal("-28.30"))
        self.assertEqual(cancellation.totals.tax_amount, Decimal("-5.38"))
        self.assertEqual(cancellation.totals.gross_total, Decimal("-33.68"))


class CancellationHelpersTests(unittest.TestCase):
    def test_intro_mentions_reason_and_keeps_original_intro(self):
        text = cancellation_intro("RE-7", "Storno", "Danke.")
        self.assertEqual(text, "STORNO zu Rechnung RE-7. Grund: Storno. \n\nDanke.")
        self.assertEqual(cancellation_intro("RE-7", None, None), "STORNO zu Rechnung RE-7. ")


class CancelWritesGateTests(StorageTestCase):
    extra_env = {"MCP_ENABLE_WRITES": "false"}

    def test_cancel_requires_writes(self):
        with self.assertRaises(WritesDisabled):
            cancel_invoice_impl(USER, "RE-001")


if __name__ == "__main__":
    unittest.main()
