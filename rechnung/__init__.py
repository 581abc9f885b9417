"""rechnung billing core: invoice generation, cancellation, recurrence and e-invoice export."""

__version__ = "0.1.0"
