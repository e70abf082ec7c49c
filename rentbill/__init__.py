"""Rental billing engine: GST tax split, invoice numbering, invoice creation and payment ledger."""

__version__ = "0.1.0"
