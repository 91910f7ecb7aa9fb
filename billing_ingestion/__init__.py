"""
billing_ingestion -- Historical billing data import.

Loads already-parsed historical billing periods and credit balances into
the source document store.  File formats are the caller's concern.

Architecture:
    billing_ingestion/ is a top-level package.  Nothing in the kernel or
    engines imports from ingestion.
"""

from billing_ingestion.importer import HistoricalBillImporter, ImportRecordError, ImportReport

__all__ = ["HistoricalBillImporter", "ImportRecordError", "ImportReport"]
