"""
billing_batch -- Scheduled billing maintenance.

The nightly run recalculates every account's penalties and rebuilds each
fiscal year's cached read model as a reconciliation pass.  Nothing in the
kernel imports from here.
"""

from billing_batch.nightly import NightlyMaintenance, NightlyReport

__all__ = ["NightlyMaintenance", "NightlyReport"]
