"""Read-only query selectors for the billing kernel."""

from billing_kernel.selectors.billing_selector import BillingSelector

__all__ = ["BillingSelector"]
