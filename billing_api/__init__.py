"""
billing_api -- FastAPI HTTP surface over the billing orchestrator.

Decimal money strings are converted to integer minor units here and
nowhere else on the request path.
"""

from billing_api.app import create_app, http_status_for

__all__ = ["create_app", "http_status_for"]
