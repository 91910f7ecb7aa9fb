"""
BaseService -- abstract base for billing kernel services.

Services receive a SQLAlchemy ``Session`` and a client id.  They flush
within the caller's transaction and never commit or roll back; the caller
(the billing orchestrator, the nightly batch, a test) owns the boundary.
"""

from abc import ABC

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.selectors.billing_selector import BillingSelector


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.
    """

    def __init__(self, session: Session, client_id: str, clock: Clock | None = None):
        self.session = session
        self.client_id = client_id
        self._clock = clock or SystemClock()
        self._selector = BillingSelector(session, client_id)
