"""
Module: billing_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/ and models/.
    MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Selectors accept a Session from the caller and never add, delete,
      flush or commit.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Scoped to one client.  The caller owns the session and its
        transaction.
    """

    def __init__(self, session: Session, client_id: str):
        self.session = session
        self.client_id = client_id
