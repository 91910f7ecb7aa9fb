"""
Module: billing_kernel.db.types
Responsibility: Annotated column aliases shared by every billing model.
Architecture position: Kernel > DB.  May be imported by models/ and
    services/.  MUST NOT import from either.

Invariants enforced:
    - MinorUnits is BigInteger.  There is no Numeric or Float money column
      anywhere in the schema; decimal values exist only at the HTTP and
      import boundaries.
"""

from typing import Annotated

from sqlalchemy import BigInteger, String

# Integer count of currency minor units (centavos for MXN)
MinorUnits = Annotated[int, BigInteger]

# Metered quantity (cubic metres, kWh); informational only
Quantity = Annotated[int, BigInteger]

# ISO 4217 currency code
CurrencyCode = Annotated[str, String(3)]

# Client and account identifiers as supplied by the property system
ClientId = Annotated[str, String(64)]
AccountCode = Annotated[str, String(64)]

# Opaque reference to the external ledger
TransactionRef = Annotated[str, String(128)]

ShortCode = Annotated[str, String(50)]
LongText = Annotated[str, String(2000)]
