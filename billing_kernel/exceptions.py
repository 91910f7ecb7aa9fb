"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BillingKernelError:

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- InvalidDateError
    |   +-- InvalidFiscalMonthError
    |   +-- InvalidScopeError
    |   +-- AccountNotFoundError
    |   +-- PeriodNotFoundError
    |   +-- DuplicatePeriodError
    |   +-- PaymentNotFoundError
    |   +-- PaymentAlreadyReversedError
    |
    +-- ConsistencyError
    |   +-- AllocationSplitError
    |   +-- CreditBalanceOverdrawError
    |   +-- PeriodHasPaymentsError
    |   +-- InvariantViolationError
    |
    +-- CurrencyError
    |   +-- InvalidCurrencyError
    |   +-- CurrencyMismatchError
    |
    +-- ConcurrencyError
    |   +-- StaleCacheError
    |
    +-- InfrastructureError
    |   +-- CacheWriteError
    |   +-- LedgerGatewayError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | INVALID_AMOUNT              | Zero/negative/non-integer amount
                | INVALID_DATE                | Missing, naive or out-of-order date
                | INVALID_FISCAL_MONTH        | Month or due day outside range
                | INVALID_SCOPE               | Scope is neither "all" nor a list
                | ACCOUNT_NOT_FOUND           | Unknown or inactive account
                | PERIOD_NOT_FOUND            | No period for (account, year, month)
                | DUPLICATE_PERIOD            | Period already generated
                | PAYMENT_NOT_FOUND           | No payment for transaction id
                | PAYMENT_ALREADY_REVERSED    | Payment reversed earlier
----------------|-----------------------------|-----------------------------------------
Consistency     | ALLOCATION_SPLIT_MISMATCH   | base + penalty != amount applied
                | CREDIT_BALANCE_OVERDRAW     | Credit ledger would go negative
                | PERIOD_HAS_PAYMENTS         | Purge refused, allocations exist
                | INVARIANT_VIOLATION         | Stored totals disagree with details
----------------|-----------------------------|-----------------------------------------
Currency        | INVALID_CURRENCY            | Not a valid ISO 4217 code
                | CURRENCY_MISMATCH           | Mixed currencies in operation
----------------|-----------------------------|-----------------------------------------
Concurrency     | STALE_CACHE                 | Version compare-and-swap missed
----------------|-----------------------------|-----------------------------------------
Infrastructure  | CACHE_WRITE_FAILED          | Cached read model not persisted
                | LEDGER_GATEWAY_FAILED       | External ledger call failed
----------------|-----------------------------|-----------------------------------------
Configuration   | CONFIGURATION_INVALID       | Client configuration rejected

===============================================================================
HANDLING PATTERNS
===============================================================================

Validation and consistency errors are raised by kernel services before any
write is flushed. The orchestrator in ``billing_services`` converts them into
explicit result statuses; the HTTP layer maps ``code`` to a response.

    try:
        payments.apply_payment(...)
    except ValidationError as e:
        return BillingResult.validation_failure(e)
    except ConsistencyError as e:
        return BillingResult.consistency_failure(e)

StaleCacheError is retried once by the aggregation engine with a fresh read.
Infrastructure errors raised after the source mutation committed are logged
as partial failures; the committed mutation is never rolled back.
"""


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation exceptions


class ValidationError(BillingKernelError):
    """Bad input. Rejected synchronously and never partially applied."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Monetary amount is not a positive integer of minor units."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str = "must be a positive integer"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InvalidDateError(ValidationError):
    """Date is missing, malformed or not usable in this operation."""

    code: str = "INVALID_DATE"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class InvalidFiscalMonthError(ValidationError):
    """Calendar month, fiscal month index or due day is out of range."""

    code: str = "INVALID_FISCAL_MONTH"

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"{field} out of range: {value!r}")


class InvalidScopeError(ValidationError):
    """Recalculation or rebuild scope is neither 'all' nor account ids."""

    code: str = "INVALID_SCOPE"

    def __init__(self, scope: object):
        self.scope = repr(scope)
        super().__init__(f"Scope must be 'all' or a list of account ids, got {scope!r}")


class AccountNotFoundError(ValidationError):
    """Billing account does not exist or is inactive."""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str, client_id: str | None = None):
        self.account_id = account_id
        self.client_id = client_id
        super().__init__(f"Account not found: {account_id}")


class PeriodNotFoundError(ValidationError):
    """No billing period exists for the requested key."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, account_id: str, fiscal_year: int, fiscal_month: int):
        self.account_id = account_id
        self.fiscal_year = fiscal_year
        self.fiscal_month = fiscal_month
        super().__init__(
            f"No billing period for account {account_id} "
            f"FY{fiscal_year} month {fiscal_month}"
        )


class DuplicatePeriodError(ValidationError):
    """Billing period was already generated for this account."""

    code: str = "DUPLICATE_PERIOD"

    def __init__(self, account_id: str, fiscal_year: int, fiscal_month: int):
        self.account_id = account_id
        self.fiscal_year = fiscal_year
        self.fiscal_month = fiscal_month
        super().__init__(
            f"Billing period already exists for account {account_id} "
            f"FY{fiscal_year} month {fiscal_month}"
        )


class PaymentNotFoundError(ValidationError):
    """No payment is linked to the external transaction id."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"No payment for transaction {transaction_id}")


class PaymentAlreadyReversedError(ValidationError):
    """Payment was reversed earlier."""

    code: str = "PAYMENT_ALREADY_REVERSED"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Payment for transaction {transaction_id} already reversed")


# Consistency exceptions


class ConsistencyError(BillingKernelError):
    """An invariant would be violated. Rejected before any write."""

    code: str = "CONSISTENCY_ERROR"


class AllocationSplitError(ConsistencyError):
    """Base and penalty portions do not sum to the amount applied."""

    code: str = "ALLOCATION_SPLIT_MISMATCH"

    def __init__(self, amount_applied: int, base_portion: int, penalty_portion: int):
        self.amount_applied = amount_applied
        self.base_portion = base_portion
        self.penalty_portion = penalty_portion
        super().__init__(
            f"Allocation split mismatch: base {base_portion} + penalty "
            f"{penalty_portion} != applied {amount_applied}"
        )


class CreditBalanceOverdrawError(ConsistencyError):
    """Applying the delta would take the credit balance below zero."""

    code: str = "CREDIT_BALANCE_OVERDRAW"

    def __init__(self, account_id: str, balance: int, delta: int):
        self.account_id = account_id
        self.balance = balance
        self.delta = delta
        super().__init__(
            f"Credit balance for {account_id} would go negative: "
            f"{balance} + ({delta})"
        )


class PeriodHasPaymentsError(ConsistencyError):
    """Purge refused because periods already carry payment allocations."""

    code: str = "PERIOD_HAS_PAYMENTS"

    def __init__(self, fiscal_year: int, fiscal_month: int, account_ids: list[str]):
        self.fiscal_year = fiscal_year
        self.fiscal_month = fiscal_month
        self.account_ids = account_ids
        super().__init__(
            f"FY{fiscal_year} month {fiscal_month} has payments for "
            f"{len(account_ids)} account(s); reverse them before purging"
        )


class InvariantViolationError(ConsistencyError):
    """Stored totals disagree with their detail records."""

    code: str = "INVARIANT_VIOLATION"

    def __init__(self, invariant: str, entity_id: str, expected: object, actual: object):
        self.invariant = invariant
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invariant {invariant} violated on {entity_id}: "
            f"expected {expected!r}, got {actual!r}"
        )


# Currency exceptions


class CurrencyError(BillingKernelError):
    """Base exception for currency errors."""

    code: str = "CURRENCY_ERROR"


class InvalidCurrencyError(CurrencyError):
    """Currency code is not a valid ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: {currency!r}")


class CurrencyMismatchError(CurrencyError):
    """Arithmetic mixed two currencies."""

    code: str = "CURRENCY_MISMATCH"

    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"Cannot combine {left} with {right}")


# Concurrency exceptions


class ConcurrencyError(BillingKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class StaleCacheError(ConcurrencyError):
    """The cached read model moved past the version the writer started from."""

    code: str = "STALE_CACHE"

    def __init__(self, client_id: str, fiscal_year: int, expected_version: int):
        self.client_id = client_id
        self.fiscal_year = fiscal_year
        self.expected_version = expected_version
        super().__init__(
            f"Cached read model {client_id}/FY{fiscal_year} is no longer at "
            f"version {expected_version}"
        )


# Infrastructure exceptions


class InfrastructureError(BillingKernelError):
    """Base exception for storage and collaborator failures."""

    code: str = "INFRASTRUCTURE_ERROR"


class CacheWriteError(InfrastructureError):
    """Cached read model could not be persisted."""

    code: str = "CACHE_WRITE_FAILED"

    def __init__(self, client_id: str, fiscal_year: int, reason: str):
        self.client_id = client_id
        self.fiscal_year = fiscal_year
        self.reason = reason
        super().__init__(f"Cache write failed for {client_id}/FY{fiscal_year}: {reason}")


class LedgerGatewayError(InfrastructureError):
    """External ledger rejected or failed a transaction call."""

    code: str = "LEDGER_GATEWAY_FAILED"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Ledger {operation} failed: {reason}")


# Configuration exceptions


class ConfigurationError(BillingKernelError):
    """Client configuration is missing or invalid."""

    code: str = "CONFIGURATION_INVALID"

    def __init__(self, client_id: str, errors: list[str]):
        self.client_id = client_id
        self.errors = errors
        super().__init__(
            f"Invalid configuration for {client_id}: " + "; ".join(errors)
        )
