"""
Values -- Immutable integer minor-unit money.

Responsibility:
    Provides Currency and Money plus the handful of boundary helpers that
    convert between decimal strings and integer minor units. Every monetary
    quantity stored or computed by the billing kernel is an ``int`` of minor
    units (centavos for MXN); these types keep it that way.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O apart from logging the
    sanctioned lossy conversions. Imported by engines, services, ingestion
    and the HTTP layer.

Invariants enforced:
    - Money can only be constructed from ``int`` minor units. A ``float`` or
      ``Decimal`` passed to the constructor raises TypeError.
    - Decimal -> minor units happens through ``Money.from_decimal`` /
      ``to_minor_units`` only, rounding ROUND_HALF_UP to the currency
      exponent. ``Money.from_float`` exists for legacy float inputs and logs
      every use.
    - Same-currency arithmetic is exact integer arithmetic; mixing
      currencies raises CurrencyMismatchError.

Failure modes:
    - TypeError on construction from a non-integer amount.
    - InvalidCurrencyError for an unknown ISO 4217 code.
    - InvalidAmountError for a decimal string that does not parse.
    - CurrencyMismatchError when arithmetic mixes currencies.

Audit relevance:
    Floating-point drift across thousands of additive operations was the
    dominant defect class in migrated billing data. Integer storage plus a
    single logged conversion point makes every cent traceable.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from billing_kernel.domain.currency import CurrencyRegistry
from billing_kernel.exceptions import (
    CurrencyMismatchError,
    InvalidAmountError,
    InvalidCurrencyError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("domain.values")

# Tolerance used when comparing legacy float-contaminated amounts.
DEFAULT_TOLERANCE_MINOR_UNITS = Decimal("0.2")


@dataclass(frozen=True, slots=True)
class Currency:
    """
    ISO 4217 currency code value object.

    Guarantees:
        - Immutable and hashable
        - code is always uppercase and registered in CurrencyRegistry
    """

    code: str

    def __post_init__(self) -> None:
        normalized = self.code.upper().strip() if isinstance(self.code, str) else ""
        if not CurrencyRegistry.is_valid(normalized):
            raise InvalidCurrencyError(str(self.code))
        object.__setattr__(self, "code", normalized)

    @property
    def decimal_places(self) -> int:
        return CurrencyRegistry.get_decimal_places(self.code)

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Currency({self.code!r})"


def _coerce_currency(currency: str | Currency) -> Currency:
    if isinstance(currency, Currency):
        return currency
    return Currency(currency)


@dataclass(frozen=True, slots=True, order=False)
class Money:
    """
    Monetary amount held as integer minor units.

    Contract:
        Pairs an ``int`` count of minor units with its Currency. This is the
        only monetary representation allowed past the system boundary.

    Guarantees:
        - minor_units is always ``int`` (never bool, float or Decimal)
        - Arithmetic and comparisons require the same currency
        - Conversions to and from decimal are explicit method calls

    Non-goals:
        - Does NOT convert between currencies
        - Does NOT auto-round; there is nothing to round in integer storage
    """

    minor_units: int
    currency: Currency

    def __post_init__(self) -> None:
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise TypeError(
                "Money requires integer minor units, got "
                f"{type(self.minor_units).__name__}; use Money.from_decimal "
                "or Money.from_float at the boundary"
            )
        if not isinstance(self.currency, Currency):
            object.__setattr__(self, "currency", _coerce_currency(self.currency))

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def of_minor(cls, minor_units: int, currency: str | Currency = "MXN") -> Money:
        """Create Money from integer minor units."""
        return cls(minor_units=minor_units, currency=_coerce_currency(currency))

    @classmethod
    def zero(cls, currency: str | Currency = "MXN") -> Money:
        """Create a zero amount in the given currency."""
        return cls(minor_units=0, currency=_coerce_currency(currency))

    @classmethod
    def from_decimal(
        cls, value: str | Decimal | int, currency: str | Currency = "MXN"
    ) -> Money:
        """
        Convert a major-unit decimal value to Money.

        This is the single sanctioned boundary conversion. Values with more
        precision than the currency allows are rounded ROUND_HALF_UP and the
        rounding is logged.

        Raises:
            InvalidAmountError: If the value does not parse as a decimal.
            TypeError: If given a float (use ``from_float``).
        """
        cur = _coerce_currency(currency)
        if isinstance(value, float):
            raise TypeError("Money.from_decimal does not accept float; use Money.from_float")
        try:
            dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmountError(value, "not a decimal number") from exc
        if not dec.is_finite():
            raise InvalidAmountError(value, "not a finite number")

        scaled = dec.scaleb(cur.decimal_places)
        minor = int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        if Decimal(minor) != scaled:
            logger.warning(
                "money_rounded_at_boundary",
                extra={
                    "input_value": str(value),
                    "minor_units": minor,
                    "currency": cur.code,
                },
            )
        return cls(minor_units=minor, currency=cur)

    @classmethod
    def from_float(cls, value: float, currency: str | Currency = "MXN") -> Money:
        """
        Convert a legacy float major-unit amount to Money.

        Goes through ``repr`` so ``500.1`` becomes ``Decimal("500.1")``
        rather than its binary expansion. Every call is logged.
        """
        cur = _coerce_currency(currency)
        money = cls.from_decimal(Decimal(repr(float(value))), cur)
        logger.warning(
            "money_float_conversion",
            extra={
                "input_value": repr(value),
                "minor_units": money.minor_units,
                "currency": cur.code,
            },
        )
        return money

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def to_decimal(self) -> Decimal:
        """Major-unit Decimal at the currency's precision."""
        return to_decimal(self.minor_units, self.currency)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    @property
    def is_zero(self) -> bool:
        return self.minor_units == 0

    @property
    def is_positive(self) -> bool:
        return self.minor_units > 0

    @property
    def is_negative(self) -> bool:
        return self.minor_units < 0

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _check(self, other: object) -> Money:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency.code, other.currency.code)
        return other

    def __add__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.minor_units + other.minor_units, self.currency)

    def __sub__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.minor_units - other.minor_units, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.minor_units, self.currency)

    def __abs__(self) -> Money:
        return Money(abs(self.minor_units), self.currency)

    def __lt__(self, other: Money) -> bool:
        return self.minor_units < self._check(other).minor_units

    def __le__(self, other: Money) -> bool:
        return self.minor_units <= self._check(other).minor_units

    def __gt__(self, other: Money) -> bool:
        return self.minor_units > self._check(other).minor_units

    def __ge__(self, other: Money) -> bool:
        return self.minor_units >= self._check(other).minor_units

    def __str__(self) -> str:
        return f"{self.to_decimal()} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({self.minor_units}, {self.currency.code!r})"


# ---------------------------------------------------------------------------
# Module-level helpers on bare minor-unit integers
# ---------------------------------------------------------------------------

MinorLike = Union[int, Decimal, Money]


def to_minor_units(value: str | Decimal | int, currency: str | Currency = "MXN") -> int:
    """Decimal string (major units) to integer minor units."""
    return Money.from_decimal(value, currency).minor_units


def to_decimal(minor_units: int, currency: str | Currency = "MXN") -> Decimal:
    """Integer minor units to a major-unit Decimal at currency precision."""
    if isinstance(minor_units, bool) or not isinstance(minor_units, int):
        raise TypeError(f"minor_units must be int, got {type(minor_units).__name__}")
    places = _coerce_currency(currency).decimal_places
    return Decimal(minor_units).scaleb(-places).quantize(Decimal(1).scaleb(-places))


def add_minor(*values: int) -> int:
    """Exact sum of minor-unit integers."""
    total = 0
    for v in values:
        if isinstance(v, bool) or not isinstance(v, int):
            raise TypeError(f"add_minor requires int, got {type(v).__name__}")
        total += v
    return total


def subtract_minor(a: int, b: int) -> int:
    """Exact difference of two minor-unit integers."""
    add_minor(a, b)
    return a - b


def _as_decimal(value: MinorLike) -> Decimal:
    if isinstance(value, Money):
        return Decimal(value.minor_units)
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary quantity")
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    raise TypeError(f"Cannot compare {type(value).__name__} as minor units")


def approx_equal(
    a: MinorLike,
    b: MinorLike,
    tolerance_minor_units: Decimal = DEFAULT_TOLERANCE_MINOR_UNITS,
) -> bool:
    """
    Compare two minor-unit quantities within a tolerance.

    Intended for reconciling against legacy data whose stored amounts picked
    up floating-point noise (e.g. ``Decimal("4999.9")`` centavos). Money
    arguments must share a currency.
    """
    if isinstance(a, Money) and isinstance(b, Money):
        a._check(b)
    return abs(_as_decimal(a) - _as_decimal(b)) <= Decimal(tolerance_minor_units)


def round_half_up(value: Decimal) -> int:
    """Round a Decimal quantity of minor units to an int, half away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
