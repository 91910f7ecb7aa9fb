"""Currency -- ISO 4217 codes billing clients may be configured with."""

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    exponent: int
    name: str

    @property
    def minor_per_major(self) -> int:
        """Minor units in one major unit (100 centavos per peso)."""
        return 10**self.exponent


def _table(*entries: tuple[str, int, str]) -> dict[str, CurrencyInfo]:
    return {code: CurrencyInfo(code, exponent, name) for code, exponent, name in entries}


class CurrencyRegistry:
    """
    Known currencies and their minor-unit exponents.

    Money amounts are stored as integers in the minor unit, so the
    exponent is the only thing the kernel needs from a currency: it
    decides how a decimal string at the boundary becomes an integer.
    """

    _KNOWN: ClassVar[dict[str, CurrencyInfo]] = _table(
        ("MXN", 2, "Mexican Peso"),
        ("USD", 2, "US Dollar"),
        ("CAD", 2, "Canadian Dollar"),
        ("GTQ", 2, "Guatemalan Quetzal"),
        ("CRC", 2, "Costa Rican Colon"),
        ("COP", 2, "Colombian Peso"),
        ("PEN", 2, "Peruvian Sol"),
        ("EUR", 2, "Euro"),
        ("CLP", 0, "Chilean Peso"),
        ("JPY", 0, "Japanese Yen"),
        ("KWD", 3, "Kuwaiti Dinar"),
    )

    @staticmethod
    def _normalize(code: object) -> str | None:
        if not isinstance(code, str) or not code.strip():
            return None
        return code.strip().upper()

    @classmethod
    def is_valid(cls, code: str) -> bool:
        return cls._normalize(code) in cls._KNOWN

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        normalized = cls._normalize(code)
        return cls._KNOWN.get(normalized) if normalized else None

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        info = cls.get_info(code)
        if info is None:
            raise ValueError(f"Unsupported currency code: {code!r}")
        return info.exponent
