"""
Money — integer-cent currency arithmetic and tax-rate parsing.

Every amount that enters the tax code goes through here so that sums,
targets and per-item tax are computed on whole cents instead of floats.
Rounding is always half away from zero (Decimal's ROUND_HALF_UP), never
banker's rounding, so the same receipt always rounds the same way.
"""
import os
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from fractions import Fraction
from typing import Iterable, Union

from pydantic_core import core_schema

# A rate typed as "7" means 7 %, a rate typed as "0.07" is already a fraction.
RATE_PERCENT_THRESHOLD = Decimal(os.environ.get("RATE_PERCENT_THRESHOLD", "1"))

_MONEY_RE = re.compile(r"^\s*([+-]?)\s*\$?\s*(\d[\d,]*(?:\.\d*)?|\.\d+)\s*$")
_RATE_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_HUNDRED = Decimal(100)

RateLike = Union[Decimal, Fraction, float, int, str]


class InvalidAmount(ValueError):
    """Raised when a money amount cannot be parsed."""
    pass


class InvalidRate(ValueError):
    """Raised when a tax rate cannot be parsed or falls outside [0, 1]."""
    pass


def _round_half_away(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _rate_to_decimal(rate: RateLike) -> Decimal:
    if isinstance(rate, Decimal):
        return rate
    if isinstance(rate, Fraction):
        return Decimal(rate.numerator) / Decimal(rate.denominator)
    if isinstance(rate, float):
        return Decimal(repr(rate))
    return Decimal(rate)


@dataclass(frozen=True, order=True)
class Money:
    """An amount in minor units (cents). Single currency, two decimals."""

    cents: int

    def __post_init__(self):
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError(f"Money needs integer cents, got {self.cents!r}")

    # ── Construction ──────────────────────────────────────────────────────

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def from_decimal_string(cls, text: str) -> "Money":
        """
        Parse "3.50", "$1,204.99", " -0.25 " into Money.

        More than two decimals are rounded to the nearest cent, half away
        from zero.  Exponents, NaN and anything non-numeric raise
        InvalidAmount.
        """
        if not isinstance(text, str):
            raise InvalidAmount(f"Expected a string amount, got {type(text).__name__}")
        match = _MONEY_RE.match(text)
        if not match:
            raise InvalidAmount(f"Not a money amount: {text!r}")
        sign, digits = match.groups()
        try:
            value = Decimal(sign + digits.replace(",", ""))
        except InvalidOperation as e:
            raise InvalidAmount(f"Not a money amount: {text!r}") from e
        return cls(_round_half_away(value * _HUNDRED))

    @classmethod
    def from_value(cls, value) -> "Money":
        """Coerce a dollar amount (str, int, float or Decimal) into Money."""
        if isinstance(value, Money):
            return value
        if isinstance(value, bool):
            raise InvalidAmount(f"Not a money amount: {value!r}")
        if isinstance(value, float):
            if value != value or value in (float("inf"), float("-inf")):
                raise InvalidAmount(f"Not a money amount: {value!r}")
            return cls.from_decimal_string(repr(value))
        if isinstance(value, int):
            return cls(value * 100)
        if isinstance(value, Decimal):
            if not value.is_finite():
                raise InvalidAmount(f"Not a money amount: {value!r}")
            return cls(_round_half_away(value * _HUNDRED))
        if isinstance(value, str):
            return cls.from_decimal_string(value)
        raise InvalidAmount(f"Not a money amount: {value!r}")

    @classmethod
    def from_fraction(cls, amount: "Money", rate: RateLike) -> "Money":
        """amount × rate, rounded to the nearest cent (half away from zero)."""
        return cls(_round_half_away(Decimal(amount.cents) * _rate_to_decimal(rate)))

    @classmethod
    def total(cls, amounts: Iterable["Money"]) -> "Money":
        return cls(sum(a.cents for a in amounts))

    # ── Arithmetic ────────────────────────────────────────────────────────

    def divide_by_rate(self, rate: RateLike) -> "Money":
        """The base that ``rate`` turns into this amount: round(self / rate)."""
        r = _rate_to_decimal(rate)
        if r <= 0:
            raise InvalidRate(f"Cannot divide by a non-positive rate: {rate!r}")
        return Money(_round_half_away(Decimal(self.cents) / r))

    def add(self, other: "Money") -> "Money":
        return Money(self.cents + other.cents)

    def sub(self, other: "Money") -> "Money":
        return Money(self.cents - other.cents)

    def __add__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self.sub(other)

    def __neg__(self) -> "Money":
        return Money(-self.cents)

    def __abs__(self) -> "Money":
        return Money(abs(self.cents))

    def __bool__(self) -> bool:
        return self.cents != 0

    # ── Output ────────────────────────────────────────────────────────────

    def to_decimal(self) -> Decimal:
        return Decimal(self.cents) / _HUNDRED

    def format(self) -> str:
        sign = "-" if self.cents < 0 else ""
        return f"{sign}${abs(self.to_decimal()):.2f}"

    def __str__(self) -> str:
        return f"{self.to_decimal():.2f}"

    # ── pydantic integration ──────────────────────────────────────────────

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        from_input = core_schema.no_info_after_validator_function(
            cls.from_value,
            core_schema.union_schema([
                core_schema.str_schema(),
                core_schema.int_schema(),
                core_schema.float_schema(),
            ]),
        )
        return core_schema.json_or_python_schema(
            json_schema=from_input,
            python_schema=core_schema.union_schema([
                core_schema.is_instance_schema(cls),
                from_input,
            ]),
            serialization=core_schema.plain_serializer_function_ser_schema(
                cls._serialize, info_arg=True,
            ),
        )

    @staticmethod
    def _serialize(value: "Money", info):
        # JSON gets dollars as a number; python mode keeps the Money itself
        if info.mode_is_json():
            return float(value.to_decimal())
        return value


def parse_rate(value: RateLike) -> Decimal:
    """
    Normalize a user- or model-entered tax rate to a fraction in [0, 1].

    - "8.25%" / "7 %"      → always a percentage
    - numeric value > 1    → a percentage (7 → 0.07)
    - otherwise            → already a fraction (0.07 → 0.07)

    The threshold comes from RATE_PERCENT_THRESHOLD so it can be tuned
    without a code change.
    """
    if isinstance(value, bool):
        raise InvalidRate(f"Not a tax rate: {value!r}")
    percent = False
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            percent = True
            text = text[:-1].strip()
        if not _RATE_RE.match(text):
            raise InvalidRate(f"Not a tax rate: {value!r}")
        rate = Decimal(text)
    else:
        try:
            rate = _rate_to_decimal(value)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise InvalidRate(f"Not a tax rate: {value!r}") from e
        if not rate.is_finite():
            raise InvalidRate(f"Not a tax rate: {value!r}")

    if rate < 0:
        raise InvalidRate(f"Tax rate cannot be negative: {value!r}")
    if percent or rate > RATE_PERCENT_THRESHOLD:
        rate = rate / _HUNDRED
    if rate > 1:
        raise InvalidRate(f"Tax rate above 100%: {value!r}")
    return rate
