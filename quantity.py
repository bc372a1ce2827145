import decimal
import functools
import re
from decimal import Decimal
from enum import StrEnum

from kubernetes.utils.quantity import parse_quantity
from pydantic_core import core_schema


# Template only; arithmetic runs in a decimal.localcontext copy of it so that
# request threads never share flags. Sums of many large binary quantities need
# more digits than the default 28-digit context provides.
CONTEXT = decimal.Context(prec=64)

# Largest accepted magnitude is just under 10**37: an int64 mantissa at exa
# scale.
MAX_ADJUSTED_EXPONENT = 36

NANO = Decimal("1e-9")

# https://kubernetes.io/docs/reference/kubernetes-api/common-definitions/quantity/
QUANTITY_RE = re.compile(
    r"[+-]?(\d+(\.\d*)?|\.\d+)"
    r"(?P<suffix>[eE][+-]?\d+|[KMGTPE]i|[numkMGTPE])?"
)

DECIMAL_SUFFIXES = {
    -9: "n",
    -6: "u",
    -3: "m",
    0: "",
    3: "k",
    6: "M",
    9: "G",
    12: "T",
    15: "P",
    18: "E",
}

BINARY_SUFFIXES = ["", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei"]


class Format(StrEnum):
    DECIMAL_SI = "DecimalSI"
    BINARY_SI = "BinarySI"
    DECIMAL_EXPONENT = "DecimalExponent"


def _is_integral(val: Decimal) -> bool:
    return val == val.to_integral_value()


def _format_for_suffix(suffix: str | None) -> Format:
    if not suffix:
        return Format.DECIMAL_SI
    if suffix.endswith("i"):
        return Format.BINARY_SI
    if suffix[0] in "eE" and len(suffix) > 1:
        return Format.DECIMAL_EXPONENT
    return Format.DECIMAL_SI


def _decimal_parts(val: Decimal) -> tuple[int, int]:
    """Split val into (mantissa, exponent) with an integral mantissa and the
    largest exponent that is a multiple of three."""
    with decimal.localcontext(CONTEXT) as ctx:
        for exponent in range(18, -12, -3):
            mantissa = val.scaleb(-exponent, context=ctx)
            if _is_integral(mantissa):
                return int(mantissa), exponent

    # Unreachable for values rounded to nano precision.
    raise ValueError(f"cannot represent {val} as a quantity")


@functools.total_ordering
class Quantity:
    """An exact Kubernetes resource quantity.

    The value is held as a Decimal so that "500m" + "500m" is exactly "1".
    The format (decimal, binary or exponent notation) is taken from the
    suffix the quantity was written with and is used to produce the
    canonical string form, e.g. "128Mi" + "256Mi" renders as "384Mi".
    """

    __slots__ = ("value", "format")

    def __init__(self, value: Decimal | int = 0, format: Format = Format.DECIMAL_SI):
        value = Decimal(value)
        if not value.is_finite():
            raise ValueError(f"quantity must be finite, got {value}")

        # Anything finer than 1n is rounded up, away from zero.
        if value.as_tuple().exponent < -9:
            with decimal.localcontext(CONTEXT) as ctx:
                value = value.quantize(NANO, rounding=decimal.ROUND_UP, context=ctx)

        self.value = value
        self.format = format

    @classmethod
    def parse(cls, text: str) -> "Quantity":
        match = QUANTITY_RE.fullmatch(text.strip())
        if not match:
            raise ValueError(f"invalid quantity: {text!r}")

        # Suffixes are applied exactly or not at all.
        with decimal.localcontext(CONTEXT) as ctx:
            ctx.traps[decimal.Inexact] = True
            try:
                value = parse_quantity(match.group(0))
            except decimal.DecimalException as err:
                raise ValueError(f"invalid quantity: {text!r}") from err

        if value and value.adjusted() > MAX_ADJUSTED_EXPONENT:
            raise ValueError(f"quantity {text!r} is too large")

        return cls(value, _format_for_suffix(match["suffix"]))

    @classmethod
    def validate(cls, val) -> "Quantity":
        if isinstance(val, cls):
            return val

        # bool is an int, but `cpu: true` is not a quantity.
        if isinstance(val, bool):
            raise ValueError(f"invalid quantity: {val!r}")
        if isinstance(val, (int, float, Decimal)):
            val = str(val)
        if not isinstance(val, str):
            raise ValueError(f"invalid quantity: {val!r}")

        return cls.parse(val)

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        return core_schema.no_info_plain_validator_function(
            cls.validate,
            serialization=core_schema.to_string_ser_schema(),
        )

    def __add__(self, other):
        if not isinstance(other, Quantity):
            return NotImplemented

        # A zero accumulator takes on the format of whatever is added to it.
        fmt = self.format if self.value else other.format
        with decimal.localcontext(CONTEXT) as ctx:
            total = ctx.add(self.value, other.value)
        return Quantity(total, fmt)

    def __radd__(self, other):
        # Lets sum() start from its default of 0.
        if isinstance(other, int) and not isinstance(other, bool) and other == 0:
            return self
        return NotImplemented

    def __eq__(self, other):
        if not isinstance(other, Quantity):
            return NotImplemented
        return self.value == other.value

    def __lt__(self, other):
        if not isinstance(other, Quantity):
            return NotImplemented
        return self.value < other.value

    def __hash__(self):
        return hash(self.value)

    def __bool__(self):
        return bool(self.value)

    def __str__(self):
        if not self.value:
            return "0"

        if (
            self.format is Format.BINARY_SI
            and _is_integral(self.value)
            and abs(self.value) >= 1024
        ):
            mantissa, power = int(self.value), 0
            while power < len(BINARY_SUFFIXES) - 1 and mantissa % 1024 == 0:
                mantissa //= 1024
                power += 1
            return f"{mantissa}{BINARY_SUFFIXES[power]}"

        mantissa, exponent = _decimal_parts(self.value)
        if self.format is Format.DECIMAL_EXPONENT:
            return f"{mantissa}e{exponent}" if exponent else str(mantissa)

        return f"{mantissa}{DECIMAL_SUFFIXES[exponent]}"

    def __repr__(self):
        return f"Quantity({str(self)!r})"
