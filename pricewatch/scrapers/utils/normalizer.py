"""Data normalization utilities for prices, quantities and identifiers.

Everything here is pure: no I/O, and unparsable input yields None rather
than an exception so a caller can skip one malformed record without
aborting a whole page.
"""

import re
import secrets
import unicodedata
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union
from urllib.parse import unquote, urlsplit, urlunsplit

Number = Union[Decimal, int, float, str]

CANONICAL_UNITS = ("g", "kg", "ml", "l", "pieces")

# Alias -> unit token. cl/dl are kept distinct here and folded into ml by normalize_unit().
UNIT_ALIASES = {
    # mass
    "g": "g", "gr": "g", "grs": "g", "gram": "g", "grams": "g", "gramm": "g",
    "gramos": "g", "г": "g", "гр": "g",
    "kg": "kg", "kgs": "kg", "kilo": "kg", "kilos": "kg", "kilogram": "kg",
    "kilograms": "kg", "кг": "kg",
    # volume
    "ml": "ml", "мл": "ml",
    "cl": "cl",
    "dl": "dl",
    "l": "l", "lt": "l", "ltr": "l", "liter": "l", "liters": "l", "litre": "l",
    "litres": "l", "л": "l",
    # count
    "pcs": "pieces", "pc": "pieces", "piece": "pieces", "pieces": "pieces",
    "шт": "pieces", "stück": "pieces", "stk": "pieces", "adet": "pieces",
    "copë": "pieces",
}

# Divisor that turns a quantity in the given unit into kg, l or pieces.
_BASE_DIVISORS = {
    "g": Decimal("1000"),
    "kg": Decimal("1"),
    "ml": Decimal("1000"),
    "cl": Decimal("100"),
    "dl": Decimal("10"),
    "l": Decimal("1"),
    "pieces": Decimal("1"),
}

_UNIT_PATTERN = "|".join(
    re.escape(alias) for alias in sorted(UNIT_ALIASES, key=len, reverse=True)
)
_NUMBER_PATTERN = r"\d+(?:[.,]\d+)?"
# A unit token must not run into a following letter ("3 large" is not litres).
_UNIT_END = r"(?![^\W\d_])"

_MULTIPACK_RE = re.compile(
    rf"(?<![\d.,])(\d+)\s*[x×х*]\s*({_NUMBER_PATTERN})\s*({_UNIT_PATTERN}){_UNIT_END}",
    re.IGNORECASE,
)
_QUANTITY_RE = re.compile(
    rf"(?<![\d.,])({_NUMBER_PATTERN})\s*({_UNIT_PATTERN}){_UNIT_END}",
    re.IGNORECASE,
)

# Space or apostrophe grouping only counts before a three-digit group.
_PRICE_TOKEN_RE = re.compile(
    r"\d{1,3}(?:[ \u00a0\u202f']\d{3})+(?:[.,]\d+)?"
    r"|\d[\d.,]*\d"
    r"|\d"
)

_TRADEMARK_RE = re.compile(r"[®™©]")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")

_EXTERNAL_ID_URL_PATTERNS = (
    re.compile(r"-p-([a-zA-Z0-9]+)"),
    re.compile(r"/proizvod/([a-zA-Z0-9_-]+)"),
    re.compile(r"/product/([^/?#]+)"),
)


@dataclass(frozen=True)
class Quantity:
    """A numeric amount with its unit token."""

    value: Decimal
    unit: str


def _to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        return None


def parse_price(text: Optional[str], decimal_separator: Optional[str] = None) -> Optional[Decimal]:
    """Parse a free-text price into a Decimal.

    Currency symbols and words are ignored. Grouping with spaces, NBSP and
    apostrophes is understood. With decimal_separator="," dots are
    thousands separators ("1.234,56" -> 1234.56); with "." commas are.
    Without one, the right-most of "," and "." is the decimal mark when
    both occur, a lone comma followed by one or two digits is decimal, and
    a repeated mark is grouping.

    Examples:
        "269 LEKE" -> 269
        "RM 12.90" -> 12.90
        "1 234,56 €" -> 1234.56
        "not a price" -> None

    Returns:
        Non-negative Decimal, or None if no price can be read
    """
    if text is None:
        return None
    if not isinstance(text, str):
        text = str(text)

    match = _PRICE_TOKEN_RE.search(text)
    if not match:
        return None

    if match.start() > 0 and text[match.start() - 1] == "-":
        return None
    token = re.sub(r"[ \u00a0\u202f']", "", match.group(0))

    if decimal_separator == ",":
        token = token.replace(".", "").replace(",", ".")
    elif decimal_separator == ".":
        token = token.replace(",", "")
    else:
        token = _resolve_separators(token)
        if token is None:
            return None

    if token.count(".") > 1:
        return None

    try:
        value = Decimal(token)
    except InvalidOperation:
        return None
    if value < 0:
        return None
    return value


def _resolve_separators(token: str) -> Optional[str]:
    has_comma = "," in token
    has_dot = "." in token

    if has_comma and has_dot:
        if token.rfind(",") > token.rfind("."):
            return token.replace(".", "").replace(",", ".")
        return token.replace(",", "")

    if has_comma:
        if token.count(",") == 1 and re.search(r",\d{1,2}$", token):
            return token.replace(",", ".")
        return token.replace(",", "")

    if has_dot and token.count(".") > 1:
        return token.replace(".", "")

    return token


def extract_quantity(text: Optional[str]) -> Optional[Quantity]:
    """Find a quantity+unit token in a product name.

    Handles Latin and Cyrillic unit words ("500g", "1,5 л", "10 шт") and
    multi-packs, which are multiplied out ("6 x 250 g" -> 1500 g).

    Returns:
        Quantity with the unit mapped through UNIT_ALIASES, or None
    """
    if not text:
        return None

    multipack = _MULTIPACK_RE.search(text)
    if multipack:
        count = Decimal(multipack.group(1))
        size = _to_decimal(multipack.group(2))
        unit = UNIT_ALIASES.get(multipack.group(3).lower())
        if size is not None and unit:
            return Quantity(value=count * size, unit=unit)

    single = _QUANTITY_RE.search(text)
    if single:
        value = _to_decimal(single.group(1))
        unit = UNIT_ALIASES.get(single.group(2).lower())
        if value is not None and unit:
            return Quantity(value=value, unit=unit)

    return None


def normalize_unit(raw_unit: Optional[str], quantity: Number) -> Quantity:
    """Canonicalize a unit to one of g, kg, ml, l, pieces.

    cl and dl become ml. Grams >= 1000 collapse to kilograms and
    milliliters >= 1000 collapse to liters. Unrecognized units are
    returned unchanged with the original quantity.
    """
    value = _to_decimal(quantity)
    unit = UNIT_ALIASES.get((raw_unit or "").strip().lower())
    if value is None or unit is None:
        return Quantity(value=value if value is not None else quantity, unit=raw_unit)

    if unit == "cl":
        unit, value = "ml", value * 10
    elif unit == "dl":
        unit, value = "ml", value * 100

    if unit == "g" and value >= 1000:
        return Quantity(value=value / 1000, unit="kg")
    if unit == "ml" and value >= 1000:
        return Quantity(value=value / 1000, unit="l")
    return Quantity(value=value, unit=unit)


def calculate_price_per_unit(
    price: Optional[Number],
    quantity: Optional[Number],
    unit: Optional[str],
) -> Optional[Decimal]:
    """Convert an absolute price into a price per kg, per liter or per piece.

    Returns None, never zero, when the quantity is missing or not positive
    or the unit is not recognized.
    """
    amount = _to_decimal(price)
    qty = _to_decimal(quantity)
    if amount is None or qty is None or not unit or qty <= 0:
        return None

    canonical = UNIT_ALIASES.get(unit.strip().lower())
    divisor = _BASE_DIVISORS.get(canonical) if canonical else None
    if divisor is None:
        return None

    base_quantity = qty / divisor
    return (amount / base_quantity).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def normalize_product_name(name: Optional[str]) -> str:
    """Lower-case, strip trademark marks and diacritics, drop punctuation.

    Letters of any script are kept, so Cyrillic names stay matchable.
    """
    if not name:
        return ""
    text = _TRADEMARK_RE.sub("", name.lower())
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_WORD_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_external_id(value: Optional[object]) -> Optional[str]:
    """Trim, URL-decode, NFC-normalize and lower-case a source-native id."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    text = unicodedata.normalize("NFC", unquote(text)).lower()
    return text or None


def normalize_product_url(url: Optional[str]) -> Optional[str]:
    """Drop query string, fragment and trailing slashes from a product URL."""
    if not url:
        return url
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def extract_external_id(url: Optional[str]) -> Optional[str]:
    """Recover a source-native id from common product URL shapes."""
    if not url:
        return None
    for pattern in _EXTERNAL_ID_URL_PATTERNS:
        match = pattern.search(url)
        if match:
            return normalize_external_id(match.group(1))
    return None


def generate_run_id() -> str:
    """Short correlation id bound into every log line of one run."""
    return f"run-{secrets.token_hex(3)}"
