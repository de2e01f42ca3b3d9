"""
Input validation for CSV-derived order rows.

Every ``validate_*`` helper returns the normalised value or raises
``ValidationError``.  Field names in mapped rows are snake_case;
camelCase names coming from stored mappings are converted with
``normalize_field_name``.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from src.journal_lib.core.errors import ValidationError
from src.journal_lib.core.models import now_est, parse_ts

logger = logging.getLogger("imports.validator")

_SYMBOL_RE = re.compile(r"^[A-Z0-9\-.]{1,21}$")
_ACCOUNT_RE = re.compile(r"^[A-Za-z0-9\-_.]{1,50}$")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

MAX_STRING_LENGTH = 10000
MAX_CSV_COLUMNS = 50
MAX_QUANTITY = 1_000_000
MAX_PRICE = 1_000_000
MIN_DATE = datetime(1990, 1, 1)

_FORBIDDEN_KEYS = frozenset({"__proto__", "constructor", "prototype"})
_INJECTION_CHARS = str.maketrans("", "", "${}")

BUY_VALUES = frozenset({"BUY", "BOT", "B", "BOUGHT", "YOU BOUGHT"})
SELL_VALUES = frozenset({"SELL", "SLD", "S", "SOLD", "YOU SOLD"})
VALID_SIDES = BUY_VALUES | SELL_VALUES

_ORDER_TYPES = {
    "MARKET": "MARKET",
    "LIMIT": "LIMIT",
    "STOP": "STOP",
    "STOP_LIMIT": "STOP_LIMIT",
    "MKT": "MARKET",
    "LMT": "LIMIT",
    "STP": "STOP",
}

# Tried in order after ISO-8601
_DATE_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%m-%d-%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%Y-%m-%d",
)


def normalize_field_name(name: str) -> str:
    """``orderPlacedTime`` -> ``order_placed_time``; snake_case passes through."""
    return _CAMEL_RE.sub("_", str(name)).lower()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value.strip() == ""


# ---------------------------------------------------------------------------
# Scalar validators
# ---------------------------------------------------------------------------


def sanitize_symbol(symbol: Any) -> str:
    if not symbol or not isinstance(symbol, str):
        raise ValidationError("Symbol is required and must be a string", field="symbol")
    normalized = symbol.upper().strip()
    if not _SYMBOL_RE.match(normalized):
        raise ValidationError(
            f"Invalid symbol format: {symbol}. Must be 1-21 alphanumeric "
            "characters, dots, or hyphens.",
            field="symbol",
        )
    return normalized


def sanitize_json_data(data: Any) -> Any:
    """Drop prototype-pollution keys, truncate long strings, strip ``$ { }``."""
    if isinstance(data, dict):
        return {
            k: sanitize_json_data(v) for k, v in data.items() if k not in _FORBIDDEN_KEYS
        }
    if isinstance(data, list):
        return [sanitize_json_data(v) for v in data]
    if isinstance(data, str):
        return data[:MAX_STRING_LENGTH].translate(_INJECTION_CHARS)
    return data


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(value)
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).strip())


def validate_quantity(quantity: Any) -> int:
    try:
        num = _to_number(quantity)
    except (TypeError, ValueError):
        num = math.nan
    if math.isnan(num) or not num.is_integer() or num <= 0 or num > MAX_QUANTITY:
        raise ValidationError(
            f"Invalid quantity: {quantity}. Must be a positive integer between 1 and 1,000,000.",
            field="quantity",
        )
    return int(num)


def validate_price(price: Any) -> Optional[float]:
    if _is_blank(price):
        return None
    try:
        num = _to_number(price)
    except (TypeError, ValueError):
        num = math.nan
    if math.isnan(num) or num < 0 or num > MAX_PRICE:
        raise ValidationError(
            f"Invalid price: {price}. Must be a number between 0 and 1,000,000.",
            field="price",
        )
    return num


def parse_date_with_multiple_formats(value: Any) -> Any:
    """Parse common broker date layouts into an ISO string.

    Unparseable input is returned unchanged so that validation reports it.
    """
    if _is_blank(value):
        return value
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    text = str(value).strip()
    parsed = parse_ts(text)
    if parsed is None:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        logger.warning("Could not parse date %r, returning original value", text)
        return text
    return parsed.isoformat(timespec="seconds")


def validate_date(value: Any, field: str = "date") -> datetime:
    if _is_blank(value):
        raise ValidationError("Date is required", field=field)
    parsed = parse_ts(value)
    if parsed is None:
        parsed = parse_ts(parse_date_with_multiple_formats(value))
    if parsed is None:
        raise ValidationError(f"Invalid date format: {value}", field=field)
    if parsed < MIN_DATE or parsed > now_est() + timedelta(days=365):
        raise ValidationError(
            f"Date out of valid range: {value}. Must be between 1990 and one year from now.",
            field=field,
        )
    return parsed


def validate_side(side: Any) -> str:
    if not side or not isinstance(side, str):
        raise ValidationError("Order side is required", field="side")
    normalized = side.upper().strip()
    if normalized not in VALID_SIDES:
        raise ValidationError(
            f"Invalid order side: {side}. Must be one of: BUY, SELL, BOT, SLD, etc.",
            field="side",
        )
    return "BUY" if normalized in BUY_VALUES else "SELL"


def validate_order_type(order_type: Any) -> str:
    if not order_type or not isinstance(order_type, str):
        return "MARKET"
    normalized = order_type.upper().strip()
    if normalized not in _ORDER_TYPES:
        logger.warning("Unknown order type %r, defaulting to MARKET", order_type)
        return "MARKET"
    return _ORDER_TYPES[normalized]


def validate_csv_row(row: Any) -> None:
    if not isinstance(row, dict):
        raise ValidationError("Invalid CSV row: must be an object")
    if not row:
        raise ValidationError("CSV row cannot be empty")
    if len(row) > MAX_CSV_COLUMNS:
        raise ValidationError(f"CSV row has too many columns (max {MAX_CSV_COLUMNS})")


def validate_account_id(account_id: Any) -> Optional[str]:
    if _is_blank(account_id):
        return None
    text = str(account_id).strip()
    if not _ACCOUNT_RE.match(text):
        raise ValidationError(f"Invalid account ID format: {account_id}", field="account_id")
    return text


# ---------------------------------------------------------------------------
# Whole-row validation
# ---------------------------------------------------------------------------


@dataclass
class ValidatedOrder:
    symbol: str
    quantity: int
    side: str
    order_type: str
    order_placed_time: datetime
    order_executed_time: datetime
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    account_id: Optional[str] = None
    price: Optional[float] = None


def _first_present(data: dict, *keys: str) -> Any:
    for key in keys:
        if not _is_blank(data.get(key)):
            return data[key]
    return None


def validate_staging_order_data(data: dict) -> ValidatedOrder:
    """Validate a mapped order row; any failure becomes ``Validation failed: ...``."""
    try:
        placed = data.get("order_placed_time")
        executed = _first_present(data, "order_executed_time", "order_placed_time")
        limit_price = validate_price(data.get("limit_price"))
        fill_price = validate_price(_first_present(data, "price", "execution_price"))
        return ValidatedOrder(
            symbol=sanitize_symbol(data.get("symbol")),
            quantity=validate_quantity(_first_present(data, "quantity", "order_quantity")),
            side=validate_side(data.get("side")),
            order_type=validate_order_type(data.get("order_type")),
            order_placed_time=validate_date(placed, field="order_placed_time"),
            order_executed_time=validate_date(executed, field="order_executed_time"),
            limit_price=limit_price,
            stop_price=validate_price(data.get("stop_price")),
            account_id=validate_account_id(data.get("account_id")),
            price=fill_price if fill_price is not None else limit_price,
        )
    except ValidationError as exc:
        raise ValidationError(f"Validation failed: {exc.message}", details=exc.details) from exc
