"""
Shared helpers for time and money handling
"""
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from dealroom.core.config import get_settings
from dealroom.core.errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Convert user input to Decimal.

    Floats go through str() so 0.1 becomes Decimal('0.1') rather than its
    binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric", reason="not_numeric", details={"field": field})
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(
                f"{field} must be numeric, got {value!r}",
                reason="not_numeric",
                details={"field": field}
            )
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValidationError(
            f"{field} must be numeric, got {type(value).__name__}",
            reason="not_numeric",
            details={"field": field}
        )

    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", reason="not_finite", details={"field": field})
    return result


def optional_decimal(value: Any, field: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value, field)


def quantize_money(amount: Decimal, places: Optional[int] = None) -> Decimal:
    if places is None:
        places = get_settings().money_decimal_places
    return amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def quantize_percentage(value: Decimal, places: Optional[int] = None) -> Decimal:
    if places is None:
        places = get_settings().percentage_decimal_places
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def normalize_currency(code: Optional[str]) -> str:
    code = (code or get_settings().default_currency).strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(
            f"invalid currency code {code!r}",
            reason="invalid_currency",
            details={"field": "currency"}
        )
    return code
