"""
cryptotax/schemas/common.py

Shared pydantic pieces: the camelCase base model used for every API body and
the precision validators (crypto quantities up to 18 decimals, USD up to 2).
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase on input, emits camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def force_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_places(value: Decimal, places: int, label: str) -> Decimal:
    exponent = value.as_tuple().exponent
    if isinstance(exponent, int) and -exponent > places:
        raise ValueError(f"{label} amount cannot exceed {places} decimal places.")
    return value


def validate_asset_decimal(value: Optional[Decimal]) -> Optional[Decimal]:
    """Max 18 decimal places (ERC-20 precision)."""
    if value is None:
        return None
    return _check_places(value, 18, "Asset")


def validate_usd_decimal(value: Optional[Decimal]) -> Optional[Decimal]:
    """Max 2 decimal places for USD amounts."""
    if value is None:
        return None
    return _check_places(value, 2, "USD")
