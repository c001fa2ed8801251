from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


def to_decimal(value: Any) -> Decimal | None:
    """
    Coerce a CSV/JSON value into a Decimal without passing through float math.

    - `None`, blank strings and unparseable text -> None
    - floats go through `str()` so 0.1 stays "0.1"
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip().strip('"')
    if not s:
        return None
    s = s.replace(",", "")
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return d


def decimal_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value)
