from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any


NATURAL = "natural"
SYNTHESIZED = "synthesized"


class ValidationError(ValueError):
    """A record is malformed (missing id, unparseable date/amount)."""


@dataclass(frozen=True)
class EffectiveId:
    """
    Idempotency key for one broker record: either the id the broker sent (`natural`)
    or a hash we derived for id-less dividends (`synthesized`).
    """

    kind: str
    value: str

    @classmethod
    def natural(cls, value: str) -> "EffectiveId":
        return cls(kind=NATURAL, value=value)

    @classmethod
    def synthesized(cls, value: str) -> "EffectiveId":
        return cls(kind=SYNTHESIZED, value=value)

    @property
    def is_synthesized(self) -> bool:
        return self.kind == SYNTHESIZED

    def suffixed(self, suffix: str) -> str:
        return f"{self.value}{suffix}"

    def __str__(self) -> str:
        return self.value


def is_dividend_action(action: str | None) -> bool:
    return bool(action) and str(action).startswith("Dividend")


def _hash_part(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def dividend_hash(isin: Any, timestamp: Any, amount: Any) -> str:
    components = "_".join([_hash_part(isin), _hash_part(timestamp), _hash_part(amount)])
    return "dividend_" + hashlib.md5(components.encode("utf-8")).hexdigest()


def compute_effective_id(
    *,
    external_id: str | None,
    action: str | None,
    isin: Any = None,
    timestamp: Any = None,
    amount: Any = None,
) -> EffectiveId:
    natural = (external_id or "").strip()
    if natural:
        return EffectiveId.natural(natural)
    if is_dividend_action(action):
        return EffectiveId.synthesized(dividend_hash(isin, timestamp, amount))
    raise ValidationError("Broker transaction missing required field 'id'")


def effective_id(record: Any) -> EffectiveId:
    # TransactionRecord caches this; duck-typed so plain objects with the same fields work too.
    ident = getattr(record, "identity", None)
    if isinstance(ident, EffectiveId):
        return ident
    return compute_effective_id(
        external_id=getattr(record, "external_id", None),
        action=getattr(record, "action", None),
        isin=getattr(record, "isin", None),
        timestamp=getattr(record, "timestamp", None),
        amount=getattr(record, "amount", None),
    )


def effective_id_or_none(record: Any) -> EffectiveId | None:
    try:
        return effective_id(record)
    except ValidationError:
        return None
