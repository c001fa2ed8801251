from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from ledgersync.db.models import AuditLog
from ledgersync.utils.time import utcnow


def _json_safe(value: Any) -> Any:
    # JSON columns reject Decimal/datetime.
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def log_change(
    session: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: Optional[Any],
    old: Optional[dict[str, Any]] = None,
    new: Optional[dict[str, Any]] = None,
    note: Optional[str] = None,
) -> AuditLog:
    row = AuditLog(
        at=utcnow(),
        actor=actor,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        old_json=_json_safe(old) if old is not None else None,
        new_json=_json_safe(new) if new is not None else None,
        note=note,
    )
    session.add(row)
    return row
