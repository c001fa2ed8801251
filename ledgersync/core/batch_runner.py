from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from ledgersync.core.config import SyncSettings
from ledgersync.core.entry_processor import EntryProcessor
from ledgersync.core.identity import ValidationError
from ledgersync.core.ledger import SecurityResolver
from ledgersync.db.models import BrokerAccount


log = logging.getLogger(__name__)


@dataclass
class BatchResult:
    total: int = 0
    imported: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def add_error(self, *, index: int, record_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append({"index": index, "record_id": record_id, "error": error})

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "imported": self.imported,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _raw_record_id(payload: Any) -> str:
    if isinstance(payload, dict):
        v = payload.get("id") or payload.get("external_id")
    else:
        v = getattr(payload, "external_id", None)
    return str(v) if v else "unknown"


def process_account_transactions(
    session: Session,
    broker_account: BrokerAccount,
    *,
    settings: SyncSettings | None = None,
    security_resolver: Optional[SecurityResolver] = None,
) -> BatchResult:
    """
    Run every record in the account's store through the EntryProcessor.

    The whole store is reprocessed each time (posting is idempotent by key). Each record
    runs in its own savepoint; a failure is recorded with its 0-based index and the loop
    moves on. Skipped records count as failures with their reason.
    """
    payloads = list(broker_account.raw_transactions_payload or [])
    result = BatchResult(total=len(payloads))
    if not payloads:
        log.info("No stored transactions for broker account %s", broker_account.id)
        return result

    log.info("Processing %s transactions for broker account %s", len(payloads), broker_account.id)
    processor = EntryProcessor(session, broker_account, settings=settings, security_resolver=security_resolver)

    for index, payload in enumerate(payloads):
        record_id = _raw_record_id(payload)
        try:
            with session.begin_nested():
                outcome = processor.process(payload)
        except ValidationError as e:
            message = f"Validation error: {e}"
            log.error("%s (transaction %s)", message, record_id)
            result.add_error(index=index, record_id=record_id, error=message)
            continue
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            log.error("Error processing transaction %s: %s", record_id, message)
            result.add_error(index=index, record_id=record_id, error=message)
            continue

        if outcome.imported:
            result.imported += 1
        else:
            result.add_error(index=index, record_id=record_id, error=outcome.reason or "Skipped")

    if result.failed:
        log.warning("Completed with %s failures out of %s transactions", result.failed, result.total)
    else:
        log.info("Successfully processed %s transactions", result.imported)
    return result
