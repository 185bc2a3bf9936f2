import logging
from typing import Any, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from fieldsync.changes import ChangeFeedProvider
from fieldsync.deadline import Deadline
from fieldsync.ingest import IdempotentIngestor, ItemOutcome, OrderIngestor, VisitIngestor
from fieldsync.inventory import InventoryLedger
from fieldsync.ledger import ORDER, VISIT
from fieldsync.log import with_correlation
from fieldsync.models import utcnow
from fieldsync.schemas import OrderSubmission, SyncBatchRequest, VisitSubmission, parse_last_sync

logger = logging.getLogger(__name__)


def _raw_local_id(raw: Any) -> str:
    if not isinstance(raw, dict):
        return ""
    value = raw.get("local_id")
    return "" if value is None else str(value).strip()


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "item"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class SyncCoordinator:
    """Runs one submitted batch: every item in its own transaction, then the delta."""

    def __init__(
        self,
        db: Session,
        item_timeout_seconds: Optional[float] = None,
        allow_negative_stock: bool = True,
        invoice_number_attempts: int = 5,
    ) -> None:
        self.db = db
        self.item_timeout_seconds = item_timeout_seconds
        self.orders = OrderIngestor(
            db,
            inventory=InventoryLedger(db, allow_negative_stock=allow_negative_stock),
            invoice_number_attempts=invoice_number_attempts,
        )
        self.visits = VisitIngestor(db)
        self.changes = ChangeFeedProvider(db)

    def process(self, batch: SyncBatchRequest, vendor_id: Optional[int] = None) -> dict:
        vendor_id = vendor_id if vendor_id is not None else batch.vendor_id
        last_sync_at = parse_last_sync(batch.last_sync_at)

        results: list[ItemOutcome] = []
        for raw in batch.orders:
            results.append(self._run(ORDER, raw, OrderSubmission, self.orders, vendor_id))
        for raw in batch.visits:
            results.append(self._run(VISIT, raw, VisitSubmission, self.visits, vendor_id))

        feed = self.changes.delta(last_sync_at, vendor_id)
        self.db.rollback()
        warnings = feed.warnings()

        committed = sum(1 for r in results if r.ok and not r.replayed)
        replayed = sum(1 for r in results if r.replayed)
        logger.info(
            "batch for vendor %s: %d committed, %d replayed, %d failed, %d warnings",
            vendor_id,
            committed,
            replayed,
            len(results) - committed - replayed,
            len(warnings),
        )
        return {
            "server_time": utcnow().isoformat(),
            "results": [r.as_api() for r in results],
            "changes": feed.as_api(),
            "warnings": warnings,
        }

    def _run(
        self,
        kind: str,
        raw: Any,
        schema: type[BaseModel],
        ingestor: IdempotentIngestor,
        vendor_id: Optional[int],
    ) -> ItemOutcome:
        local_id = _raw_local_id(raw)
        with with_correlation(vendor_id=vendor_id, item_type=kind, local_id=local_id or None):
            if not local_id:
                logger.warning("%s without local_id rejected", kind)
                return ItemOutcome.failed(kind, None, "local_id is required")
            try:
                submission = schema.model_validate({**raw, "local_id": local_id})
            except ValidationError as exc:
                logger.warning("%s %s is malformed: %s", kind, local_id, exc.error_count())
                return ItemOutcome.failed(kind, local_id, _describe(exc))
            return ingestor.ingest(submission, vendor_id, Deadline(self.item_timeout_seconds))
