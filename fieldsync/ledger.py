import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fieldsync.errors import ItemValidationError, LedgerConflictError, SyncError
from fieldsync.models import IdempotencyKey, utcnow

logger = logging.getLogger(__name__)

ORDER = "order"
VISIT = "visit"
KINDS = (ORDER, VISIT)


@dataclass(frozen=True)
class Reservation:
    already_committed: bool
    server_id: Optional[int] = None


class IdempotencyLedger:
    """Maps client local_ids to the server rows they produced.

    A key is reserved with a null server_id inside the item's transaction and
    terminated with record(); both happen in the same commit, so a committed
    row without a server_id never outlives a failed ingestion.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def lookup(self, key: str) -> Optional[IdempotencyKey]:
        stmt = select(IdempotencyKey).where(IdempotencyKey.key == key)
        return self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    def _locked(self, key: str) -> Optional[IdempotencyKey]:
        stmt = select(IdempotencyKey).where(IdempotencyKey.key == key).with_for_update()
        return self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    def reserve(self, key: str, kind: str) -> Reservation:
        if kind not in KINDS:
            raise ValueError(f"unknown idempotency kind {kind!r}")
        row = self._locked(key)
        if row is None:
            try:
                with self.db.begin_nested():
                    self.db.add(IdempotencyKey(key=key, kind=kind, server_id=None, created_at=utcnow()))
            except IntegrityError:
                logger.info("idempotency key %s reserved concurrently, re-reading", key)
            row = self._locked(key)
        if row is None:
            raise SyncError(f"idempotency key {key!r} could not be reserved")
        if row.kind != kind:
            raise ItemValidationError(f"local_id {key!r} is already bound to a {row.kind!r} submission")
        return Reservation(already_committed=row.server_id is not None, server_id=row.server_id)

    def record(self, key: str, server_id: int) -> None:
        stmt = (
            update(IdempotencyKey)
            .where(IdempotencyKey.key == key, IdempotencyKey.server_id.is_(None))
            .values(server_id=server_id)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 1:
            return
        row = self.lookup(key)
        if row is None:
            raise ItemValidationError(f"idempotency key {key!r} was never reserved")
        if row.server_id != server_id:
            raise LedgerConflictError(key, row.server_id, server_id)
