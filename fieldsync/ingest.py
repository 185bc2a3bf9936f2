"""
Per-item ingestion of client orders and visit outcomes.

Each ingest() call owns exactly one transaction on the session it was given:

    lookup -> reserve -> recheck -> create -> record -> commit

A local_id that already carries a server_id short-circuits to a replay, both
before the reservation (plain retry) and after it (a concurrent duplicate
committed first). Any failure rolls the whole item back and is returned as a
failed ItemOutcome; nothing is raised to the caller.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fieldsync.deadline import Deadline, unbounded
from fieldsync.errors import InvoiceNumberExhaustedError, ItemValidationError, SyncError
from fieldsync.inventory import InventoryLedger
from fieldsync.ledger import ORDER, VISIT, IdempotencyLedger
from fieldsync.models import Invoice, ProductSale, VisitResult, utcnow
from fieldsync.money import D, line_amount
from fieldsync.schemas import OrderSubmission, VisitSubmission

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    type: str
    local_id: Optional[str]
    ok: bool
    server_id: Optional[int] = None
    invoice_number: Optional[int] = None
    replayed: bool = False
    error: Optional[str] = None

    @classmethod
    def failed(cls, kind: str, local_id: Optional[str], error: str) -> "ItemOutcome":
        return cls(type=kind, local_id=local_id, ok=False, error=error)

    def as_api(self) -> dict:
        data: dict[str, Any] = {"type": self.type, "local_id": self.local_id, "ok": self.ok}
        if self.server_id is not None:
            data["server_id"] = self.server_id
        if self.invoice_number is not None:
            data["invoice_number"] = self.invoice_number
        if self.replayed:
            data["replayed"] = True
        if self.error is not None:
            data["error"] = self.error
        return data


def _store_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class IdempotentIngestor(ABC):
    kind: str

    def __init__(self, db: Session, ledger: Optional[IdempotencyLedger] = None) -> None:
        self.db = db
        self.ledger = ledger or IdempotencyLedger(db)

    def ingest(self, submission, fallback_vendor_id: Optional[int], deadline: Optional[Deadline] = None) -> ItemOutcome:
        deadline = deadline or unbounded()
        key = submission.local_id
        try:
            deadline.bound_statements(self.db)
            deadline.check("lookup")
            existing = self.ledger.lookup(key)
            if existing is not None and existing.server_id is not None:
                if existing.kind != self.kind:
                    raise ItemValidationError(f"local_id {key!r} is already bound to a {existing.kind!r} submission")
                return self._finish_replay(key, existing.server_id)

            deadline.check("reserve")
            reservation = self.ledger.reserve(key, self.kind)
            if reservation.already_committed:
                logger.info("lost race for %s, returning committed %s", key, reservation.server_id)
                return self._finish_replay(key, reservation.server_id)

            outcome = self._create(submission, fallback_vendor_id, deadline)
            deadline.check("record")
            self.ledger.record(key, outcome.server_id)
            deadline.check("commit")
            self.db.commit()
        except SyncError as exc:
            self.db.rollback()
            logger.warning("%s %s failed: %s", self.kind, key, exc)
            return ItemOutcome.failed(self.kind, key, str(exc))
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("%s %s rolled back on store error: %s", self.kind, key, exc)
            return ItemOutcome.failed(self.kind, key, _store_message(exc))
        except Exception as exc:
            self.db.rollback()
            logger.exception("%s %s failed unexpectedly", self.kind, key)
            return ItemOutcome.failed(self.kind, key, str(exc) or exc.__class__.__name__)
        logger.info("%s %s committed as %s", self.kind, key, outcome.server_id)
        return outcome

    def _finish_replay(self, key: str, server_id: int) -> ItemOutcome:
        outcome = self._replayed(key, server_id)
        self.db.rollback()
        return outcome

    def _replayed(self, key: str, server_id: int) -> ItemOutcome:
        return ItemOutcome(type=self.kind, local_id=key, ok=True, server_id=server_id, replayed=True)

    @abstractmethod
    def _create(self, submission, fallback_vendor_id: Optional[int], deadline: Deadline) -> ItemOutcome:
        """Write the domain rows inside the caller's transaction and return the outcome."""


def generate_invoice_number(now: datetime, rng: random.Random) -> int:
    return int(f"{now:%y%m%d}{rng.randint(1000, 9999)}")


class OrderIngestor(IdempotentIngestor):
    kind = ORDER

    def __init__(
        self,
        db: Session,
        inventory: Optional[InventoryLedger] = None,
        ledger: Optional[IdempotencyLedger] = None,
        invoice_number_attempts: int = 5,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(db, ledger)
        self.inventory = inventory or InventoryLedger(db)
        self.invoice_number_attempts = invoice_number_attempts
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def _replayed(self, key: str, server_id: int) -> ItemOutcome:
        outcome = super()._replayed(key, server_id)
        invoice = self.db.get(Invoice, server_id)
        if invoice is not None:
            outcome.invoice_number = invoice.invoice_number
        return outcome

    def _invoice_number_taken(self, number: int) -> bool:
        stmt = select(Invoice.id).where(Invoice.invoice_number == number)
        return self.db.execute(stmt).first() is not None

    def _try_insert_invoice(
        self, order: OrderSubmission, number: int, fallback_vendor_id: Optional[int]
    ) -> Optional[Invoice]:
        """Insert under a savepoint; None when the number was taken in the meantime."""
        invoice = Invoice(
            invoice_number=number,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            vendor_id=order.vendor_id or fallback_vendor_id,
            date_time=order.date_time or self.clock(),
            total=order.total,
            cash=order.cash,
            change=order.change,
        )
        try:
            with self.db.begin_nested():
                self.db.add(invoice)
                self.db.flush()
        except IntegrityError:
            return None
        return invoice

    def _insert_invoice(
        self, order: OrderSubmission, fallback_vendor_id: Optional[int], deadline: Deadline
    ) -> Invoice:
        if order.invoice_number is not None:
            deadline.check("invoice number")
            invoice = None
            if not self._invoice_number_taken(order.invoice_number):
                invoice = self._try_insert_invoice(order, order.invoice_number, fallback_vendor_id)
            if invoice is None:
                raise ItemValidationError(f"invoice_number {order.invoice_number} already exists")
            return invoice
        for _ in range(self.invoice_number_attempts):
            deadline.check("invoice number")
            candidate = generate_invoice_number(self.clock(), self.rng)
            if not self._invoice_number_taken(candidate):
                invoice = self._try_insert_invoice(order, candidate, fallback_vendor_id)
                if invoice is not None:
                    return invoice
            logger.info("generated invoice number %s collides, retrying", candidate)
        raise InvoiceNumberExhaustedError(
            f"no free invoice number after {self.invoice_number_attempts} attempts"
        )

    def _create(self, order: OrderSubmission, fallback_vendor_id: Optional[int], deadline: Deadline) -> ItemOutcome:
        invoice = self._insert_invoice(order, fallback_vendor_id, deadline)
        invoice_number = invoice.invoice_number

        quantities: dict[int, Decimal] = {}
        for line in order.products:
            qty = D(line.qty)
            price = D(line.s_price)
            self.db.add(
                ProductSale(
                    invoice_number=invoice_number,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    qty=qty,
                    price=price,
                    amount=line_amount(qty, price),
                )
            )
            quantities[line.product_id] = quantities.get(line.product_id, Decimal("0")) + qty
        self.db.flush()

        self.inventory.decrement_many(quantities, deadline)
        return ItemOutcome(
            type=self.kind,
            local_id=order.local_id,
            ok=True,
            server_id=invoice.id,
            invoice_number=invoice_number,
        )


class VisitIngestor(IdempotentIngestor):
    kind = VISIT

    def _create(self, visit: VisitSubmission, fallback_vendor_id: Optional[int], deadline: Deadline) -> ItemOutcome:
        deadline.check("create visit")
        row = VisitResult(
            vendor_id=visit.vendor_id or fallback_vendor_id,
            customer_id=visit.customer_id,
            fecha_visita=visit.fecha_visita,
            interes_cliente=visit.interes_cliente,
            probabilidad_venta=visit.probabilidad_venta,
            productos_interes=visit.productos_interes,
            pedido_realizado=visit.pedido_realizado,
            monto_potencial=visit.monto_potencial,
            observaciones=visit.observaciones,
            proxima_visita=visit.proxima_visita,
            duracion_visita=visit.duracion_visita,
            hora_realizacion=visit.hora_realizacion,
            created_at=utcnow(),
        )
        self.db.add(row)
        self.db.flush()
        return ItemOutcome(type=self.kind, local_id=visit.local_id, ok=True, server_id=row.id)
