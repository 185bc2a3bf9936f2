from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from fieldsync.deadline import Deadline
from fieldsync.ingest import IdempotentIngestor, OrderIngestor, VisitIngestor, generate_invoice_number
from fieldsync.inventory import InventoryLedger
from fieldsync.models import IdempotencyKey, Invoice, ProductSale, VisitResult
from fieldsync.schemas import OrderSubmission, VisitSubmission

FIXED_NOW = datetime(2025, 9, 10, 10, 21, tzinfo=timezone.utc)


class ScriptedRandom:
    def __init__(self, *values: int) -> None:
        self.values = list(values)

    def randint(self, low: int, high: int) -> int:
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


def _order(local_id: str, *lines, **extra) -> OrderSubmission:
    return OrderSubmission.model_validate(
        {
            "local_id": local_id,
            "customer_name": "Tienda Don Luis",
            "products": [{"product_id": pid, "qty": qty, "s_price": "12.50"} for pid, qty in lines],
            **extra,
        }
    )


def test_generated_invoice_number_is_date_plus_suffix() -> None:
    assert generate_invoice_number(FIXED_NOW, ScriptedRandom(1234)) == 2509101234


def test_line_amounts_are_rounded_to_cents(db, add_product) -> None:
    p1 = add_product("Refresco", 10)

    outcome = OrderIngestor(db).ingest(_order("ord_amount", (p1, "0.333")), fallback_vendor_id=7)

    assert outcome.ok
    sale = db.scalars(select(ProductSale)).one()
    assert sale.amount == Decimal("4.16")
    assert sale.qty == Decimal("0.333")


def test_order_uses_fallback_vendor_and_client_invoice_number(db, add_product) -> None:
    p1 = add_product("Refresco", 10)

    outcome = OrderIngestor(db).ingest(_order("ord_num", (p1, 1), invoice_number=777), fallback_vendor_id=7)

    invoice = db.get(Invoice, outcome.server_id)
    assert outcome.invoice_number == 777
    assert invoice.invoice_number == 777
    assert invoice.vendor_id == 7


def test_duplicate_client_invoice_number_fails_item(db, add_product) -> None:
    p1 = add_product("Refresco", 10)
    ingestor = OrderIngestor(db)
    ingestor.ingest(_order("ord_x", (p1, 1), invoice_number=777), fallback_vendor_id=7)

    outcome = ingestor.ingest(_order("ord_y", (p1, 1), invoice_number=777), fallback_vendor_id=7)

    assert outcome.ok is False
    assert "777 already exists" in outcome.error


def test_generated_invoice_number_retries_on_collision(db, add_product) -> None:
    p1 = add_product("Refresco", 10)
    db.add(Invoice(invoice_number=2509101234, customer_name="", date_time=FIXED_NOW))
    db.commit()
    ingestor = OrderIngestor(db, rng=ScriptedRandom(1234, 5678), clock=lambda: FIXED_NOW)

    outcome = ingestor.ingest(_order("ord_gen", (p1, 1)), fallback_vendor_id=7)

    assert outcome.ok
    assert outcome.invoice_number == 2509105678


def test_number_taken_after_check_is_retried(db, add_product, count_rows) -> None:
    p1 = add_product("Refresco", 10)
    db.add(Invoice(invoice_number=2509101234, customer_name="", date_time=FIXED_NOW))
    db.commit()
    ingestor = OrderIngestor(db, rng=ScriptedRandom(1234, 5678), clock=lambda: FIXED_NOW)
    # A concurrent order inserts the candidate between our check and our insert.
    ingestor._invoice_number_taken = lambda number: False

    outcome = ingestor.ingest(_order("ord_race", (p1, 1)), fallback_vendor_id=7)

    assert outcome.ok
    assert outcome.invoice_number == 2509105678
    assert count_rows(Invoice) == 2
    assert db.scalars(select(ProductSale.invoice_number)).one() == 2509105678


def test_client_number_taken_after_check_fails_item(db, add_product, count_rows) -> None:
    p1 = add_product("Refresco", 10)
    db.add(Invoice(invoice_number=777, customer_name="", date_time=FIXED_NOW))
    db.commit()
    ingestor = OrderIngestor(db)
    ingestor._invoice_number_taken = lambda number: False

    outcome = ingestor.ingest(_order("ord_late", (p1, 1), invoice_number=777), fallback_vendor_id=7)

    assert outcome.ok is False
    assert "777 already exists" in outcome.error
    assert count_rows(Invoice) == 1
    assert count_rows(IdempotencyKey) == 0


def test_generated_invoice_number_gives_up_after_budget(db, add_product) -> None:
    p1 = add_product("Refresco", 10)
    db.add(Invoice(invoice_number=2509101234, customer_name="", date_time=FIXED_NOW))
    db.commit()
    ingestor = OrderIngestor(
        db, rng=ScriptedRandom(1234), clock=lambda: FIXED_NOW, invoice_number_attempts=3
    )

    outcome = ingestor.ingest(_order("ord_gen", (p1, 1)), fallback_vendor_id=7)

    assert outcome.ok is False
    assert "after 3 attempts" in outcome.error


def test_concurrent_duplicate_yields_one_invoice(session_factory, add_product, count_rows) -> None:
    p1 = add_product("Refresco", 10)
    first_session, second_session = session_factory(), session_factory()
    try:
        winner = OrderIngestor(first_session)
        loser = OrderIngestor(second_session)
        # The loser's pre-check ran before the winner committed, so it saw nothing.
        loser.ledger.lookup = lambda key: None

        won = winner.ingest(_order("ord_2", (p1, 3)), fallback_vendor_id=7)
        lost = loser.ingest(_order("ord_2", (p1, 3)), fallback_vendor_id=7)
    finally:
        first_session.close()
        second_session.close()

    assert won.ok and lost.ok
    assert lost.server_id == won.server_id
    assert lost.invoice_number == won.invoice_number
    assert lost.replayed is True
    assert count_rows(Invoice) == 1


def test_locks_taken_in_ascending_product_order(db, add_product, stock_of) -> None:
    p1 = add_product("A", 10)
    p2 = add_product("B", 10)
    inventory = InventoryLedger(db)
    locked = []
    original = inventory.lock

    def recording_lock(product_id):
        locked.append(product_id)
        return original(product_id)

    inventory.lock = recording_lock

    outcome = OrderIngestor(db, inventory=inventory).ingest(
        _order("ord_locks", (p2, 1), (p1, 1), (p2, 2)), fallback_vendor_id=7
    )

    assert outcome.ok
    assert locked == [p1, p2]
    assert stock_of(p1) == 9
    assert stock_of(p2) == 7


def test_negative_stock_allowed_by_default(db, add_product, stock_of) -> None:
    p1 = add_product("A", 2)

    outcome = OrderIngestor(db).ingest(_order("ord_neg", (p1, 3)), fallback_vendor_id=7)

    assert outcome.ok
    assert stock_of(p1) == -1


def test_negative_stock_can_be_refused(db, add_product, stock_of, count_rows) -> None:
    p1 = add_product("A", 2)
    ingestor = OrderIngestor(db, inventory=InventoryLedger(db, allow_negative_stock=False))

    outcome = ingestor.ingest(_order("ord_neg", (p1, 3)), fallback_vendor_id=7)

    assert outcome.ok is False
    assert "insufficient stock" in outcome.error
    assert stock_of(p1) == 2
    assert count_rows(Invoice) == 0


def test_expired_deadline_rolls_item_back(db, add_product, stock_of, count_rows) -> None:
    p1 = add_product("A", 10)
    now = [0.0]
    deadline = Deadline(1.0, clock=lambda: now[0])
    inventory = InventoryLedger(db)
    original = inventory.lock_and_decrement

    def slow_decrement(product_id, qty):
        now[0] += 5.0
        return original(product_id, qty)

    inventory.lock_and_decrement = slow_decrement

    outcome = OrderIngestor(db, inventory=inventory).ingest(
        _order("ord_slow", (p1, 3)), fallback_vendor_id=7, deadline=deadline
    )

    assert outcome.ok is False
    assert "1s budget" in outcome.error
    assert stock_of(p1) == 10
    assert count_rows(Invoice) == 0
    assert count_rows(IdempotencyKey) == 0


def test_visit_ingest_records_outcome(db) -> None:
    visit = VisitSubmission.model_validate(
        {"local_id": "visit_1", "customer_id": 15, "monto_potencial": "140.456", "observaciones": "ok"}
    )

    outcome = VisitIngestor(db).ingest(visit, fallback_vendor_id=7)

    row = db.get(VisitResult, outcome.server_id)
    assert outcome.ok
    assert row.vendor_id == 7
    assert row.interes_cliente == "medio"
    assert row.probabilidad_venta == "media"
    assert row.monto_potencial == Decimal("140.46")
    assert db.scalars(select(IdempotencyKey.server_id)).one() == outcome.server_id


def test_base_ingestor_requires_create(db) -> None:
    with pytest.raises(TypeError):
        IdempotentIngestor(db)
