import logging
from decimal import Decimal
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.deadline import Deadline, unbounded
from fieldsync.errors import InsufficientStockError, ProductNotFoundError
from fieldsync.models import Product
from fieldsync.money import D

logger = logging.getLogger(__name__)


class InventoryLedger:
    def __init__(self, db: Session, allow_negative_stock: bool = True) -> None:
        self.db = db
        self.allow_negative_stock = allow_negative_stock

    def lock(self, product_id: int) -> Product:
        # FOR UPDATE is held until the enclosing item transaction ends.
        stmt = select(Product).where(Product.id == product_id).with_for_update()
        product = self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def lock_and_decrement(self, product_id: int, qty) -> Decimal:
        product = self.lock(product_id)
        current = D(product.qty)
        new_qty = current - D(qty)
        if new_qty < 0:
            if not self.allow_negative_stock:
                raise InsufficientStockError(product_id, current, D(qty))
            logger.warning("product %s stock goes negative: %s -> %s", product_id, current, new_qty)
        product.qty = new_qty
        self.db.flush()
        return new_qty

    def decrement_many(self, quantities: Mapping[int, Decimal], deadline: Deadline | None = None) -> dict[int, Decimal]:
        """Lock in ascending id order so concurrent orders cannot deadlock."""
        deadline = deadline or unbounded()
        remaining = {}
        for product_id in sorted(quantities):
            deadline.check(f"lock product {product_id}")
            remaining[product_id] = self.lock_and_decrement(product_id, quantities[product_id])
        return remaining
