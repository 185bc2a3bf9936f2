import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fieldsync.models import Customer, Invoice, Product

logger = logging.getLogger(__name__)


@dataclass
class FeedSlice:
    name: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ChangeFeed:
    products: FeedSlice
    customers: FeedSlice
    invoices: FeedSlice

    def slices(self) -> list[FeedSlice]:
        return [self.products, self.customers, self.invoices]

    def warnings(self) -> list[str]:
        return [f"{s.name}_feed_failed: {s.error}" for s in self.slices() if not s.ok]

    def as_api(self) -> dict:
        return {s.name: s.rows for s in self.slices()}


def _product_row(product: Product) -> dict:
    return {
        "id": product.id,
        "product_name": product.product_name,
        "s_price": product.s_price,
        "qty": product.qty,
        "updated_at": product.updated_at.isoformat() if product.updated_at else None,
    }


def _customer_row(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "full_name": customer.full_name,
        "c_number": customer.c_number,
        "address": customer.address,
        "updated_at": customer.updated_at.isoformat() if customer.updated_at else None,
    }


def _invoice_row(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "vendor_id": invoice.vendor_id,
        "customer_id": invoice.customer_id,
        "customer_name": invoice.customer_name,
        "total": invoice.total,
        "cash": invoice.cash,
        "change": invoice.change,
        "date_time": invoice.date_time.isoformat() if invoice.date_time else None,
        "updated_at": invoice.updated_at.isoformat() if invoice.updated_at else None,
    }


class ChangeFeedProvider:
    """Rows modified after a client's last sync, oldest first.

    Each slice runs in its own savepoint so one failing query neither aborts
    the others nor poisons the surrounding transaction.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def delta(self, last_sync_at: datetime, vendor_id: Optional[int]) -> ChangeFeed:
        return ChangeFeed(
            products=self._slice("products", lambda: self._products(last_sync_at)),
            customers=self._slice("customers", lambda: self._customers(last_sync_at)),
            invoices=self._slice("invoices", lambda: self._invoices(last_sync_at, vendor_id)),
        )

    def _slice(self, name: str, query: Callable[[], list[dict]]) -> FeedSlice:
        try:
            with self.db.begin_nested():
                rows = query()
        except SQLAlchemyError as exc:
            logger.warning("change feed for %s failed: %s", name, exc)
            return FeedSlice(name, error=str(getattr(exc, "orig", None) or exc))
        return FeedSlice(name, rows)

    def _products(self, last_sync_at: datetime) -> list[dict]:
        stmt = (
            select(Product)
            .where(Product.updated_at > last_sync_at)
            .order_by(Product.updated_at.asc(), Product.id.asc())
        )
        return [_product_row(p) for p in self.db.scalars(stmt)]

    def _customers(self, last_sync_at: datetime) -> list[dict]:
        stmt = (
            select(Customer)
            .where(Customer.updated_at > last_sync_at)
            .order_by(Customer.updated_at.asc(), Customer.id.asc())
        )
        return [_customer_row(c) for c in self.db.scalars(stmt)]

    def _invoices(self, last_sync_at: datetime, vendor_id: Optional[int]) -> list[dict]:
        # Never leak another vendor's invoices.
        if vendor_id is None:
            return []
        stmt = (
            select(Invoice)
            .where(Invoice.vendor_id == vendor_id, Invoice.updated_at > last_sync_at)
            .order_by(Invoice.updated_at.asc(), Invoice.id.asc())
        )
        return [_invoice_row(i) for i in self.db.scalars(stmt)]
