from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import Mapped, mapped_column

from fieldsync.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY = Numeric(12, 2)
QUANTITY = Numeric(12, 3)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    s_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    qty: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, index=True
    )


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    c_number: Mapped[int | None] = mapped_column(BigInteger)
    address: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, index=True
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    invoice_number: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    customer_id: Mapped[int | None] = mapped_column(BigInteger)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    vendor_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    date_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    cash: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    change: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, index=True
    )


class ProductSale(Base):
    __tablename__ = "productsales"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    invoice_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    product_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    qty: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))


class VisitResult(Base):
    __tablename__ = "visit_results"
    __table_args__ = (
        CheckConstraint(
            "interes_cliente IN ('alto', 'medio', 'bajo', 'ninguno')",
            name="ck_visit_results_interes_cliente",
        ),
        CheckConstraint(
            "probabilidad_venta IN ('alta', 'media', 'baja')",
            name="ck_visit_results_probabilidad_venta",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    vendor_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    customer_id: Mapped[int | None] = mapped_column(BigInteger)
    fecha_visita: Mapped[date | None] = mapped_column(Date)
    interes_cliente: Mapped[str] = mapped_column(String(16), nullable=False, default="medio")
    probabilidad_venta: Mapped[str] = mapped_column(String(16), nullable=False, default="media")
    productos_interes: Mapped[str | None] = mapped_column(Text)
    pedido_realizado: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    monto_potencial: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    observaciones: Mapped[str | None] = mapped_column(Text)
    proxima_visita: Mapped[date | None] = mapped_column(Date)
    duracion_visita: Mapped[int | None] = mapped_column(Integer)
    hora_realizacion: Mapped[time | None] = mapped_column(Time)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        CheckConstraint("kind IN ('order', 'visit')", name="ck_idempotency_keys_kind"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    server_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
