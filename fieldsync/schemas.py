from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from fieldsync.money import MAX_MONEY, MAX_QUANTITY, bounded, line_amount, round_money

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_datetime_adapter = TypeAdapter(datetime)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_last_sync(value: Any) -> datetime:
    """Clients that never synced, or send garbage, get everything."""
    if value is None or value == "":
        return EPOCH
    try:
        return as_utc(_datetime_adapter.validate_python(value))
    except ValidationError:
        return EPOCH


class LineItemInput(BaseModel):
    product_id: int
    product_name: str = ""
    qty: Decimal = Decimal("0")
    s_price: Decimal = Decimal("0")

    @field_validator("product_name", mode="before")
    @classmethod
    def _blank_name(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("qty", "s_price", mode="before")
    @classmethod
    def _zero_when_missing(cls, value: Any) -> Any:
        return Decimal("0") if value is None or value == "" else value

    @field_validator("qty")
    @classmethod
    def _quantity_in_range(cls, value: Decimal) -> Decimal:
        return bounded(value, MAX_QUANTITY)

    @field_validator("s_price")
    @classmethod
    def _price_in_range(cls, value: Decimal) -> Decimal:
        return bounded(value, MAX_MONEY)

    @model_validator(mode="after")
    def _amount_in_range(self) -> "LineItemInput":
        line_amount(self.qty, self.s_price)
        return self


class OrderSubmission(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "local_id": "ord_1736701234_9876",
                "invoice_number": 2509101234,
                "customer_id": 15,
                "customer_name": "Tienda Don Luis",
                "date_time": "2025-09-10T10:21:00Z",
                "total": 139.78,
                "cash": 140,
                "change": 0.22,
                "products": [
                    {"product_id": 10, "product_name": "Galletas", "qty": 3, "s_price": 10.00},
                    {"product_id": 5, "product_name": "Refresco", "qty": 2, "s_price": 12.50},
                ],
            }
        }
    }
    local_id: str = Field(min_length=1, max_length=191)
    invoice_number: Optional[int] = Field(default=None, gt=0)
    customer_id: Optional[int] = None
    customer_name: str = ""
    vendor_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("vendor_id", "vendedor_id"))
    date_time: Optional[datetime] = None
    total: Decimal = Decimal("0")
    cash: Decimal = Decimal("0")
    change: Decimal = Decimal("0")
    products: list[LineItemInput] = Field(default_factory=list)

    @field_validator("customer_name", mode="before")
    @classmethod
    def _blank_customer(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("total", "cash", "change", mode="before")
    @classmethod
    def _zero_money(cls, value: Any) -> Any:
        return Decimal("0") if value is None or value == "" else value

    @field_validator("total", "cash", "change")
    @classmethod
    def _two_decimals(cls, value: Decimal) -> Decimal:
        return round_money(value)

    @field_validator("date_time")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class VisitSubmission(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "local_id": "visit_1736702000_1234",
                "vendor_id": 7,
                "customer_id": 15,
                "fecha_visita": "2025-09-10",
                "interes_cliente": "alto",
                "probabilidad_venta": "alta",
                "productos_interes": "Snack, bebidas",
                "pedido_realizado": True,
                "monto_potencial": 140,
                "observaciones": "Factura #2509101234",
                "proxima_visita": "2025-09-25",
                "duracion_visita": 45,
                "hora_realizacion": "10:30:00",
            }
        }
    }
    local_id: str = Field(min_length=1, max_length=191)
    vendor_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("vendor_id", "vendedor_id"))
    customer_id: Optional[int] = None
    fecha_visita: Optional[date] = None
    interes_cliente: Literal["alto", "medio", "bajo", "ninguno"] = "medio"
    probabilidad_venta: Literal["alta", "media", "baja"] = "media"
    productos_interes: Optional[str] = None
    pedido_realizado: bool = False
    monto_potencial: Decimal = Decimal("0")
    observaciones: Optional[str] = None
    proxima_visita: Optional[date] = None
    duracion_visita: Optional[int] = Field(default=None, ge=0)
    hora_realizacion: Optional[time] = None

    @field_validator("interes_cliente", "probabilidad_venta", mode="before")
    @classmethod
    def _default_classification(cls, value: Any, info) -> Any:
        if value is None or value == "":
            return "medio" if info.field_name == "interes_cliente" else "media"
        return value

    @field_validator("pedido_realizado", mode="before")
    @classmethod
    def _falsy_order_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("monto_potencial", mode="before")
    @classmethod
    def _zero_potential(cls, value: Any) -> Any:
        return Decimal("0") if value is None or value == "" else value

    @field_validator("monto_potencial")
    @classmethod
    def _two_decimals(cls, value: Decimal) -> Decimal:
        return round_money(value)


class SyncBatchRequest(BaseModel):
    """Items stay raw here so a malformed item fails alone, not the request."""

    model_config = {
        "json_schema_extra": {
            "example": {
                "vendor_id": 7,
                "last_sync_at": "2025-09-10T12:00:00Z",
                "orders": [OrderSubmission.model_config["json_schema_extra"]["example"]],
                "visits": [VisitSubmission.model_config["json_schema_extra"]["example"]],
            }
        }
    }
    vendor_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("vendor_id", "vendedor_id"))
    last_sync_at: Any = None
    orders: list[Any] = Field(default_factory=list)
    visits: list[Any] = Field(default_factory=list)

    @field_validator("orders", "visits", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value
