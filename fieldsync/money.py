from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")
# Largest values the NUMERIC(12, 2) and NUMERIC(12, 3) columns can hold.
MAX_MONEY = Decimal("9999999999.99")
MAX_QUANTITY = Decimal("999999999.999")


def D(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def bounded(value, limit: Decimal) -> Decimal:
    amount = D(value)
    if abs(amount) > limit:
        raise ValueError(f"out of range: {value!r} exceeds {limit}")
    return amount


def round_money(value) -> Decimal:
    amount = bounded(value, MAX_MONEY)
    try:
        return bounded(amount.quantize(CENTS, rounding=ROUND_HALF_UP), MAX_MONEY)
    except InvalidOperation as exc:
        raise ValueError(f"not a representable amount: {value!r}") from exc


def line_amount(qty, price) -> Decimal:
    return round_money(D(qty) * D(price))
