"""Report aggregations over income, expense, savings and goal records.

Every function accepts pydantic records or the raw mappings returned by the
remote API. Elements with a missing or non-numeric amount, a missing key or an
unparseable date are left out of sums and groupings instead of raising.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable, Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

TOP_N = 5
EVOLUTION_WINDOWS = (6, 12)
OTHER_CATEGORY = "Other"

_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("nombre",),
    "kind": ("tipo",),
    "category": ("categoria",),
}

# Checked in this order; the first category with a keyword contained in the
# description wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Food",
        (
            "supermercado",
            "mercado",
            "comida",
            "restaurante",
            "cafe",
            "café",
            "panaderia",
            "panadería",
            "almuerzo",
            "cena",
            "groceries",
        ),
    ),
    (
        "Housing",
        ("alquiler", "renta", "hipoteca", "comunidad", "vivienda", "rent"),
    ),
    (
        "Transport",
        (
            "gasolina",
            "combustible",
            "taxi",
            "uber",
            "autobus",
            "autobús",
            "metro",
            "tren",
            "parking",
            "peaje",
        ),
    ),
    (
        "Utilities",
        ("luz", "agua", "gas natural", "internet", "telefono", "teléfono", "movil", "móvil"),
    ),
    (
        "Entertainment",
        ("cine", "netflix", "spotify", "concierto", "teatro", "juego", "videojuego", "ocio"),
    ),
    (
        "Health",
        ("farmacia", "medico", "médico", "hospital", "dentista", "seguro medico", "gimnasio"),
    ),
    (
        "Shopping",
        ("ropa", "zapatos", "amazon", "tienda", "compra", "regalo"),
    ),
)


def field(item: Any, *names: str) -> Any:
    """First present value among ``names`` on a mapping or an object."""
    for name in names:
        if isinstance(item, Mapping):
            if item.get(name) is not None:
                return item[name]
        else:
            value = getattr(item, name, None)
            if value is not None:
                return value
    return None


def to_amount(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not amount.is_finite():
        return None
    return amount


def to_date(value: Any) -> Optional[dt.date]:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        try:
            return dt.date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def amount_of(item: Any) -> Optional[Decimal]:
    return to_amount(field(item, "amount", "cantidad", "monto"))


def goal_amount_of(item: Any) -> Optional[Decimal]:
    """Amount saved so far towards a goal."""
    return to_amount(field(item, "current_amount", "actual"))


def date_of(item: Any) -> Optional[dt.date]:
    return to_date(field(item, "date", "fecha", "start_date", "fecha_inicio", "fechaInicio"))


def description_of(item: Any) -> Optional[str]:
    value = field(item, "description", "descripcion", "concepto", "name", "nombre")
    return value if isinstance(value, str) else None


def total(items: Iterable[Any]) -> Decimal:
    result = Decimal("0")
    for item in items:
        amount = amount_of(item)
        if amount is not None:
            result += amount
    return result


def top_n(items: Iterable[Any], n: int = TOP_N) -> list[Any]:
    """Largest ``n`` items by amount; ties keep their original order."""
    valid = [item for item in items if amount_of(item) is not None]
    # sorted() is stable, so equal amounts stay in input order
    ranked = sorted(valid, key=lambda item: amount_of(item), reverse=True)
    return ranked[: max(n, 0)]


def group_by_key(
    items: Iterable[Any],
    key: str = "description",
    amount: Callable[[Any], Optional[Decimal]] = amount_of,
) -> list[dict[str, object]]:
    """Sum amounts per exact key value, in first-seen order."""
    totals: dict[str, Decimal] = {}
    for item in items:
        value = amount(item)
        if value is None:
            continue
        if key == "description":
            label = description_of(item)
        else:
            label = field(item, key, *_KEY_ALIASES.get(key, ()))
        if not isinstance(label, str) or not label:
            continue
        totals[label] = totals.get(label, Decimal("0")) + value
    return [{"name": name, "value": value} for name, value in totals.items()]


def categorize(
    description: Optional[str],
    table: tuple[tuple[str, tuple[str, ...]], ...] = CATEGORY_KEYWORDS,
) -> str:
    if not description:
        return OTHER_CATEGORY
    text = description.casefold()
    for category, keywords in table:
        if any(keyword.casefold() in text for keyword in keywords):
            return category
    return OTHER_CATEGORY


def group_by_category(
    items: Iterable[Any],
    table: tuple[tuple[str, tuple[str, ...]], ...] = CATEGORY_KEYWORDS,
    amount: Callable[[Any], Optional[Decimal]] = amount_of,
) -> list[dict[str, object]]:
    """Keyword-categorized totals, listed in the table's priority order.

    Elements without a description are left out; "Other" only collects
    descriptions that match no keyword.
    """
    order = [name for name, _ in table] + [OTHER_CATEGORY]
    totals: dict[str, Decimal] = {}
    for item in items:
        value = amount(item)
        description = description_of(item)
        if value is None or not description or not description.strip():
            continue
        category = categorize(description, table)
        totals[category] = totals.get(category, Decimal("0")) + value
    return [
        {"name": name, "value": totals[name]} for name in order if name in totals
    ]


def _month_start(d: dt.date) -> dt.date:
    return d.replace(day=1)


def _add_months(d: dt.date, count: int) -> dt.date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return dt.date(year, month, 1)


def _monthly_totals(items: Iterable[Any]) -> dict[tuple[int, int], Decimal]:
    totals: dict[tuple[int, int], Decimal] = {}
    for item in items:
        amount = amount_of(item)
        when = date_of(item)
        if amount is None or when is None:
            continue
        key = (when.year, when.month)
        totals[key] = totals.get(key, Decimal("0")) + amount
    return totals


def monthly_evolution(
    incomes: Iterable[Any],
    expenses: Iterable[Any],
    savings: Iterable[Any] = (),
    *,
    months: int = 6,
    today: Optional[dt.date] = None,
) -> list[dict[str, object]]:
    """One point per month for the trailing window ending at the current month."""
    if months not in EVOLUTION_WINDOWS:
        raise ValueError(f"months must be one of {EVOLUTION_WINDOWS}")
    today = today or dt.date.today()
    current = _month_start(today)
    window = [_add_months(current, offset) for offset in range(-(months - 1), 1)]

    income_totals = _monthly_totals(incomes)
    expense_totals = _monthly_totals(expenses)
    savings_totals = _monthly_totals(savings)

    out: list[dict[str, object]] = []
    for month in window:
        key = (month.year, month.month)
        income = income_totals.get(key, Decimal("0"))
        expense = expense_totals.get(key, Decimal("0"))
        out.append(
            {
                "year": month.year,
                "month": month.month,
                "label": f"{month.year:04d}-{month.month:02d}",
                "income": income,
                "expense": expense,
                "savings": savings_totals.get(key, Decimal("0")),
                "balance": income - expense,
            }
        )
    return out


def goal_percentage(current: Any, target: Any) -> Optional[int]:
    """round(current / target * 100); not clamped, so overshoot reads above 100."""
    current_amount = to_amount(current)
    target_amount = to_amount(target)
    if current_amount is None or target_amount is None or target_amount == 0:
        return None
    ratio = current_amount / target_amount * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def goal_completed(current: Any, target: Any) -> bool:
    current_amount = to_amount(current)
    target_amount = to_amount(target)
    if current_amount is None or target_amount is None:
        return False
    return current_amount >= target_amount


def goal_progress(goals: Iterable[Any]) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for goal in goals:
        name = field(goal, "name", "nombre", "descripcion")
        current = to_amount(field(goal, "current_amount", "actual"))
        target = to_amount(field(goal, "target_amount", "meta", "objetivo"))
        if not isinstance(name, str) or current is None or target is None:
            continue
        rows.append(
            {
                "id": field(goal, "id"),
                "name": name,
                "current": current,
                "target": target,
                "percentage": goal_percentage(current, target),
                "completed": goal_completed(current, target),
            }
        )
    return rows


def active_goals(goals: Iterable[Any], limit: int = 3) -> list[dict[str, object]]:
    return [row for row in goal_progress(goals) if not row["completed"]][:limit]


def recent_transactions(
    incomes: Iterable[Any], expenses: Iterable[Any], limit: int = 5
) -> list[dict[str, object]]:
    """Newest dated incomes and expenses, merged."""
    rows: list[dict[str, object]] = []
    for kind, items in (("income", incomes), ("expense", expenses)):
        for item in items:
            amount = amount_of(item)
            when = date_of(item)
            if amount is None or when is None:
                continue
            rows.append(
                {
                    "type": kind,
                    "description": description_of(item) or "",
                    "amount": amount,
                    "date": when,
                }
            )
    rows.sort(key=lambda row: row["date"], reverse=True)
    return rows[:limit]


def savings_by_kind(savings: Iterable[Any]) -> list[dict[str, object]]:
    return group_by_key(savings, key="kind")


def summary(
    incomes: Iterable[Any], expenses: Iterable[Any], savings: Iterable[Any] = ()
) -> dict[str, Decimal]:
    income = total(incomes)
    expense = total(expenses)
    return {
        "income": income,
        "expense": expense,
        "savings": total(savings),
        "balance": income - expense,
    }
