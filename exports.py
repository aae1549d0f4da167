import csv
import re
from datetime import date, datetime
from decimal import Decimal
from io import StringIO
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from aggregation import field, goal_percentage

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    # plain negative numbers are data, not formulas
    if re.fullmatch(r"-\d+(?:[.,]\d+)?", value):
        return value

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def format_money(value: Any) -> str:
    if value is None:
        return ""
    return f"${Decimal(str(value)):,.2f}"


def rows_to_csv(
    rows: Sequence[Mapping[str, Any]], headers: Optional[Sequence[str]] = None
) -> str:
    if not rows:
        return ""
    columns = list(headers) if headers else list(rows[0].keys())
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow(
            [sanitize_csv_value(format_value(row.get(column))) for column in columns]
        )
    return output.getvalue()


def format_for_export(records: Iterable[Any], section: str) -> list[dict[str, object]]:
    """Human-readable export rows for a dashboard section."""
    if section == "savings":
        return [
            {
                "Name": field(item, "name", "nombre"),
                "Type": field(item, "kind", "tipo"),
                "Start date": field(item, "start_date", "fecha_inicio", "fecha"),
                "End date": field(item, "end_date", "fecha_fin"),
                "Amount": format_money(field(item, "amount", "monto")),
                "Description": field(item, "description", "descripcion") or "",
            }
            for item in records
        ]
    if section == "goals":
        rows = []
        for item in records:
            current = field(item, "current_amount", "actual")
            target = field(item, "target_amount", "meta", "objetivo")
            percentage = goal_percentage(current, target)
            rows.append(
                {
                    "Name": field(item, "name", "nombre"),
                    "Current amount": format_money(current),
                    "Target amount": format_money(target),
                    "Progress (%)": f"{percentage}%" if percentage is not None else "",
                    "Start date": field(item, "start_date", "fecha_inicio"),
                    "End date": field(item, "end_date", "fecha_fin"),
                }
            )
        return rows
    if section == "transactions":
        return [
            {
                "Type": field(item, "type", "tipo"),
                "Description": field(item, "description", "descripcion", "concepto"),
                "Category": field(item, "category", "categoria") or "",
                "Date": field(item, "date", "fecha"),
                "Amount": format_money(field(item, "amount", "cantidad", "monto")),
            }
            for item in records
        ]
    return [dict(item) for item in records]


def render_report_html(
    rows: Sequence[Mapping[str, Any]], title: str, generated_at: Optional[datetime] = None
) -> str:
    headers = list(rows[0].keys()) if rows else []
    return _env.get_template("report.html").render(
        title=title,
        headers=headers,
        rows=[[format_value(row.get(h)) for h in headers] for row in rows],
        generated_at=generated_at or datetime.now(),
    )


def render_pdf(
    rows: Sequence[Mapping[str, Any]], title: str, generated_at: Optional[datetime] = None
) -> bytes:
    from weasyprint import HTML

    html = render_report_html(rows, title, generated_at)
    return HTML(string=html).write_pdf()
