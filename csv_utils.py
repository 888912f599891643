import csv
import json
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from pydantic import ValidationError

from models import PaymentMethod, Transaction, TransactionType
from schemas import CSVRow, TransactionIn

CSV_COLUMNS = [
    "Date",
    "Type",
    "Amount",
    "Category",
    "Description",
    "PaymentMethod",
    "Tags",
    "Notes",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def _optional(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def _row_from(data: TransactionIn) -> CSVRow:
    return CSVRow(
        date=data.date,
        type=data.type,
        amount_cents=data.amount_cents,
        category=data.category,
        description=data.description,
        payment_method=data.payment_method,
        tags=data.tags,
        notes=data.notes,
    )


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error["loc"])
    return f"{field}: {error['msg']}" if field else error["msg"]


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            amount_value = parse_amount(raw.get("Amount") or "0")
            if amount_value == 0:
                raise ValueError("Amount must be greater than 0")
            method_raw = _optional(raw.get("PaymentMethod"))
            data = TransactionIn.model_validate(
                {
                    "date": parse_date((raw.get("Date") or "").strip()),
                    "type": TransactionType((raw.get("Type") or "").strip().lower()),
                    "amount_cents": amount_value,
                    "category": (raw.get("Category") or "").strip(),
                    "description": (raw.get("Description") or "").strip(),
                    "payment_method": PaymentMethod(method_raw.lower())
                    if method_raw
                    else None,
                    "tags": (raw.get("Tags") or "").split(";"),
                    "notes": _optional(raw.get("Notes")),
                }
            )
        except ValidationError as exc:
            errors.append(f"Row {idx}: {_first_error(exc)}")
            continue
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        rows.append(_row_from(data))
    return rows, errors


def parse_json(content: str) -> tuple[list[CSVRow], list[str]]:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        return [], [f"Invalid JSON: {exc.msg}"]
    if not isinstance(payload, list):
        return [], ["JSON import must be an array of transactions"]

    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, item in enumerate(payload, start=1):
        try:
            data = TransactionIn.model_validate(item)
        except ValidationError as exc:
            errors.append(f"Row {idx}: {_first_error(exc)}")
            continue
        rows.append(_row_from(data))
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{abs(txn.amount_cents) / 100:.2f}",
                sanitize_csv_value(txn.category),
                sanitize_csv_value(txn.description),
                txn.payment_method.value if txn.payment_method else "",
                sanitize_csv_value(";".join(txn.tags)),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
