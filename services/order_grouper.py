from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from services.errors import ExportParseError, MalformedRowError
from services.models import SPREADSHEET_MIME, LogicalOrder, OrderLineItem

logger = logging.getLogger(__name__)

# Canonical field -> accepted header spellings, in priority order.
COLUMN_ALIASES: Dict[str, List[str]] = {
    "order_id": ["Order ID", "Order Number", "Sale ID", "Order"],
    "product_name": ["Product Name", "Item Name", "Product", "Title"],
    "size": ["Size", "Variations", "Variation", "Format"],
    "buyer_email": ["Buyer Email", "Email", "Customer Email"],
    "buyer_name": ["Buyer Name", "Full Name", "Ship Name", "Buyer", "Name"],
}
REQUIRED_FIELDS = ("order_id", "product_name")


def _norm_header(value: Any) -> str:
    s = str(value or "").strip().lower()
    return re.sub(r"[\s\-_./:;()\[\]{}]+", "", s)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if value != value:
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


def resolve_columns(headers: Iterable[str]) -> Dict[str, str]:
    """Map canonical field names to the actual header used by this export."""
    header_map = {_norm_header(h): h for h in headers if str(h or "").strip()}
    found: Dict[str, str] = {}
    for canon, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            src = header_map.get(_norm_header(alias))
            if src is not None:
                found[canon] = src
                break
    missing = [f for f in REQUIRED_FIELDS if f not in found]
    if missing:
        raise ExportParseError(
            f"Required export columns missing: {', '.join(missing)}. Available columns: {list(header_map.values())}"
        )
    return found


def _read_csv(data: bytes) -> List[Dict[str, str]]:
    try:
        df = pd.read_csv(
            io.BytesIO(data),
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError:
        return []
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ExportParseError(f"Failed to parse CSV export: {e}") from e
    df.columns = [str(c or "").strip() for c in df.columns]
    return [{k: _cell(v) for k, v in rec.items()} for rec in df.to_dict(orient="records")]


def _read_xlsx(data: bytes) -> List[Dict[str, str]]:
    from openpyxl import load_workbook

    try:
        wb = load_workbook(filename=io.BytesIO(data), data_only=True, read_only=True)
    except Exception as e:
        raise ExportParseError(f"Failed to parse xlsx export: {e}") from e
    ws = wb.active
    rows = list(ws.iter_rows(values_only=True))
    wb.close()
    if not rows:
        return []
    header = [str(x or "").strip() for x in rows[0]]
    out: List[Dict[str, str]] = []
    for r in rows[1:]:
        out.append({header[i]: _cell(r[i]) if i < len(r) else "" for i in range(len(header)) if header[i]})
    return out


def parse_export(data: bytes, file_name: str, mime_type: str = "") -> List[Dict[str, str]]:
    """Parse a raw export file into ordered rows of named string fields."""
    suffix = PurePath(file_name).suffix.lower()
    if suffix == ".xlsx":
        rows = _read_xlsx(data)
    elif suffix in {".csv", ".txt", ""} or mime_type == SPREADSHEET_MIME:
        rows = _read_csv(data)
    else:
        raise ExportParseError(f"Unsupported export extension: {suffix}")
    return [r for r in rows if any(v for v in r.values())]


def parse_line_item(row: Dict[str, str], columns: Dict[str, str], row_number: int) -> OrderLineItem:
    def get(canon: str) -> str:
        src = columns.get(canon)
        return _cell(row.get(src)) if src else ""

    order_id = get("order_id")
    product_name = get("product_name")
    if not order_id:
        raise MalformedRowError(row_number, "missing order identifier")
    if not product_name:
        raise MalformedRowError(row_number, f"order {order_id}: missing product name")
    return OrderLineItem(
        order_id=order_id,
        product_name=product_name,
        size=get("size"),
        buyer_email=get("buyer_email"),
        buyer_name=get("buyer_name"),
        row_number=row_number,
    )


@dataclass
class GroupingResult:
    orders: Dict[str, LogicalOrder] = field(default_factory=dict)
    malformed: List[MalformedRowError] = field(default_factory=list)


def group_rows(rows: Sequence[Dict[str, str]], columns: Optional[Dict[str, str]] = None) -> GroupingResult:
    """Group export rows into logical orders keyed by order id.

    Orders appear in the order their id is first seen. A malformed row is
    collected in ``malformed`` and skipped; it never aborts the grouping.
    """
    result = GroupingResult()
    if not rows:
        return result
    if columns is None:
        headers: List[str] = []
        for r in rows:
            for k in r.keys():
                if k not in headers:
                    headers.append(k)
        columns = resolve_columns(headers)

    for idx, row in enumerate(rows):
        row_number = idx + 2  # header is line 1
        try:
            item = parse_line_item(row, columns, row_number)
        except MalformedRowError as e:
            logger.warning("skipping malformed row: %s", e)
            result.malformed.append(e)
            continue
        order = result.orders.get(item.order_id)
        if order is None:
            order = LogicalOrder(order_id=item.order_id)
            result.orders[item.order_id] = order
        elif item.buyer_email and order.buyer_email and item.buyer_email.lower() != order.buyer_email.lower():
            logger.warning(
                "order_id=%s row=%d has a different buyer than its first row; using the first row's buyer",
                item.order_id,
                row_number,
            )
        order.items.append(item)
    return result
