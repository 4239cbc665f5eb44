"""Tests for export parsing and order grouping (services/order_grouper.py)."""

import io

import pytest
from openpyxl import Workbook

from services.asset_resolver import normalize_product_name
from services.errors import ExportParseError
from services.order_grouper import group_rows, parse_export, resolve_columns

from tests.helpers import export_csv


class TestResolveColumns:
    def test_aliases_are_matched_loosely(self):
        cols = resolve_columns(["order_id", "ITEM NAME", "Variations", "Email", "Full Name"])
        assert cols == {
            "order_id": "order_id",
            "product_name": "ITEM NAME",
            "size": "Variations",
            "buyer_email": "Email",
            "buyer_name": "Full Name",
        }

    def test_missing_required_column_raises(self):
        with pytest.raises(ExportParseError, match="order_id"):
            resolve_columns(["Product Name", "Email"])


class TestGroupRows:
    def test_rows_with_same_order_id_become_one_order(self):
        rows = [
            {"OrderID": "1001", "Product": "Sunset - Premium", "Size": "A4", "Email": "a@x.com"},
            {"OrderID": "1001", "Product": "Moonrise - Deluxe", "Size": "A4", "Email": "a@x.com"},
        ]

        result = group_rows(rows)

        assert list(result.orders) == ["1001"]
        order = result.orders["1001"]
        assert len(order.items) == 2
        assert [normalize_product_name(i.product_name) for i in order.items] == ["Sunset", "Moonrise"]
        assert order.buyer_email == "a@x.com"

    def test_orders_keep_first_seen_order(self):
        rows = [
            {"Order ID": "2", "Product Name": "B"},
            {"Order ID": "1", "Product Name": "A"},
            {"Order ID": "2", "Product Name": "C"},
        ]

        result = group_rows(rows)

        assert list(result.orders) == ["2", "1"]
        assert [i.product_name for i in result.orders["2"].items] == ["B", "C"]

    def test_row_missing_order_id_is_skipped(self):
        rows = [
            {"Order ID": "", "Product Name": "Sunset"},
            {"Order ID": "1001", "Product Name": "Sunset"},
            {"Order ID": "1002", "Product Name": ""},
        ]

        result = group_rows(rows)

        assert list(result.orders) == ["1001"]
        assert [e.row_number for e in result.malformed] == [2, 4]

    def test_buyer_comes_from_first_row(self):
        rows = [
            {"Order ID": "7", "Product Name": "A", "Buyer Email": "first@x.com", "Buyer Name": "First"},
            {"Order ID": "7", "Product Name": "B", "Buyer Email": "second@x.com", "Buyer Name": "Second"},
        ]

        order = group_rows(rows).orders["7"]

        assert order.buyer_email == "first@x.com"
        assert order.buyer_name == "First"

    def test_empty_input(self):
        assert group_rows([]).orders == {}


class TestParseExport:
    def test_csv_cells_stay_strings(self):
        data = export_csv([["00123", "Sunset", "A2", "a@x.com", "Ann"]])

        rows = parse_export(data, "orders.csv")

        assert rows == [
            {
                "Order ID": "00123",
                "Product Name": "Sunset",
                "Size": "A2",
                "Buyer Email": "a@x.com",
                "Buyer Name": "Ann",
            }
        ]

    def test_csv_blank_rows_are_dropped(self):
        data = b"Order ID,Product Name\n1,Sunset\n,\n2,Ocean\n"

        rows = parse_export(data, "orders.csv")

        assert [r["Order ID"] for r in rows] == ["1", "2"]

    def test_csv_with_bom(self):
        data = "\ufeffOrder ID,Product Name\n1,Sunset\n".encode("utf-8")

        rows = parse_export(data, "orders.csv")

        assert rows == [{"Order ID": "1", "Product Name": "Sunset"}]

    def test_empty_csv(self):
        assert parse_export(b"", "orders.csv") == []

    def test_google_sheet_is_read_as_csv(self):
        rows = parse_export(b"Order ID,Product Name\n5,Ocean\n", "Orders", "application/vnd.google-apps.spreadsheet")
        assert rows == [{"Order ID": "5", "Product Name": "Ocean"}]

    def test_xlsx(self):
        wb = Workbook()
        ws = wb.active
        ws.append(["Order ID", "Product Name", "Size"])
        ws.append([1001, "Sunset - Premium", "Size: A2"])
        ws.append([None, None, None])
        buf = io.BytesIO()
        wb.save(buf)

        rows = parse_export(buf.getvalue(), "orders.xlsx")

        assert rows == [{"Order ID": "1001", "Product Name": "Sunset - Premium", "Size": "Size: A2"}]

    def test_unsupported_extension(self):
        with pytest.raises(ExportParseError, match="Unsupported"):
            parse_export(b"%PDF", "orders.pdf")
