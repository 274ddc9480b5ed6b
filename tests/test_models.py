"""
Tests for API payload models and local records.
"""

from datetime import date

import pytest

from fic_sync.config import OrderColumns, ProductColumns
from fic_sync.models import (
    FicClientEntity,
    FicProduct,
    FicProductsPage,
    LineItem,
    OrderRecord,
    OrderStatus,
    ProductRecord,
    VatRate,
)
from fic_sync.records import CsvTable, MemoryTable, read_order, read_product

from conftest import order_row, product_row


class TestFicProductsPage:
    """Tests for the catalog page envelope."""

    def test_parse_page(self):
        page = FicProductsPage.model_validate({
            "data": [
                {"id": 1, "name": "Widget A", "code": "WA", "net_price": 12.5, "extra": "ignored"},
                {"id": 2, "name": "Widget B"},
            ],
            "current_page": 1,
            "last_page": 3,
            "per_page": 2,
        })

        assert [p.id for p in page.data] == [1, 2]
        assert page.data[0].net_price == 12.5
        assert page.data[1].code is None
        assert page.has_more is True

    def test_last_page(self):
        page = FicProductsPage.model_validate({"data": [], "current_page": 3, "last_page": 3})
        assert page.has_more is False

    def test_empty_response(self):
        page = FicProductsPage.model_validate({})
        assert page.data == []
        assert page.has_more is False

    def test_client_entity_ignores_unknown_fields(self):
        client = FicClientEntity.model_validate({"id": 9, "email": "a@b.it", "vat_number": "IT1"})
        assert client.id == 9
        assert client.email == "a@b.it"

    def test_product_requires_id(self):
        with pytest.raises(ValueError):
            FicProduct.model_validate({"name": "No id"})


class TestOrderStatus:

    @pytest.mark.parametrize("status, expected", [
        (OrderStatus.EMPTY, True),
        (OrderStatus.PENDING, True),
        (OrderStatus.ERROR, True),
        (OrderStatus.IMPORTED, False),
    ])
    def test_needs_processing(self, status, expected):
        assert status.needs_processing is expected


class TestOrderRecord:
    """Tests for order row parsing."""

    def test_read_order(self):
        table = MemoryTable([order_row(transaction_id="TX-1", status="imported", remote_client_id=42)])

        order = read_order(table, 1, OrderColumns())

        assert order.row == 1
        assert order.order_no == "1001"
        assert order.products_text == "Widget A x3, Widget B x1"
        assert order.total == 64.0
        assert order.status == OrderStatus.IMPORTED
        assert order.remote_client_id == 42
        assert order.remote_document_id is None
        assert order.is_paid is True

    def test_float_order_number(self):
        order = OrderRecord(row=1, order_no=1001.0)
        assert order.order_no == "1001"

    def test_blank_cells(self):
        order = OrderRecord(row=1, total="", date="", status=None, synced_at=" ")
        assert order.total == 0.0
        assert order.date is None
        assert order.status == OrderStatus.EMPTY
        assert order.synced_at is None
        assert order.is_paid is False

    def test_date_object_kept(self):
        order = OrderRecord(row=1, date=date(2025, 3, 14))
        assert order.date == date(2025, 3, 14)


class TestProductRecord:

    def test_read_product(self, products_table):
        product = read_product(products_table, 2, ProductColumns())

        assert product.name == "Widget B"
        assert product.price == 26.5
        assert product.stock == 0.0
        assert product.remote_id == 2
        assert product.remote_code == "WB"
        assert product.discounted_price is None

    def test_blank_numbers_default(self):
        product = ProductRecord(row=1, price="", stock=None, remote_id="")
        assert product.price == 0.0
        assert product.stock == 0.0
        assert product.remote_id is None


class TestLineItem:

    def test_total(self):
        item = LineItem(name="Widget A", qty=3, net_price=12.5, vat=VatRate(value=22))
        assert item.total == 37.5
        assert item.model_dump() == {
            "name": "Widget A",
            "qty": 3,
            "net_price": 12.5,
            "vat": {"id": 0, "value": 22.0},
        }


class TestTables:
    """Tests for the record table implementations."""

    def test_memory_table_access(self):
        table = MemoryTable([["a", "b"]])

        assert table.get(1, 2) == "b"
        assert table.get(1, 9) == ""
        table.write(1, {5: "e"})
        assert table.rows() == [["a", "b", "", "", "e"]]

    def test_memory_table_bounds(self):
        table = MemoryTable([["a"]])
        with pytest.raises(IndexError):
            table.get(2, 1)
        with pytest.raises(IndexError):
            table.write(0, {1: "x"})

    def test_append_returns_row(self):
        table = MemoryTable([["a"]])
        assert table.append({2: "b"}) == 2
        assert table.rows()[1] == ["", "b"]

    def test_csv_table_round_trip(self, tmp_path):
        path = tmp_path / "products.csv"
        table = CsvTable(path, header=["name", "category", "price"])
        table.append({1: "Widget A", 3: "12.5"})
        table.write(1, {2: "Tools"})

        reopened = CsvTable(path)
        assert reopened.header == ["name", "category", "price"]
        assert reopened.rows() == [["Widget A", "Tools", "12.5"]]
        assert not path.with_suffix(".csv.tmp").exists()

    def test_csv_rows_parse_as_records(self, tmp_path):
        path = tmp_path / "products.csv"
        path.write_text("h\n" + ",".join(str(v) for v in product_row(name="Lamp", price=9.5, remote_id=10)) + "\n")

        product = read_product(CsvTable(path), 1, ProductColumns())

        assert product.name == "Lamp"
        assert product.price == 9.5
        assert product.remote_id == 10
