"""
Tests for the order sync engine.
"""

import json
from datetime import date, datetime

import httpx
import pytest

from fic_sync.config import OrderColumns, SyncSettings
from fic_sync.errors import LineItemError
from fic_sync.models import OrderStatus
from fic_sync.orders import (
    ERROR_MESSAGE_LIMIT,
    OrderSyncEngine,
    PriceBook,
    format_date,
    parse_line_items,
)
from fic_sync.records import MemoryTable

from conftest import order_row

COLS = OrderColumns()
STAMP = "2025-03-14T10:00:00+00:00"


def request_bodies(fake_api, method, path):
    return [
        json.loads(r.content)
        for r in fake_api.requests
        if r.method == method and r.url.path.endswith(path)
    ]


@pytest.fixture
def make_engine(orders_table, products_table, settings, make_client, sleeps):
    def factory(**overrides):
        kwargs = dict(
            orders=orders_table,
            products=products_table,
            settings=settings,
            client_factory=make_client,
            sleep=sleeps.append,
            now=lambda: STAMP,
            today=lambda: date(2025, 3, 20),
        )
        kwargs.update(overrides)
        return OrderSyncEngine(**kwargs)
    return factory


class TestLineItems:

    def test_parse(self):
        lines = parse_line_items("Widget A x3, Widget B x1")
        assert [(l.name, l.qty) for l in lines] == [("Widget A", 3), ("Widget B", 1)]

    def test_lenient_drops_bad_fragments(self):
        lines = parse_line_items("Widget A x2, Widget C, , Widget B x10")
        assert [(l.name, l.qty) for l in lines] == [("Widget A", 2), ("Widget B", 10)]

    def test_strict_raises(self):
        with pytest.raises(LineItemError):
            parse_line_items("Widget A x2, Widget C", strict=True)

    def test_name_may_contain_x(self):
        lines = parse_line_items("Box x Large x4")
        assert [(l.name, l.qty) for l in lines] == [("Box x Large", 4)]

    @pytest.mark.parametrize("text", ["", None, " , "])
    def test_empty(self, text):
        assert parse_line_items(text) == []

    def test_price_book(self, products_table):
        book = PriceBook(products_table)
        assert book.find_price("Widget A") == 12.5
        assert book.find_price("widget a") is None
        assert book.find_price("Unknown") is None

    def test_unknown_product_priced_at_zero(self, make_engine, orders_table):
        orders_table.write(1, {COLS.products: "Widget A x1, Mystery x2"})
        engine = make_engine()

        items = engine.build_line_items(engine.read(1))

        assert [(i.name, i.qty, i.net_price) for i in items] == [
            ("Widget A", 1, 12.5),
            ("Mystery", 2, 0.0),
        ]
        assert items[0].vat.value == 22

    def test_unknown_product_strict(self, make_engine, orders_table):
        orders_table.write(1, {COLS.products: "Mystery x2"})
        engine = make_engine(settings=SyncSettings(strict_line_items=True))

        with pytest.raises(LineItemError):
            engine.build_line_items(engine.read(1))


class TestFormatDate:

    @pytest.mark.parametrize("value, expected", [
        (date(2025, 3, 14), "2025-03-14"),
        (datetime(2025, 3, 14, 18, 30), "2025-03-14"),
        ("2025-03-14", "2025-03-14"),
        ("2025-03-14T18:30:00Z", "2025-03-14"),
        ("14/03/2025", "2025-03-14"),
    ])
    def test_formats(self, value, expected):
        assert format_date(value) == expected

    def test_garbage(self):
        with pytest.raises(ValueError):
            format_date("next tuesday")


class TestProcessOrder:

    def test_import_success(self, make_engine, orders_table, fake_api):
        status = make_engine().process_order(1)

        assert status == OrderStatus.IMPORTED
        assert orders_table.get(1, COLS.status) == "IMPORTED"
        assert orders_table.get(1, COLS.remote_client_id) == fake_api.clients[0]["id"]
        assert orders_table.get(1, COLS.remote_document_id) == fake_api.documents[0]["id"]
        assert orders_table.get(1, COLS.synced_at) == STAMP
        assert orders_table.get(1, COLS.error) == ""

    def test_pending_written_before_first_remote_call(self, make_engine, orders_table, fake_api):
        seen = []
        fake_api.on_request = lambda request: seen.append(orders_table.get(1, COLS.status))

        make_engine().process_order(1)

        assert seen[0] == "PENDING"

    def test_document_payload(self, make_engine, fake_api):
        make_engine().process_order(1)

        doc = request_bodies(fake_api, "POST", "/issued_documents")[0]["data"]
        assert doc["type"] == "invoice"
        assert doc["entity"] == {"id": fake_api.clients[0]["id"]}
        assert doc["date"] == "2025-03-14"
        assert doc["number"] == "1001"
        assert doc["numeration"] == "/A"
        assert doc["subject"] == "Ordine 1001"
        assert [(i["name"], i["qty"], i["net_price"]) for i in doc["items"]] == [
            ("Widget A", 3, 12.5),
            ("Widget B", 1, 26.5),
        ]

        payment = doc["payments_list"][0]
        assert payment["amount"] == 64.0
        assert payment["due_date"] == "2025-03-20"
        assert payment["payment_terms"] == {"days": 30, "type": "standard"}
        assert payment["status"] == "not_paid"
        assert payment["paid_date"] is None
        assert payment["payment_account"] == {"id": 3, "name": "Bonifico bancario"}

    def test_paid_when_transaction_id_present(self, make_engine, orders_table, fake_api):
        orders_table.write(1, {COLS.transaction_id: "TX-99"})

        make_engine().process_order(1)

        payment = request_bodies(fake_api, "POST", "/issued_documents")[0]["data"]["payments_list"][0]
        assert payment["status"] == "paid"
        assert payment["paid_date"] == "2025-03-14"

    def test_client_payload_defaults_country(self, make_engine, fake_api):
        make_engine().process_order(1)

        client = request_bodies(fake_api, "POST", "/entities/clients")[0]["data"]
        assert client["name"] == "Mario Rossi"
        assert client["email"] == "mario@example.com"
        assert client["address_city"] == "Milano"
        assert client["country"] == "Italia"
        assert client["type"] == "company"

    def test_existing_client_reused(self, make_engine, orders_table, fake_api):
        fake_api.clients.append({"id": 42, "name": "Mario Rossi", "email": "mario@example.com"})

        make_engine().process_order(1)

        assert request_bodies(fake_api, "POST", "/entities/clients") == []
        assert orders_table.get(1, COLS.remote_client_id) == 42
        assert fake_api.documents[0]["entity"] == {"id": 42}

    def test_client_failure_marks_error_then_retry_succeeds(self, make_engine, orders_table, fake_api):
        fake_api.queue("POST", "/entities/clients", 422)
        engine = make_engine()

        assert engine.process_order(1) == OrderStatus.ERROR

        message = orders_table.get(1, COLS.error)
        assert orders_table.get(1, COLS.status) == "ERROR"
        assert 0 < len(message) <= ERROR_MESSAGE_LIMIT
        assert orders_table.get(1, COLS.remote_document_id) == ""
        assert fake_api.documents == []

        orders_table.write(1, {COLS.status: ""})
        assert engine.process_order(1) == OrderStatus.IMPORTED

        assert orders_table.get(1, COLS.status) == "IMPORTED"
        assert orders_table.get(1, COLS.remote_client_id) != ""
        assert orders_table.get(1, COLS.remote_document_id) != ""
        assert orders_table.get(1, COLS.error) == ""

    def test_long_error_truncated(self, make_engine, orders_table):
        orders_table.write(1, {COLS.products: "Widget A x1, " + "y" * 500})
        engine = make_engine(settings=SyncSettings(strict_line_items=True))

        engine.process_order(1)

        assert orders_table.get(1, COLS.status) == "ERROR"
        assert len(orders_table.get(1, COLS.error)) == ERROR_MESSAGE_LIMIT

    def test_client_id_kept_when_document_fails(self, make_engine, orders_table, fake_api):
        fake_api.queue("POST", "/issued_documents", 422)

        make_engine().process_order(1)

        assert orders_table.get(1, COLS.status) == "ERROR"
        assert orders_table.get(1, COLS.remote_client_id) == fake_api.clients[0]["id"]
        assert orders_table.get(1, COLS.remote_document_id) == ""

    def test_missing_credentials_is_order_error(self, make_engine, orders_table, connector):
        connector.revoke_credentials()

        status = make_engine(client_factory=connector.build_client).process_order(1)

        assert status == OrderStatus.ERROR
        assert "missing" in orders_table.get(1, COLS.error).lower()


class TestBatch:

    def test_pending_rows_selection(self, make_engine, orders_table):
        orders_table.append({COLS.order_no: "1002", COLS.status: "IMPORTED"})
        orders_table.append({COLS.order_no: "1003", COLS.status: "ERROR"})
        orders_table.append({COLS.order_no: "1004", COLS.status: "pending"})
        orders_table.append({COLS.order_no: "1005", COLS.status: "ARCHIVED"})

        assert make_engine().pending_rows() == [1, 3, 4]

    def test_batch_continues_after_failure(self, make_engine, fake_api, sleeps):
        table = MemoryTable([
            order_row(order_no="1001", email="a@example.com"),
            order_row(order_no="1002", email="b@example.com"),
        ])
        fake_api.queue("POST", "/entities/clients", 422)

        result = make_engine(orders=table).process_pending()

        assert result.processed == 2
        assert result.imported == 1
        assert result.failed == 1
        assert "422" in result.first_error
        assert table.get(1, COLS.status) == "ERROR"
        assert table.get(2, COLS.status) == "IMPORTED"
        assert sleeps == [0.5]

    def test_imported_rows_never_resubmitted(self, make_engine, fake_api):
        engine = make_engine()
        engine.process_pending()
        engine.process_pending()

        assert len(fake_api.documents) == 1

    def test_unexpected_response_shape_isolated_to_its_row(self, make_engine, make_client, fake_api):
        table = MemoryTable([
            order_row(order_no="1001", email="a@example.com"),
            order_row(order_no="1002", email="b@example.com"),
        ])
        client_searches = []

        def handler(request):
            if request.method == "GET" and request.url.path.endswith("/entities/clients"):
                client_searches.append(request)
                if len(client_searches) == 1:
                    return httpx.Response(200, json=[])
            return fake_api.handler(request)

        engine = make_engine(
            orders=table,
            client_factory=lambda: make_client(transport=httpx.MockTransport(handler)),
        )
        result = engine.process_pending()

        assert result.processed == 2
        assert result.failed == 1
        assert table.get(1, COLS.status) == "ERROR"
        assert "Unexpected response shape" in table.get(1, COLS.error)
        assert table.get(2, COLS.status) == "IMPORTED"
        assert len(fake_api.documents) == 1

    def test_unexpected_exception_isolated_to_its_row(self, make_engine, make_client, fake_api):
        table = MemoryTable([
            order_row(order_no="1001", email="a@example.com"),
            order_row(order_no="1002", email="b@example.com"),
        ])
        built = []

        def flaky_factory():
            built.append(1)
            if len(built) == 1:
                raise RuntimeError("table backend hiccup")
            return make_client()

        result = make_engine(orders=table, client_factory=flaky_factory).process_pending()

        assert result.imported == 1
        assert result.first_error == "table backend hiccup"
        assert table.get(1, COLS.status) == "ERROR"
        assert table.get(2, COLS.status) == "IMPORTED"

    def test_on_row_added_skips_rows_with_status(self, make_engine, orders_table, fake_api):
        orders_table.write(1, {COLS.status: "ERROR"})
        engine = make_engine()

        assert engine.on_row_added(1) is None
        assert fake_api.requests == []

    def test_on_row_added_processes_new_row(self, make_engine, orders_table):
        row = orders_table.append(dict(enumerate(order_row(order_no="1002"), start=1)))

        assert make_engine().on_row_added(row) == OrderStatus.IMPORTED
        assert orders_table.get(row, COLS.status) == "IMPORTED"

    def test_on_row_added_out_of_range(self, make_engine):
        assert make_engine().on_row_added(99) is None
