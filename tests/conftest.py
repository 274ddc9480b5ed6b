"""
Pytest configuration and fixtures for the sync engine tests.
"""

import json
from typing import Any, Callable

import httpx
import pytest
from pydantic import SecretStr

from fic_sync.circuit_breaker import CircuitBreaker
from fic_sync.client import FicClient
from fic_sync.config import OrderColumns, ProductColumns, SyncSettings
from fic_sync.connector import SyncConnector
from fic_sync.rate_limiter import RateLimiter
from fic_sync.records import MemoryTable
from fic_sync.vault import CredentialVault, Credentials, MemorySecretStore

API_KEY = "a-4f9c2e1b7d3a8f6e5c0b9a7d2e1f4c3b"
COMPANY_ID = 123


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFicApi:
    """
    In-process stand-in for the Fatture in Cloud API, served via MockTransport.

    `script` queues status codes per (method, path); queued codes are answered
    before the normal route runs, so tests can inject 429/5xx sequences.
    """

    def __init__(self, company_id: int = COMPANY_ID):
        self.prefix = f"/c/{company_id}"
        self.products: list[dict[str, Any]] = []
        self.clients: list[dict[str, Any]] = []
        self.documents: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.script: dict[tuple[str, str], list[int]] = {}
        self.last_page_override: int | None = None
        self.on_request: Callable[[httpx.Request], None] | None = None
        self._next_id = 5000

    def queue(self, method: str, path: str, *codes: int) -> None:
        self.script.setdefault((method, path), []).extend(codes)

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request:
            self.on_request(request)

        path = request.url.path
        assert path.startswith(self.prefix), path
        path = path[len(self.prefix):]
        method = request.method

        queued = self.script.get((method, path))
        if queued:
            code = queued.pop(0)
            return httpx.Response(code, json={"error": {"message": f"scripted {code}"}})

        body = json.loads(request.content) if request.content else {}
        params = request.url.params

        if path == "/products" and method == "GET":
            if "q" in params:
                found = [p for p in self.products if params["q"] in (p.get("code") or "")]
                return httpx.Response(200, json={"data": found})
            page = int(params.get("page", 1))
            per_page = int(params.get("per_page", 50))
            last_page = self.last_page_override or max(1, -(-len(self.products) // per_page))
            chunk = self.products[(page - 1) * per_page: page * per_page]
            return httpx.Response(200, json={
                "data": chunk,
                "current_page": page,
                "last_page": last_page,
                "per_page": per_page,
            })

        if path == "/products" and method == "POST":
            product = dict(body["data"], id=self._new_id())
            self.products.append(product)
            return httpx.Response(200, json={"data": product})

        if path.startswith("/products/") and method == "PUT":
            product_id = int(path.rsplit("/", 1)[1])
            for product in self.products:
                if product["id"] == product_id:
                    product.update(body["data"])
                    return httpx.Response(200, json={"data": product})
            return httpx.Response(404, json={})

        if path == "/entities/clients" and method == "GET":
            q = params.get("q", "")
            found = [c for c in self.clients if q in (c.get("email") or "")]
            return httpx.Response(200, json={"data": found})

        if path == "/entities/clients" and method == "POST":
            client = dict(body["data"], id=self._new_id())
            self.clients.append(client)
            return httpx.Response(200, json={"data": client})

        if path == "/issued_documents" and method == "POST":
            document = dict(body["data"], id=self._new_id())
            self.documents.append(document)
            return httpx.Response(200, json={"data": document})

        return httpx.Response(404, json={"error": {"message": "no route"}})


def make_row(columns: dict[str, int], **values: Any) -> list[Any]:
    """Build a table row placing each named value at its 1-based column."""
    row: list[Any] = [""] * max(columns.values())
    for name, value in values.items():
        row[columns[name] - 1] = value
    return row


def product_row(**values: Any) -> list[Any]:
    return make_row(ProductColumns().model_dump(), **values)


def order_row(**values: Any) -> list[Any]:
    defaults = {
        "order_no": "1001",
        "date": "2025-03-14",
        "products": "Widget A x3, Widget B x1",
        "total": 64.0,
        "customer_name": "Mario Rossi",
        "email": "mario@example.com",
        "phone": "+39 333 1234567",
        "address": "Via Roma 1",
        "city": "Milano",
        "postal_code": "20100",
        "state": "MI",
    }
    defaults.update(values)
    return make_row(OrderColumns().model_dump(), **defaults)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records every backoff/pause duration instead of sleeping."""
    return []


@pytest.fixture
def credentials():
    return Credentials(api_key=SecretStr(API_KEY), company_id=COMPANY_ID)


@pytest.fixture
def fake_api():
    return FakeFicApi()


@pytest.fixture
def rate_limiter():
    return RateLimiter(max_requests=1000, window_seconds=3600)


@pytest.fixture
def breaker():
    return CircuitBreaker(failure_threshold=5, reset_timeout=300)


@pytest.fixture
def make_client(credentials, rate_limiter, breaker, sleeps, fake_api):
    """Factory for clients wired to the fake API."""
    def factory(**overrides: Any) -> FicClient:
        kwargs = dict(
            credentials=credentials,
            rate_limiter=rate_limiter,
            breaker=breaker,
            caller_id="tester@example.com",
            sleep=sleeps.append,
            transport=fake_api.transport,
        )
        kwargs.update(overrides)
        return FicClient(**kwargs)
    return factory


@pytest.fixture
def vault():
    return CredentialVault(MemorySecretStore(), installation_id="test-installation")


@pytest.fixture
def settings():
    return SyncSettings(batch_pause_seconds=0.5)


@pytest.fixture
def products_table():
    return MemoryTable([
        product_row(name="Widget A", category="Tools", price=12.5, remote_id=1, remote_code="WA"),
        product_row(name="Widget B", category="Tools", price=26.5, remote_id=2, remote_code="WB"),
    ])


@pytest.fixture
def orders_table():
    return MemoryTable([order_row()])


@pytest.fixture
def connector(settings, vault, sleeps, fake_api, products_table, orders_table):
    connector = SyncConnector(
        settings,
        vault,
        caller_id="tester@example.com",
        products_table=products_table,
        orders_table=orders_table,
        sleep=sleeps.append,
        transport=fake_api.transport,
    )
    connector.save_credentials(API_KEY, COMPANY_ID)
    return connector
