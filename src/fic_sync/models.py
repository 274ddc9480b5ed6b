"""
Pydantic models for Fatture in Cloud API payloads and local table records.

Remote models parse the `{"data": ...}` envelopes returned by the API. Local
records are views over one table row; `row` is the 1-based data row index.
"""

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Remote entities
# ---------------------------------------------------------------------------

class FicProduct(BaseModel):
    """Product in the remote catalog."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None
    code: str | None = None
    net_price: float | None = None
    category: str | None = None
    description: str | None = None
    brand: str | None = None
    stock: float | None = None


class FicProductsPage(BaseModel):
    """Response from GET /products."""

    data: list[FicProduct] = Field(default_factory=list)
    current_page: int = 1
    last_page: int = 1
    per_page: int | None = None
    total: int | None = None

    @property
    def has_more(self) -> bool:
        return self.current_page < self.last_page


class FicClientEntity(BaseModel):
    """Client entity (customer) in the accounting service."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    country: str | None = None


class FicDocument(BaseModel):
    """Issued document (invoice, receipt, ...)."""

    model_config = ConfigDict(extra="ignore")

    id: int
    type: str | None = None
    number: int | str | None = None
    date: str | None = None


# ---------------------------------------------------------------------------
# Local records
# ---------------------------------------------------------------------------

class OrderStatus(str, Enum):
    """Sync status of an order row."""

    EMPTY = ""
    PENDING = "PENDING"
    IMPORTED = "IMPORTED"
    ERROR = "ERROR"

    @property
    def needs_processing(self) -> bool:
        return self in (OrderStatus.EMPTY, OrderStatus.PENDING, OrderStatus.ERROR)


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


class ProductRecord(BaseModel):
    """Product row in the local table."""

    row: int
    name: str = ""
    category: str = ""
    price: float = 0.0
    discounted_price: float | None = None
    description: str = ""
    brand: str = ""
    stock: float = 0.0
    remote_id: int | None = None
    remote_code: str = ""
    last_synced_at: str | None = None

    @field_validator("price", "stock", mode="before")
    @classmethod
    def default_number(cls, v: Any) -> Any:
        v = _blank_to_none(v)
        return 0.0 if v is None else v

    @field_validator("discounted_price", "remote_id", "last_synced_at", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("name", "category", "description", "brand", "remote_code", mode="before")
    @classmethod
    def default_text(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


class OrderRecord(BaseModel):
    """Order row in the local table."""

    row: int
    order_no: str = ""
    date: dt.date | dt.datetime | str | None = None
    shipping_method: str = ""
    transaction_id: str = ""
    products_text: str = ""
    total: float = 0.0
    customer_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    state: str = ""

    status: OrderStatus = OrderStatus.EMPTY
    remote_document_id: int | None = None
    remote_client_id: int | None = None
    error_message: str = ""
    synced_at: str | None = None

    @field_validator(
        "order_no", "shipping_method", "transaction_id", "products_text",
        "customer_name", "email", "phone", "address", "city", "postal_code",
        "country", "state", "error_message",
        mode="before",
    )
    @classmethod
    def default_text(cls, v: Any) -> str:
        if v is None:
            return ""
        # Spreadsheet exports turn order numbers into floats
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        return str(v).strip()

    @field_validator("total", mode="before")
    @classmethod
    def default_total(cls, v: Any) -> Any:
        v = _blank_to_none(v)
        return 0.0 if v is None else v

    @field_validator("remote_document_id", "remote_client_id", "synced_at", "date", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip().upper()

    @property
    def is_paid(self) -> bool:
        return bool(self.transaction_id)


class VatRate(BaseModel):
    id: int = 0
    value: float


class LineItem(BaseModel):
    """Parsed order line, in the shape the document endpoint expects."""

    name: str
    qty: int
    net_price: float = 0.0
    vat: VatRate

    @property
    def total(self) -> float:
        return self.qty * self.net_price
