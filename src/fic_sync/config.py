"""
Configuration for the sync engine.

Settings come from ~/.fic-sync/config.json with FIC_* environment variables
taking precedence. Column maps are 1-based positions in the product and order
tables; the tables themselves belong to whoever supplies them.
"""

import json
import os
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_DIR_NAME = ".fic-sync"


class ProductColumns(BaseModel):
    """1-based column positions in the product table."""

    name: int = 1
    category: int = 2
    price: int = 3
    discounted_price: int = 4
    description: int = 5
    brand: int = 6
    stock: int = 10
    remote_id: int = 15
    remote_code: int = 16
    last_synced_at: int = 17


class OrderColumns(BaseModel):
    """1-based column positions in the order table."""

    order_no: int = 1
    date: int = 2
    shipping_method: int = 3
    transaction_id: int = 4
    products: int = 5
    total: int = 6
    customer_name: int = 7
    email: int = 8
    phone: int = 9
    address: int = 10
    city: int = 11
    postal_code: int = 12
    country: int = 13
    state: int = 14
    status: int = 15
    remote_document_id: int = 16
    remote_client_id: int = 17
    error: int = 18
    synced_at: int = 19


class PaymentMethod(BaseModel):
    id: int
    name: str


class SyncSettings(BaseModel):
    """All settings consumed by the engine."""

    base_url: str = "https://api-v2.fattureincloud.it"
    sync_interval_hours: float = 1
    doc_type: str = "invoice"
    vat_rate: float = 22
    payment_method_id: int = 3
    payment_method_name: str = "Bonifico bancario"
    log_enabled: bool = True
    log_file: str | None = None

    products_table: str | None = None
    orders_table: str | None = None
    product_columns: ProductColumns = Field(default_factory=ProductColumns)
    order_columns: OrderColumns = Field(default_factory=OrderColumns)

    # Outbound call protection
    rate_limit_max_requests: int = 100
    rate_limit_window_minutes: float = 60
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 300
    max_retries: int = 3
    request_timeout: float = 30.0

    # Reconciliation / order processing
    page_size: int = 50
    max_pages: int = 20
    batch_pause_seconds: float = 1.0
    default_country: str = "Italia"
    default_category: str = "Generale"
    strict_line_items: bool = False

    @property
    def payment_method(self) -> PaymentMethod:
        return PaymentMethod(id=self.payment_method_id, name=self.payment_method_name)


ENV_MAPPINGS = {
    "base_url": "FIC_BASE_URL",
    "doc_type": "FIC_DOC_TYPE",
    "vat_rate": "FIC_VAT_RATE",
    "payment_method_id": "FIC_PAYMENT_METHOD_ID",
    "payment_method_name": "FIC_PAYMENT_METHOD_NAME",
    "sync_interval_hours": "FIC_SYNC_INTERVAL_HOURS",
    "log_enabled": "FIC_LOG_ENABLED",
    "log_file": "FIC_LOG_FILE",
    "products_table": "FIC_PRODUCTS_TABLE",
    "orders_table": "FIC_ORDERS_TABLE",
    "strict_line_items": "FIC_STRICT_LINE_ITEMS",
}


def get_config_dir() -> Path:
    """Directory holding config, secrets, state and the installation id."""
    override = os.environ.get("FIC_SYNC_HOME")
    if override:
        return Path(override)
    return Path.home() / CONFIG_DIR_NAME


def get_config_path() -> Path:
    return get_config_dir() / "config.json"


def _coerce_env(value: str) -> Any:
    """Convert string booleans; pydantic handles numbers."""
    if value.lower() in ("true", "1", "yes"):
        return True
    if value.lower() in ("false", "0", "no"):
        return False
    return value


def load_config(path: str | Path | None = None) -> SyncSettings:
    """
    Load settings from file, with environment variable overrides.

    Priority:
    1. Environment variables
    2. Config file values
    3. Defaults
    """
    raw: dict[str, Any] = {}

    config_path = Path(path) if path else get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            raw = json.load(f)

    for config_key, env_var in ENV_MAPPINGS.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        # "1"/"0" are numbers for numeric settings, booleans for flags
        if config_key in ("vat_rate", "payment_method_id", "sync_interval_hours"):
            raw[config_key] = env_value
        else:
            raw[config_key] = _coerce_env(env_value)

    return SyncSettings.model_validate(raw)


def save_config(settings: SyncSettings, path: str | Path | None = None) -> Path:
    """Save settings to file (owner-only permissions)."""
    config_path = Path(path) if path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(settings.model_dump(), f, indent=2)

    os.chmod(config_path, 0o600)
    return config_path


def get_installation_id(config_dir: Path | None = None) -> str:
    """
    Return this installation's identifier, creating it on first use.

    The id seeds the credential vault key, so deleting the file makes stored
    credentials unreadable.
    """
    directory = config_dir or get_config_dir()
    id_file = directory / "installation_id"

    if id_file.exists():
        value = id_file.read_text().strip()
        if value:
            return value

    directory.mkdir(parents=True, exist_ok=True)
    value = uuid.uuid4().hex
    id_file.write_text(value)
    os.chmod(id_file, 0o600)
    return value
