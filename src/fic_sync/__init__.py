"""
FIC Sync - Store catalog and orders ↔ Fatture in Cloud

Resilient sync engine for a tabular store and the Fatture in Cloud API.

Features:
- Encrypted credential vault (Fernet, per-installation key)
- Per-caller rate limiting and a shared circuit breaker
- Retry with backoff for 429 / 5xx, optional deadlines
- Remote-wins product reconciliation
- Per-order state machine; imported rows are never resubmitted

Quick Start:
    pip install fic-sync
    fic-sync setup      # Store API key and company ID
    fic-sync products   # Reconcile products
    fic-sync orders     # Import pending orders
"""

from fic_sync.circuit_breaker import BreakerState, BreakerStatus, CircuitBreaker
from fic_sync.client import ApiResult, Deadline, FicClient
from fic_sync.config import OrderColumns, ProductColumns, SyncSettings, load_config
from fic_sync.connector import SyncConnector
from fic_sync.errors import (
    AuthenticationError,
    CircuitOpen,
    DeadlineExceeded,
    ErrorKind,
    FicSyncError,
    LineItemError,
    MissingCredentialsError,
    NotFoundError,
    RateLimitExceeded,
    RetryExhausted,
    UnclassifiedApiError,
    ValidationError,
    VaultError,
)
from fic_sync.models import (
    FicClientEntity,
    FicDocument,
    FicProduct,
    FicProductsPage,
    LineItem,
    OrderRecord,
    OrderStatus,
    ProductRecord,
)
from fic_sync.orders import BatchResult, OrderSyncEngine, parse_line_items
from fic_sync.products import ProductReconciler, ReconcileResult
from fic_sync.rate_limiter import RateLimiter, RateWindow
from fic_sync.records import CsvTable, MemoryTable, RecordTable
from fic_sync.state import StateManager, SyncCheckpoint
from fic_sync.vault import (
    CredentialVault,
    Credentials,
    JsonFileSecretStore,
    MemorySecretStore,
    mask_api_key,
    sanitize_input,
    validate_api_key,
    validate_company_id,
)

__version__ = "1.0.0"
__all__ = [
    # Composition
    "SyncConnector",
    "SyncSettings",
    "ProductColumns",
    "OrderColumns",
    "load_config",

    # API client
    "FicClient",
    "ApiResult",
    "Deadline",

    # Resilience
    "RateLimiter",
    "RateWindow",
    "CircuitBreaker",
    "BreakerState",
    "BreakerStatus",

    # Credentials
    "CredentialVault",
    "Credentials",
    "JsonFileSecretStore",
    "MemorySecretStore",
    "mask_api_key",
    "sanitize_input",
    "validate_api_key",
    "validate_company_id",

    # Sync
    "ProductReconciler",
    "ReconcileResult",
    "OrderSyncEngine",
    "BatchResult",
    "parse_line_items",

    # Records
    "RecordTable",
    "MemoryTable",
    "CsvTable",
    "FicProduct",
    "FicProductsPage",
    "FicClientEntity",
    "FicDocument",
    "LineItem",
    "OrderRecord",
    "OrderStatus",
    "ProductRecord",

    # State
    "StateManager",
    "SyncCheckpoint",

    # Errors
    "ErrorKind",
    "FicSyncError",
    "ValidationError",
    "VaultError",
    "MissingCredentialsError",
    "LineItemError",
    "RateLimitExceeded",
    "CircuitOpen",
    "AuthenticationError",
    "NotFoundError",
    "RetryExhausted",
    "DeadlineExceeded",
    "UnclassifiedApiError",
]
