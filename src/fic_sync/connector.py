"""
Sync Connector

Composition root for one installation: owns the credential vault, the rate
limiter and the circuit breaker, builds a fresh API client (reloading
credentials) for every run, and wires the product reconciler and order engine
to their tables.
"""

import getpass
import time
from pathlib import Path
from typing import Any, Callable

import httpx
import structlog

from fic_sync.circuit_breaker import CircuitBreaker
from fic_sync.client import FicClient
from fic_sync.config import SyncSettings, get_config_dir, get_installation_id
from fic_sync.errors import FicSyncError
from fic_sync.models import OrderStatus
from fic_sync.orders import BatchResult, OrderSyncEngine
from fic_sync.products import ProductReconciler, ReconcileResult
from fic_sync.rate_limiter import RateLimiter
from fic_sync.records import CsvTable, RecordTable
from fic_sync.state import StateManager, SyncCheckpoint
from fic_sync.vault import (
    CredentialVault,
    Credentials,
    JsonFileSecretStore,
    delete_credentials,
    load_credentials,
    save_credentials,
)

logger = structlog.get_logger(__name__)


class SyncConnector:
    """
    One installation's sync services.

    The limiter and breaker live as long as the connector, so every client it
    builds shares them.

    Example:
        connector = SyncConnector.from_config_dir(settings)
        result = connector.sync_products()
        batch = connector.process_pending_orders()
    """

    def __init__(
        self,
        settings: SyncSettings,
        vault: CredentialVault,
        state_mgr: StateManager | None = None,
        caller_id: str | None = None,
        products_table: RecordTable | None = None,
        orders_table: RecordTable | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings
        self.vault = vault
        self.state_mgr = state_mgr
        self.caller_id = caller_id or getpass.getuser()

        self.rate_limiter = RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_minutes * 60,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout_seconds,
        )

        self._products_table = products_table
        self._orders_table = orders_table
        self._sleep = sleep
        self._transport = transport
        self._last_client: FicClient | None = None

        self._log = logger.bind(caller_id=self.caller_id)

    @classmethod
    def from_config_dir(
        cls,
        settings: SyncSettings,
        config_dir: Path | None = None,
        **kwargs: Any,
    ) -> "SyncConnector":
        """Build a connector backed by files in the config directory."""
        directory = config_dir or get_config_dir()
        vault = CredentialVault(
            JsonFileSecretStore(directory / "secrets.json"),
            installation_id=get_installation_id(directory),
        )
        return cls(settings, vault, state_mgr=StateManager(directory / "state.json"), **kwargs)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def save_credentials(self, api_key: str, company_id: Any) -> Credentials:
        return save_credentials(self.vault, api_key, company_id)

    def save_and_test_credentials(self, api_key: str, company_id: Any) -> dict[str, Any]:
        """Store credentials, then verify them against the API."""
        try:
            self.save_credentials(api_key, company_id)
            with self.build_client() as client:
                return client.test_connection()
        except FicSyncError as e:
            return {"success": False, "message": str(e), "kind": e.kind.value}

    def revoke_credentials(self) -> None:
        delete_credentials(self.vault)

    def build_client(self) -> FicClient:
        """New client with freshly loaded credentials and the shared limiter/breaker."""
        credentials = load_credentials(self.vault)
        client = FicClient(
            credentials=credentials,
            rate_limiter=self.rate_limiter,
            breaker=self.breaker,
            caller_id=self.caller_id,
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout,
            max_retries=self.settings.max_retries,
            sleep=self._sleep,
            transport=self._transport,
        )
        self._last_client = client
        return client

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    @property
    def products_table(self) -> RecordTable:
        if self._products_table is None:
            if not self.settings.products_table:
                raise RuntimeError("products_table is not configured")
            self._products_table = CsvTable(self.settings.products_table)
        return self._products_table

    @property
    def orders_table(self) -> RecordTable:
        if self._orders_table is None:
            if not self.settings.orders_table:
                raise RuntimeError("orders_table is not configured")
            self._orders_table = CsvTable(self.settings.orders_table)
        return self._orders_table

    def product_reconciler(self) -> ProductReconciler:
        return ProductReconciler(
            self.products_table,
            self.settings.product_columns,
            page_size=self.settings.page_size,
            max_pages=self.settings.max_pages,
            default_category=self.settings.default_category,
        )

    def order_engine(self) -> OrderSyncEngine:
        return OrderSyncEngine(
            self.orders_table,
            self.products_table,
            self.settings,
            client_factory=self.build_client,
            sleep=self._sleep,
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def _checkpoint(self) -> SyncCheckpoint | None:
        return self.state_mgr.load() if self.state_mgr else None

    def _save(self, checkpoint: SyncCheckpoint | None) -> None:
        if self.state_mgr and checkpoint is not None:
            self.state_mgr.save(checkpoint)

    def sync_products(self) -> ReconcileResult:
        """Reconcile the product table with the remote catalog."""
        checkpoint = self._checkpoint()
        try:
            with self.build_client() as client:
                result = self.product_reconciler().reconcile(client)
        except FicSyncError as e:
            self._log.error("Product sync failed", error=str(e), kind=e.kind.value)
            if checkpoint is not None:
                checkpoint.add_error(f"Products: {e}")
                self._save(checkpoint)
            raise

        if checkpoint is not None:
            checkpoint.record_products(result.to_dict())
            self._save(checkpoint)
        return result

    def process_pending_orders(self) -> BatchResult:
        result = self.order_engine().process_pending()
        checkpoint = self._checkpoint()
        if checkpoint is not None:
            checkpoint.record_orders(result.to_dict())
            self._save(checkpoint)
        return result

    def process_order_row(self, row: int) -> OrderStatus | None:
        """Single-row driver for a newly added order row."""
        return self.order_engine().on_row_added(row)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def health_check(self) -> dict[str, Any]:
        """Check connectivity and return health status."""
        try:
            client = self.build_client()
        except FicSyncError as e:
            return {"status": "not_configured", "message": str(e)}

        with client:
            return client.health_check()

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "caller_id": self.caller_id,
            "rate_limiter": self.rate_limiter.get_stats(),
            "circuit_breaker": self.breaker.get_stats(),
        }
        if self._last_client:
            stats["client"] = self._last_client.get_stats()
        return stats
