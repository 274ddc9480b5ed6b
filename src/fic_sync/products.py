"""
Product catalog reconciliation.

One-directional, remote-wins: the remote catalog is fetched page by page and
every remote product either updates the local row carrying its remote id or
is appended as a new row. Local-only rows are never deleted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from fic_sync.client import FicClient
from fic_sync.config import ProductColumns
from fic_sync.models import FicProduct, ProductRecord
from fic_sync.records import RecordTable, read_product

logger = structlog.get_logger(__name__)


@dataclass
class ReconcileResult:
    """Counts reported back to the operator."""
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "total": self.total,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _same(current: Any, incoming: Any) -> bool:
    """Compare a table cell with a remote value, tolerating numeric text."""
    if current == incoming:
        return True
    if isinstance(incoming, (int, float)) and not isinstance(incoming, bool):
        try:
            return float(current) == float(incoming)
        except (TypeError, ValueError):
            return False
    return str(current) == str(incoming)


class ProductReconciler:
    """
    Makes the local product table match the remote catalog.

    Example:
        reconciler = ProductReconciler(table, settings.product_columns)
        with client:
            result = reconciler.reconcile(client)
        print(result.new, result.updated)
    """

    def __init__(
        self,
        table: RecordTable,
        columns: ProductColumns | None = None,
        page_size: int = 50,
        max_pages: int = 20,
        default_category: str = "Generale",
        now: Callable[[], str] = _now_iso,
    ):
        self.table = table
        self.columns = columns or ProductColumns()
        self.page_size = page_size
        self.max_pages = max_pages
        self.default_category = default_category
        self._now = now

    def fetch_remote_catalog(self, client: FicClient) -> list[FicProduct]:
        """Accumulate every remote product, bounded by `max_pages`."""
        products: list[FicProduct] = []
        for page in client.iter_product_pages(per_page=self.page_size, max_pages=self.max_pages):
            products.extend(page.data)
        return products

    def build_index(self) -> dict[int, int]:
        """Map remote id -> row for rows that have been synced before."""
        index: dict[int, int] = {}
        for row, value in enumerate(self.table.column(self.columns.remote_id), start=1):
            if value in (None, ""):
                continue
            try:
                remote_id = int(float(value))
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed remote id", row=row, value=value)
                continue
            if remote_id in index:
                logger.warning(
                    "Duplicate remote id in product table, keeping first row",
                    remote_id=remote_id,
                    row=row,
                    first_row=index[remote_id],
                )
                continue
            index[remote_id] = row
        return index

    def _update_row(self, row: int, product: FicProduct) -> bool:
        """Write changed fields. Returns True if any field differed."""
        cols = self.columns
        incoming = {
            cols.name: product.name or "",
            cols.price: product.net_price or 0,
            cols.description: product.description or "",
            cols.stock: product.stock or 0,
            cols.remote_code: product.code or "",
        }
        changes = {
            col: value
            for col, value in incoming.items()
            if not _same(self.table.get(row, col), value)
        }
        changes[cols.last_synced_at] = self._now()
        self.table.write(row, changes)
        return len(changes) > 1

    def _append_row(self, product: FicProduct) -> int:
        cols = self.columns
        return self.table.append({
            cols.name: product.name or "",
            cols.category: product.category or self.default_category,
            cols.price: product.net_price or 0,
            cols.description: product.description or "",
            cols.brand: product.brand or "",
            cols.stock: product.stock or 0,
            cols.remote_id: product.id,
            cols.remote_code: product.code or "",
            cols.last_synced_at: self._now(),
        })

    def reconcile(self, client: FicClient) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Client errors propagate and abort the pass; rows written before the
        failure keep their new values.
        """
        logger.info("Product sync started")

        remote_products = self.fetch_remote_catalog(client)
        logger.info("Remote catalog fetched", count=len(remote_products))

        index = self.build_index()
        result = ReconcileResult(total=len(remote_products))

        for product in remote_products:
            row = index.get(product.id)
            if row is not None:
                result.updated += 1
                if not self._update_row(row, product):
                    result.unchanged += 1
            else:
                row = self._append_row(product)
                index[product.id] = row
                result.new += 1

        logger.info("Product sync complete", **result.to_dict())
        return result

    def products(self) -> list[ProductRecord]:
        """All product rows as records."""
        return [
            read_product(self.table, row, self.columns)
            for row in range(1, self.table.row_count() + 1)
        ]
