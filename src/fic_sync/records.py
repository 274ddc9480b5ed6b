"""
Tabular record stores.

The engine reads product and order rows and writes sync results back through
the RecordTable protocol. Rows and columns are 1-based; row 1 is the first
data row (headers are not addressable). Every write is applied immediately so
an aborted pass leaves earlier rows updated.
"""

import csv
import threading
from pathlib import Path
from typing import Any, Iterable, Protocol

import structlog

from fic_sync.config import OrderColumns, ProductColumns
from fic_sync.models import OrderRecord, ProductRecord

logger = structlog.get_logger(__name__)


class RecordTable(Protocol):
    """Minimal row/column access the engine needs."""

    def row_count(self) -> int: ...

    def get(self, row: int, col: int) -> Any: ...

    def column(self, col: int) -> list[Any]: ...

    def write(self, row: int, values: dict[int, Any]) -> None: ...

    def append(self, values: dict[int, Any]) -> int: ...


class MemoryTable:
    """
    In-memory table.

    Example:
        table = MemoryTable([["Widget A", "Tools", 9.5]])
        table.get(1, 1)  # "Widget A"
    """

    def __init__(self, rows: Iterable[Iterable[Any]] | None = None, header: list[str] | None = None):
        self.header = list(header or [])
        self._rows: list[list[Any]] = [list(r) for r in (rows or [])]
        self._lock = threading.Lock()

    def row_count(self) -> int:
        return len(self._rows)

    def _check_row(self, row: int) -> list[Any]:
        if row < 1 or row > len(self._rows):
            raise IndexError(f"Row {row} out of range (1..{len(self._rows)})")
        return self._rows[row - 1]

    def get(self, row: int, col: int) -> Any:
        values = self._check_row(row)
        if col < 1:
            raise IndexError(f"Column {col} out of range")
        return values[col - 1] if col <= len(values) else ""

    def column(self, col: int) -> list[Any]:
        return [self.get(r, col) for r in range(1, len(self._rows) + 1)]

    def write(self, row: int, values: dict[int, Any]) -> None:
        with self._lock:
            target = self._check_row(row)
            for col, value in values.items():
                if col < 1:
                    raise IndexError(f"Column {col} out of range")
                if col > len(target):
                    target.extend([""] * (col - len(target)))
                target[col - 1] = value
        self._after_write()

    def append(self, values: dict[int, Any]) -> int:
        with self._lock:
            width = max(values) if values else 0
            new_row: list[Any] = [""] * width
            for col, value in values.items():
                new_row[col - 1] = value
            self._rows.append(new_row)
            row = len(self._rows)
        self._after_write()
        return row

    def rows(self) -> list[list[Any]]:
        return [list(r) for r in self._rows]

    def _after_write(self) -> None:
        """Hook for persistent subclasses."""


class CsvTable(MemoryTable):
    """
    CSV-backed table with a header row.

    The whole file is rewritten atomically (temp file + rename) after each
    write, so a crash never leaves a half-written table.
    """

    def __init__(self, path: str | Path, header: list[str] | None = None):
        self.path = Path(path)
        rows: list[list[Any]] = []
        file_header = list(header or [])

        if self.path.exists():
            with open(self.path, newline="", encoding="utf-8") as f:
                reader = csv.reader(f)
                file_header = next(reader, file_header)
                rows = [r for r in reader]

        super().__init__(rows, header=file_header)
        self._log = logger.bind(table=str(self.path))

    def _after_write(self) -> None:
        temp_file = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(temp_file, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            if self.header:
                writer.writerow(self.header)
            writer.writerows(self._rows)
        temp_file.replace(self.path)
        self._log.debug("Table saved", rows=len(self._rows))


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------

def read_product(table: RecordTable, row: int, cols: ProductColumns) -> ProductRecord:
    return ProductRecord(
        row=row,
        name=table.get(row, cols.name),
        category=table.get(row, cols.category),
        price=table.get(row, cols.price),
        discounted_price=table.get(row, cols.discounted_price),
        description=table.get(row, cols.description),
        brand=table.get(row, cols.brand),
        stock=table.get(row, cols.stock),
        remote_id=table.get(row, cols.remote_id),
        remote_code=table.get(row, cols.remote_code),
        last_synced_at=table.get(row, cols.last_synced_at),
    )


def read_order(table: RecordTable, row: int, cols: OrderColumns) -> OrderRecord:
    return OrderRecord(
        row=row,
        order_no=table.get(row, cols.order_no),
        date=table.get(row, cols.date),
        shipping_method=table.get(row, cols.shipping_method),
        transaction_id=table.get(row, cols.transaction_id),
        products_text=table.get(row, cols.products),
        total=table.get(row, cols.total),
        customer_name=table.get(row, cols.customer_name),
        email=table.get(row, cols.email),
        phone=table.get(row, cols.phone),
        address=table.get(row, cols.address),
        city=table.get(row, cols.city),
        postal_code=table.get(row, cols.postal_code),
        country=table.get(row, cols.country),
        state=table.get(row, cols.state),
        status=table.get(row, cols.status),
        remote_document_id=table.get(row, cols.remote_document_id),
        remote_client_id=table.get(row, cols.remote_client_id),
        error_message=table.get(row, cols.error),
        synced_at=table.get(row, cols.synced_at),
    )
