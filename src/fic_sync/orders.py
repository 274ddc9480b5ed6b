"""
Order Sync Engine

Turns order rows into issued documents in Fatture in Cloud.

Per-row state machine:
    EMPTY -> PENDING -> IMPORTED
                     -> ERROR -> PENDING (on retry)

PENDING is written before any remote call, so a crash mid-order leaves a row
the batch driver will pick up again. A failing order is recorded on its own
row and never stops the batch.
"""

import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

import structlog

from fic_sync.client import FicClient
from fic_sync.config import OrderColumns, ProductColumns, SyncSettings
from fic_sync.errors import LineItemError
from fic_sync.models import LineItem, OrderRecord, OrderStatus, VatRate
from fic_sync.records import RecordTable, read_order

logger = structlog.get_logger(__name__)

LINE_ITEM_PATTERN = re.compile(r"^(.+?)\s+x(\d+)$")
ERROR_MESSAGE_LIMIT = 200
PAYMENT_TERM_DAYS = 30


def format_date(value: Any) -> str:
    """Format a date, datetime or ISO string as YYYY-MM-DD."""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(text).strftime("%Y-%m-%d")
        except ValueError:
            pass
        for fmt in ("%d/%m/%Y", "%d/%m/%Y %H:%M:%S", "%Y/%m/%d"):
            try:
                return datetime.strptime(value.strip(), fmt).strftime("%Y-%m-%d")
            except ValueError:
                continue
        raise ValueError(f"Unrecognized date: {value!r}")
    raise ValueError(f"Unrecognized date: {value!r}")


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------

@dataclass
class ParsedLine:
    name: str
    qty: int


def parse_line_items(text: str, strict: bool = False) -> list[ParsedLine]:
    """
    Parse "<name> x<qty>, <name> x<qty>, ..." into lines.

    Lenient mode drops fragments without a quantity suffix, logging a warning
    for each. Strict mode raises LineItemError instead.
    """
    lines: list[ParsedLine] = []

    for fragment in (text or "").split(","):
        fragment = fragment.strip()
        if not fragment:
            continue

        match = LINE_ITEM_PATTERN.match(fragment)
        if not match:
            if strict:
                raise LineItemError(f"Unparseable line item: {fragment!r}")
            logger.warning("Dropping unparseable line item", fragment=fragment)
            continue

        lines.append(ParsedLine(name=match.group(1).strip(), qty=int(match.group(2))))

    return lines


class PriceBook:
    """Exact-name unit price lookup against the product table."""

    def __init__(self, table: RecordTable, columns: ProductColumns | None = None):
        self.table = table
        self.columns = columns or ProductColumns()

    def find_price(self, name: str) -> float | None:
        names = self.table.column(self.columns.name)
        for row, value in enumerate(names, start=1):
            if value == name:
                price = self.table.get(row, self.columns.price)
                try:
                    return float(price) if price not in (None, "") else 0.0
                except (TypeError, ValueError):
                    return 0.0
        return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class BatchResult:
    processed: int = 0
    imported: int = 0
    failed: int = 0
    first_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "imported": self.imported,
            "failed": self.failed,
            "first_error": self.first_error,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _today() -> date:
    return datetime.now(timezone.utc).date()


class OrderSyncEngine:
    """
    Drives order rows through the sync state machine.

    `client_factory` builds a fresh FicClient for each order so credentials
    are reloaded on every construction.

    Example:
        engine = OrderSyncEngine(orders, products, settings, connector.build_client)
        result = engine.process_pending()
    """

    def __init__(
        self,
        orders: RecordTable,
        products: RecordTable,
        settings: SyncSettings,
        client_factory: Callable[[], FicClient],
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], str] = _now_iso,
        today: Callable[[], date] = _today,
    ):
        self.orders = orders
        self.settings = settings
        self.columns: OrderColumns = settings.order_columns
        self.price_book = PriceBook(products, settings.product_columns)
        self.client_factory = client_factory

        self._sleep = sleep
        self._now = now
        self._today = today

    # -------------------------------------------------------------------------
    # Row access
    # -------------------------------------------------------------------------

    def read(self, row: int) -> OrderRecord:
        return read_order(self.orders, row, self.columns)

    def status_of(self, row: int) -> OrderStatus:
        return OrderStatus(str(self.orders.get(row, self.columns.status) or "").strip().upper())

    def _mark_pending(self, row: int) -> None:
        self.orders.write(row, {self.columns.status: OrderStatus.PENDING.value})

    def _mark_imported(self, row: int, document_id: int) -> None:
        self.orders.write(row, {
            self.columns.status: OrderStatus.IMPORTED.value,
            self.columns.remote_document_id: document_id,
            self.columns.synced_at: self._now(),
            self.columns.error: "",
        })

    def _mark_error(self, row: int, message: str) -> None:
        self.orders.write(row, {
            self.columns.status: OrderStatus.ERROR.value,
            self.columns.error: message[:ERROR_MESSAGE_LIMIT],
        })

    # -------------------------------------------------------------------------
    # Document building
    # -------------------------------------------------------------------------

    def build_line_items(self, order: OrderRecord) -> list[LineItem]:
        """Parse the order's product text and price each line."""
        strict = self.settings.strict_line_items
        items: list[LineItem] = []

        for line in parse_line_items(order.products_text, strict=strict):
            price = self.price_book.find_price(line.name)
            if price is None:
                if strict:
                    raise LineItemError(f"Unknown product: {line.name!r}")
                logger.warning(
                    "Unknown product, pricing at 0",
                    order_no=order.order_no,
                    product=line.name,
                )
                price = 0.0

            items.append(LineItem(
                name=line.name,
                qty=line.qty,
                net_price=price,
                vat=VatRate(id=0, value=self.settings.vat_rate),
            ))

        return items

    def client_payload(self, order: OrderRecord) -> dict[str, Any]:
        return {
            "name": order.customer_name,
            "email": order.email,
            "phone": order.phone,
            "address_street": order.address,
            "address_city": order.city,
            "address_postal_code": order.postal_code,
            "address_province": order.state,
            "country": order.country or self.settings.default_country,
            "type": "company",
        }

    def document_payload(
        self,
        order: OrderRecord,
        client_id: int,
        items: list[LineItem],
    ) -> dict[str, Any]:
        order_date = format_date(order.date) if order.date else format_date(self._today())
        return {
            "type": self.settings.doc_type,
            "entity": {"id": client_id},
            "date": order_date,
            "number": order.order_no,
            "numeration": "/A",
            "subject": f"Ordine {order.order_no}",
            "items": [item.model_dump() for item in items],
            "payments_list": [{
                "amount": order.total,
                "due_date": format_date(self._today()),
                "payment_terms": {"days": PAYMENT_TERM_DAYS, "type": "standard"},
                "paid_date": order_date if order.is_paid else None,
                "status": "paid" if order.is_paid else "not_paid",
                "payment_account": self.settings.payment_method.model_dump(),
            }],
        }

    def resolve_client(self, client: FicClient, order: OrderRecord) -> int:
        """Reuse the client matching the order's email, or create one."""
        existing = client.find_client_by_email(order.email) if order.email else None
        if existing:
            logger.info("Existing client", client_id=existing.id, order_no=order.order_no)
            return existing.id

        created = client.create_client(self.client_payload(order))
        logger.info("Client created", client_id=created.id, order_no=order.order_no)
        return created.id

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def process_order(self, row: int) -> OrderStatus:
        """
        Run one row through the state machine.

        Never raises for order-level failures; the outcome is written to the
        row and returned.
        """
        log = logger.bind(row=row)
        self._mark_pending(row)

        try:
            order = self.read(row)
            log = log.bind(order_no=order.order_no)
            log.info("Processing order")

            items = self.build_line_items(order)

            with self.client_factory() as client:
                client_id = self.resolve_client(client, order)
                self.orders.write(row, {self.columns.remote_client_id: client_id})

                document = client.create_document(self.document_payload(order, client_id, items))

            self._mark_imported(row, document.id)
            log.info("Order imported", document_id=document.id, client_id=client_id)
            return OrderStatus.IMPORTED

        except Exception as e:
            message = str(e) or type(e).__name__
            self._mark_error(row, message)
            log.error("Order import failed", error=message, kind=getattr(e, "kind", None))
            return OrderStatus.ERROR

    # -------------------------------------------------------------------------
    # Drivers
    # -------------------------------------------------------------------------

    def pending_rows(self) -> list[int]:
        """Rows whose status is empty, PENDING or ERROR, in storage order."""
        rows = []
        for row in range(1, self.orders.row_count() + 1):
            try:
                status = self.status_of(row)
            except ValueError:
                continue
            if status.needs_processing:
                rows.append(row)
        return rows

    def process_pending(self) -> BatchResult:
        """Process every pending row sequentially, pausing between rows."""
        result = BatchResult()
        rows = self.pending_rows()
        logger.info("Order batch started", pending=len(rows))

        for i, row in enumerate(rows):
            if i > 0:
                self._sleep(self.settings.batch_pause_seconds)

            status = self.process_order(row)
            result.processed += 1
            if status == OrderStatus.IMPORTED:
                result.imported += 1
            else:
                result.failed += 1
                if result.first_error is None:
                    result.first_error = str(self.orders.get(row, self.columns.error))

        logger.info("Order batch complete", **result.to_dict())
        return result

    def on_row_added(self, row: int) -> OrderStatus | None:
        """Process a newly added row, only if its status is still unset."""
        if row < 1 or row > self.orders.row_count():
            return None
        if str(self.orders.get(row, self.columns.status) or "").strip():
            return None
        return self.process_order(row)
