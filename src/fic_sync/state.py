"""
Sync status persistence.

Records when products and orders were last synced, the counts of the last
runs and recent errors, so `fic-sync status` can report without touching the
remote API.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

MAX_ERRORS = 100


@dataclass
class SyncCheckpoint:
    """Outcome of the most recent product and order runs."""

    last_product_sync: datetime | None = None
    last_product_result: dict[str, int] = field(default_factory=dict)

    last_order_batch: datetime | None = None
    last_order_result: dict[str, Any] = field(default_factory=dict)

    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "last_product_sync": self.last_product_sync.isoformat() if self.last_product_sync else None,
            "last_product_result": self.last_product_result,
            "last_order_batch": self.last_order_batch.isoformat() if self.last_order_batch else None,
            "last_order_result": self.last_order_result,
            "errors": self.errors[-MAX_ERRORS:],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncCheckpoint":
        """Create from JSON dict."""
        def parse_dt(val: str | None) -> datetime | None:
            if val:
                return datetime.fromisoformat(val)
            return None

        return cls(
            last_product_sync=parse_dt(data.get("last_product_sync")),
            last_product_result=data.get("last_product_result", {}),
            last_order_batch=parse_dt(data.get("last_order_batch")),
            last_order_result=data.get("last_order_result", {}),
            errors=data.get("errors", []),
        )

    def record_products(self, result: dict[str, int]) -> None:
        self.last_product_sync = datetime.now(timezone.utc)
        self.last_product_result = dict(result)

    def record_orders(self, result: dict[str, Any]) -> None:
        self.last_order_batch = datetime.now(timezone.utc)
        self.last_order_result = dict(result)
        if result.get("first_error"):
            self.add_error(f"Orders: {result['first_error']}")

    def add_error(self, message: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        self.errors.append(f"[{stamp}] {message}")
        del self.errors[:-MAX_ERRORS]


class StateManager:
    """
    Persists SyncCheckpoint to a JSON file.

    Usage:
        state_mgr = StateManager(config_dir / "state.json")
        checkpoint = state_mgr.load()
        checkpoint.record_products(result.to_dict())
        state_mgr.save(checkpoint)
    """

    def __init__(self, state_file: str | Path):
        self.state_file = Path(state_file)
        self._log = logger.bind(state_file=str(self.state_file))

    def load(self) -> SyncCheckpoint:
        """Load state from disk, or return fresh state if none exists."""
        if not self.state_file.exists():
            self._log.info("No existing state file, starting fresh")
            return SyncCheckpoint()

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
            return SyncCheckpoint.from_dict(data)
        except (OSError, ValueError) as e:
            self._log.warning("Failed to load state, starting fresh", error=str(e))
            return SyncCheckpoint()

    def save(self, checkpoint: SyncCheckpoint) -> None:
        """
        Save state to disk.

        Uses atomic write (write to temp, then rename) to prevent corruption.
        """
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)

            temp_file.replace(self.state_file)
            self._log.debug("Saved state")
        except OSError as e:
            self._log.error("Failed to save state", error=str(e))
            raise

    def clear(self) -> None:
        """Delete state file (for testing or reset)."""
        if self.state_file.exists():
            self.state_file.unlink()
            self._log.info("Cleared state file")
