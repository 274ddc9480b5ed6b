#!/usr/bin/env python3
"""
FIC Sync CLI

Usage:
    fic-sync setup          # Store API key and company ID, then test
    fic-sync test           # Test your connection
    fic-sync products       # Reconcile the product table with the remote catalog
    fic-sync orders         # Import every pending order
    fic-sync order ROW      # Import one newly added order row
    fic-sync status         # Show last sync results
    fic-sync stats          # Show limiter / breaker settings
    fic-sync revoke         # Delete stored credentials
"""

import argparse
import getpass
import sys

from colorama import Fore, Style, init

from fic_sync.config import SyncSettings, get_config_dir, get_config_path, load_config
from fic_sync.connector import SyncConnector
from fic_sync.errors import FicSyncError
from fic_sync.logging_setup import configure_logging
from fic_sync.vault import mask_api_key, validate_config

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}Store → Fatture in Cloud Sync{RESET}{BLUE}                            ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def first_line(message: str) -> str:
    lines = (message or "").strip().splitlines()
    return lines[0] if lines else ""


def build_connector(settings: SyncSettings) -> SyncConnector:
    return SyncConnector.from_config_dir(settings, get_config_dir())


def require_credentials(connector: SyncConnector) -> bool:
    problems = validate_config(connector.vault)
    if problems:
        for problem in problems:
            print_error(problem)
        print_info("Run 'fic-sync setup' to configure your credentials")
        return False
    return True


def cmd_setup(args, settings: SyncSettings):
    """Interactive credential setup."""
    print_banner()
    print(f"{BOLD}Setup{RESET}")
    print("Credentials are encrypted before they are written to disk.\n")

    connector = build_connector(settings)

    print("  Get the API key from: Fatture in Cloud → Settings → API and integrations")
    api_key = getpass.getpass("API key: ").strip()
    company_id = input("Company ID: ").strip()

    print(f"\n{BOLD}Testing connection...{RESET}")
    result = connector.save_and_test_credentials(api_key, company_id)

    if result.get("success"):
        print_success(f"Credentials saved for company {company_id} (key {mask_api_key(api_key)})")
        print_success("Connected successfully!")
        return 0

    print_error(f"Setup failed: {first_line(result.get('message', 'Unknown error'))}")
    return 1


def cmd_test(args, settings: SyncSettings):
    """Test the API connection with stored credentials."""
    connector = build_connector(settings)
    if not require_credentials(connector):
        return 1

    try:
        with connector.build_client() as client:
            result = client.test_connection()
    except FicSyncError as e:
        print_error(f"Connection failed: {first_line(str(e))}")
        return 1

    if result["success"]:
        print_success("Connected successfully!")
        return 0

    print_error(f"Connection failed: {first_line(result.get('message', 'Unknown error'))}")
    return 1


def cmd_products(args, settings: SyncSettings):
    """Reconcile the product table."""
    connector = build_connector(settings)
    if not require_credentials(connector):
        return 1

    print_banner()
    print(f"{BOLD}Product Sync{RESET}\n")

    try:
        result = connector.sync_products()
    except (FicSyncError, RuntimeError) as e:
        print_error(f"Product sync failed: {first_line(str(e))}")
        return 1

    print_success("Product sync complete")
    print(f"  New: {result.new}")
    print(f"  Updated: {result.updated}")
    print(f"  Total remote: {result.total}")
    return 0


def cmd_orders(args, settings: SyncSettings):
    """Import every pending order."""
    connector = build_connector(settings)
    if not require_credentials(connector):
        return 1

    print_banner()
    print(f"{BOLD}Order Import{RESET}\n")

    try:
        result = connector.process_pending_orders()
    except RuntimeError as e:
        print_error(str(e))
        return 1

    if result.processed == 0:
        print_info("No orders to process")
        return 0

    print_success(f"Orders processed: {result.processed}")
    print(f"  Imported: {result.imported}")
    if result.failed:
        print_warning(f"  Failed: {result.failed}")
        print(f"    First error: {first_line(result.first_error or '')}")
        return 1
    return 0


def cmd_order(args, settings: SyncSettings):
    """Import a single newly added order row."""
    connector = build_connector(settings)
    if not require_credentials(connector):
        return 1

    try:
        status = connector.process_order_row(args.row)
    except RuntimeError as e:
        print_error(str(e))
        return 1

    if status is None:
        print_info(f"Row {args.row} skipped (status already set or row missing)")
        return 0

    if status.value == "IMPORTED":
        print_success(f"Row {args.row} imported")
        return 0

    print_error(f"Row {args.row} failed, see the error column for details")
    return 1


def cmd_status(args, settings: SyncSettings):
    """Show last sync results."""
    print_banner()

    connector = build_connector(settings)
    checkpoint = connector.state_mgr.load()

    print(f"{BOLD}Sync Status{RESET}\n")

    if checkpoint.last_product_sync:
        r = checkpoint.last_product_result
        print(f"  Last product sync: {checkpoint.last_product_sync.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        print(f"    new={r.get('new', 0)} updated={r.get('updated', 0)} total={r.get('total', 0)}")
    else:
        print_warning("  No product sync completed yet")

    if checkpoint.last_order_batch:
        r = checkpoint.last_order_result
        print(f"  Last order batch: {checkpoint.last_order_batch.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        print(f"    processed={r.get('processed', 0)} imported={r.get('imported', 0)} failed={r.get('failed', 0)}")
    else:
        print_warning("  No order batch run yet")

    problems = validate_config(connector.vault)
    if problems:
        print()
        for problem in problems:
            print_warning(f"  {problem}")

    if checkpoint.errors:
        print()
        print_warning(f"  Recent errors: {len(checkpoint.errors)}")
        for err in checkpoint.errors[-5:]:
            print(f"    - {err}")

    return 0


def cmd_stats(args, settings: SyncSettings):
    """Show limiter and breaker configuration (counters live only for one run)."""
    print_banner()

    stats = build_connector(settings).get_stats()

    print(f"{BOLD}Connector Configuration{RESET}\n")
    print(f"  Caller: {stats['caller_id']}")

    rl = stats["rate_limiter"]
    print(f"\n{BOLD}Rate limiter:{RESET}")
    print(f"  {rl['max_requests']} requests / {rl['window_minutes']} min per caller")

    cb = stats["circuit_breaker"]
    print(f"\n{BOLD}Circuit breaker:{RESET}")
    print(f"  Threshold: {cb['failure_threshold']} failures, reset after {cb['reset_timeout_seconds']}s")

    return 0


def cmd_revoke(args, settings: SyncSettings):
    """Delete stored credentials."""
    build_connector(settings).revoke_credentials()
    print_success("Credentials deleted")
    return 0


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="fic-sync",
        description="Store ↔ Fatture in Cloud sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fic-sync setup          Store credentials and test them
  fic-sync products       Reconcile the product table
  fic-sync orders         Import pending orders
  fic-sync order 12       Import order row 12
        """,
    )
    parser.add_argument("--config", help=f"Config file (default: {get_config_path()})")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("setup", help="Store credentials and test them")
    subparsers.add_parser("test", help="Test your connection")
    subparsers.add_parser("products", help="Reconcile the product table")
    subparsers.add_parser("orders", help="Import every pending order")
    order_parser = subparsers.add_parser("order", help="Import one newly added order row")
    order_parser.add_argument("row", type=int, help="1-based data row")
    subparsers.add_parser("status", help="Show last sync results")
    subparsers.add_parser("stats", help="Show rate limiter and breaker settings")
    subparsers.add_parser("revoke", help="Delete stored credentials")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = load_config(args.config)
    configure_logging(
        enabled=settings.log_enabled,
        log_file=settings.log_file or get_config_dir() / "sync.log.jsonl",
    )

    commands = {
        "setup": cmd_setup,
        "test": cmd_test,
        "products": cmd_products,
        "orders": cmd_orders,
        "order": cmd_order,
        "status": cmd_status,
        "stats": cmd_stats,
        "revoke": cmd_revoke,
    }

    return commands[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
