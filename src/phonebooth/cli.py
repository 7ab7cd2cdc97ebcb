"""
Phonebooth CLI

Commands:
  serve      - Run the HTTP server (billing meter included)
  tick       - Run one billing meter pass and print the report
  user       - Create a user account
  topup      - Credit a user's balance
  balance    - Show a user's balance
  rate       - Set or list destination rates
  verify     - Check a user's cached balance against the ledger
  reconcile  - Rebuild a user's cached balance from the ledger
"""

import argparse
import json
import logging
import os
import sys

import structlog


def configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
    )


def _service():
    from .service import AccountingService
    return AccountingService()


def cmd_serve(args):
    """Run the HTTP server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Phonebooth on {host}:{port}")

    uvicorn.run(
        "phonebooth.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_tick(args):
    """Run one meter pass."""
    service = _service()
    report = service.tick()
    print(json.dumps(report.to_dict(), indent=2))
    if report.errors:
        sys.exit(2)


def cmd_user(args):
    """Create a user account."""
    service = _service()
    try:
        user = service.create_user(args.email, args.caller_id, args.currency, args.display_currency)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(user.to_dict(), indent=2))


def cmd_topup(args):
    """Credit a user's balance."""
    from .core.errors import BillingError

    service = _service()
    try:
        transaction = service.top_up(args.user, args.amount, note=args.note)
    except BillingError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Credited {args.amount} to user {args.user} (transaction {transaction.id})")
    print(f"  Balance: {service.ledger.balance_of(args.user)}")


def cmd_balance(args):
    """Show a user's balance."""
    from .core.errors import UserNotFound
    from .core.money import format_amount

    service = _service()
    try:
        summary = service.balance(args.user)
    except UserNotFound as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"User {args.user}")
    print(f"  Balance: {format_amount(summary['balance'], summary['currency'])}")
    print(f"  Display: {summary['displayBalance']} {summary['displayCurrency']}")
    print(f"  Frozen: {'Yes' if summary['frozen'] else 'No'}")


def cmd_rate(args):
    """Set or list rates."""
    service = _service()
    if args.list:
        for rate in service.list_rates():
            print(f"{rate.country:<4} +{rate.code:<6} {rate.price}")
        return

    if not (args.country and args.code is not None and args.price is not None):
        print("Error: --country, --code and --price are required to set a rate")
        sys.exit(1)
    try:
        rate = service.set_rate(args.country, args.code, args.price)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Rate set: {rate.country} +{rate.code} = {rate.price} per {service.config.billing_unit_seconds}s")


def cmd_verify(args):
    """Compare cached balance with the transaction sum."""
    service = _service()
    consistent, cached, computed = service.ledger.verify(args.user)
    print(f"User {args.user}: cached={cached} computed={computed}")
    if not consistent:
        print("Ledger INCONSISTENT - run 'phonebooth reconcile' after investigation")
        sys.exit(2)
    print("Ledger consistent")


def cmd_reconcile(args):
    """Rebuild cached balance from the ledger."""
    service = _service()
    balance = service.reconcile(args.user)
    print(f"User {args.user} reconciled, balance={balance}")


def main():
    parser = argparse.ArgumentParser(
        description="Phonebooth - Prepaid Call Billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # tick
    subparsers.add_parser("tick", help="Run one billing meter pass")

    # user
    user_parser = subparsers.add_parser("user", help="Create a user")
    user_parser.add_argument("--email", required=True)
    user_parser.add_argument("--caller-id", required=True)
    user_parser.add_argument("--currency")
    user_parser.add_argument("--display-currency")

    # topup
    topup_parser = subparsers.add_parser("topup", help="Credit a user")
    topup_parser.add_argument("user", type=int, help="User ID")
    topup_parser.add_argument("amount", type=int, help="Amount in minor units")
    topup_parser.add_argument("--note")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show a user's balance")
    balance_parser.add_argument("user", type=int, help="User ID")

    # rate
    rate_parser = subparsers.add_parser("rate", help="Set or list rates")
    rate_parser.add_argument("--country")
    rate_parser.add_argument("--code", type=int)
    rate_parser.add_argument("--price", type=int, help="Minor units per billing unit")
    rate_parser.add_argument("--list", action="store_true")

    # verify / reconcile
    verify_parser = subparsers.add_parser("verify", help="Verify a user's ledger")
    verify_parser.add_argument("user", type=int, help="User ID")
    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile a user's ledger")
    reconcile_parser.add_argument("user", type=int, help="User ID")

    args = parser.parse_args()
    configure_logging()

    commands = {
        "serve": cmd_serve,
        "tick": cmd_tick,
        "user": cmd_user,
        "topup": cmd_topup,
        "balance": cmd_balance,
        "rate": cmd_rate,
        "verify": cmd_verify,
        "reconcile": cmd_reconcile,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return
    command(args)


if __name__ == "__main__":
    main()
