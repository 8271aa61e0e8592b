"""Operator commands for the billing tables and webhook endpoint."""
import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import List, Optional
from urllib import error as urllib_error, request as urllib_request

import psycopg2
from dotenv import load_dotenv

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from billing_backend import app_context  # noqa: E402
from billing_backend.app.billing import SIGNATURE_HEADER, load_billing_config, sign_webhook_payload  # noqa: E402
from billing_backend.app.entitlements import EntitlementRecord  # noqa: E402
from billing_backend.app.entitlements.repository import PostgresEntitlementStore  # noqa: E402

load_dotenv()

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "billing_db"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
)


def _store() -> PostgresEntitlementStore:
    app_context.configure(get_conn=lambda: psycopg2.connect(**DB_CFG), get_current_user=lambda **_: None)
    return PostgresEntitlementStore()


def _describe(record: EntitlementRecord) -> str:
    return (
        f"{record.user_id}\tstate={record.state.value}\tsubscription={record.provider_subscription_id or '-'}"
        f"\tcredits={record.file_credits}\tfounder={'yes' if record.founder_supporter else 'no'}"
        f"\tevents={len(record.processed_event_ids)}\tversion={record.version}"
    )


def build_test_event(*, user_id: str, product: str, session_id: str, subscription_id: Optional[str]) -> dict:
    """A checkout completion shaped like the provider's own test deliveries."""

    return {
        "id": f"evt_test_{session_id}",
        "object": "event",
        "created": int(time.time()),
        "livemode": False,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "client_reference_id": user_id,
                "metadata": {"product": product, "user_id": user_id},
                "payment_status": "paid",
                "status": "complete",
                "subscription": subscription_id,
            }
        },
    }


def run_status(args: argparse.Namespace) -> int:
    record = _store().get(args.user_id)
    if record is None:
        print(f"No entitlement record for {args.user_id}")
        return 1
    print(_describe(record))
    if args.verbose:
        for event_id in sorted(record.processed_event_ids):
            print(f"  processed {event_id}")
    return 0


def run_list(args: argparse.Namespace) -> int:
    records = _store().list_records(active_only=args.active, limit=args.limit)
    for record in records:
        print(_describe(record))
    print(f"{len(records)} record(s)")
    return 0


def run_init_db(args: argparse.Namespace) -> int:
    _store().ensure_schema()
    print("Done. billing_entitlements is ready.")
    return 0


def run_sign_webhook(args: argparse.Namespace) -> int:
    secret = args.secret or load_billing_config().webhook_secret
    if not secret:
        print("BILLING_WEBHOOK_SECRET is not set; pass --secret", file=sys.stderr)
        return 2

    subscription_id = args.subscription_id
    if args.product == "plus" and not subscription_id:
        subscription_id = "sub_test_webhook"
    event = build_test_event(
        user_id=args.user_id,
        product=args.product,
        session_id=args.session_id,
        subscription_id=subscription_id,
    )
    payload = json.dumps(event).encode("utf-8")
    signature = sign_webhook_payload(payload, secret)

    if not args.send:
        print(f"{SIGNATURE_HEADER}: {signature}")
        print(payload.decode("utf-8"))
        return 0

    req = urllib_request.Request(
        args.send,
        data=payload,
        method="POST",
        headers={"Content-Type": "application/json", SIGNATURE_HEADER: signature},
    )
    try:
        with urllib_request.urlopen(req, timeout=10) as response:
            print(f"{response.status} {response.read().decode('utf-8')}")
    except urllib_error.HTTPError as exc:
        print(f"{exc.code} {exc.read().decode('utf-8')}", file=sys.stderr)
        return 1
    except urllib_error.URLError as exc:
        print(f"Could not reach {args.send}: {exc.reason}", file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="billing-admin", description="Inspect and exercise billing state")
    subparsers = parser.add_subparsers(dest="command")

    status_parser = subparsers.add_parser("status", help="Show one user's entitlement record")
    status_parser.add_argument("user_id")
    status_parser.add_argument("--verbose", "-v", action="store_true", help="List processed event ids")

    list_parser = subparsers.add_parser("list", help="List entitlement records")
    list_parser.add_argument("--active", action="store_true", help="Only active subscriptions")
    list_parser.add_argument("--limit", type=int, default=100)

    subparsers.add_parser("init-db", help="Create the billing_entitlements table")

    sign_parser = subparsers.add_parser("sign-webhook", help="Print or send a signed test checkout event")
    sign_parser.add_argument("user_id")
    sign_parser.add_argument("--product", choices=["plus", "file", "founder"], default="plus")
    sign_parser.add_argument("--session-id", default="cs_test_webhook")
    sign_parser.add_argument("--subscription-id")
    sign_parser.add_argument("--secret", help="Defaults to BILLING_WEBHOOK_SECRET")
    sign_parser.add_argument("--send", metavar="URL", help="POST the event to this webhook URL")

    args = parser.parse_args(argv)
    handlers = {
        "status": run_status,
        "list": run_list,
        "init-db": run_init_db,
        "sign-webhook": run_sign_webhook,
    }
    if args.command is None:
        parser.print_help()
        return 2
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
