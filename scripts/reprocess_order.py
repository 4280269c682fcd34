"""Ask the callback service to re-run reconciliation for one order."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for manual payment reprocessing."""

    parser = argparse.ArgumentParser(description="Reprocess a Fleeca payment for an order with a known token.")
    parser.add_argument("--service-url", default="http://localhost:8000")
    parser.add_argument("--order-id", type=int, required=True)
    parser.add_argument("--token", required=True)
    parser.add_argument("--admin-key", default=os.getenv("ADMIN_API_KEY", ""))
    parser.add_argument("--debug", action="store_true", help="Only validate the token, do not reprocess")
    args = parser.parse_args()

    if args.debug:
        resp = httpx.get(
            f"{args.service_url}/admin/orders/{args.order_id}/debug",
            params={"token": args.token},
            headers={"x-admin-key": args.admin_key},
            timeout=40.0,
        )
    else:
        resp = httpx.post(
            f"{args.service_url}/admin/orders/{args.order_id}/reprocess",
            params={"token": args.token},
            headers={"x-admin-key": args.admin_key},
            timeout=30.0,
        )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
