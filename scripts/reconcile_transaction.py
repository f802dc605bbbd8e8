"""Operator CLI for the reconciliation endpoints."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for manual reconciliation."""

    parser = argparse.ArgumentParser(description="Inspect or repair transactions through the reconciliation API.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--reference", help="transaction reference to inspect")
    parser.add_argument("--sync", action="store_true", help="apply the provider's definitive status")
    parser.add_argument("--run", action="store_true", help="trigger one sweep now")
    parser.add_argument("--stuck-hours", type=float, help="list processing transactions older than N hours")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key, "x-roles": "admin"}
    with httpx.Client(base_url=args.api_url, headers=headers, timeout=60.0) as client:
        if args.run:
            resp = client.post("/reconciliation/run")
        elif args.stuck_hours is not None:
            resp = client.get("/reconciliation/stuck", params={"hours": args.stuck_hours})
        elif args.reference and args.sync:
            resp = client.post(f"/reconciliation/{args.reference}/sync")
        elif args.reference:
            resp = client.get(f"/reconciliation/{args.reference}")
        else:
            parser.error("provide --reference, --run or --stuck-hours")
        resp.raise_for_status()
        print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
