"""Fetch and print one payment snapshot with its ledger history."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for payment diagnostics."""

    parser = argparse.ArgumentParser(description="Fetch /payments/{id} from the reconciliation API.")
    parser.add_argument("payment_id")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.api_url}/payments/{args.payment_id}",
        headers={"X-API-Key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
