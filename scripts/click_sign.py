"""Build a signed Click webhook body for sandbox testing.

Prints the form fields as JSON, or posts them when `--post` is given.
"""

import argparse
import json
import time

import httpx

from seatpay.services.click.service import ACTION_COMPLETE, ACTION_PREPARE, sign


def build_body(args) -> dict:
    action = ACTION_COMPLETE if args.step == "complete" else ACTION_PREPARE
    sign_time = args.sign_time or time.strftime("%Y-%m-%d %H:%M:%S")
    body = {
        "click_trans_id": args.click_trans_id,
        "service_id": args.service_id,
        "click_paydoc_id": args.click_trans_id,
        "merchant_trans_id": args.payment_id,
        "amount": args.amount,
        "action": str(action),
        "error": str(args.error),
        "error_note": "Success" if args.error == 0 else "Error",
        "sign_time": sign_time,
    }
    if action == ACTION_COMPLETE:
        body["merchant_prepare_id"] = args.prepare_id
    body["sign_string"] = sign(
        args.click_trans_id,
        args.service_id,
        args.secret_key,
        args.payment_id,
        args.amount,
        action,
        sign_time,
        merchant_prepare_id=args.prepare_id if action == ACTION_COMPLETE else None,
    )
    return body


def main() -> None:
    parser = argparse.ArgumentParser(description="Sign a Click prepare/complete webhook body.")
    parser.add_argument("step", choices=["prepare", "complete"])
    parser.add_argument("--payment-id", required=True)
    parser.add_argument("--amount", required=True, help="Major units, exactly as it will be posted")
    parser.add_argument("--click-trans-id", default=str(int(time.time())))
    parser.add_argument("--service-id", required=True)
    parser.add_argument("--secret-key", required=True)
    parser.add_argument("--prepare-id", default=None)
    parser.add_argument("--error", type=int, default=0)
    parser.add_argument("--sign-time", default=None)
    parser.add_argument("--post", dest="api_url", default=None, help="API base URL to post the body to")
    args = parser.parse_args()

    if args.step == "complete" and not args.prepare_id:
        raise SystemExit("--prepare-id is required for complete")

    body = build_body(args)
    if args.api_url:
        resp = httpx.post(f"{args.api_url}/payments/click/{args.step}", data=body, timeout=10.0)
        resp.raise_for_status()
        print(json.dumps(resp.json(), indent=2))
    else:
        print(json.dumps(body, indent=2))


if __name__ == "__main__":
    main()
