from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, payload: dict, headers: dict[str, str]) -> tuple[int, dict]:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        return exc.code, {"detail": exc.read().decode("utf-8")}


def signed_headers(secret: str, header: str, payload: dict) -> dict[str, str]:
    if not secret:
        return {}
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return {header: sign_payload(secret, body)}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Walk mock customers through click, chat, checkout and payment."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--campaign", default="mock_campaign")
    parser.add_argument("--skip-payment", action="store_true")
    parser.add_argument("--chat-secret", default="")
    parser.add_argument("--payment-secret", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    for index in range(args.start_index, args.start_index + args.count):
        event_id = f"evt_mock_click_{index}"
        status_code, click = post_json(
            f"{base_url}/api/track",
            {
                "event_id": event_id,
                "session_id": f"mock-session-{index}",
                "utm_source": "facebook",
                "utm_campaign": args.campaign,
                "page_url": "https://example.com/lp",
            },
            {},
        )
        print(f"{status_code} track {event_id} {click}")
        client_ref = click.get("client_ref")
        if not client_ref:
            continue

        chat = {"text": click.get("message") or f"cliente#{client_ref}", "from": f"55119{index:08d}"}
        status_code, response = post_json(
            f"{base_url}/webhooks/chat",
            chat,
            signed_headers(args.chat_secret, "X-Hub-Signature-256", chat),
        )
        print(f"{status_code} chat {client_ref} {response}")

        if args.skip_payment:
            continue
        charge = {
            "charge": {
                "value": 9700,
                "status": "COMPLETED",
                "transactionID": f"tx_mock_{index}",
                "additionalInfo": [{"key": "cliente", "value": str(client_ref)}],
            }
        }
        for variant in ("created", "completed"):
            status_code, response = post_json(
                f"{base_url}/webhooks/charge/{variant}",
                charge,
                signed_headers(args.payment_secret, "X-OpenPix-Signature", charge),
            )
            print(f"{status_code} charge/{variant} {client_ref} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
