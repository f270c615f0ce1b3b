#!/usr/bin/env python3
"""
Point the gateway instance webhook at this service.

Usage: python set_gateway_webhook.py [--url https://host/webhook/instance]

Environment:
    GATEWAY_BASE_SEND     base URL of the gateway instance
    GATEWAY_TOKEN_SEND    instance token
    WEBHOOK_URL           public URL of POST /webhook (or pass --url)
    GATEWAY_ADMIN_TOKEN   optional, also sets the global webhook
"""

import argparse
import os
import sys

import requests

TIMEOUT_SECONDS = 30


def _headers(token_header: str, token: str) -> dict:
    return {
        "Accept": "application/json",
        "Content-Type": "application/json",
        token_header: token,
    }


def set_webhook(base: str, path: str, token_header: str, token: str, url: str) -> requests.Response:
    """POST the webhook URL; some gateway builds want the field named "webhook" instead of "url"."""
    endpoint = f"{base}{path}"
    response = requests.post(endpoint, headers=_headers(token_header, token), json={"url": url}, timeout=TIMEOUT_SECONDS)
    if response.status_code >= 400:
        print(f"POST {path} with {{\"url\"}} failed (HTTP {response.status_code}), retrying with {{\"webhook\"}}")
        response = requests.post(
            endpoint,
            headers=_headers(token_header, token),
            json={"webhook": url},
            timeout=TIMEOUT_SECONDS,
        )
    return response


def show_webhook(base: str, path: str, token_header: str, token: str, label: str) -> None:
    response = requests.get(f"{base}{path}", headers=_headers(token_header, token), timeout=TIMEOUT_SECONDS)
    print(f"[{label}] {response.status_code} {response.text}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Register this service as the gateway webhook")
    parser.add_argument("--base", default=os.environ.get("GATEWAY_BASE_SEND", ""))
    parser.add_argument("--token", default=os.environ.get("GATEWAY_TOKEN_SEND", ""))
    parser.add_argument("--url", default=os.environ.get("WEBHOOK_URL", ""))
    parser.add_argument("--admin-token", default=os.environ.get("GATEWAY_ADMIN_TOKEN", ""))
    args = parser.parse_args()

    if not args.base or not args.token or not args.url:
        print("Missing GATEWAY_BASE_SEND, GATEWAY_TOKEN_SEND or WEBHOOK_URL", file=sys.stderr)
        return 1

    base = args.base.rstrip("/")
    print(f">>> Setting instance webhook on {base}")
    response = set_webhook(base, "/webhook", "token", args.token, args.url)
    if response.status_code >= 400:
        print(f"ERROR: webhook not set (HTTP {response.status_code}): {response.text}", file=sys.stderr)
        return 1
    print("Instance webhook set.")
    show_webhook(base, "/webhook", "token", args.token, "instance")

    if args.admin_token:
        print(">>> Setting global webhook")
        response = set_webhook(base, "/globalwebhook", "adminToken", args.admin_token, args.url)
        if response.status_code >= 400:
            print(f"Warning: global webhook not set (HTTP {response.status_code}): {response.text}")
        else:
            print("Global webhook set.")
            show_webhook(base, "/globalwebhook", "adminToken", args.admin_token, "global")

    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
