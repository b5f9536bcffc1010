"""Command-line utilities for inspecting and verifying sells."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime
from typing import Any, Optional

import httpx


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and verify sshmgmt sells")
    parser.add_argument("--base-url", required=True, help="Control plane base URL")
    parser.add_argument("--token", required=True, help="Operator bearer token")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List sells")
    list_parser.add_argument("--ref", type=int, help="Only sells credited to this referrer")
    list_parser.add_argument("--user", type=int, help="Only sells bought by this customer")
    list_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    show_parser = subparsers.add_parser("show", help="Show one sell")
    show_parser.add_argument("sell_id", type=int)

    verify_parser = subparsers.add_parser("verify", help="Provision the account for a sell")
    verify_parser.add_argument("sell_id", type=int)
    verify_parser.add_argument("--days", type=int, help="Account validity in days (node default is 30)")

    return parser.parse_args(argv)


class ControlPlaneError(RuntimeError):
    def __init__(self, status_code: int, payload: Any) -> None:
        super().__init__(f"control plane returned {status_code}: {json.dumps(payload)}")
        self.status_code = status_code
        self.payload = payload


def _unwrap(response: httpx.Response) -> Any:
    body = response.json()
    if isinstance(body, dict) and "Ok" in body:
        return body["Ok"]
    raise ControlPlaneError(response.status_code, body.get("Err", body) if isinstance(body, dict) else body)


async def fetch_sells(
    base_url: str,
    token: str,
    *,
    ref_id: Optional[int] = None,
    user_id: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[dict[str, Any]]:
    if ref_id is not None:
        path = f"/sells/sells_list_by_ref/{ref_id}"
    elif user_id is not None:
        path = f"/sells/sells_list_by_user/{user_id}"
    else:
        path = "/sells/sells_list"
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        response = await client.get(
            f"{base_url.rstrip('/')}{path}",
            headers={"Authorization": f"Bearer {token}"},
        )
        return _unwrap(response)


async def fetch_sell(
    base_url: str,
    token: str,
    sell_id: int,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        response = await client.get(
            f"{base_url.rstrip('/')}/sells/sell_info/{sell_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        return _unwrap(response)


async def verify_sell(
    base_url: str,
    token: str,
    sell_id: int,
    days: Optional[int] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=60.0, transport=transport) as client:
        response = await client.post(
            f"{base_url.rstrip('/')}/sells/verify_sell/{sell_id}",
            headers={"Authorization": f"Bearer {token}"},
            json={"days": days},
        )
        return _unwrap(response)


def format_timestamp(value: str | None) -> str:
    if not value:
        return "-"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed.strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def print_table(rows: list[dict[str, Any]]) -> None:
    headers = ["id", "status", "user_id", "node_id", "username", "invoice_date"]
    widths = {header: len(header) for header in headers}
    normalized: list[dict[str, str]] = []

    for row in rows:
        normalized_row = {
            "id": str(row.get("id", "")),
            "status": str(row.get("status", "")),
            "user_id": str(row.get("user_id", "")),
            "node_id": str(row.get("node_id", "")),
            "username": row.get("username") or "-",
            "invoice_date": format_timestamp(row.get("invoice_date")),
        }
        for key, value in normalized_row.items():
            widths[key] = max(widths[key], len(value))
        normalized.append(normalized_row)

    print("  ".join(key.ljust(widths[key]) for key in headers))
    print("  ".join("-" * widths[key] for key in headers))
    for row in normalized:
        print("  ".join(row[key].ljust(widths[key]) for key in headers))


async def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    if args.command == "list":
        sells = await fetch_sells(args.base_url, args.token, ref_id=args.ref, user_id=args.user)
        if args.json:
            print(json.dumps(sells, indent=2))
        else:
            print_table(sells)
    elif args.command == "show":
        print(json.dumps(await fetch_sell(args.base_url, args.token, args.sell_id), indent=2))
    elif args.command == "verify":
        sell = await verify_sell(args.base_url, args.token, args.sell_id, args.days)
        print(f"Sell {sell['id']} verified: {sell.get('username')} / {sell.get('password')}")
        print(f"Invoice date: {format_timestamp(sell.get('invoice_date'))}")


def main() -> None:
    try:
        asyncio.run(run())
    except ControlPlaneError as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
