"""Command-line utilities for provisioning and inspecting service instances."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Optional

import httpx


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage Stratus service instances")
    parser.add_argument("--base-url", required=True, help="Stratus control plane base URL")
    parser.add_argument("--token", required=True, help="Bearer token for authentication")

    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Provision a service instance")
    create_parser.add_argument("--name", required=True)
    create_parser.add_argument("--space", required=True, help="Space GUID")
    create_parser.add_argument("--plan", required=True, help="Service plan GUID")
    create_parser.add_argument("--parameters", help="JSON object passed to the broker unchanged")
    create_parser.add_argument("--async", dest="accepts_incomplete", action="store_true", help="Accept asynchronous provisioning")
    create_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    show_parser = subparsers.add_parser("show", help="Show one service instance")
    show_parser.add_argument("guid")
    show_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    list_parser = subparsers.add_parser("list", help="List service instances")
    list_parser.add_argument("--space", help="Only instances in this space")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    orphans_parser = subparsers.add_parser("orphans", help="List instances whose orphan mitigation failed")
    orphans_parser.add_argument("--limit", type=int, default=50)
    orphans_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    return parser.parse_args(argv)


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def create_instance(
    base_url: str,
    token: str,
    body: dict[str, Any],
    accepts_incomplete: bool,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=120.0, transport=transport) as client:
        response = await client.post(
            f"{base_url.rstrip('/')}/v2/service_instances",
            headers=_headers(token),
            params={"accepts_incomplete": "true" if accepts_incomplete else "false"},
            json=body,
        )
        response.raise_for_status()
        return response.json()


async def fetch_instance(
    base_url: str, token: str, guid: str, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        response = await client.get(f"{base_url.rstrip('/')}/v2/service_instances/{guid}", headers=_headers(token))
        response.raise_for_status()
        return response.json()


async def fetch_instances(
    base_url: str,
    token: str,
    space_guid: Optional[str],
    limit: int,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[dict[str, Any]]:
    params: dict[str, Any] = {"limit": limit}
    if space_guid:
        params["space_guid"] = space_guid
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        response = await client.get(
            f"{base_url.rstrip('/')}/v2/service_instances",
            headers=_headers(token),
            params=params,
        )
        response.raise_for_status()
        return response.json()


async def fetch_orphans(
    base_url: str, token: str, limit: int, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> list[dict[str, Any]]:
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        response = await client.get(
            f"{base_url.rstrip('/')}/v2/orphans",
            headers=_headers(token),
            params={"limit": limit},
        )
        response.raise_for_status()
        return response.json()


def format_timestamp(value: str | None) -> str:
    if not value:
        return "-"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed.strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def _print_rows(headers: list[str], rows: list[dict[str, str]]) -> None:
    widths = {header: len(header) for header in headers}
    for row in rows:
        for key in headers:
            widths[key] = max(widths[key], len(row[key]))
    print("  ".join(key.ljust(widths[key]) for key in headers))
    print("  ".join("-" * widths[key] for key in headers))
    for row in rows:
        print("  ".join(row[key].ljust(widths[key]) for key in headers))


def instance_row(instance: dict[str, Any]) -> dict[str, str]:
    operation = instance.get("last_operation") or {}
    return {
        "guid": str(instance.get("guid", "")),
        "name": str(instance.get("name", "")),
        "state": str(operation.get("state") or "-"),
        "description": str(operation.get("description") or "-"),
        "dashboard_url": instance.get("dashboard_url") or "-",
        "updated_at": format_timestamp(instance.get("updated_at")),
    }


def print_instances(instances: list[dict[str, Any]]) -> None:
    _print_rows(
        ["guid", "name", "state", "description", "dashboard_url", "updated_at"],
        [instance_row(instance) for instance in instances],
    )


def print_orphans(orphans: list[dict[str, Any]]) -> None:
    rows = [
        {
            "instance_guid": str(orphan.get("service_instance_guid", "")),
            "plan_guid": str(orphan.get("service_plan_guid", "")),
            "source": str(orphan.get("source", "")),
            "created_at": format_timestamp(orphan.get("created_at")),
            "error": orphan.get("error") or "-",
        }
        for orphan in orphans
    ]
    _print_rows(["instance_guid", "plan_guid", "source", "created_at", "error"], rows)


async def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.command == "create":
            parameters = json.loads(args.parameters) if args.parameters else {}
            if not isinstance(parameters, dict):
                print("--parameters must be a JSON object", file=sys.stderr)
                return 2
            body = {
                "name": args.name,
                "space_guid": args.space,
                "service_plan_guid": args.plan,
                "parameters": parameters,
            }
            payload = await create_instance(args.base_url, args.token, body, args.accepts_incomplete)
            if args.json:
                print(json.dumps(payload, indent=2))
            else:
                print_instances([payload["instance"]])
                for warning in payload.get("warnings") or []:
                    print(f"warning: {warning}", file=sys.stderr)
        elif args.command == "show":
            instance = await fetch_instance(args.base_url, args.token, args.guid)
            if args.json:
                print(json.dumps(instance, indent=2))
            else:
                print_instances([instance])
        elif args.command == "list":
            instances = await fetch_instances(args.base_url, args.token, args.space, args.limit)
            if args.json:
                print(json.dumps(instances, indent=2))
            else:
                print_instances(instances)
        elif args.command == "orphans":
            orphans = await fetch_orphans(args.base_url, args.token, args.limit)
            if args.json:
                print(json.dumps(orphans, indent=2))
            else:
                print_orphans(orphans)
    except httpx.HTTPStatusError as exc:
        try:
            detail = exc.response.json().get("detail")
        except ValueError:
            detail = exc.response.text
        print(f"error: {exc.response.status_code} {detail}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as exc:
        print(f"error: invalid --parameters JSON: {exc}", file=sys.stderr)
        return 2
    return 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
