#!/usr/bin/env python3
"""
Standalone script to inspect an AVD host pool and, if needed, revoke a
registration token left behind by an interrupted session host run.

Usage:
    # Use subscription / resource group / host pool from paw_config.json:
    python scripts/host_pool_status.py

    # Explicit target, revoking the registration token:
    python scripts/host_pool_status.py --subscription <id> --resource-group rg-paw \
        --host-pool paw-hp --revoke-token

Returns JSON on stdout.  Exit codes:
    0 - success
    1 - error (missing values, host pool not found, API failure)
"""

import argparse
import json
import sys
from pathlib import Path

# Add the repository root to sys.path so we can import the PAW modules
_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from avd_client import VirtualDesktopClient, session_host_name
from azure_rest import AzureApiError
from config_store import load_config


def _exit_error(message: str, exit_code: int = 1) -> None:
    """Print a JSON error object to stdout and exit."""
    print(json.dumps({"error": message}, indent=2))
    sys.exit(exit_code)


def resolve_target(args) -> tuple:
    """Fill subscription / resource group / host pool from flags, then the saved config."""
    config = load_config(args.config)
    subscription = args.subscription or (config.subscription_id if config else "")
    resource_group = args.resource_group or (config.resource_group if config else "")
    host_pool = args.host_pool or (config.host_pool if config else "")

    missing = []
    if not subscription:
        missing.append("--subscription")
    if not resource_group:
        missing.append("--resource-group")
    if not host_pool:
        missing.append("--host-pool")
    if missing:
        _exit_error(f"Missing value(s) and no saved configuration to fall back on: {', '.join(missing)}")

    return subscription, resource_group, host_pool


def host_pool_report(client: VirtualDesktopClient, subscription: str, resource_group: str, host_pool: str) -> dict:
    """Session hosts of *host_pool* with their status and assigned user.

    On not-found or API error, returns a dict with an 'error' key.
    """
    try:
        pool = client.get_host_pool(subscription, resource_group, host_pool)
        if pool is None:
            return {"error": f"Host pool '{host_pool}' not found in '{resource_group}'."}

        hosts = []
        for host in client.list_session_hosts(subscription, resource_group, host_pool):
            props = host.get("properties", {})
            hosts.append({
                "name": session_host_name(host),
                "status": props.get("status", "Unknown"),
                "assigned_user": props.get("assignedUser") or "",
            })

        registration = pool.get("properties", {}).get("registrationInfo") or {}
        return {
            "host_pool": host_pool,
            "registration_token_expires": registration.get("expirationTime") if registration.get("token") else None,
            "session_hosts": hosts,
            "count": len(hosts),
        }
    except AzureApiError as exc:
        return {"error": str(exc)}


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Show AVD host pool session hosts and optionally revoke the registration token.",
    )
    parser.add_argument("--config", default=None, help="Saved configuration file to read defaults from.")
    parser.add_argument("--subscription", default=None, help="Subscription id.")
    parser.add_argument("--resource-group", default=None, help="Resource group of the host pool.")
    parser.add_argument("--host-pool", default=None, help="Host pool name.")
    parser.add_argument(
        "--revoke-token",
        action="store_true",
        help="Delete the host pool's registration token before reporting.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns exit code (0 = success, 1 = error)."""
    parser = build_parser()
    args = parser.parse_args(argv)

    subscription, resource_group, host_pool = resolve_target(args)
    client = VirtualDesktopClient()

    revoked = False
    if args.revoke_token:
        try:
            client.revoke_registration_token(subscription, resource_group, host_pool)
            revoked = True
        except AzureApiError as exc:
            _exit_error(f"Could not revoke registration token: {exc}")

    result = host_pool_report(client, subscription, resource_group, host_pool)
    if args.revoke_token:
        result["token_revoked"] = revoked

    print(json.dumps(result, indent=2))

    if "error" in result:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
