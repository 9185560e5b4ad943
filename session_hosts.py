"""
Session host lifecycle: create per-user VMs in an existing host pool and
finish their configuration.

One registration token is minted per batch, shared by every deployment in
it and revoked once at the end, whatever happened in between.  Every
per-host failure is logged and the batch moves on.
"""
from __future__ import annotations

import logging
import os
import re
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from arm_client import DeploymentError
from azure_rest import AzureApiError
from config_store import DeploymentConfig, DirectoryGroupRef, GroupRole
from keyvault_secrets import KeyVaultSecretStore
from prompts import Prompter, parse_selection
from run_log import status
from selection import TEMPLATE_DIR, select_template

logger = logging.getLogger(__name__)

PREP_SCRIPT_URL = os.environ.get("PAW_PREP_SCRIPT_URL", "")
SHUTDOWN_TIME = "1900"
SHUTDOWN_TIMEZONE = os.environ.get("PAW_SHUTDOWN_TIMEZONE", "UTC")

DEVICE_TAG_ATTRIBUTE = "extensionAttribute1"
DEVICE_TAG_VALUE = "PAW"

SESSION_HOST_TEMPLATE_KEYWORD = "sessionhost"
MAX_HOSTS_PER_RUN = 4
VM_NAME_MAX = 15  # Windows computer name limit

ADMIN_USERNAME_SECRET = "paw-admin-username"
ADMIN_PASSWORD_SECRET = "paw-admin-password"

NAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9 -]*")
UPN_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
ADMIN_USERNAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9._-]{0,19}")
RESERVED_ADMIN_NAMES = {"admin", "administrator", "guest", "root", "user"}

GROUP_ROLE_CHOICES = [
    ("Standard user group only", (GroupRole.STANDARD,)),
    ("Elevated admin group only", (GroupRole.ELEVATED,)),
    ("Both groups", (GroupRole.STANDARD, GroupRole.ELEVATED)),
    ("Neither", ()),
]

CREDENTIAL_SOURCES = ("prompt", "keyvault")
DEVICE_TAG_SCOPES = ("resource_group", "batch")


class SessionHostError(Exception):
    """The batch cannot start (missing host pool, template or credentials)."""


class HostStatus(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    SKIPPED_EXISTS = "skipped_exists"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SessionHostRequest:
    first_name: str
    last_name: str
    upn: str

    def vm_name(self, prefix: str) -> str:
        """``prefix + first + last`` without whitespace, cut to 15 characters."""
        return "".join(f"{prefix}{self.first_name}{self.last_name}".split())[:VM_NAME_MAX]


@dataclass
class HostResult:
    vm_name: str
    upn: str
    status: HostStatus = HostStatus.PENDING
    assigned: bool = False
    groups_added: list[str] = field(default_factory=list)
    auto_shutdown: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def reachable(self) -> bool:
        """The VM exists, so assignment and shutdown schedule apply."""
        return self.status in (HostStatus.CREATED, HostStatus.SKIPPED_EXISTS)


@dataclass
class HostPoolTarget:
    """Everything a batch needs to know about where the hosts go."""

    subscription_id: str
    resource_group: str
    location: str
    host_pool: str
    prefix: str
    template_path: str
    vnet_name: str
    subnet_name: str
    admin_username: str = ""
    admin_password: str = ""
    standard_group: DirectoryGroupRef | None = None
    elevated_group: DirectoryGroupRef | None = None
    group_roles: tuple = ()

    def group_for(self, role: GroupRole) -> DirectoryGroupRef | None:
        return self.standard_group if role is GroupRole.STANDARD else self.elevated_group


@dataclass
class SessionHostOptions:
    """
    Variant points of the session host workflow.

    credential_source:
        ``"prompt"`` (typed twice, masked) or ``"keyvault"`` (read from
        ``PAW_KEYVAULT_URL`` secrets).
    discover_network:
        Pick the vnet/subnet from what exists in the resource group instead
        of taking them from the saved configuration or typing them.
    device_tag_scope:
        ``"resource_group"`` tags every device whose name starts with the
        resource group name; ``"batch"`` only this batch's VMs.
    max_workers:
        Concurrent template deployments; 1 deploys one host after another.
    cancel_event:
        Checked between remote calls.  Once set, no further host work
        starts, but the registration token is still revoked.  The first
        Ctrl-C during ``provision_hosts`` sets it; a second one aborts.
    """

    credential_source: str = "prompt"
    discover_network: bool = True
    device_tag_scope: str = "resource_group"
    dns_servers: list[str] = field(default_factory=list)
    prep_script_url: str = PREP_SCRIPT_URL
    shutdown_time: str = SHUTDOWN_TIME
    shutdown_timezone: str = SHUTDOWN_TIMEZONE
    max_workers: int = 1
    admin_username_secret: str = ADMIN_USERNAME_SECRET
    admin_password_secret: str = ADMIN_PASSWORD_SECRET
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self):
        if self.credential_source not in CREDENTIAL_SOURCES:
            raise ValueError(f"credential_source must be one of {CREDENTIAL_SOURCES}")
        if self.device_tag_scope not in DEVICE_TAG_SCOPES:
            raise ValueError(f"device_tag_scope must be one of {DEVICE_TAG_SCOPES}")
        self.max_workers = max(1, self.max_workers)


@contextmanager
def interrupt_sets(event: threading.Event):
    """
    Turn the first SIGINT into *event* being set instead of a
    ``KeyboardInterrupt``; a second SIGINT raises as usual.  The previous
    handler is restored on exit.  Outside the main thread this does nothing,
    since only the main thread may install signal handlers.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        event.set()
        logger.warning("Interrupt received; finishing in-flight calls, press Ctrl-C again to abort")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class SessionHostManager:
    """Provision a batch of session hosts into one host pool."""

    def __init__(self, arm, avd, directory, options: SessionHostOptions | None = None):
        self.arm = arm
        self.avd = avd
        self.directory = directory
        self.options = options or SessionHostOptions()

    def _cancelled(self) -> bool:
        return self.options.cancel_event.is_set()

    def provision_hosts(self, requests: Sequence[SessionHostRequest], pool: HostPoolTarget) -> list[HostResult]:
        """
        Create and configure one session host per request.

        Steps: mint token, create (or skip existing) VMs, assign users, add
        group memberships, schedule auto-shutdown, tag devices, revoke token.
        The revoke runs after every creation attempt has finished, including
        when the batch was cancelled or a step raised.

        Raises:
            SessionHostError: The registration token could not be issued
        """
        results = [HostResult(vm_name=r.vm_name(pool.prefix), upn=r.upn) for r in requests]
        if not results:
            return results

        with interrupt_sets(self.options.cancel_event):
            try:
                token = self.avd.mint_registration_token(pool.subscription_id, pool.resource_group, pool.host_pool)
            except AzureApiError as e:
                raise SessionHostError(f"Could not issue a registration token for {pool.host_pool}: {e}") from e
            status("OK", f"Registration token issued for {pool.host_pool} (expires {token.expires_on:%Y-%m-%d %H:%M} UTC)")

            try:
                self._create_hosts(requests, results, pool, token.token)
                self._assign_hosts(results, pool)
                self._add_group_memberships(results, pool)
                self._configure_auto_shutdown(results, pool)
                self._tag_devices(results, pool)
            finally:
                self._revoke_token(pool)

        if self._cancelled():
            status("WARN", "Batch cancelled; remaining steps were skipped", logging.WARNING)
        return results

    # -- creation ------------------------------------------------------------

    def _create_hosts(self, requests, results, pool, token):
        pairs = list(zip(requests, results))
        workers = min(self.options.max_workers, len(pairs))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self._create_host, req, res, pool, token) for req, res in pairs]
                for future in futures:
                    future.result()
        else:
            for request, result in pairs:
                self._create_host(request, result, pool, token)

    def _create_host(self, request: SessionHostRequest, result: HostResult, pool: HostPoolTarget, token: str):
        if self._cancelled():
            result.status = HostStatus.CANCELLED
            return

        try:
            if self.arm.vm_exists(pool.subscription_id, pool.resource_group, result.vm_name):
                result.status = HostStatus.SKIPPED_EXISTS
                status("OK", f"{result.vm_name} already exists, skipping deployment")
                return

            if self._cancelled():
                result.status = HostStatus.CANCELLED
                return

            status("DEPLOY", f"Deploying session host {result.vm_name} for {request.upn}")
            self.arm.deploy_template_file(
                pool.subscription_id,
                pool.resource_group,
                f"{result.vm_name}-sessionhost",
                pool.template_path,
                self._deployment_parameters(request, result, pool, token),
            )
        except (AzureApiError, DeploymentError, OSError, ValueError) as e:
            result.status = HostStatus.FAILED
            result.errors.append(f"deploy: {e}")
            status("ERROR", f"{result.vm_name}: deployment failed: {e}", logging.ERROR)
            return

        result.status = HostStatus.CREATED
        status("OK", f"Session host {result.vm_name} deployed")

    def _deployment_parameters(self, request, result, pool, token) -> dict:
        return {
            "prefix": pool.prefix,
            "vmName": result.vm_name,
            "adminUsername": pool.admin_username,
            "adminPassword": pool.admin_password,
            "userFirstName": request.first_name,
            "userLastName": request.last_name,
            "userPrincipalName": request.upn,
            "hostPoolName": pool.host_pool,
            "hostPoolToken": token,
            "vnetName": pool.vnet_name,
            "subnetName": pool.subnet_name,
            "dnsServers": list(self.options.dns_servers),
            "prepScriptUrl": self.options.prep_script_url,
        }

    # -- configuration -------------------------------------------------------

    def _assign_hosts(self, results, pool):
        for result in results:
            if self._cancelled():
                return
            if not result.reachable:
                continue
            try:
                host = self.avd.find_session_host(
                    pool.subscription_id, pool.resource_group, pool.host_pool, result.vm_name
                )
                if host is None:
                    result.errors.append("assign: not registered in the host pool yet")
                    status("WARN", f"{result.vm_name} is not registered in {pool.host_pool}, cannot assign {result.upn}", logging.WARNING)
                    continue
                changed = self.avd.assign_user(
                    pool.subscription_id, pool.resource_group, pool.host_pool, host, result.upn
                )
            except AzureApiError as e:
                result.errors.append(f"assign: {e}")
                status("WARN", f"{result.vm_name}: assignment to {result.upn} failed: {e}", logging.WARNING)
                continue

            result.assigned = True
            status("OK", f"{result.vm_name} {'assigned to' if changed else 'already assigned to'} {result.upn}")

    def _add_group_memberships(self, results, pool):
        roles = [role for role in pool.group_roles if pool.group_for(role) is not None]
        if not roles:
            return

        for result in results:
            if self._cancelled():
                return
            if result.status is HostStatus.CANCELLED:
                continue

            try:
                user = self.directory.get_user(result.upn)
            except AzureApiError as e:
                result.errors.append(f"groups: {e}")
                status("WARN", f"Lookup of {result.upn} failed: {e}", logging.WARNING)
                continue
            if user is None:
                result.errors.append(f"groups: user {result.upn} not found")
                status("WARN", f"User {result.upn} not found in the directory", logging.WARNING)
                continue

            for role in roles:
                group = pool.group_for(role)
                try:
                    added = self.directory.add_member(group.object_id, user["id"])
                except AzureApiError as e:
                    result.errors.append(f"groups: {e}")
                    status("WARN", f"Adding {result.upn} to {group.display_name} failed: {e}", logging.WARNING)
                    continue
                if added:
                    result.groups_added.append(group.display_name or group.object_id)
                    status("OK", f"{result.upn} added to {group.display_name}")
                else:
                    logger.info("%s already in %s", result.upn, group.display_name)

    def _configure_auto_shutdown(self, results, pool):
        for result in results:
            if self._cancelled():
                return
            if not result.reachable:
                continue
            try:
                self.arm.set_auto_shutdown(
                    pool.subscription_id,
                    pool.resource_group,
                    result.vm_name,
                    pool.location,
                    self.options.shutdown_time,
                    self.options.shutdown_timezone,
                    result.upn,
                )
            except AzureApiError as e:
                result.errors.append(f"auto-shutdown: {e}")
                status("WARN", f"{result.vm_name}: auto-shutdown not configured: {e}", logging.WARNING)
                continue
            result.auto_shutdown = True
            status("OK", f"{result.vm_name} shuts down daily at {self.options.shutdown_time} ({self.options.shutdown_timezone})")

    def _tag_devices(self, results, pool) -> int:
        """Set the PAW extension attribute on matching directory devices."""
        if self._cancelled():
            return 0

        try:
            if self.options.device_tag_scope == "batch":
                devices = []
                for name in sorted({r.vm_name.lower() for r in results if r.reachable}):
                    devices.extend(
                        d for d in self.directory.list_devices(name)
                        if d.get("displayName", "").lower() == name
                    )
            else:
                devices = self.directory.list_devices(pool.resource_group)
        except AzureApiError as e:
            status("WARN", f"Could not list devices for tagging: {e}", logging.WARNING)
            return 0

        tagged = 0
        for device in devices:
            if self._cancelled():
                break
            attributes = device.get("extensionAttributes") or {}
            if attributes.get(DEVICE_TAG_ATTRIBUTE) == DEVICE_TAG_VALUE:
                continue
            try:
                self.directory.set_device_extension_attribute(device["id"], DEVICE_TAG_ATTRIBUTE, DEVICE_TAG_VALUE)
            except AzureApiError as e:
                status("WARN", f"Could not tag device {device.get('displayName')}: {e}", logging.WARNING)
                continue
            tagged += 1

        status("OK", f"Tagged {tagged} device(s) with {DEVICE_TAG_ATTRIBUTE}={DEVICE_TAG_VALUE}")
        return tagged

    def _revoke_token(self, pool):
        try:
            self.avd.revoke_registration_token(pool.subscription_id, pool.resource_group, pool.host_pool)
        except AzureApiError as e:
            status(
                "ERROR",
                f"Registration token for {pool.host_pool} was NOT revoked: {e}. "
                f"Revoke it with: python scripts/host_pool_status.py --subscription {pool.subscription_id} "
                f"--resource-group {pool.resource_group} --host-pool {pool.host_pool} --revoke-token",
                logging.ERROR,
            )
            return
        status("OK", f"Registration token for {pool.host_pool} revoked")


# ---------------------------------------------------------------------------
# Interactive workflow
# ---------------------------------------------------------------------------

def collect_requests(prompter: Prompter, prefix: str = "") -> list[SessionHostRequest]:
    """Ask for 1-4 users to provision a session host for."""
    answer = prompter.ask_valid(
        f"Number of session hosts to create (1-{MAX_HOSTS_PER_RUN})",
        lambda text: parse_selection(text, MAX_HOSTS_PER_RUN) is not None,
        f"Enter a number between 1 and {MAX_HOSTS_PER_RUN}",
    )
    count = parse_selection(answer, MAX_HOSTS_PER_RUN)

    requests = []
    seen = set()
    for number in range(1, count + 1):
        first = prompter.ask_valid(
            f"Host {number}: user's first name",
            lambda text: NAME_PATTERN.fullmatch(text) is not None,
            "Use letters, digits, spaces or '-'",
        )
        last = prompter.ask_valid(
            f"Host {number}: user's last name",
            lambda text: NAME_PATTERN.fullmatch(text) is not None,
            "Use letters, digits, spaces or '-'",
        )
        upn = prompter.ask_valid(
            f"Host {number}: user principal name",
            lambda text: UPN_PATTERN.fullmatch(text) is not None,
            "Enter a sign-in name such as jane.doe@contoso.com",
        )
        request = SessionHostRequest(first_name=first, last_name=last, upn=upn)
        vm_name = request.vm_name(prefix).lower()
        if vm_name in seen:
            prompter.say(f"[WARN] VM name {vm_name} is already used in this batch; only the first deployment will create it")
        seen.add(vm_name)
        requests.append(request)
    return requests


def choose_group_roles(prompter: Prompter) -> tuple:
    index = prompter.choose(
        "Add the users to which directory groups?",
        [label for label, _ in GROUP_ROLE_CHOICES],
    )
    return GROUP_ROLE_CHOICES[index][1]


def resolve_network(arm, prompter: Prompter, config: DeploymentConfig, options: SessionHostOptions) -> tuple[str, str]:
    """Settle the vnet/subnet the hosts join."""
    if options.discover_network:
        try:
            networks = [n for n in arm.list_virtual_networks(config.subscription_id, config.resource_group) if n["subnets"]]
        except AzureApiError as e:
            status("WARN", f"Could not list virtual networks in {config.resource_group}: {e}", logging.WARNING)
            networks = []
        for network in networks:
            if network["name"] == config.vnet_name and config.subnet_name in network["subnets"]:
                status("OK", f"Using network {config.vnet_name}/{config.subnet_name}")
                return config.vnet_name, config.subnet_name

        if networks:
            if len(networks) == 1:
                network = networks[0]
            else:
                network = networks[prompter.choose("Select the virtual network", [n["name"] for n in networks])]
            subnets = network["subnets"]
            subnet = subnets[0] if len(subnets) == 1 else subnets[prompter.choose("Select the subnet", subnets)]
            status("OK", f"Using network {network['name']}/{subnet}")
            return network["name"], subnet

        status("WARN", f"No virtual networks found in {config.resource_group}", logging.WARNING)

    vnet = prompter.ask_valid("Virtual network name", bool, "A network name is required", default=config.vnet_name)
    subnet = prompter.ask_valid("Subnet name", bool, "A subnet name is required", default=config.subnet_name)
    return vnet, subnet


def resolve_admin_credentials(
    prompter: Prompter,
    options: SessionHostOptions,
    secret_store=None,
) -> tuple[str, str]:
    """Local administrator credentials for the new VMs."""
    if options.credential_source == "keyvault":
        try:
            username = secret_store.get_secret(options.admin_username_secret)
            password = secret_store.get_secret(options.admin_password_secret)
        except AzureApiError as e:
            raise SessionHostError(f"Could not read admin credentials from {secret_store.vault_url}: {e}") from e
        if not username or not password:
            raise SessionHostError(
                f"Secrets {options.admin_username_secret}/{options.admin_password_secret} "
                f"not found in {secret_store.vault_url}"
            )
        status("OK", f"Admin credentials read from {secret_store.vault_url}")
        return username, password

    username = prompter.ask_valid(
        "Local administrator user name",
        lambda text: ADMIN_USERNAME_PATTERN.fullmatch(text) is not None and text.lower() not in RESERVED_ADMIN_NAMES,
        "Use 1-20 letters, digits, '.', '_' or '-' (reserved names such as 'admin' are not allowed)",
    )
    password = prompter.secret_twice("Local administrator password")
    return username, password


def print_summary(results: Sequence[HostResult]) -> None:
    print("\n" + "=" * 60)
    print("Session host summary")
    print("=" * 60)
    for result in results:
        print(
            f"  {result.vm_name:<16} {result.status.value:<15} "
            f"assigned={'yes' if result.assigned else 'no':<4} "
            f"shutdown={'yes' if result.auto_shutdown else 'no'}"
        )
        for error in result.errors:
            print(f"      - {error}")
    logger.info(
        "Batch finished: %s",
        ", ".join(f"{r.vm_name}={r.status.value}" for r in results),
    )


def run_session_host_workflow(
    config: DeploymentConfig,
    arm,
    avd,
    directory,
    prompter: Prompter,
    options: SessionHostOptions | None = None,
    template_dir=None,
    secret_store=None,
) -> list[HostResult]:
    """
    Interactive session host run against the deployment described by *config*.

    Values missing from *config* (host pool, prefix, network) are asked for.

    Raises:
        SessionHostError: Host pool, template or admin credentials unavailable
    """
    options = options or SessionHostOptions()

    host_pool = config.host_pool or prompter.ask_valid("Host pool name", bool, "A host pool name is required")
    try:
        pool = avd.get_host_pool(config.subscription_id, config.resource_group, host_pool)
    except AzureApiError as e:
        raise SessionHostError(f"Could not read host pool {host_pool}: {e}") from e
    if pool is None:
        raise SessionHostError(f"Host pool {host_pool} not found in {config.resource_group}")

    prefix = config.prefix or prompter.ask_valid("Naming prefix for VM names", bool, "A prefix is required")
    vnet, subnet = resolve_network(arm, prompter, config, options)

    try:
        template_path = select_template(
            prompter,
            template_dir or TEMPLATE_DIR,
            SESSION_HOST_TEMPLATE_KEYWORD,
            exclude=config.template_path or None,
        )
    except FileNotFoundError as e:
        raise SessionHostError(str(e)) from e

    if options.credential_source == "keyvault" and secret_store is None:
        try:
            secret_store = KeyVaultSecretStore(credential=arm.credential)
        except ValueError as e:
            raise SessionHostError(str(e)) from e
    username, password = resolve_admin_credentials(prompter, options, secret_store)

    target = HostPoolTarget(
        subscription_id=config.subscription_id,
        resource_group=config.resource_group,
        location=config.location,
        host_pool=host_pool,
        prefix=prefix,
        template_path=template_path,
        vnet_name=vnet,
        subnet_name=subnet,
        admin_username=username,
        admin_password=password,
        standard_group=config.standard_group,
        elevated_group=config.elevated_group,
        group_roles=choose_group_roles(prompter),
    )
    host_requests = collect_requests(prompter, prefix)

    results = SessionHostManager(arm, avd, directory, options).provision_hosts(host_requests, target)
    print_summary(results)
    return results
