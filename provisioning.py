"""
PAW core provisioning workflow.

Sequences discovery, creation and configuration across Resource Manager,
the identity directory and the AVD control plane.  Each stage reads and
writes an explicit ``DeploymentContext`` and returns a ``Navigation`` so
the operator can step back to the previous decision.  Every stage is safe
to re-run against a partially provisioned environment.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from azure.core.exceptions import ClientAuthenticationError

from arm_client import DeploymentError
from azure_rest import AzureApiError
from config_store import DeploymentConfig, DirectoryGroupRef, GroupRole, save_config
from environment_check import check_environment
from graph_client import is_platform_managed_policy
from prompts import Navigation, Prompter, PromptAbort
from run_log import configure_run_logging, status
from selection import (
    GROUP_FIELDS,
    ROLE_LABELS,
    TEMPLATE_DIR,
    ReuseMode,
    ask_reuse_mode,
    load_prior_config,
    resolve_config,
    resolve_storage_account_name,
    select_group,
    select_template,
    validate_storage_account_name,
)
from session_hosts import SessionHostError, SessionHostOptions, run_session_host_workflow

logger = logging.getLogger(__name__)

CORE_TEMPLATE_KEYWORD = "core"
DEFAULT_LOCATION = "eastus"
DEFAULT_VNET_RANGE = "10.0.0.0/16"
DEFAULT_SUBNET_RANGE = "10.0.0.0/24"

PREFIX_PATTERN = re.compile(r"[A-Za-z0-9]{2,6}")
RESOURCE_GROUP_PATTERN = re.compile(r"[-\w.()]{0,89}[-\w()]")

STORAGE_APP_PREFIX = "[Storage Account]"
STORAGE_APP_NAME = "[Storage Account] {storage}.file.core.windows.net"

DESKTOP_USER_ROLE = "Desktop Virtualization User"
RESOURCE_GROUP_ROLES = [
    (GroupRole.STANDARD, "Virtual Machine User Login"),
    (GroupRole.ELEVATED, "Virtual Machine Administrator Login"),
    (GroupRole.STANDARD, DESKTOP_USER_ROLE),
    (GroupRole.ELEVATED, DESKTOP_USER_ROLE),
]

# core template output -> config field
DEPLOYMENT_OUTPUT_FIELDS = {
    "hostPoolName": "host_pool",
    "workspaceName": "workspace",
    "appGroupName": "app_group",
    "vnetName": "vnet_name",
    "subnetName": "subnet_name",
}


class FatalProvisioningError(Exception):
    """The run cannot continue (no subscriptions, failed deployment, missing prerequisite)."""


class Stage(Enum):
    ENVIRONMENT_CHECK = "EnvironmentCheck"
    AUTHENTICATE = "Authenticate"
    LOAD_CONFIG = "LoadConfig"
    SELECT_SUBSCRIPTION = "SelectSubscription"
    RESOLVE_RESOURCE_GROUP = "ResolveResourceGroup"
    RESOLVE_DIRECTORY_GROUPS = "ResolveDirectoryGroups"
    COLLECT_PARAMETERS = "CollectParameters"
    PERSIST_CONFIG = "PersistConfig"
    DEPLOY = "Deploy"
    POST_DEPLOY_CONFIGURE = "PostDeployConfigure"
    CONDITIONAL_ACCESS_EXCLUSION = "ConditionalAccessExclusion"
    SESSION_HOST_HANDOFF = "OptionalSessionHostHandoff"
    SESSION_HOSTS = "SessionHosts"


CORE_STAGES = [
    Stage.ENVIRONMENT_CHECK,
    Stage.AUTHENTICATE,
    Stage.LOAD_CONFIG,
    Stage.SELECT_SUBSCRIPTION,
    Stage.RESOLVE_RESOURCE_GROUP,
    Stage.RESOLVE_DIRECTORY_GROUPS,
    Stage.COLLECT_PARAMETERS,
    Stage.PERSIST_CONFIG,
    Stage.DEPLOY,
    Stage.POST_DEPLOY_CONFIGURE,
    Stage.CONDITIONAL_ACCESS_EXCLUSION,
    Stage.SESSION_HOST_HANDOFF,
]

SESSION_HOST_STAGES = [
    Stage.ENVIRONMENT_CHECK,
    Stage.AUTHENTICATE,
    Stage.LOAD_CONFIG,
    Stage.SELECT_SUBSCRIPTION,
    Stage.RESOLVE_RESOURCE_GROUP,
    Stage.RESOLVE_DIRECTORY_GROUPS,
    Stage.SESSION_HOSTS,
]

# Config fields each operator-driven stage produces; cleared when the
# operator steps back into that stage so it asks again.
STAGE_OUTPUTS = {
    Stage.SELECT_SUBSCRIPTION: ("tenant_id", "subscription_id", "subscription_name"),
    Stage.RESOLVE_RESOURCE_GROUP: ("resource_group", "location"),
    Stage.RESOLVE_DIRECTORY_GROUPS: ("standard_group", "elevated_group"),
}


@dataclass
class DeploymentContext:
    """State threaded through the stages of one run."""

    config: DeploymentConfig = field(default_factory=DeploymentConfig)
    prior: Optional[DeploymentConfig] = None
    reuse_mode: Optional[ReuseMode] = None
    excluded_template: str = ""
    outputs: Dict[str, Any] = field(default_factory=dict)
    storage_app_id: str = ""
    assignments_created: int = 0
    policies_updated: int = 0
    session_host_results: List[Any] = field(default_factory=list)

    def clear_stage(self, stage: Stage) -> None:
        for name in STAGE_OUTPUTS.get(stage, ()):
            setattr(self.config, name, None if name in GROUP_FIELDS else "")


class ProvisioningOrchestrator:
    """
    Runs the core PAW workflow (or the session-host-only variant).

    Args:
        arm: ``ResourceManagerClient``
        directory: ``DirectoryClient``
        avd: ``VirtualDesktopClient``
        prompter: Interactive surface
        config_path: Saved configuration file (defaults to ``PAW_CONFIG_FILE``)
        template_dir: Directory holding the ARM templates
        auto_install: Let the environment check pip-install missing libraries
        environment_checker: Replaces ``check_environment`` (tests)
        session_host_options: Variant points for the session host workflow
        session_host_runner: Replaces the session host workflow; called with
            the ``DeploymentConfig`` and returns the host results
        log_dir: When set, the session host stage switches logging to its own file
    """

    def __init__(
        self,
        arm,
        directory,
        avd,
        prompter: Prompter,
        config_path=None,
        template_dir=None,
        auto_install: bool = True,
        environment_checker: Optional[Callable[..., None]] = None,
        session_host_options: Optional[SessionHostOptions] = None,
        session_host_runner: Optional[Callable[[DeploymentConfig], List[Any]]] = None,
        log_dir=None,
    ):
        self.arm = arm
        self.directory = directory
        self.avd = avd
        self.prompter = prompter
        self.config_path = config_path
        self.template_dir = Path(template_dir or TEMPLATE_DIR)
        self.auto_install = auto_install
        self.environment_checker = environment_checker or check_environment
        self.session_host_options = session_host_options or SessionHostOptions()
        self.session_host_runner = session_host_runner or self._run_session_host_workflow
        self.log_dir = log_dir
        self.context = DeploymentContext()

        self._handlers = {
            Stage.ENVIRONMENT_CHECK: self._environment_check,
            Stage.AUTHENTICATE: self._authenticate,
            Stage.LOAD_CONFIG: self._load_config,
            Stage.SELECT_SUBSCRIPTION: self._select_subscription,
            Stage.RESOLVE_RESOURCE_GROUP: self._resolve_resource_group,
            Stage.RESOLVE_DIRECTORY_GROUPS: self._resolve_directory_groups,
            Stage.COLLECT_PARAMETERS: self._collect_parameters,
            Stage.PERSIST_CONFIG: self._persist_config,
            Stage.DEPLOY: self._deploy,
            Stage.POST_DEPLOY_CONFIGURE: self._post_deploy_configure,
            Stage.CONDITIONAL_ACCESS_EXCLUSION: self._conditional_access_exclusion,
            Stage.SESSION_HOST_HANDOFF: self._session_host_handoff,
            Stage.SESSION_HOSTS: self._session_hosts,
        }

    # -- driver --------------------------------------------------------------

    def run(self) -> bool:
        """Run the full core workflow.  Returns False if the operator cancelled."""
        return self._run_stages(CORE_STAGES)

    def run_session_hosts_only(self) -> bool:
        """Add session hosts to an existing deployment."""
        return self._run_stages(SESSION_HOST_STAGES)

    def _run_stages(self, stages: List[Stage]) -> bool:
        index = 0
        while index < len(stages):
            stage = stages[index]
            logger.info("Stage %s", stage.value)
            try:
                navigation = self._handlers[stage]()
            except PromptAbort as e:
                raise FatalProvisioningError(f"{stage.value}: {e}") from e
            except (AzureApiError, ClientAuthenticationError) as e:
                raise FatalProvisioningError(f"{stage.value}: {e}") from e

            if navigation is Navigation.CANCEL:
                status("WARN", "Deployment cancelled by operator", logging.WARNING)
                return False

            if navigation is Navigation.BACK:
                index = self._previous_stage(stages, index)
                self.context.clear_stage(stages[index])
                logger.info("Back to stage %s", stages[index].value)
                continue

            index += 1
        return True

    @staticmethod
    def _previous_stage(stages: List[Stage], index: int) -> int:
        """Nearest earlier stage that asks the operator something, else *index*."""
        for candidate in range(index - 1, -1, -1):
            if stages[candidate] in STAGE_OUTPUTS:
                return candidate
        return index

    # -- stages ----------------------------------------------------------------

    def _environment_check(self) -> Navigation:
        self.environment_checker(auto_install=self.auto_install)
        status("OK", "Required libraries and Azure CLI found")
        return Navigation.CONTINUE

    def _authenticate(self) -> Navigation:
        for client in (self.arm, self.directory, self.avd):
            try:
                logged_in = client.ensure_session()
            except ClientAuthenticationError as e:
                raise FatalProvisioningError(f"{client.service_name} sign-in failed: {e}") from e
            state = "signed in" if logged_in else "existing session reused"
            status("OK", f"{client.service_name}: {state}")
        return Navigation.CONTINUE

    def _load_config(self) -> Navigation:
        ctx = self.context
        ctx.prior = load_prior_config(self.config_path)
        if ctx.prior is None:
            ctx.reuse_mode = ReuseMode.IGNORE
            ctx.config = DeploymentConfig()
            status("OK", "No saved configuration, collecting values interactively")
            return Navigation.CONTINUE

        ctx.reuse_mode = ask_reuse_mode(self.prompter, ctx.prior)
        ctx.config = resolve_config(ctx.prior, ctx.reuse_mode, self.prompter)
        if ctx.reuse_mode is ReuseMode.OVERRIDE:
            ctx.excluded_template = ctx.prior.template_path
        logger.info("Saved configuration loaded (mode=%s)", ctx.reuse_mode.value)
        return Navigation.CONTINUE

    def _select_subscription(self) -> Navigation:
        config = self.context.config
        subscriptions = self.arm.list_subscriptions()
        if not subscriptions:
            raise FatalProvisioningError("No accessible subscriptions for the signed-in account")

        chosen = next((s for s in subscriptions if s.id == config.subscription_id), None)
        if chosen is not None:
            status("OK", f"Using saved subscription {chosen.name} ({chosen.id})")
        else:
            if config.subscription_id:
                status("WARN", f"Saved subscription {config.subscription_id} is not accessible", logging.WARNING)
            index = self.prompter.choose(
                "Select a subscription",
                [f"{s.name} ({s.id})" for s in subscriptions],
            )
            chosen = subscriptions[index]
            status("OK", f"Subscription: {chosen.name}")

        config.subscription_id = chosen.id
        config.subscription_name = chosen.name
        config.tenant_id = chosen.tenant_id or config.tenant_id
        return Navigation.CONTINUE

    def _resolve_resource_group(self) -> Navigation:
        config = self.context.config
        if config.resource_group:
            existing = self.arm.get_resource_group(config.subscription_id, config.resource_group)
            if existing is not None:
                config.location = existing.location
                status("OK", f"Using saved resource group {existing.name} ({existing.location})")
                return Navigation.CONTINUE
            status("WARN", f"Saved resource group {config.resource_group} no longer exists", logging.WARNING)
            config.resource_group = ""

        for _ in range(self.prompter.max_attempts):
            choice = self.prompter.choose(
                "Resource group",
                ["Use an existing resource group", "Create a new resource group"],
                allow_back=True,
            )
            if choice is None:
                return Navigation.BACK

            if choice == 0:
                group = self._pick_resource_group()
            else:
                group = self._create_resource_group()
            if group is None:
                continue

            config.resource_group = group.name
            config.location = group.location
            status("OK", f"Resource group: {group.name} ({group.location})")
            return Navigation.CONTINUE

        raise PromptAbort(f"No resource group chosen after {self.prompter.max_attempts} attempts")

    def _pick_resource_group(self):
        try:
            groups = self.arm.list_resource_groups(self.context.config.subscription_id)
        except AzureApiError as e:
            status("WARN", f"Could not list resource groups: {e}", logging.WARNING)
            return None
        if not groups:
            self.prompter.say("[WARN] The subscription has no resource groups yet")
            return None
        index = self.prompter.choose(
            "Select a resource group",
            [f"{g.name} ({g.location})" for g in groups],
            allow_back=True,
        )
        return None if index is None else groups[index]

    def _create_resource_group(self):
        subscription_id = self.context.config.subscription_id
        name = self.prompter.ask_valid(
            "Name for the new resource group",
            lambda text: RESOURCE_GROUP_PATTERN.fullmatch(text) is not None,
            "Use up to 90 letters, digits, '-', '_', '.', '(' or ')', not ending in '.'",
        )
        try:
            if self.arm.get_resource_group(subscription_id, name) is not None:
                self.prompter.say(f"[WARN] Resource group '{name}' already exists, choose another name")
                return None
            locations = {loc.lower() for loc in self.arm.list_locations(subscription_id)}
        except AzureApiError as e:
            status("WARN", f"Could not check resource group {name}: {e}", logging.WARNING)
            return None

        location = self.prompter.ask_valid(
            "Region",
            lambda text: not locations or text.lower() in locations,
            "Unknown region name (for example: eastus, westeurope)",
            default=DEFAULT_LOCATION,
        )
        try:
            return self.arm.create_resource_group(subscription_id, name, location.lower())
        except AzureApiError as e:
            status("ERROR", f"Resource group {name} was not created: {e}", logging.ERROR)
            return None

    def _resolve_directory_groups(self) -> Navigation:
        config = self.context.config
        for role in (GroupRole.STANDARD, GroupRole.ELEVATED):
            label = ROLE_LABELS[role]
            saved = config.group_for(role)
            if saved is not None:
                try:
                    group = self.directory.get_group(saved.object_id)
                except AzureApiError as e:
                    status("WARN", f"Could not read saved {label.lower()} group {saved.object_id}: {e}", logging.WARNING)
                else:
                    if group is not None:
                        config.set_group(DirectoryGroupRef(group.object_id, group.display_name, role))
                        status("OK", f"Using saved {label.lower()} group {group.display_name}")
                        continue
                    status("WARN", f"Saved {label.lower()} group {saved.object_id} no longer exists", logging.WARNING)

            ref = select_group(self.directory, self.prompter, role)
            if ref is None:
                return Navigation.BACK
            config.set_group(ref)
        return Navigation.CONTINUE

    def _collect_parameters(self) -> Navigation:
        ctx = self.context
        config = ctx.config

        if not PREFIX_PATTERN.fullmatch(config.prefix or ""):
            config.prefix = self.prompter.ask_valid(
                "Naming prefix (2-6 letters or digits)",
                lambda text: PREFIX_PATTERN.fullmatch(text) is not None,
                "The prefix must be 2-6 letters or digits",
            )

        config.vnet_address_range = self._address_range(
            config.vnet_address_range, "Virtual network address range", DEFAULT_VNET_RANGE
        )
        config.subnet_address_range = self._address_range(
            config.subnet_address_range,
            "Subnet address range",
            DEFAULT_SUBNET_RANGE,
            within=ipaddress.ip_network(config.vnet_address_range),
        )

        if validate_storage_account_name(config.storage_account) and self._storage_account_exists(config):
            status("OK", f"Storage account {config.storage_account} already exists in {config.resource_group}")
        else:
            config.storage_account = resolve_storage_account_name(
                self.arm,
                config.subscription_id,
                self.prompter,
                initial=config.storage_account or None,
            )

        if config.template_path and Path(config.template_path).is_file():
            status("OK", f"Using saved template {config.template_path}")
        else:
            try:
                config.template_path = select_template(
                    self.prompter,
                    self.template_dir,
                    CORE_TEMPLATE_KEYWORD,
                    exclude=ctx.excluded_template or None,
                )
            except FileNotFoundError as e:
                raise FatalProvisioningError(str(e)) from e

        config.fill_derived_names()
        return Navigation.CONTINUE

    def _storage_account_exists(self, config: DeploymentConfig) -> bool:
        try:
            return self.arm.storage_account_exists(config.subscription_id, config.resource_group, config.storage_account)
        except AzureApiError as e:
            status("WARN", f"Could not check storage account {config.storage_account}: {e}", logging.WARNING)
            return False

    def _address_range(self, current: str, label: str, default: str, within=None) -> str:
        def valid(text: str) -> bool:
            try:
                network = ipaddress.ip_network(text, strict=True)
            except ValueError:
                return False
            if within is not None:
                return network.version == within.version and network.subnet_of(within)
            return True

        if current and valid(current):
            return current

        error = "Enter a network in CIDR form (for example 10.0.0.0/16)"
        if within is not None:
            error = f"Enter a CIDR range inside {within}"
        return self.prompter.ask_valid(label, valid, error, default=default)

    def _persist_config(self) -> Navigation:
        path = save_config(self.context.config, self.config_path)
        status("OK", f"Configuration saved to {path}")
        return Navigation.CONTINUE

    def _deploy(self) -> Navigation:
        config = self.context.config
        parameters = {
            "prefix": config.prefix,
            "vnetAddressRange": config.vnet_address_range,
            "subnetAddressRange": config.subnet_address_range,
            "storageAccountName": config.storage_account,
            "standardGroupId": config.standard_group.object_id,
            "elevatedGroupId": config.elevated_group.object_id,
        }
        status("DEPLOY", f"Deploying {Path(config.template_path).name} to {config.resource_group} (this can take a while)")
        try:
            outputs = self.arm.deploy_template_file(
                config.subscription_id,
                config.resource_group,
                f"{config.prefix}-core",
                config.template_path,
                parameters,
            )
        except (AzureApiError, DeploymentError, OSError, ValueError) as e:
            status("ERROR", f"Core deployment failed: {e}", logging.ERROR)
            raise FatalProvisioningError(f"Core deployment failed: {e}") from e

        self.context.outputs = outputs
        changed = False
        for output, attr in DEPLOYMENT_OUTPUT_FIELDS.items():
            value = outputs.get(output)
            if value and str(value) != getattr(config, attr):
                setattr(config, attr, str(value))
                changed = True
        if changed:
            save_config(config, self.config_path)

        status("OK", "Core infrastructure deployed")
        return Navigation.CONTINUE

    def _post_deploy_configure(self) -> Navigation:
        config = self.context.config
        scope = self.arm.resource_group_scope(config.subscription_id, config.resource_group)
        for role, role_name in RESOURCE_GROUP_ROLES:
            self._assign_role(scope, role, role_name)

        app_group = self.avd.get_application_group(config.subscription_id, config.resource_group, config.app_group)
        if app_group is None:
            raise FatalProvisioningError(
                f"Application group {config.app_group} not found in {config.resource_group}"
            )
        for role in (GroupRole.STANDARD, GroupRole.ELEVATED):
            self._assign_role(app_group["id"], role, DESKTOP_USER_ROLE)

        friendly_name = self.prompter.ask("Desktop display name shown to users (blank to skip)")
        if friendly_name:
            try:
                self.avd.update_desktop_friendly_name(
                    config.subscription_id, config.resource_group, config.app_group, friendly_name
                )
                status("OK", f"Desktop display name set to '{friendly_name}'")
            except AzureApiError as e:
                status("WARN", f"Could not set desktop display name: {e}", logging.WARNING)
        return Navigation.CONTINUE

    def _assign_role(self, scope: str, role: GroupRole, role_name: str) -> None:
        group = self.context.config.group_for(role)
        try:
            created = self.arm.ensure_role_assignment(scope, group.object_id, role_name)
        except AzureApiError as e:
            status("WARN", f"Could not assign '{role_name}' to {group.display_name}: {e}", logging.WARNING)
            return
        if created:
            self.context.assignments_created += 1
            status("OK", f"Assigned '{role_name}' to {group.display_name}")
        else:
            status("OK", f"'{role_name}' already assigned to {group.display_name}")

    def _conditional_access_exclusion(self) -> Navigation:
        ctx = self.context
        application = self._storage_application()
        if application is None:
            status("WARN", "No storage account application found, skipping conditional access exclusion", logging.WARNING)
            return Navigation.CONTINUE
        ctx.storage_app_id = application["appId"]

        try:
            policies = self.directory.list_conditional_access_policies()
        except AzureApiError as e:
            status("WARN", f"Could not list conditional access policies: {e}", logging.WARNING)
            return Navigation.CONTINUE

        for policy in policies:
            if is_platform_managed_policy(policy):
                logger.info("Skipping platform-managed policy %s", policy.get("displayName"))
                continue
            try:
                if self.directory.add_policy_exclusion(policy, ctx.storage_app_id):
                    ctx.policies_updated += 1
            except AzureApiError as e:
                status("WARN", f"Could not update policy '{policy.get('displayName')}': {e}", logging.WARNING)

        status("OK", f"Storage application excluded from {ctx.policies_updated} conditional access policies")
        return Navigation.CONTINUE

    def _storage_application(self) -> Optional[Dict[str, Any]]:
        expected = STORAGE_APP_NAME.format(storage=self.context.config.storage_account).lower()
        try:
            candidates = self.directory.find_applications(STORAGE_APP_PREFIX)
        except AzureApiError as e:
            status("WARN", f"Could not search applications: {e}", logging.WARNING)
            return None

        exact = [app for app in candidates if app.get("displayName", "").lower() == expected]
        if len(exact) == 1:
            return exact[0]

        choices = exact or candidates
        if not choices:
            return None
        if not exact:
            self.prompter.say(f"[WARN] No application named '{STORAGE_APP_NAME.format(storage=self.context.config.storage_account)}'")
        index = self.prompter.choose(
            "Select the storage account application",
            [f"{app.get('displayName')} ({app.get('appId')})" for app in choices],
        )
        return choices[index]

    def _session_host_handoff(self) -> Navigation:
        if not self.prompter.confirm("Deploy session hosts now?", default=False):
            status("OK", "Core deployment finished")
            return Navigation.CONTINUE
        return self._session_hosts()

    def _session_hosts(self) -> Navigation:
        config = self.context.config
        if self.context.reuse_mode is ReuseMode.OVERRIDE:
            save_config(config, self.config_path)
        if self.log_dir is not None:
            configure_run_logging("sessionhost", self.log_dir)
        try:
            self.context.session_host_results = self.session_host_runner(config)
        except SessionHostError as e:
            raise FatalProvisioningError(str(e)) from e
        return Navigation.CONTINUE

    def _run_session_host_workflow(self, config: DeploymentConfig) -> List[Any]:
        return run_session_host_workflow(
            config,
            self.arm,
            self.avd,
            self.directory,
            self.prompter,
            options=self.session_host_options,
            template_dir=self.template_dir,
        )
