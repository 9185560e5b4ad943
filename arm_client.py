"""
Azure Resource Manager client for PAW provisioning.
Handles subscriptions, resource groups, role assignments, template
deployments and the per-VM settings the session host workflow needs.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List

from azure_rest import AzureRestClient, AzureApiError, ARM_ENDPOINT, ARM_SCOPE

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_API = "2022-12-01"
RESOURCE_GROUPS_API = "2021-04-01"
DEPLOYMENTS_API = "2021-04-01"
AUTHORIZATION_API = "2022-04-01"
STORAGE_API = "2023-01-01"
COMPUTE_API = "2023-09-01"
NETWORK_API = "2023-09-01"
DEVTESTLAB_API = "2018-09-15"

DEPLOYMENT_POLL_SECONDS = 15
DEPLOYMENT_TIMEOUT_MINUTES = 90


class DeploymentError(Exception):
    """A template deployment finished in Failed/Canceled state or timed out."""


@dataclass
class Subscription:
    id: str
    name: str
    tenant_id: str


@dataclass
class ResourceGroup:
    name: str
    location: str


class ResourceManagerClient(AzureRestClient):
    """Thin typed wrapper over the ARM REST API."""

    service_name = "Resource Manager"

    def __init__(self, credential=None, **kwargs):
        super().__init__(ARM_SCOPE, credential=credential, **kwargs)
        self._role_definition_cache: Dict[str, str] = {}

    @staticmethod
    def resource_group_scope(subscription_id: str, resource_group: str) -> str:
        return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"

    # -- subscriptions / resource groups -----------------------------------

    def list_subscriptions(self) -> List[Subscription]:
        """List subscriptions visible to the signed-in identity."""
        items = self._get_all(
            f"{ARM_ENDPOINT}/subscriptions",
            {"api-version": SUBSCRIPTIONS_API},
        )
        return [
            Subscription(
                id=item.get("subscriptionId", ""),
                name=item.get("displayName", ""),
                tenant_id=item.get("tenantId", ""),
            )
            for item in items
            if item.get("state", "Enabled") == "Enabled"
        ]

    def list_locations(self, subscription_id: str) -> List[str]:
        items = self._get_all(
            f"{ARM_ENDPOINT}/subscriptions/{subscription_id}/locations",
            {"api-version": SUBSCRIPTIONS_API},
        )
        return [item["name"] for item in items if item.get("name")]

    def list_resource_groups(self, subscription_id: str) -> List[ResourceGroup]:
        items = self._get_all(
            f"{ARM_ENDPOINT}/subscriptions/{subscription_id}/resourcegroups",
            {"api-version": RESOURCE_GROUPS_API},
        )
        return [ResourceGroup(name=item["name"], location=item.get("location", "")) for item in items]

    def get_resource_group(self, subscription_id: str, name: str) -> Optional[ResourceGroup]:
        data = self._get(
            f"{ARM_ENDPOINT}/subscriptions/{subscription_id}/resourcegroups/{name}",
            {"api-version": RESOURCE_GROUPS_API},
            allow_404=True,
        )
        if data is None:
            return None
        return ResourceGroup(name=data["name"], location=data.get("location", ""))

    def create_resource_group(self, subscription_id: str, name: str, location: str) -> ResourceGroup:
        response = self._send(
            "PUT",
            f"{ARM_ENDPOINT}/subscriptions/{subscription_id}/resourcegroups/{name}",
            {"location": location},
            {"api-version": RESOURCE_GROUPS_API},
        )
        data = self._json_or_empty(response)
        logger.info("Resource group %s created in %s", name, location)
        return ResourceGroup(name=data.get("name", name), location=data.get("location", location))

    # -- role assignments --------------------------------------------------

    def get_role_definition_id(self, scope: str, role_name: str) -> str:
        """Resolve a built-in role name (e.g. ``Desktop Virtualization User``) to its id."""
        if role_name in self._role_definition_cache:
            return self._role_definition_cache[role_name]

        items = self._get_all(
            f"{ARM_ENDPOINT}{scope}/providers/Microsoft.Authorization/roleDefinitions",
            {"api-version": AUTHORIZATION_API, "$filter": f"roleName eq '{role_name}'"},
        )
        if not items:
            raise AzureApiError(f"Role definition '{role_name}' not found at {scope}")

        role_id = items[0]["id"]
        self._role_definition_cache[role_name] = role_id
        return role_id

    def list_role_assignments(self, scope: str, principal_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"api-version": AUTHORIZATION_API}
        if principal_id:
            params["$filter"] = f"principalId eq '{principal_id}'"
        return self._get_all(
            f"{ARM_ENDPOINT}{scope}/providers/Microsoft.Authorization/roleAssignments",
            params,
        )

    def ensure_role_assignment(
        self,
        scope: str,
        principal_id: str,
        role_name: str,
        principal_type: str = "Group",
    ) -> bool:
        """
        Assign *role_name* to *principal_id* at *scope* unless already assigned.

        The (principal, role, scope) triple is the identity of an assignment:
        finding it already present is a no-op, not an error.

        Returns:
            True if a new assignment was created, False if it already existed
        """
        role_definition_id = self.get_role_definition_id(scope, role_name)
        role_guid = _last_segment(role_definition_id)

        for assignment in self.list_role_assignments(scope, principal_id):
            props = assignment.get("properties", {})
            if (
                _last_segment(props.get("roleDefinitionId", "")) == role_guid
                and props.get("scope", "").lower() == scope.lower()
                and props.get("principalId", principal_id) == principal_id
            ):
                logger.info("Role '%s' already assigned to %s at %s", role_name, principal_id, scope)
                return False

        response = self._send(
            "PUT",
            f"{ARM_ENDPOINT}{scope}/providers/Microsoft.Authorization/roleAssignments/{uuid.uuid4()}",
            {
                "properties": {
                    "roleDefinitionId": role_definition_id,
                    "principalId": principal_id,
                    "principalType": principal_type,
                }
            },
            {"api-version": AUTHORIZATION_API},
            accept=(409,),
        )
        if response.status_code == 409:
            # RoleAssignmentExists: created between our list and put
            logger.info("Role '%s' for %s at %s reported as existing", role_name, principal_id, scope)
            return False

        logger.info("Assigned role '%s' to %s at %s", role_name, principal_id, scope)
        return True

    # -- storage -----------------------------------------------------------

    def check_storage_name_available(self, subscription_id: str, name: str) -> bool:
        """Ask the storage provider whether *name* is globally free."""
        response = self._send(
            "POST",
            f"{ARM_ENDPOINT}/subscriptions/{subscription_id}/providers/Microsoft.Storage/checkNameAvailability",
            {"name": name, "type": "Microsoft.Storage/storageAccounts"},
            {"api-version": STORAGE_API},
        )
        return bool(response.json().get("nameAvailable"))

    def storage_account_exists(self, subscription_id: str, resource_group: str, name: str) -> bool:
        data = self._get(
            f"{ARM_ENDPOINT}{self.resource_group_scope(subscription_id, resource_group)}"
            f"/providers/Microsoft.Storage/storageAccounts/{name}",
            {"api-version": STORAGE_API},
            allow_404=True,
        )
        return data is not None

    # -- compute / network -------------------------------------------------

    def get_virtual_machine(self, subscription_id: str, resource_group: str, vm_name: str) -> Optional[Dict[str, Any]]:
        return self._get(
            f"{ARM_ENDPOINT}{self.resource_group_scope(subscription_id, resource_group)}"
            f"/providers/Microsoft.Compute/virtualMachines/{vm_name}",
            {"api-version": COMPUTE_API},
            allow_404=True,
        )

    def vm_exists(self, subscription_id: str, resource_group: str, vm_name: str) -> bool:
        return self.get_virtual_machine(subscription_id, resource_group, vm_name) is not None

    def list_virtual_networks(self, subscription_id: str, resource_group: str) -> List[Dict[str, Any]]:
        """
        List virtual networks in a resource group.

        Returns:
            List of ``{"name": ..., "subnets": [names]}`` dicts
        """
        items = self._get_all(
            f"{ARM_ENDPOINT}{self.resource_group_scope(subscription_id, resource_group)}"
            f"/providers/Microsoft.Network/virtualNetworks",
            {"api-version": NETWORK_API},
        )
        return [
            {
                "name": item["name"],
                "subnets": [s["name"] for s in item.get("properties", {}).get("subnets", [])],
            }
            for item in items
        ]

    def set_auto_shutdown(
        self,
        subscription_id: str,
        resource_group: str,
        vm_name: str,
        location: str,
        shutdown_time: str,
        time_zone: str,
        notify_email: str,
    ) -> None:
        """Create or update the daily shutdown schedule of a VM."""
        scope = self.resource_group_scope(subscription_id, resource_group)
        body = {
            "location": location,
            "properties": {
                "status": "Enabled",
                "taskType": "ComputeVmShutdownTask",
                "dailyRecurrence": {"time": shutdown_time},
                "timeZoneId": time_zone,
                "targetResourceId": f"{scope}/providers/Microsoft.Compute/virtualMachines/{vm_name}",
                "notificationSettings": {
                    "status": "Enabled",
                    "timeInMinutes": 30,
                    "emailRecipient": notify_email,
                    "notificationLocale": "en",
                },
            },
        }
        self._send(
            "PUT",
            f"{ARM_ENDPOINT}{scope}/providers/Microsoft.DevTestLab/schedules/shutdown-computevm-{vm_name}",
            body,
            {"api-version": DEVTESTLAB_API},
        )

    # -- template deployments ---------------------------------------------

    def deploy_template(
        self,
        subscription_id: str,
        resource_group: str,
        deployment_name: str,
        template: Dict[str, Any],
        parameters: Dict[str, Any],
        poll_seconds: int = DEPLOYMENT_POLL_SECONDS,
        timeout_minutes: int = DEPLOYMENT_TIMEOUT_MINUTES,
    ) -> Dict[str, Any]:
        """
        Deploy an ARM template in incremental mode and wait for it to finish.

        Args:
            subscription_id: Target subscription
            resource_group: Target resource group
            deployment_name: Deployment name (re-using a name updates it)
            template: Parsed template JSON
            parameters: Plain ``{name: value}`` parameter map
            poll_seconds: Delay between status checks
            timeout_minutes: Max time to wait

        Returns:
            Template outputs as a plain ``{name: value}`` map

        Raises:
            DeploymentError: Deployment failed, was canceled, or timed out
            AzureApiError: The deployment request itself was rejected
        """
        url = (
            f"{ARM_ENDPOINT}{self.resource_group_scope(subscription_id, resource_group)}"
            f"/providers/Microsoft.Resources/deployments/{deployment_name}"
        )
        body = {
            "properties": {
                "mode": "Incremental",
                "template": template,
                "parameters": {key: {"value": value} for key, value in parameters.items()},
            }
        }
        self._send("PUT", url, body, {"api-version": DEPLOYMENTS_API})
        logger.info("Deployment %s submitted to %s", deployment_name, resource_group)

        deadline = time.time() + timeout_minutes * 60
        while True:
            data = self._get(url, {"api-version": DEPLOYMENTS_API}) or {}
            props = data.get("properties", {})
            state = props.get("provisioningState", "Unknown")

            if state == "Succeeded":
                outputs = props.get("outputs") or {}
                return {key: value.get("value") for key, value in outputs.items()}
            if state in ("Failed", "Canceled"):
                error = props.get("error") or {}
                detail = error.get("message") or (json.dumps(error) if error else state)
                raise DeploymentError(f"Deployment {deployment_name} {state.lower()}: {detail}")
            if time.time() > deadline:
                raise DeploymentError(f"Deployment {deployment_name} timed out after {timeout_minutes} minutes")

            logger.debug("Deployment %s state: %s", deployment_name, state)
            time.sleep(poll_seconds)

    def deploy_template_file(
        self,
        subscription_id: str,
        resource_group: str,
        deployment_name: str,
        template_path: str,
        parameters: Dict[str, Any],
        **kwargs,
    ) -> Dict[str, Any]:
        """Load a template file from disk and deploy it (see ``deploy_template``)."""
        with open(Path(template_path), encoding="utf-8") as f:
            template = json.load(f)
        return self.deploy_template(subscription_id, resource_group, deployment_name, template, parameters, **kwargs)


def _last_segment(resource_id: str) -> str:
    return resource_id.rstrip("/").split("/")[-1].lower()
