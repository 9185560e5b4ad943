"""
Microsoft Graph client for the identity-directory side of a PAW deployment.

Covers security groups and their membership, user lookup, device tagging,
application lookup and conditional-access policy exclusions.  Every
"add" operation here is idempotent: adding something that is already present
is reported as a no-op rather than an error.

Typical usage::

    from graph_client import DirectoryClient

    directory = DirectoryClient(credential)
    groups = directory.search_groups("PAW")
    directory.add_member(groups[0].object_id, user["id"])
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from azure_rest import AzureRestClient, AzureApiError, GRAPH_ENDPOINT, GRAPH_SCOPE

logger = logging.getLogger(__name__)

# Display-name prefix of conditional-access policies the platform manages itself
PLATFORM_POLICY_PREFIX = "Microsoft-managed"

_EVENTUAL = {"ConsistencyLevel": "eventual"}


@dataclass
class DirectoryGroup:
    object_id: str
    display_name: str


def _quote(value: str) -> str:
    """Escape a value for use inside an OData string literal."""
    return value.replace("'", "''")


def is_platform_managed_policy(policy: dict[str, Any]) -> bool:
    """True for conditional-access policies authored by Microsoft, not the tenant."""
    return policy.get("displayName", "").startswith(PLATFORM_POLICY_PREFIX)


class DirectoryClient(AzureRestClient):
    """Microsoft Graph v1.0 operations used during provisioning."""

    service_name = "Microsoft Graph"

    def __init__(self, credential=None, **kwargs):
        super().__init__(GRAPH_SCOPE, credential=credential, **kwargs)

    # -- groups ------------------------------------------------------------

    def search_groups(self, substring: str) -> list[DirectoryGroup]:
        """Return security groups whose display name contains *substring*."""
        items = self._get_all(
            f"{GRAPH_ENDPOINT}/groups",
            {
                "$search": f'"displayName:{substring}"',
                "$select": "id,displayName",
                "$top": "50",
            },
            headers=_EVENTUAL,
        )
        # $search tokenizes; keep only true substring matches
        needle = substring.lower()
        return [
            DirectoryGroup(object_id=item["id"], display_name=item.get("displayName", ""))
            for item in items
            if needle in item.get("displayName", "").lower()
        ]

    def get_group(self, object_id: str) -> DirectoryGroup | None:
        data = self._get(
            f"{GRAPH_ENDPOINT}/groups/{object_id}",
            {"$select": "id,displayName"},
            allow_404=True,
        )
        if data is None:
            return None
        return DirectoryGroup(object_id=data["id"], display_name=data.get("displayName", ""))

    def create_group(self, display_name: str, description: str = "") -> DirectoryGroup:
        """Create a security (non mail-enabled) group."""
        nickname = re.sub(r"[^A-Za-z0-9]", "", display_name)[:64] or "pawgroup"
        response = self._send(
            "POST",
            f"{GRAPH_ENDPOINT}/groups",
            {
                "displayName": display_name,
                "description": description or display_name,
                "mailEnabled": False,
                "mailNickname": nickname,
                "securityEnabled": True,
            },
        )
        data = response.json()
        logger.info("Created directory group %s (%s)", display_name, data.get("id"))
        return DirectoryGroup(object_id=data["id"], display_name=data.get("displayName", display_name))

    def is_member(self, group_id: str, object_id: str) -> bool:
        """Check transitive membership of *object_id* in *group_id*."""
        response = self._send(
            "POST",
            f"{GRAPH_ENDPOINT}/directoryObjects/{object_id}/checkMemberGroups",
            {"groupIds": [group_id]},
        )
        return group_id in response.json().get("value", [])

    def add_member(self, group_id: str, object_id: str) -> bool:
        """Add *object_id* to *group_id* unless it is already a member.

        Returns
        -------
        bool
            ``True`` if the member was added, ``False`` if already present.
        """
        if self.is_member(group_id, object_id):
            return False

        response = self._send(
            "POST",
            f"{GRAPH_ENDPOINT}/groups/{group_id}/members/$ref",
            {"@odata.id": f"{GRAPH_ENDPOINT}/directoryObjects/{object_id}"},
            accept=(400,),
        )
        if response.status_code == 400:
            if "already exist" in response.text:
                return False
            raise AzureApiError.from_response(f"Add member to group {group_id}", response)

        logger.info("Added %s to group %s", object_id, group_id)
        return True

    # -- users / devices ---------------------------------------------------

    def get_user(self, upn: str) -> dict[str, Any] | None:
        """Look up a user by principal name; ``None`` if not found."""
        return self._get(
            f"{GRAPH_ENDPOINT}/users/{upn}",
            {"$select": "id,userPrincipalName,displayName"},
            allow_404=True,
        )

    def list_devices(self, name_prefix: str) -> list[dict[str, Any]]:
        return self._get_all(
            f"{GRAPH_ENDPOINT}/devices",
            {
                "$filter": f"startswith(displayName,'{_quote(name_prefix)}')",
                "$select": "id,displayName,extensionAttributes",
            },
        )

    def set_device_extension_attribute(self, device_id: str, attribute: str, value: str) -> None:
        self._send(
            "PATCH",
            f"{GRAPH_ENDPOINT}/devices/{device_id}",
            {"extensionAttributes": {attribute: value}},
        )

    # -- applications / conditional access ---------------------------------

    def find_applications(self, name_prefix: str) -> list[dict[str, Any]]:
        """Applications whose display name starts with *name_prefix*."""
        return self._get_all(
            f"{GRAPH_ENDPOINT}/applications",
            {
                "$filter": f"startswith(displayName,'{_quote(name_prefix)}')",
                "$select": "id,appId,displayName",
            },
        )

    def list_conditional_access_policies(self) -> list[dict[str, Any]]:
        return self._get_all(f"{GRAPH_ENDPOINT}/identity/conditionalAccess/policies")

    def add_policy_exclusion(self, policy: dict[str, Any], app_id: str) -> bool:
        """Add *app_id* to a policy's excluded applications.

        Set-union semantics: existing exclusions are kept, and an id that is
        already excluded is left alone.  *policy* is updated in place after a
        successful PATCH so repeated calls with the same dict stay no-ops.

        Returns
        -------
        bool
            ``True`` if the policy was changed.
        """
        conditions = policy.get("conditions") or {}
        applications = conditions.get("applications") or {}
        excluded = list(applications.get("excludeApplications") or [])
        if app_id in excluded:
            return False

        excluded.append(app_id)
        self._send(
            "PATCH",
            f"{GRAPH_ENDPOINT}/identity/conditionalAccess/policies/{policy['id']}",
            {
                "conditions": {
                    "applications": {
                        "includeApplications": applications.get("includeApplications") or [],
                        "excludeApplications": excluded,
                    }
                }
            },
        )
        applications["excludeApplications"] = excluded
        conditions["applications"] = applications
        policy["conditions"] = conditions
        logger.info("Excluded app %s from policy %s", app_id, policy.get("displayName", policy["id"]))
        return True
