"""
Azure Virtual Desktop control-plane client.

Host pool registration-token lifecycle, session host lookup and user
assignment, application group checks and desktop metadata.  AVD resources
live under ``Microsoft.DesktopVirtualization`` in Resource Manager, so this
client uses the ARM endpoint and scope but keeps its own session.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List

from azure_rest import AzureRestClient, AzureApiError, ARM_ENDPOINT, ARM_SCOPE

logger = logging.getLogger(__name__)

DESKTOP_VIRTUALIZATION_API = "2023-09-05"
REGISTRATION_TOKEN_HOURS = 24
DEFAULT_DESKTOP_NAME = "SessionDesktop"


@dataclass
class RegistrationToken:
    token: str
    expires_on: datetime


class VirtualDesktopClient(AzureRestClient):
    """Operations on host pools, session hosts and application groups."""

    service_name = "Virtual Desktop"

    def __init__(self, credential=None, **kwargs):
        super().__init__(ARM_SCOPE, credential=credential, **kwargs)

    @staticmethod
    def _provider_url(subscription_id: str, resource_group: str) -> str:
        return (
            f"{ARM_ENDPOINT}/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.DesktopVirtualization"
        )

    @property
    def _params(self) -> Dict[str, str]:
        return {"api-version": DESKTOP_VIRTUALIZATION_API}

    # -- host pools --------------------------------------------------------

    def get_host_pool(self, subscription_id: str, resource_group: str, host_pool: str) -> Optional[Dict[str, Any]]:
        return self._get(
            f"{self._provider_url(subscription_id, resource_group)}/hostPools/{host_pool}",
            self._params,
            allow_404=True,
        )

    def mint_registration_token(
        self,
        subscription_id: str,
        resource_group: str,
        host_pool: str,
        hours: int = REGISTRATION_TOKEN_HOURS,
    ) -> RegistrationToken:
        """
        Issue a fresh registration token valid for *hours*.

        The token is written onto the host pool's ``registrationInfo``; if the
        PATCH response does not echo it, it is fetched with
        ``retrieveRegistrationToken``.
        """
        expires_on = datetime.now(timezone.utc) + timedelta(hours=hours)
        url = f"{self._provider_url(subscription_id, resource_group)}/hostPools/{host_pool}"
        response = self._send(
            "PATCH",
            url,
            {
                "properties": {
                    "registrationInfo": {
                        "expirationTime": expires_on.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
                        "registrationTokenOperation": "Update",
                    }
                }
            },
            self._params,
        )
        info = self._json_or_empty(response).get("properties", {}).get("registrationInfo", {})
        token = info.get("token")

        try:
            if not token:
                retrieved = self._send("POST", f"{url}/retrieveRegistrationToken", None, self._params)
                token = self._json_or_empty(retrieved).get("token")
            if not token:
                raise AzureApiError(f"Host pool {host_pool} did not return a registration token")
        except AzureApiError:
            # The Update above already opened a join window
            self._discard_token(subscription_id, resource_group, host_pool)
            raise

        logger.info("Registration token minted for %s (expires %s)", host_pool, expires_on.isoformat())
        return RegistrationToken(token=token, expires_on=expires_on)

    def revoke_registration_token(self, subscription_id: str, resource_group: str, host_pool: str) -> None:
        """Delete the host pool's registration token, closing the join window."""
        self._send(
            "PATCH",
            f"{self._provider_url(subscription_id, resource_group)}/hostPools/{host_pool}",
            {"properties": {"registrationInfo": {"registrationTokenOperation": "Delete"}}},
            self._params,
        )
        logger.info("Registration token revoked for %s", host_pool)

    def _discard_token(self, subscription_id: str, resource_group: str, host_pool: str) -> None:
        try:
            self.revoke_registration_token(subscription_id, resource_group, host_pool)
        except AzureApiError as e:
            logger.error("Could not delete half-issued registration token on %s: %s", host_pool, e)

    # -- session hosts -----------------------------------------------------

    def list_session_hosts(self, subscription_id: str, resource_group: str, host_pool: str) -> List[Dict[str, Any]]:
        return self._get_all(
            f"{self._provider_url(subscription_id, resource_group)}/hostPools/{host_pool}/sessionHosts",
            self._params,
        )

    def find_session_host(
        self,
        subscription_id: str,
        resource_group: str,
        host_pool: str,
        vm_name: str,
    ) -> Optional[Dict[str, Any]]:
        """Find the session host backed by *vm_name*.

        Session host names look like ``<pool>/<vm-name>.<dns-suffix>``.
        """
        for host in self.list_session_hosts(subscription_id, resource_group, host_pool):
            host_name = session_host_name(host)
            if host_name.split(".")[0].lower() == vm_name.lower():
                return host
        return None

    def assign_user(
        self,
        subscription_id: str,
        resource_group: str,
        host_pool: str,
        session_host: Dict[str, Any],
        upn: str,
    ) -> bool:
        """
        Assign a personal session host to *upn*.

        Returns:
            True if the assignment changed, False if it was already *upn*
        """
        current = session_host.get("properties", {}).get("assignedUser") or ""
        if current.lower() == upn.lower():
            return False

        name = session_host_name(session_host)
        self._send(
            "PATCH",
            f"{self._provider_url(subscription_id, resource_group)}/hostPools/{host_pool}/sessionHosts/{name}",
            {"properties": {"assignedUser": upn}},
            self._params,
        )
        logger.info("Session host %s assigned to %s", name, upn)
        return True

    # -- application groups / desktops -------------------------------------

    def get_application_group(self, subscription_id: str, resource_group: str, app_group: str) -> Optional[Dict[str, Any]]:
        return self._get(
            f"{self._provider_url(subscription_id, resource_group)}/applicationGroups/{app_group}",
            self._params,
            allow_404=True,
        )

    def update_desktop_friendly_name(
        self,
        subscription_id: str,
        resource_group: str,
        app_group: str,
        friendly_name: str,
        desktop: str = DEFAULT_DESKTOP_NAME,
    ) -> None:
        self._send(
            "PATCH",
            f"{self._provider_url(subscription_id, resource_group)}/applicationGroups/{app_group}/desktops/{desktop}",
            {"properties": {"friendlyName": friendly_name}},
            self._params,
        )


def session_host_name(host: Dict[str, Any]) -> str:
    """Strip the ``<pool>/`` prefix from a session host resource name."""
    return host.get("name", "").split("/")[-1]
