"""
Key Vault secret access for session host admin credentials.
"""
from __future__ import annotations

import logging
import os

from azure_rest import AzureRestClient, KEYVAULT_SCOPE

logger = logging.getLogger(__name__)

KEYVAULT_API = "7.4"
KEYVAULT_URL = os.environ.get("PAW_KEYVAULT_URL", "")


class KeyVaultSecretStore(AzureRestClient):
    """Read and write secrets of one vault over the data-plane REST API."""

    service_name = "Key Vault"

    def __init__(self, vault_url: str | None = None, credential=None, **kwargs):
        super().__init__(KEYVAULT_SCOPE, credential=credential, **kwargs)
        self.vault_url = (vault_url or KEYVAULT_URL).rstrip("/")
        if not self.vault_url:
            raise ValueError("No Key Vault URL configured (set PAW_KEYVAULT_URL)")

    def get_secret(self, name: str) -> str | None:
        """Return the current value of secret *name*, or ``None`` if it does not exist."""
        data = self._get(
            f"{self.vault_url}/secrets/{name}",
            {"api-version": KEYVAULT_API},
            allow_404=True,
        )
        if data is None:
            logger.warning("Secret %s not found in %s", name, self.vault_url)
            return None
        return data.get("value")

    def set_secret(self, name: str, value: str) -> None:
        self._send(
            "PUT",
            f"{self.vault_url}/secrets/{name}",
            {"value": value},
            {"api-version": KEYVAULT_API},
        )
        logger.info("Secret %s stored in %s", name, self.vault_url)
