"""
Shared fixtures and mocks for PAW deployer tests.

All external dependencies (Resource Manager, Graph, AVD, Key Vault, the az
CLI, pip) are mocked so tests can run without any infrastructure.
"""
import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock
from datetime import datetime, timezone, timedelta

# Ensure the repo root is on sys.path
REPO_ROOT = Path(__file__).parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from config_store import DeploymentConfig, DirectoryGroupRef, GroupRole
from prompts import Prompter


# ---------------------------------------------------------------------------
# UTF-8 encoding fix for Windows
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True, scope="function")
def _ensure_utf8_stdout():
    """Reconfigure stdout/stderr to UTF-8 on Windows."""
    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8")
        sys.stderr.reconfigure(encoding="utf-8")


# ---------------------------------------------------------------------------
# Environment variable fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_env_vars(monkeypatch, tmp_path):
    """Set PAW environment variables for every test."""
    monkeypatch.setenv("PAW_KEYVAULT_URL", "https://paw-test.vault.azure.net")
    monkeypatch.setenv("PAW_REQUEST_TIMEOUT", "5")
    monkeypatch.setenv("PAW_READ_RETRIES", "3")
    # Make config and log files use tmp_path so tests don't pollute repo
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Azure credential mock
# ---------------------------------------------------------------------------

class FakeAccessToken:
    """Mimics azure.core.credentials.AccessToken"""
    def __init__(self, token="fake-token-12345", expires_on=None):
        self.token = token
        self.expires_on = expires_on or (datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()


@pytest.fixture
def mock_credential():
    """Return a mock DefaultAzureCredential that always succeeds."""
    cred = MagicMock()
    cred.get_token.return_value = FakeAccessToken()
    return cred


# ---------------------------------------------------------------------------
# Requests / HTTP mock helpers
# ---------------------------------------------------------------------------

class FakeResponse:
    """Minimal requests.Response stand-in."""
    def __init__(self, status_code=200, json_data=None, text="", headers=None):
        self.status_code = status_code
        self._json = json_data or {}
        self.text = text
        self.headers = headers or {}
        self.content = b'{}' if json_data is not None else (text.encode() if text else b'')

    def json(self):
        return self._json


# ---------------------------------------------------------------------------
# Scripted prompts
# ---------------------------------------------------------------------------

class ScriptedPrompter(Prompter):
    """Prompter fed from a list of answers; everything said is recorded."""
    def __init__(self, answers=(), secrets=(), max_attempts=3):
        self.answers = list(answers)
        self.secrets = list(secrets)
        self.output = []
        self.asked = []
        super().__init__(
            input_func=self._next_answer,
            secret_func=self._next_secret,
            output_func=self.output.append,
            max_attempts=max_attempts,
        )

    def _next_answer(self, message):
        self.asked.append(message)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {message}")
        return self.answers.pop(0)

    def _next_secret(self, message):
        self.asked.append(message)
        if not self.secrets:
            raise AssertionError(f"Unexpected secret prompt: {message}")
        return self.secrets.pop(0)

    @property
    def transcript(self):
        return "\n".join(self.output)


# ---------------------------------------------------------------------------
# Sample deployment data
# ---------------------------------------------------------------------------

SAMPLE_SUBSCRIPTION_ID = "00000000-1111-2222-3333-444444444444"
SAMPLE_TENANT_ID = "tttttttt-1111-2222-3333-444444444444"
SAMPLE_STANDARD_GROUP_ID = "aaaaaaaa-bbbb-cccc-dddd-000000000001"
SAMPLE_ELEVATED_GROUP_ID = "aaaaaaaa-bbbb-cccc-dddd-000000000002"


def make_config(**overrides) -> DeploymentConfig:
    """A fully populated configuration record."""
    config = DeploymentConfig(
        tenant_id=SAMPLE_TENANT_ID,
        subscription_id=SAMPLE_SUBSCRIPTION_ID,
        subscription_name="PAW Production",
        resource_group="rg-paw",
        location="eastus",
        vnet_name="paw-vnet",
        subnet_name="paw-snet",
        vnet_address_range="10.0.0.0/16",
        subnet_address_range="10.0.0.0/24",
        prefix="paw",
        storage_account="pawprofiles01",
        standard_group=DirectoryGroupRef(SAMPLE_STANDARD_GROUP_ID, "PAW Users", GroupRole.STANDARD),
        elevated_group=DirectoryGroupRef(SAMPLE_ELEVATED_GROUP_ID, "PAW Admins", GroupRole.ELEVATED),
        template_path="templates/paw-core.json",
        host_pool="paw-hp",
        workspace="paw-ws",
        app_group="paw-dag",
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def sample_config():
    return make_config()


@pytest.fixture
def template_dir(tmp_path):
    """A template directory with a core and a session host template."""
    directory = tmp_path / "templates"
    directory.mkdir()
    (directory / "paw-core.json").write_text('{"resources": []}')
    (directory / "paw-core.parameters.json").write_text('{"parameters": {}}')
    (directory / "paw-sessionhost.json").write_text('{"resources": []}')
    return directory
