"""
Pre-flight checks: Python client libraries and the Azure CLI.

This module only uses the standard library so it can run before the
third-party stack is known to be importable.
"""

import importlib.util
import logging
import os
import subprocess
import sys
from typing import List, Tuple

logger = logging.getLogger(__name__)

# import name -> distribution name on the package index
REQUIRED_MODULES = {
    "requests": "requests",
    "azure.identity": "azure-identity",
    "azure.core": "azure-core",
}

AZ_INSTALL_URL = "https://learn.microsoft.com/cli/azure/install-azure-cli"


class EnvironmentCheckError(Exception):
    """The environment cannot run the workflow.

    ``restart_required`` is set when missing libraries were installed during
    the check and the tool has to be started again to pick them up.
    """

    def __init__(self, message: str, restart_required: bool = False):
        super().__init__(message)
        self.restart_required = restart_required


def find_missing_modules() -> List[Tuple[str, str]]:
    """Return ``(import_name, distribution)`` for every library that cannot be imported."""
    missing = []
    for module, distribution in REQUIRED_MODULES.items():
        try:
            found = importlib.util.find_spec(module) is not None
        except ModuleNotFoundError:
            # parent package missing (e.g. "azure" for "azure.identity")
            found = False
        if not found:
            missing.append((module, distribution))
    return missing


def install_package(distribution: str) -> bool:
    """pip-install *distribution* into the running interpreter."""
    try:
        result = subprocess.run(
            [sys.executable, "-m", "pip", "install", distribution],
            capture_output=True,
            text=True,
            timeout=600,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning("pip install %s failed: %s", distribution, e)
        return False

    if result.returncode != 0:
        logger.warning("pip install %s failed: %s", distribution, result.stderr.strip()[:500])
        return False
    return True


def az_cli_available() -> bool:
    """Check if the Azure CLI is installed."""
    # On Windows the CLI is a .cmd shim
    commands = ["az", "az.cmd"] if os.name == "nt" else ["az"]
    for cmd in commands:
        try:
            result = subprocess.run(
                [cmd, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
            )
            if result.returncode == 0:
                return True
        except (subprocess.TimeoutExpired, FileNotFoundError):
            continue
    return False


def check_environment(auto_install: bool = True) -> None:
    """
    Verify the libraries and CLI the workflow depends on.

    Args:
        auto_install: Try to pip-install missing libraries

    Raises:
        EnvironmentCheckError: Something is missing.  ``restart_required`` tells
            "installed now, start again" apart from "cannot be installed".
    """
    missing = find_missing_modules()
    if missing:
        names = ", ".join(distribution for _, distribution in missing)
        if auto_install and all(install_package(distribution) for _, distribution in missing):
            raise EnvironmentCheckError(
                f"Installed missing libraries ({names}). Restart the tool to continue.",
                restart_required=True,
            )
        raise EnvironmentCheckError(
            f"Missing required libraries ({names}) could not be installed automatically. "
            f"Install them with: {sys.executable} -m pip install {' '.join(d for _, d in missing)}"
        )

    if not az_cli_available():
        raise EnvironmentCheckError(
            f"Azure CLI is not installed or not in PATH. Install from: {AZ_INSTALL_URL}"
        )
