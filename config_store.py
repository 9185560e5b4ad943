"""
Deployment configuration record: what a previous run chose and created.

The record is a flat JSON object written at the end of a successful core
infrastructure run and read back by later runs (full re-runs and
session-host-only runs).  Loading is forgiving: unknown keys are ignored,
missing keys keep their defaults, and a file that cannot be parsed is
treated as "no prior configuration".
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_FILE = Path(os.environ.get("PAW_CONFIG_FILE", "paw_config.json"))


class GroupRole(str, Enum):
    STANDARD = "standard"
    ELEVATED = "elevated"


@dataclass
class DirectoryGroupRef:
    object_id: str
    display_name: str
    role: GroupRole

    def to_dict(self) -> dict[str, str]:
        return {"object_id": self.object_id, "display_name": self.display_name, "role": self.role.value}

    @classmethod
    def from_dict(cls, data: Any, role: GroupRole) -> "DirectoryGroupRef | None":
        if not isinstance(data, dict) or not data.get("object_id"):
            return None
        return cls(
            object_id=str(data["object_id"]),
            display_name=str(data.get("display_name", "")),
            role=role,
        )


@dataclass
class DeploymentConfig:
    tenant_id: str = ""
    subscription_id: str = ""
    subscription_name: str = ""
    resource_group: str = ""
    location: str = ""
    vnet_name: str = ""
    subnet_name: str = ""
    vnet_address_range: str = ""
    subnet_address_range: str = ""
    prefix: str = ""
    storage_account: str = ""
    standard_group: DirectoryGroupRef | None = None
    elevated_group: DirectoryGroupRef | None = None
    template_path: str = ""
    host_pool: str = ""
    workspace: str = ""
    app_group: str = ""
    saved_at: str = ""

    def group_for(self, role: GroupRole) -> DirectoryGroupRef | None:
        return self.standard_group if role is GroupRole.STANDARD else self.elevated_group

    def set_group(self, ref: DirectoryGroupRef) -> None:
        if ref.role is GroupRole.STANDARD:
            self.standard_group = ref
        else:
            self.elevated_group = ref

    def fill_derived_names(self) -> None:
        """Derive resource names from the prefix where none are recorded yet."""
        if not self.prefix:
            return
        self.host_pool = self.host_pool or f"{self.prefix}-hp"
        self.workspace = self.workspace or f"{self.prefix}-ws"
        self.app_group = self.app_group or f"{self.prefix}-dag"
        self.vnet_name = self.vnet_name or f"{self.prefix}-vnet"
        self.subnet_name = self.subnet_name or f"{self.prefix}-snet"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["standard_group"] = self.standard_group.to_dict() if self.standard_group else None
        data["elevated_group"] = self.elevated_group.to_dict() if self.elevated_group else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentConfig":
        known = {f.name for f in fields(cls)} - {"standard_group", "elevated_group"}
        values = {
            key: str(value)
            for key, value in data.items()
            if key in known and value is not None
        }
        config = cls(**values)
        config.standard_group = DirectoryGroupRef.from_dict(data.get("standard_group"), GroupRole.STANDARD)
        config.elevated_group = DirectoryGroupRef.from_dict(data.get("elevated_group"), GroupRole.ELEVATED)
        return config


def load_config(path: Path | str | None = None) -> DeploymentConfig | None:
    """Load the record from *path*; ``None`` if absent or unreadable."""
    config_path = Path(path or CONFIG_FILE)
    if not config_path.exists():
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning("Ignoring unreadable configuration %s: %s", config_path, e)
        return None

    if not isinstance(data, dict):
        logger.warning("Ignoring configuration %s: expected a JSON object", config_path)
        return None

    return DeploymentConfig.from_dict(data)


def save_config(config: DeploymentConfig, path: Path | str | None = None) -> Path:
    """Write the record to *path*, stamping ``saved_at``."""
    config_path = Path(path or CONFIG_FILE)
    config.saved_at = datetime.now(timezone.utc).isoformat()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    logger.info("Configuration saved to %s", config_path)
    return config_path
