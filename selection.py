"""
Selection/Reuse engine.

Decides, per value the workflow needs, whether to reuse what a previous run
recorded, ask the operator, or derive it:

- ``resolve_config`` applies the three-way "use all / ignore / override"
  decision to a prior ``DeploymentConfig``
- storage account naming (validation, availability, collision suffix)
- infrastructure template selection from a directory listing
- directory group search-or-create for the standard and elevated roles
"""
from __future__ import annotations

import copy
import logging
import os
import random
import re
from enum import Enum
from pathlib import Path

from azure_rest import AzureApiError
from config_store import CONFIG_FILE, DeploymentConfig, DirectoryGroupRef, GroupRole, load_config
from prompts import Prompter, PromptAbort
from run_log import status

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(os.environ.get("PAW_TEMPLATE_DIR", "templates"))

STORAGE_NAME_PATTERN = re.compile(r"[a-z0-9]{3,24}")
STORAGE_NAME_MAX = 24

ROLE_LABELS = {
    GroupRole.STANDARD: "Standard user",
    GroupRole.ELEVATED: "Elevated admin",
}

GROUP_FIELDS = {
    "standard_group": GroupRole.STANDARD,
    "elevated_group": GroupRole.ELEVATED,
}

# Order in which "override" walks the record.  template_path is absent on
# purpose: it is always re-selected from the current directory listing.
OVERRIDE_FIELDS = [
    ("subscription_id", "Subscription id"),
    ("resource_group", "Resource group"),
    ("location", "Region"),
    ("prefix", "Naming prefix"),
    ("vnet_name", "Virtual network name"),
    ("subnet_name", "Subnet name"),
    ("vnet_address_range", "Virtual network address range"),
    ("subnet_address_range", "Subnet address range"),
    ("storage_account", "Storage account name"),
    ("standard_group", "Standard user group object id"),
    ("elevated_group", "Elevated admin group object id"),
    ("host_pool", "Host pool name"),
    ("workspace", "Workspace name"),
    ("app_group", "Application group name"),
]


class ReuseMode(Enum):
    USE_ALL = "use_all"
    IGNORE = "ignore"
    OVERRIDE = "override"


# ---------------------------------------------------------------------------
# Prior configuration
# ---------------------------------------------------------------------------

def load_prior_config(path=None) -> DeploymentConfig | None:
    """Load the previous run's record; a malformed file counts as none."""
    config_path = Path(path or CONFIG_FILE)
    prior = load_config(config_path)
    if prior is None and config_path.exists():
        status("WARN", f"Saved configuration {config_path} could not be read; starting fresh", logging.WARNING)
    return prior


def ask_reuse_mode(prompter: Prompter, prior: DeploymentConfig) -> ReuseMode:
    """Show the saved record and ask what to do with it."""
    prompter.say("\nSaved configuration:")
    for attr, label in OVERRIDE_FIELDS:
        prompter.say(f"  {label}: {_display_value(getattr(prior, attr)) or '-'}")
    prompter.say(f"  Template: {prior.template_path or '-'}")

    choice = prompter.choose(
        "How should the saved configuration be used?",
        ["Use all saved values", "Ignore saved values", "Override some values"],
    )
    return [ReuseMode.USE_ALL, ReuseMode.IGNORE, ReuseMode.OVERRIDE][choice]


def resolve_config(
    prior: DeploymentConfig | None,
    mode: ReuseMode,
    prompter: Prompter | None = None,
) -> DeploymentConfig:
    """Apply a reuse decision to *prior*.

    ``USE_ALL`` returns a copy equal to *prior* (liveness of what it points at
    is checked later by the orchestrator).  ``IGNORE`` returns an empty
    record.  ``OVERRIDE`` walks ``OVERRIDE_FIELDS`` offering each saved value
    as the default: blank keeps it, anything else replaces it.  The template
    path is always cleared so it gets re-selected.
    """
    if prior is None or mode is ReuseMode.IGNORE:
        return DeploymentConfig()
    if mode is ReuseMode.USE_ALL:
        return copy.deepcopy(prior)
    if prompter is None:
        raise ValueError("override mode needs a prompter")

    config = copy.deepcopy(prior)
    prompter.say("\nPress Enter to keep a value, or type a replacement.")
    for attr, label in OVERRIDE_FIELDS:
        current = getattr(config, attr)
        shown = _display_value(current)
        answer = prompter.ask(label, default=shown)
        if answer == shown:
            continue
        if attr in GROUP_FIELDS:
            setattr(config, attr, DirectoryGroupRef(object_id=answer, display_name="", role=GROUP_FIELDS[attr]))
        else:
            setattr(config, attr, answer)

    config.template_path = ""
    return config


def _display_value(value) -> str:
    if isinstance(value, DirectoryGroupRef):
        return value.object_id
    return value or ""


# ---------------------------------------------------------------------------
# Storage account naming
# ---------------------------------------------------------------------------

def validate_storage_account_name(name: str) -> bool:
    """3-24 characters, lowercase letters and digits only."""
    return bool(name) and STORAGE_NAME_PATTERN.fullmatch(name) is not None


def suffixed_storage_name(name: str, rng=random) -> str:
    """Append a random 3-digit suffix, trimming *name* to stay within 24 characters."""
    suffix = str(rng.randint(100, 999))
    return name[: STORAGE_NAME_MAX - len(suffix)] + suffix


def resolve_storage_account_name(
    arm,
    subscription_id: str,
    prompter: Prompter,
    initial: str | None = None,
    rng=random,
) -> str:
    """
    Settle on a valid, globally available storage account name.

    A taken name is retried once with a random 3-digit suffix; if that one is
    free it is returned without asking again.  Otherwise the operator is
    asked for another name.
    """
    candidate = initial
    for _ in range(prompter.max_attempts):
        if not candidate:
            candidate = prompter.ask("Storage account name (3-24 lowercase letters and digits)")

        if not validate_storage_account_name(candidate):
            prompter.say(f"[WARN] '{candidate}' is not a valid storage account name")
            candidate = None
            continue

        try:
            if arm.check_storage_name_available(subscription_id, candidate):
                return candidate

            suffixed = suffixed_storage_name(candidate, rng)
            status("WARN", f"Storage account name '{candidate}' is taken, trying '{suffixed}'", logging.WARNING)
            if arm.check_storage_name_available(subscription_id, suffixed):
                return suffixed
        except AzureApiError as e:
            status("WARN", f"Could not check storage account name availability: {e}", logging.WARNING)
            candidate = None
            continue

        prompter.say(f"[WARN] '{suffixed}' is taken as well; choose another name")
        candidate = None

    raise PromptAbort(f"No available storage account name after {prompter.max_attempts} attempts")


# ---------------------------------------------------------------------------
# Template selection
# ---------------------------------------------------------------------------

def list_templates(template_dir) -> list[Path]:
    """ARM template files in *template_dir* (parameter files excluded)."""
    directory = Path(template_dir)
    if not directory.is_dir():
        return []
    return sorted(
        path for path in directory.glob("*.json")
        if not path.name.endswith(".parameters.json")
    )


def select_template(
    prompter: Prompter,
    template_dir,
    keyword: str,
    exclude: str | None = None,
) -> str:
    """
    Pick an infrastructure template from *template_dir*.

    A single file whose name contains *keyword* is suggested; no match,
    several matches, or a declined suggestion fall back to the full listing.
    *exclude* (the previously used template when overriding) is left out of
    the listing unless it is the only file there.

    Raises:
        FileNotFoundError: The directory holds no templates
    """
    templates = list_templates(template_dir)
    if not templates:
        raise FileNotFoundError(f"No templates (*.json) found in {template_dir}")

    if exclude:
        remaining = [t for t in templates if t.resolve() != Path(exclude).resolve()]
        templates = remaining or templates

    matches = [t for t in templates if keyword.lower() in t.name.lower()]
    if len(matches) == 1 and prompter.confirm(f"Use template {matches[0].name}?", default=True):
        return str(matches[0])

    index = prompter.choose("Select the infrastructure template", [t.name for t in templates])
    return str(templates[index])


# ---------------------------------------------------------------------------
# Directory groups
# ---------------------------------------------------------------------------

def select_group(directory, prompter: Prompter, role: GroupRole) -> DirectoryGroupRef | None:
    """Search-and-select or create the group for *role*.

    Returns ``None`` when the operator chose "Back".
    """
    label = ROLE_LABELS[role]
    for _ in range(prompter.max_attempts):
        choice = prompter.choose(
            f"{label} group",
            ["Search for an existing group", "Create a new group"],
            allow_back=True,
        )
        if choice is None:
            return None

        if choice == 0:
            group = _search_group(directory, prompter, label)
        else:
            group = _create_group(directory, prompter, label)
        if group is None:
            continue

        status("OK", f"{label} group: {group.display_name} ({group.object_id})")
        return DirectoryGroupRef(object_id=group.object_id, display_name=group.display_name, role=role)

    raise PromptAbort(f"No {label.lower()} group selected after {prompter.max_attempts} attempts")


def _search_group(directory, prompter: Prompter, label: str):
    for _ in range(prompter.max_attempts):
        substring = prompter.ask_valid(
            f"Text contained in the {label.lower()} group name",
            lambda text: bool(text.strip()),
            "Search text cannot be empty",
        )
        try:
            matches = directory.search_groups(substring)
        except AzureApiError as e:
            status("WARN", f"Group search failed: {e}", logging.WARNING)
            continue
        if not matches:
            prompter.say(f"[WARN] No groups match '{substring}', try different text")
            continue

        index = prompter.choose(
            f"Groups matching '{substring}'",
            [f"{g.display_name} ({g.object_id})" for g in matches],
            allow_back=True,
        )
        if index is None:
            return None
        return matches[index]

    raise PromptAbort(f"No matching {label.lower()} group found after {prompter.max_attempts} searches")


def _create_group(directory, prompter: Prompter, label: str):
    name = prompter.ask_valid(
        f"Display name for the new {label.lower()} group",
        lambda text: bool(text.strip()),
        "Group name cannot be empty",
    )
    try:
        existing = [g for g in directory.search_groups(name) if g.display_name.lower() == name.lower()]
        if existing:
            status("WARN", f"Group '{name}' already exists; using it", logging.WARNING)
            return existing[0]
        return directory.create_group(name, f"PAW {label.lower()} access")
    except AzureApiError as e:
        status("ERROR", f"Group '{name}' was not created: {e}", logging.ERROR)
        return None
