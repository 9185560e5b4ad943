"""
PAW deployment CLI.

Interactive entry point for the Azure Virtual Desktop privileged access
workstation deployment: full core deployment or session hosts only.

Usage:
    paw-deploy
    paw-deploy --session-hosts-only --max-workers 2
    python paw_deploy.py --config ./paw_config.json --template-dir ./templates
"""

import logging
import sys
from typing import List, Optional

from environment_check import EnvironmentCheckError, check_environment
from prompts import Prompter, PromptAbort
from run_log import LOG_DIR, configure_run_logging, status

logger = logging.getLogger(__name__)

MENU_OPTIONS = ["Full deployment", "Session hosts only", "Exit"]


def _build_parser() -> "argparse.ArgumentParser":
    """Build the argparse parser.

    Separated from ``cli_main`` so tests can exercise the parser without
    starting a run.
    """
    import argparse

    parser = argparse.ArgumentParser(
        prog="paw-deploy",
        description="Deploy and extend an Azure Virtual Desktop privileged "
                    "access workstation (PAW) environment.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Saved configuration file (default: PAW_CONFIG_FILE or paw_config.json).",
    )
    parser.add_argument(
        "--template-dir",
        default=None,
        help="Directory with the ARM templates (default: PAW_TEMPLATE_DIR or ./templates).",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for paw-core.log / paw-sessionhost.log (default: PAW_LOG_DIR or ./logs).",
    )
    parser.add_argument(
        "--session-hosts-only",
        action="store_true",
        help="Skip the menu and only add session hosts to an existing deployment.",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=1,
        help="Session host deployments to run at the same time (default: 1).",
    )
    parser.add_argument(
        "--device-tag-scope",
        choices=["resource_group", "batch"],
        default="resource_group",
        help="Tag every device named after the resource group, or only this batch's VMs.",
    )
    parser.add_argument(
        "--credential-source",
        choices=["prompt", "keyvault"],
        default="prompt",
        help="Where session host admin credentials come from (keyvault uses PAW_KEYVAULT_URL).",
    )
    parser.add_argument(
        "--no-network-discovery",
        action="store_true",
        help="Take vnet/subnet from the saved configuration or ask, instead of listing them.",
    )
    parser.add_argument(
        "--dns-server",
        action="append",
        default=[],
        dest="dns_servers",
        help="Custom DNS server for session hosts (repeatable).",
    )
    parser.add_argument(
        "--shutdown-timezone",
        default=None,
        help="Windows time zone id for the daily auto-shutdown (default: PAW_SHUTDOWN_TIMEZONE or UTC).",
    )
    parser.add_argument(
        "--no-auto-install",
        action="store_true",
        help="Do not pip-install missing Python libraries.",
    )
    return parser


def _session_host_options(args):
    from session_hosts import SessionHostOptions

    options = SessionHostOptions(
        credential_source=args.credential_source,
        discover_network=not args.no_network_discovery,
        device_tag_scope=args.device_tag_scope,
        dns_servers=list(args.dns_servers),
        max_workers=args.max_workers,
    )
    if args.shutdown_timezone:
        options.shutdown_timezone = args.shutdown_timezone
    return options


def _build_orchestrator(args, prompter: Prompter):
    """Create the clients around one shared credential and wire the orchestrator."""
    from azure.identity import DefaultAzureCredential

    from arm_client import ResourceManagerClient
    from avd_client import VirtualDesktopClient
    from graph_client import DirectoryClient
    from provisioning import ProvisioningOrchestrator

    credential = DefaultAzureCredential()
    return ProvisioningOrchestrator(
        arm=ResourceManagerClient(credential=credential),
        directory=DirectoryClient(credential=credential),
        avd=VirtualDesktopClient(credential=credential),
        prompter=prompter,
        config_path=args.config,
        template_dir=args.template_dir,
        auto_install=not args.no_auto_install,
        # already checked before the Azure libraries were imported
        environment_checker=lambda **_: None,
        session_host_options=_session_host_options(args),
        log_dir=args.log_dir or LOG_DIR,
    )


def cli_main(argv: Optional[List[str]] = None, prompter: Optional[Prompter] = None) -> int:
    """Run the CLI.  Returns an integer exit code (0 = success).

    Parameters
    ----------
    argv : list of str, optional
        Command-line arguments.  If *None*, ``sys.argv[1:]`` is used.
    prompter : Prompter, optional
        Interactive surface; tests pass one with scripted answers.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    prompter = prompter or Prompter()

    if args.session_hosts_only:
        mode = 1
    else:
        try:
            mode = prompter.choose("PAW deployment", MENU_OPTIONS)
        except PromptAbort as e:
            print(f"[ERROR] {e}", file=sys.stderr)
            return 1
    if mode == 2:
        print("Bye.")
        return 0

    workflow = "sessionhost" if mode == 1 else "core"
    log_path = configure_run_logging(workflow, args.log_dir)
    logger.info("Starting %s workflow", workflow)
    print(f"Logging to {log_path}")

    try:
        check_environment(auto_install=not args.no_auto_install)
    except EnvironmentCheckError as e:
        status("ERROR", str(e), logging.ERROR)
        return 1

    from azure.core.exceptions import ClientAuthenticationError
    from azure_rest import AzureApiError
    from provisioning import FatalProvisioningError

    try:
        orchestrator = _build_orchestrator(args, prompter)
        if mode == 1:
            completed = orchestrator.run_session_hosts_only()
        else:
            completed = orchestrator.run()
    except (FatalProvisioningError, PromptAbort) as e:
        status("ERROR", str(e), logging.ERROR)
        return 1
    except ClientAuthenticationError as e:
        status("ERROR", f"Azure sign-in failed: {e}", logging.ERROR)
        return 1
    except AzureApiError as e:
        status("ERROR", f"Azure request failed: {e}", logging.ERROR)
        return 1
    except KeyboardInterrupt:
        status("WARN", "Interrupted by operator", logging.WARNING)
        return 1
    except ValueError as e:
        # invalid option values (e.g. SessionHostOptions)
        status("ERROR", str(e), logging.ERROR)
        return 1

    return 0 if completed else 1


def main() -> None:
    raise SystemExit(cli_main())


if __name__ == "__main__":
    main()
