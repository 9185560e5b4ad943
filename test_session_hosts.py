"""Tests for session_hosts.py – session host lifecycle"""
import signal
import threading

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

from arm_client import DeploymentError
from avd_client import RegistrationToken
from azure_rest import AzureApiError
from config_store import DirectoryGroupRef, GroupRole
from session_hosts import (
    HostPoolTarget,
    HostStatus,
    SessionHostError,
    SessionHostManager,
    SessionHostOptions,
    SessionHostRequest,
    collect_requests,
    interrupt_sets,
    resolve_admin_credentials,
    resolve_network,
    run_session_host_workflow,
)
from conftest import (
    ScriptedPrompter,
    make_config,
    SAMPLE_SUBSCRIPTION_ID,
    SAMPLE_STANDARD_GROUP_ID,
    SAMPLE_ELEVATED_GROUP_ID,
)

STANDARD = DirectoryGroupRef(SAMPLE_STANDARD_GROUP_ID, "PAW Users", GroupRole.STANDARD)
ELEVATED = DirectoryGroupRef(SAMPLE_ELEVATED_GROUP_ID, "PAW Admins", GroupRole.ELEVATED)

REQUESTS = [
    SessionHostRequest("Jane", "Doe", "jane@contoso.com"),
    SessionHostRequest("John", "Smith", "john@contoso.com"),
    SessionHostRequest("Ada", "Lovelace", "ada@contoso.com"),
]


def _pool(**overrides):
    values = dict(
        subscription_id=SAMPLE_SUBSCRIPTION_ID,
        resource_group="rg-paw",
        location="eastus",
        host_pool="paw-hp",
        prefix="paw",
        template_path="templates/paw-sessionhost.json",
        vnet_name="paw-vnet",
        subnet_name="paw-snet",
        admin_username="pawadmin",
        admin_password="S3cret!Pass",
        standard_group=STANDARD,
        elevated_group=ELEVATED,
        group_roles=(GroupRole.STANDARD,),
    )
    values.update(overrides)
    return HostPoolTarget(**values)


@pytest.fixture
def events():
    return []


@pytest.fixture
def arm(events):
    arm = MagicMock()
    arm.credential = MagicMock()
    arm.vm_exists.return_value = False

    def deploy(sub, rg, name, template_path, parameters):
        events.append(f"deploy:{parameters['vmName']}")
        return {}
    arm.deploy_template_file.side_effect = deploy
    return arm


@pytest.fixture
def avd(events):
    avd = MagicMock()
    token = RegistrationToken("reg-token", datetime.now(timezone.utc) + timedelta(hours=24))

    def mint(sub, rg, pool):
        events.append("mint")
        return token
    avd.mint_registration_token.side_effect = mint
    avd.revoke_registration_token.side_effect = lambda sub, rg, pool: events.append("revoke")
    avd.find_session_host.side_effect = lambda sub, rg, pool, vm: {"name": f"{pool}/{vm}.contoso.local", "properties": {}}
    avd.assign_user.return_value = True
    return avd


@pytest.fixture
def directory():
    directory = MagicMock()
    directory.get_user.side_effect = lambda upn: {"id": f"id-{upn}"}
    directory.add_member.return_value = True
    directory.list_devices.return_value = []
    return directory


# ===========================================================================
# Requests / results
# ===========================================================================

class TestSessionHostRequest:

    def test_vm_name(self):
        assert SessionHostRequest("Jane", "Doe", "j@c.com").vm_name("paw") == "pawJaneDoe"

    def test_vm_name_strips_whitespace(self):
        assert SessionHostRequest("Mary Ann", " Lee", "m@c.com").vm_name("paw") == "pawMaryAnnLee"

    def test_vm_name_truncated_to_15(self):
        name = SessionHostRequest("Alexandra", "Montgomery", "a@c.com").vm_name("paw")
        assert name == "pawAlexandraMon"
        assert len(name) == 15


class TestOptions:

    def test_defaults(self):
        options = SessionHostOptions()
        assert options.credential_source == "prompt"
        assert options.device_tag_scope == "resource_group"
        assert options.shutdown_time == "1900"
        assert options.max_workers == 1

    def test_invalid_tag_scope(self):
        with pytest.raises(ValueError):
            SessionHostOptions(device_tag_scope="tenant")

    def test_invalid_credential_source(self):
        with pytest.raises(ValueError):
            SessionHostOptions(credential_source="file")


# ===========================================================================
# provision_hosts
# ===========================================================================

class TestTokenLifecycle:

    def test_one_mint_one_revoke_after_all_deployments(self, arm, avd, directory, events):
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())

        assert events == [
            "mint",
            "deploy:pawJaneDoe",
            "deploy:pawJohnSmith",
            "deploy:pawAdaLovelace",
            "revoke",
        ]
        assert [r.status for r in results] == [HostStatus.CREATED] * 3

    def test_token_passed_to_every_deployment(self, arm, avd, directory):
        SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())
        tokens = {c.args[4]["hostPoolToken"] for c in arm.deploy_template_file.call_args_list}
        assert tokens == {"reg-token"}

    def test_revoked_after_failures(self, arm, avd, directory, events):
        arm.deploy_template_file.side_effect = DeploymentError("quota exceeded")
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())

        assert all(r.status is HostStatus.FAILED for r in results)
        assert events == ["mint", "revoke"]

    def test_revoked_when_interrupted(self, arm, avd, directory, events):
        arm.deploy_template_file.side_effect = KeyboardInterrupt
        with pytest.raises(KeyboardInterrupt):
            SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())
        assert events == ["mint", "revoke"]

    def test_concurrent_deployments_share_one_token(self, arm, avd, directory, events):
        options = SessionHostOptions(max_workers=3)
        results = SessionHostManager(arm, avd, directory, options).provision_hosts(REQUESTS, _pool())

        assert events[0] == "mint"
        assert events[-1] == "revoke"
        assert sorted(events[1:-1]) == ["deploy:pawAdaLovelace", "deploy:pawJaneDoe", "deploy:pawJohnSmith"]
        avd.mint_registration_token.assert_called_once()
        avd.revoke_registration_token.assert_called_once()
        assert all(r.status is HostStatus.CREATED for r in results)

    def test_mint_failure_stops_batch(self, arm, avd, directory):
        avd.mint_registration_token.side_effect = AzureApiError("forbidden", status_code=403)
        with pytest.raises(SessionHostError):
            SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())
        arm.deploy_template_file.assert_not_called()
        avd.revoke_registration_token.assert_not_called()

    def test_revoke_failure_reported(self, arm, avd, directory, capsys):
        avd.revoke_registration_token.side_effect = AzureApiError("throttled", status_code=429)
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:1], _pool())
        out = capsys.readouterr().out
        assert results[0].status is HostStatus.CREATED
        assert "NOT revoked" in out
        assert "--revoke-token" in out

    def test_empty_batch_touches_nothing(self, arm, avd, directory):
        assert SessionHostManager(arm, avd, directory).provision_hosts([], _pool()) == []
        avd.mint_registration_token.assert_not_called()


class TestBatchIsolation:

    def test_failed_host_does_not_stop_siblings(self, arm, avd, directory):
        def deploy(sub, rg, name, template_path, parameters):
            if parameters["vmName"] == "pawJohnSmith":
                raise DeploymentError("Deployment pawJohnSmith-sessionhost failed")
            return {}
        arm.deploy_template_file.side_effect = deploy

        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())

        assert [r.status for r in results] == [HostStatus.CREATED, HostStatus.FAILED, HostStatus.CREATED]
        assert results[1].errors and "deploy" in results[1].errors[0]
        assigned = [c.args[4] for c in avd.assign_user.call_args_list]
        assert assigned == ["jane@contoso.com", "ada@contoso.com"]
        looked_up = [c.args[0] for c in directory.get_user.call_args_list]
        assert "jane@contoso.com" in looked_up
        assert "ada@contoso.com" in looked_up
        shutdown_vms = [c.args[2] for c in arm.set_auto_shutdown.call_args_list]
        assert shutdown_vms == ["pawJaneDoe", "pawAdaLovelace"]

    def test_unknown_user_skipped(self, arm, avd, directory):
        directory.get_user.side_effect = lambda upn: None if upn.startswith("john") else {"id": upn}
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())
        assert directory.add_member.call_count == 2
        assert any("not found" in e for e in results[1].errors)

    def test_assignment_error_isolated(self, arm, avd, directory):
        avd.assign_user.side_effect = [AzureApiError("conflict", status_code=409), True, True]
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())
        assert [r.assigned for r in results] == [False, True, True]

    def test_unregistered_host_not_assigned(self, arm, avd, directory):
        avd.find_session_host.side_effect = None
        avd.find_session_host.return_value = None
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:1], _pool())
        avd.assign_user.assert_not_called()
        assert results[0].assigned is False


class TestExistingVm:

    def test_existing_vm_skips_deployment_only(self, arm, avd, directory):
        arm.vm_exists.side_effect = lambda sub, rg, vm: vm == "pawJaneDoe"

        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:2], _pool())

        assert results[0].status is HostStatus.SKIPPED_EXISTS
        deployed = [c.args[2] for c in arm.deploy_template_file.call_args_list]
        assert deployed == ["pawJohnSmith-sessionhost"]
        assert avd.assign_user.call_args_list[0].args[4] == "jane@contoso.com"
        assert arm.set_auto_shutdown.call_args_list[0].args[2] == "pawJaneDoe"
        assert directory.get_user.call_args_list[0].args[0] == "jane@contoso.com"
        assert results[0].auto_shutdown is True


class TestGroupMembership:

    @pytest.mark.parametrize("roles,expected", [
        ((GroupRole.STANDARD,), [SAMPLE_STANDARD_GROUP_ID]),
        ((GroupRole.ELEVATED,), [SAMPLE_ELEVATED_GROUP_ID]),
        ((GroupRole.STANDARD, GroupRole.ELEVATED), [SAMPLE_STANDARD_GROUP_ID, SAMPLE_ELEVATED_GROUP_ID]),
        ((), []),
    ])
    def test_selected_roles(self, arm, avd, directory, roles, expected):
        SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:1], _pool(group_roles=roles))
        assert [c.args[0] for c in directory.add_member.call_args_list] == expected

    def test_already_member_not_recorded(self, arm, avd, directory):
        directory.add_member.return_value = False
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:1], _pool())
        assert results[0].groups_added == []


class TestAutoShutdown:

    def test_schedule_uses_options(self, arm, avd, directory):
        options = SessionHostOptions(shutdown_timezone="W. Europe Standard Time")
        SessionHostManager(arm, avd, directory, options).provision_hosts(REQUESTS[:1], _pool())
        arm.set_auto_shutdown.assert_called_once_with(
            SAMPLE_SUBSCRIPTION_ID, "rg-paw", "pawJaneDoe", "eastus", "1900", "W. Europe Standard Time", "jane@contoso.com",
        )


class TestDeviceTagging:

    def test_resource_group_scope_tags_all_matches(self, arm, avd, directory):
        directory.list_devices.return_value = [
            {"id": "d1", "displayName": "rg-paw-host1", "extensionAttributes": {}},
            {"id": "d2", "displayName": "rg-paw-host2", "extensionAttributes": {"extensionAttribute1": "PAW"}},
        ]
        SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:1], _pool())

        directory.list_devices.assert_called_once_with("rg-paw")
        directory.set_device_extension_attribute.assert_called_once_with("d1", "extensionAttribute1", "PAW")

    def test_batch_scope_only_tags_batch_vms(self, arm, avd, directory):
        devices = {
            "pawjanedoe": [
                {"id": "d1", "displayName": "pawJaneDoe"},
                {"id": "d9", "displayName": "pawJaneDoe2"},
            ],
            "pawjohnsmith": [{"id": "d2", "displayName": "pawJohnSmith"}],
        }
        directory.list_devices.side_effect = lambda prefix: devices.get(prefix, [])
        options = SessionHostOptions(device_tag_scope="batch")

        SessionHostManager(arm, avd, directory, options).provision_hosts(REQUESTS[:2], _pool())

        tagged = sorted(c.args[0] for c in directory.set_device_extension_attribute.call_args_list)
        assert tagged == ["d1", "d2"]

    def test_listing_failure_is_not_fatal(self, arm, avd, directory, events):
        directory.list_devices.side_effect = AzureApiError("graph down", status_code=503)
        results = SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS[:1], _pool())
        assert results[0].status is HostStatus.CREATED
        assert events[-1] == "revoke"


class TestCancellation:

    def test_cancel_between_hosts(self, arm, avd, directory, events):
        options = SessionHostOptions()

        def deploy(sub, rg, name, template_path, parameters):
            events.append(f"deploy:{parameters['vmName']}")
            options.cancel_event.set()
            return {}
        arm.deploy_template_file.side_effect = deploy

        results = SessionHostManager(arm, avd, directory, options).provision_hosts(REQUESTS, _pool())

        assert [r.status for r in results] == [HostStatus.CREATED, HostStatus.CANCELLED, HostStatus.CANCELLED]
        assert events == ["mint", "deploy:pawJaneDoe", "revoke"]
        avd.assign_user.assert_not_called()
        directory.set_device_extension_attribute.assert_not_called()


    def test_first_interrupt_cancels_batch(self, arm, avd, directory, events):
        original = signal.getsignal(signal.SIGINT)
        options = SessionHostOptions()

        def deploy(sub, rg, name, template_path, parameters):
            events.append(f"deploy:{parameters['vmName']}")
            signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
            return {}
        arm.deploy_template_file.side_effect = deploy

        results = SessionHostManager(arm, avd, directory, options).provision_hosts(REQUESTS, _pool())

        assert options.cancel_event.is_set()
        assert [r.status for r in results] == [HostStatus.CREATED, HostStatus.CANCELLED, HostStatus.CANCELLED]
        assert events == ["mint", "deploy:pawJaneDoe", "revoke"]
        assert signal.getsignal(signal.SIGINT) is original

    def test_second_interrupt_aborts_after_revoke(self, arm, avd, directory, events):
        original = signal.getsignal(signal.SIGINT)

        def deploy(sub, rg, name, template_path, parameters):
            events.append(f"deploy:{parameters['vmName']}")
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
            handler(signal.SIGINT, None)
            return {}
        arm.deploy_template_file.side_effect = deploy

        with pytest.raises(KeyboardInterrupt):
            SessionHostManager(arm, avd, directory).provision_hosts(REQUESTS, _pool())
        assert events == ["mint", "deploy:pawJaneDoe", "revoke"]
        assert signal.getsignal(signal.SIGINT) is original

    def test_handler_left_alone_off_main_thread(self):
        original = signal.getsignal(signal.SIGINT)
        seen = []

        def worker():
            with interrupt_sets(threading.Event()):
                seen.append(signal.getsignal(signal.SIGINT))
        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

        assert seen == [original]


# ===========================================================================
# Interactive pieces
# ===========================================================================

class TestCollectRequests:

    def test_collects_requests(self):
        prompter = ScriptedPrompter([
            "2",
            "Jane", "Doe", "jane@contoso.com",
            "John", "Smith", "john@contoso.com",
        ])
        requests = collect_requests(prompter, "paw")
        assert requests == [
            SessionHostRequest("Jane", "Doe", "jane@contoso.com"),
            SessionHostRequest("John", "Smith", "john@contoso.com"),
        ]

    def test_count_limited_to_four(self):
        prompter = ScriptedPrompter(["5", "0", "1", "Ada", "Lovelace", "ada@contoso.com"])
        assert len(collect_requests(prompter, "paw")) == 1

    def test_invalid_upn_reprompts(self):
        prompter = ScriptedPrompter(["1", "Ada", "Lovelace", "ada", "ada@contoso.com"])
        assert collect_requests(prompter, "paw")[0].upn == "ada@contoso.com"

    def test_duplicate_vm_name_warned(self):
        prompter = ScriptedPrompter([
            "2",
            "Jane", "Doe", "jane@contoso.com",
            "Jane", "Doe", "jane.doe2@contoso.com",
        ])
        collect_requests(prompter, "paw")
        assert "already used in this batch" in prompter.transcript


class TestCredentials:

    def test_prompted_twice(self):
        prompter = ScriptedPrompter(["admin", "pawadmin"], secrets=["Pa55!word", "Pa55!word"])
        assert resolve_admin_credentials(prompter, SessionHostOptions()) == ("pawadmin", "Pa55!word")

    def test_from_key_vault(self):
        store = MagicMock(vault_url="https://paw-test.vault.azure.net")
        store.get_secret.side_effect = {"paw-admin-username": "pawadmin", "paw-admin-password": "kv-pass"}.get
        options = SessionHostOptions(credential_source="keyvault")
        assert resolve_admin_credentials(ScriptedPrompter(), options, store) == ("pawadmin", "kv-pass")

    def test_key_vault_read_failure(self):
        store = MagicMock()
        store.vault_url = "https://paw-kv.vault.azure.net"
        store.get_secret.side_effect = AzureApiError("GET secret failed: 403 Forbidden", status_code=403)
        options = SessionHostOptions(credential_source="keyvault")
        with pytest.raises(SessionHostError, match="paw-kv"):
            resolve_admin_credentials(ScriptedPrompter(), options, store)

    def test_missing_key_vault_secret(self):
        store = MagicMock(vault_url="https://paw-test.vault.azure.net")
        store.get_secret.return_value = None
        with pytest.raises(SessionHostError):
            resolve_admin_credentials(ScriptedPrompter(), SessionHostOptions(credential_source="keyvault"), store)


class TestResolveNetwork:

    def test_saved_network_still_present(self, arm):
        arm.list_virtual_networks.return_value = [{"name": "paw-vnet", "subnets": ["paw-snet"]}]
        assert resolve_network(arm, ScriptedPrompter(), make_config(), SessionHostOptions()) == ("paw-vnet", "paw-snet")

    def test_pick_discovered_network(self, arm):
        arm.list_virtual_networks.return_value = [
            {"name": "hub-vnet", "subnets": ["a"]},
            {"name": "spoke-vnet", "subnets": ["b", "c"]},
        ]
        prompter = ScriptedPrompter(["2", "2"])
        config = make_config(vnet_name="", subnet_name="")
        assert resolve_network(arm, prompter, config, SessionHostOptions()) == ("spoke-vnet", "c")

    def test_listing_failure_falls_back_to_manual_entry(self, arm, capsys):
        arm.list_virtual_networks.side_effect = AzureApiError("GET virtualNetworks failed: 500", status_code=500)
        prompter = ScriptedPrompter(["", ""])
        assert resolve_network(arm, prompter, make_config(), SessionHostOptions()) == ("paw-vnet", "paw-snet")
        assert "Could not list virtual networks" in capsys.readouterr().out

    def test_manual_entry(self, arm):
        prompter = ScriptedPrompter(["", "custom-snet"])
        options = SessionHostOptions(discover_network=False)
        assert resolve_network(arm, prompter, make_config(), options) == ("paw-vnet", "custom-snet")
        arm.list_virtual_networks.assert_not_called()


class TestWorkflow:

    def test_end_to_end(self, arm, avd, directory, template_dir, events):
        arm.list_virtual_networks.return_value = [{"name": "paw-vnet", "subnets": ["paw-snet"]}]
        avd.get_host_pool.return_value = {"name": "paw-hp"}
        prompter = ScriptedPrompter(
            [
                "y",                    # use paw-sessionhost.json
                "pawadmin",             # admin user
                "3",                    # both groups
                "1", "Jane", "Doe", "jane@contoso.com",
            ],
            secrets=["Pa55!word", "Pa55!word"],
        )

        results = run_session_host_workflow(
            make_config(), arm, avd, directory, prompter, template_dir=template_dir,
        )

        assert [r.status for r in results] == [HostStatus.CREATED]
        params = arm.deploy_template_file.call_args.args[4]
        assert arm.deploy_template_file.call_args.args[3].endswith("paw-sessionhost.json")
        assert params["adminUsername"] == "pawadmin"
        assert params["adminPassword"] == "Pa55!word"
        assert params["vnetName"] == "paw-vnet"
        assert directory.add_member.call_count == 2
        assert events[0] == "mint" and events[-1] == "revoke"

    def test_missing_host_pool(self, arm, avd, directory, template_dir):
        avd.get_host_pool.return_value = None
        with pytest.raises(SessionHostError, match="paw-hp"):
            run_session_host_workflow(make_config(), arm, avd, directory, ScriptedPrompter(), template_dir=template_dir)

    def test_host_pool_lookup_failure(self, arm, avd, directory, template_dir):
        avd.get_host_pool.side_effect = AzureApiError("GET hostPools/paw-hp failed: 403 Forbidden", status_code=403)
        with pytest.raises(SessionHostError, match="Could not read host pool paw-hp"):
            run_session_host_workflow(make_config(), arm, avd, directory, ScriptedPrompter(), template_dir=template_dir)
        avd.mint_registration_token.assert_not_called()
