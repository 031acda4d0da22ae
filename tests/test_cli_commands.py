from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import httpx
from pyVmomi import vim
from typer.testing import CliRunner

from bulkrecon.infra.target import vsphere_gateway
from bulkrecon.main import app

runner = CliRunner()


class DummyVm:
    def __init__(self, moId: str, name: str, guest: str, policy: str, template: bool = False):
        self._moId = moId
        self.name = name
        self.config = SimpleNamespace(guestFullName=guest, template=template, tools=SimpleNamespace(toolsUpgradePolicy=policy))
        self.runtime = SimpleNamespace(powerState="poweredOff")
        self.reconfigured: list[str] = []

    def ReconfigVM_Task(self, spec):
        self.reconfigured.append(spec.tools.toolsUpgradePolicy)
        return "task"


class DummyServiceInstance:
    def __init__(self, vms):
        dc = SimpleNamespace(name="DC1")
        vmsByType = {True: vms, False: [dc]}

        def createView(container, types, recursive):
            return SimpleNamespace(view=vmsByType[vim.VirtualMachine in types], Destroy=lambda: None)

        self.content = SimpleNamespace(
            rootFolder=SimpleNamespace(name="root"),
            viewManager=SimpleNamespace(CreateContainerView=createView),
        )

    def RetrieveContent(self):
        return self.content


def test_tools_policy_updates_windows_vms_only(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(vsphere_gateway, "WaitForTask", lambda task: None)
    vms = [
        DummyVm("vm-1", "web01", "Microsoft Windows Server 2019 (64-bit)", "manual"),
        DummyVm("vm-2", "web02", "Microsoft Windows Server 2022 (64-bit)", "upgradeAtPowerCycle"),
        DummyVm("vm-3", "db01", "Ubuntu Linux (64-bit)", "manual"),
        DummyVm("vm-4", "tpl-win", "Microsoft Windows Server 2022 (64-bit)", "manual", template=True),
        DummyVm("vm-5", "web03", "Microsoft Windows Server 2016 (64-bit)", "manual"),
    ]

    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "vm1",
            "tools-policy",
            "--scope", "DC1",
            "--target", "upgradeAtPowerCycle",
            "--os-glob", "*windows*",
            "--exclude", "web03",
        ],
        obj={"vsphereServiceInstance": DummyServiceInstance(vms)},
    )

    assert result.exit_code == 0, result.output
    assert "attempted=2 applied=1 skipped=1 failed=0" in result.output
    assert vms[0].reconfigured == ["upgradeAtPowerCycle"]
    assert all(not vm.reconfigured for vm in vms[1:])
    data = json.loads((tmp_path / "reports" / "report_tools-policy_vm1.json").read_text(encoding="utf-8"))
    assert data["meta"]["scope"] == "DC1"
    assert data["context"]["selection"] == {"enumerated": 5, "selected": 2}


def test_tools_policy_rejects_unknown_policy(tmp_path: Path):
    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "tools-policy", "--scope", "DC1", "--target", "always",
        ],
        obj={"vsphereServiceInstance": DummyServiceInstance([])},
    )

    assert result.exit_code == 2
    assert "--target must be one of" in result.output


def _groupsHandler(request: httpx.Request) -> httpx.Response:
    path = request.url.path.removeprefix("/v1.0")
    if path == "/groups":
        name = request.url.params["$filter"]
        groupId = "g-old" if "Old" in name else "g-new"
        return httpx.Response(200, json={"value": [{"id": groupId}]})
    if path == "/groups/g-old/transitiveMembers":
        return httpx.Response(200, json={"value": [{"id": "1", "userPrincipalName": "anna@corp.test"}, {"id": "2", "userPrincipalName": "boris@corp.test"}]})
    if path == "/groups/g-new/transitiveMembers":
        return httpx.Response(200, json={"value": [{"id": "1", "userPrincipalName": "Anna@corp.test"}, {"id": "3", "userPrincipalName": "vera@corp.test"}]})
    return httpx.Response(404)


def test_group_compare_prints_differences(tmp_path: Path):
    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "--graph-token", "tok",
            "--run-id", "cmp1",
            "group-compare", "--group", "Sales Old", "--group", "Sales New",
        ],
        obj={"graphTransport": httpx.MockTransport(_groupsHandler)},
    )

    assert result.exit_code == 0, result.output
    assert "only_in_first=1 only_in_second=1 in_both=1" in result.output
    assert "< boris@corp.test" in result.output
    assert "> vera@corp.test" in result.output
    data = json.loads((tmp_path / "reports" / "report_group-compare_cmp1.json").read_text(encoding="utf-8"))
    assert data["context"]["comparison"]["in_both"] == ["anna@corp.test"]


def test_group_compare_needs_two_groups(tmp_path: Path):
    result = runner.invoke(
        app,
        ["--log-dir", str(tmp_path / "logs"), "--report-dir", str(tmp_path / "reports"), "--graph-token", "tok",
         "group-compare", "--group", "Only"],
        obj={"graphTransport": httpx.MockTransport(_groupsHandler)},
    )

    assert result.exit_code == 2


def test_group_compare_rejects_unknown_provider(tmp_path: Path):
    result = runner.invoke(
        app,
        ["--log-dir", str(tmp_path / "logs"), "group-compare", "--group", "A", "--group", "B", "--provider", "okta"],
    )

    assert result.exit_code == 2


class FailingViewServiceInstance(DummyServiceInstance):
    """Первые failAfter представлений VM отдаются, дальше CreateContainerView падает."""

    def __init__(self, vms, fault: Exception, failAfter: int = 0):
        super().__init__(vms)
        createView = self.content.viewManager.CreateContainerView
        calls = {"vm": 0}

        def failingView(container, types, recursive):
            if vim.VirtualMachine in types:
                calls["vm"] += 1
                if calls["vm"] > failAfter:
                    raise fault
            return createView(container, types, recursive)

        self.content.viewManager = SimpleNamespace(CreateContainerView=failingView)


def _toolsPolicy(tmp_path: Path, si, *extra: str):
    return runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "tools-policy", "--scope", "DC1", "--target", "manual",
            *extra,
        ],
        obj={"vsphereServiceInstance": si},
    )


def test_tools_policy_connection_drop_is_fatal(tmp_path: Path):
    vms = [DummyVm("vm-1", "web01", "Microsoft Windows Server 2019 (64-bit)", "upgradeAtPowerCycle")]

    result = _toolsPolicy(tmp_path, FailingViewServiceInstance(vms, ConnectionResetError("peer reset")))

    assert result.exit_code == 2
    assert "vSphere inventory read failed" in result.output
    assert list((tmp_path / "reports").glob("*.json")) == []
    assert not vms[0].reconfigured


def test_tools_policy_exclusion_lookup_fault_is_fatal(tmp_path: Path):
    vms = [DummyVm("vm-1", "web01", "Microsoft Windows Server 2019 (64-bit)", "upgradeAtPowerCycle")]
    si = FailingViewServiceInstance(vms, vim.fault.NoPermission(msg="permission denied"), failAfter=1)

    result = _toolsPolicy(tmp_path, si, "--exclude", "web01")

    assert result.exit_code == 2
    assert list((tmp_path / "reports").glob("*.json")) == []
    assert not vms[0].reconfigured


STAFF_OU = "OU=Staff,DC=corp,DC=local"
DISABLED_OU = f"OU=Disabled,{STAFF_OU}"
OLD_GROUP = "CN=Sales Old,OU=Groups,DC=corp,DC=local"
NEW_GROUP = "CN=Sales New,OU=Groups,DC=corp,DC=local"


def _entry(dn: str, sam: str | None = None) -> dict:
    attributes = {"sAMAccountName": sam, "userAccountControl": 512} if sam else {}
    return {"type": "searchResEntry", "dn": dn, "attributes": attributes}


class DummyLdapConnection:
    """Минимальный ldap3.Connection: один page на поиск, modify_dn отказывает для boris."""

    def __init__(self):
        self.result: dict = {}
        self.response: list = []
        self.moves: list[tuple[str, str]] = []
        self.unbound = False

    def search(self, base, search_filter, search_scope=None, attributes=None, paged_size=None, paged_cookie=None):
        self.result = {"result": 0, "description": "success", "controls": {}}
        if base == STAFF_OU:
            self.response = [
                _entry(f"CN=Anna,{STAFF_OU}", "anna"),
                _entry(f"CN=Boris,{STAFF_OU}", "boris"),
                _entry(f"CN=Gleb,{DISABLED_OU}", "gleb"),
            ]
        elif base in (OLD_GROUP, NEW_GROUP):
            self.response = [_entry(base)]
        elif "memberOf:" in search_filter and "Sales Old" in search_filter:
            self.response = [_entry(f"CN=Anna,{STAFF_OU}"), _entry(f"CN=Boris,{STAFF_OU}")]
        elif "memberOf:" in search_filter and "Sales New" in search_filter:
            self.response = [_entry(f"CN=Anna,{STAFF_OU}"), _entry(f"CN=Vera,{STAFF_OU}")]
        else:
            self.response = []
        return True

    def modify_dn(self, dn, relative_dn, new_superior=None):
        if dn.startswith("CN=Boris"):
            self.result = {"result": 50, "description": "insufficientAccessRights", "message": ""}
            return False
        self.moves.append((dn, new_superior))
        return True

    def unbind(self):
        self.unbound = True


def test_move_users_through_cli(tmp_path: Path):
    connection = DummyLdapConnection()

    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "mv1",
            "move-users", "--scope", STAFF_OU, "--target", DISABLED_OU,
        ],
        obj={"ldapConnection": connection},
    )

    assert result.exit_code == 1, result.output
    assert "attempted=3 applied=1 skipped=1 failed=1" in result.output
    assert connection.moves == [(f"CN=Anna,{STAFF_OU}", DISABLED_OU)]
    assert connection.unbound is False
    data = json.loads((tmp_path / "reports" / "report_move-users_mv1.json").read_text(encoding="utf-8"))
    statuses = {item["name"]: item["status"] for item in data["items"]}
    assert statuses == {"anna": "APPLIED", "boris": "FAILED", "gleb": "SKIPPED"}
    assert data["summary"]["error_stats"] == {"APPLY_FAILED": 1}


def test_move_users_rejects_unknown_search_scope(tmp_path: Path):
    connection = DummyLdapConnection()

    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "--ldap-search-scope", "ONE",
            "move-users", "--scope", STAFF_OU, "--target", DISABLED_OU,
        ],
        obj={"ldapConnection": connection},
    )

    assert result.exit_code == 2
    assert "ldap_search_scope" in result.output
    assert connection.moves == []


def test_group_compare_ldap_opens_and_unbinds_connection(tmp_path: Path, monkeypatch):
    connection = DummyLdapConnection()
    opened: list[dict] = []

    def fakeConnect(**kwargs):
        opened.append(kwargs)
        return connection

    monkeypatch.setattr("bulkrecon.main.createLdapConnection", fakeConnect)

    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "cmp2",
            "--ldap-host", "dc01.corp.local",
            "--ldap-username", "svc-recon@corp.local",
            "--ldap-password", "pw",
            "group-compare", "--provider", "ldap", "--group", OLD_GROUP, "--group", NEW_GROUP,
        ],
    )

    assert result.exit_code == 0, result.output
    assert opened[0]["host"] == "dc01.corp.local"
    assert connection.unbound is True
    assert f"< CN=Boris,{STAFF_OU}" in result.output
    assert f"> CN=Vera,{STAFF_OU}" in result.output
    data = json.loads((tmp_path / "reports" / "report_group-compare_cmp2.json").read_text(encoding="utf-8"))
    assert data["context"]["comparison"]["in_both"] == [f"CN=Anna,{STAFF_OU}"]


def test_group_compare_ldap_requires_connection_settings(tmp_path: Path, monkeypatch):
    for name in ("BULKRECON_LDAP_HOST", "BULKRECON_LDAP_USERNAME", "BULKRECON_LDAP_PASSWORD"):
        monkeypatch.delenv(name, raising=False)

    result = runner.invoke(
        app,
        [
            "--log-dir", str(tmp_path / "logs"),
            "--report-dir", str(tmp_path / "reports"),
            "group-compare", "--provider", "ldap", "--group", OLD_GROUP, "--group", NEW_GROUP,
        ],
    )

    assert result.exit_code == 2
    assert "missing settings" in result.output
