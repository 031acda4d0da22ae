from __future__ import annotations

import ssl
from typing import Any

from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from bulkrecon.domain.exceptions import ApplyFailed, FilterResolutionError, SourceUnavailable
from bulkrecon.domain.models import Entity, ScalarTarget, TargetState

TOOLS_UPGRADE_POLICIES = ("manual", "upgradeAtPowerCycle")
WHOLE_INVENTORY = "*"
_CONTAINER_TYPES = [vim.Folder, vim.Datacenter, vim.ClusterComputeResource]


def connectVSphere(host: str, username: str, password: str, port: int = 443, tlsSkipVerify: bool = False):
    """
    Назначение:
        Подключение к vCenter/ESXi через pyVmomi SmartConnect.
    Ошибки/исключения:
        SourceUnavailable: хост недоступен или логин отклонён.
    """
    ssl_ctx = None
    if tlsSkipVerify:
        ssl_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ssl_ctx.check_hostname = False
        ssl_ctx.verify_mode = ssl.CERT_NONE
    try:
        return connect.SmartConnect(host=host, user=username, pwd=password, port=port, sslContext=ssl_ctx)
    except (vmodl.MethodFault, OSError) as exc:
        raise SourceUnavailable(host, f"vSphere connection failed: {getattr(exc, 'msg', None) or exc}") from exc


def disconnectVSphere(si) -> None:
    connect.Disconnect(si)


def _fault_message(exc: Exception) -> str:
    return getattr(exc, "msg", None) or str(exc)


class VSphereInventoryGateway:
    """
    Назначение/ответственность:
        Адаптер vSphere: перечисление VM в папке/датацентре/кластере
        и применение политики обновления VMware Tools.
    Взаимодействия:
        Держит ссылки на managed objects последнего list() для apply().
    """

    def __init__(self, service_instance):
        self.si = service_instance
        self._vms: dict[str, Any] = {}

    def _content(self):
        return self.si.RetrieveContent()

    def _view_objects(self, container, types: list) -> list:
        view = self._content().viewManager.CreateContainerView(container, types, True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def _find_container(self, scope: str):
        content = self._content()
        if scope == WHOLE_INVENTORY:
            return content.rootFolder
        matches = [obj for obj in self._view_objects(content.rootFolder, _CONTAINER_TYPES) if obj.name == scope]
        if not matches:
            raise SourceUnavailable(scope, f"Inventory container not found: {scope}")
        if len(matches) > 1:
            raise SourceUnavailable(scope, f"Inventory container name is ambiguous ({len(matches)} matches): {scope}")
        return matches[0]

    def list(self, scope: str) -> list[Entity]:
        try:
            container = self._find_container(scope)
            vms = self._view_objects(container, [vim.VirtualMachine])
            entities = [self._to_entity(vm) for vm in vms]
        except (vmodl.MethodFault, OSError) as exc:
            raise SourceUnavailable(scope, f"vSphere inventory read failed: {_fault_message(exc)}") from exc
        for vm in vms:
            self._vms[vm._moId] = vm
        return entities

    @staticmethod
    def _to_entity(vm) -> Entity:
        config = vm.config
        tools = getattr(config, "tools", None) if config is not None else None
        runtime = getattr(vm, "runtime", None)
        return Entity(
            entity_id=vm._moId,
            name=vm.name,
            attributes={
                "guest_os": getattr(config, "guestFullName", None),
                "tools_upgrade_policy": getattr(tools, "toolsUpgradePolicy", None),
                "power_state": str(getattr(runtime, "powerState", "")) or None,
                "template": bool(getattr(config, "template", False)),
            },
        )

    def get_group_members(self, group: str) -> set[str]:
        raise FilterResolutionError(group, "Group membership filters are not supported for vSphere inventory")

    def resolve_identity(self, ref: str) -> str | None:
        try:
            vms = self._view_objects(self._content().rootFolder, [vim.VirtualMachine])
        except (vmodl.MethodFault, OSError) as exc:
            raise SourceUnavailable(ref, f"vSphere inventory read failed: {_fault_message(exc)}") from exc
        for vm in vms:
            if vm.name == ref or vm._moId == ref:
                return vm._moId
        return None

    def apply(self, entity: Entity, target: TargetState) -> None:
        """
        Назначение:
            ReconfigVM_Task с новой tools.toolsUpgradePolicy; ждёт завершения задачи.
        """
        if not isinstance(target, ScalarTarget) or target.field != "tools_upgrade_policy":
            raise ApplyFailed(entity.entity_id, f"Unsupported target for VM reconfigure: {target!r}")
        vm = self._vms.get(entity.entity_id)
        if vm is None:
            raise ApplyFailed(entity.entity_id, f"VM is not part of the enumerated inventory: {entity.name}")

        spec = vim.vm.ConfigSpec()
        spec.tools = vim.vm.ToolsConfigInfo()
        spec.tools.toolsUpgradePolicy = target.value
        try:
            task = vm.ReconfigVM_Task(spec=spec)
            WaitForTask(task)
        except vmodl.MethodFault as exc:
            raise ApplyFailed(entity.entity_id, f"ReconfigVM_Task failed: {_fault_message(exc)}") from exc
