from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

from bulkrecon.domain.error_codes import ErrorCode
from bulkrecon.domain.exceptions import ApplyFailed, FilterResolutionError, SourceUnavailable
from bulkrecon.domain.models import Entity, SetMergeTarget, TargetState
from bulkrecon.infra.http.graph_client import ApiError, GraphApiClient

_GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_USER_SELECT = "id,userPrincipalName,accountEnabled,assignedLicenses"
# Расширенные запросы Graph ($filter по assignedLicenses) требуют eventual consistency.
_ADVANCED_QUERY_HEADERS = {"ConsistencyLevel": "eventual"}


def _api_error_code(exc: ApiError) -> str:
    if exc.code in ("NETWORK_ERROR", "INVALID_JSON"):
        return exc.code
    return ErrorCode.from_status(exc.status_code).value


class GraphLicenseGateway:
    """
    Назначение/ответственность:
        Адаптер Microsoft Graph для отключения service plans в лицензиях.
        Реализует EntitySource (scope = SKU), DirectoryLookup и apply-capability.
    Взаимодействия:
        Использует GraphApiClient; ошибки транспорта переводятся в доменные исключения.
    """

    def __init__(self, client: GraphApiClient):
        self.client = client
        self._skus: list[dict[str, Any]] | None = None

    def _subscribed_skus(self) -> list[dict[str, Any]]:
        if self._skus is None:
            self._skus = list(self.client.getPagedItems("/subscribedSkus"))
        return self._skus

    def find_sku(self, scope: str) -> dict[str, Any]:
        """
        Назначение:
            Находит SKU по skuPartNumber (без учёта регистра) или skuId.
        Ошибки/исключения:
            SourceUnavailable: Graph недоступен или SKU не подписан в тенанте.
        """
        try:
            skus = self._subscribed_skus()
        except ApiError as exc:
            raise SourceUnavailable(scope, f"Failed to read subscribed SKUs: {exc}", details=exc.to_dict()) from exc
        key = scope.strip().lower()
        for sku in skus:
            if str(sku.get("skuPartNumber", "")).lower() == key or str(sku.get("skuId", "")).lower() == key:
                return sku
        raise SourceUnavailable(scope, f"SKU not found in tenant: {scope}")

    def service_plans(self, scope: str) -> dict[str, str]:
        """servicePlanName -> servicePlanId для SKU."""
        sku = self.find_sku(scope)
        return {
            plan["servicePlanName"]: plan["servicePlanId"]
            for plan in sku.get("servicePlans", [])
            if plan.get("servicePlanName") and plan.get("servicePlanId")
        }

    def list(self, scope: str) -> list[Entity]:
        sku = self.find_sku(scope)
        sku_id = sku["skuId"]
        params = {
            "$filter": f"assignedLicenses/any(x:x/skuId eq {sku_id})",
            "$select": _USER_SELECT,
            "$count": "true",
            "$top": 999,
        }
        try:
            users = list(self.client.getPagedItems("/users", params=params, headers=_ADVANCED_QUERY_HEADERS))
        except ApiError as exc:
            raise SourceUnavailable(scope, f"Failed to list users for SKU {scope}: {exc}", details=exc.to_dict()) from exc
        return [self._to_entity(user, sku_id) for user in users]

    @staticmethod
    def _to_entity(user: dict[str, Any], sku_id: str) -> Entity:
        disabled: list[str] = []
        for lic in user.get("assignedLicenses") or []:
            if str(lic.get("skuId", "")).lower() == str(sku_id).lower():
                disabled = list(lic.get("disabledPlans") or [])
                break
        upn = user.get("userPrincipalName") or user["id"]
        return Entity(
            entity_id=user["id"],
            name=upn,
            attributes={
                "user_principal_name": upn,
                "enabled": user.get("accountEnabled"),
                "sku_id": sku_id,
                "disabled_plans": frozenset(disabled),
            },
        )

    def _resolve_group_id(self, group: str) -> str:
        if _GUID_RE.match(group):
            try:
                data = self.client.getJson(f"/groups/{group}", params={"$select": "id"})
            except ApiError as exc:
                if exc.status_code == 404:
                    raise FilterResolutionError(group, f"Group not found: {group}") from exc
                raise SourceUnavailable(group, f"Failed to resolve group {group}: {exc}") from exc
            return data["id"]

        escaped = group.replace("'", "''")
        try:
            found = list(
                self.client.getPagedItems("/groups", params={"$filter": f"displayName eq '{escaped}'", "$select": "id"})
            )
        except ApiError as exc:
            raise SourceUnavailable(group, f"Failed to resolve group {group}: {exc}") from exc
        if not found:
            raise FilterResolutionError(group, f"Group not found: {group}")
        if len(found) > 1:
            raise FilterResolutionError(group, f"Group name is ambiguous ({len(found)} matches): {group}")
        return found[0]["id"]

    def get_group_members(self, group: str) -> set[str]:
        group_id = self._resolve_group_id(group)
        try:
            members = self.client.getPagedItems(
                f"/groups/{group_id}/transitiveMembers", params={"$select": "id,userPrincipalName"}
            )
            return {m.get("userPrincipalName") or m["id"] for m in members}
        except ApiError as exc:
            raise SourceUnavailable(group, f"Failed to read members of {group}: {exc}") from exc

    def resolve_identity(self, ref: str) -> str | None:
        try:
            data = self.client.getJson(f"/users/{quote(ref, safe='@')}", params={"$select": "id"})
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            raise SourceUnavailable(ref, f"Failed to resolve user {ref}: {exc}") from exc
        return data.get("id") if isinstance(data, dict) else None

    def apply(self, entity: Entity, target: TargetState) -> None:
        """
        Назначение:
            Отправляет assignLicense с объединённым списком disabledPlans.
        Ошибки/исключения:
            ApplyFailed: любой ответ Graph кроме 2xx.
        """
        if not isinstance(target, SetMergeTarget):
            raise ApplyFailed(entity.entity_id, f"Unsupported target for license update: {target!r}")
        body = {
            "addLicenses": [{"skuId": entity.get("sku_id"), "disabledPlans": sorted(target.values)}],
            "removeLicenses": [],
        }
        try:
            self.client.postJson(f"/users/{entity.entity_id}/assignLicense", body)
        except ApiError as exc:
            raise ApplyFailed(
                entity.entity_id,
                f"assignLicense failed: {exc.message}",
                code=_api_error_code(exc),
                details={"status_code": exc.status_code, "body_snippet": exc.body_snippet},
            ) from exc
