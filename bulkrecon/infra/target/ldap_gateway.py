from __future__ import annotations

import ssl
from typing import Any, Iterator

from ldap3 import BASE, LEVEL, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import safe_rdn

from bulkrecon.domain.exceptions import ApplyFailed, FilterResolutionError, SourceUnavailable
from bulkrecon.domain.models import Entity, RelocationTarget, TargetState, parent_dn

USER_FILTER = "(&(objectCategory=person)(objectClass=user))"
USER_ATTRIBUTES = ["sAMAccountName", "userPrincipalName", "userAccountControl", "memberOf"]
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"
# LDAP_MATCHING_RULE_IN_CHAIN: транзитивное членство в группе.
IN_CHAIN_RULE = "1.2.840.113556.1.4.1941"
ACCOUNTDISABLE = 0x2
NO_SUCH_OBJECT = 32


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _domain_root(dn: str) -> str:
    """DC-компоненты DN: CN=g,OU=x,DC=corp,DC=local -> DC=corp,DC=local."""
    parts = [p.strip() for p in dn.split(",")]
    return ",".join(p for p in parts if p.upper().startswith("DC="))


def _is_no_such_object(exc: SourceUnavailable) -> bool:
    # Только noSuchObject означает "ссылка не найдена"; busy/unavailable остаются отказом источника.
    return exc.details.get("ldap_result") == NO_SUCH_OBJECT


def createLdapConnection(
    host: str,
    port: int | None,
    useSsl: bool,
    username: str,
    password: str,
    tlsSkipVerify: bool = False,
    caFile: str | None = None,
) -> Connection:
    """
    Назначение:
        Открывает синхронное подключение к AD (simple bind).
    Ошибки/исключения:
        SourceUnavailable: сервер недоступен или bind отклонён.
    """
    tls = Tls(validate=ssl.CERT_NONE if tlsSkipVerify else ssl.CERT_REQUIRED, ca_certs_file=caFile)
    server = Server(host, port=port, use_ssl=useSsl, tls=tls)
    try:
        return Connection(server, user=username, password=password, auto_bind=True, raise_exceptions=False)
    except LDAPException as exc:
        raise SourceUnavailable(host, f"LDAP bind failed: {exc}") from exc


class LdapDirectoryGateway:
    """
    Назначение/ответственность:
        Адаптер Active Directory: перечисление пользователей OU, членство в группах,
        перенос пользователей между OU (modify DN).
    Ограничения:
        - Одно синхронное подключение ldap3, постраничный поиск (Simple Paged Results).
    """

    def __init__(self, connection: Connection, base_dn: str | None = None, search_scope: str = "SUBTREE", page_size: int = 500):
        self.conn = connection
        self.base_dn = base_dn
        scopes = {"LEVEL": LEVEL, "SUBTREE": SUBTREE}
        key = (search_scope or "").strip().upper()
        if key not in scopes:
            raise ValueError(f"Unsupported ldap_search_scope: {search_scope} (expected SUBTREE|LEVEL)")
        self.search_scope = scopes[key]
        self.page_size = page_size

    def _paged_search(self, base: str, search_filter: str, scope, attributes: list[str]) -> Iterator[dict[str, Any]]:
        cookie = None
        while True:
            self.conn.search(
                base,
                search_filter,
                search_scope=scope,
                attributes=attributes,
                paged_size=self.page_size,
                paged_cookie=cookie,
            )
            result = self.conn.result or {}
            code = result.get("result", 0)
            if code == NO_SUCH_OBJECT:
                raise SourceUnavailable(base, f"Directory object not found: {base}", details={"ldap_result": code})
            if code != 0:
                raise SourceUnavailable(
                    base,
                    f"LDAP search failed: {result.get('description')} {result.get('message', '')}".strip(),
                    details={"ldap_result": code},
                )
            for item in self.conn.response or []:
                if item.get("type") == "searchResEntry":
                    yield item
            cookie = result.get("controls", {}).get(PAGED_RESULTS_OID, {}).get("value", {}).get("cookie")
            if not cookie:
                break

    def list(self, scope: str) -> list[Entity]:
        try:
            return [self._to_entity(item) for item in self._paged_search(scope, USER_FILTER, self.search_scope, USER_ATTRIBUTES)]
        except LDAPException as exc:
            raise SourceUnavailable(scope, f"LDAP search failed: {exc}") from exc

    @staticmethod
    def _to_entity(item: dict[str, Any]) -> Entity:
        dn = item["dn"]
        attrs = item.get("attributes") or {}
        uac = _first(attrs.get("userAccountControl"))
        enabled = None if uac in (None, "") else not (int(uac) & ACCOUNTDISABLE)
        sam = _first(attrs.get("sAMAccountName")) or dn
        return Entity(
            entity_id=dn,
            name=str(sam),
            attributes={
                "sam_account_name": sam,
                "user_principal_name": _first(attrs.get("userPrincipalName")),
                "enabled": enabled,
                "container": parent_dn(dn),
                "member_of": tuple(_as_list(attrs.get("memberOf"))),
            },
        )

    def _require_base(self, ref: str) -> str:
        if not self.base_dn:
            raise FilterResolutionError(ref, f"ldap_base_dn is required to resolve '{ref}' by name")
        return self.base_dn

    def _find_group_dn(self, group: str) -> str:
        if "=" in group:
            base, search_filter, scope = group, "(objectClass=group)", BASE
        else:
            name = escape_filter_chars(group)
            base = self._require_base(group)
            search_filter = f"(&(objectClass=group)(|(cn={name})(sAMAccountName={name})))"
            scope = SUBTREE
        try:
            found = [item["dn"] for item in self._paged_search(base, search_filter, scope, ["cn"])]
        except SourceUnavailable as exc:
            if not _is_no_such_object(exc):
                raise
            raise FilterResolutionError(group, f"Group not found: {group}") from exc
        except LDAPException as exc:
            raise SourceUnavailable(group, f"LDAP search failed: {exc}") from exc
        if not found:
            raise FilterResolutionError(group, f"Group not found: {group}")
        if len(found) > 1:
            raise FilterResolutionError(group, f"Group name is ambiguous ({len(found)} matches): {group}")
        return found[0]

    def get_group_members(self, group: str) -> set[str]:
        group_dn = self._find_group_dn(group)
        base = self.base_dn or _domain_root(group_dn)
        search_filter = f"(memberOf:{IN_CHAIN_RULE}:={escape_filter_chars(group_dn)})"
        try:
            return {item["dn"] for item in self._paged_search(base, search_filter, SUBTREE, ["cn"])}
        except LDAPException as exc:
            raise SourceUnavailable(group, f"LDAP search failed: {exc}") from exc

    def resolve_identity(self, ref: str) -> str | None:
        if "=" in ref:
            base, search_filter, scope = ref, USER_FILTER, BASE
        else:
            name = escape_filter_chars(ref)
            base = self._require_base(ref)
            search_filter = f"(&{USER_FILTER}(|(sAMAccountName={name})(userPrincipalName={name})))"
            scope = SUBTREE
        try:
            found = [item["dn"] for item in self._paged_search(base, search_filter, scope, ["sAMAccountName"])]
        except SourceUnavailable as exc:
            if not _is_no_such_object(exc):
                raise
            return None
        except LDAPException as exc:
            raise SourceUnavailable(ref, f"LDAP search failed: {exc}") from exc
        return found[0] if found else None

    def apply(self, entity: Entity, target: TargetState) -> None:
        """
        Назначение:
            Переносит объект в целевую OU через modify DN (RDN сохраняется).
        Ошибки/исключения:
            ApplyFailed: сервер отклонил операцию.
        """
        if not isinstance(target, RelocationTarget):
            raise ApplyFailed(entity.entity_id, f"Unsupported target for directory move: {target!r}")
        relative_dn = "+".join(safe_rdn(entity.entity_id))
        try:
            ok = self.conn.modify_dn(entity.entity_id, relative_dn, new_superior=target.container)
        except LDAPException as exc:
            raise ApplyFailed(entity.entity_id, f"modify DN failed: {exc}") from exc
        if not ok:
            result = self.conn.result or {}
            raise ApplyFailed(
                entity.entity_id,
                f"modify DN failed: {result.get('description')} {result.get('message', '')}".strip(),
                details={"ldap_result": result.get("result")},
            )
