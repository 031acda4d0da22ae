from __future__ import annotations

from typing import Callable, Protocol

from bulkrecon.domain.models import Entity, TargetState


class EntitySourceProtocol(Protocol):
    """
    Назначение/ответственность:
        Перечисление сущностей внешней системы в заданном scope.
    """

    def list(self, scope: str) -> list[Entity]:
        """
        Контракт:
            Вход: scope (OU DN, SKU, имя папки/датацентра).
            Выход: список Entity; пустой список допустим.
        Ошибки/исключения:
            SourceUnavailable: система недоступна или scope не существует.
        """
        ...


class DirectoryLookupProtocol(Protocol):
    """
    Назначение/ответственность:
        Разрешение групп и ссылок исключений для PredicateFilter.
    """

    def get_group_members(self, group: str) -> set[str]:
        """
        Контракт:
            Выход: множество идентификаторов (entity_id и/или name) участников группы.
        Ошибки/исключения:
            FilterResolutionError: группа не найдена.
        """
        ...

    def resolve_identity(self, ref: str) -> str | None:
        """
        Контракт:
            Выход: entity_id для ссылки (имя/UPN/DN) или None, если не найдено.
        """
        ...


class ServicePlanCatalogProtocol(Protocol):
    """
    Назначение/ответственность:
        Каталог service plans лицензии (SKU).
    """

    def service_plans(self, scope: str) -> dict[str, str]:
        """
        Контракт:
            Выход: servicePlanName -> servicePlanId для SKU.
        Ошибки/исключения:
            SourceUnavailable: SKU не найден или каталог недоступен.
        """
        ...


ApplyCallable = Callable[[Entity, TargetState], None]
ComputeTargetCallable = Callable[[Entity], TargetState]
