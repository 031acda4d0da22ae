from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Callable, Iterable, Sequence

from bulkrecon.domain.exceptions import FilterResolutionError
from bulkrecon.domain.models import Entity
from bulkrecon.domain.ports.sources import DirectoryLookupProtocol

Predicate = Callable[[Entity], bool]


class PredicateFilter:
    """
    Назначение/ответственность:
        Применяет набор предикатов (логическое И) к перечисленным сущностям.
    Инварианты/гарантии:
        - Результат: подмножество входа с сохранением порядка.
        - Предикаты чистые: внешние вызовы выполняются при их построении, не здесь.
    """

    def apply(self, entities: Iterable[Entity], predicates: Sequence[Predicate]) -> list[Entity]:
        return [entity for entity in entities if all(p(entity) for p in predicates)]


def _keys(entity: Entity) -> set[str]:
    return {entity.entity_id.lower(), entity.name.lower()}


def _resolve_groups(lookup: DirectoryLookupProtocol, groups: Sequence[str]) -> list[set[str]]:
    resolved: list[set[str]] = []
    for group in groups:
        members = lookup.get_group_members(group)
        resolved.append({m.lower() for m in members})
    return resolved


def is_enabled(field: str = "enabled") -> Predicate:
    def predicate(entity: Entity) -> bool:
        return entity.get(field) is True

    return predicate


def not_template(field: str = "template") -> Predicate:
    def predicate(entity: Entity) -> bool:
        return not entity.get(field, False)

    return predicate


def in_groups(lookup: DirectoryLookupProtocol, groups: Sequence[str]) -> Predicate:
    """
    Назначение:
        Сущность должна состоять в каждой из перечисленных групп.
    Алгоритм:
        - Членство каждой группы запрашивается один раз при построении предиката.
        - Проверка: локальное пересечение по entity_id/name (без учёта регистра).
    """
    resolved = _resolve_groups(lookup, groups)

    def predicate(entity: Entity) -> bool:
        keys = _keys(entity)
        return all(keys & members for members in resolved)

    return predicate


def not_in_groups(lookup: DirectoryLookupProtocol, groups: Sequence[str]) -> Predicate:
    resolved = _resolve_groups(lookup, groups)

    def predicate(entity: Entity) -> bool:
        keys = _keys(entity)
        return not any(keys & members for members in resolved)

    return predicate


def name_matches(patterns: Sequence[str], field: str = "guest_os") -> Predicate:
    """Glob (fnmatch, без учёта регистра) по значению атрибута; любой из шаблонов."""
    lowered = [p.lower() for p in patterns]

    def predicate(entity: Entity) -> bool:
        value = entity.get(field)
        if value is None:
            return False
        text = str(value).lower()
        return any(fnmatchcase(text, p) for p in lowered)

    return predicate


def not_excluded(lookup: DirectoryLookupProtocol, refs: Sequence[str]) -> Predicate:
    """
    Назначение:
        Исключает явно перечисленные сущности.
    Ошибки/исключения:
        FilterResolutionError: если ссылку не удалось разрешить во внешней системе.
    """
    excluded: set[str] = set()
    for ref in refs:
        resolved = lookup.resolve_identity(ref)
        if resolved is None:
            raise FilterResolutionError(ref, f"Exclusion reference not found: {ref}")
        excluded.add(resolved.lower())
        excluded.add(ref.lower())

    def predicate(entity: Entity) -> bool:
        return not (_keys(entity) & excluded)

    return predicate
