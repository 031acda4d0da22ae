from __future__ import annotations

from typing import Any, Iterable, Mapping

from bulkrecon.domain.models import Entity, RelocationTarget, ScalarTarget, SetMergeTarget
from bulkrecon.domain.ports.sources import ComputeTargetCallable


def merge_disabled_plans(
    current: Iterable[str],
    requested: Iterable[str],
    scope: Iterable[str],
) -> tuple[frozenset[str], frozenset[str]]:
    """
    Назначение:
        Аддитивное слияние отключённых планов в рамках одного SKU.

    Выходные данные:
        (result, ignored)
            result = (current ∩ scope) ∪ (requested ∩ scope)
            ignored = requested \\ scope
    """
    scope_set = frozenset(scope)
    current_in_scope = frozenset(current) & scope_set
    requested_set = frozenset(requested)
    ignored = requested_set - scope_set
    return current_in_scope | (requested_set & scope_set), ignored


def map_plan_names(service_plans: Mapping[str, str], names: Iterable[str]) -> tuple[frozenset[str], list[str]]:
    """
    Назначение:
        Переводит имена service plans (или их ID) в ID по каталогу SKU.

    Входные данные:
        service_plans: dict servicePlanName -> servicePlanId
        names: запрошенные имена или ID

    Выходные данные:
        (resolved_ids, unknown_names)
    """
    by_name = {k.lower(): v for k, v in service_plans.items()}
    known_ids = {v.lower(): v for v in service_plans.values()}
    resolved: set[str] = set()
    unknown: list[str] = []
    for name in names:
        key = name.strip().lower()
        if not key:
            continue
        if key in by_name:
            resolved.add(by_name[key])
        elif key in known_ids:
            resolved.add(known_ids[key])
        else:
            unknown.append(name.strip())
    return frozenset(resolved), unknown


def scalar_target(field: str, value: Any) -> ComputeTargetCallable:
    target = ScalarTarget(field=field, value=value)

    def compute(_entity: Entity) -> ScalarTarget:
        return target

    return compute


def relocation_target(container: str) -> ComputeTargetCallable:
    target = RelocationTarget(container=container)

    def compute(_entity: Entity) -> RelocationTarget:
        return target

    return compute


def disabled_plans_target(
    requested: Iterable[str],
    scope: Iterable[str],
    field: str = "disabled_plans",
) -> ComputeTargetCallable:
    requested_set = frozenset(requested)
    scope_set = frozenset(scope)

    def compute(entity: Entity) -> SetMergeTarget:
        current = frozenset(entity.get(field) or ()) & scope_set
        values, ignored = merge_disabled_plans(current, requested_set, scope_set)
        return SetMergeTarget(field=field, values=values, current=current, ignored=ignored)

    return compute
