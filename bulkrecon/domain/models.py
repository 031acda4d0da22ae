from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class Entity:
    """
    Назначение:
        Снимок внешней сущности (пользователь AD/Graph, VM) на время одного запуска.

    Поля:
        entity_id: DN, moId VM или object id Graph
        name: человекочитаемое имя (sAMAccountName, имя VM, UPN)
        attributes: текущие значения атрибутов, только для чтения
    """

    entity_id: str
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)


def normalize_dn(value: str | None) -> str:
    """Нормализует DN для сравнения: регистр и пробелы вокруг запятых."""
    if not value:
        return ""
    return ",".join(part.strip() for part in value.split(",")).lower()


def parent_dn(dn: str) -> str:
    """Родительский контейнер DN (без RDN). Экранированные запятые учитываются."""
    idx = 0
    while True:
        idx = dn.find(",", idx)
        if idx < 0:
            return ""
        if idx > 0 and dn[idx - 1] == "\\":
            idx += 1
            continue
        return dn[idx + 1:].strip()


@dataclass(frozen=True)
class ScalarTarget:
    """Целевое значение одного атрибута (например toolsUpgradePolicy)."""

    field: str
    value: Any

    def is_satisfied_by(self, entity: Entity) -> bool:
        return entity.get(self.field) == self.value

    def describe(self) -> str:
        return f"{self.field}={self.value}"


@dataclass(frozen=True)
class RelocationTarget:
    """Перенос объекта каталога в контейнер (OU)."""

    container: str
    field: str = "container"

    def is_satisfied_by(self, entity: Entity) -> bool:
        return normalize_dn(entity.get(self.field)) == normalize_dn(self.container)

    def describe(self) -> str:
        return f"{self.field}={self.container}"


@dataclass(frozen=True)
class SetMergeTarget:
    """
    Назначение:
        Аддитивное слияние множества (disabled service plans в рамках одного SKU).

    Инварианты/гарантии:
        - current ⊆ values: уже отключённые планы SKU никогда не удаляются.
        - ignored: запрошенные значения вне scope SKU (только предупреждение).
    """

    field: str
    values: frozenset[str]
    current: frozenset[str]
    ignored: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.current <= self.values:
            raise ValueError("Set-merge target must contain all current values")

    @property
    def added(self) -> frozenset[str]:
        return self.values - self.current

    def is_satisfied_by(self, entity: Entity) -> bool:
        return self.values == self.current

    def describe(self) -> str:
        return f"{self.field}+={sorted(self.added)}"


TargetState = ScalarTarget | RelocationTarget | SetMergeTarget


class OutcomeStatus(str, Enum):
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Outcome:
    """
    Назначение:
        Итог обработки одной сущности. Неизменяем после записи в RunReport.
    """

    status: OutcomeStatus
    reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def applied(cls) -> "Outcome":
        return cls(status=OutcomeStatus.APPLIED)

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(status=OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error_code: str, error_message: str) -> "Outcome":
        return cls(status=OutcomeStatus.FAILED, error_code=error_code, error_message=error_message)
