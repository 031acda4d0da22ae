from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class GroupComparison:
    """
    Назначение:
        Результат сравнения членства двух групп.
    """

    first: str
    second: str
    only_in_first: list[str]
    only_in_second: list[str]
    in_both: list[str]

    @property
    def identical(self) -> bool:
        return not self.only_in_first and not self.only_in_second


def compare_memberships(first: str, first_members: Iterable[str], second: str, second_members: Iterable[str]) -> GroupComparison:
    # Сравнение без учёта регистра; в выводе сохраняется исходное написание.
    a = {m.lower(): m for m in first_members}
    b = {m.lower(): m for m in second_members}
    return GroupComparison(
        first=first,
        second=second,
        only_in_first=sorted(a[k] for k in a.keys() - b.keys()),
        only_in_second=sorted(b[k] for k in b.keys() - a.keys()),
        in_both=sorted(a[k] for k in a.keys() & b.keys()),
    )
