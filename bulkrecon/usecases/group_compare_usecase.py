from __future__ import annotations

import logging

from bulkrecon.domain.membership import GroupComparison, compare_memberships
from bulkrecon.domain.ports.sources import DirectoryLookupProtocol
from bulkrecon.domain.reporting.run_report import RunReport
from bulkrecon.infra.logging.setup import logEvent


class GroupCompareUseCase:
    """
    Назначение/ответственность:
        Сравнение членства двух групп (только чтение).
    """

    def __init__(self, lookup: DirectoryLookupProtocol):
        self.lookup = lookup

    def run(self, first: str, second: str, logger: logging.Logger, report: RunReport, run_id: str) -> GroupComparison:
        comparison = compare_memberships(
            first,
            self.lookup.get_group_members(first),
            second,
            self.lookup.get_group_members(second),
        )
        report.set_meta(scope=f"{first} <> {second}")
        report.set_context(
            "comparison",
            {
                "first": first,
                "second": second,
                "only_in_first": comparison.only_in_first,
                "only_in_second": comparison.only_in_second,
                "in_both": comparison.in_both,
            },
        )
        logEvent(
            logger,
            logging.INFO,
            run_id,
            "compare",
            f"Compared {first} and {second}: only_first={len(comparison.only_in_first)} "
            f"only_second={len(comparison.only_in_second)} both={len(comparison.in_both)}",
        )
        return comparison
